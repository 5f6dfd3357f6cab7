import io
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

from pinfile.cli import _format_transport_error, build_parser, main
from pinfile.client import TransportError
from pinfile.config import Config

SHA = "c" * 40


def _fake_client(files: dict[str, bytes]) -> Mock:
    client = Mock()
    client.list_commits.return_value = [{"sha": SHA}]

    def fetch(url: str) -> bytes:
        name = url.rsplit("/", 1)[-1]
        if name not in files:
            raise TransportError(f"Request to {url} failed with status 404", url=url, status_code=404)
        return files[name]

    client.fetch.side_effect = fetch
    return client


class TestParser(unittest.TestCase):
    def test_runtime_options_before_and_after_subcommand(self) -> None:
        args = build_parser().parse_args(["--root", "game", "--token", "tok", "install", "a"])
        self.assertEqual(args.root, "game")
        self.assertEqual(args.token, "tok")
        self.assertEqual(args.names, ["a"])
        self.assertFalse(args.verbose)

        args = build_parser().parse_args(["install", "--root", "other", "-v"])
        self.assertEqual(args.root, "other")
        self.assertTrue(args.verbose)

    def test_add_defaults(self) -> None:
        args = build_parser().parse_args(["add", "github:o/r/a.lua@main"])
        self.assertEqual(args.directory, "src/lib")
        self.assertIsNone(args.name)

    def test_aliases(self) -> None:
        self.assertEqual(build_parser().parse_args(["rm", "a"]).cmd, "rm")
        self.assertEqual(build_parser().parse_args(["ls"]).cmd, "ls")


class TestCommands(unittest.TestCase):
    def _run(self, argv: list[str], client: Mock | None = None) -> tuple[int, str, str]:
        with (
            patch("pinfile.cli.load_config", return_value=Config()),
            patch("pinfile.cli.GitHubClient", return_value=client or _fake_client({})),
            patch.dict("os.environ", {}, clear=True),
            patch("sys.stdout", new=io.StringIO()) as stdout,
            patch("sys.stderr", new=io.StringIO()) as stderr,
        ):
            rc = main(argv)
        return rc, stdout.getvalue(), stderr.getvalue()

    def test_init_add_list_remove(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            rc, out, _ = self._run(["--root", td, "init", "--name", "game"])
            self.assertEqual(rc, 0)
            self.assertIn("Saved:", out)

            client = _fake_client({"json.lua": b"return {}\n"})
            rc, out, err = self._run(["--root", td, "add", "github:acme/tools/json.lua@main"], client)
            self.assertEqual(rc, 0, err)
            self.assertIn("added: json", out)
            self.assertIn(f"integrity: commit:{SHA}", out)
            self.assertTrue((root / "src/lib/json.lua").is_file())
            client.close.assert_called_once()

            rc, out, _ = self._run(["--root", td, "list", "--json"])
            self.assertEqual(rc, 0)
            payload = json.loads(out)
            self.assertEqual(payload["package"]["name"], "game")
            self.assertEqual(payload["dependencies"][0]["name"], "json")
            self.assertTrue(payload["dependencies"][0]["file_exists"])

            rc, out, _ = self._run(["--root", td, "rm", "json"])
            self.assertEqual(rc, 0)
            self.assertIn("removed: json main", out)
            self.assertFalse((root / "src/lib/json.lua").exists())

    def test_install_reports_failures_and_exits_non_zero(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            manifest = {
                "package": {"name": "game", "version": "0.1.0"},
                "dependencies": {
                    "a": {"source": "github:acme/tools/a.lua@main", "path": "src/lib/a.lua"},
                    "b": {"source": "github:acme/tools/b.lua@main", "path": "src/lib/b.lua"},
                },
            }
            (root / "pinfile.json").write_text(json.dumps(manifest), encoding="utf-8")

            rc, out, err = self._run(["install", "--root", td], _fake_client({"b.lua": b"b"}))

            self.assertEqual(rc, 1)
            self.assertIn("fetched: b (declared but never locked)", out)
            self.assertIn("error: a: download failed", err)
            self.assertTrue((root / "src/lib/b.lua").is_file())

    def test_missing_manifest_is_an_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            rc, _, err = self._run(["--root", td, "add", "github:acme/tools/a.lua@main"])
        self.assertEqual(rc, 1)
        self.assertIn("error:", err)
        self.assertIn("pinfile init", err)

    def test_parse_errors_are_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self._run(["--root", td, "init"])
            rc, _, err = self._run(["--root", td, "add", "https://github.com/acme/tools/tree/main/src"])
        self.assertEqual(rc, 1)
        self.assertIn("GitHub tree links", err)

    def test_config_set_and_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = str(Path(td) / "config.json")
            with (
                patch.dict("os.environ", {"PINFILE_CONFIG_PATH": cfg_path}, clear=True),
                patch("sys.stdout", new=io.StringIO()) as stdout,
            ):
                self.assertEqual(main(["config", "set", "--token", "ghp_1234567890abcd", "--timeout-s", "5"]), 0)
                self.assertEqual(main(["config", "show"]), 0)

            shown = json.loads(stdout.getvalue().split("\n", 1)[1])
            self.assertEqual(shown["token"], "ghp_12...abcd")
            self.assertEqual(shown["timeout_s"], 5.0)


class TestFormatTransportError(unittest.TestCase):
    def test_rate_limit_hint(self) -> None:
        err = TransportError("Request to x failed with status 403", url="x", status_code=403)
        self.assertIn("rate limited", _format_transport_error(err))


if __name__ == "__main__":
    unittest.main()
