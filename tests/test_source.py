import unittest

from pinfile.config import Config
from pinfile.source import (
    AmbiguousURL,
    BlobURL,
    HostConfig,
    ParseError,
    RawURL,
    Shorthand,
    SourceParser,
    is_commit_like,
)


class TestShorthand(unittest.TestCase):
    def setUp(self) -> None:
        self.parser = SourceParser()

    def test_parses_owner_repo_path_and_ref(self) -> None:
        d = self.parser.parse("github:acme/tools/lib/json.lua@v1.2.0")

        self.assertEqual(d.provider, "github")
        self.assertEqual(d.owner, "acme")
        self.assertEqual(d.repo, "tools")
        self.assertEqual(d.path_in_repo, "lib/json.lua")
        self.assertEqual(d.ref, "v1.2.0")
        self.assertEqual(d.fetch_url, "https://raw.githubusercontent.com/acme/tools/v1.2.0/lib/json.lua")
        self.assertEqual(d.suggested_filename, "json.lua")
        self.assertEqual(d.canonical_id, "github:acme/tools/lib/json.lua@v1.2.0")

    def test_last_at_sign_separates_the_ref(self) -> None:
        d = self.parser.parse("github:acme/tools/dir@x/file.lua@main")
        self.assertEqual(d.path_in_repo, "dir@x/file.lua")
        self.assertEqual(d.ref, "main")

    def test_ref_may_contain_slashes(self) -> None:
        d = self.parser.parse("github:acme/tools/a.lua@feature/x")
        self.assertEqual(d.ref, "feature/x")
        self.assertEqual(d.fetch_url, "https://raw.githubusercontent.com/acme/tools/feature/x/a.lua")

    def test_missing_ref_is_rejected(self) -> None:
        with self.assertRaisesRegex(ParseError, "missing ref"):
            self.parser.parse("github:acme/tools/a.lua")

    def test_empty_ref_is_rejected(self) -> None:
        with self.assertRaisesRegex(ParseError, "empty ref"):
            self.parser.parse("github:acme/tools/a.lua@")

    def test_path_is_required(self) -> None:
        with self.assertRaisesRegex(ParseError, "owner/repo/path required"):
            self.parser.parse("github:acme/tools@main")

    def test_empty_path_segment_is_rejected(self) -> None:
        with self.assertRaises(ParseError):
            self.parser.parse("github:acme/tools/lib//a.lua@main")

    def test_classifies_as_shorthand(self) -> None:
        self.assertIsInstance(self.parser.classify("github:acme/tools/a.lua@main"), Shorthand)

    def test_canonical_id_round_trips(self) -> None:
        sources = (
            "https://github.com/acme/tools/blob/main/src/a.lua",
            "https://raw.githubusercontent.com/acme/tools/v1/lib/a.lua",
            "https://github.com/acme/tools/src/a.lua@main",
            "github:acme/tools/dir@x/file.lua@main",
            "github:acme/tools/a.lua@feature/x",
        )
        for source in sources:
            with self.subTest(source=source):
                first = self.parser.parse(source)
                again = self.parser.parse(first.canonical_id)
                self.assertEqual(again, first)
                self.assertEqual(again.canonical_id, first.canonical_id)


class TestUrls(unittest.TestCase):
    def setUp(self) -> None:
        self.parser = SourceParser()

    def test_raw_url_keeps_the_input_as_fetch_url(self) -> None:
        url = "https://raw.githubusercontent.com/acme/tools/main/lib/a.lua"
        self.assertIsInstance(self.parser.classify(url), RawURL)

        d = self.parser.parse(url)
        self.assertEqual(d.fetch_url, url)
        self.assertEqual(d.ref, "main")
        self.assertEqual(d.path_in_repo, "lib/a.lua")

    def test_raw_url_and_shorthand_describe_the_same_file(self) -> None:
        raw = self.parser.parse("https://raw.githubusercontent.com/acme/tools/main/lib/a.lua")
        short = self.parser.parse("github:acme/tools/lib/a.lua@main")
        self.assertEqual(raw, short)

    def test_raw_url_needs_ref_and_path(self) -> None:
        with self.assertRaisesRegex(ParseError, "Invalid raw content URL"):
            self.parser.parse("https://raw.githubusercontent.com/acme/tools/main")

    def test_blob_url(self) -> None:
        url = "https://github.com/acme/tools/blob/v2/src/util.lua"
        production = self.parser.classify(url)
        self.assertIsInstance(production, BlobURL)
        self.assertEqual(production.kind, "blob")

        d = self.parser.parse(url)
        self.assertEqual(d.ref, "v2")
        self.assertEqual(d.path_in_repo, "src/util.lua")
        self.assertEqual(d.fetch_url, "https://raw.githubusercontent.com/acme/tools/v2/src/util.lua")

    def test_raw_web_url(self) -> None:
        production = self.parser.classify("https://github.com/acme/tools/raw/main/a.lua")
        self.assertIsInstance(production, BlobURL)
        self.assertEqual(production.kind, "raw")

    def test_incomplete_blob_url(self) -> None:
        with self.assertRaisesRegex(ParseError, "Incomplete GitHub URL"):
            self.parser.parse("https://github.com/acme/tools/blob/main")

    def test_tree_url_is_rejected(self) -> None:
        with self.assertRaisesRegex(ParseError, "GitHub tree links"):
            self.parser.parse("https://github.com/acme/tools/tree/main/src")

    def test_directory_url_is_rejected(self) -> None:
        with self.assertRaisesRegex(ParseError, "points to a directory"):
            self.parser.parse("https://github.com/acme/tools/blob/main/src/")

    def test_ambiguous_url_with_ref(self) -> None:
        url = "https://github.com/acme/tools/src/a.lua@main"
        self.assertIsInstance(self.parser.classify(url), AmbiguousURL)

        d = self.parser.parse(url)
        self.assertEqual(d.path_in_repo, "src/a.lua")
        self.assertEqual(d.ref, "main")

    def test_ambiguous_url_without_ref(self) -> None:
        with self.assertRaisesRegex(ParseError, "ref required"):
            self.parser.parse("https://github.com/acme/tools/src/a.lua")

    def test_unknown_host(self) -> None:
        with self.assertRaisesRegex(ParseError, "Unsupported source host: gitlab.com"):
            self.parser.parse("https://gitlab.com/acme/tools/-/raw/main/a.lua")

    def test_non_http_scheme(self) -> None:
        with self.assertRaises(ParseError):
            self.parser.parse("ftp://github.com/acme/tools/blob/main/a.lua")

    def test_empty_source(self) -> None:
        with self.assertRaises(ParseError):
            self.parser.parse("   ")


class TestHostConfig(unittest.TestCase):
    def test_custom_raw_base_url_is_accepted_and_used(self) -> None:
        hosts = HostConfig.from_config(Config(raw_base_url="http://127.0.0.1:8080"))
        parser = SourceParser(hosts)

        self.assertIn("127.0.0.1", hosts.raw_hosts)
        d = parser.parse("github:acme/tools/a.lua@main")
        self.assertEqual(d.fetch_url, "http://127.0.0.1:8080/acme/tools/main/a.lua")

        raw = parser.parse("http://127.0.0.1:8080/acme/tools/main/a.lua")
        self.assertEqual(raw.path_in_repo, "a.lua")

    def test_default_hosts_reject_local_servers(self) -> None:
        with self.assertRaises(ParseError):
            SourceParser().parse("http://127.0.0.1:8080/acme/tools/main/a.lua")


class TestIsCommitLike(unittest.TestCase):
    def test_shapes(self) -> None:
        self.assertTrue(is_commit_like("deadbee"))
        self.assertTrue(is_commit_like("a" * 40))
        self.assertFalse(is_commit_like("dead"))
        self.assertFalse(is_commit_like("a" * 41))
        self.assertFalse(is_commit_like("DEADBEEF"))
        self.assertFalse(is_commit_like("main"))


if __name__ == "__main__":
    unittest.main()
