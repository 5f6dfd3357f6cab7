from __future__ import annotations

import argparse
import json
import sys
import textwrap
from dataclasses import asdict
from pathlib import Path
from typing import Any

from ._version import __version__
from .client import GitHubClient, PinfileError, TransportError
from .config import Config, config_path, load_config, merge_env, redact_token, save_config
from .logging import configure_logging
from .orchestrator import DEFAULT_LIB_DIR, Orchestrator, SyncResult
from .project import PackageInfo, init_project
from .resolver import ReferenceResolver
from .source import HostConfig, SourceParser


def _print_table(rows: list[list[str]]) -> None:
    if not rows:
        return
    widths = [max(len(r[i]) for r in rows) for i in range(len(rows[0]))]
    for r in rows:
        line = "  ".join(cell.ljust(widths[i]) for i, cell in enumerate(r))
        print(line.rstrip())


def _warn(message: str) -> None:
    print(f"warning: {message}", file=sys.stderr)


def _merge_cfg(base: Config, args: argparse.Namespace) -> Config:
    # Env overrides config; CLI overrides both.
    env_cfg = merge_env(base)
    timeout_s = getattr(args, "timeout_s", None)
    return Config(
        api_url=getattr(args, "api_url", None) or env_cfg.api_url,
        raw_base_url=getattr(args, "raw_base_url", None) or env_cfg.raw_base_url,
        web_hosts=env_cfg.web_hosts,
        raw_hosts=env_cfg.raw_hosts,
        token=getattr(args, "token", None) or env_cfg.token,
        timeout_s=float(timeout_s) if timeout_s is not None else env_cfg.timeout_s,
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="pinfile",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Vendor single files from GitHub and keep them pinned.",
        epilog=textwrap.dedent(
            """\
            Environment variables:
              PINFILE_API_URL, PINFILE_RAW_BASE_URL, PINFILE_TOKEN, PINFILE_TIMEOUT_S, PINFILE_CONFIG_PATH
            """
        ),
    )

    def _add_runtime_overrides(parser: argparse.ArgumentParser, *, top_level: bool = False) -> None:
        # Accepted before and after the subcommand:
        #   pinfile --root ./game install
        #   pinfile install --root ./game
        # Subcommand copies use SUPPRESS so they never clobber a value given before the subcommand.
        default = None if top_level else argparse.SUPPRESS
        parser.add_argument("--root", default=default, help="Project root (default: current directory)")
        parser.add_argument("--api-url", default=default, help="GitHub API base URL")
        parser.add_argument("--raw-base-url", default=default, help="Raw content base URL")
        parser.add_argument("--token", default=default, help="GitHub token (overrides config/env)")
        parser.add_argument("--timeout-s", type=float, default=default, help="HTTP timeout in seconds")
        parser.add_argument(
            "-v",
            "--verbose",
            action="store_true",
            default=False if top_level else argparse.SUPPRESS,
            help="Enable verbose output",
        )

    _add_runtime_overrides(p, top_level=True)
    p.add_argument("--version", action="version", version=f"pinfile {__version__}")

    sub = p.add_subparsers(dest="cmd", required=True)

    # init
    init = sub.add_parser("init", help="Create pinfile.json in the project root")
    _add_runtime_overrides(init)
    init.add_argument("--name", dest="package_name", help="Package name (default: project folder name)")
    init.add_argument("--version", dest="package_version", default="0.1.0", help="Package version (default: 0.1.0)")
    init.add_argument("--license", default="MIT", help="License (default: MIT)")
    init.add_argument("--description", default="", help="Short description")

    # add
    add = sub.add_parser("add", help="Download a file, record it in the manifest and lock it")
    _add_runtime_overrides(add)
    add.add_argument("source", help="github:<owner>/<repo>/<path>@<ref> or a GitHub URL")
    add.add_argument(
        "-d",
        "--directory",
        default=DEFAULT_LIB_DIR,
        help=f"Target directory, relative to the project root (default: {DEFAULT_LIB_DIR})",
    )
    add.add_argument("-n", "--name", help="Dependency name (default: file name without extension)")
    add.add_argument("--json", action="store_true", help="Output JSON")

    # install / update
    for cmd_name, help_text in (
        ("install", "Fetch dependencies that are missing, unlocked or stale"),
        ("update", "Re-resolve refs and refresh dependencies whose commit moved"),
    ):
        sync = sub.add_parser(cmd_name, help=help_text)
        _add_runtime_overrides(sync)
        sync.add_argument("names", nargs="*", help="Dependency names (default: all)")
        sync.add_argument("-f", "--force", action="store_true", help="Re-fetch even if up to date")
        sync.add_argument("--json", action="store_true", help="Output JSON")

    # remove
    remove = sub.add_parser("remove", aliases=["rm", "uninstall"], help="Remove a dependency and its file")
    _add_runtime_overrides(remove)
    remove.add_argument("name", help="Dependency name")
    remove.add_argument("--json", action="store_true", help="Output JSON")

    # list
    ls = sub.add_parser("list", aliases=["ls"], help="Show dependencies and their lock state")
    _add_runtime_overrides(ls)
    ls.add_argument("--json", action="store_true", help="Output JSON")

    # config
    cfg = sub.add_parser("config", help="Manage local config")
    cfg_sub = cfg.add_subparsers(dest="subcmd", required=True)
    cfg_sub.add_parser("path", help="Print config path")
    cfg_sub.add_parser("show", help="Show config (token redacted)")
    cfg_set = cfg_sub.add_parser("set", help="Set config fields")
    cfg_set.add_argument("--api-url")
    cfg_set.add_argument("--raw-base-url")
    cfg_set.add_argument("--token")
    cfg_set.add_argument("--timeout-s", type=float)
    cfg_set.add_argument("--web-host", action="append", help="Accepted web host (repeatable; replaces the list)")
    cfg_set.add_argument("--raw-host", action="append", help="Accepted raw content host (repeatable; replaces the list)")

    return p


def _root(args: argparse.Namespace) -> Path:
    root = getattr(args, "root", None)
    return Path(root).expanduser() if root else Path.cwd()


def _client_from_cfg(cfg: Config) -> GitHubClient:
    return GitHubClient(api_url=cfg.api_url, token=cfg.token, timeout_s=cfg.timeout_s)


def _make_orchestrator(args: argparse.Namespace, client: GitHubClient, cfg: Config) -> Orchestrator:
    return Orchestrator(
        root=_root(args),
        parser=SourceParser(HostConfig.from_config(cfg)),
        resolver=ReferenceResolver(client),
        downloader=client,
    )


def cmd_config(args: argparse.Namespace) -> int:
    if args.subcmd == "path":
        print(str(config_path()))
        return 0

    if args.subcmd == "show":
        cfg = load_config()
        d = asdict(cfg)
        d["token"] = redact_token(cfg.token)
        print(json.dumps(d, indent=2, sort_keys=True))
        return 0

    if args.subcmd == "set":
        cfg = load_config()
        new_cfg = Config(
            api_url=args.api_url or cfg.api_url,
            raw_base_url=args.raw_base_url or cfg.raw_base_url,
            web_hosts=tuple(h.lower() for h in args.web_host) if args.web_host else cfg.web_hosts,
            raw_hosts=tuple(h.lower() for h in args.raw_host) if args.raw_host else cfg.raw_hosts,
            token=args.token if args.token is not None else cfg.token,
            timeout_s=args.timeout_s if args.timeout_s is not None else cfg.timeout_s,
        )
        path = save_config(new_cfg)
        print(f"Saved: {path}")
        return 0

    raise AssertionError("unreachable")


def cmd_init(args: argparse.Namespace) -> int:
    root = _root(args).resolve()
    package = PackageInfo(
        name=args.package_name or root.name or "my-project",
        version=args.package_version,
        license=args.license,
        description=args.description,
    )
    path = init_project(root, package)
    print(f"Saved: {path}")
    return 0


def cmd_add(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    client = _client_from_cfg(cfg)
    try:
        orchestrator = _make_orchestrator(args, client, cfg)
        result = orchestrator.add(args.source, directory=args.directory, name=args.name)
    finally:
        client.close()

    record = result.record
    if args.json:
        payload = {
            "name": record.name,
            "path": record.path,
            "source": record.source,
            "fetch_url": record.fetch_url,
            "integrity": record.integrity,
            "warnings": list(result.warnings),
            "manifest_path": str(result.manifest_path),
            "lock_path": str(result.lock_path),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    for warning in result.warnings:
        _warn(warning)
    print(f"added: {record.name}")
    print(f"source: {record.source}")
    print(f"path: {record.path}")
    print(f"integrity: {record.integrity}")
    return 0


def _sync_payload(result: SyncResult) -> dict[str, Any]:
    return {
        "fetched": [
            {"name": r.name, "path": r.path, "reason": r.reason, "integrity": r.integrity, "fetch_url": r.fetch_url}
            for r in result.fetched
        ],
        "up_to_date": list(result.up_to_date),
        "failures": [{"name": f.name, "step": f.step, "message": f.message} for f in result.failures],
        "warnings": list(result.warnings),
        "lock_path": str(result.lock_path),
    }


def cmd_sync(args: argparse.Namespace) -> int:
    cfg = _merge_cfg(load_config(), args)
    client = _client_from_cfg(cfg)
    try:
        orchestrator = _make_orchestrator(args, client, cfg)
        if args.cmd == "update":
            result = orchestrator.update(args.names, forced=args.force)
        else:
            result = orchestrator.install(args.names, forced=args.force)
    finally:
        client.close()

    rc = 1 if result.failures else 0
    if args.json:
        print(json.dumps(_sync_payload(result), indent=2, sort_keys=True))
        return rc

    for warning in result.warnings:
        _warn(warning)
    if not result.fetched and not result.failures:
        print("All targeted dependencies are already up to date.")
        return 0

    print(f"lock: {result.lock_path}")
    _print_table(
        [
            ["ACTION", "COUNT"],
            ["fetched", str(len(result.fetched))],
            ["up_to_date", str(len(result.up_to_date))],
            ["failed", str(len(result.failures))],
        ]
    )
    for record in result.fetched:
        print(f"fetched: {record.name} ({record.reason}) {record.integrity}")
    for name in result.up_to_date:
        print(f"up_to_date: {name}")
    for failure in result.failures:
        print(f"error: {failure}", file=sys.stderr)
    return rc


def cmd_remove(args: argparse.Namespace) -> int:
    root = _root(args)
    cfg = _merge_cfg(load_config(), args)
    orchestrator = Orchestrator(
        root=root,
        parser=SourceParser(HostConfig.from_config(cfg)),
    )
    result = orchestrator.remove(args.name)

    if args.json:
        payload = {
            "name": result.name,
            "ref": result.ref,
            "path": result.path,
            "file_deleted": result.file_deleted,
            "lock_updated": result.lock_updated,
            "removed_dirs": list(result.removed_dirs),
            "warnings": list(result.warnings),
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    for warning in result.warnings:
        _warn(warning)
    print(f"removed: {result.name} {result.ref}")
    for d in result.removed_dirs:
        print(f"removed_dir: {d}")
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    root = _root(args)
    cfg = _merge_cfg(load_config(), args)
    orchestrator = Orchestrator(
        root=root,
        parser=SourceParser(HostConfig.from_config(cfg)),
    )
    rows = orchestrator.status()
    manifest = orchestrator.manifest_store.load(orchestrator.root)

    if args.json:
        payload = {
            "package": asdict(manifest.package),
            "root": str(orchestrator.root),
            "dependencies": [asdict(s) for s in rows],
        }
        print(json.dumps(payload, indent=2, sort_keys=True))
        return 0

    print(f"{manifest.package.name}@{manifest.package.version} {orchestrator.root}")
    print()
    print("dependencies:")
    if not rows:
        print("(none)")
        return 0
    table = [["NAME", "LOCKED", "PATH", "STATE"]]
    for s in rows:
        notes = []
        if s.integrity is None:
            notes.append("not locked")
        if not s.file_exists:
            notes.append("missing")
        table.append([s.name, s.integrity or "-", s.path, ", ".join(notes) or "ok"])
    _print_table(table)
    return 0


def _format_transport_error(err: TransportError) -> str:
    if err.status_code == 401:
        return f"{err} (unauthorized; check PINFILE_TOKEN)"
    if err.status_code == 403:
        return f"{err} (forbidden or rate limited; set a token with `pinfile config set --token ...`)"
    if err.status_code == 404:
        return f"{err} (not found; check owner, repo, path and ref)"
    return str(err)


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=bool(getattr(args, "verbose", False)))
    try:
        if args.cmd == "config":
            return cmd_config(args)
        if args.cmd == "init":
            return cmd_init(args)
        if args.cmd == "add":
            return cmd_add(args)
        if args.cmd in ("install", "update"):
            return cmd_sync(args)
        if args.cmd in ("remove", "rm", "uninstall"):
            return cmd_remove(args)
        if args.cmd in ("list", "ls"):
            return cmd_list(args)
        raise AssertionError("unreachable")
    except TransportError as e:
        print(f"error: {_format_transport_error(e)}", file=sys.stderr)
        return 1
    except PinfileError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
