from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

from .client import PinfileError

MANIFEST_FILENAME = "pinfile.json"
LOCK_FILENAME = "pinfile.lock.json"
LOCK_API_VERSION = "1"
SCHEMA_VERSION = 1


class PersistenceError(PinfileError):
    pass


class ManifestNotFoundError(PinfileError):
    pass


class UnsafePathError(PinfileError):
    pass


def check_relative_path(value: str) -> str:
    """Normalize a project-relative path to forward slashes; reject absolute paths and `..`."""
    raw = value.strip().replace("\\", "/")
    if not raw:
        raise UnsafePathError("Dependency path must not be empty.")
    if PurePosixPath(raw).is_absolute() or PureWindowsPath(raw).drive:
        raise UnsafePathError(f"Dependency path {value!r} must be relative to the project root.")
    parts = [p for p in raw.split("/") if p not in ("", ".")]
    if ".." in parts:
        raise UnsafePathError(f"Dependency path {value!r} must not contain '..' segments.")
    if not parts:
        raise UnsafePathError(f"Dependency path {value!r} does not name a file.")
    return "/".join(parts)


@dataclass(frozen=True)
class PackageInfo:
    name: str = "my-project"
    version: str = "0.1.0"
    license: str = ""
    description: str = ""


@dataclass(frozen=True)
class ManifestEntry:
    name: str
    source: str  # canonical id
    path: str  # project-root relative, forward slashes


@dataclass(frozen=True)
class LockEntry:
    name: str
    source: str  # fetch URL actually used
    path: str
    integrity: str


@dataclass
class Manifest:
    package: PackageInfo = field(default_factory=PackageInfo)
    scripts: dict[str, str] = field(default_factory=dict)
    dependencies: dict[str, ManifestEntry] = field(default_factory=dict)


@dataclass
class Lockfile:
    api_version: str = LOCK_API_VERSION
    packages: dict[str, LockEntry] = field(default_factory=dict)


def write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise PinfileError(f"Could not decode {path}: {e}") from e
    except OSError as e:
        raise PinfileError(f"Could not read {path}: {e}") from e


def _str_field(obj: dict[str, Any], key: str) -> str:
    value = obj.get(key)
    return value.strip() if isinstance(value, str) else ""


class ManifestStore:
    filename = MANIFEST_FILENAME

    def path(self, root: Path) -> Path:
        return root / self.filename

    def exists(self, root: Path) -> bool:
        return self.path(root).is_file()

    def load(self, root: Path) -> Manifest:
        path = self.path(root)
        if not path.exists():
            raise ManifestNotFoundError(f"{self.filename} not found in {root}. Run `pinfile init` first.")
        raw = _read_json(path)
        if not isinstance(raw, dict):
            raise PinfileError(f"{path} must contain a JSON object.")

        pkg_raw = raw.get("package")
        pkg_obj = pkg_raw if isinstance(pkg_raw, dict) else {}
        package = PackageInfo(
            name=_str_field(pkg_obj, "name") or PackageInfo.name,
            version=_str_field(pkg_obj, "version") or PackageInfo.version,
            license=_str_field(pkg_obj, "license"),
            description=_str_field(pkg_obj, "description"),
        )

        scripts_raw = raw.get("scripts")
        scripts: dict[str, str] = {}
        if isinstance(scripts_raw, dict):
            scripts = {k: v for k, v in scripts_raw.items() if isinstance(k, str) and isinstance(v, str)}

        deps_raw = raw.get("dependencies")
        deps: dict[str, ManifestEntry] = {}
        if isinstance(deps_raw, dict):
            for name, item in deps_raw.items():
                if not isinstance(name, str) or not isinstance(item, dict):
                    continue
                source = _str_field(item, "source")
                dep_path = _str_field(item, "path")
                if not source or not dep_path:
                    continue
                try:
                    dep_path = check_relative_path(dep_path)
                except UnsafePathError as e:
                    raise UnsafePathError(f"{path}: dependency {name!r}: {e}") from e
                deps[name] = ManifestEntry(name=name, source=source, path=dep_path)

        return Manifest(package=package, scripts=scripts, dependencies=deps)

    def save(self, root: Path, manifest: Manifest) -> Path:
        package: dict[str, str] = {"name": manifest.package.name, "version": manifest.package.version}
        if manifest.package.license:
            package["license"] = manifest.package.license
        if manifest.package.description:
            package["description"] = manifest.package.description
        payload = {
            "schema_version": SCHEMA_VERSION,
            "package": package,
            "scripts": dict(manifest.scripts),
            "dependencies": {
                name: {"source": entry.source, "path": entry.path}
                for name, entry in sorted(manifest.dependencies.items())
            },
        }
        path = self.path(root)
        try:
            write_json_atomic(path, payload)
        except OSError as e:
            raise PersistenceError(f"Could not write {path}: {e}") from e
        return path


class LockStore:
    filename = LOCK_FILENAME

    def path(self, root: Path) -> Path:
        return root / self.filename

    def load(self, root: Path) -> Lockfile:
        path = self.path(root)
        if not path.exists():
            return Lockfile()
        if not path.read_bytes().strip():
            return Lockfile()
        raw = _read_json(path)
        if not isinstance(raw, dict):
            return Lockfile()

        api_version = raw.get("api_version")
        packages_raw = raw.get("package")
        packages: dict[str, LockEntry] = {}
        if isinstance(packages_raw, dict):
            for name, item in packages_raw.items():
                if not isinstance(name, str) or not isinstance(item, dict):
                    continue
                # Unreadable integrity values are kept; the reconciler flags them for a re-fetch.
                packages[name] = LockEntry(
                    name=name,
                    source=_str_field(item, "source"),
                    path=_str_field(item, "path"),
                    integrity=_str_field(item, "hash"),
                )

        return Lockfile(
            api_version=api_version if isinstance(api_version, str) and api_version else LOCK_API_VERSION,
            packages=packages,
        )

    def save(self, root: Path, lockfile: Lockfile) -> Path:
        payload = {
            "api_version": lockfile.api_version or LOCK_API_VERSION,
            "package": {
                name: {"source": entry.source, "path": entry.path, "hash": entry.integrity}
                for name, entry in sorted(lockfile.packages.items())
            },
        }
        path = self.path(root)
        try:
            write_json_atomic(path, payload)
        except OSError as e:
            raise PersistenceError(f"Could not write {path}: {e}") from e
        return path


def init_project(root: Path, package: PackageInfo, *, scripts: dict[str, str] | None = None, store: ManifestStore | None = None) -> Path:
    store = store or ManifestStore()
    if store.exists(root):
        raise PinfileError(f"{store.path(root)} already exists.")
    return store.save(root, Manifest(package=package, scripts=dict(scripts or {})))
