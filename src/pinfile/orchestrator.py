from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterable, Protocol

from .client import PinfileError, TransportError
from .integrity import select_integrity
from .logging import get_logger
from .project import (
    LOCK_FILENAME,
    MANIFEST_FILENAME,
    LockEntry,
    Lockfile,
    LockStore,
    ManifestEntry,
    ManifestStore,
    PersistenceError,
    UnsafePathError,
    check_relative_path,
)
from .reconcile import Failure, Reconciler, Verdict
from .resolver import ReferenceResolver, ResolutionError
from .source import ParseError, SourceDescriptor, SourceParser

log = get_logger("orchestrator")

DEFAULT_LIB_DIR = "src/lib"
BACKUP_SUFFIX = ".pinfile-backup"


class LocalFileError(PinfileError):
    pass


class Downloader(Protocol):
    def fetch(self, url: str) -> bytes:
        ...


@dataclass(frozen=True)
class FetchRecord:
    name: str
    path: str
    source: str
    fetch_url: str
    ref: str
    integrity: str
    reason: str | None = None


@dataclass(frozen=True)
class AddResult:
    record: FetchRecord
    warnings: tuple[str, ...]
    manifest_path: Path
    lock_path: Path


@dataclass(frozen=True)
class SyncResult:
    fetched: tuple[FetchRecord, ...]
    up_to_date: tuple[str, ...]
    failures: tuple[Failure, ...]
    warnings: tuple[str, ...]
    lock_path: Path


@dataclass(frozen=True)
class RemoveResult:
    name: str
    ref: str
    path: str
    file_deleted: bool
    lock_updated: bool
    removed_dirs: tuple[str, ...]
    warnings: tuple[str, ...]


@dataclass(frozen=True)
class DependencyStatus:
    name: str
    source: str
    path: str
    integrity: str | None
    locked_source: str | None
    file_exists: bool


class _StagedFile:
    """A freshly written file that can be rolled back to whatever was there before."""

    def __init__(self, dest: Path) -> None:
        self.dest = dest
        self.backup: Path | None = None

    def write(self, data: bytes) -> None:
        self.dest.parent.mkdir(parents=True, exist_ok=True)
        if self.dest.exists():
            backup = self.dest.with_name(self.dest.name + BACKUP_SUFFIX)
            self.dest.replace(backup)
            self.backup = backup
        self.dest.write_bytes(data)

    def rollback(self) -> None:
        try:
            if self.dest.exists():
                self.dest.unlink()
            if self.backup is not None and self.backup.exists():
                self.backup.replace(self.dest)
        except OSError as e:
            log.warning("Failed to clean up %s after error: %s", self.dest, e)

    def commit(self) -> None:
        if self.backup is None:
            return
        try:
            self.backup.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning("Failed to remove backup %s: %s", self.backup, e)


def _dependency_name(descriptor: SourceDescriptor, name: str | None) -> tuple[str, str]:
    """Return (manifest name, filename on disk)."""
    suggested = descriptor.suggested_filename
    stem, ext = os.path.splitext(suggested)
    if name:
        name = name.strip()
        filename = name if (not ext or name.endswith(ext)) else name + ext
        if name in (".", "..") or "/" in name or "\\" in name:
            raise PinfileError(f"Invalid dependency name {name!r}.")
        return name, filename
    if not stem or stem in (".", ".."):
        raise PinfileError(
            f"Could not infer a dependency name from {suggested!r}. Pass --name to choose one."
        )
    return stem, suggested


def _relative_path(directory: str, filename: str) -> str:
    rel = PurePosixPath(directory.replace("\\", "/")) / filename
    return check_relative_path(str(rel))


class Orchestrator:
    def __init__(
        self,
        *,
        root: Path,
        parser: SourceParser,
        resolver: ReferenceResolver | None = None,
        downloader: Downloader | None = None,
        manifest_store: ManifestStore | None = None,
        lock_store: LockStore | None = None,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.parser = parser
        self.resolver = resolver
        self.downloader = downloader
        self.manifest_store = manifest_store or ManifestStore()
        self.lock_store = lock_store or LockStore()
        # remove and status work offline; add, install and update need both collaborators.
        self.reconciler = Reconciler(parser, resolver) if resolver is not None else None

    @property
    def manifest_path(self) -> Path:
        return self.manifest_store.path(self.root)

    @property
    def lock_path(self) -> Path:
        return self.lock_store.path(self.root)

    def _require_network(self, operation: str) -> None:
        if self.resolver is None or self.downloader is None or self.reconciler is None:
            raise PinfileError(f"{operation} needs a resolver and a downloader.")

    def _dest(self, rel_path: str) -> Path:
        dest = self.root / check_relative_path(rel_path)
        resolved = dest.resolve()
        if self.root not in resolved.parents:
            raise UnsafePathError(f"{rel_path} resolves to {resolved}, outside the project root {self.root}.")
        return dest

    def _resolve_or_fallback(self, name: str, descriptor: SourceDescriptor, warnings: list[str]) -> SourceDescriptor:
        try:
            return self.resolver.resolve(descriptor)
        except ResolutionError as e:
            msg = f"{name}: could not pin ref {descriptor.ref!r} to a commit, using a content hash instead ({e})"
            log.warning("%s", msg)
            warnings.append(msg)
            return descriptor

    def _download(self, name: str, url: str) -> bytes:
        try:
            return self.downloader.fetch(url)
        except TransportError as e:
            raise TransportError(
                f"{name}: download failed: {e}", url=e.url, status_code=e.status_code, body=e.body
            ) from e

    def _stage(self, rel_path: str, data: bytes) -> _StagedFile:
        staged = _StagedFile(self._dest(rel_path))
        try:
            staged.write(data)
        except OSError as e:
            staged.rollback()
            raise LocalFileError(f"could not write {staged.dest}: {e}") from e
        log.debug("wrote %d bytes to %s", len(data), staged.dest)
        return staged

    def add(self, source: str, *, directory: str = DEFAULT_LIB_DIR, name: str | None = None) -> AddResult:
        self._require_network("add")
        manifest = self.manifest_store.load(self.root)
        parsed = self.parser.parse(source)
        dep_name, filename = _dependency_name(parsed, name)
        rel_path = _relative_path(directory, filename)
        log.debug("adding %s as %s at %s", parsed.canonical_id, dep_name, rel_path)

        warnings: list[str] = []
        target = self._resolve_or_fallback(dep_name, parsed, warnings)
        data = self._download(dep_name, target.fetch_url)

        staged = self._stage(rel_path, data)
        integrity = select_integrity(target.ref, data)

        manifest.dependencies[dep_name] = ManifestEntry(name=dep_name, source=parsed.canonical_id, path=rel_path)
        try:
            self.manifest_store.save(self.root, manifest)
        except PersistenceError as e:
            staged.rollback()
            raise PersistenceError(f"{dep_name}: saving {MANIFEST_FILENAME} failed: {e}") from e

        try:
            lockfile = self.lock_store.load(self.root)
            lockfile.packages[dep_name] = LockEntry(
                name=dep_name, source=target.fetch_url, path=rel_path, integrity=integrity
            )
            self.lock_store.save(self.root, lockfile)
        except PinfileError as e:
            staged.rollback()
            raise PersistenceError(
                f"{dep_name}: saving {LOCK_FILENAME} failed: {e}. {MANIFEST_FILENAME} was already updated, "
                f"so {MANIFEST_FILENAME} and {LOCK_FILENAME} may be inconsistent; run `pinfile install` to repair."
            ) from e

        staged.commit()
        record = FetchRecord(
            name=dep_name,
            path=rel_path,
            source=parsed.canonical_id,
            fetch_url=target.fetch_url,
            ref=target.ref,
            integrity=integrity,
        )
        return AddResult(
            record=record,
            warnings=tuple(warnings),
            manifest_path=self.manifest_path,
            lock_path=self.lock_path,
        )

    def install(self, names: Iterable[str] = (), *, forced: bool = False) -> SyncResult:
        return self._sync(names, forced=forced, operation="install")

    def update(self, names: Iterable[str] = (), *, forced: bool = False) -> SyncResult:
        return self._sync(names, forced=forced, operation="update")

    def _sync(self, names: Iterable[str], *, forced: bool, operation: str) -> SyncResult:
        self._require_network(operation)
        manifest = self.manifest_store.load(self.root)
        lockfile = self.lock_store.load(self.root)
        plan = self.reconciler.plan(manifest, lockfile, root=self.root, names=names, forced=forced)

        warnings = list(plan.warnings)
        failures = list(plan.failures)
        fetched: list[FetchRecord] = []

        # One dependency at a time; each is fully written and locked before the next starts.
        for verdict in plan.pending:
            entry = manifest.dependencies[verdict.name]
            try:
                fetched.append(self._refresh(entry, verdict, lockfile, warnings))
            except TransportError as e:
                failures.append(Failure(entry.name, "download", str(e)))
            except UnsafePathError as e:
                failures.append(Failure(entry.name, "path", str(e)))
            except LocalFileError as e:
                failures.append(Failure(entry.name, "write", str(e)))

        return SyncResult(
            fetched=tuple(fetched),
            up_to_date=tuple(v.name for v in plan.up_to_date),
            failures=tuple(failures),
            warnings=tuple(warnings),
            lock_path=self.lock_path,
        )

    def _refresh(self, entry: ManifestEntry, verdict: Verdict, lockfile: Lockfile, warnings: list[str]) -> FetchRecord:
        target = verdict.target
        if not verdict.remote_checked:
            target = self._resolve_or_fallback(entry.name, target, warnings)

        log.debug("refreshing %s (%s) from %s", entry.name, verdict.reason, target.fetch_url)
        # Failure records carry the name and step, so no prefix here.
        data = self.downloader.fetch(target.fetch_url)
        staged = self._stage(entry.path, data)
        integrity = select_integrity(target.ref, data)

        previous = lockfile.packages.get(entry.name)
        lockfile.packages[entry.name] = LockEntry(
            name=entry.name, source=target.fetch_url, path=entry.path, integrity=integrity
        )
        try:
            self.lock_store.save(self.root, lockfile)
        except PersistenceError as e:
            if previous is None:
                lockfile.packages.pop(entry.name, None)
            else:
                lockfile.packages[entry.name] = previous
            staged.rollback()
            raise PersistenceError(f"{entry.name}: saving {LOCK_FILENAME} failed: {e}") from e

        staged.commit()
        return FetchRecord(
            name=entry.name,
            path=entry.path,
            source=entry.source,
            fetch_url=target.fetch_url,
            ref=target.ref,
            integrity=integrity,
            reason=verdict.reason,
        )

    def remove(self, name: str) -> RemoveResult:
        manifest = self.manifest_store.load(self.root)
        entry = manifest.dependencies.get(name)
        if entry is None:
            raise PinfileError(f"Dependency {name!r} not found in {MANIFEST_FILENAME}.")

        try:
            ref = self.parser.parse(entry.source).ref
        except ParseError:
            ref = "unknown"

        dest = self._dest(entry.path)
        del manifest.dependencies[name]
        self.manifest_store.save(self.root, manifest)

        warnings: list[str] = []
        removed_dirs: list[str] = []
        file_deleted = False
        try:
            dest.unlink()
            file_deleted = True
        except FileNotFoundError:
            warnings.append(f"{name}: file {entry.path} was already missing")
        except OSError as e:
            warnings.append(f"{name}: could not delete {entry.path}: {e}")

        if file_deleted:
            removed_dirs = self._prune_empty_dirs(dest.parent, warnings)

        lock_updated = False
        try:
            lockfile = self.lock_store.load(self.root)
        except PinfileError as e:
            warnings.append(f"{name}: could not load {LOCK_FILENAME}: {e}")
        else:
            if lockfile.packages.pop(name, None) is not None:
                try:
                    self.lock_store.save(self.root, lockfile)
                    lock_updated = True
                except PersistenceError as e:
                    warnings.append(f"{name}: could not update {LOCK_FILENAME}: {e}")
            else:
                warnings.append(f"{name}: no entry in {LOCK_FILENAME}")

        return RemoveResult(
            name=name,
            ref=ref,
            path=entry.path,
            file_deleted=file_deleted,
            lock_updated=lock_updated,
            removed_dirs=tuple(removed_dirs),
            warnings=tuple(warnings),
        )

    def _prune_empty_dirs(self, start: Path, warnings: list[str]) -> list[str]:
        removed: list[str] = []
        current = start
        while True:
            resolved = current.resolve()
            if resolved == self.root or self.root not in resolved.parents:
                break
            try:
                if any(current.iterdir()):
                    break
                current.rmdir()
            except OSError as e:
                warnings.append(f"could not remove empty directory {current}: {e}")
                break
            removed.append(str(resolved.relative_to(self.root)).replace(os.sep, "/"))
            current = current.parent
        return removed

    def status(self) -> list[DependencyStatus]:
        manifest = self.manifest_store.load(self.root)
        lockfile = self.lock_store.load(self.root)
        out: list[DependencyStatus] = []
        for name in sorted(manifest.dependencies):
            entry = manifest.dependencies[name]
            lock_entry = lockfile.packages.get(name)
            out.append(
                DependencyStatus(
                    name=name,
                    source=entry.source,
                    path=entry.path,
                    integrity=lock_entry.integrity if lock_entry else None,
                    locked_source=lock_entry.source if lock_entry else None,
                    file_exists=(self.root / entry.path).is_file(),
                )
            )
        return out
