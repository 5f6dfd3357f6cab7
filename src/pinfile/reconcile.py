"""
Staleness policy for vendored files.

`Reconciler.decide` evaluates ordered rules; the first match wins:

    1. forced by caller
    2. declared but never locked
    3. local file missing
    3b. lock entry present but its integrity is unreadable
    4. commit drift / upgradeable from content-hash pin to commit pin
    5. up to date

The engine never downloads or writes. Rule 4 is the only rule that may touch
the network (one commit-history lookup through the resolver).
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from .integrity import IntegrityError, parse_integrity
from .logging import get_logger
from .project import LockEntry, Lockfile, Manifest, ManifestEntry
from .resolver import ReferenceResolver, ResolutionError
from .source import ParseError, SourceDescriptor, SourceParser, is_commit_like

log = get_logger("reconcile")

REASON_FORCED = "forced by caller"
REASON_NEVER_LOCKED = "declared but never locked"
REASON_FILE_MISSING = "local file missing"
REASON_COMMIT_DRIFT = "commit drift"
REASON_UPGRADE_PIN = "upgradeable from content-hash pin to commit pin"
REASON_INVALID_LOCK = "locked integrity is invalid"


@dataclass(frozen=True)
class Verdict:
    name: str
    needs_action: bool
    reason: str | None
    target: SourceDescriptor
    warnings: tuple[str, ...] = ()
    remote_checked: bool = False  # rule 4 ran; target is already resolved when possible

    @property
    def up_to_date(self) -> bool:
        return not self.needs_action


@dataclass(frozen=True)
class Failure:
    name: str
    step: str
    message: str

    def __str__(self) -> str:
        return f"{self.name}: {self.step} failed: {self.message}"


@dataclass(frozen=True)
class Plan:
    verdicts: tuple[Verdict, ...]
    failures: tuple[Failure, ...]

    @property
    def pending(self) -> tuple[Verdict, ...]:
        return tuple(v for v in self.verdicts if v.needs_action)

    @property
    def up_to_date(self) -> tuple[Verdict, ...]:
        return tuple(v for v in self.verdicts if not v.needs_action)

    @property
    def warnings(self) -> tuple[str, ...]:
        return tuple(w for v in self.verdicts for w in v.warnings)


def _same_commit(a: str, b: str) -> bool:
    if a == b:
        return True
    # An abbreviated commit matches the full sha it prefixes.
    if is_commit_like(a) and is_commit_like(b):
        short, full = sorted((a, b), key=len)
        return full.startswith(short)
    return False


class Reconciler:
    def __init__(self, parser: SourceParser, resolver: ReferenceResolver) -> None:
        self.parser = parser
        self.resolver = resolver

    def decide(
        self,
        entry: ManifestEntry,
        lock_entry: LockEntry | None,
        local_file_exists: bool,
        forced: bool = False,
    ) -> Verdict:
        declared = self.parser.parse(entry.source)

        if forced:
            return Verdict(entry.name, True, REASON_FORCED, declared)
        if lock_entry is None:
            return Verdict(entry.name, True, REASON_NEVER_LOCKED, declared)
        if not local_file_exists:
            return Verdict(entry.name, True, REASON_FILE_MISSING, declared)

        try:
            locked = parse_integrity(lock_entry.integrity)
        except IntegrityError as e:
            return Verdict(entry.name, True, REASON_INVALID_LOCK, declared, (f"{entry.name}: {e}",))

        warnings: list[str] = []
        try:
            target = self.resolver.resolve(declared)
            resolved = True
        except ResolutionError as e:
            # Degraded mode: compare the unresolved ref against the lock.
            target = declared
            resolved = False
            warnings.append(f"{entry.name}: could not resolve ref {declared.ref!r}, comparing it as-is ({e})")

        if locked.kind == "commit" and not _same_commit(target.ref, locked.value):
            return Verdict(entry.name, True, REASON_COMMIT_DRIFT, target, tuple(warnings), remote_checked=True)
        if locked.kind == "sha256" and resolved and is_commit_like(target.ref):
            return Verdict(entry.name, True, REASON_UPGRADE_PIN, target, tuple(warnings), remote_checked=True)
        return Verdict(entry.name, False, None, target, tuple(warnings), remote_checked=True)

    def plan(
        self,
        manifest: Manifest,
        lockfile: Lockfile,
        *,
        root: Path,
        names: Iterable[str] = (),
        forced: bool = False,
    ) -> Plan:
        wanted = list(dict.fromkeys(names))
        failures: list[Failure] = []
        entries: list[ManifestEntry] = []
        if wanted:
            for name in wanted:
                entry = manifest.dependencies.get(name)
                if entry is None:
                    failures.append(Failure(name, "lookup", "dependency is not declared in the manifest"))
                    continue
                entries.append(entry)
        else:
            entries = [manifest.dependencies[k] for k in sorted(manifest.dependencies)]

        verdicts: list[Verdict] = []
        for entry in entries:
            local_path = root / entry.path
            try:
                verdict = self.decide(
                    entry,
                    lockfile.packages.get(entry.name),
                    local_path.is_file(),
                    forced,
                )
            except ParseError as e:
                failures.append(Failure(entry.name, "parse", str(e)))
                continue
            if verdict.needs_action:
                log.debug("%s needs action: %s", entry.name, verdict.reason)
            else:
                log.debug("%s is up to date", entry.name)
            verdicts.append(verdict)

        return Plan(verdicts=tuple(verdicts), failures=tuple(failures))
