from __future__ import annotations

from dataclasses import replace
from typing import Any, Protocol
from urllib.parse import urlsplit, urlunsplit

from .client import PinfileError, TransportError
from .logging import get_logger
from .source import SourceDescriptor, is_commit_like

log = get_logger("resolver")


class ResolutionError(PinfileError):
    pass


class CommitHistory(Protocol):
    def list_commits(self, owner: str, repo: str, path: str, ref: str, *, per_page: int = 1) -> list[dict[str, Any]]:
        ...


def pin_fetch_url(descriptor: SourceDescriptor, commit: str) -> str:
    """Swap the ref in `/<owner>/<repo>/<ref>/<path>` at the end of the fetch URL for `commit`."""
    parts = urlsplit(descriptor.fetch_url)
    suffix = f"/{descriptor.owner}/{descriptor.repo}/{descriptor.ref}/{descriptor.path_in_repo}"
    if not parts.path.endswith(suffix):
        raise ResolutionError(f"Cannot pin {descriptor.fetch_url}: expected it to end with {suffix}.")
    prefix = parts.path[: -len(suffix)]
    path = f"{prefix}/{descriptor.owner}/{descriptor.repo}/{commit}/{descriptor.path_in_repo}"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


class ReferenceResolver:
    def __init__(self, history: CommitHistory) -> None:
        self._history = history

    def resolve(self, descriptor: SourceDescriptor) -> SourceDescriptor:
        if is_commit_like(descriptor.ref):
            log.debug("ref %s of %s is commit-like; using it as-is", descriptor.ref, descriptor.canonical_id)
            return descriptor

        label = f"{descriptor.owner}/{descriptor.repo}/{descriptor.path_in_repo}@{descriptor.ref}"
        try:
            commits = self._history.list_commits(
                descriptor.owner,
                descriptor.repo,
                descriptor.path_in_repo,
                descriptor.ref,
                per_page=1,
            )
        except TransportError as e:
            raise ResolutionError(f"Could not resolve {label} to a commit: {e}") from e

        if not commits:
            raise ResolutionError(
                f"no commits found for path {descriptor.path_in_repo!r} at ref {descriptor.ref!r} "
                f"in {descriptor.owner}/{descriptor.repo}. The file may not exist on that ref."
            )
        sha = commits[0].get("sha")
        if not isinstance(sha, str) or not sha.strip():
            raise ResolutionError(f"Commit history for {label} returned an entry without a sha.")
        sha = sha.strip().lower()

        log.debug("resolved %s to commit %s", label, sha)
        return replace(descriptor, ref=sha, fetch_url=pin_fetch_url(descriptor, sha))
