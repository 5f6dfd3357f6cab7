"""
Source identifier grammar.

Accepted inputs, each classified into a named production before it becomes a
`SourceDescriptor`:

    github:<owner>/<repo>/<path...>@<ref>                 Shorthand
    https://<raw host>/<owner>/<repo>/<ref>/<path...>     RawURL
    https://<web host>/<owner>/<repo>/blob/<ref>/<path>   BlobURL (also /raw/)
    https://<web host>/<owner>/<repo>/<path...>@<ref>     AmbiguousURL

Shorthand and AmbiguousURL split on the LAST "@", so an "@" inside the path
is kept as long as the ref separator comes after it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal, Union
from urllib.parse import urlsplit

from .client import PinfileError
from .config import DEFAULT_RAW_BASE_URL, DEFAULT_RAW_HOSTS, DEFAULT_WEB_HOSTS, Config

SHORTHAND_PREFIX = "github:"
PROVIDER_GITHUB = "github"

_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$")


class ParseError(PinfileError):
    pass


def is_commit_like(ref: str) -> bool:
    """True for 7-40 lowercase hex characters, the shape that skips remote resolution."""
    return bool(_COMMIT_RE.match(ref))


def canonical_id(owner: str, repo: str, path_in_repo: str, ref: str, *, provider: str = PROVIDER_GITHUB) -> str:
    return f"{provider}:{owner}/{repo}/{path_in_repo}@{ref}"


@dataclass(frozen=True)
class HostConfig:
    web_hosts: tuple[str, ...] = DEFAULT_WEB_HOSTS
    raw_hosts: tuple[str, ...] = DEFAULT_RAW_HOSTS
    raw_base_url: str = DEFAULT_RAW_BASE_URL

    @classmethod
    def from_config(cls, cfg: Config) -> "HostConfig":
        raw_hosts = [h.lower() for h in cfg.raw_hosts]
        base_host = urlsplit(cfg.raw_base_url).hostname
        if base_host and base_host.lower() not in raw_hosts:
            raw_hosts.append(base_host.lower())
        return cls(
            web_hosts=tuple(h.lower() for h in cfg.web_hosts),
            raw_hosts=tuple(raw_hosts),
            raw_base_url=cfg.raw_base_url,
        )

    def raw_url(self, owner: str, repo: str, ref: str, path_in_repo: str) -> str:
        return f"{self.raw_base_url.rstrip('/')}/{owner}/{repo}/{ref}/{path_in_repo}"


@dataclass(frozen=True)
class SourceDescriptor:
    provider: Literal["github"]
    owner: str
    repo: str
    path_in_repo: str
    ref: str
    fetch_url: str

    @property
    def suggested_filename(self) -> str:
        return self.path_in_repo.rsplit("/", 1)[-1]

    @property
    def canonical_id(self) -> str:
        return canonical_id(self.owner, self.repo, self.path_in_repo, self.ref, provider=self.provider)


def _descriptor(
    raw: str,
    *,
    owner: str,
    repo: str,
    path_in_repo: str,
    ref: str,
    fetch_url: str,
) -> SourceDescriptor:
    if not owner or not repo:
        raise ParseError(f"Invalid source {raw!r}: owner and repo must not be empty.")
    if not path_in_repo:
        raise ParseError(f"Invalid source {raw!r}: a file path inside the repository is required.")
    if any(not seg for seg in path_in_repo.split("/")):
        raise ParseError(f"Invalid source {raw!r}: path {path_in_repo!r} contains an empty segment.")
    if not ref:
        raise ParseError(f"Invalid source {raw!r}: empty ref.")
    return SourceDescriptor(
        provider=PROVIDER_GITHUB,
        owner=owner,
        repo=repo,
        path_in_repo=path_in_repo,
        ref=ref,
        fetch_url=fetch_url,
    )


@dataclass(frozen=True)
class Shorthand:
    raw: str
    owner: str
    repo: str
    path_in_repo: str
    ref: str

    def to_descriptor(self, hosts: HostConfig) -> SourceDescriptor:
        return _descriptor(
            self.raw,
            owner=self.owner,
            repo=self.repo,
            path_in_repo=self.path_in_repo,
            ref=self.ref,
            fetch_url=hosts.raw_url(self.owner, self.repo, self.ref, self.path_in_repo),
        )


@dataclass(frozen=True)
class RawURL:
    raw: str
    owner: str
    repo: str
    ref: str
    path_in_repo: str

    def to_descriptor(self, hosts: HostConfig) -> SourceDescriptor:
        # Already a fetchable URL.
        return _descriptor(
            self.raw,
            owner=self.owner,
            repo=self.repo,
            path_in_repo=self.path_in_repo,
            ref=self.ref,
            fetch_url=self.raw,
        )


@dataclass(frozen=True)
class BlobURL:
    raw: str
    kind: Literal["blob", "raw"]
    owner: str
    repo: str
    ref: str
    path_in_repo: str

    def to_descriptor(self, hosts: HostConfig) -> SourceDescriptor:
        return _descriptor(
            self.raw,
            owner=self.owner,
            repo=self.repo,
            path_in_repo=self.path_in_repo,
            ref=self.ref,
            fetch_url=hosts.raw_url(self.owner, self.repo, self.ref, self.path_in_repo),
        )


@dataclass(frozen=True)
class AmbiguousURL:
    raw: str
    owner: str
    repo: str
    path_with_ref: str

    def to_descriptor(self, hosts: HostConfig) -> SourceDescriptor:
        if not self.path_with_ref:
            raise ParseError(f"Invalid source {self.raw!r}: a file path inside the repository is required.")
        at_idx = self.path_with_ref.rfind("@")
        if at_idx == -1:
            # No implicit default-branch lookup.
            raise ParseError(
                f"Ambiguous GitHub URL {self.raw!r}: ref required. "
                "Append @<branch|tag|commit> to the file path or use a /blob/<ref>/ URL."
            )
        path_in_repo = self.path_with_ref[:at_idx]
        ref = self.path_with_ref[at_idx + 1 :]
        return _descriptor(
            self.raw,
            owner=self.owner,
            repo=self.repo,
            path_in_repo=path_in_repo,
            ref=ref,
            fetch_url=hosts.raw_url(self.owner, self.repo, ref, path_in_repo),
        )


Production = Union[Shorthand, RawURL, BlobURL, AmbiguousURL]


class SourceParser:
    def __init__(self, hosts: HostConfig | None = None) -> None:
        self.hosts = hosts or HostConfig()

    def parse(self, raw: str) -> SourceDescriptor:
        return self.classify(raw).to_descriptor(self.hosts)

    def classify(self, raw: str) -> Production:
        value = raw.strip()
        if not value:
            raise ParseError("Source must not be empty.")
        if value.startswith(SHORTHAND_PREFIX):
            return self._classify_shorthand(value)
        return self._classify_url(value)

    def _classify_shorthand(self, value: str) -> Shorthand:
        content = value[len(SHORTHAND_PREFIX) :]
        at_idx = content.rfind("@")
        if at_idx == -1:
            raise ParseError(f"Invalid shorthand source {value!r}: missing ref (e.g. @main or @<commit>).")
        ref = content[at_idx + 1 :]
        if not ref:
            raise ParseError(f"Invalid shorthand source {value!r}: empty ref after '@'.")

        segments = content[:at_idx].split("/")
        if len(segments) < 3:
            raise ParseError(
                f"Invalid shorthand source {value!r}: owner/repo/path required, got {content[:at_idx]!r}."
            )
        owner, repo = segments[0], segments[1]
        path_in_repo = "/".join(segments[2:])
        if not owner or not repo or not segments[-1]:
            raise ParseError(f"Invalid shorthand source {value!r}: owner, repo and filename must not be empty.")
        return Shorthand(raw=value, owner=owner, repo=repo, path_in_repo=path_in_repo, ref=ref)

    def _classify_url(self, value: str) -> Production:
        try:
            parts = urlsplit(value)
        except ValueError as e:
            raise ParseError(f"Could not parse source URL {value!r}: {e}") from e
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ParseError(
                f"Unsupported source {value!r}. Use github:<owner>/<repo>/<path>@<ref> or a GitHub URL."
            )

        host = (parts.hostname or "").lower()
        if host not in self.hosts.raw_hosts and host not in self.hosts.web_hosts:
            raise ParseError(f"Unsupported source host: {host}. Only GitHub URLs are currently supported.")

        path = parts.path
        if path.endswith("/"):
            raise ParseError(f"Source URL {value!r} points to a directory, not a file.")
        segments = path.lstrip("/").split("/")

        if host in self.hosts.raw_hosts:
            if len(segments) < 4:
                raise ParseError(
                    f"Invalid raw content URL path {path!r}. Expected /<owner>/<repo>/<ref>/<path/to/file>."
                )
            return RawURL(
                raw=value,
                owner=segments[0],
                repo=segments[1],
                ref=segments[2],
                path_in_repo="/".join(segments[3:]),
            )

        if len(segments) < 2 or not segments[0] or not segments[1]:
            raise ParseError(f"Invalid GitHub URL path {path!r}. Expected at least /<owner>/<repo>.")
        owner, repo = segments[0], segments[1]

        if len(segments) >= 3 and segments[2] in ("blob", "raw", "tree"):
            kind = segments[2]
            if kind == "tree":
                raise ParseError(
                    f"GitHub tree links point to directories and cannot be added as a single file: {value}"
                )
            if len(segments) < 5:
                raise ParseError(
                    f"Incomplete GitHub URL path {path!r}. Expected /<owner>/<repo>/{kind}/<ref>/<path/to/file>."
                )
            return BlobURL(
                raw=value,
                kind="blob" if kind == "blob" else "raw",
                owner=owner,
                repo=repo,
                ref=segments[3],
                path_in_repo="/".join(segments[4:]),
            )

        return AmbiguousURL(raw=value, owner=owner, repo=repo, path_with_ref="/".join(segments[2:]))
