from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Literal

from .client import PinfileError
from .source import is_commit_like

COMMIT_PREFIX = "commit:"
SHA256_PREFIX = "sha256:"

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")


class IntegrityError(PinfileError):
    pass


@dataclass(frozen=True)
class Integrity:
    kind: Literal["commit", "sha256"]
    value: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.value}"


def fingerprint(data: bytes) -> str:
    return SHA256_PREFIX + hashlib.sha256(data).hexdigest()


def parse_integrity(value: str) -> Integrity:
    raw = value.strip()
    if raw.startswith(COMMIT_PREFIX):
        sha = raw[len(COMMIT_PREFIX) :]
        if is_commit_like(sha):
            return Integrity(kind="commit", value=sha)
    elif raw.startswith(SHA256_PREFIX):
        digest = raw[len(SHA256_PREFIX) :]
        if _SHA256_RE.match(digest):
            return Integrity(kind="sha256", value=digest)
    raise IntegrityError(f"Invalid integrity {value!r}. Expected commit:<sha> or sha256:<hex>.")


def select_integrity(ref: str, data: bytes) -> str:
    """commit:<ref> when the fetch was pinned to a commit, else the content fingerprint."""
    if is_commit_like(ref):
        return COMMIT_PREFIX + ref
    return fingerprint(data)
