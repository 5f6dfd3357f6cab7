from __future__ import annotations

from typing import Any
from urllib.parse import quote, urlsplit, urlunsplit

import httpx

from ._version import __version__
from .config import DEFAULT_API_URL, DEFAULT_TIMEOUT_S
from .logging import get_logger

log = get_logger("client")


class PinfileError(RuntimeError):
    pass


class TransportError(PinfileError):
    """A request failed in transit or came back with a non-2xx status."""

    def __init__(self, message: str, *, url: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code
        self.body = body


def _origin(url: str) -> str | None:
    try:
        parts = urlsplit(url)
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit((parts.scheme, parts.netloc.lower(), "", "", "")).rstrip("/")


class GitHubClient:
    """
    Blocking HTTP client for raw file downloads and the commit-history endpoint.

    It satisfies both the downloader (`fetch`) and the commit history (`list_commits`)
    collaborators, so one connection pool serves a whole command.
    """

    def __init__(
        self,
        *,
        api_url: str = DEFAULT_API_URL,
        token: str | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s
        self._default_headers = {"User-Agent": f"pinfile/{__version__}"}
        self._default_headers.update(default_headers or {})

        self._http = httpx.Client(timeout=timeout_s, follow_redirects=True)

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "GitHubClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _auth_for_url(self, url: str) -> bool:
        # Never leak the API token to raw content or third-party hosts.
        if not self.token:
            return False
        url_origin = _origin(url)
        return bool(url_origin and url_origin == _origin(self.api_url))

    def request(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        req_headers = dict(self._default_headers)
        if headers:
            req_headers.update(headers)
        if self._auth_for_url(url):
            req_headers["Authorization"] = f"Bearer {self.token}"

        log.debug("%s %s params=%s", method.upper(), url, params)
        try:
            resp = self._http.request(method.upper(), url, params=params, headers=req_headers)
        except httpx.HTTPError as e:
            raise TransportError(f"Request to {url} failed: {e}", url=url) from e

        if not resp.is_success:
            raise TransportError(
                f"Request to {url} failed with status {resp.status_code}",
                url=url,
                status_code=resp.status_code,
                body=resp.text,
            )
        return resp

    def fetch(self, url: str) -> bytes:
        resp = self.request(method="GET", url=url)
        log.debug("downloaded %d bytes from %s", len(resp.content), url)
        return resp.content

    def list_commits(self, owner: str, repo: str, path: str, ref: str, *, per_page: int = 1) -> list[dict[str, Any]]:
        url = f"{self.api_url}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}/commits"
        resp = self.request(
            method="GET",
            url=url,
            params={"path": path, "sha": ref, "per_page": per_page},
            headers={"Accept": "application/vnd.github.v3+json"},
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise TransportError(f"Could not decode commit history from {url}: {e}", url=url) from e
        if not isinstance(data, list):
            raise TransportError(f"Unexpected commit history payload from {url}: expected a JSON array", url=url)
        return [item for item in data if isinstance(item, dict)]
