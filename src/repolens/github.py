"""GitHub REST client - repository metadata and file tree.

Async client over httpx. GETs are idempotent, so transport failures,
timeouts and 5xx responses are retried with exponential backoff; not-found
and rate-limit responses are surfaced immediately as distinct errors.
"""

from __future__ import annotations

import asyncio
import base64
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import httpx

from . import config
from .errors import (
    InvalidInputError,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RequestTimeoutError,
)
from .logger import get_logger
from .schema import FileRecord, RepoMetadata, from_iso

logger = get_logger(__name__)

USER_AGENT = "RepoLens/0.3"
API_VERSION = "2022-11-28"

# URL shapes that point inside a repository rather than at it
_UNSUPPORTED_SEGMENTS = (
    "/tree/", "/blob/", "/commit/", "/pull/", "/issues/",
    "/releases/", "/wiki/", "/actions/",
)

_URL_PATTERNS = [
    re.compile(r"^https?://(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+?)(?:\.git)?/?$"),
    re.compile(r"^(?:www\.)?github\.com/([^/\s]+)/([^/\s#?]+?)(?:\.git)?/?$"),
    re.compile(r"^git@github\.com:([^/\s]+)/([^/\s]+?)(?:\.git)?$"),
    re.compile(r"^([A-Za-z0-9][A-Za-z0-9-]*)/([A-Za-z0-9._-]+?)(?:\.git)?$"),  # owner/repo
]

_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,38})$")
_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")


def repo_id(owner: str, name: str) -> str:
    """Stable repository key. Owners cannot contain `_`, so `__` is unambiguous."""
    return f"{owner}__{name}".lower()


@dataclass(frozen=True)
class RepoRef:
    owner: str
    name: str

    @property
    def id(self) -> str:
        return repo_id(self.owner, self.name)

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @property
    def url(self) -> str:
        return f"https://github.com/{self.owner}/{self.name}"


def parse_github_url(reference: str) -> RepoRef:
    """Parse a repository URL or `owner/repo` shorthand.

    Raises InvalidInputError for branch, file, PR and other deep links, and
    for anything that is not a repository reference at all.
    """
    cleaned = (reference or "").strip()
    if not cleaned:
        raise InvalidInputError("Repository reference is empty")

    if any(segment in cleaned for segment in _UNSUPPORTED_SEGMENTS):
        raise InvalidInputError(
            "Branch-specific and other deep GitHub URLs are not supported. "
            "Use the repository URL, e.g. https://github.com/owner/repo"
        )

    for pattern in _URL_PATTERNS:
        match = pattern.match(cleaned)
        if not match:
            continue
        owner, name = match.group(1), match.group(2)
        if _OWNER_RE.match(owner) and _NAME_RE.match(name) and name not in (".", ".."):
            return RepoRef(owner=owner, name=name)

    raise InvalidInputError(
        f"Invalid GitHub repository reference: {reference!r}. "
        "Use https://github.com/owner/repo or owner/repo"
    )


def citation_url(
    full_name: str,
    path: str,
    line: int | None = None,
    branch: str = "main",
) -> str:
    """GitHub blob link for a file, optionally anchored to a line."""
    url = f"https://github.com/{full_name}/blob/{branch}/{path}"
    return f"{url}#L{line}" if line else url


@dataclass
class RateLimitInfo:
    limit: int
    remaining: int
    reset: int  # unix timestamp
    resource: str = "core"

    @property
    def reset_at(self) -> datetime:
        return datetime.fromtimestamp(self.reset, tz=timezone.utc)


@dataclass
class FileTree:
    sha: str
    files: list[FileRecord]
    truncated: bool = False


class GitHubClient:
    """Async client for the GitHub REST API.

    Construct once at process start and close with `aclose()` (or use
    `async with`). Pass `transport` to substitute an httpx mock transport.
    """

    def __init__(
        self,
        token: str = config.GITHUB_TOKEN,
        base_url: str = config.GITHUB_API_BASE,
        timeout: float = config.HTTP_TIMEOUT,
        max_retries: int = config.HTTP_MAX_RETRIES,
        retry_base_delay: float = config.RETRY_BASE_DELAY,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.rate_limit: RateLimitInfo | None = None

        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
            "X-GitHub-Api-Version": API_VERSION,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Public API ---

    async def fetch_metadata(self, owner: str, name: str) -> RepoMetadata:
        """GET /repos/{owner}/{name}."""
        data = await self._get(f"/repos/{owner}/{name}", not_found=f"{owner}/{name}")
        return RepoMetadata(
            full_name=data.get("full_name") or f"{owner}/{name}",
            url=data.get("html_url") or f"https://github.com/{owner}/{name}",
            stars=data.get("stargazers_count", 0),
            forks=data.get("forks_count", 0),
            default_branch=data.get("default_branch") or "main",
            pushed_at=from_iso(data.get("pushed_at")),
            description=data.get("description"),
            primary_language=data.get("language"),
        )

    async def fetch_file_tree(self, owner: str, name: str, branch: str) -> FileTree:
        """Recursive git tree of `branch`, files (blobs) only."""
        data = await self._get(
            f"/repos/{owner}/{name}/git/trees/{branch}",
            params={"recursive": "1"},
            not_found=f"{owner}/{name}@{branch}",
        )
        files = [
            FileRecord(path=item["path"], size=item.get("size") or 0, sha=item.get("sha", ""))
            for item in data.get("tree", [])
            if item.get("type") == "blob"
        ]
        truncated = bool(data.get("truncated"))
        if truncated:
            logger.warning(
                "File tree for %s/%s was truncated by GitHub (%d files returned)",
                owner, name, len(files),
            )
        return FileTree(sha=data.get("sha", ""), files=files, truncated=truncated)

    async def fetch_file_content(self, owner: str, name: str, path: str, ref: str | None = None) -> str:
        """Decoded text of one file."""
        params = {"ref": ref} if ref else None
        data = await self._get(
            f"/repos/{owner}/{name}/contents/{path}",
            params=params,
            not_found=f"{owner}/{name}:{path}",
        )
        if isinstance(data, list) or data.get("type") != "file":
            raise InvalidInputError(f"Path {path} is not a file")

        if data.get("content") and data.get("encoding") == "base64":
            raw = base64.b64decode(data["content"].replace("\n", ""))
            return raw.decode("utf-8", errors="replace")

        download_url = data.get("download_url")
        if download_url:
            resp = await self._request_with_retries(download_url, None)
            if resp.status_code != 200:
                raise NetworkError(f"Failed to download {path}: HTTP {resp.status_code}")
            return resp.text

        raise InvalidInputError(f"Unable to decode content of {path}")

    # --- Internals ---

    async def _get(self, endpoint: str, params: dict | None = None, not_found: str = "") -> Any:
        self._check_known_rate_limit()
        resp = await self._request_with_retries(endpoint, params)
        self._update_rate_limit(resp.headers)

        if resp.status_code == 200:
            return resp.json()

        message = _error_message(resp)

        if resp.status_code in (403, 429) and self._is_rate_limited(resp, message):
            reset_at = self.rate_limit.reset_at if self.rate_limit else None
            logger.warning("GitHub rate limit exhausted; resets at %s", reset_at)
            raise RateLimitedError(message, reset_at=reset_at, remaining=0)

        if resp.status_code == 404:
            raise NotFoundError(f"Repository or path {not_found or endpoint} not found or is private")

        if resp.status_code == 403:
            raise NotFoundError(
                f"Access to {not_found or endpoint} denied. Only public repositories are supported"
            )

        if resp.status_code in (400, 409, 422):
            raise InvalidInputError(f"GitHub rejected request for {not_found or endpoint}: {message}")

        raise NetworkError(f"GitHub returned {resp.status_code}: {message}")

    async def _request_with_retries(self, url: str, params: dict | None) -> httpx.Response:
        """GET with bounded retries on transport errors, timeouts and 5xx."""
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            last = attempt == attempts - 1
            try:
                resp = await self._client.get(url, params=params)
            except httpx.TimeoutException as e:
                if last:
                    raise RequestTimeoutError(f"GitHub request timed out: {url}") from e
                reason = "timeout"
            except httpx.TransportError as e:
                if last:
                    raise NetworkError(f"Cannot reach GitHub: {e}") from e
                reason = type(e).__name__
            else:
                if resp.status_code < 500 or last:
                    return resp
                reason = f"HTTP {resp.status_code}"

            delay = self.retry_base_delay * (2 ** attempt)
            logger.warning(
                "GitHub GET %s failed (%s), retry %d/%d in %.1fs",
                url, reason, attempt + 1, self.max_retries, delay,
            )
            await asyncio.sleep(delay)

        raise NetworkError(f"GitHub request failed: {url}")  # unreachable

    def _check_known_rate_limit(self) -> None:
        info = self.rate_limit
        if info and info.remaining <= 0 and datetime.now(timezone.utc) < info.reset_at:
            raise RateLimitedError(
                f"Rate limit exceeded. Reset at {info.reset_at.isoformat()}",
                reset_at=info.reset_at,
                remaining=0,
            )

    def _update_rate_limit(self, headers: httpx.Headers) -> None:
        limit = headers.get("x-ratelimit-limit")
        remaining = headers.get("x-ratelimit-remaining")
        reset = headers.get("x-ratelimit-reset")
        if limit and remaining and reset:
            self.rate_limit = RateLimitInfo(
                limit=int(limit),
                remaining=int(remaining),
                reset=int(reset),
                resource=headers.get("x-ratelimit-resource", "core"),
            )

    def _is_rate_limited(self, resp: httpx.Response, message: str) -> bool:
        if resp.status_code == 429:
            return True
        if resp.headers.get("x-ratelimit-remaining") == "0":
            return True
        return "rate limit" in message.lower()


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return resp.reason_phrase
