"""Async GitHub client for starred-repository ingestion."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from starshelf.config.settings import settings
from starshelf.sanitize import sanitize_log_extra

logger = logging.getLogger(__name__)

ACCESS_BLOCKED_MESSAGE = "Repository access blocked"


class GitHubError(Exception):
    """Base class for GitHub API failures."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubNotFoundError(GitHubError):
    """The requested resource does not exist (or is hidden from this token)."""


class GitHubAccessBlockedError(GitHubError):
    """GitHub blocks access to the repository (DMCA, ToS, legal holds)."""


class GitHubRateLimitError(GitHubError):
    """Rate limit still in force after the client's own retries."""


class _RateLimitRetryableError(Exception):
    """Retryable rate-limit signal for tenacity."""


def has_next_page(link_header: Optional[str]) -> bool:
    """True when a `Link` response header advertises a next page."""
    return 'rel="next"' in (link_header or "")


@dataclass(slots=True)
class StarredPage:
    """One page of `/user/starred` in the star media type."""

    page: int
    items: list[dict[str, Any]] = field(default_factory=list)
    link: Optional[str] = None

    @property
    def has_next(self) -> bool:
        return has_next_page(self.link)


class GitHubClient:
    """GitHub REST client with rate-limit resilience."""

    API_VERSION = "2022-11-28"
    ACCEPT_JSON = "application/vnd.github+json"
    ACCEPT_STARRED = "application/vnd.github.star+json"
    ACCEPT_RAW = "application/vnd.github.raw+json"

    def __init__(
        self,
        *,
        token: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
        rate_limit_buffer_seconds: Optional[int] = None,
        base_url: Optional[str] = None,
        transport: Optional[Any] = None,
    ) -> None:
        self._token = token or settings.GITHUB_TOKEN
        self._timeout_seconds = timeout_seconds or settings.GITHUB_TIMEOUT_SECONDS
        self._max_retries = max_retries or settings.GITHUB_MAX_RETRIES
        self._backoff_base_seconds = (
            settings.GITHUB_BACKOFF_BASE_SECONDS if backoff_base_seconds is None else backoff_base_seconds
        )
        self._backoff_max_seconds = backoff_max_seconds or settings.GITHUB_BACKOFF_MAX_SECONDS
        self._rate_limit_buffer_seconds = (
            settings.GITHUB_RATE_LIMIT_BUFFER_SECONDS if rate_limit_buffer_seconds is None else rate_limit_buffer_seconds
        )
        self._base_url = base_url or settings.GITHUB_API_BASE_URL
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "GitHubClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def list_starred_page(self, *, page: int = 1, per_page: int = 100) -> StarredPage:
        """List repositories starred by the authenticated user, with `starred_at`."""

        response = await self._request(
            "/user/starred",
            params={"page": page, "per_page": per_page},
            accept=self.ACCEPT_STARRED,
        )
        payload = response.json()
        items = [item for item in payload if isinstance(item, dict)] if isinstance(payload, list) else []
        return StarredPage(page=page, items=items, link=response.headers.get("link"))

    async def fetch_readme_raw(self, owner: str, repo: str) -> str:
        """Fetch the default README as raw text."""

        response = await self._request(f"/repos/{owner}/{repo}/readme", accept=self.ACCEPT_RAW)
        return response.text

    async def _request(
        self,
        path: str,
        *,
        params: Optional[dict[str, Any]] = None,
        accept: Optional[str] = None,
    ) -> httpx.Response:
        client = await self._ensure_client()
        headers = {"Accept": accept} if accept else {}

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._max_retries),
                wait=wait_exponential(multiplier=self._backoff_base_seconds, max=self._backoff_max_seconds),
                retry=retry_if_exception_type(_RateLimitRetryableError),
                reraise=True,
            ):
                with attempt:
                    response = await client.get(path, params=params, headers=headers)

                    if self._is_rate_limited(response):
                        wait_seconds = self._compute_rate_limit_wait(response.headers)
                        logger.warning(
                            "GitHub API rate limit encountered",
                            extra=sanitize_log_extra(
                                path=path,
                                params=params,
                                status_code=response.status_code,
                                retry_after_seconds=wait_seconds,
                            ),
                        )
                        if wait_seconds > 0:
                            await asyncio.sleep(wait_seconds)
                        raise _RateLimitRetryableError(
                            f"GitHub rate limit encountered ({response.status_code})"
                        )

                    self._raise_for_known_errors(path, response)
                    response.raise_for_status()
                    return response
        except _RateLimitRetryableError as exc:
            logger.warning(
                "GitHub request failed after rate-limit retries",
                extra=sanitize_log_extra(path=path, params=params, error=str(exc)),
            )
            raise GitHubRateLimitError(str(exc), status_code=429) from exc

        raise GitHubError(f"Unknown GitHub request failure for {path}")

    @staticmethod
    def _is_rate_limited(response: httpx.Response) -> bool:
        if response.status_code == 429:
            return True
        if response.status_code != 403:
            return False
        if response.headers.get("retry-after") is not None:
            return True
        return response.headers.get("x-ratelimit-remaining") == "0"

    @staticmethod
    def _raise_for_known_errors(path: str, response: httpx.Response) -> None:
        if response.status_code == 404:
            raise GitHubNotFoundError(f"Not Found: {path}", status_code=404)

        if response.status_code == 451:
            raise GitHubAccessBlockedError(f"{ACCESS_BLOCKED_MESSAGE}: {path}", status_code=451)

        if response.status_code == 403 and ACCESS_BLOCKED_MESSAGE.lower() in _error_message(response).lower():
            raise GitHubAccessBlockedError(f"{ACCESS_BLOCKED_MESSAGE}: {path}", status_code=403)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client:
            return self._client

        headers = {
            "Accept": self.ACCEPT_JSON,
            "User-Agent": settings.USER_AGENT,
            "X-GitHub-Api-Version": self.API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout_seconds,
            transport=self._transport,
        )
        return self._client

    def _compute_rate_limit_wait(self, headers: httpx.Headers) -> float:
        retry_after = headers.get("retry-after")
        if retry_after is not None:
            try:
                return max(float(retry_after), 0.0)
            except ValueError:
                pass

        reset_raw = headers.get("x-ratelimit-reset")
        if reset_raw is not None:
            try:
                reset_epoch = int(reset_raw)
                wait_seconds = reset_epoch - int(time.time()) + self._rate_limit_buffer_seconds
                return float(max(wait_seconds, 0))
            except ValueError:
                pass

        return self._backoff_base_seconds


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text or ""
    if isinstance(payload, dict):
        return str(payload.get("message") or "")
    return ""
