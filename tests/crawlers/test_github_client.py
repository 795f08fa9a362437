from __future__ import annotations

import asyncio
from typing import Callable

import httpx
import pytest

from starshelf.crawlers.client import (
    GitHubAccessBlockedError,
    GitHubClient,
    GitHubNotFoundError,
    GitHubRateLimitError,
    has_next_page,
)


def _client(handler: Callable[[httpx.Request], httpx.Response], *, max_retries: int = 3) -> GitHubClient:
    return GitHubClient(
        token="ghp_testtoken",
        max_retries=max_retries,
        backoff_base_seconds=0,
        backoff_max_seconds=0.01,
        base_url="https://api.github.test",
        transport=httpx.MockTransport(handler),
    )


def test_has_next_page_reads_link_header() -> None:
    assert has_next_page('<https://api.github.com/user/starred?page=2>; rel="next", <...>; rel="last"') is True
    assert has_next_page('<https://api.github.com/user/starred?page=1>; rel="prev"') is False
    assert has_next_page(None) is False


def test_list_starred_page_uses_star_media_type() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[{"starred_at": "2025-01-01T00:00:00Z", "repo": {"id": 1, "full_name": "octocat/Hello-World"}}],
            headers={"link": '<https://api.github.test/user/starred?page=3>; rel="next"'},
        )

    async def _run():
        async with _client(handler) as client:
            return await client.list_starred_page(page=2, per_page=100)

    page = asyncio.run(_run())

    assert page.page == 2
    assert page.has_next is True
    assert page.items[0]["repo"]["full_name"] == "octocat/Hello-World"
    assert seen[0].url.path == "/user/starred"
    assert seen[0].url.params["page"] == "2"
    assert seen[0].url.params["per_page"] == "100"
    assert seen[0].headers["accept"] == "application/vnd.github.star+json"
    assert seen[0].headers["authorization"] == "Bearer ghp_testtoken"


def test_fetch_readme_raw_returns_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/repos/octocat/Hello-World/readme"
        assert request.headers["accept"] == "application/vnd.github.raw+json"
        return httpx.Response(200, text="# Hello World\n")

    async def _run():
        async with _client(handler) as client:
            return await client.fetch_readme_raw("octocat", "Hello-World")

    assert asyncio.run(_run()) == "# Hello World\n"


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (404, {"message": "Not Found"}, GitHubNotFoundError),
        (451, {"message": "Repository access blocked"}, GitHubAccessBlockedError),
        (403, {"message": "Repository access blocked"}, GitHubAccessBlockedError),
    ],
)
def test_benign_readme_failures_are_classified(status_code: int, body: dict, expected: type) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, json=body)

    async def _run():
        async with _client(handler) as client:
            await client.fetch_readme_raw("octocat", "gone")

    with pytest.raises(expected):
        asyncio.run(_run())


def test_server_errors_propagate_as_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, json={"message": "Bad Gateway"})

    async def _run():
        async with _client(handler) as client:
            await client.fetch_readme_raw("octocat", "Hello-World")

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(_run())


def test_rate_limit_is_retried_then_succeeds() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(429, headers={"retry-after": "0"}, json={"message": "slow down"})
        return httpx.Response(200, text="readme")

    async def _run():
        async with _client(handler) as client:
            return await client.fetch_readme_raw("octocat", "Hello-World")

    assert asyncio.run(_run()) == "readme"
    assert calls["count"] == 2


def test_persistent_rate_limit_raises_rate_limit_error() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        return httpx.Response(403, headers={"x-ratelimit-remaining": "0", "retry-after": "0"}, json={})

    async def _run():
        async with _client(handler, max_retries=2) as client:
            await client.list_starred_page()

    with pytest.raises(GitHubRateLimitError):
        asyncio.run(_run())
    assert calls["count"] == 2
