"""GitHub API access."""

from starshelf.crawlers.client import (
    GitHubAccessBlockedError,
    GitHubClient,
    GitHubError,
    GitHubNotFoundError,
    GitHubRateLimitError,
    StarredPage,
    has_next_page,
)

__all__ = [
    "GitHubClient",
    "StarredPage",
    "has_next_page",
    "GitHubError",
    "GitHubNotFoundError",
    "GitHubAccessBlockedError",
    "GitHubRateLimitError",
]
