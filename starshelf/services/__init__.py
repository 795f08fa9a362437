"""Domain services for starred-repository sync."""

from starshelf.services.cron_schedule import InvalidCronExpression, next_occurrence
from starshelf.services.repo_mapper import StarredRepoRow, map_starred_item
from starshelf.services.repo_store import RepoPage, RepoStore, RepoUpsertResult
from starshelf.services.staleness import refresh_probability, should_refresh

__all__ = [
    "InvalidCronExpression",
    "next_occurrence",
    "StarredRepoRow",
    "map_starred_item",
    "RepoStore",
    "RepoPage",
    "RepoUpsertResult",
    "refresh_probability",
    "should_refresh",
]
