"""Starred-repository sync workflow.

`update_user_starred_repos` pages through the authenticated user's stars,
hands every page to `update_repo_info` as a durable nested call, and that
handler upserts each repository and decides (probabilistically) whether its
README is stale enough to refetch through `update_repo_readme`.
"""

from __future__ import annotations

import logging
import random
from datetime import timedelta
from typing import Any, Callable, Optional

from starshelf.config.database import SessionLocal
from starshelf.config.settings import settings
from starshelf.crawlers.client import GitHubAccessBlockedError, GitHubClient, GitHubNotFoundError
from starshelf.durable import InvocationContext, Service, TerminalError, handler
from starshelf.sanitize import sanitize_log_extra
from starshelf.services.repo_mapper import map_starred_item, split_full_name
from starshelf.services.repo_store import RepoStore
from starshelf.services.staleness import should_refresh
from starshelf.timeutils import isoformat_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

GITHUB_JOBS_SERVICE = "GithubJobs"
PRODUCTION_ENVIRONMENT = "production"


class GithubJobs(Service):
    """Keeps the `repos` table in line with the user's GitHub stars."""

    name = GITHUB_JOBS_SERVICE

    def __init__(
        self,
        *,
        session_factory: Callable[[], Any] = SessionLocal,
        github_client_factory: Callable[[], Any] = GitHubClient,
        random_source: Callable[[], float] = random.random,
        clock: Callable[[], Any] = utcnow,
        page_size: Optional[int] = None,
        max_outdated_days: Optional[int] = None,
        environment: Optional[str] = None,
        require_production: Optional[bool] = None,
    ) -> None:
        self._session_factory = session_factory
        self._github_client_factory = github_client_factory
        self._random_source = random_source
        self._clock = clock
        self._page_size = page_size or settings.STARRED_PAGE_SIZE
        self._max_outdated = timedelta(days=max_outdated_days or settings.README_MAX_OUTDATED_DAYS)
        self._environment = environment or settings.ENVIRONMENT
        self._require_production = (
            settings.SYNC_REQUIRE_PRODUCTION if require_production is None else require_production
        )

    @handler
    async def update_user_starred_repos(
        self,
        ctx: InvocationContext,
        request: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        force = bool((request or {}).get("force"))
        if self._require_production and not force and self._environment != PRODUCTION_ENVIRONMENT:
            reason = f"Starred sync only runs in {PRODUCTION_ENVIRONMENT} (environment={self._environment})"
            logger.info("Skipping starred sync", extra=sanitize_log_extra(reason=reason))
            return {"skipped": True, "reason": reason}

        stats = {"pages": 0, "total_starred": 0, "repos_updated": 0, "readmes_updated": 0}
        page = 1
        while True:
            fetched = await ctx.run(f"fetch-starred-page-{page}", self._fetch_starred_page, page)
            items = fetched["items"]
            stats["pages"] += 1
            stats["total_starred"] += len(items)

            if items:
                page_result = await ctx.call(GITHUB_JOBS_SERVICE, "update_repo_info", items)
                stats["repos_updated"] += page_result["processed"]
                stats["readmes_updated"] += page_result["readmes_updated"]

            logger.info(
                "Processed starred page",
                extra=sanitize_log_extra(invocation_id=ctx.invocation_id, page=page, items=len(items)),
            )
            if not fetched["has_next"]:
                break
            page += 1

        logger.info("Starred sync completed", extra=sanitize_log_extra(invocation_id=ctx.invocation_id, **stats))
        return stats

    @handler
    async def update_repo_info(self, ctx: InvocationContext, items: list[dict[str, Any]]) -> dict[str, Any]:
        processed = 0
        readmes_updated = 0

        for item in items:
            try:
                full_name = map_starred_item(item).full_name
            except ValueError:
                logger.warning(
                    "Skipping starred item without a repository name",
                    extra=sanitize_log_extra(invocation_id=ctx.invocation_id, item_keys=sorted(item)),
                )
                continue

            upserted = await ctx.run(f"repo-{full_name}", self._upsert_repo, item)
            processed += 1

            stale = await ctx.run(
                f"readme-stale-{full_name}",
                self._is_readme_stale,
                upserted["readme_updated_at"],
            )
            if not stale:
                continue

            refreshed = await ctx.call(GITHUB_JOBS_SERVICE, "update_repo_readme", {"repo": full_name})
            if not refreshed.get("skipped") and refreshed.get("updated_id") is not None:
                readmes_updated += 1

        return {"processed": processed, "readmes_updated": readmes_updated}

    @handler
    async def update_repo_readme(self, ctx: InvocationContext, request: dict[str, Any]) -> dict[str, Any]:
        full_name = str((request or {}).get("repo") or "")
        try:
            owner, repo = split_full_name(full_name)
        except ValueError as exc:
            raise TerminalError(str(exc)) from exc

        content = await ctx.run("fetch-readme", self._fetch_readme, owner, repo)
        if content is None:
            return {"skipped": True}

        updated_id = await ctx.run("update-readme-in-db", self._store_readme, full_name, content)
        return {"skipped": False, "updated_id": updated_id}

    async def _fetch_starred_page(self, page: int) -> dict[str, Any]:
        async with self._github_client_factory() as client:
            starred = await client.list_starred_page(page=page, per_page=self._page_size)
        return {"items": starred.items, "has_next": starred.has_next}

    async def _fetch_readme(self, owner: str, repo: str) -> Optional[str]:
        try:
            async with self._github_client_factory() as client:
                return await client.fetch_readme_raw(owner, repo)
        except (GitHubNotFoundError, GitHubAccessBlockedError) as exc:
            logger.info(
                "README unavailable",
                extra=sanitize_log_extra(repo=f"{owner}/{repo}", status_code=exc.status_code, error=str(exc)),
            )
            return None

    def _is_readme_stale(self, readme_updated_at: Optional[str]) -> bool:
        return should_refresh(
            parse_datetime(readme_updated_at),
            max_outdated=self._max_outdated,
            now=self._clock(),
            draw=self._random_source(),
        )

    def _upsert_repo(self, item: dict[str, Any]) -> dict[str, Any]:
        row = map_starred_item(item)
        db = self._session_factory()
        try:
            result = RepoStore(db).upsert_repo(row, now=self._clock())
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        return {
            "id": result.id,
            "created": result.created,
            "readme_updated_at": isoformat_utc(result.previous_readme_updated_at),
        }

    def _store_readme(self, full_name: str, content: str) -> Optional[int]:
        db = self._session_factory()
        try:
            updated_id = RepoStore(db).update_readme(full_name, content, now=self._clock())
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if updated_id is None:
            logger.warning("README fetched for an unknown repository", extra=sanitize_log_extra(repo=full_name))
        return updated_id
