"""Data access for starred repositories.

Writes are keyed upserts so concurrent sync runs converge on one row per
repository. Reads back the UI's list, search and detail views.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from starshelf.models.repo import Repo
from starshelf.services.repo_mapper import StarredRepoRow
from starshelf.sanitize import sanitize_log_extra
from starshelf.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

SORT_FIELDS = {
    "starred_at": Repo.starred_at,
    "repo": Repo.repo,
}
SORT_ORDERS = ("asc", "desc")


@dataclass(slots=True)
class RepoUpsertResult:
    id: int
    created: bool
    renamed: bool
    previous_readme_updated_at: Optional[datetime]


@dataclass(slots=True)
class RepoPage:
    repos: list[Repo] = field(default_factory=list)
    total: int = 0
    offset: int = 0
    limit: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.repos) < self.total

    @property
    def next_offset(self) -> Optional[int]:
        return self.offset + self.limit if self.has_more else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repos": [repo.to_dict() for repo in self.repos],
            "total": self.total,
            "has_more": self.has_more,
            "next_offset": self.next_offset,
        }


class RepoStore:
    """Repository-table operations over one SQLAlchemy session.

    Callers own the transaction: commit or roll back the session after use.
    """

    def __init__(self, db: Any) -> None:
        self._db = db

    def find_repo_by_external_id(self, repo_id: int) -> Optional[Repo]:
        return self._db.query(Repo).filter(Repo.repo_id == repo_id).first()

    def find_repo_by_name(self, full_name: str) -> Optional[Repo]:
        return self._db.query(Repo).filter(Repo.repo == full_name).first()

    def upsert_repo(self, row: StarredRepoRow, *, now: Optional[datetime] = None) -> RepoUpsertResult:
        """Insert or update one starred repository.

        Resolves by GitHub id first so renames update the existing row, then
        falls back to insert-or-update on the full name. Initial description is
        written once.
        """

        now = now or utcnow()
        values = {
            "repo": row.full_name,
            "repo_id": row.repo_id,
            "repo_name": row.repo_name,
            "repo_details": row.details,
            "description": row.description,
            "starred_at": row.starred_at,
            "description_updated_at": now,
            "updated_at": now,
        }

        existing = self.find_repo_by_external_id(row.repo_id) if row.repo_id is not None else None
        if existing is not None:
            repo_pk = int(existing.id)
            previous_name = existing.repo
            previous = as_utc(existing.readme_updated_at)
            renamed = previous_name != row.full_name
            if renamed:
                self._release_name(row.full_name, drop_unlinked=True)
            self._db.execute(
                update(Repo)
                .where(Repo.id == repo_pk)
                .values(
                    **values,
                    initial_description=func.coalesce(Repo.initial_description, row.description),
                )
                .execution_options(synchronize_session=False)
            )
            self._db.expire(existing)
            if renamed:
                logger.info(
                    "Repository renamed upstream",
                    extra=sanitize_log_extra(repo_id=row.repo_id, previous=previous_name, current=row.full_name),
                )
            return RepoUpsertResult(
                id=repo_pk,
                created=False,
                renamed=renamed,
                previous_readme_updated_at=previous,
            )

        if row.repo_id is not None:
            self._release_name(row.full_name, drop_unlinked=False)

        previous_row = self._db.execute(
            select(Repo.id, Repo.readme_updated_at).where(Repo.repo == row.full_name)
        ).first()

        insert = self._insert_for_dialect()
        statement = insert(Repo).values(
            **values,
            initial_description=row.description,
            readme="",
            created_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[Repo.repo],
            set_={
                "repo_id": func.coalesce(statement.excluded.repo_id, Repo.repo_id),
                "repo_name": statement.excluded.repo_name,
                "repo_details": statement.excluded.repo_details,
                "description": statement.excluded.description,
                "initial_description": func.coalesce(Repo.initial_description, statement.excluded.description),
                "starred_at": statement.excluded.starred_at,
                "description_updated_at": statement.excluded.description_updated_at,
                "updated_at": statement.excluded.updated_at,
            },
        )
        self._db.execute(statement)
        self._db.flush()

        repo_pk = self._db.execute(select(Repo.id).where(Repo.repo == row.full_name)).scalar_one()
        return RepoUpsertResult(
            id=int(repo_pk),
            created=previous_row is None,
            renamed=False,
            previous_readme_updated_at=as_utc(previous_row.readme_updated_at) if previous_row is not None else None,
        )

    def update_readme(self, full_name: str, content: str, *, now: Optional[datetime] = None) -> Optional[int]:
        """Store fetched README text; the first stored value is kept as `initial_readme`."""

        now = now or utcnow()
        result = self._db.execute(
            update(Repo)
            .where(Repo.repo == full_name)
            .values(
                readme=content,
                initial_readme=func.coalesce(Repo.initial_readme, content),
                readme_updated_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self._db.flush()
        if not result.rowcount:
            return None
        return self._db.execute(select(Repo.id).where(Repo.repo == full_name)).scalar_one_or_none()

    def list_repos(
        self,
        *,
        limit: int = 30,
        offset: int = 0,
        sort_by: str = "starred_at",
        sort_order: str = "desc",
    ) -> RepoPage:
        query = self._db.query(Repo)
        total = self.count_repos()
        repos = self._ordered(query, sort_by, sort_order).limit(limit).offset(offset).all()
        return RepoPage(repos=repos, total=total, offset=offset, limit=limit)

    def search_repos(
        self,
        query_text: str,
        *,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "starred_at",
        sort_order: str = "desc",
    ) -> RepoPage:
        """Case-insensitive substring match over full name and description."""

        term = (query_text or "").strip()
        if not term:
            return RepoPage(repos=[], total=0, offset=offset, limit=limit)

        pattern = f"%{term}%"
        query = self._db.query(Repo).filter(or_(Repo.repo.ilike(pattern), Repo.description.ilike(pattern)))
        total = query.count()
        repos = self._ordered(query, sort_by, sort_order).limit(limit).offset(offset).all()
        return RepoPage(repos=repos, total=total, offset=offset, limit=limit)

    def get_repo_by_id(self, repo_pk: int) -> Optional[Repo]:
        return self._db.get(Repo, repo_pk)

    def get_repo_by_name(self, full_name: str) -> Optional[Repo]:
        return self.find_repo_by_name(full_name)

    def count_repos(self) -> int:
        return int(self._db.execute(select(func.count()).select_from(Repo)).scalar_one())

    def _release_name(self, full_name: str, *, drop_unlinked: bool) -> None:
        """Free `full_name` held by a row belonging to another GitHub id.

        A linked holder is parked under `<name>#<repo_id>` until its own
        upsert brings its current name. An unlinked holder is dropped when
        the incoming repository already has a row of its own.
        """

        holder = self.find_repo_by_name(full_name)
        if holder is None:
            return
        holder_pk, holder_repo_id = int(holder.id), holder.repo_id
        if holder_repo_id is None:
            if drop_unlinked:
                self._db.delete(holder)
                self._db.flush()
                logger.warning(
                    "Dropped unlinked repository row holding a renamed name",
                    extra=sanitize_log_extra(repo=full_name, row_id=holder_pk),
                )
            return

        parked_name = f"{full_name}#{holder_repo_id}"
        self._db.execute(
            update(Repo)
            .where(Repo.id == holder_pk)
            .values(repo=parked_name)
            .execution_options(synchronize_session=False)
        )
        self._db.expire(holder)
        logger.info(
            "Parked repository whose name moved to another repository",
            extra=sanitize_log_extra(repo_id=holder_repo_id, previous=full_name, parked=parked_name),
        )

    def _insert_for_dialect(self):
        dialect = self._db.get_bind().dialect.name
        if dialect == "postgresql":
            return pg_insert
        if dialect == "sqlite":
            return sqlite_insert
        raise RuntimeError(f"Upserts are not supported on the {dialect} dialect")

    @staticmethod
    def _ordered(query, sort_by: str, sort_order: str):
        column = SORT_FIELDS.get(sort_by)
        if column is None:
            raise ValueError(f"Unsupported sort field: {sort_by}")
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"Unsupported sort order: {sort_order}")
        primary = column.asc() if sort_order == "asc" else column.desc()
        return query.order_by(primary, Repo.id.desc() if sort_order == "desc" else Repo.id.asc())
