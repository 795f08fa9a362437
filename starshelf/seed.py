"""Reset the `repos` table to a small sample set for local development.

Run with `python -m starshelf.seed`.
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from typing import Any, Callable

from starshelf.config.database import SessionLocal, init_db
from starshelf.models.repo import Repo
from starshelf.sanitize import sanitize_log_extra

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SampleRepo:
    repo: str
    description: str


SAMPLE_REPOS: tuple[SampleRepo, ...] = (
    SampleRepo(repo="octocat/Hello-World", description="My first repository on GitHub!"),
    SampleRepo(repo="vercel/next.js", description="The React Framework"),
)


def clear_repos(db: Any) -> int:
    return db.query(Repo).delete(synchronize_session=False)


def seed_repos(db: Any, samples: tuple[SampleRepo, ...] = SAMPLE_REPOS) -> list[int]:
    rows = [
        Repo(
            repo=sample.repo,
            repo_name=sample.repo.split("/", 1)[1],
            description=sample.description,
            initial_description=sample.description,
        )
        for sample in samples
    ]
    db.add_all(rows)
    db.flush()
    return [row.id for row in rows]


def run_seed(session_factory: Callable[[], Any] = SessionLocal) -> list[int]:
    db = session_factory()
    try:
        cleared = clear_repos(db)
        seeded = seed_repos(db)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

    logger.info("Seeded repos", extra=sanitize_log_extra(cleared=cleared, seeded=len(seeded)))
    return seeded


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    try:
        init_db()
        run_seed()
    except Exception:
        logger.exception("Seeding failed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
