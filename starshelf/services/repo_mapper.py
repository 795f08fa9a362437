"""Mapping helpers from GitHub starred payloads to `repos` rows."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from starshelf.timeutils import parse_datetime


@dataclass(frozen=True, slots=True)
class StarredRepoRow:
    """Normalized view of one `{starred_at, repo}` item."""

    full_name: str
    repo_id: Optional[int]
    repo_name: str
    description: str
    starred_at: Optional[datetime]
    details: dict[str, Any]


def map_starred_item(item: dict[str, Any]) -> StarredRepoRow:
    """Map a star-media-type list item into the fields the store persists."""

    repo_payload = item.get("repo") if isinstance(item.get("repo"), dict) else {}
    full_name = _pick_text(repo_payload.get("full_name"))
    if full_name is None or "/" not in full_name:
        raise ValueError("Starred item is missing a repository full_name")

    return StarredRepoRow(
        full_name=full_name,
        repo_id=_pick_id(repo_payload.get("id")),
        repo_name=_pick_text(repo_payload.get("name")) or full_name.split("/", 1)[1],
        description=_pick_text(repo_payload.get("description")) or "",
        starred_at=parse_datetime(item.get("starred_at")),
        details=repo_payload,
    )


def split_full_name(full_name: str) -> tuple[str, str]:
    owner, _, repo = full_name.partition("/")
    owner, repo = owner.strip(), repo.strip()
    if not owner or not repo:
        raise ValueError(f"Invalid repository name: {full_name!r}")
    return owner, repo


def _pick_text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _pick_id(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None
