"""Database models"""

from starshelf.models.durable import Invocation, JournalEntry, ObjectState
from starshelf.models.repo import Repo

__all__ = [
    "Repo",
    "Invocation",
    "JournalEntry",
    "ObjectState",
]
