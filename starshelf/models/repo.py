"""Starred repository model."""

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB

from starshelf.config.database import Base
from starshelf.timeutils import isoformat_utc, utcnow


class Repo(Base):
    """Starred repository mapped to `repos` table."""

    __tablename__ = "repos"

    id = Column(Integer, primary_key=True, autoincrement=True)
    repo = Column(Text, unique=True, nullable=False)
    repo_id = Column(BigInteger, unique=True, nullable=True)
    repo_name = Column(Text, nullable=True)
    repo_details = Column(JSON().with_variant(JSONB(), "postgresql"), nullable=True)

    description = Column(Text, nullable=True)
    initial_description = Column(Text, nullable=True)
    readme = Column(Text, nullable=True, default="")
    initial_readme = Column(Text, nullable=True)

    starred_at = Column(DateTime(timezone=True), nullable=True)
    description_updated_at = Column(DateTime(timezone=True), nullable=True)
    readme_updated_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("repos_starred_at", "starred_at"),
        Index("repos_repo_name", "repo_name"),
    )

    @property
    def owner(self) -> str:
        return self.repo.split("/", 1)[0] if "/" in (self.repo or "") else ""

    @property
    def owner_avatar_url(self) -> str | None:
        details = self.repo_details if isinstance(self.repo_details, dict) else {}
        owner = details.get("owner") if isinstance(details.get("owner"), dict) else {}
        avatar = owner.get("avatar_url")
        return avatar if isinstance(avatar, str) and avatar else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repo": self.repo,
            "repo_id": self.repo_id,
            "repo_name": self.repo_name,
            "owner": self.owner,
            "owner_avatar_url": self.owner_avatar_url,
            "description": self.description,
            "initial_description": self.initial_description,
            "readme": self.readme,
            "initial_readme": self.initial_readme,
            "starred_at": isoformat_utc(self.starred_at),
            "description_updated_at": isoformat_utc(self.description_updated_at),
            "readme_updated_at": isoformat_utc(self.readme_updated_at),
            "created_at": isoformat_utc(self.created_at),
            "updated_at": isoformat_utc(self.updated_at),
        }

    def __repr__(self):
        return f"<Repo {self.repo}>"

