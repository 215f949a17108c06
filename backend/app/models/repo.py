from datetime import datetime
from enum import IntEnum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UnitType(IntEnum):
    CODE = 1
    ISSUES = 2
    PULL_REQUESTS = 3
    COMMITS = 4
    RELEASES = 5
    WIKI = 6
    SETTINGS = 7
    EXTERNAL_WIKI = 8
    EXTERNAL_TRACKER = 9


class Repository(Base):
    __tablename__ = "repository"
    __table_args__ = (UniqueConstraint("owner_id", "lower_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    lower_name: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="")
    default_branch: Mapped[str] = mapped_column(String(255), default="master")
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    is_bare: Mapped[bool] = mapped_column(Boolean, default=True)
    is_mirror: Mapped[bool] = mapped_column(Boolean, default=False)
    is_fork: Mapped[bool] = mapped_column(Boolean, default=False)
    fork_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    size: Mapped[int] = mapped_column(BigInteger, default=0)
    num_watches: Mapped[int] = mapped_column(Integer, default=0)
    num_pulls: Mapped[int] = mapped_column(Integer, default=0)
    num_closed_pulls: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    def html_url(self, app_url: str, owner_name: str) -> str:
        return f"{app_url}{owner_name}/{self.name}"

    def clone_url(self, app_url: str, owner_name: str) -> str:
        return f"{app_url}{owner_name}/{self.name}.git"

    def compose_compare_url(self, app_url: str, owner_name: str, old_commit_id: str, new_commit_id: str) -> str:
        return f"{app_url}{owner_name}/{self.name}/compare/{old_commit_id}...{new_commit_id}"

    def api_format(self, owner, app_url: str) -> dict:
        return {
            "id": self.id,
            "owner": owner.api_format(),
            "name": self.name,
            "full_name": f"{owner.name}/{self.name}",
            "description": self.description,
            "private": self.is_private,
            "fork": self.is_fork,
            "mirror": self.is_mirror,
            "html_url": self.html_url(app_url, owner.name),
            "clone_url": self.clone_url(app_url, owner.name),
            "default_branch": self.default_branch,
            "size": self.size,
        }


class RepoUnit(Base):
    """An enabled feature of a repository. No rows for a repository means every unit is on."""
    __tablename__ = "repo_unit"
    __table_args__ = (UniqueConstraint("repo_id", "type"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
    type: Mapped[int] = mapped_column(Integer)
    config: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class Watch(Base):
    __tablename__ = "watch"
    __table_args__ = (UniqueConstraint("user_id", "repo_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
