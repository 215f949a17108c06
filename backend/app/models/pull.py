from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class PullRequestStatus(str, Enum):
    CHECKING = "checking"
    MERGEABLE = "mergeable"
    CONFLICT = "conflict"
    # Mergeability cannot be decided automatically (a branch is gone)
    MANUAL = "manual"


class MergeStyle(str, Enum):
    MERGE = "merge"
    REBASE = "rebase"


class Issue(Base):
    __tablename__ = "issue"
    __table_args__ = (UniqueConstraint("repo_id", "index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
    index: Mapped[int] = mapped_column(Integer)
    poster_id: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(255))
    content: Mapped[str] = mapped_column(Text, default="")
    is_pull: Mapped[bool] = mapped_column(Boolean, default=False)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class PullRequest(Base):
    __tablename__ = "pull_request"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[int] = mapped_column(ForeignKey("issue.id"), index=True)
    index: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(20), default=PullRequestStatus.CHECKING.value)

    head_repo_id: Mapped[int] = mapped_column(Integer, index=True)
    base_repo_id: Mapped[int] = mapped_column(Integer, index=True)
    head_user_name: Mapped[str] = mapped_column(String(255))
    head_branch: Mapped[str] = mapped_column(String(255))
    base_branch: Mapped[str] = mapped_column(String(255))
    merge_base: Mapped[str] = mapped_column(String(40), default="")

    has_merged: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    merged_commit_id: Mapped[str | None] = mapped_column(String(40), nullable=True)
    merger_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    merged_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    @property
    def head_ref(self) -> str:
        """Ref inside the base repository that mirrors the head branch."""
        return f"refs/pull/{self.index}/head"
