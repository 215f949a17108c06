import json
from datetime import datetime
from enum import IntEnum

from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ActionType(IntEnum):
    CREATE_REPO = 1
    RENAME_REPO = 2
    STAR_REPO = 3
    WATCH_REPO = 4
    COMMIT_REPO = 5
    CREATE_ISSUE = 6
    CREATE_PULL_REQUEST = 7
    TRANSFER_REPO = 8
    PUSH_TAG = 9
    COMMENT_ISSUE = 10
    MERGE_PULL_REQUEST = 11
    CLOSE_ISSUE = 12
    REOPEN_ISSUE = 13
    CLOSE_PULL_REQUEST = 14
    REOPEN_PULL_REQUEST = 15
    DELETE_TAG = 16
    DELETE_BRANCH = 17


class Action(Base):
    """Activity feed row. One per receiving user (the actor and each watcher)."""
    __tablename__ = "action"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, index=True)
    op_type: Mapped[int] = mapped_column(Integer)
    act_user_id: Mapped[int] = mapped_column(Integer, index=True)
    act_user_name: Mapped[str] = mapped_column(String(255), default="")
    repo_id: Mapped[int] = mapped_column(Integer, index=True)
    repo_user_name: Mapped[str] = mapped_column(String(255), default="")
    repo_name: Mapped[str] = mapped_column(String(255), default="")
    ref_name: Mapped[str] = mapped_column(String(255), default="")
    old_commit_id: Mapped[str] = mapped_column(String(40), default="")
    new_commit_id: Mapped[str] = mapped_column(String(40), default="")
    is_private: Mapped[bool] = mapped_column(Boolean, default=False)
    content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    @property
    def commits(self) -> list[dict]:
        if not self.content:
            return []
        return json.loads(self.content).get("commits", [])


class NoticeType(IntEnum):
    REPOSITORY = 1


class Notice(Base):
    """Operator-visible record of something that needs attention."""
    __tablename__ = "notice"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[int] = mapped_column(Integer, default=NoticeType.REPOSITORY)
    description: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
