from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class UpdateTask(Base):
    """A ref update written by the update hook and consumed once by whoever ran git."""
    __tablename__ = "update_task"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uuid: Mapped[str] = mapped_column(String(36), index=True)
    ref_name: Mapped[str] = mapped_column(Text)
    old_commit_id: Mapped[str] = mapped_column(String(40))
    new_commit_id: Mapped[str] = mapped_column(String(40))
