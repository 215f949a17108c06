from datetime import datetime, timedelta

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class Mirror(Base):
    __tablename__ = "mirror"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), unique=True)
    interval: Mapped[int] = mapped_column(Integer)  # seconds
    enable_prune: Mapped[bool] = mapped_column(Boolean, default=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_update: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    def schedule_next_update(self, now: datetime | None = None) -> None:
        now = now or datetime.utcnow()
        self.updated_at = now
        self.next_update = now + timedelta(seconds=self.interval)
