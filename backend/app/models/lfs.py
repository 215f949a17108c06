from datetime import datetime

from sqlalchemy import BigInteger, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base

LFS_META_FILE_IDENTIFIER = "version https://git-lfs.github.com/spec/v1"
LFS_META_FILE_OID_PREFIX = "oid sha256:"


class LFSMetaObject(Base):
    __tablename__ = "lfs_meta_object"
    __table_args__ = (UniqueConstraint("oid", "repository_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    oid: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    repository_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    # Set by get-or-create: True when the row was already there
    existing = False
