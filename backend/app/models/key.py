from datetime import datetime
from enum import IntEnum

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.access import AccessMode


class KeyType(IntEnum):
    USER = 1
    DEPLOY = 2


class PublicKey(Base):
    """An SSH key. The authorized_keys line for it runs ``gitforge serv key-<id>``."""
    __tablename__ = "public_key"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(Integer, index=True)
    name: Mapped[str] = mapped_column(String(255))
    fingerprint: Mapped[str] = mapped_column(String(255), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    mode: Mapped[int] = mapped_column(Integer, default=AccessMode.WRITE)
    type: Mapped[int] = mapped_column(Integer, default=KeyType.USER)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def is_deploy_key(self) -> bool:
        return self.type == KeyType.DEPLOY


class DeployKey(Base):
    """Binds a deploy-type public key to one repository."""
    __tablename__ = "deploy_key"
    __table_args__ = (UniqueConstraint("key_id", "repo_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key_id: Mapped[int] = mapped_column(ForeignKey("public_key.id"), index=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
    name: Mapped[str] = mapped_column(String(255), default="")
    mode: Mapped[int] = mapped_column(Integer, default=AccessMode.READ)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
