from datetime import datetime
from enum import IntEnum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base
from app.models.access import AccessMode


class UserType(IntEnum):
    INDIVIDUAL = 0
    ORGANIZATION = 1


class User(Base):
    """A principal: either an individual account or an organization."""
    __tablename__ = "user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lower_name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), default="")
    email: Mapped[str] = mapped_column(String(255), default="")
    type: Mapped[int] = mapped_column(Integer, default=UserType.INDIVIDUAL)
    passwd: Mapped[str] = mapped_column(String(255), default="")
    salt: Mapped[str] = mapped_column(String(32), default="")
    # 0 means local account
    login_source: Mapped[int] = mapped_column(Integer, default=0)
    login_name: Mapped[str] = mapped_column(String(255), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    prohibit_login: Mapped[bool] = mapped_column(Boolean, default=False)
    num_repos: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def is_organization(self) -> bool:
        return self.type == UserType.ORGANIZATION

    @property
    def is_local(self) -> bool:
        return self.login_source == 0

    def api_format(self) -> dict:
        return {
            "id": self.id,
            "login": self.name,
            "username": self.name,
            "full_name": self.full_name,
            "email": self.email,
        }


class OrgUser(Base):
    __tablename__ = "org_user"
    __table_args__ = (UniqueConstraint("uid", "org_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    is_owner: Mapped[bool] = mapped_column(Boolean, default=False)


class Team(Base):
    __tablename__ = "team"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    lower_name: Mapped[str] = mapped_column(String(255))
    name: Mapped[str] = mapped_column(String(255))
    authorize: Mapped[int] = mapped_column(Integer, default=AccessMode.READ)


class TeamUser(Base):
    __tablename__ = "team_user"
    __table_args__ = (UniqueConstraint("team_id", "uid"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("team.id"))
    uid: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)


class TeamRepo(Base):
    __tablename__ = "team_repo"
    __table_args__ = (UniqueConstraint("team_id", "repo_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, index=True)
    team_id: Mapped[int] = mapped_column(ForeignKey("team.id"))
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)


class Collaboration(Base):
    __tablename__ = "collaboration"
    __table_args__ = (UniqueConstraint("repo_id", "user_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(ForeignKey("repository.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    mode: Mapped[int] = mapped_column(Integer, default=AccessMode.WRITE)


class AccessToken(Base):
    """Personal access token. Only the SHA-256 of the token is stored."""
    __tablename__ = "access_token"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    uid: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    name: Mapped[str] = mapped_column(String(255))
    sha256: Mapped[str] = mapped_column(String(64), unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)


class LoginType(IntEnum):
    LDAP = 2
    SMTP = 3
    PAM = 4
    DLDAP = 5
    OAUTH2 = 6


class LoginSource(Base):
    """External authenticator configuration. ``cfg`` holds the tagged variant as JSON."""
    __tablename__ = "login_source"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[int] = mapped_column(Integer)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    is_actived: Mapped[bool] = mapped_column(Boolean, default=False)
    cfg: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
