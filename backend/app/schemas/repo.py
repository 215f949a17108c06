from datetime import datetime

from pydantic import BaseModel

from app.models import UnitType


class RepoBase(BaseModel):
    name: str
    description: str = ""
    private: bool = False


class RepoCreate(RepoBase):
    default_branch: str = "master"
    # Organization to create the repository under; the caller when empty
    owner: str | None = None


class RepoUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    private: bool | None = None
    # Enabled units; every unit is enabled until this is set
    units: list[UnitType] | None = None


class MigrateRepo(BaseModel):
    """Create a pull mirror of a remote repository."""
    clone_addr: str
    repo_name: str
    description: str = ""
    private: bool = False
    owner: str | None = None
    interval: int | None = None  # seconds
    enable_prune: bool = True
    wiki: bool = False


class MirrorUpdate(BaseModel):
    interval: int | None = None
    address: str | None = None


class UserRead(BaseModel):
    id: int
    login: str
    username: str
    full_name: str = ""
    email: str = ""


class RepoRead(BaseModel):
    id: int
    owner: UserRead
    name: str
    full_name: str
    description: str
    private: bool
    fork: bool
    mirror: bool
    html_url: str
    clone_url: str
    default_branch: str
    size: int


class MirrorRead(BaseModel):
    repo_id: int
    address: str
    interval: int
    enable_prune: bool
    updated_at: datetime | None = None
    next_update: datetime

    class Config:
        from_attributes = True
