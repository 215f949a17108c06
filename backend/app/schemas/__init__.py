from app.schemas.repo import MigrateRepo, MirrorRead, MirrorUpdate, RepoCreate, RepoRead, RepoUpdate
from app.schemas.webhook import HookCreate, HookRead, HookTaskRead, HookUpdate
from app.schemas.pull import CompareRead, MergeRequest, PullCreate, PullRead
from app.schemas.lfs import BatchRequest, BatchResponse, ObjectPointer, Representation
from app.schemas.admin import ProcessRead

__all__ = [
    "MigrateRepo",
    "MirrorRead",
    "MirrorUpdate",
    "RepoCreate",
    "RepoRead",
    "RepoUpdate",
    "HookCreate",
    "HookRead",
    "HookTaskRead",
    "HookUpdate",
    "CompareRead",
    "MergeRequest",
    "PullCreate",
    "PullRead",
    "BatchRequest",
    "BatchResponse",
    "ObjectPointer",
    "Representation",
    "ProcessRead",
]
