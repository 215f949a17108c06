from app.models.access import AccessMode
from app.models.user import (
    AccessToken,
    Collaboration,
    LoginSource,
    LoginType,
    OrgUser,
    Team,
    TeamRepo,
    TeamUser,
    User,
    UserType,
)
from app.models.repo import Repository, RepoUnit, UnitType, Watch
from app.models.key import DeployKey, KeyType, PublicKey
from app.models.action import Action, ActionType, Notice, NoticeType
from app.models.update_task import UpdateTask
from app.models.lfs import LFSMetaObject, LFS_META_FILE_IDENTIFIER, LFS_META_FILE_OID_PREFIX
from app.models.pull import Issue, MergeStyle, PullRequest, PullRequestStatus
from app.models.webhook import (
    HookContentType,
    HookEvent,
    HookEvents,
    HookEventType,
    HookStatus,
    HookTask,
    HookTaskType,
    Webhook,
)
from app.models.mirror import Mirror

__all__ = [
    "AccessMode",
    "AccessToken",
    "Collaboration",
    "LoginSource",
    "LoginType",
    "OrgUser",
    "Team",
    "TeamRepo",
    "TeamUser",
    "User",
    "UserType",
    "Repository",
    "RepoUnit",
    "UnitType",
    "Watch",
    "DeployKey",
    "KeyType",
    "PublicKey",
    "Action",
    "ActionType",
    "Notice",
    "NoticeType",
    "UpdateTask",
    "LFSMetaObject",
    "LFS_META_FILE_IDENTIFIER",
    "LFS_META_FILE_OID_PREFIX",
    "Issue",
    "MergeStyle",
    "PullRequest",
    "PullRequestStatus",
    "HookContentType",
    "HookEvent",
    "HookEvents",
    "HookEventType",
    "HookStatus",
    "HookTask",
    "HookTaskType",
    "Webhook",
    "Mirror",
]
