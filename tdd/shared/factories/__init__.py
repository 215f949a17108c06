# Test data factories for creating model instances

from .base import BaseFactory, generate_name, generate_oid, persist
from .models import (
    DEFAULT_PASSWORD,
    PublicKeyFactory,
    RepositoryFactory,
    UserFactory,
    WebhookFactory,
    add_collaborator,
    create_repo,
    create_user,
)
from .api import (
    LFS_HEADERS,
    basic_auth,
    bearer_auth,
    hook_create_payload,
    lfs_batch_payload,
    migrate_payload,
    pull_create_payload,
    repo_create_payload,
)

__all__ = [
    # Base utilities
    "BaseFactory",
    "generate_name",
    "generate_oid",
    "persist",
    # Model factories
    "DEFAULT_PASSWORD",
    "UserFactory",
    "RepositoryFactory",
    "WebhookFactory",
    "PublicKeyFactory",
    "create_user",
    "create_repo",
    "add_collaborator",
    # API factories
    "basic_auth",
    "bearer_auth",
    "repo_create_payload",
    "migrate_payload",
    "hook_create_payload",
    "pull_create_payload",
    "LFS_HEADERS",
    "lfs_batch_payload",
]
