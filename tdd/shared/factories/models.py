"""
Model factories for creating test data.

These factories create SQLAlchemy model instances for use in tests. Unit
tests use ``build()``; integration tests use ``create_in(session)`` or the
helpers below, which also create the bare repository on disk.
"""
from datetime import datetime

import factory
from faker import Faker
from sqlalchemy.ext.asyncio import AsyncSession

from app.models import (
    AccessMode,
    Collaboration,
    HookContentType,
    HookEvent,
    HookTaskType,
    KeyType,
    PublicKey,
    Repository,
    User,
    UserType,
    Webhook,
)
from app.services.auth import set_password
from app.services.repository import create_repository

from .base import BaseFactory, generate_name, persist

fake = Faker()

DEFAULT_PASSWORD = "correct-horse"


class UserFactory(BaseFactory):
    """Factory for creating User instances."""

    class Meta:
        model = User

    name = factory.LazyFunction(lambda: generate_name("user-"))
    lower_name = factory.LazyAttribute(lambda o: o.name.lower())
    full_name = factory.LazyFunction(fake.name)
    email = factory.LazyAttribute(lambda o: f"{o.lower_name}@example.com")
    type = UserType.INDIVIDUAL
    is_active = True
    is_admin = False
    prohibit_login = False
    login_source = 0
    num_repos = 0
    created_at = factory.LazyFunction(datetime.utcnow)
    updated_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        """Parameters for creating users in specific states."""

        admin = factory.Trait(is_admin=True)
        organization = factory.Trait(type=UserType.ORGANIZATION, email="")
        blocked = factory.Trait(prohibit_login=True)

    @factory.post_generation
    def password(obj, create, extracted, **kwargs):
        if obj.type == UserType.INDIVIDUAL:
            set_password(obj, extracted or DEFAULT_PASSWORD)


class RepositoryFactory(BaseFactory):
    """Factory for Repository rows without anything on disk (unit tests)."""

    class Meta:
        model = Repository

    owner_id = 1
    name = factory.LazyFunction(lambda: generate_name("repo-"))
    lower_name = factory.LazyAttribute(lambda o: o.name.lower())
    description = factory.LazyFunction(lambda: fake.sentence(nb_words=6))
    default_branch = "master"
    is_private = False
    is_bare = True
    is_mirror = False
    is_fork = False
    size = 0
    num_watches = 0
    num_pulls = 0
    num_closed_pulls = 0
    created_at = factory.LazyFunction(datetime.utcnow)
    updated_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        private = factory.Trait(is_private=True)
        mirror = factory.Trait(is_mirror=True)


class WebhookFactory(BaseFactory):
    """Factory for creating Webhook instances."""

    class Meta:
        model = Webhook

    repo_id = 1
    org_id = 0
    url = factory.LazyFunction(lambda: f"https://{fake.domain_name()}/hook")
    content_type = HookContentType.JSON
    secret = ""
    events = factory.LazyFunction(lambda: HookEvent(push_only=True).model_dump_json())
    is_ssl = False
    is_active = True
    hook_task_type = HookTaskType.GITFORGE
    meta = ""
    last_status = 0
    created_at = factory.LazyFunction(datetime.utcnow)
    updated_at = factory.LazyFunction(datetime.utcnow)

    class Params:
        send_everything = factory.Trait(
            events=factory.LazyFunction(lambda: HookEvent(send_everything=True).model_dump_json())
        )
        slack = factory.Trait(
            hook_task_type=HookTaskType.SLACK,
            meta='{"channel": "#dev", "username": "gitforge"}',
        )


class PublicKeyFactory(BaseFactory):
    """Factory for SSH keys."""

    class Meta:
        model = PublicKey

    owner_id = 1
    name = factory.LazyFunction(lambda: fake.word())
    fingerprint = factory.LazyFunction(lambda: fake.md5(raw_output=False))
    content = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIExample test@example.com"
    mode = AccessMode.WRITE
    type = KeyType.USER

    class Params:
        deploy = factory.Trait(type=KeyType.DEPLOY, mode=AccessMode.READ)


# -----------------------------------------------------------------------------
# Integration helpers
# -----------------------------------------------------------------------------

async def create_user(session: AsyncSession, **kwargs) -> User:
    return await UserFactory.create_in(session, **kwargs)


async def create_repo(ctx, session: AsyncSession, owner: User, name: str | None = None, **kwargs) -> Repository:
    """Create a repository through the service, bare directory included."""
    return await create_repository(ctx, session, owner, name or generate_name("repo-"), **kwargs)


async def add_collaborator(session: AsyncSession, repo: Repository, user: User, mode: AccessMode) -> Collaboration:
    return await persist(session, Collaboration(repo_id=repo.id, user_id=user.id, mode=mode))
