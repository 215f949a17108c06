"""
Repository lifecycle: create, rename, delete, list, plus watchers, the
activity feed and operator notices.

Metadata and on-disk state move together. A failure on disk before the row is
committed leaves the row untouched; a failure on disk after the row is gone
is tolerated and recorded as a Notice.
"""

import json
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.errors import InvalidInputError, RepoAlreadyExists, RepoNotFound
from app.models import (
    Action,
    ActionType,
    Collaboration,
    DeployKey,
    HookTask,
    Issue,
    LFSMetaObject,
    Mirror,
    Notice,
    NoticeType,
    PullRequest,
    Repository,
    RepoUnit,
    TeamRepo,
    UnitType,
    User,
    Watch,
    Webhook,
)

logger = logging.getLogger(__name__)

REPO_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")
RESERVED_REPO_NAMES = {".", "..", "-"}
RESERVED_REPO_SUFFIXES = (".git", ".wiki")
MAX_REPO_NAME_LENGTH = 100

DiskInitializer = Callable[[Path], Awaitable[None]]


def validate_repo_name(name: str) -> None:
    if not name or len(name) > MAX_REPO_NAME_LENGTH or not REPO_NAME_PATTERN.match(name):
        raise InvalidInputError(f"invalid repository name: {name!r}")
    lower = name.lower()
    if lower in RESERVED_REPO_NAMES or lower.endswith(RESERVED_REPO_SUFFIXES):
        raise InvalidInputError(f"repository name is reserved: {name!r}")


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------

async def get_repository_by_id(session: AsyncSession, repo_id: int) -> Repository:
    repo = await session.get(Repository, repo_id)
    if repo is None:
        raise RepoNotFound(f"repository does not exist: {repo_id}")
    return repo


async def get_repository_by_name(session: AsyncSession, owner_name: str, repo_name: str) -> tuple[User, Repository]:
    result = await session.execute(
        select(User, Repository)
        .join(Repository, Repository.owner_id == User.id)
        .where(User.lower_name == owner_name.lower(), Repository.lower_name == repo_name.lower())
    )
    row = result.first()
    if row is None:
        raise RepoNotFound(f"repository does not exist: {owner_name}/{repo_name}")
    return row[0], row[1]


async def get_owner(session: AsyncSession, repo: Repository) -> User:
    owner = await session.get(User, repo.owner_id)
    if owner is None:
        raise RepoNotFound(f"owner of repository {repo.id} does not exist")
    return owner


async def list_user_repositories(
    session: AsyncSession,
    owner_id: int,
    page: int = 1,
    page_size: int = 20,
    include_private: bool = True,
) -> list[Repository]:
    """Up to ``page_size`` repositories of one owner, most recently updated first."""
    page = max(page, 1)
    query = select(Repository).where(Repository.owner_id == owner_id)
    if not include_private:
        query = query.where(Repository.is_private.is_(False))
    query = query.order_by(Repository.updated_at.desc(), Repository.id.desc())
    query = query.offset((page - 1) * page_size).limit(page_size)
    result = await session.execute(query)
    return list(result.scalars().all())


# -----------------------------------------------------------------------------
# Notices, watchers, actions
# -----------------------------------------------------------------------------

async def create_notice(session: AsyncSession, description: str, type: NoticeType = NoticeType.REPOSITORY) -> Notice:
    notice = Notice(type=type, description=description)
    session.add(notice)
    await session.flush()
    return notice


async def watch_repo(session: AsyncSession, user_id: int, repo: Repository, watch: bool = True) -> None:
    existing = (
        await session.execute(select(Watch).where(Watch.user_id == user_id, Watch.repo_id == repo.id))
    ).scalar_one_or_none()
    if watch and existing is None:
        session.add(Watch(user_id=user_id, repo_id=repo.id))
        repo.num_watches += 1
    elif not watch and existing is not None:
        await session.delete(existing)
        repo.num_watches = max(repo.num_watches - 1, 0)
    await session.flush()


async def get_watcher_ids(session: AsyncSession, repo_id: int) -> list[int]:
    result = await session.execute(select(Watch.user_id).where(Watch.repo_id == repo_id))
    return list(result.scalars().all())


async def notify_watchers(session: AsyncSession, action: Action) -> list[Action]:
    """Write the action for its actor, then one copy per watcher other than the actor."""
    action.user_id = action.act_user_id
    session.add(action)
    rows = [action]
    for watcher_id in await get_watcher_ids(session, action.repo_id):
        if watcher_id == action.act_user_id:
            continue
        copy = Action(
            user_id=watcher_id,
            op_type=action.op_type,
            act_user_id=action.act_user_id,
            act_user_name=action.act_user_name,
            repo_id=action.repo_id,
            repo_user_name=action.repo_user_name,
            repo_name=action.repo_name,
            ref_name=action.ref_name,
            old_commit_id=action.old_commit_id,
            new_commit_id=action.new_commit_id,
            is_private=action.is_private,
            content=action.content,
        )
        session.add(copy)
        rows.append(copy)
    await session.flush()
    return rows


def new_action(op_type: ActionType, actor: User, owner: User, repo: Repository, **fields) -> Action:
    return Action(
        op_type=op_type,
        act_user_id=actor.id,
        act_user_name=actor.name,
        repo_id=repo.id,
        repo_user_name=owner.name,
        repo_name=repo.name,
        is_private=repo.is_private,
        **fields,
    )


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

async def create_repository(
    ctx,
    session: AsyncSession,
    owner: User,
    name: str,
    description: str = "",
    is_private: bool = False,
    default_branch: str = "master",
    is_mirror: bool = False,
    initializer: DiskInitializer | None = None,
    doer: User | None = None,
) -> Repository:
    """Insert the row and create the bare repository, committing only when both succeed.

    ``initializer`` replaces the default ``git init --bare`` (mirrors clone instead).
    """
    validate_repo_name(name)
    exists = (
        await session.execute(
            select(func.count(Repository.id)).where(
                Repository.owner_id == owner.id, Repository.lower_name == name.lower()
            )
        )
    ).scalar_one()
    if exists:
        raise RepoAlreadyExists(f"repository already exists: {owner.name}/{name}")

    repo = Repository(
        owner_id=owner.id,
        lower_name=name.lower(),
        name=name,
        description=description,
        is_private=is_private,
        default_branch=default_branch,
        is_mirror=is_mirror,
    )
    session.add(repo)
    owner.num_repos += 1
    await session.flush()

    repo_path = ctx.repo_manager.repo_path(owner.name, name)
    try:
        if initializer is None:
            await run_in_threadpool(ctx.repo_manager.create_bare_repo, owner.name, name, default_branch)
        else:
            if repo_path.exists():
                raise RepoAlreadyExists(f"repository already exists on disk: {repo_path}")
            await initializer(repo_path)
    except BaseException:
        await session.rollback()
        raise

    if not owner.is_organization:
        await watch_repo(session, owner.id, repo)
    await notify_watchers(session, new_action(ActionType.CREATE_REPO, doer or owner, owner, repo))
    await session.commit()
    logger.info(f"Created repository {owner.name}/{name}")
    return repo


async def rename_repository(ctx, session: AsyncSession, owner: User, repo: Repository, new_name: str, doer: User | None = None) -> Repository:
    """Move the directory first; the row only changes once the move succeeded."""
    validate_repo_name(new_name)
    old_name = repo.name
    owner_name = owner.name
    if new_name.lower() != repo.lower_name:
        taken = (
            await session.execute(
                select(func.count(Repository.id)).where(
                    Repository.owner_id == owner.id, Repository.lower_name == new_name.lower()
                )
            )
        ).scalar_one()
        if taken:
            raise RepoAlreadyExists(f"repository already exists: {owner.name}/{new_name}")

    await run_in_threadpool(ctx.repo_manager.rename_repo, owner.name, old_name, new_name)

    repo.name = new_name
    repo.lower_name = new_name.lower()
    repo.updated_at = datetime.utcnow()
    await notify_watchers(
        session,
        new_action(ActionType.RENAME_REPO, doer or owner, owner, repo, content=old_name),
    )
    try:
        await session.commit()
    except Exception:
        logger.error(f"Commit failed after renaming {owner_name}/{old_name}, moving directory back")
        await session.rollback()
        await run_in_threadpool(ctx.repo_manager.rename_repo, owner_name, new_name, old_name)
        raise
    return repo


async def delete_repository(ctx, session: AsyncSession, owner: User, repo: Repository) -> None:
    """Remove the row and everything hanging off it, then the directory.

    LFS content is removed only when no other repository references the oid.
    """
    repo_id = repo.id
    oids = (
        await session.execute(select(LFSMetaObject.oid).where(LFSMetaObject.repository_id == repo_id))
    ).scalars().all()

    issue_ids = select(Issue.id).where(Issue.repo_id == repo_id)
    await session.execute(delete(PullRequest).where(PullRequest.issue_id.in_(issue_ids)))
    for model, column in (
        (Issue, Issue.repo_id),
        (RepoUnit, RepoUnit.repo_id),
        (Watch, Watch.repo_id),
        (Collaboration, Collaboration.repo_id),
        (TeamRepo, TeamRepo.repo_id),
        (DeployKey, DeployKey.repo_id),
        (LFSMetaObject, LFSMetaObject.repository_id),
        (Webhook, Webhook.repo_id),
        (HookTask, HookTask.repo_id),
        (Mirror, Mirror.repo_id),
        (Action, Action.repo_id),
    ):
        await session.execute(delete(model).where(column == repo_id))
    await session.delete(repo)
    owner.num_repos = max(owner.num_repos - 1, 0)
    await session.commit()

    try:
        await run_in_threadpool(ctx.repo_manager.delete_repo, owner.name, repo.name)
    except OSError as e:
        desc = f"delete repository files {owner.name}/{repo.name}: {e}"
        logger.error(desc)
        await create_notice(session, desc)
        await session.commit()

    for oid in oids:
        still_used = (
            await session.execute(select(func.count(LFSMetaObject.id)).where(LFSMetaObject.oid == oid))
        ).scalar_one()
        if not still_used:
            await run_in_threadpool(ctx.content_store.remove, LFSMetaObject(oid=oid, size=0))
    logger.info(f"Deleted repository {owner.name}/{repo.name}")


async def update_repository_size(ctx, session: AsyncSession, owner: User, repo: Repository) -> int:
    repo.size = await run_in_threadpool(
        ctx.repo_manager.repo_size, ctx.repo_manager.repo_path(owner.name, repo.name)
    )
    await session.flush()
    return repo.size


# -----------------------------------------------------------------------------
# Units
# -----------------------------------------------------------------------------

async def get_units(session: AsyncSession, repo_id: int) -> set[UnitType]:
    """Enabled units. A repository with no unit rows has every unit enabled."""
    rows = (await session.execute(select(RepoUnit.type).where(RepoUnit.repo_id == repo_id))).scalars().all()
    if not rows:
        return set(UnitType)
    return {UnitType(t) for t in rows}


async def set_units(session: AsyncSession, repo_id: int, units: dict[UnitType, dict | None]) -> None:
    """Replace the unit rows of a repository. Values are per-unit config."""
    await session.execute(delete(RepoUnit).where(RepoUnit.repo_id == repo_id))
    for unit, config in units.items():
        session.add(RepoUnit(repo_id=repo_id, type=unit, config=json.dumps(config or {})))
    await session.flush()
