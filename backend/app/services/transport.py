"""
Logic shared by the smart-HTTP routes and the SSH command gateway.

Both front ends run the same sequence: parse the repository path, resolve
the repository, decide the required mode, refuse pushes to mirrors,
evaluate access, then either mint an LFS token or spawn git. Missing and
forbidden repositories produce the same message so private repositories
cannot be probed.
"""

import logging
import shlex
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import AccessDeniedError, GitForgeError, InvalidInputError, NotFoundError
from app.models import AccessMode, DeployKey, PublicKey, Repository, UnitType, UpdateTask, User
from app.services.access import deploy_key_mode, has_access, load_access_context
from app.services.events import DomainEvent
from app.services.lfs_token import issue_lfs_token
from app.services.push_update import PushUpdateOptions, push_update
from app.services.repository import get_repository_by_name, update_repository_size

logger = logging.getLogger(__name__)

ACCESS_DENIED_MESSAGE = "Repository does not exist or you do not have access"
MIRROR_READ_ONLY_MESSAGE = "mirror repository is read-only"
INSUFFICIENT_AUTH_MESSAGE = "You do not have sufficient authorization for this action"

VERB_UPLOAD_PACK = "git-upload-pack"
VERB_UPLOAD_ARCHIVE = "git-upload-archive"
VERB_RECEIVE_PACK = "git-receive-pack"
VERB_LFS_AUTHENTICATE = "git-lfs-authenticate"

ALLOWED_COMMANDS = {
    VERB_UPLOAD_PACK: AccessMode.READ,
    VERB_UPLOAD_ARCHIVE: AccessMode.READ,
    VERB_RECEIVE_PACK: AccessMode.WRITE,
    VERB_LFS_AUTHENTICATE: AccessMode.READ,
}

LFS_OPERATIONS = {"download": AccessMode.READ, "upload": AccessMode.WRITE}


@dataclass
class SSHCommand:
    verb: str
    repo_path: str
    lfs_operation: str = ""


@dataclass
class RepoTarget:
    owner_name: str
    repo_name: str
    is_wiki: bool = False

    @property
    def unit(self) -> UnitType:
        return UnitType.WIKI if self.is_wiki else UnitType.CODE


def parse_ssh_command(command: str) -> SSHCommand:
    """Split ``SSH_ORIGINAL_COMMAND`` into the verb and its quoted path argument."""
    verb, sep, args = command.strip().partition(" ")
    if not sep or not args:
        raise InvalidInputError(f"Unknown git command: {command!r}")
    if verb not in ALLOWED_COMMANDS:
        raise InvalidInputError(f"Unknown git command: {verb}")
    # Some clients send '/owner/repo'
    args = args.replace("'/", "'", 1)

    lfs_operation = ""
    if verb == VERB_LFS_AUTHENTICATE:
        try:
            parts = shlex.split(args)
        except ValueError:
            parts = args.split()
        if len(parts) < 2:
            raise InvalidInputError("git-lfs-authenticate needs a repository and an operation")
        args, lfs_operation = parts[0], parts[1]
        if lfs_operation not in LFS_OPERATIONS:
            raise InvalidInputError(f"Unknown LFS operation: {lfs_operation}")
    return SSHCommand(verb=verb, repo_path=args.strip().strip("'\""), lfs_operation=lfs_operation)


def parse_repo_path(path: str) -> RepoTarget:
    """``owner/repo[.git]`` or ``owner/repo.wiki[.git]`` to a lowercase target."""
    path = path.strip().strip("'\"").strip("/").lower()
    owner, sep, name = path.partition("/")
    if not sep or not owner or not name or "/" in name:
        raise InvalidInputError(f"Invalid repository path: {path}")
    if name.endswith(".git"):
        name = name[:-4]
    is_wiki = name.endswith(".wiki")
    if is_wiki:
        name = name[:-5]
    if not name:
        raise InvalidInputError(f"Invalid repository path: {path}")
    return RepoTarget(owner_name=owner, repo_name=name, is_wiki=is_wiki)


def required_mode(verb: str, lfs_operation: str = "") -> AccessMode:
    if verb == VERB_LFS_AUTHENTICATE:
        return LFS_OPERATIONS[lfs_operation]
    mode = ALLOWED_COMMANDS.get(verb)
    if mode is None:
        raise InvalidInputError(f"Unknown git command: {verb}")
    return mode


async def resolve_repository(session: AsyncSession, target: RepoTarget) -> tuple[User, Repository]:
    try:
        return await get_repository_by_name(session, target.owner_name, target.repo_name)
    except NotFoundError:
        raise AccessDeniedError(ACCESS_DENIED_MESSAGE)


def check_mirror_push(repo: Repository, mode: AccessMode) -> None:
    if repo.is_mirror and mode >= AccessMode.WRITE:
        raise AccessDeniedError(MIRROR_READ_ONLY_MESSAGE)


async def authorize_user(
    session: AsyncSession, actor: User | None, repo: Repository, mode: AccessMode, unit: UnitType
) -> None:
    ctx = await load_access_context(session, actor, repo)
    if not has_access(ctx, mode, unit):
        raise AccessDeniedError(ACCESS_DENIED_MESSAGE)


async def authorize_key(
    session: AsyncSession, key: PublicKey, repo: Repository, mode: AccessMode, unit: UnitType
) -> User | None:
    """Check an SSH key against a repository. Returns the acting user (None for deploy keys)."""
    if key.is_deploy_key:
        binding = (
            await session.execute(
                select(DeployKey).where(DeployKey.key_id == key.id, DeployKey.repo_id == repo.id)
            )
        ).scalar_one_or_none()
        granted = deploy_key_mode(key, binding, repo)
        if granted == AccessMode.NONE:
            raise AccessDeniedError(ACCESS_DENIED_MESSAGE)
        if granted < mode:
            raise AccessDeniedError(INSUFFICIENT_AUTH_MESSAGE)
        binding.updated_at = datetime.utcnow()
        return None

    actor = await session.get(User, key.owner_id)
    if actor is None or actor.prohibit_login or not actor.is_active:
        raise AccessDeniedError(ACCESS_DENIED_MESSAGE)
    await authorize_user(session, actor, repo, mode, unit)
    return actor


def lfs_authenticate_envelope(settings, owner_name: str, repo_name: str, repo_id: int, operation: str) -> dict:
    token = issue_lfs_token(settings.lfs_jwt_secret_bytes, repo_id, operation)
    return {
        "href": f"{settings.app_url}{owner_name}/{repo_name}.git/info/lfs",
        "header": {"Authorization": f"Bearer {token}"},
    }


def git_env(settings, pusher: User, owner: User, repo: Repository, uuid: str, is_wiki: bool = False) -> dict[str, str]:
    """Environment for a git child process whose hooks record the push."""
    return {
        **settings.child_env(),
        "PUSHER_NAME": pusher.name,
        "PUSHER_ID": str(pusher.id),
        "PUSHER_EMAIL": pusher.email,
        "REPO_USER_NAME": owner.name,
        "REPO_NAME": repo.name,
        "REPO_ID": str(repo.id),
        "REPO_IS_WIKI": "true" if is_wiki else "false",
        "UUID": uuid,
    }


# -----------------------------------------------------------------------------
# Update tasks
# -----------------------------------------------------------------------------

async def record_update_task(session: AsyncSession, uuid: str, ref_name: str, old_commit_id: str, new_commit_id: str) -> UpdateTask:
    task = UpdateTask(uuid=uuid, ref_name=ref_name, old_commit_id=old_commit_id, new_commit_id=new_commit_id)
    session.add(task)
    await session.commit()
    return task


async def consume_update_tasks(session: AsyncSession, uuid: str) -> list[UpdateTask]:
    """Claim and delete every task of one invocation.

    A row counts as claimed only if this call deleted it, so two consumers
    racing on the same uuid never both process a task.
    """
    result = await session.execute(select(UpdateTask).where(UpdateTask.uuid == uuid).order_by(UpdateTask.id))
    tasks = list(result.scalars().all())
    claimed = []
    for task in tasks:
        deleted = await session.execute(delete(UpdateTask).where(UpdateTask.id == task.id))
        if deleted.rowcount == 1:
            claimed.append(task)
    await session.commit()
    return claimed


async def run_push_pipeline(
    ctx, session: AsyncSession, uuid: str, pusher: User, owner: User, repo: Repository
) -> list[DomainEvent]:
    """Run the push-update pipeline for every ref the hook recorded under ``uuid``.

    Safe to call more than once: later calls find no tasks and do nothing.
    """
    pusher_id, pusher_name = pusher.id, pusher.name
    owner_name, repo_name = owner.name, repo.name
    tasks = await consume_update_tasks(session, uuid)
    if not tasks:
        logger.debug(f"No update tasks for {uuid}")
        return []

    events: list[DomainEvent] = []
    for task in tasks:
        opts = PushUpdateOptions(
            pusher_id=pusher_id,
            pusher_name=pusher_name,
            repo_user_name=owner_name,
            repo_name=repo_name,
            ref_full_name=task.ref_name,
            old_commit_id=task.old_commit_id,
            new_commit_id=task.new_commit_id,
        )
        try:
            events.extend(await push_update(ctx, session, opts))
        except GitForgeError as e:
            logger.error(f"push_update {owner_name}/{repo_name} {task.ref_name}: {e}")
    await update_repository_size(ctx, session, owner, repo)
    await session.commit()
    return events


async def process_push(ctx, uuid: str, pusher_id: int, owner_name: str, repo_name: str) -> list[DomainEvent]:
    """Run the pipeline in a fresh session once ``git receive-pack`` has exited."""
    async with ctx.session_factory() as session:
        pusher = await session.get(User, pusher_id)
        if pusher is None:
            logger.error(f"Pusher {pusher_id} of {owner_name}/{repo_name} no longer exists")
            return []
        owner, repo = await get_repository_by_name(session, owner_name, repo_name)
        return await run_push_pipeline(ctx, session, uuid, pusher, owner, repo)
