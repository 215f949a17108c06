"""
Pull mirrors.

A mirror is a bare clone made with ``git clone --mirror`` whose ``origin``
remote is refreshed on a schedule. ``mirror_update`` (run by the scheduler
loop) queues every mirror that is due; the MirrorSyncWorker drains the queue
one repository at a time.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from urllib.parse import urlsplit

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.errors import ForbiddenURIError, InvalidInputError, MirrorNotFound, ProcessError, TransientError
from app.models import Mirror, Repository, User
from app.services.repository import create_notice, create_repository, get_owner
from app.services.workers import QueueWorker

logger = logging.getLogger(__name__)

MIRROR_UPDATE = "mirror_update"
ALLOWED_SCHEMES = {"http", "https", "git", "ssh"}
LOCAL_SCHEMES = {"file"}
_REMOTE_SECTION = (b"remote", b"origin")


def mask_credentials(url: str, mosaics: bool = True) -> str:
    """Hide the ``user:password@`` part of a clone address.

    With ``mosaics`` the credentials are replaced by ``<credentials>``,
    otherwise they are dropped.
    """
    i, j = url.find("://"), url.rfind("@")
    if i == -1 or j == -1 or j < i:
        return url
    if mosaics:
        return url[: i + 3] + "<credentials>" + url[j:]
    return url[: i + 3] + url[j + 1:]


def validate_remote_address(address: str, allow_local: bool = False) -> str:
    """Reject schemes the server must not fetch from.

    Local paths and ``file://`` are only accepted when ``allow_local`` is set
    (site administrators).
    """
    address = address.strip()
    if not address:
        raise InvalidInputError("mirror address is empty")
    scheme = urlsplit(address).scheme.lower()
    if scheme in ALLOWED_SCHEMES:
        return address
    if allow_local and (scheme in LOCAL_SCHEMES or (not scheme and Path(address).is_absolute())):
        return address
    raise ForbiddenURIError(f"mirror address is not allowed: {mask_credentials(address)}")


def get_address(repo_manager, repo_path: str | Path) -> str:
    """``remote.origin.url`` of a bare repository. Blocking."""
    repo = repo_manager.open_repo(repo_path)
    try:
        config = repo.get_config()
        try:
            return config.get(_REMOTE_SECTION, b"url").decode("utf-8")
        except KeyError:
            return ""
    finally:
        repo.close()


def save_address(repo_manager, repo_path: str | Path, address: str) -> None:
    """Point ``origin`` at a new address. Blocking."""
    repo = repo_manager.open_repo(repo_path)
    try:
        config = repo.get_config()
        config.set(_REMOTE_SECTION, b"url", address.encode("utf-8"))
        config.set(_REMOTE_SECTION, b"fetch", b"+refs/*:refs/*")
        config.set(_REMOTE_SECTION, b"mirror", True)
        config.write_to_path()
    finally:
        repo.close()


def sanitize_output(output: str, address: str) -> str:
    """Replace the remote address in git output by its masked form."""
    if not address:
        return output
    return output.replace(address, mask_credentials(address))


def wiki_address(address: str) -> str:
    if address.endswith(".git"):
        return address[:-4] + ".wiki.git"
    return address.rstrip("/") + ".wiki.git"


# -----------------------------------------------------------------------------
# Lookups and settings
# -----------------------------------------------------------------------------

async def get_mirror_by_repo_id(session: AsyncSession, repo_id: int) -> Mirror:
    mirror = (await session.execute(select(Mirror).where(Mirror.repo_id == repo_id))).scalar_one_or_none()
    if mirror is None:
        raise MirrorNotFound(f"mirror does not exist for repository {repo_id}")
    return mirror


def validate_interval(settings, interval: int) -> int:
    if interval < settings.mirror_min_interval:
        raise InvalidInputError(
            f"mirror interval {interval}s is below the minimum of {settings.mirror_min_interval}s"
        )
    return interval


async def set_mirror_interval(ctx, session: AsyncSession, mirror: Mirror, interval: int) -> Mirror:
    mirror.interval = validate_interval(ctx.settings, interval)
    mirror.next_update = (mirror.updated_at or datetime.utcnow()) + timedelta(seconds=interval)
    await session.commit()
    return mirror


async def update_mirror_address(ctx, owner: User, repo: Repository, address: str, allow_local: bool = False) -> None:
    address = validate_remote_address(address, allow_local)
    await run_in_threadpool(save_address, ctx.repo_manager, ctx.repo_manager.repo_path(owner.name, repo.name), address)


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------

async def create_mirror_repository(
    ctx,
    session: AsyncSession,
    owner: User,
    name: str,
    address: str,
    description: str = "",
    is_private: bool = False,
    interval: int | None = None,
    enable_prune: bool = True,
    wiki: bool = False,
    allow_local: bool = False,
    doer: User | None = None,
) -> Repository:
    """Clone ``address`` as a new mirror repository and schedule its updates."""
    address = validate_remote_address(address, allow_local)
    interval = validate_interval(ctx.settings, interval or ctx.settings.mirror_default_interval)
    timeout = ctx.settings.git_timeout_mirror

    async def clone(repo_path: Path) -> None:
        repo_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await ctx.process_manager.exec_timeout(
                timeout,
                f"create mirror {mask_credentials(address)}",
                "git", "clone", "--mirror", "--quiet", address, str(repo_path),
            )
        except ProcessError as e:
            raise ProcessError(
                f"clone {mask_credentials(address)}",
                stderr=sanitize_output(e.stderr, address),
                returncode=e.returncode,
            ) from None
        await run_in_threadpool(ctx.repo_manager.install_update_hook, repo_path)

        if wiki:
            wiki_path = ctx.repo_manager.wiki_path(owner.name, name)
            try:
                await ctx.process_manager.exec_timeout(
                    timeout,
                    f"create wiki mirror {mask_credentials(address)}",
                    "git", "clone", "--mirror", "--quiet", wiki_address(address), str(wiki_path),
                )
            except (ProcessError, TransientError) as e:
                logger.warning(f"Cloning wiki of {mask_credentials(address)} failed: {e}")

    repo = await create_repository(
        ctx,
        session,
        owner,
        name,
        description=description,
        is_private=is_private,
        is_mirror=True,
        initializer=clone,
        doer=doer,
    )

    repo_path = ctx.repo_manager.repo_path(owner.name, repo.name)
    repo.is_bare = not await run_in_threadpool(ctx.repo_manager.list_branches, repo_path)
    default_branch = await run_in_threadpool(ctx.repo_manager.get_default_branch, repo_path)
    if default_branch:
        repo.default_branch = default_branch
    repo.size = await run_in_threadpool(ctx.repo_manager.repo_size, repo_path)

    mirror = Mirror(repo_id=repo.id, interval=interval, enable_prune=enable_prune)
    mirror.schedule_next_update()
    session.add(mirror)
    await session.commit()
    logger.info(f"Created mirror {owner.name}/{repo.name} of {mask_credentials(address)}")
    return repo


# -----------------------------------------------------------------------------
# Synchronisation
# -----------------------------------------------------------------------------

async def _remote_update(ctx, repo_path: Path, prune: bool) -> None:
    args = ["git", "remote", "update"]
    if prune:
        args.append("--prune")
    await ctx.process_manager.exec_dir(
        ctx.settings.git_timeout_mirror, str(repo_path), f"mirror sync: {repo_path}", *args
    )


async def _latest_commit_time(ctx, repo_path: Path) -> datetime | None:
    out, _ = await ctx.process_manager.exec_dir(
        ctx.settings.git_timeout_default,
        str(repo_path),
        f"latest commit: {repo_path}",
        "git", "for-each-ref", "--sort=-committerdate", "refs/heads/", "--count", "1",
        "--format=%(committerdate:iso-strict)",
    )
    out = out.strip()
    if not out:
        return None
    return datetime.fromisoformat(out).astimezone(timezone.utc).replace(tzinfo=None)


async def run_sync(ctx, session: AsyncSession, owner: User, repo: Repository, mirror: Mirror) -> bool:
    """Fetch from the remote. Failures become a Notice and return False."""
    repo_path = ctx.repo_manager.repo_path(owner.name, repo.name)
    full_name = f"{owner.name}/{repo.name}"
    try:
        await _remote_update(ctx, repo_path, mirror.enable_prune)
    except (ProcessError, TransientError) as e:
        address = await run_in_threadpool(get_address, ctx.repo_manager, repo_path)
        stderr = e.stderr if isinstance(e, ProcessError) else str(e)
        desc = f"Failed to update mirror repository '{full_name}': {sanitize_output(stderr, address)}"
        logger.error(desc)
        await create_notice(session, desc)
        await session.commit()
        return False

    repo.size = await run_in_threadpool(ctx.repo_manager.repo_size, repo_path)

    if await run_in_threadpool(ctx.repo_manager.has_wiki, owner.name, repo.name):
        wiki_path = ctx.repo_manager.wiki_path(owner.name, repo.name)
        try:
            await _remote_update(ctx, wiki_path, mirror.enable_prune)
        except (ProcessError, TransientError) as e:
            address = await run_in_threadpool(get_address, ctx.repo_manager, wiki_path)
            stderr = e.stderr if isinstance(e, ProcessError) else str(e)
            desc = f"Failed to update mirror wiki repository '{full_name}': {sanitize_output(stderr, address)}"
            logger.error(desc)
            await create_notice(session, desc)
            await session.commit()
            return False
    return True


async def sync_mirror(ctx, repo_id: int) -> bool:
    """Worker handler for one repository id."""
    async with ctx.session_factory() as session:
        mirror = await get_mirror_by_repo_id(session, repo_id)
        repo = await session.get(Repository, repo_id)
        if repo is None:
            logger.error(f"Mirror {mirror.id} points at missing repository {repo_id}")
            return False
        owner = await get_owner(session, repo)

        if not await run_sync(ctx, session, owner, repo, mirror):
            return False

        mirror.schedule_next_update()
        repo_path = ctx.repo_manager.repo_path(owner.name, repo.name)
        try:
            latest = await _latest_commit_time(ctx, repo_path)
        except (ProcessError, TransientError, ValueError) as e:
            logger.warning(f"Reading latest commit of {owner.name}/{repo.name}: {e}")
            latest = None
        if latest is not None:
            repo.updated_at = latest
        repo.is_bare = not await run_in_threadpool(ctx.repo_manager.list_branches, repo_path)
        await session.commit()
        logger.info(f"Mirror {owner.name}/{repo.name} synchronized")
        return True


async def mirror_update(ctx) -> int:
    """Queue every mirror whose next update is due. Overlapping runs are skipped."""
    if ctx.status_table.is_running(MIRROR_UPDATE):
        logger.debug("Mirror update already running")
        return 0
    ctx.status_table.start(MIRROR_UPDATE)
    try:
        logger.debug("Mirror update started")
        queued = 0
        async with ctx.session_factory() as session:
            result = await session.execute(
                select(Mirror, Repository)
                .outerjoin(Repository, Repository.id == Mirror.repo_id)
                .where(Mirror.next_update <= datetime.utcnow())
            )
            for mirror, repo in result.all():
                if repo is None:
                    logger.error(f"Mirror {mirror.id} points at missing repository {mirror.repo_id}")
                    continue
                if await ctx.mirror_queue.add(mirror.repo_id):
                    queued += 1
        return queued
    finally:
        ctx.status_table.stop(MIRROR_UPDATE)


class MirrorSyncWorker(QueueWorker):
    """Drains the mirror queue and, alongside, runs the schedule sweep."""

    name = "mirror sync"

    def __init__(self, ctx):
        super().__init__(ctx, ctx.mirror_queue)
        self._schedule_task: asyncio.Task | None = None

    async def start(self):
        await super().start()
        if self._schedule_task is None:
            self._schedule_task = asyncio.create_task(self._schedule_loop())

    async def stop(self):
        if self._schedule_task:
            self._schedule_task.cancel()
            try:
                await self._schedule_task
            except asyncio.CancelledError:
                pass
            self._schedule_task = None
        await super().stop()

    async def _schedule_loop(self):
        while self.running:
            try:
                await mirror_update(self.ctx)
            except Exception as e:
                logger.error(f"Mirror schedule sweep failed: {e}")
            await asyncio.sleep(self.ctx.settings.mirror_check_interval)

    async def handle(self, repo_id: int) -> None:
        await sync_mirror(self.ctx, repo_id)
