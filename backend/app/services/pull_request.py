"""
Pull requests: mergeability checks and the merge itself.

The head branch is always pushed into the base repository as
``refs/pull/<index>/head`` first, so every comparison and merge works inside
the base repository. Checks run on the PullRequestChecker, keyed by pull
request id; a push to either branch puts the pull request back into
``checking`` and queues it again.

Status transitions:

    checking -> mergeable | conflict | manual
    mergeable | conflict | manual -> checking

A merged pull request is never checked again.
"""

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.errors import (
    InvalidInputError,
    InvalidRefError,
    ProcessError,
    PullRequestAlreadyMergedError,
    PullRequestNotFound,
    PullRequestNotMergeableError,
    TransientError,
)
from app.models import (
    ActionType,
    Issue,
    LFSMetaObject,
    MergeStyle,
    PullRequest,
    PullRequestStatus,
    Repository,
    User,
)
from app.services.diff import Diff, apply_lfs_objects, collect_lfs_oids
from app.services.diff.git import get_diff_range
from app.services.events import DomainEvent, EventType
from app.services.push_update import PushCommit, PushUpdateOptions, push_update, walk_commits
from app.services.repository import get_owner, get_repository_by_id, new_action, notify_watchers
from app.services.transport import git_env, run_push_pipeline
from app.services.workers import QueueWorker

logger = logging.getLogger(__name__)

# Bounded commit list shown on a compare page
MAX_COMPARE_COMMITS = 250

VALID_TRANSITIONS: dict[PullRequestStatus, set[PullRequestStatus]] = {
    PullRequestStatus.CHECKING: {
        PullRequestStatus.MERGEABLE,
        PullRequestStatus.CONFLICT,
        PullRequestStatus.MANUAL,
    },
    PullRequestStatus.MERGEABLE: {PullRequestStatus.CHECKING},
    PullRequestStatus.CONFLICT: {PullRequestStatus.CHECKING},
    PullRequestStatus.MANUAL: {PullRequestStatus.CHECKING},
}


def can_transition(current: PullRequestStatus, new: PullRequestStatus) -> bool:
    return current == new or new in VALID_TRANSITIONS.get(current, set())


def set_status(pr: PullRequest, status: PullRequestStatus) -> None:
    current = PullRequestStatus(pr.status)
    if pr.has_merged:
        raise PullRequestAlreadyMergedError(f"pull request {pr.id} is already merged")
    if not can_transition(current, status):
        raise InvalidInputError(f"pull request {pr.id}: cannot go from {current.value} to {status.value}")
    pr.status = status.value


@dataclass
class PullSides:
    """Rows on both ends of a pull request."""
    pr: PullRequest
    issue: Issue
    base_owner: User
    base_repo: Repository
    head_owner: User | None
    head_repo: Repository | None


@dataclass
class CompareInfo:
    merge_base: str
    head_commit_id: str
    commits: list[PushCommit] = field(default_factory=list)
    diff: Diff | None = None

    @property
    def nothing_to_compare(self) -> bool:
        return self.merge_base == self.head_commit_id


# -----------------------------------------------------------------------------
# Lookups
# -----------------------------------------------------------------------------

async def get_pull_request_by_id(session: AsyncSession, pr_id: int) -> PullRequest:
    pr = await session.get(PullRequest, pr_id)
    if pr is None:
        raise PullRequestNotFound(f"pull request does not exist: {pr_id}")
    return pr


async def get_pull_request_by_index(session: AsyncSession, repo_id: int, index: int) -> PullRequest:
    pr = (
        await session.execute(
            select(PullRequest).where(PullRequest.base_repo_id == repo_id, PullRequest.index == index)
        )
    ).scalar_one_or_none()
    if pr is None:
        raise PullRequestNotFound(f"pull request does not exist: {repo_id}#{index}")
    return pr


async def load_sides(session: AsyncSession, pr: PullRequest) -> PullSides:
    issue = await session.get(Issue, pr.issue_id)
    if issue is None:
        raise PullRequestNotFound(f"issue of pull request {pr.id} does not exist")
    base_repo = await get_repository_by_id(session, pr.base_repo_id)
    base_owner = await get_owner(session, base_repo)
    head_repo = await session.get(Repository, pr.head_repo_id)
    head_owner = await get_owner(session, head_repo) if head_repo is not None else None
    return PullSides(pr, issue, base_owner, base_repo, head_owner, head_repo)


# -----------------------------------------------------------------------------
# Payloads
# -----------------------------------------------------------------------------

def pull_request_payload(app_url: str, action: str, sides: PullSides, sender: User) -> dict:
    pr, issue = sides.pr, sides.issue
    base_link = sides.base_repo.html_url(app_url, sides.base_owner.name)
    head_api = (
        sides.head_repo.api_format(sides.head_owner, app_url)
        if sides.head_repo is not None and sides.head_owner is not None
        else None
    )
    return {
        "action": action,
        "number": pr.index,
        "pull_request": {
            "id": pr.id,
            "number": pr.index,
            "title": issue.title,
            "body": issue.content,
            "html_url": f"{base_link}/pulls/{pr.index}",
            "state": "closed" if issue.is_closed else "open",
            "status": pr.status,
            "mergeable": pr.status == PullRequestStatus.MERGEABLE.value,
            "merged": pr.has_merged,
            "merged_at": pr.merged_at.isoformat() if pr.merged_at else None,
            "merge_commit_sha": pr.merged_commit_id,
            "merge_base": pr.merge_base,
            "head": {"ref": pr.head_branch, "label": f"{pr.head_user_name}:{pr.head_branch}", "repo": head_api},
            "base": {
                "ref": pr.base_branch,
                "label": f"{sides.base_owner.name}:{pr.base_branch}",
                "repo": sides.base_repo.api_format(sides.base_owner, app_url),
            },
        },
        "repository": sides.base_repo.api_format(sides.base_owner, app_url),
        "sender": sender.api_format(),
    }


def pull_request_event(ctx, action: str, sides: PullSides, sender: User) -> DomainEvent:
    return DomainEvent(
        type=EventType.PULL_REQUEST,
        repo_id=sides.base_repo.id,
        actor_id=sender.id,
        payload=pull_request_payload(ctx.settings.app_url, action, sides, sender),
    )


# -----------------------------------------------------------------------------
# Git plumbing
# -----------------------------------------------------------------------------

async def _git(ctx, cwd: str | Path, description: str, *args: str, env: dict[str, str] | None = None, timeout: int | None = None) -> str:
    out, _ = await ctx.process_manager.exec_dir_env(
        timeout or ctx.settings.git_timeout_pull, str(cwd), description, env, "git", *args
    )
    return out.strip()


async def push_to_base_repo(ctx, sides: PullSides) -> None:
    """Copy the head branch into the base repository as ``refs/pull/<index>/head``."""
    if sides.head_repo is None or sides.head_owner is None:
        raise InvalidRefError(f"head repository of pull request {sides.pr.id} is gone")
    head_path = ctx.repo_manager.repo_path(sides.head_owner.name, sides.head_repo.name)
    base_path = ctx.repo_manager.repo_path(sides.base_owner.name, sides.base_repo.name)
    await _git(
        ctx,
        head_path,
        f"push to base repository: {sides.base_owner.name}/{sides.base_repo.name}#{sides.pr.index}",
        "push", "--force", str(base_path), f"{sides.pr.head_branch}:{sides.pr.head_ref}",
        # The base repository's update hook only records pushes that carry a UUID
        env={"UUID": ""},
    )


async def get_merge_base(ctx, repo_path: str | Path, base: str, head: str) -> str:
    return await _git(ctx, repo_path, f"merge-base {base} {head}: {repo_path}", "merge-base", base, head)


async def known_lfs_oids(session: AsyncSession, repo_id: int, oids: set[str]) -> set[str]:
    if not oids:
        return set()
    result = await session.execute(
        select(LFSMetaObject.oid).where(LFSMetaObject.repository_id == repo_id, LFSMetaObject.oid.in_(oids))
    )
    return set(result.scalars().all())


async def get_compare_info(ctx, session: AsyncSession, sides: PullSides) -> CompareInfo:
    """Merge base, commits and bounded diff between the base branch and the head ref."""
    base_path = ctx.repo_manager.repo_path(sides.base_owner.name, sides.base_repo.name)
    head_commit = await _git(ctx, base_path, f"rev-parse {sides.pr.head_ref}", "rev-parse", sides.pr.head_ref)
    merge_base = await get_merge_base(ctx, base_path, sides.pr.base_branch, head_commit)
    info = CompareInfo(merge_base=merge_base, head_commit_id=head_commit)
    if info.nothing_to_compare:
        return info

    info.commits = await run_in_threadpool(
        walk_commits, ctx.repo_manager, str(base_path), head_commit, merge_base, MAX_COMPARE_COMMITS
    )
    settings = ctx.settings
    info.diff = await get_diff_range(
        ctx.process_manager,
        str(base_path),
        merge_base,
        head_commit,
        max_lines=settings.max_git_diff_lines,
        max_line_chars=settings.max_git_diff_line_chars,
        max_files=settings.max_git_diff_files,
        timeout=settings.git_timeout_pull,
    )
    apply_lfs_objects(info.diff, await known_lfs_oids(session, sides.base_repo.id, collect_lfs_oids(info.diff)))
    return info


def patch_path(repo_path: Path, index: int) -> Path:
    return repo_path / "pulls" / f"{index}.patch"


async def check_mergeability(ctx, sides: PullSides) -> PullRequestStatus:
    """Decide mergeability of a pull request in ``checking`` and store the result.

    The head ref must already be in the base repository. The patch from the
    merge base to the head is applied with ``--check`` to a throwaway index
    holding the base branch tree.
    """
    pr = sides.pr
    base_path = ctx.repo_manager.repo_path(sides.base_owner.name, sides.base_repo.name)
    label = f"{sides.base_owner.name}/{sides.base_repo.name}#{pr.index}"

    try:
        merge_base = await get_merge_base(ctx, base_path, pr.base_branch, pr.head_ref)
        head_commit = await _git(ctx, base_path, f"rev-parse {pr.head_ref}", "rev-parse", pr.head_ref)
    except ProcessError as e:
        logger.warning(f"Pull request {label}: cannot compute merge base: {e}")
        set_status(pr, PullRequestStatus.MANUAL)
        return PullRequestStatus.MANUAL
    pr.merge_base = merge_base

    if merge_base == head_commit:
        set_status(pr, PullRequestStatus.MERGEABLE)
        return PullRequestStatus.MERGEABLE

    try:
        result = await ctx.process_manager.run(
            ["git", "diff", "--binary", merge_base, head_commit],
            cwd=str(base_path),
            description=f"pull request patch: {label}",
            timeout=ctx.settings.git_timeout_pull,
        )
    except ProcessError as e:
        logger.warning(f"Pull request {label}: cannot build patch: {e}")
        set_status(pr, PullRequestStatus.MANUAL)
        return PullRequestStatus.MANUAL
    patch = patch_path(base_path, pr.index)
    await run_in_threadpool(patch.parent.mkdir, parents=True, exist_ok=True)
    await run_in_threadpool(patch.write_bytes, result.stdout)
    if not result.stdout.strip():
        set_status(pr, PullRequestStatus.MERGEABLE)
        return PullRequestStatus.MERGEABLE

    temp_root = Path(ctx.settings.temp_path)
    temp_root.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory(prefix=f"pr-{pr.id}-", dir=temp_root) as tmp:
        env = {"GIT_INDEX_FILE": str(Path(tmp) / "index"), "GIT_DIR": str(base_path)}
        try:
            await _git(ctx, tmp, f"read-tree {pr.base_branch}: {label}", "read-tree", pr.base_branch, env=env)
        except ProcessError as e:
            logger.warning(f"Pull request {label}: cannot read base tree: {e}")
            set_status(pr, PullRequestStatus.MANUAL)
            return PullRequestStatus.MANUAL
        try:
            await _git(ctx, tmp, f"apply --check: {label}", "apply", "--check", "--cached", str(patch), env=env)
        except ProcessError as e:
            logger.info(f"Pull request {label} conflicts: {e}")
            set_status(pr, PullRequestStatus.CONFLICT)
            return PullRequestStatus.CONFLICT

    set_status(pr, PullRequestStatus.MERGEABLE)
    return PullRequestStatus.MERGEABLE


async def check_pull_request(ctx, pr_id: int) -> PullRequestStatus | None:
    """Worker handler: refresh the head ref and test mergeability."""
    async with ctx.session_factory() as session:
        pr = await get_pull_request_by_id(session, pr_id)
        if pr.has_merged:
            logger.debug(f"Pull request {pr_id} is merged, skipping check")
            return None
        sides = await load_sides(session, pr)
        set_status(pr, PullRequestStatus.CHECKING)

        try:
            await push_to_base_repo(ctx, sides)
        except (ProcessError, InvalidRefError) as e:
            logger.warning(f"Pull request {pr_id}: head branch {pr.head_branch} unavailable: {e}")
            set_status(pr, PullRequestStatus.MANUAL)
            await session.commit()
            return PullRequestStatus.MANUAL

        status = await check_mergeability(ctx, sides)
        await session.commit()
        logger.info(f"Pull request {pr_id} checked: {status.value}")
        return status


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------

async def create_pull_request(
    ctx,
    session: AsyncSession,
    poster: User,
    base_repo: Repository,
    base_branch: str,
    head_repo: Repository,
    head_branch: str,
    title: str,
    content: str = "",
) -> tuple[PullRequest, list[DomainEvent]]:
    """Open a pull request, queue its first check and return the ``opened`` event."""
    base_owner = await get_owner(session, base_repo)
    head_owner = await get_owner(session, head_repo)
    for owner, repo, branch in ((base_owner, base_repo, base_branch), (head_owner, head_repo, head_branch)):
        path = ctx.repo_manager.repo_path(owner.name, repo.name)
        if await run_in_threadpool(ctx.repo_manager.get_branch_commit, path, branch) is None:
            raise InvalidRefError(f"branch does not exist: {owner.name}/{repo.name}:{branch}")
    if base_repo.id == head_repo.id and base_branch == head_branch:
        raise InvalidInputError("head and base branch are the same")

    index = (
        await session.execute(select(func.coalesce(func.max(Issue.index), 0)).where(Issue.repo_id == base_repo.id))
    ).scalar_one() + 1
    issue = Issue(repo_id=base_repo.id, index=index, poster_id=poster.id, title=title, content=content, is_pull=True)
    session.add(issue)
    await session.flush()

    pr = PullRequest(
        issue_id=issue.id,
        index=index,
        status=PullRequestStatus.CHECKING.value,
        head_repo_id=head_repo.id,
        base_repo_id=base_repo.id,
        head_user_name=head_owner.name,
        head_branch=head_branch,
        base_branch=base_branch,
    )
    session.add(pr)
    base_repo.num_pulls += 1
    await session.flush()

    sides = PullSides(pr, issue, base_owner, base_repo, head_owner, head_repo)
    await push_to_base_repo(ctx, sides)
    await notify_watchers(
        session,
        new_action(ActionType.CREATE_PULL_REQUEST, poster, base_owner, base_repo, content=f"{index}|{title}"),
    )
    await session.commit()
    await ctx.pull_request_queue.add(pr.id)
    logger.info(f"{poster.name} opened {base_owner.name}/{base_repo.name}#{index}")
    return pr, [pull_request_event(ctx, "opened", sides, poster)]


async def add_test_pull_request_task(ctx, session: AsyncSession, doer: User, repo_id: int, branch: str) -> list[DomainEvent]:
    """Queue every open pull request that has ``branch`` of ``repo_id`` as head or base.

    Pull requests whose head moved get a ``synchronized`` event.
    """
    result = await session.execute(
        select(PullRequest).where(
            PullRequest.has_merged.is_(False),
            or_(
                (PullRequest.head_repo_id == repo_id) & (PullRequest.head_branch == branch),
                (PullRequest.base_repo_id == repo_id) & (PullRequest.base_branch == branch),
            ),
        )
    )
    prs = list(result.scalars().all())
    events: list[DomainEvent] = []
    for pr in prs:
        sides = await load_sides(session, pr)
        if sides.issue.is_closed:
            continue
        set_status(pr, PullRequestStatus.CHECKING)
        if pr.head_repo_id == repo_id and pr.head_branch == branch:
            events.append(pull_request_event(ctx, "synchronized", sides, doer))
    await session.commit()
    for pr in prs:
        await ctx.pull_request_queue.add(pr.id)
    return events


async def merge_pull_request(
    ctx, session: AsyncSession, pr: PullRequest, doer: User, style: MergeStyle | None = None
) -> tuple[PullRequest, list[DomainEvent]]:
    """Merge in a temporary clone and push back through the push pipeline."""
    if pr.has_merged:
        raise PullRequestAlreadyMergedError(f"pull request {pr.id} is already merged")
    if pr.status != PullRequestStatus.MERGEABLE.value:
        raise PullRequestNotMergeableError(f"pull request {pr.id} is not mergeable ({pr.status})")
    style = style or MergeStyle(ctx.settings.pull_request_merge_style)

    sides = await load_sides(session, pr)
    if sides.head_repo is None or sides.head_owner is None:
        raise PullRequestNotMergeableError(f"head repository of pull request {pr.id} is gone")
    base_owner, base_repo = sides.base_owner, sides.base_repo
    base_owner_name, base_repo_name = base_owner.name, base_repo.name
    base_path = ctx.repo_manager.repo_path(base_owner_name, base_repo_name)
    head_path = ctx.repo_manager.repo_path(sides.head_owner.name, sides.head_repo.name)
    base_branch, head_branch = pr.base_branch, pr.head_branch
    old_commit = await run_in_threadpool(ctx.repo_manager.get_branch_commit, base_path, base_branch)
    # The update hook writes to the database from another process
    await session.commit()

    temp_root = Path(ctx.settings.temp_path)
    temp_root.mkdir(parents=True, exist_ok=True)
    tmp = tempfile.mkdtemp(prefix=f"merge-{pr.id}-", dir=temp_root)
    label = f"{base_owner_name}/{base_repo_name}#{pr.index}"
    email = doer.email or f"{doer.lower_name}@noreply.{ctx.settings.ssh_domain}"
    commit_env = {
        "GIT_AUTHOR_NAME": doer.name,
        "GIT_AUTHOR_EMAIL": email,
        "GIT_COMMITTER_NAME": doer.name,
        "GIT_COMMITTER_EMAIL": email,
    }
    uuid = str(uuid4())
    try:
        await _git(ctx, temp_root, f"merge clone: {label}", "clone", "--quiet", "-b", base_branch, str(base_path), tmp)
        await _git(ctx, tmp, f"merge remote add: {label}", "remote", "add", "head_repo", str(head_path))
        await _git(ctx, tmp, f"merge fetch: {label}", "fetch", "--quiet", "head_repo")

        if style == MergeStyle.REBASE:
            await _git(ctx, tmp, f"rebase checkout: {label}", "checkout", "-q", "-b", "head_tmp", f"head_repo/{head_branch}")
            await _git(ctx, tmp, f"rebase: {label}", "rebase", "-q", base_branch, env=commit_env)
            await _git(ctx, tmp, f"rebase back: {label}", "checkout", "-q", base_branch)
            await _git(ctx, tmp, f"rebase fast-forward: {label}", "merge", "--ff-only", "-q", "head_tmp")
        else:
            await _git(ctx, tmp, f"merge: {label}", "merge", "--no-ff", "--no-commit", f"head_repo/{head_branch}", env=commit_env)
            message = f"Merge branch '{head_branch}' of {pr.head_user_name}/{sides.head_repo.name} into {base_branch}"
            await _git(ctx, tmp, f"merge commit: {label}", "commit", "-m", message, env=commit_env)

        merged_commit = await _git(ctx, tmp, f"merge rev-parse: {label}", "rev-parse", "HEAD")
        await _git(
            ctx,
            tmp,
            f"merge push: {label}",
            "push", "origin", base_branch,
            env=git_env(ctx.settings, doer, base_owner, base_repo, uuid),
        )
    except (ProcessError, TransientError) as e:
        raise PullRequestNotMergeableError(f"merge of {label} failed: {e}") from e
    finally:
        await run_in_threadpool(shutil.rmtree, tmp, True)

    events = await run_push_pipeline(ctx, session, uuid, doer, base_owner, base_repo)
    if not events:
        logger.warning(f"Update hook recorded nothing for merge of {label}, running push update directly")
        events = await push_update(
            ctx,
            session,
            PushUpdateOptions(
                pusher_id=doer.id,
                pusher_name=doer.name,
                repo_user_name=base_owner_name,
                repo_name=base_repo_name,
                ref_full_name=f"refs/heads/{base_branch}",
                old_commit_id=old_commit or "0" * 40,
                new_commit_id=merged_commit,
            ),
        )

    now = datetime.utcnow()
    pr.has_merged = True
    pr.merged_commit_id = merged_commit
    pr.merger_id = doer.id
    pr.merged_at = now
    sides.issue.is_closed = True
    sides.issue.closed_at = now
    base_repo.num_closed_pulls += 1
    await notify_watchers(
        session,
        new_action(ActionType.MERGE_PULL_REQUEST, doer, base_owner, base_repo, content=f"{pr.index}|{sides.issue.title}"),
    )
    events.append(pull_request_event(ctx, "merged", sides, doer))
    await session.commit()
    logger.info(f"{doer.name} merged {label} as {merged_commit}")
    return pr, events


class PullRequestChecker(QueueWorker):
    name = "pull request checker"

    def __init__(self, ctx):
        super().__init__(ctx, ctx.pull_request_queue)

    async def on_start(self) -> None:
        """Re-queue pull requests left in ``checking`` by the previous run."""
        async with self.ctx.session_factory() as session:
            result = await session.execute(
                select(PullRequest.id).where(
                    PullRequest.status == PullRequestStatus.CHECKING.value,
                    PullRequest.has_merged.is_(False),
                )
            )
            pr_ids = list(result.scalars().all())
        for pr_id in pr_ids:
            await self.queue.add(pr_id)

    async def handle(self, pr_id: int) -> None:
        await check_pull_request(self.ctx, pr_id)
