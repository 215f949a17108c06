"""
Push-update pipeline.

Runs once per ref update recorded by the ``update`` hook: refreshes the
dumb-HTTP info files, records the push in the activity feed of the pusher
and every watcher, and returns the domain events webhooks and the pull
request checker react to.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone

from dulwich.objects import Commit
from dulwich.walk import Walker
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.errors import InvalidRefError, ProcessError
from app.models import ActionType, Repository, User
from app.services.auth import get_user_by_id
from app.services.events import DomainEvent, EventType
from app.services.repository import get_repository_by_name, new_action, notify_watchers

logger = logging.getLogger(__name__)

EMPTY_SHA = "0" * 40
BRANCH_PREFIX = "refs/heads/"
TAG_PREFIX = "refs/tags/"
# Commits serialized into one activity row; the true count is reported separately
MAX_FEED_COMMITS = 10

_SIGNATURE = re.compile(rb"^(.*?)\s*<([^>]*)>")


@dataclass
class PushCommit:
    sha1: str
    message: str
    author_name: str
    author_email: str
    committer_name: str
    committer_email: str
    timestamp: datetime

    def to_api(self, repo_link: str) -> dict:
        return {
            "id": self.sha1,
            "message": self.message,
            "url": f"{repo_link}/commit/{self.sha1}",
            "author": {"name": self.author_name, "email": self.author_email, "username": ""},
            "committer": {"name": self.committer_name, "email": self.committer_email, "username": ""},
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class PushCommits:
    total: int = 0
    commits: list[PushCommit] = field(default_factory=list)
    compare_url: str = ""

    def to_content(self) -> str:
        return json.dumps(
            {
                "len": self.total,
                "commits": [
                    {**asdict(c), "timestamp": c.timestamp.isoformat()} for c in self.commits
                ],
                "compare_url": self.compare_url,
            }
        )


@dataclass
class PushUpdateOptions:
    pusher_id: int
    pusher_name: str
    repo_user_name: str
    repo_name: str
    ref_full_name: str
    old_commit_id: str
    new_commit_id: str


def _parse_signature(raw: bytes) -> tuple[str, str]:
    match = _SIGNATURE.match(raw)
    if not match:
        return raw.decode("utf-8", errors="replace"), ""
    return match.group(1).decode("utf-8", errors="replace"), match.group(2).decode("utf-8", errors="replace")


def commit_from_dulwich(commit: Commit) -> PushCommit:
    author_name, author_email = _parse_signature(commit.author)
    committer_name, committer_email = _parse_signature(commit.committer)
    return PushCommit(
        sha1=commit.id.decode("ascii"),
        message=commit.message.decode("utf-8", errors="replace").strip(),
        author_name=author_name,
        author_email=author_email,
        committer_name=committer_name,
        committer_email=committer_email,
        timestamp=datetime.fromtimestamp(commit.commit_time, tz=timezone.utc),
    )


def walk_commits(repo_manager, repo_path: str, include: str, exclude: str | None, limit: int) -> list[PushCommit]:
    """Newest-first commits reachable from ``include`` but not from ``exclude``. Blocking."""
    repo = repo_manager.open_repo(repo_path)
    try:
        walker = Walker(
            repo.object_store,
            [include.encode("ascii")],
            exclude=[exclude.encode("ascii")] if exclude else None,
            max_entries=limit,
        )
        return [commit_from_dulwich(entry.commit) for entry in walker]
    except KeyError as e:
        raise InvalidRefError(f"commit not found in {repo_path}: {e}") from e
    finally:
        repo.close()


async def count_commits(ctx, repo_path: str, include: str, exclude: str | None) -> int:
    rev = f"{exclude}..{include}" if exclude else include
    out, _ = await ctx.process_manager.exec_dir(
        ctx.settings.git_timeout_default, repo_path, f"count commits {rev}: {repo_path}",
        "git", "rev-list", "--count", rev,
    )
    return int(out.strip() or 0)


async def list_push_commits(ctx, repo_path: str, old_commit_id: str, new_commit_id: str) -> PushCommits:
    """First MAX_FEED_COMMITS commits of the push plus the true count."""
    exclude = None if old_commit_id == EMPTY_SHA else old_commit_id
    commits = await run_in_threadpool(
        walk_commits, ctx.repo_manager, repo_path, new_commit_id, exclude, MAX_FEED_COMMITS
    )
    try:
        total = await count_commits(ctx, repo_path, new_commit_id, exclude)
    except ProcessError as e:
        logger.warning(f"Counting commits failed, using listed count: {e}")
        total = len(commits)
    return PushCommits(total=total, commits=commits)


# -----------------------------------------------------------------------------
# Payloads
# -----------------------------------------------------------------------------

def push_payload(
    app_url: str, owner: User, repo: Repository, pusher: User, opts: PushUpdateOptions, commits: PushCommits
) -> dict:
    repo_link = repo.html_url(app_url, owner.name)
    return {
        "ref": opts.ref_full_name,
        "before": opts.old_commit_id,
        "after": opts.new_commit_id,
        "compare_url": commits.compare_url,
        "commits": [c.to_api(repo_link) for c in commits.commits],
        "total_commits": commits.total,
        "repository": repo.api_format(owner, app_url),
        "pusher": pusher.api_format(),
        "sender": pusher.api_format(),
    }


def ref_payload(app_url: str, owner: User, repo: Repository, sender: User, ref_name: str, ref_type: str) -> dict:
    return {
        "ref": ref_name,
        "ref_type": ref_type,
        "default_branch": repo.default_branch,
        "repository": repo.api_format(owner, app_url),
        "sender": sender.api_format(),
    }


# -----------------------------------------------------------------------------
# Pipeline
# -----------------------------------------------------------------------------

async def push_update(ctx, session: AsyncSession, opts: PushUpdateOptions) -> list[DomainEvent]:
    """Record one ref update. Does not commit; the caller owns the transaction."""
    if opts.old_commit_id == EMPTY_SHA and opts.new_commit_id == EMPTY_SHA:
        raise InvalidRefError("old and new revisions are both empty")

    owner, repo = await get_repository_by_name(session, opts.repo_user_name, opts.repo_name)
    repo_path = str(ctx.repo_manager.repo_path(owner.name, repo.name))

    await ctx.git_backend.update_server_info(repo_path)

    pusher = await get_user_by_id(session, opts.pusher_id)
    app_url = ctx.settings.app_url
    is_tag = opts.ref_full_name.startswith(TAG_PREFIX)
    if is_tag:
        ref_name = opts.ref_full_name[len(TAG_PREFIX):]
    elif opts.ref_full_name.startswith(BRANCH_PREFIX):
        ref_name = opts.ref_full_name[len(BRANCH_PREFIX):]
    else:
        ref_name = opts.ref_full_name
    ref_type = "tag" if is_tag else "branch"

    if opts.new_commit_id == EMPTY_SHA:
        op_type = ActionType.DELETE_TAG if is_tag else ActionType.DELETE_BRANCH
        await notify_watchers(
            session,
            new_action(op_type, pusher, owner, repo, ref_name=ref_name, old_commit_id=opts.old_commit_id),
        )
        logger.info(f"{pusher.name} deleted {ref_type} {ref_name} of {owner.name}/{repo.name}")
        payload = ref_payload(app_url, owner, repo, pusher, ref_name, ref_type)
        payload["pusher_type"] = "user"
        return [DomainEvent(type=EventType.DELETE, repo_id=repo.id, actor_id=pusher.id, payload=payload)]

    events: list[DomainEvent] = []
    if is_tag:
        commits = PushCommits()
        op_type = ActionType.PUSH_TAG
        events.append(
            DomainEvent(
                type=EventType.CREATE,
                repo_id=repo.id,
                actor_id=pusher.id,
                payload=ref_payload(app_url, owner, repo, pusher, ref_name, ref_type),
            )
        )
    else:
        commits = await list_push_commits(ctx, repo_path, opts.old_commit_id, opts.new_commit_id)
        if opts.old_commit_id != EMPTY_SHA and commits.total > 1:
            commits.compare_url = repo.compose_compare_url(
                app_url, owner.name, opts.old_commit_id, opts.new_commit_id
            )
        op_type = ActionType.COMMIT_REPO
        events.append(
            DomainEvent(
                type=EventType.PUSH,
                repo_id=repo.id,
                actor_id=pusher.id,
                branch=ref_name,
                payload=push_payload(app_url, owner, repo, pusher, opts, commits),
            )
        )
        if opts.old_commit_id == EMPTY_SHA:
            events.append(
                DomainEvent(
                    type=EventType.CREATE,
                    repo_id=repo.id,
                    actor_id=pusher.id,
                    payload=ref_payload(app_url, owner, repo, pusher, ref_name, ref_type),
                )
            )

    # The first branch pushed into an empty repository becomes its default
    if repo.is_bare and not is_tag:
        repo.is_bare = False
        if ref_name != repo.default_branch:
            default_exists = await run_in_threadpool(
                ctx.repo_manager.get_branch_commit, repo_path, repo.default_branch
            )
            if default_exists is None:
                await run_in_threadpool(ctx.repo_manager.set_default_branch, repo_path, ref_name)
                repo.default_branch = ref_name
    repo.updated_at = datetime.utcnow()

    await notify_watchers(
        session,
        new_action(
            op_type,
            pusher,
            owner,
            repo,
            ref_name=ref_name,
            old_commit_id=opts.old_commit_id,
            new_commit_id=opts.new_commit_id,
            content=commits.to_content(),
        ),
    )
    logger.info(f"{pusher.name} pushed {commits.total} commit(s) to {owner.name}/{repo.name}:{ref_name}")
    return events
