"""
Integration tests for pull mirrors.

The upstream is a local bare repository; local addresses need
``allow_local`` (site administrators only).

These tests verify:
- Creating a mirror clones the upstream and schedules updates
- A sync fetches new commits and reschedules
- A failed sync leaves a notice and keeps the schedule
- The schedule sweep queues due mirrors once
"""
import shutil
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from app.errors import ForbiddenURIError, InvalidInputError
from app.models import Mirror, Notice
from app.services.mirror import (
    MIRROR_UPDATE,
    MirrorSyncWorker,
    create_mirror_repository,
    get_address,
    get_mirror_by_repo_id,
    mirror_update,
    sync_mirror,
)
from shared.factories import create_repo, create_user
from shared.git_helpers import requires_git

pytestmark = requires_git


@pytest.fixture
async def owner(db_session):
    return await create_user(db_session, name="alice")


@pytest.fixture
async def upstream(ctx, db_session, owner, work_tree):
    """An ordinary repository with one commit on master; returns (path, work tree)."""
    await create_repo(ctx, db_session, owner, "upstream")
    path = ctx.repo_manager.repo_path("alice", "upstream")
    tree = work_tree(path)
    tree.commit({"README.md": "upstream\n"}, "first")
    tree.push("master")
    return path, tree


@pytest.fixture
async def mirror_repo(ctx, db_session, owner, upstream):
    path, _ = upstream
    return await create_mirror_repository(ctx, db_session, owner, "copy", str(path), allow_local=True)


async def load_mirror(ctx, repo_id: int) -> Mirror:
    async with ctx.session_factory() as session:
        return await get_mirror_by_repo_id(session, repo_id)


# -----------------------------------------------------------------------------
# Creation
# -----------------------------------------------------------------------------

class TestCreateMirror:
    """create_mirror_repository()."""

    async def test_clone_and_schedule(self, ctx, mirror_repo, upstream):
        _, tree = upstream
        path = ctx.repo_manager.repo_path("alice", "copy")

        assert mirror_repo.is_mirror is True
        assert mirror_repo.is_bare is False
        assert mirror_repo.default_branch == "master"
        assert ctx.repo_manager.get_branch_commit(path, "master") == tree.rev_parse("HEAD")
        assert (path / "hooks" / "update").is_file()
        mirror = await load_mirror(ctx, mirror_repo.id)
        assert mirror.interval == ctx.settings.mirror_default_interval
        assert mirror.next_update > datetime.utcnow()

    async def test_local_address_needs_permission(self, ctx, db_session, owner, upstream):
        path, _ = upstream
        with pytest.raises(ForbiddenURIError):
            await create_mirror_repository(ctx, db_session, owner, "copy", str(path))
        assert not ctx.repo_manager.repo_path("alice", "copy").exists()

    async def test_interval_below_minimum(self, ctx, db_session, owner, upstream):
        path, _ = upstream
        with pytest.raises(InvalidInputError) as exc:
            await create_mirror_repository(ctx, db_session, owner, "copy", str(path), interval=5, allow_local=True)
        assert "minimum" in exc.value.message

    async def test_address_saved_in_config(self, ctx, mirror_repo, upstream):
        path, _ = upstream
        assert get_address(ctx.repo_manager, ctx.repo_manager.repo_path("alice", "copy")) == str(path)


# -----------------------------------------------------------------------------
# Synchronisation
# -----------------------------------------------------------------------------

class TestSync:
    """sync_mirror() and the worker."""

    async def test_fetches_new_commits(self, ctx, mirror_repo, upstream):
        _, tree = upstream
        head = tree.commit({"README.md": "changed\n"}, "second")
        tree.push("master")
        before = await load_mirror(ctx, mirror_repo.id)

        assert await sync_mirror(ctx, mirror_repo.id) is True

        path = ctx.repo_manager.repo_path("alice", "copy")
        assert ctx.repo_manager.get_branch_commit(path, "master") == head
        after = await load_mirror(ctx, mirror_repo.id)
        assert after.next_update >= before.next_update

    async def test_prune_removes_deleted_branches(self, ctx, mirror_repo, upstream):
        _, tree = upstream
        tree.push("master:topic")
        await sync_mirror(ctx, mirror_repo.id)
        path = ctx.repo_manager.repo_path("alice", "copy")
        assert "topic" in ctx.repo_manager.list_branches(path)

        tree.push(":topic")
        await sync_mirror(ctx, mirror_repo.id)

        assert "topic" not in ctx.repo_manager.list_branches(path)

    async def test_failure_leaves_notice_and_schedule(self, ctx, mirror_repo, upstream):
        path, _ = upstream
        before = await load_mirror(ctx, mirror_repo.id)
        shutil.rmtree(path)

        assert await sync_mirror(ctx, mirror_repo.id) is False

        after = await load_mirror(ctx, mirror_repo.id)
        assert after.next_update == before.next_update
        async with ctx.session_factory() as session:
            notices = (await session.execute(select(Notice))).scalars().all()
        assert len(notices) == 1
        assert "Failed to update mirror repository 'alice/copy'" in notices[0].description

    async def test_worker_drains_queue(self, ctx, mirror_repo, upstream):
        _, tree = upstream
        head = tree.commit({"README.md": "via worker\n"}, "third")
        tree.push("master")
        await ctx.mirror_queue.add(mirror_repo.id)

        assert await MirrorSyncWorker(ctx).process_pending() == 1

        path = ctx.repo_manager.repo_path("alice", "copy")
        assert ctx.repo_manager.get_branch_commit(path, "master") == head


# -----------------------------------------------------------------------------
# Schedule
# -----------------------------------------------------------------------------

class TestSchedule:
    """mirror_update()."""

    async def _make_due(self, ctx, repo_id: int) -> None:
        async with ctx.session_factory() as session:
            mirror = await get_mirror_by_repo_id(session, repo_id)
            mirror.next_update = datetime.utcnow() - timedelta(minutes=1)
            await session.commit()

    async def test_queues_due_mirrors(self, ctx, mirror_repo):
        await self._make_due(ctx, mirror_repo.id)

        assert await mirror_update(ctx) == 1
        assert ctx.mirror_queue.exist(mirror_repo.id)
        # Already pending
        assert await mirror_update(ctx) == 0

    async def test_mirrors_not_due_are_skipped(self, ctx, mirror_repo):
        assert await mirror_update(ctx) == 0

    async def test_overlapping_runs_are_skipped(self, ctx, mirror_repo):
        await self._make_due(ctx, mirror_repo.id)
        ctx.status_table.start(MIRROR_UPDATE)
        try:
            assert await mirror_update(ctx) == 0
        finally:
            ctx.status_table.stop(MIRROR_UPDATE)
