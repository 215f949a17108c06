"""
Integration tests for pull requests: creation, the mergeability checker
and merging.

These tests verify:
- A new pull request starts in ``checking`` and is queued
- The checker settles it as mergeable or conflict, and a resolving push makes a conflict mergeable
- git failures while building the patch settle it as manual
- Pushing to the head or base branch sends it back to ``checking``
- Merging writes a merge commit to the base branch and closes the pull request
"""
import os
from pathlib import Path

import pytest

from app.errors import ProcessError
from app.models import PullRequestStatus
from app.services.events import EventType
from app.services.pull_request import (
    PullRequestChecker,
    add_test_pull_request_task,
    check_pull_request,
    get_pull_request_by_index,
)
from shared.assertions import assert_status_code, error_message
from shared.factories import DEFAULT_PASSWORD, basic_auth, create_repo, create_user, pull_create_payload
from shared.git_helpers import requires_git

pytestmark = requires_git

OWNER_AUTH = basic_auth("alice", DEFAULT_PASSWORD)
PULLS_URL = "/api/repos/alice/demo/pulls"
ROOT = Path(__file__).resolve().parents[3]


@pytest.fixture
async def owner(db_session):
    return await create_user(db_session, name="alice")


@pytest.fixture
async def repo(ctx, db_session, owner):
    return await create_repo(ctx, db_session, owner, "demo")


@pytest.fixture
def tree(ctx, repo, work_tree):
    """master with one file, feature changing its second line."""
    wt = work_tree(ctx.repo_manager.repo_path("alice", "demo"))
    wt.commit({"app.txt": "line one\nline two\n"}, "base")
    wt.push("master")
    wt.checkout("feature", create=True)
    wt.commit({"app.txt": "line one\nfeature two\n"}, "feature change")
    wt.push("feature")
    return wt


@pytest.fixture
def checker(ctx):
    return PullRequestChecker(ctx)


async def open_pull(client, head: str = "feature") -> dict:
    response = await client.post(PULLS_URL, json=pull_create_payload(head), headers=OWNER_AUTH)
    assert_status_code(response, 201)
    return response.json()


async def pull_status(ctx, repo_id: int, index: int = 1) -> PullRequestStatus:
    async with ctx.session_factory() as session:
        pr = await get_pull_request_by_index(session, repo_id, index)
        return PullRequestStatus(pr.status)


# -----------------------------------------------------------------------------
# Creation and checks
# -----------------------------------------------------------------------------

class TestMergeability:
    """Creation and the checker worker."""

    async def test_new_pull_request_is_checking_and_queued(self, client, ctx, repo, tree):
        pull = await open_pull(client)

        assert pull["number"] == 1
        assert pull["status"] == "checking"
        assert pull["head"]["ref"] == "feature"
        assert pull["base"]["ref"] == "master"
        assert ctx.pull_request_queue.exist(pull["id"])
        head_ref = ctx.repo_manager.repo_path("alice", "demo") / "refs" / "pull" / "1" / "head"
        assert head_ref.read_text().strip() == tree.rev_parse("feature")

    async def test_checker_marks_mergeable(self, client, ctx, repo, tree, checker):
        await open_pull(client)

        assert await checker.process_pending() == 1

        assert await pull_status(ctx, repo.id) == PullRequestStatus.MERGEABLE
        response = await client.get(f"{PULLS_URL}/1")
        assert response.json()["mergeable"] is True
        assert response.json()["merge_base"] == tree.rev_parse("master")

    async def test_conflicting_change_on_base(self, client, ctx, db_session, owner, repo, tree, checker):
        await open_pull(client)
        await checker.process_pending()

        tree.checkout("master")
        tree.commit({"app.txt": "line one\nmaster two\n"}, "master change")
        tree.push("master")
        await add_test_pull_request_task(ctx, db_session, owner, repo.id, "master")
        assert await pull_status(ctx, repo.id) == PullRequestStatus.CHECKING

        await checker.process_pending()

        assert await pull_status(ctx, repo.id) == PullRequestStatus.CONFLICT

    async def test_resolving_push_makes_conflict_mergeable(self, client, ctx, db_session, owner, repo, tree, checker):
        await open_pull(client)
        tree.checkout("master")
        tree.commit({"app.txt": "line one\nmaster two\n"}, "master change")
        tree.push("master")
        await checker.process_pending()
        assert await pull_status(ctx, repo.id) == PullRequestStatus.CONFLICT

        tree.checkout("feature")
        tree.merge("master", "take feature side", strategy="ours")
        tree.commit({"app.txt": "line one\nresolved two\n"}, "resolve")
        tree.push("feature")
        await add_test_pull_request_task(ctx, db_session, owner, repo.id, "feature")
        assert await pull_status(ctx, repo.id) == PullRequestStatus.CHECKING

        await checker.process_pending()

        assert await pull_status(ctx, repo.id) == PullRequestStatus.MERGEABLE
        response = await client.get(f"{PULLS_URL}/1")
        assert response.json()["merge_base"] == tree.rev_parse("master")

    async def test_head_push_sends_synchronized_event(self, client, ctx, db_session, owner, repo, tree, checker):
        await open_pull(client)
        await checker.process_pending()

        tree.commit({"other.txt": "more\n"}, "more work")
        tree.push("feature")
        events = await add_test_pull_request_task(ctx, db_session, owner, repo.id, "feature")

        assert [e.type for e in events] == [EventType.PULL_REQUEST]
        assert events[0].payload["action"] == "synchronized"
        await checker.process_pending()
        assert await pull_status(ctx, repo.id) == PullRequestStatus.MERGEABLE

    async def test_deleted_head_branch_needs_manual_merge(self, client, ctx, repo, tree):
        pull = await open_pull(client)
        tree.push(":feature")

        assert await check_pull_request(ctx, pull["id"]) == PullRequestStatus.MANUAL

    async def test_failed_patch_needs_manual_merge(self, client, ctx, repo, tree, monkeypatch):
        pull = await open_pull(client)
        run = ctx.process_manager.run

        async def failing_diff(args, **kwargs):
            if args[:3] == ["git", "diff", "--binary"]:
                raise ProcessError("git diff", stderr="fatal: bad object", returncode=128)
            return await run(args, **kwargs)

        monkeypatch.setattr(ctx.process_manager, "run", failing_diff)

        assert await check_pull_request(ctx, pull["id"]) == PullRequestStatus.MANUAL
        assert await pull_status(ctx, repo.id) == PullRequestStatus.MANUAL

    async def test_missing_branch_rejected(self, client, repo, tree):
        response = await client.post(PULLS_URL, json=pull_create_payload("nope"), headers=OWNER_AUTH)
        assert_status_code(response, 422)

    async def test_compare(self, client, repo, tree, checker):
        await open_pull(client)
        await checker.process_pending()

        response = await client.get(f"{PULLS_URL}/1/compare")

        assert_status_code(response, 200)
        body = response.json()
        assert [c["message"] for c in body["commits"]] == ["feature change"]
        files = body["diff"]["files"]
        assert [f["name"] for f in files] == ["app.txt"]


# -----------------------------------------------------------------------------
# Merging
# -----------------------------------------------------------------------------

class TestMerge:
    """POST .../pulls/{index}/merge."""

    @pytest.fixture(autouse=True)
    def hook_pythonpath(self, monkeypatch):
        # The update hook runs ``python -m gitforge`` in a child process
        paths = [str(ROOT / "backend"), str(ROOT / "cli"), os.environ.get("PYTHONPATH", "")]
        monkeypatch.setenv("PYTHONPATH", os.pathsep.join(p for p in paths if p))

    async def test_merge(self, client, ctx, repo, tree, checker):
        await open_pull(client)
        await checker.process_pending()
        published = []

        async def record(event):
            published.append(event)

        ctx.event_bus.subscribe(record)

        response = await client.post(f"{PULLS_URL}/1/merge", headers=OWNER_AUTH)

        assert_status_code(response, 200)
        pull = response.json()
        assert pull["merged"] is True
        assert pull["state"] == "closed"
        repo_path = ctx.repo_manager.repo_path("alice", "demo")
        assert ctx.repo_manager.get_branch_commit(repo_path, "master") == pull["merge_commit_sha"]
        assert [e.type for e in published] == [EventType.PUSH, EventType.PULL_REQUEST]
        assert published[-1].payload["action"] == "merged"

    async def test_merge_requires_mergeable(self, client, repo, tree):
        await open_pull(client)

        response = await client.post(f"{PULLS_URL}/1/merge", headers=OWNER_AUTH)

        assert_status_code(response, 405)
        assert "not mergeable" in error_message(response)

    async def test_merge_needs_write_access(self, client, db_session, repo, tree, checker):
        await open_pull(client)
        await checker.process_pending()
        await create_user(db_session, name="mallory")

        response = await client.post(f"{PULLS_URL}/1/merge", headers=basic_auth("mallory", DEFAULT_PASSWORD))
        assert_status_code(response, 403)
