"""
Integration tests for the webhook API.

These tests verify:
- Repository administrators manage hooks; others are refused
- Hook settings round-trip through the read format
- Delivery history is listed newest first and can be redelivered
"""
import uuid as uuid_lib

import pytest

from app.models import HookTask
from shared.assertions import (
    assert_created_response,
    assert_deleted_response,
    assert_json_list_length,
    assert_status_code,
    assert_updated_response,
    error_message,
)
from shared.factories import DEFAULT_PASSWORD, basic_auth, create_repo, create_user, hook_create_payload, persist

OWNER_AUTH = basic_auth("alice", DEFAULT_PASSWORD)
HOOKS_URL = "/api/repos/alice/demo/hooks"


@pytest.fixture
async def owner(db_session):
    return await create_user(db_session, name="alice")


@pytest.fixture
async def repo(ctx, db_session, owner):
    return await create_repo(ctx, db_session, owner, "demo")


async def add_hook(client, **kwargs) -> dict:
    response = await client.post(HOOKS_URL, json=hook_create_payload(**kwargs), headers=OWNER_AUTH)
    return assert_created_response(response)


async def add_task(db_session, repo, hook_id: int, delivered: bool = True) -> HookTask:
    return await persist(db_session, HookTask(
        repo_id=repo.id,
        hook_id=hook_id,
        uuid=str(uuid_lib.uuid4()),
        url="https://receiver.example/hook",
        payload_content='{"ref": "refs/heads/master"}',
        event_type="push",
        is_delivered=delivered,
    ))


# -----------------------------------------------------------------------------
# Hook settings
# -----------------------------------------------------------------------------

class TestHookSettings:
    """CRUD on /api/repos/{owner}/{repo}/hooks."""

    async def test_create_and_read(self, client, repo):
        hook = await add_hook(client, url="https://ci.example/hook", send_everything=True)

        assert hook["type"] == "gitforge"
        assert hook["content_type"] == "json"
        assert hook["events"] == ["create", "push", "pull_request"]
        assert hook["active"] is True
        assert hook["last_status"] == 0

        response = await client.get(f"{HOOKS_URL}/{hook['id']}", headers=OWNER_AUTH)
        assert_status_code(response, 200)
        assert response.json()["url"] == "https://ci.example/hook"

    async def test_push_only_subscribes_to_push(self, client, repo):
        hook = await add_hook(client)
        assert hook["events"] == ["push"]

    async def test_invalid_url(self, client, repo):
        response = await client.post(HOOKS_URL, json=hook_create_payload(url="ftp://nope"), headers=OWNER_AUTH)

        assert_status_code(response, 422)
        assert "invalid webhook url" in error_message(response)

    async def test_slack_hook_needs_channel(self, client, repo):
        response = await client.post(HOOKS_URL, json=hook_create_payload(hook_type="slack"), headers=OWNER_AUTH)
        assert_status_code(response, 422)

        response = await client.post(
            HOOKS_URL,
            json=hook_create_payload(hook_type="slack", meta={"channel": "#dev"}),
            headers=OWNER_AUTH,
        )
        assert_created_response(response, type="slack")

    async def test_list(self, client, repo):
        await add_hook(client)
        await add_hook(client)

        assert_json_list_length(await client.get(HOOKS_URL, headers=OWNER_AUTH), 2)

    async def test_update(self, client, repo):
        hook = await add_hook(client)

        response = await client.patch(
            f"{HOOKS_URL}/{hook['id']}",
            json={"active": False, "content_type": "form", "events": {"choose_events": True, "events": {"create": True}}},
            headers=OWNER_AUTH,
        )

        assert_updated_response(response, active=False, content_type="form", events=["create"])

    async def test_delete(self, client, db_session, repo):
        hook = await add_hook(client)
        await add_task(db_session, repo, hook["id"])

        assert_deleted_response(await client.delete(f"{HOOKS_URL}/{hook['id']}", headers=OWNER_AUTH))

        assert_status_code(await client.get(f"{HOOKS_URL}/{hook['id']}", headers=OWNER_AUTH), 404)

    async def test_unknown_hook(self, client, repo):
        assert_status_code(await client.get(f"{HOOKS_URL}/999", headers=OWNER_AUTH), 404)

    async def test_requires_admin_access(self, client, db_session, repo):
        await create_user(db_session, name="bob")

        response = await client.get(HOOKS_URL, headers=basic_auth("bob", DEFAULT_PASSWORD))

        assert_status_code(response, 403)


# -----------------------------------------------------------------------------
# Delivery history
# -----------------------------------------------------------------------------

class TestHookTasks:
    """Delivery history and redelivery."""

    async def test_history_newest_first(self, client, db_session, repo):
        hook = await add_hook(client)
        first = await add_task(db_session, repo, hook["id"])
        second = await add_task(db_session, repo, hook["id"])

        response = await client.get(f"{HOOKS_URL}/{hook['id']}/tasks", headers=OWNER_AUTH)

        assert_status_code(response, 200)
        assert [t["id"] for t in response.json()] == [second.id, first.id]

    async def test_redeliver(self, client, ctx, db_session, repo):
        hook = await add_hook(client)
        task = await add_task(db_session, repo, hook["id"])

        response = await client.post(f"{HOOKS_URL}/{hook['id']}/tasks/{task.id}/redeliver", headers=OWNER_AUTH)

        assert_status_code(response, 200)
        assert response.json()["is_delivered"] is False
        assert ctx.hook_queue.exist(repo.id)

    async def test_redeliver_task_of_other_hook(self, client, db_session, repo):
        hook = await add_hook(client)
        other = await add_hook(client)
        task = await add_task(db_session, repo, other["id"])

        response = await client.post(f"{HOOKS_URL}/{hook['id']}/tasks/{task.id}/redeliver", headers=OWNER_AUTH)

        assert_status_code(response, 404)
