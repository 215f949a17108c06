"""
Integration tests for the repository API.

These tests verify:
- Creating repositories for the caller and for organizations it owns
- Reading respects visibility; private repositories look missing
- Renaming moves the directory; deleting removes row and directory
- Mirror settings and manual sync
"""
import pytest

from app.models import OrgUser
from shared.assertions import (
    assert_created_response,
    assert_deleted_response,
    assert_error_response,
    assert_json_list_length,
    assert_not_found,
    assert_status_code,
    assert_updated_response,
    error_message,
)
from shared.factories import (
    DEFAULT_PASSWORD,
    UserFactory,
    basic_auth,
    create_repo,
    create_user,
    migrate_payload,
    persist,
    repo_create_payload,
)

OWNER_AUTH = basic_auth("alice", DEFAULT_PASSWORD)


@pytest.fixture
async def owner(db_session):
    return await create_user(db_session, name="alice")


@pytest.fixture
async def other(db_session):
    return await create_user(db_session, name="bob")


# -----------------------------------------------------------------------------
# Create
# -----------------------------------------------------------------------------

class TestCreateRepo:
    """Tests for POST /api/repos."""

    async def test_create(self, client, ctx, owner):
        response = await client.post("/api/repos", json=repo_create_payload("demo"), headers=OWNER_AUTH)

        result = assert_created_response(response, name="demo", full_name="alice/demo", private=False)
        assert result["clone_url"] == "http://test/alice/demo.git"
        assert result["owner"]["login"] == "alice"
        assert ctx.repo_manager.repo_path("alice", "demo").is_dir()

    async def test_requires_credentials(self, client, owner):
        response = await client.post("/api/repos", json=repo_create_payload("demo"))
        assert_status_code(response, 401)
        assert response.headers["www-authenticate"] == 'Basic realm="."'

    async def test_duplicate_name(self, client, owner):
        await client.post("/api/repos", json=repo_create_payload("demo"), headers=OWNER_AUTH)

        response = await client.post("/api/repos", json=repo_create_payload("Demo"), headers=OWNER_AUTH)

        assert_status_code(response, 409)

    @pytest.mark.parametrize("name", [".git", "bad name", "../escape", "a" * 101])
    async def test_invalid_name(self, client, owner, name):
        response = await client.post("/api/repos", json=repo_create_payload(name), headers=OWNER_AUTH)
        assert_status_code(response, 422)

    async def test_create_under_owned_organization(self, client, db_session, owner):
        org = await UserFactory.create_in(db_session, name="acme", organization=True)
        await persist(db_session, OrgUser(uid=owner.id, org_id=org.id, is_owner=True))

        response = await client.post(
            "/api/repos", json=repo_create_payload("tools", owner="acme"), headers=OWNER_AUTH
        )

        assert_created_response(response, full_name="acme/tools")

    async def test_create_under_foreign_organization(self, client, db_session, owner):
        await UserFactory.create_in(db_session, name="acme", organization=True)

        response = await client.post(
            "/api/repos", json=repo_create_payload("tools", owner="acme"), headers=OWNER_AUTH
        )

        assert_status_code(response, 403)


# -----------------------------------------------------------------------------
# Read
# -----------------------------------------------------------------------------

class TestReadRepo:
    """Tests for GET /api/repos/{owner} and /api/repos/{owner}/{repo}."""

    async def test_get_public(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.get("/api/repos/alice/demo")

        assert_status_code(response, 200)
        assert response.json()["default_branch"] == "master"

    async def test_private_looks_missing(self, client, ctx, db_session, owner, other):
        await create_repo(ctx, db_session, owner, "secret", is_private=True)

        assert_not_found(await client.get("/api/repos/alice/secret"))
        response = await client.get("/api/repos/alice/secret", headers=basic_auth("bob", DEFAULT_PASSWORD))
        assert_not_found(response, "Repository")
        assert_status_code(await client.get("/api/repos/alice/secret", headers=OWNER_AUTH), 200)

    async def test_list_hides_private_from_others(self, client, ctx, db_session, owner, other):
        await create_repo(ctx, db_session, owner, "demo")
        await create_repo(ctx, db_session, owner, "secret", is_private=True)

        assert_json_list_length(await client.get("/api/repos/alice"), 1)
        assert_json_list_length(await client.get("/api/repos/alice", headers=OWNER_AUTH), 2)

    async def test_list_unknown_user(self, client):
        assert_not_found(await client.get("/api/repos/nobody"), "User")

    async def test_bad_password(self, client, owner):
        response = await client.get("/api/repos/alice", headers=basic_auth("alice", "wrong"))
        assert_status_code(response, 401)


# -----------------------------------------------------------------------------
# Update and delete
# -----------------------------------------------------------------------------

class TestUpdateRepo:
    """Tests for PATCH and DELETE /api/repos/{owner}/{repo}."""

    async def test_rename(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.patch(
            "/api/repos/alice/demo", json={"name": "renamed", "private": True}, headers=OWNER_AUTH
        )

        assert_updated_response(response, name="renamed", private=True)
        assert ctx.repo_manager.repo_path("alice", "renamed").is_dir()
        assert not ctx.repo_manager.repo_path("alice", "demo").exists()

    async def test_disable_pull_requests(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.patch("/api/repos/alice/demo", json={"units": [1]}, headers=OWNER_AUTH)
        assert_status_code(response, 200)

        response = await client.get("/api/repos/alice/demo/pulls", headers=OWNER_AUTH)
        assert_error_response(response, 404, "Pull requests are disabled")

    async def test_update_needs_admin(self, client, ctx, db_session, owner, other):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.patch(
            "/api/repos/alice/demo", json={"description": "mine now"}, headers=basic_auth("bob", DEFAULT_PASSWORD)
        )

        assert_status_code(response, 403)
        assert error_message(response) == "Insufficient permission"

    async def test_delete(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        assert_deleted_response(await client.delete("/api/repos/alice/demo", headers=OWNER_AUTH))

        assert not ctx.repo_manager.repo_path("alice", "demo").exists()
        assert_not_found(await client.get("/api/repos/alice/demo"))


# -----------------------------------------------------------------------------
# Mirrors
# -----------------------------------------------------------------------------

class TestMirrorEndpoints:
    """Tests for /api/repos/migrate and the mirror settings."""

    async def test_local_address_refused_for_users(self, client, owner, tmp_path):
        response = await client.post(
            "/api/repos/migrate", json=migrate_payload(str(tmp_path / "upstream.git"), "copy"), headers=OWNER_AUTH
        )

        assert_status_code(response, 422)
        assert "not allowed" in error_message(response)

    async def test_sync_requires_mirror(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.post("/api/repos/alice/demo/mirror-sync", headers=OWNER_AUTH)

        assert_status_code(response, 400)

    async def test_mirror_settings_of_plain_repo(self, client, ctx, db_session, owner):
        await create_repo(ctx, db_session, owner, "demo")

        response = await client.get("/api/repos/alice/demo/mirror", headers=OWNER_AUTH)

        assert_status_code(response, 404)
