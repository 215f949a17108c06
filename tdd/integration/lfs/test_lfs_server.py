"""
Integration tests for the Git LFS endpoints.

These tests verify:
- Batch requests hand out upload links, then download links once stored
- Uploads are checked against the oid; bad content leaves nothing behind
- Downloads support resumable ranges, empty objects included
- Private repositories need credentials; tokens are scoped to one repository
- Errors are written in the media type the client asked for
"""
import hashlib

import pytest

from app.models import AccessMode
from app.services.lfs import get_meta_object
from app.services.lfs_token import issue_lfs_token
from shared.assertions import assert_status_code
from shared.factories import (
    DEFAULT_PASSWORD,
    LFS_HEADERS,
    add_collaborator,
    basic_auth,
    bearer_auth,
    create_repo,
    create_user,
    lfs_batch_payload,
)

CONTENT = b"large binary asset\n" * 64
OID = hashlib.sha256(CONTENT).hexdigest()
SIZE = len(CONTENT)


@pytest.fixture
async def owner(db_session):
    return await create_user(db_session, name="alice")


@pytest.fixture
async def repo(ctx, db_session, owner):
    return await create_repo(ctx, db_session, owner, "demo")


def objects_url(oid: str = OID) -> str:
    return f"/alice/demo.git/info/lfs/objects/{oid}"


BATCH_URL = "/alice/demo.git/info/lfs/objects/batch"
OWNER_AUTH = basic_auth("alice", DEFAULT_PASSWORD)


async def upload(client, content: bytes = CONTENT, oid: str = OID, size: int = SIZE):
    response = await client.post(
        BATCH_URL, json=lfs_batch_payload("upload", [(oid, size)]), headers={**LFS_HEADERS, **OWNER_AUTH}
    )
    assert_status_code(response, 200)
    return await client.put(objects_url(oid), content=content, headers=OWNER_AUTH)


# -----------------------------------------------------------------------------
# Batch API
# -----------------------------------------------------------------------------

class TestBatch:
    """Tests for POST .../info/lfs/objects/batch."""

    async def test_upload_link_for_unknown_object(self, client, repo):
        response = await client.post(
            BATCH_URL, json=lfs_batch_payload("upload", [(OID, SIZE)]), headers={**LFS_HEADERS, **OWNER_AUTH}
        )

        assert_status_code(response, 200)
        assert response.headers["content-type"].startswith("application/vnd.git-lfs+json")
        obj = response.json()["objects"][0]
        assert obj["oid"] == OID
        assert obj["size"] == SIZE
        assert obj["actions"]["upload"]["href"] == f"http://test/alice/demo.git/info/lfs/objects/{OID}"
        assert obj["actions"]["upload"]["header"]["Authorization"] == OWNER_AUTH["Authorization"]
        assert "download" not in obj["actions"]

    async def test_download_link_once_stored(self, client, repo):
        assert_status_code(await upload(client), 200)

        response = await client.post(
            BATCH_URL, json=lfs_batch_payload("download", [(OID, SIZE)]), headers=LFS_HEADERS
        )

        assert_status_code(response, 200)
        actions = response.json()["objects"][0]["actions"]
        assert "download" in actions
        assert "upload" not in actions

    async def test_invalid_oid_reported_per_object(self, client, repo):
        response = await client.post(
            BATCH_URL,
            json=lfs_batch_payload("upload", [("not-an-oid", 3), (OID, SIZE)]),
            headers={**LFS_HEADERS, **OWNER_AUTH},
        )

        assert_status_code(response, 200)
        bad, good = response.json()["objects"]
        assert bad["error"]["code"] == 422
        assert "upload" in good["actions"]

    async def test_upload_needs_credentials(self, client, repo):
        response = await client.post(BATCH_URL, json=lfs_batch_payload("upload", [(OID, SIZE)]), headers=LFS_HEADERS)

        assert_status_code(response, 401)
        assert response.headers["WWW-Authenticate"] == "Basic realm=gitforge-lfs"
        assert response.json() == {"message": "Unauthorized"}

    async def test_wrong_accept_header(self, client, repo):
        response = await client.post(
            BATCH_URL,
            json=lfs_batch_payload("download", [(OID, SIZE)]),
            headers={"Accept": "application/json"},
        )
        assert_status_code(response, 400)

    async def test_missing_repository(self, client, repo):
        response = await client.post(
            "/alice/nothing.git/info/lfs/objects/batch",
            json=lfs_batch_payload("download", [(OID, SIZE)]),
            headers=LFS_HEADERS,
        )
        assert_status_code(response, 404)
        assert response.json() == {"message": "Not Found"}

    async def test_read_only_collaborator_cannot_upload(self, client, db_session, repo):
        reader = await create_user(db_session, name="reader")
        await add_collaborator(db_session, repo, reader, AccessMode.READ)

        response = await client.post(
            BATCH_URL,
            json=lfs_batch_payload("upload", [(OID, SIZE)]),
            headers={**LFS_HEADERS, **basic_auth("reader", DEFAULT_PASSWORD)},
        )
        assert_status_code(response, 401)


# -----------------------------------------------------------------------------
# Objects
# -----------------------------------------------------------------------------

class TestObjects:
    """Tests for PUT and GET .../info/lfs/objects/{oid}."""

    async def test_upload_then_download(self, client, ctx, repo):
        assert_status_code(await upload(client), 200)

        response = await client.get(objects_url())

        assert_status_code(response, 200)
        assert response.content == CONTENT
        assert response.headers["content-length"] == str(SIZE)
        assert ctx.content_store.path_for(OID).is_file()

    async def test_meta_request_returns_representation(self, client, repo):
        await upload(client)

        response = await client.get(objects_url(), headers={"Accept": LFS_HEADERS["Accept"]})

        assert_status_code(response, 200)
        assert response.json()["actions"]["download"]["href"].endswith(f"/objects/{OID}")

    async def test_resumed_download(self, client, repo):
        await upload(client)

        response = await client.get(objects_url(), headers={"Range": "bytes=100-"})

        assert_status_code(response, 206)
        assert response.content == CONTENT[100:]
        assert response.headers["content-range"] == f"bytes 100-{SIZE - 1}/{SIZE - 100}"
        assert response.headers["content-length"] == str(SIZE - 100)

    async def test_range_past_end(self, client, repo):
        await upload(client)
        response = await client.get(objects_url(), headers={"Range": f"bytes={SIZE}-"})
        assert_status_code(response, 416)

    async def test_range_on_empty_object(self, client, repo):
        empty_oid = hashlib.sha256(b"").hexdigest()
        assert_status_code(await upload(client, b"", empty_oid, 0), 200)

        response = await client.get(objects_url(empty_oid), headers={"Range": "bytes=0-"})
        assert_status_code(response, 200)
        assert "content-range" not in response.headers
        assert response.content == b""

        response = await client.get(objects_url(empty_oid), headers={"Range": "bytes=5-"})
        assert_status_code(response, 416)

    async def test_filename_sets_disposition(self, client, repo):
        await upload(client)
        # base64url of "asset.bin"
        response = await client.get(objects_url() + "/YXNzZXQuYmlu")

        assert_status_code(response, 200)
        assert response.headers["content-disposition"] == 'attachment; filename="asset.bin"'

    async def test_hash_mismatch_removes_metadata(self, client, ctx, repo):
        tampered = b"x" * SIZE

        response = await upload(client, content=tampered)

        assert_status_code(response, 500)
        assert not ctx.content_store.path_for(OID).exists()
        async with ctx.session_factory() as session:
            assert await get_meta_object(session, repo.id, OID) is None

    async def test_put_without_batch_is_not_found(self, client, repo):
        response = await client.put(objects_url(), content=CONTENT, headers=OWNER_AUTH)
        assert_status_code(response, 404)

    async def test_unknown_object(self, client, repo):
        response = await client.get(objects_url("f" * 64))
        assert_status_code(response, 404)

    async def test_single_object_post(self, client, repo):
        response = await client.post(
            "/alice/demo.git/info/lfs/objects",
            json={"oid": OID, "size": SIZE},
            headers={**LFS_HEADERS, **OWNER_AUTH},
        )

        assert_status_code(response, 202)
        assert "upload" in response.json()["actions"]


# -----------------------------------------------------------------------------
# Private repositories and tokens
# -----------------------------------------------------------------------------

class TestPrivateRepositories:
    """Authorization for private repositories."""

    @pytest.fixture
    async def repo(self, ctx, db_session, owner):
        return await create_repo(ctx, db_session, owner, "demo", is_private=True)

    async def test_anonymous_download_refused(self, client, repo):
        response = await client.post(
            BATCH_URL, json=lfs_batch_payload("download", [(OID, SIZE)]), headers=LFS_HEADERS
        )
        assert_status_code(response, 401)

    async def test_owner_can_upload_and_download(self, client, repo):
        assert_status_code(await upload(client), 200)
        response = await client.get(objects_url(), headers=OWNER_AUTH)
        assert response.content == CONTENT

    async def test_bearer_token_for_this_repository(self, client, ctx, repo, owner):
        await upload(client)
        token = issue_lfs_token(ctx.settings.lfs_jwt_secret_bytes, repo.id, "download")

        response = await client.get(objects_url(), headers=bearer_auth(token))

        assert_status_code(response, 200)
        assert response.content == CONTENT

    async def test_bearer_token_for_other_repository(self, client, ctx, db_session, repo, owner):
        await upload(client)
        other = await create_repo(ctx, db_session, owner, "other", is_private=True)
        token = issue_lfs_token(ctx.settings.lfs_jwt_secret_bytes, other.id, "download")

        response = await client.get(objects_url(), headers=bearer_auth(token))
        assert_status_code(response, 401)

    async def test_download_token_cannot_upload(self, client, ctx, repo, owner):
        token = issue_lfs_token(ctx.settings.lfs_jwt_secret_bytes, repo.id, "download")

        response = await client.post(
            BATCH_URL,
            json=lfs_batch_payload("upload", [(OID, SIZE)]),
            headers={**LFS_HEADERS, **bearer_auth(token)},
        )
        assert_status_code(response, 401)

    async def test_credentials_of_a_stranger_refused(self, client, db_session, repo):
        await upload(client)
        await create_user(db_session, name="mallory")

        response = await client.get(objects_url(), headers=basic_auth("mallory", DEFAULT_PASSWORD))
        assert_status_code(response, 401)

    async def test_unknown_authorization_scheme_refused(self, client, repo):
        await upload(client)

        response = await client.get(objects_url(), headers={"Authorization": "Token abc"})
        assert_status_code(response, 401)
