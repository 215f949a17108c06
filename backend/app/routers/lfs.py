"""
Git LFS endpoints under ``/{owner}/{repo}.git/info/lfs``.

Errors are written in the media type the client asked for: a JSON
``{"message": ...}`` for ``+json`` Accept headers, plain text otherwise.
"""

import base64
import binascii
import json
import logging
import re
from http import HTTPStatus

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.context import AppContext
from app.database import get_db
from app.errors import GitForgeError, NotFoundError
from app.models import Repository, User
from app.routers.deps import get_ctx
from app.schemas.lfs import BatchRequest, ObjectPointer
from app.services import lfs as lfs_service
from app.services.content_store import CHUNK_SIZE
from app.services.repository import get_repository_by_name

logger = logging.getLogger(__name__)

router = APIRouter(tags=["lfs"])

RANGE_PATTERN = re.compile(r"bytes=(\d+)\-.*")
LFS_REALM = "Basic realm=gitforge-lfs"


def write_status(request: Request, status: int) -> Response:
    message = HTTPStatus(status).phrase
    accept = lfs_service.media_type(request.headers.get("Accept"))
    logger.debug(f"LFS request - Method: {request.method}, URL: {request.url.path}, Status {status}")
    if accept.endswith("+json"):
        return Response(
            content=json.dumps({"message": message}),
            status_code=status,
            media_type=lfs_service.LFS_META_MEDIA_TYPE,
        )
    return Response(content=message, status_code=status, media_type="text/plain")


def require_auth(request: Request) -> Response:
    response = write_status(request, 401)
    response.headers["WWW-Authenticate"] = LFS_REALM
    return response


async def _resolve(db: AsyncSession, owner: str, repo: str) -> tuple[User, Repository] | None:
    if repo.endswith(".git"):
        repo = repo[:-4]
    try:
        return await get_repository_by_name(db, owner, repo)
    except NotFoundError:
        logger.debug(f"Could not find repository: {owner}/{repo}")
        return None


async def _iter_file(f):
    try:
        while True:
            chunk = await run_in_threadpool(f.read, CHUNK_SIZE)
            if not chunk:
                break
            yield chunk
    finally:
        await run_in_threadpool(f.close)


@router.post("/{owner}/{repo}/info/lfs/objects/batch")
async def batch_handler(
    owner: str,
    repo: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    if not ctx.settings.lfs_start_server:
        return write_status(request, 404)
    if not lfs_service.is_meta_request(request.headers.get("Accept")):
        return write_status(request, 400)

    try:
        batch_request = BatchRequest.model_validate_json(await request.body())
    except ValidationError:
        return write_status(request, 422)

    resolved = await _resolve(db, owner, repo)
    if resolved is None:
        return write_status(request, 404)
    repo_owner, repository = resolved

    authorization = request.headers.get("Authorization")
    require_write = batch_request.operation == lfs_service.OPERATION_UPLOAD
    if not await lfs_service.authorize_lfs(ctx, db, repository, authorization, require_write):
        return require_auth(request)

    response = await lfs_service.batch(ctx, db, repo_owner, repository, batch_request, authorization)
    return Response(
        content=response.model_dump_json(exclude_none=True),
        media_type=lfs_service.LFS_META_MEDIA_TYPE,
    )


@router.post("/{owner}/{repo}/info/lfs/objects")
async def post_handler(
    owner: str,
    repo: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    """Single-object upload instructions (pre-batch API)."""
    if not ctx.settings.lfs_start_server:
        return write_status(request, 404)
    if not lfs_service.is_meta_request(request.headers.get("Accept")):
        return write_status(request, 400)

    try:
        pointer = ObjectPointer.model_validate_json(await request.body())
    except ValidationError:
        return write_status(request, 422)

    resolved = await _resolve(db, owner, repo)
    if resolved is None:
        return write_status(request, 404)
    repo_owner, repository = resolved
    owner_name, repo_name = repo_owner.name, repository.name

    authorization = request.headers.get("Authorization")
    if not await lfs_service.authorize_lfs(ctx, db, repository, authorization, True):
        return require_auth(request)

    try:
        meta = await lfs_service.new_meta_object(db, repository.id, pointer.oid, pointer.size)
    except GitForgeError:
        return write_status(request, 404)

    status = 202
    if meta.existing and await run_in_threadpool(ctx.content_store.exists, meta):
        status = 200
    rep = lfs_service.represent(
        ctx.settings.app_url, owner_name, repo_name, meta, authorization, meta.existing, True
    )
    return Response(
        content=rep.model_dump_json(exclude_none=True),
        status_code=status,
        media_type=lfs_service.LFS_META_MEDIA_TYPE,
    )


@router.api_route("/{owner}/{repo}/info/lfs/objects/{oid}", methods=["GET", "HEAD"])
@router.api_route("/{owner}/{repo}/info/lfs/objects/{oid}/{filename}", methods=["GET", "HEAD"])
async def get_handler(
    owner: str,
    repo: str,
    oid: str,
    request: Request,
    filename: str | None = None,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    """Object metadata for ``+json`` Accept headers, the object content otherwise."""
    if not ctx.settings.lfs_start_server:
        return write_status(request, 404)

    resolved = await _resolve(db, owner, repo)
    if resolved is None:
        return write_status(request, 404)
    repo_owner, repository = resolved
    owner_name, repo_name = repo_owner.name, repository.name

    meta = await lfs_service.get_meta_object(db, repository.id, oid)
    if meta is None:
        return write_status(request, 404)

    authorization = request.headers.get("Authorization")
    if not await lfs_service.authorize_lfs(ctx, db, repository, authorization, False):
        return require_auth(request)

    if lfs_service.is_meta_request(request.headers.get("Accept")) and not filename:
        body = b""
        if request.method == "GET":
            rep = lfs_service.represent(ctx.settings.app_url, owner_name, repo_name, meta, authorization, True, False)
            body = rep.model_dump_json(exclude_none=True).encode()
        return Response(content=body, media_type=lfs_service.LFS_META_MEDIA_TYPE)

    # Resumable downloads
    from_byte = 0
    status = 200
    headers = {}
    range_header = request.headers.get("Range")
    if range_header:
        match = RANGE_PATTERN.match(range_header)
        if match:
            from_byte = int(match.group(1))
            if from_byte >= meta.size and not (from_byte == 0 and meta.size == 0):
                return Response(status_code=416, headers={"Content-Range": f"bytes */{meta.size}"})
            # An empty object has no byte range to describe
            if meta.size > 0:
                status = 206
                headers["Content-Range"] = f"bytes {from_byte}-{meta.size - 1}/{meta.size - from_byte}"

    if filename:
        try:
            decoded = base64.urlsafe_b64decode(filename + "=" * (-len(filename) % 4)).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            decoded = ""
        if decoded:
            headers["Content-Disposition"] = f'attachment; filename="{decoded}"'

    try:
        content = await run_in_threadpool(ctx.content_store.get, meta, from_byte)
    except OSError:
        return write_status(request, 404)

    headers["Content-Length"] = str(meta.size - from_byte)
    logger.debug(f"LFS request - Method: {request.method}, URL: {request.url.path}, Status {status}")
    if request.method == "HEAD":
        await run_in_threadpool(content.close)
        return Response(status_code=status, headers=headers, media_type=lfs_service.OCTET_STREAM)
    return StreamingResponse(
        _iter_file(content), status_code=status, headers=headers, media_type=lfs_service.OCTET_STREAM
    )


@router.put("/{owner}/{repo}/info/lfs/objects/{oid}")
async def put_handler(
    owner: str,
    repo: str,
    oid: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    """Store an object whose metadata a batch or POST request created."""
    if not ctx.settings.lfs_start_server:
        return write_status(request, 404)

    resolved = await _resolve(db, owner, repo)
    if resolved is None:
        return write_status(request, 404)
    _, repository = resolved
    repo_id = repository.id

    meta = await lfs_service.get_meta_object(db, repo_id, oid)
    if meta is None:
        return write_status(request, 404)

    authorization = request.headers.get("Authorization")
    if not await lfs_service.authorize_lfs(ctx, db, repository, authorization, True):
        return require_auth(request)

    try:
        await ctx.content_store.put_stream(meta, request.stream())
    except (GitForgeError, OSError) as e:
        logger.warning(f"LFS upload of {oid} to repository {repo_id} failed: {e}")
        await lfs_service.remove_meta_object(db, repo_id, oid)
        return Response(
            content=json.dumps({"message": str(e)}),
            status_code=500,
            media_type=lfs_service.LFS_META_MEDIA_TYPE,
        )

    logger.debug(f"LFS request - Method: PUT, URL: {request.url.path}, Status 200")
    return Response(status_code=200)
