"""
Git LFS server logic: metadata rows, authorization and batch responses.

Objects are stored once per oid in the ContentStore; every repository that
references an oid has its own LFSMetaObject row.
"""

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from app.errors import AccessDeniedError, AuthenticationError, InvalidOidError
from app.models import AccessMode, LFSMetaObject, Repository, UnitType, User
from app.schemas.lfs import BatchRequest, BatchResponse, Link, ObjectError, ObjectPointer, Representation
from app.services.access import user_has_access
from app.services.auth import authenticate_basic
from app.services.content_store import validate_oid
from app.services.lfs_token import verify_lfs_token

logger = logging.getLogger(__name__)

LFS_CONTENT_MEDIA_TYPE = "application/vnd.git-lfs"
LFS_META_MEDIA_TYPE = LFS_CONTENT_MEDIA_TYPE + "+json"
OCTET_STREAM = "application/octet-stream"

OPERATION_UPLOAD = "upload"
OPERATION_DOWNLOAD = "download"


def media_type(accept: str | None) -> str:
    return (accept or "").split(";")[0].strip()


def is_meta_request(accept: str | None) -> bool:
    return media_type(accept) == LFS_META_MEDIA_TYPE


# -----------------------------------------------------------------------------
# Metadata
# -----------------------------------------------------------------------------

async def get_meta_object(session: AsyncSession, repo_id: int, oid: str) -> LFSMetaObject | None:
    result = await session.execute(
        select(LFSMetaObject).where(LFSMetaObject.repository_id == repo_id, LFSMetaObject.oid == oid)
    )
    return result.scalar_one_or_none()


async def new_meta_object(session: AsyncSession, repo_id: int, oid: str, size: int) -> LFSMetaObject:
    """Get or create the row for ``oid`` in one repository. ``existing`` tells which."""
    validate_oid(oid)
    meta = await get_meta_object(session, repo_id, oid)
    if meta is not None:
        meta.existing = True
        return meta

    meta = LFSMetaObject(oid=oid, size=size, repository_id=repo_id)
    session.add(meta)
    try:
        await session.commit()
    except IntegrityError:
        # Another request created it first
        await session.rollback()
        meta = await get_meta_object(session, repo_id, oid)
        if meta is None:
            raise
        meta.existing = True
        return meta
    meta.existing = False
    return meta


async def remove_meta_object(session: AsyncSession, repo_id: int, oid: str) -> None:
    await session.execute(
        delete(LFSMetaObject).where(LFSMetaObject.repository_id == repo_id, LFSMetaObject.oid == oid)
    )
    await session.commit()


# -----------------------------------------------------------------------------
# Authorization
# -----------------------------------------------------------------------------

async def authorize_lfs(
    ctx,
    session: AsyncSession,
    repo: Repository,
    authorization: str | None,
    require_write: bool,
) -> bool:
    """Bearer token, then Basic credentials.

    Public repositories are readable without credentials.
    """
    mode = AccessMode.WRITE if require_write else AccessMode.READ
    if not repo.is_private and not require_write:
        return True

    if not authorization:
        return False

    if authorization.startswith("Bearer "):
        try:
            verify_lfs_token(ctx.settings.lfs_jwt_secret_bytes, authorization[len("Bearer "):], repo.id, require_write)
        except AccessDeniedError as e:
            logger.debug(f"LFS token rejected for repository {repo.id}: {e}")
            return False
        return True

    if not authorization.startswith("Basic "):
        return False
    try:
        user = await authenticate_basic(session, authorization)
    except AuthenticationError:
        return False
    if user is None:
        return False
    return await user_has_access(session, user, repo, mode, UnitType.CODE)


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

def object_link(app_url: str, owner_name: str, repo_name: str, oid: str) -> str:
    return f"{app_url}{owner_name}/{repo_name}.git/info/lfs/objects/{oid}"


def represent(
    app_url: str,
    owner_name: str,
    repo_name: str,
    meta: LFSMetaObject | ObjectPointer,
    authorization: str | None,
    download: bool,
    upload: bool,
) -> Representation:
    header = {"Accept": LFS_CONTENT_MEDIA_TYPE}
    # git-lfs drops the action header entirely when Authorization is empty
    header["Authorization"] = authorization or "Authorization: Basic dummy"

    href = object_link(app_url, owner_name, repo_name, meta.oid)
    actions = {}
    if download:
        actions[OPERATION_DOWNLOAD] = Link(href=href, header=header)
    if upload:
        actions[OPERATION_UPLOAD] = Link(href=href, header=header)
    return Representation(oid=meta.oid, size=meta.size, actions=actions)


async def batch(
    ctx,
    session: AsyncSession,
    owner: User,
    repo: Repository,
    request: BatchRequest,
    authorization: str | None,
) -> BatchResponse:
    """Download links for stored objects, upload links (plus metadata) for the rest."""
    app_url = ctx.settings.app_url
    owner_name, repo_name, repo_id = owner.name, repo.name, repo.id
    objects = []
    for pointer in request.objects:
        try:
            validate_oid(pointer.oid)
        except InvalidOidError as e:
            objects.append(
                Representation(oid=pointer.oid, size=pointer.size, error=ObjectError(code=422, message=e.message))
            )
            continue

        meta = await get_meta_object(session, repo_id, pointer.oid)
        if meta is not None and await run_in_threadpool(ctx.content_store.exists, meta):
            objects.append(represent(app_url, owner_name, repo_name, meta, authorization, True, False))
            continue

        meta = await new_meta_object(session, repo_id, pointer.oid, pointer.size)
        objects.append(represent(app_url, owner_name, repo_name, meta, authorization, meta.existing, True))
    return BatchResponse(objects=objects)
