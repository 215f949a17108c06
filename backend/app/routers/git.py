"""
Git HTTP endpoints.

Smart protocol (``info/refs?service=...`` plus the two stateless-rpc POSTs)
and the dumb protocol files for clients that do not speak it. URLs take the
form ``/{owner}/{repo}[.git]/...``; ``{repo}.wiki`` addresses the wiki.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import FileResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.background import BackgroundTask

from app.context import AppContext
from app.database import get_db
from app.errors import AccessDeniedError, AuthenticationError, InvalidInputError
from app.models import AccessMode, Repository, User
from app.routers.deps import get_ctx
from app.services.access import has_access, load_access_context
from app.services.auth import authenticate_basic
from app.services.git_server import SERVICES, gunzip_stream
from app.services.transport import (
    ACCESS_DENIED_MESSAGE,
    INSUFFICIENT_AUTH_MESSAGE,
    MIRROR_READ_ONLY_MESSAGE,
    RepoTarget,
    git_env,
    parse_repo_path,
    process_push,
    resolve_repository,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["git"])

NO_CACHE_HEADERS = {
    "Expires": "Fri, 01 Jan 1980 00:00:00 GMT",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache, max-age=0, must-revalidate",
}
AUTH_HEADERS = {"WWW-Authenticate": 'Basic realm="."'}

# Dumb-protocol files and their content types
DUMB_FILES = [
    (re.compile(r"^info/(alternates|http-alternates|packs)$"), "text/plain; charset=utf-8"),
    (re.compile(r"^[0-9a-f]{2}/[0-9a-f]{38}$"), "application/x-git-loose-object"),
    (re.compile(r"^pack/pack-[0-9a-f]{40}\.pack$"), "application/x-git-packed-objects"),
    (re.compile(r"^pack/pack-[0-9a-f]{40}\.idx$"), "application/x-git-packed-objects-toc"),
]


@dataclass
class GitRequest:
    owner: User
    repo: Repository
    actor: User | None
    target: RepoTarget
    repo_path: Path


async def authorize_git_request(
    request: Request,
    db: AsyncSession,
    ctx: AppContext,
    owner_name: str,
    repo_name: str,
    mode: AccessMode,
) -> GitRequest:
    """Resolve the repository and check the caller may run a ``mode`` operation on it.

    Credentials are only asked for when pushing, for private repositories, or
    when the site requires sign-in to view anything.
    """
    try:
        target = parse_repo_path(f"{owner_name}/{repo_name}")
        owner, repo = await resolve_repository(db, target)
    except (InvalidInputError, AccessDeniedError):
        raise HTTPException(status_code=404, detail=ACCESS_DENIED_MESSAGE)

    is_pull = mode == AccessMode.READ
    ask_auth = not is_pull or repo.is_private or ctx.settings.require_signin_view
    actor = None
    if ask_auth:
        authorization = request.headers.get("Authorization")
        if not authorization:
            raise HTTPException(status_code=401, detail="Unauthorized", headers=AUTH_HEADERS)
        try:
            actor = await authenticate_basic(db, authorization)
        except AuthenticationError:
            actor = None
        if actor is None:
            raise HTTPException(status_code=401, detail="Unauthorized", headers=AUTH_HEADERS)

    if not is_pull and repo.is_mirror:
        raise HTTPException(status_code=403, detail=MIRROR_READ_ONLY_MESSAGE)

    access = await load_access_context(db, actor, repo)
    if not has_access(access, mode, target.unit):
        if mode > AccessMode.READ and has_access(access, AccessMode.READ, target.unit):
            raise HTTPException(status_code=403, detail=INSUFFICIENT_AUTH_MESSAGE)
        raise HTTPException(status_code=404, detail=ACCESS_DENIED_MESSAGE)

    if target.is_wiki:
        repo_path = ctx.repo_manager.wiki_path(owner.name, repo.name)
    else:
        repo_path = ctx.repo_manager.repo_path(owner.name, repo.name)
    if not repo_path.is_dir():
        raise HTTPException(status_code=404, detail=ACCESS_DENIED_MESSAGE)
    return GitRequest(owner=owner, repo=repo, actor=actor, target=target, repo_path=repo_path)


def service_mode(service: str | None) -> AccessMode:
    return AccessMode.WRITE if service == "git-receive-pack" else AccessMode.READ


def protocol_env(request: Request, env: dict[str, str]) -> dict[str, str]:
    protocol = request.headers.get("Git-Protocol")
    if protocol:
        env["GIT_PROTOCOL"] = protocol
    return env


@router.get("/{owner}/{repo}/info/refs")
async def get_info_refs(
    owner: str,
    repo: str,
    request: Request,
    service: str | None = Query(None, description="git-upload-pack or git-receive-pack"),
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    """Ref advertisement. Without ``service`` the dumb-protocol ``info/refs`` is served."""
    git = await authorize_git_request(request, db, ctx, owner, repo, service_mode(service))

    if service in SERVICES:
        env = protocol_env(request, ctx.settings.child_env())
        body = await ctx.git_backend.advertise_refs(git.repo_path, service, env)
        return Response(
            content=body,
            media_type=f"application/x-{service}-advertisement",
            headers=NO_CACHE_HEADERS,
        )

    body = await ctx.git_backend.dumb_info_refs(git.repo_path)
    return Response(content=body, media_type="text/plain; charset=utf-8", headers=NO_CACHE_HEADERS)


async def _service_rpc(
    request: Request, db: AsyncSession, ctx: AppContext, owner: str, repo: str, service: str
) -> StreamingResponse:
    git = await authorize_git_request(request, db, ctx, owner, repo, service_mode(service))

    expected = f"application/x-{service}-request"
    if request.headers.get("Content-Type") != expected:
        raise HTTPException(status_code=400, detail=f"Content-Type must be {expected}")

    body = request.stream()
    if request.headers.get("Content-Encoding", "").lower() == "gzip":
        body = gunzip_stream(body)

    uuid = ""
    is_push = service == "git-receive-pack"
    if is_push and not git.target.is_wiki:
        uuid = str(uuid4())
        env = git_env(ctx.settings, git.actor, git.owner, git.repo, uuid)
    else:
        env = {**ctx.settings.child_env(), "UUID": ""}
    env = protocol_env(request, env)

    # The update hook writes to the database from its own process
    await db.commit()
    proc = await ctx.git_backend.service_rpc(git.repo_path, service, body, env)

    background = None
    if uuid:
        pusher_id, owner_name, repo_name = git.actor.id, git.owner.name, git.repo.name

        async def finish_push():
            if not proc.succeeded:
                logger.warning(f"receive-pack for {owner_name}/{repo_name} exited with {proc.returncode}")
            events = await process_push(ctx, uuid, pusher_id, owner_name, repo_name)
            await ctx.event_bus.publish(events)

        background = BackgroundTask(finish_push)

    return StreamingResponse(
        proc.iter_stdout(),
        media_type=f"application/x-{service}-result",
        headers=NO_CACHE_HEADERS,
        background=background,
    )


@router.post("/{owner}/{repo}/git-upload-pack")
async def git_upload_pack(
    owner: str, repo: str, request: Request, db: AsyncSession = Depends(get_db), ctx: AppContext = Depends(get_ctx)
):
    return await _service_rpc(request, db, ctx, owner, repo, "git-upload-pack")


@router.post("/{owner}/{repo}/git-receive-pack")
async def git_receive_pack(
    owner: str, repo: str, request: Request, db: AsyncSession = Depends(get_db), ctx: AppContext = Depends(get_ctx)
):
    return await _service_rpc(request, db, ctx, owner, repo, "git-receive-pack")


@router.get("/{owner}/{repo}/HEAD")
async def get_head(
    owner: str, repo: str, request: Request, db: AsyncSession = Depends(get_db), ctx: AppContext = Depends(get_ctx)
):
    git = await authorize_git_request(request, db, ctx, owner, repo, AccessMode.READ)
    return FileResponse(git.repo_path / "HEAD", media_type="text/plain", headers=NO_CACHE_HEADERS)


@router.get("/{owner}/{repo}/objects/{path:path}")
async def get_object_file(
    owner: str,
    repo: str,
    path: str,
    request: Request,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
):
    """Loose objects, packs and the info files the dumb protocol walks."""
    media_type = next((mt for pattern, mt in DUMB_FILES if pattern.match(path)), None)
    if media_type is None:
        raise HTTPException(status_code=404, detail="Not found")
    git = await authorize_git_request(request, db, ctx, owner, repo, AccessMode.READ)
    file_path = git.repo_path / "objects" / path
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="Not found")
    return FileResponse(file_path, media_type=media_type)
