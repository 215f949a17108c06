import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import AppContext
from app.database import get_db
from app.errors import NotFoundError
from app.models import AccessMode, OrgUser, Repository, User
from app.routers.deps import get_ctx, get_current_user, get_optional_user, load_repo
from app.schemas.repo import MigrateRepo, MirrorRead, MirrorUpdate, RepoCreate, RepoRead, RepoUpdate
from app.services import mirror as mirror_service
from app.services.auth import get_user_by_name
from app.services.repository import (
    create_repository,
    delete_repository,
    list_user_repositories,
    rename_repository,
    set_units,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/repos", tags=["repos"])


async def _is_org_owner(db: AsyncSession, user: User, org: User) -> bool:
    result = await db.execute(
        select(OrgUser.id).where(OrgUser.uid == user.id, OrgUser.org_id == org.id, OrgUser.is_owner.is_(True))
    )
    return result.first() is not None


async def _resolve_owner(db: AsyncSession, user: User, owner_name: str | None) -> User:
    """The account a new repository goes under: the caller, or an organization it owns."""
    if not owner_name or owner_name.lower() == user.lower_name:
        return user
    try:
        owner = await get_user_by_name(db, owner_name)
    except NotFoundError:
        raise HTTPException(status_code=422, detail=f"Owner does not exist: {owner_name}")
    if user.is_admin:
        return owner
    if not owner.is_organization or not await _is_org_owner(db, user, owner):
        raise HTTPException(status_code=403, detail="Given user is not owner of organization")
    return owner


@router.post("", response_model=RepoRead, status_code=201)
async def create_repo(
    payload: RepoCreate,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    owner = await _resolve_owner(db, user, payload.owner)
    repo = await create_repository(
        ctx,
        db,
        owner,
        payload.name,
        description=payload.description,
        is_private=payload.private,
        default_branch=payload.default_branch,
        doer=user,
    )
    return repo.api_format(owner, ctx.settings.app_url)


@router.post("/migrate", response_model=RepoRead, status_code=201)
async def migrate_repo(
    payload: MigrateRepo,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    """
    Create a mirror of a remote repository.

    The mirror is kept in sync by the mirror worker; local paths are only
    accepted from site administrators.
    """
    owner = await _resolve_owner(db, user, payload.owner)
    repo = await mirror_service.create_mirror_repository(
        ctx,
        db,
        owner,
        payload.repo_name,
        payload.clone_addr,
        description=payload.description,
        is_private=payload.private,
        interval=payload.interval,
        enable_prune=payload.enable_prune,
        wiki=payload.wiki,
        allow_local=user.is_admin,
        doer=user,
    )
    return repo.api_format(owner, ctx.settings.app_url)


@router.get("/{owner}", response_model=list[RepoRead])
async def list_repos(
    owner: str,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User | None = Depends(get_optional_user),
):
    try:
        account = await get_user_by_name(db, owner)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="User not found")

    include_private = user is not None and (
        user.is_admin
        or user.id == account.id
        or (account.is_organization and await _is_org_owner(db, user, account))
    )
    repos = await list_user_repositories(db, account.id, page, limit, include_private)
    return [repo.api_format(account, ctx.settings.app_url) for repo in repos]


@router.get("/{owner}/{repo}", response_model=RepoRead)
async def get_repo(
    owner: str,
    repo: str,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User | None = Depends(get_optional_user),
):
    repo_owner, repository = await load_repo(db, owner, repo, user, AccessMode.READ)
    return repository.api_format(repo_owner, ctx.settings.app_url)


@router.patch("/{owner}/{repo}", response_model=RepoRead)
async def update_repo(
    owner: str,
    repo: str,
    update: RepoUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    repo_owner, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)

    if update.name is not None and update.name != repository.name:
        repository = await rename_repository(ctx, db, repo_owner, repository, update.name, doer=user)
    if update.description is not None:
        repository.description = update.description
    if update.private is not None:
        repository.is_private = update.private
    if update.units is not None:
        await set_units(db, repository.id, {unit: None for unit in update.units})
    await db.commit()
    return repository.api_format(repo_owner, ctx.settings.app_url)


@router.delete("/{owner}/{repo}", status_code=204)
async def delete_repo(
    owner: str,
    repo: str,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    repo_owner, repository = await load_repo(db, owner, repo, user, AccessMode.OWNER)
    await delete_repository(ctx, db, repo_owner, repository)
    logger.info(f"Repository {owner}/{repo} deleted by {user.name}")


# -----------------------------------------------------------------------------
# Mirrors
# -----------------------------------------------------------------------------

@router.get("/{owner}/{repo}/mirror", response_model=MirrorRead)
async def get_mirror(
    owner: str,
    repo: str,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    repo_owner, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    mirror = await mirror_service.get_mirror_by_repo_id(db, repository.id)
    return _mirror_read(ctx, repo_owner, repository, mirror)


def _mirror_read(ctx: AppContext, owner: User, repo: Repository, mirror) -> MirrorRead:
    address = mirror_service.get_address(ctx.repo_manager, ctx.repo_manager.repo_path(owner.name, repo.name))
    return MirrorRead(
        repo_id=mirror.repo_id,
        address=mirror_service.mask_credentials(address),
        interval=mirror.interval,
        enable_prune=mirror.enable_prune,
        updated_at=mirror.updated_at,
        next_update=mirror.next_update,
    )


@router.patch("/{owner}/{repo}/mirror", response_model=MirrorRead)
async def update_mirror(
    owner: str,
    repo: str,
    update: MirrorUpdate,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    repo_owner, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    mirror = await mirror_service.get_mirror_by_repo_id(db, repository.id)
    if update.address is not None:
        await mirror_service.update_mirror_address(ctx, repo_owner, repository, update.address, user.is_admin)
    if update.interval is not None:
        mirror = await mirror_service.set_mirror_interval(ctx, db, mirror, update.interval)
    return _mirror_read(ctx, repo_owner, repository, mirror)


@router.post("/{owner}/{repo}/mirror-sync", status_code=202)
async def sync_mirror(
    owner: str,
    repo: str,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    """Queue an immediate update of a mirror."""
    _, repository = await load_repo(db, owner, repo, user, AccessMode.WRITE)
    if not repository.is_mirror:
        raise HTTPException(status_code=400, detail="Repository is not a mirror")
    queued = await ctx.mirror_queue.add(repository.id)
    return {"queued": queued}
