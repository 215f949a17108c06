import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import AppContext
from app.database import get_db
from app.errors import NotFoundError
from app.models import AccessMode, Issue, PullRequest, UnitType, User
from app.routers.deps import get_ctx, get_current_user, get_optional_user, load_repo
from app.schemas.pull import CommitRead, CompareRead, MergeRequest, PullCreate, PullRead
from app.services import pull_request as pull_service
from app.services.access import user_has_access

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/repos/{owner}/{repo}/pulls", tags=["pulls"])


async def _pull_read(ctx: AppContext, db: AsyncSession, pr: PullRequest, viewer: User | None) -> PullRead:
    sides = await pull_service.load_sides(db, pr)
    payload = pull_service.pull_request_payload(ctx.settings.app_url, "", sides, viewer or sides.base_owner)
    return PullRead(**payload["pull_request"])


async def _require_pulls_unit(db: AsyncSession, user: User | None, repo) -> None:
    if not await user_has_access(db, user, repo, AccessMode.READ, UnitType.PULL_REQUESTS):
        raise HTTPException(status_code=404, detail="Pull requests are disabled")


@router.get("", response_model=list[PullRead])
async def list_pulls(
    owner: str,
    repo: str,
    state: str = Query("open", pattern="^(open|closed|all)$"),
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User | None = Depends(get_optional_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.READ)
    await _require_pulls_unit(db, user, repository)

    query = (
        select(PullRequest)
        .join(Issue, Issue.id == PullRequest.issue_id)
        .where(PullRequest.base_repo_id == repository.id)
        .order_by(PullRequest.index.desc())
    )
    if state != "all":
        query = query.where(Issue.is_closed.is_(state == "closed"))
    prs = (await db.execute(query)).scalars().all()
    return [await _pull_read(ctx, db, pr, user) for pr in prs]


@router.post("", response_model=PullRead, status_code=201)
async def create_pull(
    owner: str,
    repo: str,
    payload: PullCreate,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    """
    Open a pull request.

    ``head`` is a branch of this repository, or ``owner:branch`` for the
    same-named repository of another owner.
    """
    _, base_repo = await load_repo(db, owner, repo, user, AccessMode.READ)
    await _require_pulls_unit(db, user, base_repo)

    head_repo = base_repo
    head_branch = payload.head
    if ":" in payload.head:
        head_owner_name, head_branch = payload.head.split(":", 1)
        if head_owner_name.lower() != owner.lower():
            try:
                _, head_repo = await load_repo(db, head_owner_name, base_repo.name, user, AccessMode.READ)
            except HTTPException:
                raise HTTPException(status_code=404, detail=f"Head repository not found: {head_owner_name}")

    pr, events = await pull_service.create_pull_request(
        ctx,
        db,
        user,
        base_repo,
        payload.base,
        head_repo,
        head_branch,
        payload.title,
        payload.body,
    )
    await ctx.event_bus.publish(events)
    return await _pull_read(ctx, db, pr, user)


@router.get("/{index}", response_model=PullRead)
async def get_pull(
    owner: str,
    repo: str,
    index: int,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User | None = Depends(get_optional_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.READ)
    await _require_pulls_unit(db, user, repository)
    pr = await pull_service.get_pull_request_by_index(db, repository.id, index)
    return await _pull_read(ctx, db, pr, user)


@router.get("/{index}/compare", response_model=CompareRead)
async def compare_pull(
    owner: str,
    repo: str,
    index: int,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User | None = Depends(get_optional_user),
):
    """Commits and diff between the merge base and the head of the pull request."""
    _, repository = await load_repo(db, owner, repo, user, AccessMode.READ)
    await _require_pulls_unit(db, user, repository)
    pr = await pull_service.get_pull_request_by_index(db, repository.id, index)
    sides = await pull_service.load_sides(db, pr)
    info = await pull_service.get_compare_info(ctx, db, sides)
    return CompareRead(
        merge_base=info.merge_base,
        head_commit_id=info.head_commit_id,
        commits=[
            CommitRead(sha=c.sha1, message=c.message, author_name=c.author_name, author_email=c.author_email)
            for c in info.commits
        ],
        diff=info.diff.to_dict() if info.diff is not None else None,
    )


@router.post("/{index}/merge", response_model=PullRead)
async def merge_pull(
    owner: str,
    repo: str,
    index: int,
    payload: MergeRequest | None = None,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.WRITE)
    try:
        pr = await pull_service.get_pull_request_by_index(db, repository.id, index)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Pull request not found")

    pr, events = await pull_service.merge_pull_request(ctx, db, pr, user, payload.style if payload else None)
    await ctx.event_bus.publish(events)
    return await _pull_read(ctx, db, pr, user)
