from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import AppContext
from app.database import get_db
from app.models import AccessMode, HookContentType, HookTask, HookTaskType, User, Webhook
from app.routers.deps import get_ctx, get_current_user, load_repo
from app.schemas.webhook import HookCreate, HookRead, HookTaskRead, HookUpdate
from app.services import webhook as webhook_service

router = APIRouter(prefix="/api/repos/{owner}/{repo}/hooks", tags=["hooks"])


def hook_read(hook: Webhook) -> HookRead:
    return HookRead(
        id=hook.id,
        type="slack" if hook.hook_task_type == HookTaskType.SLACK else "gitforge",
        url=hook.url,
        content_type=HookContentType(hook.content_type).label,
        events=hook.event_types(),
        active=hook.is_active,
        last_status=hook.last_status,
        created_at=hook.created_at,
        updated_at=hook.updated_at,
    )


def hook_task_read(task: HookTask) -> HookTaskRead:
    return HookTaskRead(
        id=task.id,
        uuid=task.uuid,
        event_type=task.event_type,
        is_delivered=task.is_delivered,
        is_succeed=task.is_succeed,
        delivered_at=task.delivered_at,
        request=task.request_info,
        response=task.response_info,
    )


@router.get("", response_model=list[HookRead])
async def list_hooks(
    owner: str,
    repo: str,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    return [hook_read(h) for h in await webhook_service.list_webhooks(db, repository.id)]


@router.post("", response_model=HookRead, status_code=201)
async def create_hook(
    owner: str,
    repo: str,
    payload: HookCreate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    hook = await webhook_service.create_webhook(
        db,
        repository.id,
        payload.type,
        payload.url,
        payload.content_type,
        payload.secret,
        payload.events,
        active=payload.active,
        meta=payload.meta,
    )
    return hook_read(hook)


@router.get("/{hook_id}", response_model=HookRead)
async def get_hook(
    owner: str,
    repo: str,
    hook_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    return hook_read(await webhook_service.get_webhook(db, repository.id, hook_id))


@router.patch("/{hook_id}", response_model=HookRead)
async def update_hook(
    owner: str,
    repo: str,
    hook_id: int,
    update: HookUpdate,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    hook = await webhook_service.get_webhook(db, repository.id, hook_id)
    fields = {name: getattr(update, name) for name in update.model_fields_set}
    hook = await webhook_service.update_webhook(db, hook, **fields)
    return hook_read(hook)


@router.delete("/{hook_id}", status_code=204)
async def delete_hook(
    owner: str,
    repo: str,
    hook_id: int,
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    hook = await webhook_service.get_webhook(db, repository.id, hook_id)
    await webhook_service.delete_webhook(db, hook)


@router.get("/{hook_id}/tasks", response_model=list[HookTaskRead])
async def list_hook_tasks(
    owner: str,
    repo: str,
    hook_id: int,
    page: int = Query(1, ge=1),
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    """Delivery history, newest first."""
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    hook = await webhook_service.get_webhook(db, repository.id, hook_id)
    tasks = await webhook_service.list_hook_tasks(db, hook.id, page, ctx.settings.webhook_paging_num)
    return [hook_task_read(t) for t in tasks]


@router.post("/{hook_id}/tasks/{task_id}/redeliver", response_model=HookTaskRead)
async def redeliver_hook_task(
    owner: str,
    repo: str,
    hook_id: int,
    task_id: int,
    db: AsyncSession = Depends(get_db),
    ctx: AppContext = Depends(get_ctx),
    user: User = Depends(get_current_user),
):
    _, repository = await load_repo(db, owner, repo, user, AccessMode.ADMIN)
    hook = await webhook_service.get_webhook(db, repository.id, hook_id)
    task = await webhook_service.redeliver_hook_task(ctx, db, task_id, hook.id)
    return hook_task_read(task)
