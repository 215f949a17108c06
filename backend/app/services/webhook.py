"""
Webhooks: turning domain events into HookTasks and delivering them.

prepare_webhooks() runs inside the transaction that reacts to an event and
only writes rows; the WebhookDeliveryWorker later posts every undelivered
task of a repository in id order. One delivery attempt is made per task.
"""

import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from datetime import datetime
from uuid import uuid4

import httpx
from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.errors import HookTaskNotFound, InvalidInputError, WebhookNotFound
from app.models import (
    HookContentType,
    HookStatus,
    HookTask,
    HookTaskType,
    Repository,
    User,
    Webhook,
)
from app.services.events import DomainEvent, EventType
from app.services.workers import QueueWorker

logger = logging.getLogger(__name__)

# Stored request/response bodies are cut to this many characters
MAX_RECORDED_BODY = 64 * 1024
USER_AGENT = "GitForge-Hookshot"


def sign_payload(secret: str, body: str) -> str:
    """HMAC-SHA256 of the payload, hex encoded."""
    return hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).hexdigest()


def truncate(text: str, limit: int = MAX_RECORDED_BODY) -> str:
    return text if len(text) <= limit else text[:limit]


# -----------------------------------------------------------------------------
# Payload shaping
# -----------------------------------------------------------------------------

def gitforge_payload(event: DomainEvent, hook: Webhook) -> dict | None:
    return event.payload


def _slack_escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _slack_link(url: str, text: str) -> str:
    return f"<{url}|{_slack_escape(text)}>"


def slack_payload(event: DomainEvent, hook: Webhook) -> dict | None:
    """Slack incoming-webhook body. None for events Slack hooks do not report."""
    meta = hook.meta_dict
    payload = event.payload
    repo = payload.get("repository", {})
    repo_link = _slack_link(repo.get("html_url", ""), repo.get("full_name", ""))
    sender = payload.get("sender", {}).get("login", "")
    attachments: list[dict] = []

    if event.type == EventType.PUSH:
        branch = payload.get("ref", "").removeprefix("refs/heads/")
        branch_link = _slack_link(f"{repo.get('html_url', '')}/src/{branch}", branch)
        total = payload.get("total_commits", len(payload.get("commits", [])))
        noun = "commit" if total == 1 else "commits"
        if payload.get("compare_url"):
            commits_text = _slack_link(payload["compare_url"], f"{total} new {noun}")
        else:
            commits_text = f"{total} new {noun}"
        text = f"[{repo_link}:{branch_link}] {commits_text} pushed by {_slack_escape(sender)}"
        lines = [
            f"{_slack_link(c['url'], c['id'][:7])}: {_slack_escape(c['message'].splitlines()[0] if c['message'] else '')}"
            f" - {_slack_escape(c['author']['name'])}"
            for c in payload.get("commits", [])
        ]
        if lines:
            attachments.append({"color": meta.get("color", "good"), "text": "\n".join(lines)})
    elif event.type == EventType.CREATE:
        text = f"[{repo_link}] {payload.get('ref_type')} {_slack_escape(payload.get('ref', ''))} created by {_slack_escape(sender)}"
    elif event.type == EventType.DELETE:
        text = f"[{repo_link}] {payload.get('ref_type')} {_slack_escape(payload.get('ref', ''))} deleted by {_slack_escape(sender)}"
    elif event.type == EventType.PULL_REQUEST:
        pr = payload.get("pull_request", {})
        title = _slack_link(pr.get("html_url", ""), f"#{payload.get('number')} {pr.get('title', '')}")
        text = f"[{repo_link}] Pull request {payload.get('action')}: {title} by {_slack_escape(sender)}"
    else:
        return None

    return {
        "channel": meta.get("channel", ""),
        "text": text,
        "username": meta.get("username", ""),
        "icon_url": meta.get("icon_url", ""),
        "attachments": attachments,
    }


PayloadShaper = Callable[[DomainEvent, Webhook], dict | None]

SHAPERS: dict[HookTaskType, PayloadShaper] = {
    HookTaskType.GITFORGE: gitforge_payload,
    HookTaskType.SLACK: slack_payload,
}


# -----------------------------------------------------------------------------
# Management
# -----------------------------------------------------------------------------

HOOK_TYPES = {"gitforge": HookTaskType.GITFORGE, "slack": HookTaskType.SLACK}
CONTENT_TYPES = {"json": HookContentType.JSON, "form": HookContentType.FORM}


def validate_hook(hook_type: HookTaskType, url: str, meta: dict) -> None:
    if not url.startswith(("http://", "https://")):
        raise InvalidInputError(f"invalid webhook url: {url}")
    if hook_type == HookTaskType.SLACK and not str(meta.get("channel", "")).strip():
        raise InvalidInputError("slack webhooks need a channel")


async def get_webhook(session: AsyncSession, repo_id: int, hook_id: int) -> Webhook:
    hook = await session.get(Webhook, hook_id)
    if hook is None or hook.repo_id != repo_id:
        raise WebhookNotFound(f"webhook does not exist: {hook_id}")
    return hook


async def list_webhooks(session: AsyncSession, repo_id: int) -> list[Webhook]:
    result = await session.execute(select(Webhook).where(Webhook.repo_id == repo_id).order_by(Webhook.id))
    return list(result.scalars().all())


async def create_webhook(
    session: AsyncSession,
    repo_id: int,
    hook_type: str,
    url: str,
    content_type: str,
    secret: str,
    events,
    active: bool = True,
    meta: dict | None = None,
) -> Webhook:
    task_type = HOOK_TYPES[hook_type]
    meta = meta or {}
    validate_hook(task_type, url, meta)
    hook = Webhook(
        repo_id=repo_id,
        url=url,
        content_type=CONTENT_TYPES[content_type],
        secret=secret,
        is_ssl=url.startswith("https://"),
        is_active=active,
        hook_task_type=task_type,
        meta=json.dumps(meta) if meta else "",
    )
    hook.hook_event = events
    session.add(hook)
    await session.commit()
    logger.info(f"Created webhook {hook.id} for repository {repo_id}: {url}")
    return hook


async def update_webhook(session: AsyncSession, hook: Webhook, **fields) -> Webhook:
    """Apply the given fields; None values are left unchanged."""
    if fields.get("url") is not None:
        hook.url = fields["url"]
        hook.is_ssl = hook.url.startswith("https://")
    if fields.get("content_type") is not None:
        hook.content_type = CONTENT_TYPES[fields["content_type"]]
    if fields.get("secret") is not None:
        hook.secret = fields["secret"]
    if fields.get("events") is not None:
        hook.hook_event = fields["events"]
    if fields.get("active") is not None:
        hook.is_active = fields["active"]
    if fields.get("meta") is not None:
        hook.meta = json.dumps(fields["meta"]) if fields["meta"] else ""
    validate_hook(HookTaskType(hook.hook_task_type), hook.url, hook.meta_dict)
    hook.updated_at = datetime.utcnow()
    await session.commit()
    return hook


async def delete_webhook(session: AsyncSession, hook: Webhook) -> None:
    """Remove a hook together with its delivery history."""
    await session.execute(delete(HookTask).where(HookTask.hook_id == hook.id))
    await session.delete(hook)
    await session.commit()


# -----------------------------------------------------------------------------
# Preparation
# -----------------------------------------------------------------------------

async def get_active_webhooks(session: AsyncSession, repo: Repository, owner: User) -> list[Webhook]:
    """Repository hooks plus, for organization repositories, the organization's hooks."""
    conditions = [Webhook.repo_id == repo.id]
    if owner.is_organization:
        conditions.append(Webhook.org_id == owner.id)
    result = await session.execute(
        select(Webhook).where(Webhook.is_active.is_(True), or_(*conditions)).order_by(Webhook.id)
    )
    return list(result.scalars().all())


async def prepare_webhooks(session: AsyncSession, repo: Repository, owner: User, event: DomainEvent) -> list[HookTask]:
    """Create one HookTask per subscribed hook. Does not commit."""
    tasks = []
    for hook in await get_active_webhooks(session, repo, owner):
        if not hook.subscribes_to(event.type.value):
            continue
        shaper = SHAPERS.get(HookTaskType(hook.hook_task_type))
        if shaper is None:
            logger.warning(f"Webhook {hook.id} has unknown type {hook.hook_task_type}")
            continue
        payload = shaper(event, hook)
        if payload is None:
            continue

        body = json.dumps(payload)
        task = HookTask(
            repo_id=repo.id,
            hook_id=hook.id,
            uuid=str(uuid4()),
            type=hook.hook_task_type,
            url=hook.url,
            signature=sign_payload(hook.secret, body) if hook.secret else "",
            payload_content=body,
            content_type=hook.content_type,
            event_type=event.type.value,
            is_ssl=hook.is_ssl,
        )
        session.add(task)
        tasks.append(task)
    await session.flush()
    return tasks


# -----------------------------------------------------------------------------
# Delivery
# -----------------------------------------------------------------------------

def build_request(task: HookTask) -> tuple[dict[str, str], dict]:
    """Headers plus the httpx body arguments for one task."""
    headers = {
        "User-Agent": USER_AGENT,
        "X-Event-Delivery": task.uuid,
        "X-Event-Type": task.event_type,
    }
    if task.signature:
        headers["X-Hub-Signature"] = f"sha256={task.signature}"

    if task.content_type == HookContentType.FORM:
        return headers, {"data": {"payload": task.payload_content}}
    headers["Content-Type"] = "application/json"
    return headers, {"content": task.payload_content.encode("utf-8")}


async def deliver(
    session: AsyncSession,
    task: HookTask,
    settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HookTask:
    """Post one task and record the outcome.

    The task is marked delivered whatever the outcome; is_succeed tells
    whether the receiver answered 2xx.
    """
    headers, body = build_request(task)
    response_info: dict = {"status": 0, "headers": {}, "body": ""}
    try:
        async with httpx.AsyncClient(
            verify=not settings.webhook_skip_tls_verify,
            timeout=settings.webhook_deliver_timeout,
            transport=transport,
        ) as client:
            response = await client.post(task.url, headers=headers, **body)
        response_info = {
            "status": response.status_code,
            "headers": dict(response.headers),
            "body": truncate(response.text),
        }
        task.is_succeed = 200 <= response.status_code < 300
    except (httpx.HTTPError, httpx.InvalidURL) as e:
        response_info["body"] = f"Delivery: {e}"
        task.is_succeed = False

    task.request_content = json.dumps({"headers": headers, "body": truncate(task.payload_content)})
    task.response_content = json.dumps(response_info)
    task.is_delivered = True
    task.delivered_at = datetime.utcnow()

    hook = await session.get(Webhook, task.hook_id)
    if hook is None:
        logger.warning(f"Webhook {task.hook_id} of task {task.id} no longer exists")
    else:
        hook.last_status = HookStatus.SUCCEED if task.is_succeed else HookStatus.FAIL

    if task.is_succeed:
        logger.debug(f"Hook task {task.id} delivered to {task.url}")
    else:
        logger.warning(f"Hook task {task.id} delivery to {task.url} failed: status {response_info['status']}")
    await session.commit()
    return task


async def deliver_repo_hooks(ctx, repo_id: int) -> int:
    """Deliver every undelivered task of one repository in id order."""
    async with ctx.session_factory() as session:
        result = await session.execute(
            select(HookTask)
            .where(HookTask.repo_id == repo_id, HookTask.is_delivered.is_(False))
            .order_by(HookTask.id)
        )
        tasks = list(result.scalars().all())
        for task in tasks:
            await deliver(session, task, ctx.settings, ctx.webhook_transport)
        return len(tasks)


async def redeliver_hook_task(ctx, session: AsyncSession, task_id: int, hook_id: int | None = None) -> HookTask:
    """Reset a task so the worker posts it again."""
    task = await session.get(HookTask, task_id)
    if task is None or (hook_id is not None and task.hook_id != hook_id):
        raise HookTaskNotFound(f"hook task does not exist: {task_id}")
    task.is_delivered = False
    task.is_succeed = False
    task.delivered_at = None
    await session.commit()
    await ctx.hook_queue.add(task.repo_id)
    return task


async def list_hook_tasks(session: AsyncSession, hook_id: int, page: int, paging_num: int) -> list[HookTask]:
    """Delivery history of one hook, newest first."""
    page = max(page, 1)
    result = await session.execute(
        select(HookTask)
        .where(HookTask.hook_id == hook_id)
        .order_by(HookTask.id.desc())
        .offset((page - 1) * paging_num)
        .limit(paging_num)
    )
    return list(result.scalars().all())


class WebhookDeliveryWorker(QueueWorker):
    name = "webhook delivery"

    def __init__(self, ctx):
        super().__init__(ctx, ctx.hook_queue)

    async def on_start(self) -> None:
        """Deliver whatever was left undelivered by the previous run."""
        async with self.ctx.session_factory() as session:
            result = await session.execute(
                select(HookTask.repo_id).where(HookTask.is_delivered.is_(False)).distinct()
            )
            repo_ids = list(result.scalars().all())
        for repo_id in repo_ids:
            try:
                await deliver_repo_hooks(self.ctx, repo_id)
            except Exception as e:
                logger.error(f"Startup delivery for repository {repo_id} failed: {e}")

    async def handle(self, repo_id: int) -> None:
        await deliver_repo_hooks(self.ctx, repo_id)
