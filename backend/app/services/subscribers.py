"""
Default EventBus subscribers.

Each subscriber opens its own session: events are published after the
transaction that produced them committed.
"""

import logging

from app.errors import NotFoundError
from app.services.auth import get_user_by_id
from app.services.events import DomainEvent, EventType
from app.services.pull_request import add_test_pull_request_task
from app.services.repository import get_owner, get_repository_by_id
from app.services.webhook import prepare_webhooks

logger = logging.getLogger(__name__)


def register_default_subscribers(ctx) -> None:
    async def log_event(event: DomainEvent) -> None:
        logger.info(f"Event {event.type.value} on repository {event.repo_id} by {event.actor_id}")

    async def prepare_hooks(event: DomainEvent) -> None:
        async with ctx.session_factory() as session:
            try:
                repo = await get_repository_by_id(session, event.repo_id)
                owner = await get_owner(session, repo)
            except NotFoundError as e:
                logger.warning(f"Dropping {event.type.value} event: {e}")
                return
            tasks = await prepare_webhooks(session, repo, owner, event)
            await session.commit()
        if tasks:
            logger.debug(f"Prepared {len(tasks)} hook task(s) for repository {event.repo_id}")
        await ctx.hook_queue.add(event.repo_id)

    async def schedule_pull_request_checks(event: DomainEvent) -> None:
        if not event.branch or event.actor_id is None:
            return
        async with ctx.session_factory() as session:
            doer = await get_user_by_id(session, event.actor_id)
            events = await add_test_pull_request_task(ctx, session, doer, event.repo_id, event.branch)
        await ctx.event_bus.publish(events)

    ctx.event_bus.subscribe(log_event)
    ctx.event_bus.subscribe(prepare_hooks)
    ctx.event_bus.subscribe(schedule_pull_request_checks, EventType.PUSH)
