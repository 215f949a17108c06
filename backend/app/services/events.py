"""
Domain events.

Data operations return the events they caused instead of firing side effects;
the caller publishes them on the EventBus once its transaction committed.
Events are pydantic models so the SSH gateway can forward them to the web
process as JSON.
"""

import hashlib
import hmac
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, TypeAdapter

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    PUSH = "push"
    CREATE = "create"
    DELETE = "delete"
    PULL_REQUEST = "pull_request"


class DomainEvent(BaseModel):
    type: EventType
    repo_id: int
    actor_id: int | None = None
    # Branch name for push events on branches, empty otherwise
    branch: str = ""
    # API-shaped payload handed to webhook subscribers
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)


Handler = Callable[[DomainEvent], Awaitable[None]]


class EventBus:
    def __init__(self):
        self._handlers: dict[EventType | None, list[Handler]] = {}

    def subscribe(self, handler: Handler, event_type: EventType | None = None) -> None:
        """Register ``handler`` for one event type, or for every event when None."""
        self._handlers.setdefault(event_type, []).append(handler)

    def unsubscribe(self, handler: Handler, event_type: EventType | None = None) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    async def publish(self, events: Iterable[DomainEvent]) -> None:
        """Dispatch in order. A failing handler is logged and does not stop the others."""
        for event in events:
            handlers = self._handlers.get(event.type, []) + self._handlers.get(None, [])
            for handler in handlers:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Event handler {getattr(handler, '__name__', handler)} failed for {event.type.value}: {e}")


# -----------------------------------------------------------------------------
# Forwarding between processes
# -----------------------------------------------------------------------------

INTERNAL_SIGNATURE_HEADER = "X-GitForge-Signature"

event_list_adapter = TypeAdapter(list[DomainEvent])


def sign_body(token: str, body: bytes) -> str:
    return hmac.new(token.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_body(token: str, body: bytes, signature: str) -> bool:
    if not token or not signature:
        return False
    return hmac.compare_digest(sign_body(token, body), signature)


def encode_events(events: Iterable[DomainEvent]) -> bytes:
    return event_list_adapter.dump_json(list(events))


def decode_events(body: bytes) -> list[DomainEvent]:
    return event_list_adapter.validate_json(body)
