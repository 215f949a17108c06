import json
from datetime import datetime
from enum import IntEnum

from pydantic import BaseModel
from sqlalchemy import Boolean, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class HookContentType(IntEnum):
    JSON = 1
    FORM = 2

    @property
    def label(self) -> str:
        return "json" if self == HookContentType.JSON else "form"


class HookTaskType(IntEnum):
    GITFORGE = 1
    SLACK = 2


class HookStatus(IntEnum):
    NONE = 0
    SUCCEED = 1
    FAIL = 2


class HookEventType:
    CREATE = "create"
    DELETE = "delete"
    PUSH = "push"
    PULL_REQUEST = "pull_request"


class HookEvents(BaseModel):
    create: bool = False
    push: bool = False
    pull_request: bool = False


class HookEvent(BaseModel):
    """Subscription mask stored as JSON on the webhook row."""
    push_only: bool = False
    send_everything: bool = False
    choose_events: bool = False
    events: HookEvents = HookEvents()


class Webhook(Base):
    __tablename__ = "webhook"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(Integer, index=True, default=0)
    org_id: Mapped[int] = mapped_column(Integer, index=True, default=0)
    url: Mapped[str] = mapped_column(Text)
    content_type: Mapped[int] = mapped_column(Integer, default=HookContentType.JSON)
    secret: Mapped[str] = mapped_column(Text, default="")
    events: Mapped[str] = mapped_column(Text, default="{}")
    is_ssl: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    hook_task_type: Mapped[int] = mapped_column(Integer, default=HookTaskType.GITFORGE)
    # Integration settings (Slack channel, username, icon)
    meta: Mapped[str] = mapped_column(Text, default="")
    last_status: Mapped[int] = mapped_column(Integer, default=HookStatus.NONE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def hook_event(self) -> HookEvent:
        return HookEvent.model_validate_json(self.events or "{}")

    @hook_event.setter
    def hook_event(self, value: HookEvent) -> None:
        self.events = value.model_dump_json()

    def has_create_event(self) -> bool:
        ev = self.hook_event
        return ev.send_everything or (ev.choose_events and ev.events.create)

    def has_push_event(self) -> bool:
        ev = self.hook_event
        return ev.push_only or ev.send_everything or (ev.choose_events and ev.events.push)

    def has_pull_request_event(self) -> bool:
        ev = self.hook_event
        return ev.send_everything or (ev.choose_events and ev.events.pull_request)

    def has_delete_event(self) -> bool:
        # Deletes ride on the create subscription
        return self.has_create_event()

    def subscribes_to(self, event_type: str) -> bool:
        return {
            HookEventType.CREATE: self.has_create_event,
            HookEventType.DELETE: self.has_delete_event,
            HookEventType.PUSH: self.has_push_event,
            HookEventType.PULL_REQUEST: self.has_pull_request_event,
        }[event_type]()

    def event_types(self) -> list[str]:
        return [
            t for t in (HookEventType.CREATE, HookEventType.PUSH, HookEventType.PULL_REQUEST)
            if self.subscribes_to(t)
        ]

    @property
    def meta_dict(self) -> dict:
        return json.loads(self.meta) if self.meta else {}


class HookTask(Base):
    """One delivery of one event to one webhook, with the full request/response echo."""
    __tablename__ = "hook_task"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    repo_id: Mapped[int] = mapped_column(Integer, index=True)
    hook_id: Mapped[int] = mapped_column(Integer, index=True)
    uuid: Mapped[str] = mapped_column(String(36))
    type: Mapped[int] = mapped_column(Integer, default=HookTaskType.GITFORGE)
    url: Mapped[str] = mapped_column(Text)
    signature: Mapped[str] = mapped_column(Text, default="")
    payload_content: Mapped[str] = mapped_column(Text)
    content_type: Mapped[int] = mapped_column(Integer, default=HookContentType.JSON)
    event_type: Mapped[str] = mapped_column(String(32))
    is_ssl: Mapped[bool] = mapped_column(Boolean, default=False)
    is_delivered: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_succeed: Mapped[bool] = mapped_column(Boolean, default=False)
    request_content: Mapped[str] = mapped_column(Text, default="")
    response_content: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    @property
    def request_info(self) -> dict:
        return json.loads(self.request_content) if self.request_content else {}

    @property
    def response_info(self) -> dict:
        return json.loads(self.response_content) if self.response_content else {}
