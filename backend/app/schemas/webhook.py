from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel

from app.models import HookEvent


class HookCreate(BaseModel):
    type: Literal["gitforge", "slack"] = "gitforge"
    url: str
    content_type: Literal["json", "form"] = "json"
    secret: str = ""
    events: HookEvent = HookEvent(push_only=True)
    active: bool = True
    # Slack channel, username, icon_url, color
    meta: dict[str, Any] = {}


class HookUpdate(BaseModel):
    url: str | None = None
    content_type: Literal["json", "form"] | None = None
    secret: str | None = None
    events: HookEvent | None = None
    active: bool | None = None
    meta: dict[str, Any] | None = None


class HookRead(BaseModel):
    id: int
    type: str
    url: str
    content_type: str
    events: list[str]
    active: bool
    last_status: int
    created_at: datetime
    updated_at: datetime


class HookTaskRead(BaseModel):
    id: int
    uuid: str
    event_type: str
    is_delivered: bool
    is_succeed: bool
    delivered_at: datetime | None = None
    request: dict[str, Any] = {}
    response: dict[str, Any] = {}
