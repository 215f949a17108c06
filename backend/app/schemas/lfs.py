"""Git LFS batch API documents."""

from datetime import datetime

from pydantic import BaseModel


class ObjectPointer(BaseModel):
    oid: str
    size: int = 0


class BatchRequest(BaseModel):
    operation: str
    transfers: list[str] = []
    objects: list[ObjectPointer] = []


class Link(BaseModel):
    href: str
    header: dict[str, str] = {}
    expires_at: datetime | None = None


class ObjectError(BaseModel):
    code: int
    message: str


class Representation(BaseModel):
    oid: str
    size: int
    actions: dict[str, Link] = {}
    error: ObjectError | None = None


class BatchResponse(BaseModel):
    transfer: str | None = None
    objects: list[Representation] = []
