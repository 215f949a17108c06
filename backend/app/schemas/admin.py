from datetime import datetime

from pydantic import BaseModel


class ProcessRead(BaseModel):
    pid: int
    description: str
    command: list[str]
    start: datetime
    os_pid: int | None = None

    class Config:
        from_attributes = True
