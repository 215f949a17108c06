from typing import Any

from pydantic import BaseModel

from app.models import MergeStyle


class PullCreate(BaseModel):
    title: str
    body: str = ""
    base: str
    # ``branch`` or ``owner:branch`` for a branch of another repository
    head: str


class MergeRequest(BaseModel):
    """Merge options; the instance default style applies when omitted."""
    style: MergeStyle | None = None


class CommitRead(BaseModel):
    sha: str
    message: str
    author_name: str
    author_email: str


class CompareRead(BaseModel):
    merge_base: str
    head_commit_id: str
    commits: list[CommitRead] = []
    diff: dict[str, Any] | None = None


class PullBranch(BaseModel):
    ref: str
    label: str
    repo: dict[str, Any] | None = None


class PullRead(BaseModel):
    id: int
    number: int
    title: str
    body: str
    html_url: str
    state: str
    status: str
    mergeable: bool
    merged: bool
    merged_at: str | None = None
    merge_commit_sha: str | None = None
    merge_base: str
    head: PullBranch
    base: PullBranch
