"""
API request/response factories.

These factories create dictionaries suitable for API request payloads
and the headers the git and LFS endpoints expect.
"""
import base64
from typing import Any

from faker import Faker

from .base import generate_name

fake = Faker()


# -----------------------------------------------------------------------------
# Auth headers
# -----------------------------------------------------------------------------

def basic_auth(username: str, password: str) -> dict[str, str]:
    """Authorization header for HTTP basic auth."""
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def bearer_auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


# -----------------------------------------------------------------------------
# Repo API Factories
# -----------------------------------------------------------------------------

def repo_create_payload(
    name: str | None = None,
    private: bool = False,
    default_branch: str = "master",
    **kwargs,
) -> dict[str, Any]:
    """Create a payload for POST /api/repos."""
    return {
        "name": name or generate_name("repo-"),
        "description": fake.sentence(nb_words=5),
        "private": private,
        "default_branch": default_branch,
        **kwargs,
    }


def migrate_payload(clone_addr: str, repo_name: str | None = None, **kwargs) -> dict[str, Any]:
    """Create a payload for POST /api/repos/migrate."""
    return {
        "clone_addr": clone_addr,
        "repo_name": repo_name or generate_name("mirror-"),
        **kwargs,
    }


# -----------------------------------------------------------------------------
# Webhook API Factories
# -----------------------------------------------------------------------------

def hook_create_payload(
    url: str | None = None,
    hook_type: str = "gitforge",
    send_everything: bool = False,
    **kwargs,
) -> dict[str, Any]:
    """Create a payload for POST /api/repos/{owner}/{repo}/hooks."""
    events = {"send_everything": True} if send_everything else {"push_only": True}
    return {
        "type": hook_type,
        "url": url or f"https://{fake.domain_name()}/hook",
        "content_type": "json",
        "secret": "",
        "events": events,
        "active": True,
        **kwargs,
    }


# -----------------------------------------------------------------------------
# Pull Request API Factories
# -----------------------------------------------------------------------------

def pull_create_payload(head: str, base: str = "master", title: str | None = None) -> dict[str, Any]:
    """Create a payload for POST /api/repos/{owner}/{repo}/pulls."""
    return {
        "title": title or fake.sentence(nb_words=4).rstrip("."),
        "body": fake.paragraph(nb_sentences=2),
        "base": base,
        "head": head,
    }


# -----------------------------------------------------------------------------
# LFS Factories
# -----------------------------------------------------------------------------

LFS_HEADERS = {
    "Accept": "application/vnd.git-lfs+json",
    "Content-Type": "application/vnd.git-lfs+json",
}


def lfs_batch_payload(operation: str, objects: list[tuple[str, int]]) -> dict[str, Any]:
    """Create a payload for POST .../info/lfs/objects/batch."""
    return {
        "operation": operation,
        "objects": [{"oid": oid, "size": size} for oid, size in objects],
    }
