"""Request-scoped dependencies shared by the routers."""

from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.context import AppContext
from app.database import get_db
from app.errors import AuthenticationError, NotFoundError
from app.models import AccessMode, Repository, User
from app.services.access import access_level
from app.services.auth import authenticate_basic
from app.services.repository import get_repository_by_name


def get_ctx(request: Request) -> AppContext:
    return request.app.state.ctx


async def get_optional_user(request: Request, db: AsyncSession = Depends(get_db)) -> User | None:
    """User from Basic credentials (password or token), None for anonymous requests."""
    user = getattr(request.state, "user", None)
    if user is not None:
        return user
    try:
        user = await authenticate_basic(db, request.headers.get("Authorization"))
    except AuthenticationError as e:
        raise HTTPException(
            status_code=401, detail=e.message, headers={"WWW-Authenticate": 'Basic realm="."'}
        )
    request.state.user = user
    return user


async def get_current_user(user: User | None = Depends(get_optional_user)) -> User:
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required", headers={"WWW-Authenticate": 'Basic realm="."'})
    return user


async def get_admin_user(user: User = Depends(get_current_user)) -> User:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Site administrator required")
    return user


async def load_repo(
    db: AsyncSession, owner_name: str, repo_name: str, user: User | None, required: AccessMode
) -> tuple[User, Repository]:
    """Repository the caller may act on. Unreadable repositories are reported as missing."""
    try:
        owner, repo = await get_repository_by_name(db, owner_name, repo_name)
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Repository not found")
    mode = await access_level(db, user, repo)
    if mode < required:
        if mode >= AccessMode.READ:
            raise HTTPException(status_code=403, detail="Insufficient permission")
        raise HTTPException(status_code=404, detail="Repository not found")
    return owner, repo
