"""
Root conftest.py - Shared fixtures for all test types.

This file is automatically loaded by pytest and provides:
- Settings and an isolated AppContext per test (temp repo root, LFS store, database)
- Database session fixtures
- FastAPI test client over ASGITransport
- Git helpers for tests that drive a real git binary
"""
import base64
import sys
from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

# Add backend, cli and tdd to path for imports
root_path = Path(__file__).parent.parent
for sub in ("backend", "cli", "tdd"):
    sys.path.insert(0, str(root_path / sub))

from app.config import Settings
from app.context import AppContext
from app.database import init_db
from app.main import create_app
from app.services.subscribers import register_default_subscribers
from shared.git_helpers import WorkTree

INTERNAL_TOKEN = "test-internal-token"
LFS_JWT_SECRET = base64.urlsafe_b64encode(b"l" * 32).decode().rstrip("=")


# -----------------------------------------------------------------------------
# Settings and context
# -----------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings rooted in a per-test temp directory.

    The database is a file so git hooks running in child processes see the
    same data as the test.
    """
    return Settings(
        app_url="http://test/",
        local_url="http://test/",
        work_dir=str(tmp_path),
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gitforge.db'}",
        repo_root=str(tmp_path / "repositories"),
        temp_path=str(tmp_path / "tmp"),
        log_root_path=str(tmp_path / "log"),
        lfs_content_path=str(tmp_path / "lfs"),
        lfs_jwt_secret=LFS_JWT_SECRET,
        internal_token=INTERNAL_TOKEN,
        mirror_min_interval=60,
        python_executable=sys.executable,
    )


@pytest_asyncio.fixture
async def ctx(settings: Settings) -> AsyncGenerator[AppContext, None]:
    """AppContext with a fresh schema. Workers are not started."""
    context = AppContext.from_settings(settings)
    await init_db(context.engine)
    yield context
    await context.close()


@pytest_asyncio.fixture
async def db_session(ctx: AppContext) -> AsyncGenerator[AsyncSession, None]:
    async with ctx.session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def app(ctx: AppContext):
    application = create_app(ctx=ctx, start_workers=False)
    register_default_subscribers(ctx)
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Provide an async HTTP client for API testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# -----------------------------------------------------------------------------
# Marker-based fixtures
# -----------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _mark_test(request):
    """Automatically apply markers based on test location."""
    if "unit" in str(request.fspath):
        request.applymarker(pytest.mark.unit)
    elif "integration" in str(request.fspath):
        request.applymarker(pytest.mark.integration)


# -----------------------------------------------------------------------------
# Git helpers
# -----------------------------------------------------------------------------

@pytest.fixture
def work_tree(tmp_path: Path):
    """Factory: ``work_tree(bare_path)`` returns a WorkTree pushing to that bare repository."""
    counter = {"n": 0}

    def _make(remote: Path) -> WorkTree:
        counter["n"] += 1
        return WorkTree(tmp_path / f"work-{counter['n']}", remote)

    return _make
