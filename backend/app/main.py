import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import Settings, configure_logging, get_settings
from app.context import AppContext
from app.database import init_db
from app.errors import GitForgeError
from app.routers import admin, git, hooks, internal, lfs, pulls, repos
from app.services.mirror import MirrorSyncWorker
from app.services.pull_request import PullRequestChecker
from app.services.subscribers import register_default_subscribers
from app.services.webhook import WebhookDeliveryWorker

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, ctx: AppContext | None = None, start_workers: bool = True) -> FastAPI:
    """
    Build the application.

    Tests pass their own context (in-memory database, temp directories) and
    usually drive the workers by hand with ``start_workers=False``.
    """
    if ctx is not None:
        settings = ctx.settings
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_ctx = ctx or AppContext.from_settings(settings)
        app.state.ctx = app_ctx
        await init_db(app_ctx.engine)
        register_default_subscribers(app_ctx)

        app.state.workers = [
            WebhookDeliveryWorker(app_ctx),
            MirrorSyncWorker(app_ctx),
            PullRequestChecker(app_ctx),
        ]
        if start_workers:
            for worker in app.state.workers:
                await worker.start()
        yield
        for worker in app.state.workers:
            await worker.stop()
        if ctx is None:
            await app_ctx.close()

    app = FastAPI(
        title=settings.app_name,
        description="Self-hosted git service",
        version="0.1.0",
        lifespan=lifespan,
    )
    if ctx is not None:
        # Available before the lifespan runs (ASGITransport does not send lifespan events)
        app.state.ctx = ctx

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def recovery(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            user = getattr(request.state, "user", None)
            actor = user.name if user is not None else "anonymous"
            logger.exception(f"PANIC: {request.method} {request.url.path} by {actor}: {e}")
            return JSONResponse(status_code=500, content={"message": "Internal Server Error"})

    @app.exception_handler(GitForgeError)
    async def gitforge_error_handler(request: Request, exc: GitForgeError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    # API routes first so /api/... never matches the /{owner}/{repo} patterns
    app.include_router(repos.router)
    app.include_router(hooks.router)
    app.include_router(pulls.router)
    app.include_router(admin.router)
    app.include_router(internal.router)
    app.include_router(lfs.router)
    app.include_router(git.router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "app": settings.app_name}

    return app


def run() -> FastAPI:
    """Factory for ``uvicorn --factory app.main:run``."""
    settings = get_settings()
    configure_logging(settings)
    return create_app(settings)
