"""
Shared handles for one running instance.

Everything that used to be a module-level singleton (engine, queues, process
table) hangs off an AppContext so workers get their dependencies through the
constructor and tests can build an isolated instance.
"""

from dataclasses import dataclass, field

import httpx
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from app.config import Settings
from app.database import make_engine, make_session_factory
from app.services.content_store import ContentStore
from app.services.events import EventBus
from app.services.git_server import GitRepoManager, HTTPGitBackend
from app.services.process_manager import ProcessManager
from app.services.unique_queue import StatusTable, UniqueQueue


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    process_manager: ProcessManager
    content_store: ContentStore
    repo_manager: GitRepoManager
    git_backend: HTTPGitBackend
    hook_queue: UniqueQueue
    mirror_queue: UniqueQueue
    pull_request_queue: UniqueQueue
    event_bus: EventBus
    status_table: StatusTable = field(default_factory=StatusTable)
    # Overrides the network transport of outgoing webhook requests
    webhook_transport: httpx.AsyncBaseTransport | None = None

    @classmethod
    def from_settings(cls, settings: Settings, engine: AsyncEngine | None = None) -> "AppContext":
        engine = engine or make_engine(settings.database_url)
        process_manager = ProcessManager(default_timeout=settings.git_timeout_default)
        return cls(
            settings=settings,
            engine=engine,
            session_factory=make_session_factory(engine),
            process_manager=process_manager,
            content_store=ContentStore(settings.lfs_content_path),
            repo_manager=GitRepoManager(settings.repo_root, settings.python_executable),
            git_backend=HTTPGitBackend(process_manager, settings.git_timeout_default),
            hook_queue=UniqueQueue("hook", settings.webhook_queue_length),
            mirror_queue=UniqueQueue("mirror", settings.mirror_queue_length),
            pull_request_queue=UniqueQueue("pull_request", settings.pull_request_queue_length),
            event_bus=EventBus(),
        )

    async def close(self) -> None:
        await self.engine.dispose()
