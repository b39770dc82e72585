"""
Application context.

Built once at startup and passed into every component that needs settings or
an external client; nothing in the package keeps these at module level.
"""

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from scrapi.core.config import Settings
from scrapi.core.models import utcnow
from scrapi.db.database import close_db, create_engine, create_session_maker, init_db
from scrapi.jobs.lifecycle import JobLifecycleManager
from scrapi.jobs.store import JobRecordStore, JsonFileJobStore
from scrapi.services.provider import ProviderClient
from scrapi.services.rendering import HtmlRenderer, LandingPageRenderer, PngRenderer, StorageUploader
from scrapi.services.staging import SqlStagingRepository, StagingDeduplicator

logger = structlog.get_logger()


@dataclass
class AppContext:
    settings: Settings
    store: JobRecordStore
    lifecycle: JobLifecycleManager
    provider: ProviderClient | None = None
    staging: StagingDeduplicator | None = None
    html_renderer: HtmlRenderer | None = None
    png_renderer: PngRenderer | None = None
    storage: StorageUploader | None = None
    engine: AsyncEngine | None = None
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    clock: Callable[[], datetime] = field(default=utcnow)


@asynccontextmanager
async def create_context(
    settings: Settings,
    *,
    with_provider: bool = True,
    with_database: bool = True,
    png_renderer: PngRenderer | None = None,
    storage: StorageUploader | None = None,
) -> AsyncIterator[AppContext]:
    """
    Build the context and release its clients on exit.

    The provider client needs credentials; the staging datastore is optional
    so the lifecycle commands work without a database.
    """
    store = JsonFileJobStore(settings.queue_dir)
    ctx = AppContext(
        settings=settings,
        store=store,
        lifecycle=JobLifecycleManager(store),
        html_renderer=LandingPageRenderer(settings.renderings_dir),
        png_renderer=png_renderer,
        storage=storage,
    )

    try:
        if with_provider:
            ctx.provider = ProviderClient(
                settings.oxylabs_base_url,
                settings.oxylabs_username,
                settings.oxylabs_password,
                timeout=settings.oxylabs_request_timeout,
            )

        if with_database:
            ctx.engine = create_engine(settings)
            await init_db(ctx.engine)
            ctx.staging = StagingDeduplicator(SqlStagingRepository(create_session_maker(ctx.engine)))

        logger.debug(
            "Application context ready",
            provider=ctx.provider is not None,
            database=ctx.engine is not None,
            queue_dir=str(settings.queue_dir),
        )
        yield ctx
    finally:
        if ctx.provider is not None:
            await ctx.provider.close()
        if ctx.engine is not None:
            await close_db(ctx.engine)
