from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api.routes import health, logs, runs
from workers.dispatcher import Dispatcher
from workers.indexing import DocumentIndexer, build_embedding_client
from workers.notifications import build_notification_sink
from workers.persistence import RunHistoryRepository, SourceRepository
from workers.scheduler import SyncScheduler


def _build_dispatcher() -> Dispatcher:
    return Dispatcher(
        indexer=DocumentIndexer(build_embedding_client()),
        history=RunHistoryRepository(),
        sources=SourceRepository(),
        notifier=build_notification_sink(),
    )


def create_app(dispatcher: Dispatcher | None = None) -> FastAPI:
    """Application factory for the ingestion engine API."""
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = dispatcher or _build_dispatcher()
        app.state.dispatcher = active

        scheduler_task: asyncio.Task[None] | None = None
        interval = float(os.getenv("SCHEDULER_INTERVAL_SECONDS", "30"))
        if interval > 0 and active.sources is not None:
            scheduler_task = asyncio.create_task(SyncScheduler(active, interval=interval).run_forever())
        else:
            logger.info("Sync scheduler disabled")

        try:
            yield
        finally:
            if scheduler_task is not None:
                scheduler_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await scheduler_task
            await active.shutdown()
            for resource in (active.indexer, active.notifier):
                close = getattr(resource, "aclose", None)
                if close is not None:
                    await close()

    app = FastAPI(title="Crawlhub Ingestion Engine", version="0.1.0", lifespan=lifespan)

    app.include_router(health.router)
    app.include_router(runs.router)
    app.include_router(logs.router)

    return app


app = create_app()
