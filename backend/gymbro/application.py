from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gymbro.api.router import api_router
from gymbro.change_bus import LocalChangeBus, create_change_bus
from gymbro.config import settings
from gymbro.database import PostgresDocumentStore
from gymbro.documents import DocumentStore
from gymbro.documents_memory import MemoryDocumentStore
from gymbro.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)


async def _open_store(bus: LocalChangeBus) -> DocumentStore:
    if settings.document_backend == "postgres":
        return await PostgresDocumentStore.connect(settings.database_url, bus)
    if settings.document_backend != "memory":
        logger.warning("Unknown DOCUMENT_BACKEND %r, using memory store", settings.document_backend)
    return MemoryDocumentStore()


def create_app(
    store: DocumentStore | None = None,
    bus: LocalChangeBus | None = None,
    retry_policy: RetryPolicy | None = None,
) -> FastAPI:
    app = FastAPI(title="Gymbro Room Backend", version="1.0.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router)

    app.state.store = store
    app.state.bus = bus
    app.state.retry_policy = retry_policy or RetryPolicy()
    app.state.document_backend = "memory" if isinstance(store, MemoryDocumentStore) else settings.document_backend
    app.state.sync_registry = set()
    app.state.ws_stats = {
        "connectAttempts": 0,
        "connectRejected": 0,
        "activeConnections": 0,
        "peakConnections": 0,
        "messagesReceived": 0,
    }

    @app.on_event("startup")
    async def on_startup() -> None:
        if app.state.bus is None:
            app.state.bus = await create_change_bus(settings.redis_url)
        if app.state.store is None:
            app.state.store = await _open_store(app.state.bus)
            app.state.document_backend = (
                "postgres" if isinstance(app.state.store, PostgresDocumentStore) else "memory"
            )
        logger.info(
            "Room backend ready: documents=%s changeBus=%s",
            app.state.document_backend,
            app.state.bus.kind,
        )

    @app.on_event("shutdown")
    async def on_shutdown() -> None:
        for sync in list(app.state.sync_registry):
            sync.cleanup()
        app.state.sync_registry.clear()
        if app.state.store is not None:
            await app.state.store.close()
        if app.state.bus is not None:
            await app.state.bus.close()

    return app
