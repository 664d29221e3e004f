# callstream/main.py
from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Import router objects explicitly to avoid module name collisions
from callstream.routers.health import router as health_router
from callstream.routers.webhooks import router as webhooks_router
from callstream.routers.events import router as events_router
from callstream.routers.ws import router as ws_router
from callstream.config import get_settings
from callstream.db.session import get_sessionmaker, init_db
from callstream.observability.logging import configure_logging
from callstream.observability.middleware import register_request_middleware, unhandled_exception_handler
from callstream.observability.metrics import router as observability_router
from callstream.scheduler.setup import init_scheduler, shutdown_scheduler
from callstream.schemas.common import API_VERSION
from callstream.services.broadcast import BroadcastManager
from callstream.services.directory import SqlTenantResolver, SqlUserDirectory
from callstream.services.processor import EventProcessor
from callstream.services.registry import build_default_registry

configure_logging()
logger = structlog.get_logger(__name__)


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="Callstream", version=API_VERSION)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=86400
    )

    register_request_middleware(app)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.on_event("startup")
    async def _startup() -> None:
        # Postgres schemas come from migrations; this only fills gaps on fresh dev databases.
        try:
            init_db()
        except Exception:  # noqa: BLE001
            logger.exception("startup.create_tables_failed")

        session_factory = get_sessionmaker()
        broadcaster = BroadcastManager(
            SqlUserDirectory(session_factory),
            send_timeout=settings.BROADCAST_SEND_TIMEOUT_SECONDS,
        )
        broadcaster.bind_loop(asyncio.get_running_loop())
        app.state.broadcaster = broadcaster
        app.state.tenant_resolver = SqlTenantResolver(session_factory)
        app.state.processor = EventProcessor.from_settings(
            settings, session_factory, build_default_registry(), broadcaster
        )
        await init_scheduler(app)

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_scheduler(app)
        broadcaster = getattr(app.state, "broadcaster", None)
        if broadcaster is not None:
            await broadcaster.close_all()

    app.include_router(health_router)
    app.include_router(observability_router)
    app.include_router(webhooks_router)
    app.include_router(events_router)
    app.include_router(ws_router)

    return app


app = create_app()
