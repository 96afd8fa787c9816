"""Real-time communication core application.

This is the main entry point of the marketplace real-time service: one
persistent WebSocket endpoint multiplexing buyer/seller chat, support chat
and notifications, plus the HTTP fallback used by clients that are offline
and by history fetches.

Modules:
    - rooms: in-memory room registry (broadcast groups)
    - sessions: WebSocket endpoint, handshake, intents, heartbeat sweeper
    - ingestion: validate, persist and fan out chat writes
    - ledger: unread counters, read receipts, notifications
    - store: DuckDB-backed message store
    - threads / notifications: HTTP fallback endpoints
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .auth import TokenVerifier
from .config import AppSettings, get_config
from .errors import RealtimeError
from .ingestion.pipeline import IngestionPipeline
from .ledger.service import UnreadLedger
from .notifications.router import router as notifications_router
from .rooms.registry import RoomRegistry
from .sessions.router import heartbeat_loop, router as ws_router
from .store.base import MessageStore
from .store.duckdb_store import DuckDBMessageStore
from .threads.router import router as threads_router

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "websockets",
    "httpx",
    "httpcore",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def _apply_log_level(settings: AppSettings) -> None:
    # `logging.level: "debug"` in realtime.settings.yaml activates DEBUG output
    configured_level = getattr(logging, settings.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", settings.logging.level.upper())


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    settings: AppSettings = app.state.settings
    _apply_log_level(settings)

    sweeper = asyncio.create_task(
        heartbeat_loop(
            app.state.registry,
            settings.realtime.heartbeat_timeout_seconds,
            settings.realtime.heartbeat_sweep_seconds,
        )
    )
    logger.info(
        "Real-time core ready on %s:%s (store=%s)",
        settings.server.host, settings.server.port, settings.store.db_path,
    )

    yield  # Application runs here

    # Shutdown
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    app.state.store.close()
    logger.info("Application shutdown complete")


async def realtime_error_handler(request: Request, exc: RealtimeError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(
    settings: Optional[AppSettings] = None,
    store: Optional[MessageStore] = None,
) -> FastAPI:
    """Build the application and its services.

    Args:
        settings: Settings to use; defaults to the cached YAML settings.
        store: Message store to use; defaults to a DuckDB store at
            ``settings.store.db_path``.
    """
    settings = settings or get_config()
    store = store or DuckDBMessageStore(settings.store.db_path)

    registry = RoomRegistry(delivery_timeout=settings.realtime.delivery_timeout_seconds)
    ledger = UnreadLedger(store, registry)
    pipeline = IngestionPipeline(store, registry, ledger)

    app = FastAPI(
        title="Marketplace Real-Time API",
        description="Chat, support and notification delivery over a shared persistent connection",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.ledger = ledger
    app.state.pipeline = pipeline
    app.state.verifier = TokenVerifier.from_secrets(settings.secrets.jwt)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(RealtimeError, realtime_error_handler)

    # Register all routers
    app.include_router(ws_router)
    app.include_router(threads_router)
    app.include_router(notifications_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    @app.get("/realtime/stats")
    async def realtime_stats() -> dict:
        """Room registry counters (rooms, live sessions, memberships)."""
        return registry.stats()

    return app


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)
