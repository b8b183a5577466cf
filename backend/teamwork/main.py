"""Teamwork Realtime Backend Application.

This is the main entry point for the team dashboard's real-time core:
presence, room chat with unread counters, and the number sorter (work queue,
distribution and claims), served over a WebSocket push channel with a
polling fallback.

Modules:
    - presence: last-seen heartbeats and the online set
    - chat: room messaging channel and unread counters
    - sorter: work queue, distribution engine and claim protocol
    - transport: connection hub, WebSocket endpoint and poll emulation
    - directory: read-only user directory and session resolver
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from teamwork import __version__
from teamwork.chat.router import router as chat_router
from teamwork.config import get_config
from teamwork.errors import TeamworkError
from teamwork.presence.router import router as presence_router
from teamwork.sorter.router import router as sorter_router
from teamwork.store import Store
from teamwork.transport.hub import hub
from teamwork.transport.router import router as transport_router, run_poll_reaper

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every connection, websockets logs every frame at DEBUG.
for _noisy in (
    "httpx",
    "httpcore",
    "httpcore.http11",
    "httpcore.connection",
    "websockets",
    "websockets.client",
    "websockets.server",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in teamwork.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    Store.get_instance(config.storage.db_path)
    logger.info(
        f"Server running on http://{config.server.host}:{config.server.port} "
        f"(eligible sorter roles: {config.sorter.eligible_roles})"
    )

    reaper = asyncio.create_task(run_poll_reaper())

    yield  # Application runs here

    # Shutdown
    reaper.cancel()
    try:
        await reaper
    except asyncio.CancelledError:
        pass
    hub.clear()
    Store.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Teamwork Realtime API",
    description="Presence, chat and work distribution for the team dashboard",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(TeamworkError)
async def teamwork_error_handler(request: Request, exc: TeamworkError) -> JSONResponse:
    """Render domain errors as {"error": message, "code": code}."""
    logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(exc.to_payload(), status_code=exc.http_status)


# Register all routers
app.include_router(transport_router)
app.include_router(presence_router)
app.include_router(chat_router)
app.include_router(sorter_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok", "connections": len(hub.connections)}
