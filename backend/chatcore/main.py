"""Marketplace messaging service.

This is the main entry point for the real-time messaging core of the
marketplace: one-to-one conversations between customers, providers and
admins, with presence, read receipts and file attachments.

Modules:
    - chat: WebSocket channel, dispatcher, read receipts, /messages REST routes
    - presence: Process-wide registry of online users
    - storage: DuckDB message store
    - files: Attachment upload and download
    - auth: Bearer token verification
    - client: Python client (optimistic thread, conversation projection)
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chatcore.auth.service import get_verifier
from chatcore.chat.manager import manager
from chatcore.chat.messages_router import router as messages_router
from chatcore.chat.router import router as chat_router
from chatcore.config import get_config
from chatcore.files.router import router as files_router
from chatcore.files.service import FileStorageService
from chatcore.storage.service import MessageStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# httpx/httpcore log every connection; websockets logs every frame at DEBUG;
# uvicorn.access logs every upload and history fetch.
for _noisy in (
    "httpx",
    "httpcore",
    "websockets",
    "uvicorn.access",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in marketchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    # Logs an error when the JWT secret is missing
    get_verifier()
    MessageStore.get_instance(config.storage.db_path)
    FileStorageService.get_instance(config.uploads.upload_dir, config.uploads.db_path)
    logger.info(
        f"Messaging ready on http://{config.server.host}:{config.server.port} "
        f"(presence scope={config.presence.broadcast_scope})"
    )

    yield  # Application runs here

    # Shutdown
    manager.registry.clear()
    MessageStore.reset_instance()
    FileStorageService.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Marketplace Messaging API",
    description="Real-time messaging core: presence, delivery, read receipts, attachments",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(messages_router)
app.include_router(files_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of open connections.
    """
    return {"status": "ok", "connections": manager.get_connection_count()}
