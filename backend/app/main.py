"""Linkup Backend Application.

This is the main entry point for the Linkup messaging service: the real-time
chat layer of a professional social network.

Modules:
    - chat: WebSocket messaging, rooms, presence, conversation REST routes
    - auth: Bearer-token authentication (PyJWT)
    - users: User identity lookups
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.auth.router import router as auth_router
from app.chat.manager import manager
from app.chat.presence import presence
from app.chat.router import router as chat_router
from app.config import get_config
from app.database import Database

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in linkup.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    db = Database.get_instance(config.database.path)
    logger.info(
        f"Server ready on http://{config.server.host}:{config.server.port} "
        f"(database={db.path})"
    )

    yield  # Application runs here

    # Shutdown: presence and rooms are process-local and die with it
    presence.clear()
    manager.clear()
    Database.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Linkup API",
    description="Real-time messaging backend for the Linkup social network",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)

# Register all routers
app.include_router(chat_router)
app.include_router(auth_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of users currently online.
    """
    return {"status": "ok", "online": len(presence)}
