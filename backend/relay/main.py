"""Chat Relay Application.

This is the main entry point for the chat relay service: a real-time,
multi-room chat server. Clients connect over a WebSocket, join named
rooms, exchange text/file messages, and see presence, typing indicators
and read receipts.

Modules:
    - chat: rooms, presence, message store, broadcasting and the
      WebSocket protocol
    - config: YAML settings + environment overrides
"""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from relay.chat.manager import get_manager
from relay.chat.router import router as chat_router
from relay.config import get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
# uvicorn.access logs every HTTP request and websockets logs every frame.
for _noisy in (
    "uvicorn.access",
    "websockets",
    "websockets.protocol",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def _typing_sweeper(interval: float) -> None:
    """Periodically expire typing entries older than the configured timeout."""
    manager = get_manager()
    while True:
        await asyncio.sleep(interval)
        rooms = await manager.expire_typing()
        if rooms:
            logger.debug("Expired stale typing entries in %s", ", ".join(rooms))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in relay.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if isinstance(configured_level, int):
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    manager = get_manager()
    logger.info(
        f"Chat relay listening on http://{config.server.host}:{config.server.port} "
        f"(rooms: {', '.join(manager.rooms.presets)})"
    )

    sweeper = None
    timeout = config.chat.typing_timeout_seconds
    if timeout > 0:
        sweeper = asyncio.create_task(_typing_sweeper(max(timeout / 2, 0.5)))
        logger.info("Typing indicators expire after %.1fs", timeout)

    yield  # Application runs here

    # Shutdown
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Build the FastAPI application with CORS and all routers."""
    config = get_config()
    application = FastAPI(
        title="Chat Relay API",
        description="Real-time multi-room chat relay",
        version="0.1.0",
        lifespan=lifespan,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    application.include_router(chat_router)

    @application.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return application


app = create_app()


def run() -> None:
    """Run the server with uvicorn using the configured host and port."""
    import uvicorn

    config = get_config()
    uvicorn.run(
        "relay.main:app",
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    )


if __name__ == "__main__":
    run()
