"""Mingle Backend Application.

This is the main entry point for the Mingle chat service: the real-time
messaging core behind one-to-one and group chats between matched
participants.

Modules:
    - chat: Rooms, durable message history and WebSocket fan-out
    - auth: Session token resolution
    - client: Python session adapter for the chat WebSocket
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mingle import __version__
from mingle.chat.broker import Broker
from mingle.chat.errors import ChatError
from mingle.chat.rooms_router import router as rooms_router
from mingle.chat.router import router as chat_router
from mingle.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# uvicorn/httpx log every request and connection; not useful for chat debugging
for _noisy in ("httpx", "httpcore", "websockets", "uvicorn.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(
        {"error": exc.code, "detail": exc.reason},
        status_code=exc.status_code,
    )


def create_app(config: Optional[AppConfig] = None, broker: Optional[Broker] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings to use. Defaults to ``get_config()``.
        broker: Pre-built broker (tests pass one backed by in-memory
            databases). When None, one is built from *config* at startup and
            shut down with the application.
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Apply configured log level to root logger so that
        # `logging.level: "debug"` in mingle.settings.yaml activates DEBUG output.
        configured_level = getattr(logging, config.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", config.logging.level.upper())

        owned = broker is None
        app.state.broker = broker if broker is not None else Broker.from_config(config)
        logger.info(
            f"Chat broker ready. Server running on "
            f"http://{config.server.host}:{config.server.port}"
        )

        yield  # Application runs here

        # Shutdown
        if owned:
            await app.state.broker.shutdown()
        else:
            await app.state.broker.manager.close_all()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Mingle Chat API",
        description="Real-time chat and presence for matched participants",
        version=__version__,
        lifespan=lifespan,
    )
    if broker is not None:
        app.state.broker = broker

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.server.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(ChatError, chat_error_handler)

    app.include_router(chat_router)
    app.include_router(rooms_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    config = get_config()
    uvicorn.run(create_app(config), host=config.server.host, port=config.server.port)


app = create_app()
