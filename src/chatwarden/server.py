"""
Starlette-based web server for chatwarden.

This server provides:
- /sessions: create, list and destroy sessions
- /sessions/{storage_key}/jobs/{group_id}: stop a group's recurring job
- /ws: WebSocket for web clients (requests and session notifications)
- /health: liveness probe
"""

import os
import sys
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.routing import Route, WebSocketRoute

from chatwarden.commands.assets import AssetSender
from chatwarden.commands.dispatcher import CommandDispatcher
from chatwarden.config import CONFIG, PROJECT_DIR
from chatwarden.logger import get_logger, setup_logging
from chatwarden.notify import WebSocketHub
from chatwarden.protocol.base import load_socket_class
from chatwarden.routes.session_routes import (
    cancel_group_job,
    create_session,
    destroy_session,
    health,
    list_sessions,
    session_websocket_endpoint,
)
from chatwarden.session.controller import SessionController
from chatwarden.session.lifecycle import ReconnectPolicy
from chatwarden.session.registry import SessionRegistry
from chatwarden.storage import FileCredentialStore

load_dotenv(PROJECT_DIR / ".env")

if "--debug" in sys.argv:
    os.environ["LOG_LEVEL"] = "DEBUG"

log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE")
setup_logging(level=log_level, log_file=log_file)

logger = get_logger(__name__)

controller: SessionController = None


async def startup():
    """Wire the registry, store, dispatcher and controller."""
    global controller

    logger.info("Application startup - initializing services")

    try:
        CONFIG.reload()
    except Exception as e:
        logger.error(f"Failed to reload config: {e}")

    registry = SessionRegistry()
    store = FileCredentialStore(CONFIG.sessions_dir)
    hub = WebSocketHub()
    dispatcher = CommandDispatcher(
        registry,
        config=CONFIG,
        assets=AssetSender(CONFIG.asset_url, CONFIG.asset_timeout),
    )
    socket_class = load_socket_class(CONFIG.protocol_driver)
    controller = SessionController(
        registry,
        store,
        hub,
        socket_class,
        dispatcher=dispatcher,
        policy=ReconnectPolicy.from_config(CONFIG),
    )

    app.state.registry = registry
    app.state.hub = hub
    app.state.controller = controller
    logger.info(
        f"Session system initialized (driver={CONFIG.protocol_driver}, "
        f"sessions_dir={CONFIG.sessions_dir})"
    )


async def shutdown():
    """Release every connection and timer; stored credentials are kept."""
    logger.info("Application shutdown - cleaning up services")
    if controller:
        await controller.shutdown()


@asynccontextmanager
async def lifespan(app):
    await startup()
    try:
        yield
    finally:
        await shutdown()


app = Starlette(
    routes=[
        Route("/health", health, methods=["GET"]),
        Route("/sessions", list_sessions, methods=["GET"]),
        Route("/sessions", create_session, methods=["POST"]),
        Route("/sessions/{storage_key}", destroy_session, methods=["DELETE"]),
        Route(
            "/sessions/{storage_key}/jobs/{group_id}",
            cancel_group_job,
            methods=["DELETE"],
        ),
        WebSocketRoute("/ws", session_websocket_endpoint),
    ],
    middleware=[
        Middleware(
            CORSMiddleware,
            allow_origins=[CONFIG.allowed_origin],
            allow_methods=["*"],
            allow_headers=["*"],
        )
    ],
    lifespan=lifespan,
)


def run(host: str = None, port: int = None) -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=host or CONFIG.host,
        port=port or CONFIG.port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    run()
