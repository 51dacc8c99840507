"""
ZipLink relay: FastAPI application entry point.

Starts the Session Registry sweeper on startup and serves the
signaling WebSocket plus the health endpoints.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager, SignalingHandler
from config import (
    ALLOWED_ORIGINS,
    API_HOST,
    API_PORT,
    APP_NAME,
    APP_VERSION,
    LOG_FORMAT,
    LOG_LEVEL,
)
from session.registry import SessionRegistry

# --- Logging ---
logging.basicConfig(level=LOG_LEVEL, format=LOG_FORMAT)
logger = logging.getLogger(__name__)

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
}


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    """Build the relay application around a session registry."""
    registry = registry if registry is not None else SessionRegistry()
    ws_manager = ConnectionManager()
    registry.set_notifier(ws_manager.send)
    signaling = SignalingHandler(registry, ws_manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info(f"Starting {APP_NAME} relay...")
        registry.start()
        logger.info(f"{APP_NAME} relay ready on {API_HOST}:{API_PORT}")
        try:
            yield
        finally:
            logger.info(f"Shutting down {APP_NAME} relay...")
            await registry.stop()

    app = FastAPI(title=APP_NAME, version=APP_VERSION, lifespan=lifespan)
    app.state.registry = registry
    app.state.connections = ws_manager

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.update(SECURITY_HEADERS)
        return response

    init_routes(registry)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        connection_id = await ws_manager.connect(websocket)
        try:
            while True:
                text = await websocket.receive_text()
                await signaling.handle_text(connection_id, text)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Signaling error on {connection_id}: {e}", exc_info=True)
        finally:
            await signaling.handle_disconnect(connection_id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower(),
    )
