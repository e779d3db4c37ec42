"""
MealMatch - FastAPI Application
Main entry point for the match service.

Run with:
    uvicorn mealmatch.app:app --reload --host 0.0.0.0 --port 8001
"""

import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mealmatch import __version__, config
from mealmatch.api.routes import get_service, register_routes
from mealmatch.core.logging import configure_logging
from mealmatch.database import init_db

configure_logging()
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan (startup / shutdown)
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup; let in-flight publish/notify tasks finish on shutdown."""
    logger.info("Initialising database...")
    init_db(get_service().session_factory.kw.get("bind"))
    logger.info("Database ready.")

    yield  # Application is running

    pending = get_service().pending_side_effects
    if pending:
        logger.info("Waiting for %d outstanding side effects...", pending)
    await get_service().drain()


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="MealMatch",
    version=__version__,
    description="Pairwise preference matching with realtime match events",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    tb = traceback.format_exc()
    logger.error(
        "Unhandled exception on %s %s: %s\n%s",
        request.method, request.url.path, exc, tb,
    )
    return JSONResponse(
        status_code=500,
        content={
            "detail": "internal server error",
            "type": type(exc).__name__,
            "path": request.url.path,
        },
    )


register_routes(app)


# ---------------------------------------------------------------------------
# WebSocket for realtime match events
# ---------------------------------------------------------------------------

@app.websocket("/ws/groups/{group_id}/matches")
async def websocket_matches(websocket: WebSocket, group_id: str):
    """Stream newly created matches for one group."""
    channel = get_service().channel
    subscriber = await channel.connect(websocket, group_id)
    if not subscriber.is_active:
        return
    try:
        while True:
            await websocket.receive_text()
            await websocket.send_text('{"type":"ack"}')
    except WebSocketDisconnect:
        await channel.disconnect(subscriber)
    except Exception:
        await channel.disconnect(subscriber)


# ---------------------------------------------------------------------------
# Development entry-point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "mealmatch.app:app",
        host="0.0.0.0",
        port=config.PORT,
        reload=True,
        reload_dirs=[config.BASE_DIR],
    )
