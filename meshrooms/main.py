# meshrooms/main.py

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from meshrooms.core import state
from meshrooms.core.config import settings
from meshrooms.core.logging import setup_logging, get_logger
from meshrooms.api.routes import root, health, metrics, rooms
from meshrooms.api import websocket as websocket_module

# Configure logging first
setup_logging()
logger = get_logger(__name__)

# FastAPI app
app = FastAPI(title="meshrooms - Mesh Conferencing Signaling")

# CORS (browser clients are served from another origin)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

# REST routes
app.include_router(root.router)
app.include_router(health.router)
app.include_router(metrics.router)
app.include_router(rooms.router)

# WebSocket routes
app.include_router(websocket_module.router)


@app.on_event("startup")
async def startup_event():
    logger.info("🚀 Signaling relay starting on %s:%s", settings.HOST, settings.PORT)


@app.on_event("shutdown")
async def on_shutdown():
    # Nothing is persisted; rooms die with the process
    logger.info(
        "Signaling relay stopping with %d connections, %d rooms",
        len(state.connection_manager.connections),
        len(state.room_registry.rooms),
    )


def run() -> None:
    import uvicorn
    uvicorn.run("meshrooms.main:app", host=settings.HOST, port=settings.PORT)


if __name__ == "__main__":
    run()
