# meshrooms/api/routes/root.py

from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    """
    Root endpoint - API information.

    Returns basic info about the signaling service and its endpoints.
    """
    return {
        "message": "meshrooms signaling relay",
        "version": "1.0",
        "architecture": "full mesh, server relays signaling only",
        "features": ["rooms", "public_directory", "signaling_relay", "broadcast_events"],
        "endpoints": {
            "websocket": "/ws",
            "rooms": "/rooms",
            "health": "/health",
            "metrics": "/metrics",
        },
    }
