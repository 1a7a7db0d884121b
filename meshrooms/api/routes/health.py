# meshrooms/api/routes/health.py

from fastapi import APIRouter

from meshrooms.core import state

router = APIRouter()

@router.get("/health")
async def health():
    """
    Health check endpoint.

    Returns current system status, connection counts, and room counts.

    Returns:
        dict: Status, connection count, room count, public room count
    """
    return {
        "status": "healthy",
        "connections": len(state.connection_manager.connections),
        "rooms": len(state.room_registry.rooms),
        "public_rooms": len(state.connection_manager.directory.list_rooms()),
    }
