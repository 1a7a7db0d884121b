# meshrooms/api/routes/rooms.py

from typing import List

from fastapi import APIRouter, HTTPException

from meshrooms.models.models import RoomInfo
from meshrooms.core import state

router = APIRouter()

# ============================================================================
# PUBLIC ROOM DIRECTORY ENDPOINTS
# ============================================================================

@router.get("/rooms", response_model=List[RoomInfo])
async def list_rooms():
    """
    List active public rooms.

    Rooms only exist while someone is in them, so every entry has a live
    member count of at least one. Private rooms never appear.

    Returns:
        List[RoomInfo]: roomId, name, count, isPublic
    """
    return state.connection_manager.directory.list_rooms()


@router.get("/rooms/{room_id}", response_model=RoomInfo)
async def get_room(room_id: str):
    """
    Get the directory entry of a public room.

    Raises:
        HTTPException: 404 if the room does not exist or is private
    """
    info = state.connection_manager.directory.get_room(room_id)
    if not info:
        raise HTTPException(status_code=404, detail="Room not found")
    return info
