# meshrooms/services/room_directory.py

from __future__ import annotations

from typing import List, Optional

from meshrooms.models.models import RoomInfo
from meshrooms.services.room_registry import RoomRegistry


class PublicRoomDirectory:
    """
    Read-only view over the registry listing public, non-empty rooms.

    Entries expose the room code, name, live member count and public flag,
    never who is inside.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        self.registry = registry

    def list_rooms(self) -> List[RoomInfo]:
        return [
            room.info()
            for room in self.registry.list_rooms()
            if room.is_public and room.members
        ]

    def get_room(self, room_id: str) -> Optional[RoomInfo]:
        room = self.registry.get_room(room_id)
        if room is None or not room.is_public or not room.members:
            return None
        return room.info()

    def snapshot(self) -> List[dict]:
        return [info.model_dump() for info in self.list_rooms()]
