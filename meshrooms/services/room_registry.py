# meshrooms/services/room_registry.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set
import logging

from pydantic import BaseModel, Field

from meshrooms.models.models import RoomConfig, RoomInfo

logger = logging.getLogger(__name__)


class Room(BaseModel):
    id: str
    name: str
    is_public: bool = False
    members: Set[str] = Field(default_factory=set)

    def info(self) -> RoomInfo:
        return RoomInfo(roomId=self.id, name=self.name, count=len(self.members), isPublic=self.is_public)


@dataclass
class Arrival:
    room: Room
    user_id: str
    created: bool
    rejoined: bool
    others: List[str] = field(default_factory=list)


@dataclass
class Departure:
    room_id: str
    user_id: str
    room_deleted: bool
    remaining: List[str] = field(default_factory=list)


# ============================================================================
# IN-MEMORY ROOM REGISTRY
# ============================================================================

class RoomRegistry:
    """
    Authoritative, in-memory mapping of rooms to their members.

    The registry is empty at process start and is only ever mutated through
    join / leave / disconnect. Nothing is persisted: a room exists exactly as
    long as its member set is non-empty, and a later join with the same code
    creates a brand new room.

    Data Structures:
        rooms: Maps room_id -> Room (metadata + member set)
               Example: {"x8k29a": Room(name="Standup", members={"a1b2c3"})}

        user_rooms: Maps user_id -> room_id the user currently belongs to

        session_users / user_sessions: transport session bookkeeping. A
            session id changes whenever a client reconnects and is never
            exposed as the peer's identity.

    Every method is synchronous, so on a single event loop each mutation is
    atomic with respect to other inbound events.
    """

    def __init__(self) -> None:
        self.rooms: Dict[str, Room] = {}
        self.user_rooms: Dict[str, str] = {}
        self.session_users: Dict[str, str] = {}
        self.user_sessions: Dict[str, str] = {}

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def bind_session(self, session_id: str, user_id: str) -> None:
        """Attach a user id to the transport session it is currently using."""
        previous = self.user_sessions.get(user_id)
        if previous and previous != session_id:
            self.session_users.pop(previous, None)
        self.session_users[session_id] = user_id
        self.user_sessions[user_id] = session_id

    def user_for_session(self, session_id: str) -> Optional[str]:
        return self.session_users.get(session_id)

    def session_for_user(self, user_id: str) -> Optional[str]:
        return self.user_sessions.get(user_id)

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def join(self, room_id: str, user_id: str, config: Optional[RoomConfig] = None) -> Arrival:
        """
        Register user_id as a member of room_id.

        Args:
            room_id: Opaque room code
            user_id: Client generated user id
            config: Visibility and display name for a NEW room

        Returns:
            Arrival describing the room and the other members at join time

        Note:
            Metadata is first-writer-wins. config is only used when the room
            is created; joins to an existing room ignore it and there is no
            update path. Callers must not "fix" this by merging configs.
        """
        room = self.rooms.get(room_id)
        created = room is None
        if room is None:
            config = config or RoomConfig()
            room = Room(
                id=room_id,
                name=config.name or f"Room {room_id}",
                is_public=config.isPublic,
            )
            self.rooms[room_id] = room
            logger.info("✓ Created room %s (%s)", room_id, "public" if room.is_public else "private")

        rejoined = user_id in room.members
        others = sorted(m for m in room.members if m != user_id)
        room.members.add(user_id)
        self.user_rooms[user_id] = room_id

        logger.info("→ %s joined '%s' (%d members)", user_id, room.name, len(room.members))
        return Arrival(room=room, user_id=user_id, created=created, rejoined=rejoined, others=others)

    def leave(self, room_id: str, user_id: str) -> Optional[Departure]:
        """
        Remove user_id from room_id.

        Returns:
            Departure if the user was a member, None otherwise. Leaving a room
            the user is not in (duplicate leave, leave racing a disconnect)
            is a no-op.
        """
        room = self.rooms.get(room_id)
        if room is None or user_id not in room.members:
            logger.debug("Ignoring leave: %s is not in room %s", user_id, room_id)
            return None

        room.members.discard(user_id)
        if self.user_rooms.get(user_id) == room_id:
            del self.user_rooms[user_id]

        # Room and metadata go away together
        room_deleted = not room.members
        if room_deleted:
            del self.rooms[room_id]
            logger.info("✗ Room %s deleted (empty)", room_id)

        logger.info("← %s left %s (%d remaining)", user_id, room_id, len(room.members))
        return Departure(
            room_id=room_id,
            user_id=user_id,
            room_deleted=room_deleted,
            remaining=sorted(room.members),
        )

    def disconnect(self, session_id: str) -> Optional[Departure]:
        """
        Forget a transport session and run the same cleanup as leave().

        A stale session (its user already re-bound to a newer session) only
        drops the session record; the user stays in the room.
        """
        user_id = self.session_users.pop(session_id, None)
        if user_id is None:
            return None
        if self.user_sessions.get(user_id) != session_id:
            return None
        del self.user_sessions[user_id]

        room_id = self.user_rooms.get(user_id)
        if room_id is None:
            return None
        return self.leave(room_id, user_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def room_of(self, user_id: str) -> Optional[str]:
        return self.user_rooms.get(user_id)

    def get_room(self, room_id: str) -> Optional[Room]:
        return self.rooms.get(room_id)

    def members(self, room_id: str) -> Set[str]:
        room = self.rooms.get(room_id)
        return set(room.members) if room else set()

    def list_rooms(self) -> List[Room]:
        return list(self.rooms.values())
