# meshrooms/services/connection_manager.py

from __future__ import annotations

from collections import Counter
from typing import Dict, Iterable, Optional
import logging
import uuid

from fastapi import WebSocket

from meshrooms.models.models import RoomConfig
from meshrooms.services.room_directory import PublicRoomDirectory
from meshrooms.services.room_registry import Departure, RoomRegistry

logger = logging.getLogger(__name__)

# Delivered to one named member of the sender's room
UNICAST_EVENTS = frozenset({"offer", "answer", "ice-candidate"})

# Delivered to every other member of the sender's room
BROADCAST_EVENTS = frozenset(
    {"chat-message", "reaction", "caption", "whiteboard-draw", "whiteboard-clear"}
)

# ============================================================================
# WEBSOCKET CONNECTION MANAGER / SIGNALING RELAY
# ============================================================================

class ConnectionManager:
    """
    Manages WebSocket connections and relays signaling between room members.

    The relay is format-blind: offers, answers, ICE candidates and the
    ancillary broadcast events are forwarded as opaque dicts. Its only job is
    to resolve the sender's room from its identity and pick the recipients.

    Data Structures:
        connections: Maps transport session id -> WebSocket
                     Example: {"5f0c...": websocket1}

        registry: the RoomRegistry that owns membership. The relay never
                  keeps its own copy of who is in which room.

    Every forwarded envelope gets the sender's logical user id as
    "callerId", never the transport session id.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        """Initialize connection manager with empty data structures."""
        # Map: session_id -> WebSocket connection
        self.connections: Dict[str, WebSocket] = {}

        self.registry = registry
        self.directory = PublicRoomDirectory(registry)

        # Relay counters for /metrics
        self.message_counter: int = 0
        self.event_counts: Counter = Counter()

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        Returns:
            The transport session id assigned to this connection

        Note:
            The connection is anonymous until its first "join" binds a
            user id to the session.
        """
        await websocket.accept()

        session_id = uuid.uuid4().hex
        self.connections[session_id] = websocket

        logger.info("✓ Session %s connected. Total: %d", session_id, len(self.connections))
        return session_id

    async def disconnect(self, session_id: str) -> None:
        """
        Handle WebSocket disconnection and cleanup.

        Cleanup:
            1. Forget the socket
            2. Run the registry's leave routine for the session's user
            3. Notify remaining members + refresh the public directory

        Safe to call more than once, and after an explicit leave: the
        registry turns the second removal into a no-op.
        """
        if self.connections.pop(session_id, None) is None:
            return

        user_id = self.registry.user_for_session(session_id)
        departure = self.registry.disconnect(session_id)
        logger.info("✗ Session %s (%s) disconnected. Total: %d", session_id, user_id or "anonymous", len(self.connections))

        if departure:
            await self._announce_departure(departure)

    async def join_room(
        self,
        session_id: str,
        room_id: str,
        user_id: str,
        config: Optional[RoomConfig] = None,
    ) -> None:
        """
        Register the session's user in a room.

        Process:
            1. Bind user_id to this transport session
            2. Leave any other room the user is still registered in
            3. Add to the room (creating it from config if new)
            4. Send the joiner a membership snapshot: "room-joined", then one
               "user-connected" per member already inside
            5. Announce "user-connected" to the other members
            6. Push the public room directory to everyone
        """
        if session_id not in self.connections:
            return  # Connection already closed

        self.registry.bind_session(session_id, user_id)

        previous = self.registry.room_of(user_id)
        if previous and previous != room_id:
            departure = self.registry.leave(previous, user_id)
            if departure:
                await self._announce_departure(departure)

        arrival = self.registry.join(room_id, user_id, config)

        await self.send_to_session(
            session_id,
            {
                "type": "room-joined",
                "roomId": room_id,
                "room": arrival.room.info().model_dump(),
                "members": arrival.others,
            },
        )
        for other in arrival.others:
            await self.send_to_session(session_id, {"type": "user-connected", "userId": other})

        if not arrival.rejoined:
            await self.broadcast_to_room(
                room_id,
                {"type": "user-connected", "userId": user_id},
                exclude=user_id,
            )

        await self.broadcast_public_rooms()

    async def leave_room(self, session_id: str, room_id: str, user_id: Optional[str] = None) -> None:
        """
        Explicit leave. Converges with disconnect() on the registry's leave
        routine, so a leave racing the socket closing notifies only once.
        """
        user_id = user_id or self.registry.user_for_session(session_id)
        if not user_id:
            return

        departure = self.registry.leave(room_id, user_id)
        if departure:
            await self._announce_departure(departure)

    async def _announce_departure(self, departure: Departure) -> None:
        if departure.remaining:
            await self._send_many(
                departure.remaining,
                {"type": "user-disconnected", "userId": departure.user_id},
            )
        await self.broadcast_public_rooms()

    # ------------------------------------------------------------------
    # Relay
    # ------------------------------------------------------------------

    async def relay(self, session_id: str, event: str, payload: dict) -> None:
        """
        Forward a client event to the right member(s) of the sender's room.

        Args:
            session_id: Transport session the event arrived on
            event: One of UNICAST_EVENTS or BROADCAST_EVENTS
            payload: Client frame; forwarded as-is plus "type" and "callerId"

        Error Handling:
            A sender with no room, or a target that is not in the sender's
            room, is dropped silently (logged). The registry is the source of
            truth for membership, not the sender's belief.
        """
        sender = self.registry.user_for_session(session_id)
        room_id = self.registry.room_of(sender) if sender else None
        if not room_id:
            logger.info("[relay] Dropped %s from session %s: not in a room", event, session_id)
            return

        envelope = {k: v for k, v in payload.items() if k != "action"}
        envelope["type"] = event
        envelope["callerId"] = sender

        if event in UNICAST_EVENTS:
            target = payload.get("targetUserId")
            if target == sender or target not in self.registry.members(room_id):
                logger.info("[relay] Dropped %s from %s: %s is not in room %s", event, sender, target, room_id)
                return
            await self.send_to_user(target, envelope)
        else:
            await self.broadcast_to_room(room_id, envelope, exclude=sender)

        self.message_counter += 1
        self.event_counts[event] += 1

    # ------------------------------------------------------------------
    # Public room directory
    # ------------------------------------------------------------------

    async def send_public_rooms(self, session_id: str) -> None:
        await self.send_to_session(session_id, {"type": "rooms-update", "rooms": self.directory.snapshot()})

    async def broadcast_public_rooms(self) -> None:
        """Push the directory to every connected client, joined or not."""
        message = {"type": "rooms-update", "rooms": self.directory.snapshot()}
        logger.debug("Broadcasting %d public rooms to %d clients", len(message["rooms"]), len(self.connections))
        await self._send_sessions(list(self.connections.keys()), message)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def send_to_session(self, session_id: str, message: dict) -> bool:
        websocket = self.connections.get(session_id)
        if websocket is None:
            return False
        try:
            await websocket.send_json(message)
            return True
        except Exception as e:
            logger.error("Send error on session %s: %s", session_id, e)
            await self.disconnect(session_id)
            return False

    async def send_to_user(self, user_id: str, message: dict) -> bool:
        session_id = self.registry.session_for_user(user_id)
        if session_id is None:
            logger.info("[routing] Skipped %s: %s has no live session", message.get("type"), user_id)
            return False
        return await self.send_to_session(session_id, message)

    async def broadcast_to_room(self, room_id: str, message: dict, exclude: Optional[str] = None) -> None:
        """
        Send a message to every member of a room except `exclude`.

        Error Handling:
            If a send fails, that connection is cleaned up like a disconnect;
            the other members still receive the message.
        """
        members = self.registry.members(room_id)
        if not members:
            logger.info("[routing] Skipped broadcast: room=%s has 0 members", room_id)
            return
        members.discard(exclude)
        await self._send_many(sorted(members), message)

    async def _send_many(self, user_ids: Iterable[str], message: dict) -> None:
        sessions = [self.registry.session_for_user(u) for u in user_ids]
        await self._send_sessions([s for s in sessions if s], message)

    async def _send_sessions(self, session_ids: Iterable[str], message: dict) -> None:
        disconnected = []
        for session_id in session_ids:
            websocket = self.connections.get(session_id)
            if websocket is None:
                continue
            try:
                await websocket.send_json(message)
            except Exception as e:
                logger.error(f"Send error: {e}")
                # Mark for cleanup
                disconnected.append(session_id)

        # Clean up failed connections
        for session_id in disconnected:
            await self.disconnect(session_id)

    def get_rooms_info(self) -> Dict[str, dict]:
        """
        Get information about all active rooms, public or not.

        Used by the /metrics endpoint and for debugging.
        """
        return {
            room.id: {"name": room.name, "member_count": len(room.members), "is_public": room.is_public}
            for room in self.registry.list_rooms()
        }
