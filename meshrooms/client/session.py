# meshrooms/client/session.py

from __future__ import annotations

import asyncio
import logging
import re
import secrets
import string
import time
import uuid
from typing import Callable, List, Optional, Set

from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from meshrooms.client.media import LocalMediaController
from meshrooms.client.peer_manager import PeerConnectionManager, default_pc_factory
from meshrooms.client.signaling import SignalingClient
from meshrooms.client.stats import StatsCollector
from meshrooms.core.config import settings
from meshrooms.models.models import Caption, ChatMessage, DrawLine, Reaction, RoomConfig, RoomInfo

logger = logging.getLogger(__name__)

ID_ALPHABET = string.ascii_lowercase + string.digits

# Manager events re-emitted by the session
PEER_EVENTS = ("peer-state", "remote-media", "remote-media-removed", "stats")


def generate_id(length: int = 6) -> str:
    """Short base-36 code, used for both user ids and new room codes."""
    return "".join(secrets.choice(ID_ALPHABET) for _ in range(length))


def sanitize_room_code(raw: str) -> str:
    return re.sub(r"[^a-z0-9]", "", raw.lower())


def _now_ms() -> int:
    return int(time.time() * 1000)


# ============================================================================
# MESH SESSION
# ============================================================================

class MeshSession(AsyncIOEventEmitter):
    """
    Client-side entry point: one participant, at most one room at a time.

    Usage:
        session = MeshSession(user_name="alice")
        await session.start()
        await session.join("x8k29a", RoomConfig(isPublic=True, name="Standup"))

        @session.on("remote-media")
        def show(user_id, tracks, is_screen_share): ...

        await session.toggle_screen_share()
        await session.send_chat("hello")
        await session.leave()

    Events:
        connection-status (bool)         signaling link up / down
        rooms-update (List[RoomInfo])    public room directory
        room-joined (RoomInfo)
        peer-state, remote-media, remote-media-removed, stats
                                         forwarded from the PeerConnectionManager
        chat-message (ChatMessage), reaction (Reaction), caption (Caption),
        whiteboard-draw (DrawLine), whiteboard-clear ()
    """

    def __init__(
        self,
        user_name: str,
        signaling: Optional[SignalingClient] = None,
        media: Optional[LocalMediaController] = None,
        pc_factory: Callable = default_pc_factory,
        user_id: Optional[str] = None,
        refresh_interval: float = settings.DIRECTORY_REFRESH_INTERVAL,
    ) -> None:
        super().__init__()
        self.user_id = user_id or generate_id()
        self.user_name = user_name
        self.signaling = signaling or SignalingClient()
        self.media = media or LocalMediaController()
        self.refresh_interval = refresh_interval
        self._pc_factory = pc_factory

        self.room_id: Optional[str] = None
        self.room_config: Optional[RoomConfig] = None
        self.room_info: Optional[RoomInfo] = None
        self.manager: Optional[PeerConnectionManager] = None
        self.stats_collector: Optional[StatsCollector] = None
        self.public_rooms: List[RoomInfo] = []
        self._refresh_task: Optional[asyncio.Task] = None
        # Peers we were linked to before the last signaling reconnect
        self._rejoined_peers: Set[str] = set()

        @self.on("error")
        def on_handler_error(exc):
            logger.error("Session event handler failed: %s", exc)

        on = self.signaling.on
        on("connect", self._on_connect)
        on("disconnect", self._on_disconnect)
        on("rooms-update", self._on_rooms_update)
        on("room-joined", self._on_room_joined)
        on("user-connected", self._on_user_connected)
        on("user-disconnected", self._on_user_disconnected)
        on("offer", self._on_offer)
        on("answer", self._on_answer)
        on("ice-candidate", self._on_ice_candidate)
        on("chat-message", self._on_chat_message)
        on("reaction", self._on_reaction)
        on("caption", self._on_caption)
        on("whiteboard-draw", self._on_whiteboard_draw)
        on("whiteboard-clear", self._on_whiteboard_clear)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self.signaling.connect()
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def close(self) -> None:
        await self.leave()
        if self._refresh_task is not None:
            self._refresh_task.cancel()
            self._refresh_task = None
        await self.signaling.close()

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.refresh_interval)
            if self.signaling.connected:
                await self.refresh_rooms()

    async def refresh_rooms(self) -> None:
        await self.signaling.send("get-rooms")

    async def join(self, room_id: str, config: Optional[RoomConfig] = None) -> PeerConnectionManager:
        """
        Join a room and start meshing with its members.

        Local media is acquired first; a MediaAcquisitionError propagates and
        leaves the session out of any room with no peers created.

        `config` only matters if this join creates the room. Joining an
        existing room keeps the metadata its first member chose.
        """
        code = sanitize_room_code(room_id)
        if not code:
            raise ValueError(f"Invalid room code: {room_id!r}")
        if self.room_id:
            await self.leave()

        self.media.start()

        self.room_id = code
        self.room_config = config
        self.manager = PeerConnectionManager(
            code, self.user_id, self.user_name, self._send_signal, self.media, pc_factory=self._pc_factory
        )
        for event in PEER_EVENTS:
            self.manager.on(event, self._forwarder(event))
        self.stats_collector = StatsCollector(self.manager)
        self.stats_collector.start()

        await self._send_join()
        logger.info("→ Joining room %s as %s (%s)", code, self.user_id, self.user_name)
        return self.manager

    async def leave(self) -> None:
        """
        Tear down every peer link, tell the server, then release media.

        The server's disconnect cleanup covers the case where this never
        runs (process killed).
        """
        if not self.room_id:
            return
        room_id = self.room_id
        if self.stats_collector is not None:
            await self.stats_collector.stop()
            self.stats_collector = None
        if self.manager is not None:
            await self.manager.close_all()
        await self.signaling.send("leave", roomId=room_id, userId=self.user_id)
        self.media.stop()
        self.room_id = None
        self.room_info = None
        self.manager = None
        self._rejoined_peers = set()
        logger.info("← Left room %s", room_id)

    async def _send_join(self) -> None:
        fields = {"roomId": self.room_id, "userId": self.user_id}
        if self.room_config is not None:
            fields["config"] = self.room_config.model_dump()
        await self.signaling.send("join", **fields)

    async def _send_signal(self, action: str, payload: dict) -> None:
        await self.signaling.send(action, **payload)

    def _forwarder(self, event: str):
        def forward(*args):
            self.emit(event, *args)
        return forward

    # ------------------------------------------------------------------
    # Local media changes
    # ------------------------------------------------------------------

    async def toggle_screen_share(self) -> bool:
        """Start or stop sharing the screen; every active peer renegotiates once."""
        if self.media.is_screen_share:
            self.media.stop_screen_share()
        else:
            self.media.start_screen_share()
        if self.manager is not None:
            await self.manager.update_local_media()
        return self.media.is_screen_share

    async def switch_device(self, kind: str, device: str, fmt: Optional[str] = None) -> None:
        self.media.switch_device(kind, device, fmt)
        if self.manager is not None:
            await self.manager.update_local_media()

    # ------------------------------------------------------------------
    # Ancillary broadcast events
    # ------------------------------------------------------------------

    async def send_chat(self, text: str) -> ChatMessage:
        message = ChatMessage(id=uuid.uuid4().hex, senderId=self.user_id, text=text, timestamp=_now_ms())
        await self.signaling.send("chat-message", roomId=self.room_id, message=message.model_dump())
        return message

    async def send_reaction(self, emoji: str) -> Reaction:
        reaction = Reaction(senderId=self.user_id, emoji=emoji, timestamp=_now_ms())
        await self.signaling.send("reaction", roomId=self.room_id, reaction=reaction.model_dump())
        return reaction

    async def send_caption(self, text: str, is_final: bool = False) -> Caption:
        caption = Caption(senderId=self.user_id, text=text, isFinal=is_final, timestamp=_now_ms())
        await self.signaling.send("caption", roomId=self.room_id, caption=caption.model_dump())
        return caption

    async def draw(self, line: DrawLine) -> None:
        await self.signaling.send("whiteboard-draw", roomId=self.room_id, data=line.model_dump())

    async def clear_whiteboard(self) -> None:
        await self.signaling.send("whiteboard-clear", roomId=self.room_id)

    # ------------------------------------------------------------------
    # Signaling handlers
    # ------------------------------------------------------------------

    async def _on_connect(self) -> None:
        self.emit("connection-status", True)
        await self.refresh_rooms()
        if self.room_id:
            # New transport session: the server forgot us when the old one dropped,
            # and the remotes tore down their side. Rebuild every link from scratch.
            if self.manager is not None:
                self._rejoined_peers = set(self.manager.links)
                await self.manager.close_all()
            await self._send_join()

    def _on_disconnect(self) -> None:
        logger.warning("Signaling offline; peer links stay up until we rejoin")
        self.emit("connection-status", False)

    def _on_rooms_update(self, message: dict) -> None:
        try:
            self.public_rooms = [RoomInfo(**room) for room in message.get("rooms", [])]
        except (ValidationError, TypeError) as e:
            logger.warning("Malformed rooms-update: %s", e)
            return
        self.emit("rooms-update", self.public_rooms)

    async def _on_room_joined(self, message: dict) -> None:
        if self.manager is None or message.get("roomId") != self.room_id:
            return
        if message.get("room"):
            try:
                self.room_info = RoomInfo(**message["room"])
            except (ValidationError, TypeError) as e:
                logger.warning("Malformed room-joined: %s", e)
            else:
                self.emit("room-joined", self.room_info)
        # Links are created by the "user-connected" frames that follow. Anyone
        # we still track but the server no longer lists left while we were offline.
        members = set(message.get("members", []))
        for user_id in list(self.manager.links):
            if user_id not in members:
                await self.manager.remove_peer(user_id)

    async def _on_user_connected(self, message: dict) -> None:
        user_id = message.get("userId")
        if self.manager is not None and user_id:
            restart = user_id in self._rejoined_peers
            self._rejoined_peers.discard(user_id)
            await self.manager.add_peer(user_id, restart=restart)

    async def _on_user_disconnected(self, message: dict) -> None:
        if self.manager is not None and message.get("userId"):
            await self.manager.remove_peer(message["userId"])

    async def _on_offer(self, message: dict) -> None:
        if self.manager is not None:
            await self.manager.handle_offer(message)

    async def _on_answer(self, message: dict) -> None:
        if self.manager is not None:
            await self.manager.handle_answer(message)

    async def _on_ice_candidate(self, message: dict) -> None:
        if self.manager is not None:
            await self.manager.handle_ice_candidate(message)

    def _relay_event(self, event: str, model, payload) -> None:
        try:
            self.emit(event, model(**payload))
        except (ValidationError, TypeError) as e:
            logger.warning("Dropping malformed %s: %s", event, e)

    def _on_chat_message(self, message: dict) -> None:
        self._relay_event("chat-message", ChatMessage, message.get("message"))

    def _on_reaction(self, message: dict) -> None:
        self._relay_event("reaction", Reaction, message.get("reaction"))

    def _on_caption(self, message: dict) -> None:
        self._relay_event("caption", Caption, message.get("caption"))

    def _on_whiteboard_draw(self, message: dict) -> None:
        self._relay_event("whiteboard-draw", DrawLine, message.get("data"))

    def _on_whiteboard_clear(self, message: dict) -> None:
        self.emit("whiteboard-clear")
