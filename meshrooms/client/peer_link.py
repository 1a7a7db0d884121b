# meshrooms/client/peer_link.py

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Deque, List, Optional

from meshrooms.models.models import ConnectionStats

logger = logging.getLogger(__name__)


class PeerState(str, Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class Role(str, Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


TRANSITIONS = {
    PeerState.IDLE: {PeerState.NEGOTIATING, PeerState.RECONNECTING, PeerState.CLOSED},
    PeerState.NEGOTIATING: {PeerState.CONNECTED, PeerState.RECONNECTING, PeerState.CLOSED},
    PeerState.CONNECTED: {PeerState.RECONNECTING, PeerState.CLOSED},
    PeerState.RECONNECTING: {PeerState.NEGOTIATING, PeerState.CONNECTED, PeerState.CLOSED},
    PeerState.CLOSED: set(),
}


class InvalidTransition(ValueError):
    pass


def resolve_role(local_id: str, remote_id: str) -> Role:
    """
    Decide who sends the initial offer, without any coordination.

    The lexicographically smaller user id always offers. Both sides compute
    the same answer from the same two ids, whatever order they joined in.
    """
    if local_id == remote_id:
        raise ValueError(f"cannot resolve a role against ourselves ({local_id})")
    return Role.OFFERER if local_id < remote_id else Role.ANSWERER


@dataclass
class PeerLink:
    """
    Client-side state for one remote member of the room.

    `pc` is the underlying peer connection. It is swapped for a fresh one on
    a full restart while the link itself (identity, display name, role)
    stays the same.
    """

    user_id: str
    role: Role
    pc: Any = None
    display_name: str = ""
    state: PeerState = PeerState.IDLE

    # Flag of the remote's outgoing media, taken from its last offer/answer
    remote_screen_share: bool = False
    # Flag we advertised in our last offer/answer
    local_screen_share: bool = False

    # Remote candidates waiting for the remote description, in arrival order
    pending_candidates: Deque[dict] = field(default_factory=deque)
    remote_description_set: bool = False

    remote_tracks: List[Any] = field(default_factory=list)
    stats: Optional[ConnectionStats] = None

    renegotiation_pending: bool = False
    restart_attempts: int = 0
    restart_task: Optional[asyncio.Task] = None

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    connected_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def polite(self) -> bool:
        # The answerer yields when both sides offer at once
        return self.role is Role.ANSWERER

    def can_transition(self, new_state: PeerState) -> bool:
        return new_state is self.state or new_state in TRANSITIONS[self.state]

    def transition(self, new_state: PeerState) -> bool:
        """Move to new_state. Returns False when already there."""
        if new_state is self.state:
            return False
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.user_id}: {self.state.value} -> {new_state.value}")
        logger.debug("Peer %s: %s -> %s", self.user_id, self.state.value, new_state.value)
        self.state = new_state
        if new_state is PeerState.CONNECTED:
            self.connected_event.set()
        else:
            self.connected_event.clear()
        return True

    def reset_transport(self, pc: Any) -> None:
        """Point the link at a fresh peer connection; old candidates are dropped."""
        self.pc = pc
        self.pending_candidates.clear()
        self.remote_description_set = False
        self.remote_tracks = []
