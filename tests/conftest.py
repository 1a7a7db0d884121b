"""
Pytest configuration and shared fakes for the relay and the mesh client.
"""

import asyncio
from typing import List, Optional

import pytest
from aiortc import RTCSessionDescription
from fastapi.testclient import TestClient
from pyee.asyncio import AsyncIOEventEmitter

from meshrooms.core import state
from meshrooms.main import app
from meshrooms.services.connection_manager import ConnectionManager
from meshrooms.services.room_registry import RoomRegistry

HOST_CANDIDATE = "candidate:1 1 UDP 2130706431 192.168.1.{} 5000{} typ host"


def make_candidate(n: int) -> dict:
    return {"candidate": HOST_CANDIDATE.format(n, n), "sdpMid": "0", "sdpMLineIndex": 0}


async def settle(rounds: int = 10) -> None:
    """Let scheduled event-handler tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


# ============================================================================
# SERVER FIXTURES
# ============================================================================

@pytest.fixture
def registry(monkeypatch):
    """Fresh registry + relay wired into the app for each test."""
    registry = RoomRegistry()
    monkeypatch.setattr(state, "room_registry", registry)
    monkeypatch.setattr(state, "connection_manager", ConnectionManager(registry=registry))
    return registry


@pytest.fixture
def client(registry):
    with TestClient(app) as test_client:
        yield test_client


# ============================================================================
# CLIENT FAKES
# ============================================================================

class FakeTrack:
    def __init__(self, kind: str, label: str = ""):
        self.kind = kind
        self.label = label
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeSender:
    def __init__(self, track):
        self.track = track
        self.kind = track.kind
        self.replaced: List[FakeTrack] = []

    def replaceTrack(self, track):
        self.replaced.append(track)
        self.track = track


class FakePeerConnection(AsyncIOEventEmitter):
    """Just enough of RTCPeerConnection for the manager's state machine."""

    def __init__(self):
        super().__init__()
        self.signalingState = "stable"
        self.connectionState = "new"
        self.iceConnectionState = "new"
        self.localDescription: Optional[RTCSessionDescription] = None
        self.remoteDescription: Optional[RTCSessionDescription] = None
        self.senders: List[FakeSender] = []
        self.log: List[tuple] = []
        self.closed = False
        self.stats_report = {}
        self.fail_on: Optional[str] = None
        self._n = 0

    def addTrack(self, track):
        sender = FakeSender(track)
        self.senders.append(sender)
        return sender

    def getSenders(self):
        return list(self.senders)

    def _check(self, step):
        if self.fail_on == step:
            raise RuntimeError(f"{step} exploded")

    async def createOffer(self):
        self._check("createOffer")
        self._n += 1
        return RTCSessionDescription(sdp=f"offer-{id(self)}-{self._n}", type="offer")

    async def createAnswer(self):
        self._check("createAnswer")
        self._n += 1
        return RTCSessionDescription(sdp=f"answer-{id(self)}-{self._n}", type="answer")

    async def setLocalDescription(self, description):
        self._check("setLocalDescription")
        if description.type == "rollback":
            self.log.append(("rollback",))
            self.localDescription = None
            self.signalingState = "stable"
            return
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self._check("setRemoteDescription")
        self.log.append(("remote", description.type))
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        assert self.remoteDescription is not None, "candidate applied before remote description"
        self.log.append(("candidate", candidate.ip))

    async def getStats(self):
        self._check("getStats")
        return self.stats_report

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    def set_state(self, value: str):
        self.connectionState = value
        self.emit("connectionstatechange")


class FakeMedia:
    def __init__(self):
        self.is_screen_share = False
        self.started = False
        self.stopped = False
        self.fail_start = False

    def subscribe(self):
        video = "screen" if self.is_screen_share else "camera"
        return [FakeTrack("audio", "mic"), FakeTrack("video", video)]

    def start(self):
        from meshrooms.core.errors import MediaAcquisitionError
        if self.fail_start:
            raise MediaAcquisitionError("camera denied")
        self.started = True

    def start_screen_share(self):
        self.is_screen_share = True

    def stop_screen_share(self):
        self.is_screen_share = False

    def switch_device(self, kind, device, fmt=None):
        pass

    def stop(self):
        self.stopped = True


class PcFactory:
    def __init__(self):
        self.created: List[FakePeerConnection] = []

    def __call__(self):
        pc = FakePeerConnection()
        self.created.append(pc)
        return pc


class Outbox:
    """Records what a manager sends to the signaling server."""

    def __init__(self):
        self.sent: List[tuple] = []

    async def __call__(self, action, payload):
        self.sent.append((action, payload))

    def of(self, action):
        return [payload for kind, payload in self.sent if kind == action]


class MeshBus:
    """
    In-memory stand-in for the relay between several managers: queues
    whatever a manager sends and delivers it, enriched with callerId, when
    flush() is awaited.
    """

    def __init__(self):
        self.managers = {}
        self.queue: List[tuple] = []
        self.delivered: List[tuple] = []

    def sender_for(self, user_id):
        async def send(action, payload):
            self.queue.append((user_id, action, dict(payload)))
        return send

    async def flush(self):
        while self.queue:
            sender, action, payload = self.queue.pop(0)
            target = self.managers[payload["targetUserId"]]
            message = dict(payload, type=action, callerId=sender)
            self.delivered.append((sender, action, message))
            if action == "offer":
                await target.handle_offer(message)
            elif action == "answer":
                await target.handle_answer(message)
            else:
                await target.handle_ice_candidate(message)
            await settle()
