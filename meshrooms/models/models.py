# meshrooms/models/models.py
# Field names follow the wire format (camelCase) so model_dump() is the payload.
from pydantic import BaseModel
from typing import Optional


class RoomConfig(BaseModel):
    isPublic: bool = False
    name: Optional[str] = None


class RoomInfo(BaseModel):
    """Public Room Directory entry. Never carries member identities."""
    roomId: str
    name: str
    count: int
    isPublic: bool


class ConnectionStats(BaseModel):
    rtt: float = 0.0                    # ms
    jitter: float = 0.0                 # ms
    packetLossPercentage: float = 0.0   # loss over the last interval
    packetsLost: int = 0                # cumulative
    resolution: Optional[str] = None    # e.g. "1280x720"
    frameRate: Optional[float] = None


class ChatMessage(BaseModel):
    id: str
    senderId: str
    text: str
    timestamp: int


class Reaction(BaseModel):
    senderId: str
    emoji: str
    timestamp: int


class Caption(BaseModel):
    senderId: str
    text: str
    isFinal: bool
    timestamp: int


class DrawLine(BaseModel):
    prevX: float
    prevY: float
    currX: float
    currY: float
    color: str
    width: float
