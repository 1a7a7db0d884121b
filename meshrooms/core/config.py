# meshrooms/core/config.py
import os
from typing import List
from dotenv import load_dotenv


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings:
    """
    Setup environment variables.
        - HOST / PORT where the signaling server listens
        - SIGNALING_URL the WebSocket URL clients connect to
        - ICE_SERVERS comma separated STUN/TURN urls handed to every peer connection
        - STATS_INTERVAL seconds between two connection-quality samples
        - MAX_RECONNECT_ATTEMPTS / RECONNECT_TIMEOUT bound the peer restart path
        - CAMERA_* / MIC_* / SCREEN_* device and format for aiortc's MediaPlayer
    """

    # Load environment variables from the .env file
    load_dotenv()

    HOST: str = os.getenv("HOST", "0.0.0.0")
    PORT: int = int(os.getenv("PORT", "3001"))
    CORS_ORIGINS: List[str] = _split(os.getenv("CORS_ORIGINS", "*"))

    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:3001/ws")
    SIGNALING_RETRY_DELAY: float = float(os.getenv("SIGNALING_RETRY_DELAY", "2.0"))
    DIRECTORY_REFRESH_INTERVAL: float = float(os.getenv("DIRECTORY_REFRESH_INTERVAL", "5.0"))

    ICE_SERVERS: List[str] = _split(os.getenv("ICE_SERVERS", "stun:stun.l.google.com:19302"))
    STATS_INTERVAL: float = float(os.getenv("STATS_INTERVAL", "1.0"))
    MAX_RECONNECT_ATTEMPTS: int = int(os.getenv("MAX_RECONNECT_ATTEMPTS", "3"))
    RECONNECT_TIMEOUT: float = float(os.getenv("RECONNECT_TIMEOUT", "10.0"))

    CAMERA_DEVICE: str = os.getenv("CAMERA_DEVICE", "/dev/video0")
    CAMERA_FORMAT: str = os.getenv("CAMERA_FORMAT", "v4l2")
    MIC_DEVICE: str = os.getenv("MIC_DEVICE", "default")
    MIC_FORMAT: str = os.getenv("MIC_FORMAT", "pulse")
    SCREEN_DEVICE: str = os.getenv("SCREEN_DEVICE", ":0.0")
    SCREEN_FORMAT: str = os.getenv("SCREEN_FORMAT", "x11grab")

settings = Settings()
