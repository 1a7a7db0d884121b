# meshrooms/client/media.py

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from aiortc.contrib.media import MediaPlayer, MediaRelay

from meshrooms.core.config import settings
from meshrooms.core.errors import MediaAcquisitionError

logger = logging.getLogger(__name__)

PlayerOpener = Callable[[str, str], Any]


def open_player(device: str, fmt: str) -> MediaPlayer:
    return MediaPlayer(device, format=fmt)


class LocalMediaController:
    """
    Owns the local outgoing tracks: microphone, camera, and optionally a
    screen capture that takes the camera's place on the video sender.

    Every peer gets its own relay subscription to the same source tracks
    (aiortc's MediaRelay), so one capture device feeds the whole mesh.
    Switching sources does not touch peers; the caller propagates the new
    track set with PeerConnectionManager.update_local_media().
    """

    def __init__(self, opener: PlayerOpener = open_player) -> None:
        self._open = opener
        self._relay = MediaRelay()
        self.audio = None
        self.camera = None
        self.screen = None

    @property
    def started(self) -> bool:
        return self.audio is not None or self.camera is not None

    @property
    def is_screen_share(self) -> bool:
        return self.screen is not None

    @property
    def tracks(self) -> List[Any]:
        video = self.screen or self.camera
        return [t for t in (self.audio, video) if t is not None]

    def subscribe(self) -> List[Any]:
        """Per-peer proxies of the current outgoing tracks."""
        return [self._relay.subscribe(track) for track in self.tracks]

    def _acquire(self, device: str, fmt: str, kind: str):
        try:
            player = self._open(device, fmt)
        except Exception as e:
            raise MediaAcquisitionError(f"cannot open {kind} {device!r} ({fmt}): {e}") from e
        track = getattr(player, kind, None)
        if track is None:
            raise MediaAcquisitionError(f"{device!r} ({fmt}) has no {kind} track")
        return track

    def start(self) -> None:
        """
        Open camera and microphone.

        Raises:
            MediaAcquisitionError: if either device cannot be opened. Nothing
                is kept open in that case.
        """
        if self.started:
            return
        audio = self._acquire(settings.MIC_DEVICE, settings.MIC_FORMAT, "audio")
        try:
            camera = self._acquire(settings.CAMERA_DEVICE, settings.CAMERA_FORMAT, "video")
        except MediaAcquisitionError:
            audio.stop()
            raise
        self.audio, self.camera = audio, camera
        logger.info("✓ Local media started")

    def start_screen_share(self) -> None:
        if self.screen is not None:
            return
        self.screen = self._acquire(settings.SCREEN_DEVICE, settings.SCREEN_FORMAT, "video")
        logger.info("Screen share started")

    def stop_screen_share(self) -> None:
        if self.screen is None:
            return
        self.screen.stop()
        self.screen = None
        logger.info("Screen share stopped")

    def switch_device(self, kind: str, device: str, fmt: Optional[str] = None) -> None:
        """
        Replace the camera ("videoinput") or microphone ("audioinput").

        The old track is only stopped once the new device opened, so a
        failed switch leaves the current media running.
        """
        if kind == "videoinput":
            track = self._acquire(device, fmt or settings.CAMERA_FORMAT, "video")
            old, self.camera = self.camera, track
        elif kind == "audioinput":
            track = self._acquire(device, fmt or settings.MIC_FORMAT, "audio")
            old, self.audio = self.audio, track
        else:
            raise ValueError(f"Unknown device kind: {kind}")
        if old is not None:
            old.stop()
        logger.info("Switched %s to %s", kind, device)

    def stop(self) -> None:
        for track in (self.audio, self.camera, self.screen):
            if track is not None:
                track.stop()
        self.audio = self.camera = self.screen = None
