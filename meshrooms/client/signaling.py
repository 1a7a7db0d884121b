# meshrooms/client/signaling.py

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from typing import Deque, Optional

import websockets
from pyee.asyncio import AsyncIOEventEmitter

from meshrooms.core.config import settings
from meshrooms.core.errors import SignalingError

logger = logging.getLogger(__name__)


class SignalingClient(AsyncIOEventEmitter):
    """
    WebSocket client for the signaling relay.

    Emits "connect" / "disconnect" as connectivity changes, and one event per
    server message, named after its "type" ("offer", "user-connected", ...),
    with the decoded message as the only argument. Server error frames are
    re-emitted as "server-error".

    The connection is retried every `retry_delay` seconds until close(), so
    a dropped socket degrades the session instead of ending it.
    """

    def __init__(self, url: str = settings.SIGNALING_URL, retry_delay: float = settings.SIGNALING_RETRY_DELAY):
        super().__init__()
        self.url = url
        self.retry_delay = retry_delay
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._closing = False
        self._online = asyncio.Event()
        self._pong_waiters: Deque[asyncio.Future] = deque()

        @self.on("error")
        def on_handler_error(exc):
            logger.error("Signaling handler failed: %s", exc)

    @property
    def connected(self) -> bool:
        return self._online.is_set()

    async def connect(self, timeout: float = 10.0) -> None:
        """
        Start the connection loop and wait for the first successful connect.

        Raises:
            SignalingError: if the server is not reachable within `timeout`.
                The loop keeps retrying in the background.
        """
        self._closing = False
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())
        try:
            await asyncio.wait_for(self._online.wait(), timeout)
        except asyncio.TimeoutError as e:
            raise SignalingError(f"signaling server {self.url} unreachable") from e

    async def _run(self) -> None:
        while not self._closing:
            try:
                async with websockets.connect(self.url) as ws:
                    self._ws = ws
                    self._online.set()
                    logger.info("✓ Connected to signaling server %s", self.url)
                    self.emit("connect")
                    async for raw in ws:
                        self._dispatch(raw)
            except (OSError, websockets.exceptions.WebSocketException) as e:
                logger.warning("Signaling connection lost: %s", e)
            finally:
                was_online = self._online.is_set()
                self._ws = None
                self._online.clear()
                while self._pong_waiters:
                    waiter = self._pong_waiters.popleft()
                    if not waiter.done():
                        waiter.set_exception(SignalingError("disconnected"))
                if was_online:
                    self.emit("disconnect")
            if not self._closing:
                await asyncio.sleep(self.retry_delay)

    def _dispatch(self, raw) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed signaling frame")
            return
        if not isinstance(message, dict):
            return

        kind = message.get("type")
        if kind == "pong":
            if self._pong_waiters:
                waiter = self._pong_waiters.popleft()
                if not waiter.done():
                    waiter.set_result(None)
            return
        if kind == "error":
            logger.warning("Signaling server error: %s", message.get("message"))
            self.emit("server-error", message)
            return
        if kind:
            self.emit(kind, message)

    async def send(self, action: str, **fields) -> bool:
        """Send one frame. Returns False (and drops it) while offline."""
        ws = self._ws
        if ws is None:
            logger.info("Dropped %s: signaling offline", action)
            return False
        try:
            await ws.send(json.dumps({"action": action, **fields}))
            return True
        except websockets.exceptions.ConnectionClosed:
            logger.info("Dropped %s: connection closed", action)
            return False

    async def ping(self, timeout: float = 5.0) -> float:
        """Round-trip time to the signaling server, in seconds."""
        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self._pong_waiters.append(waiter)
        started = loop.time()
        if not await self.send("ping"):
            self._pong_waiters.remove(waiter)
            raise SignalingError("signaling offline")
        try:
            await asyncio.wait_for(waiter, timeout)
        finally:
            # A timed-out waiter would otherwise swallow the next pong
            if waiter in self._pong_waiters:
                self._pong_waiters.remove(waiter)
        return loop.time() - started

    async def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            await self._ws.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
