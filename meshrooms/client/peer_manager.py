# meshrooms/client/peer_manager.py

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

from meshrooms.client.peer_link import PeerLink, PeerState, Role, resolve_role
from meshrooms.core.config import settings
from meshrooms.core.errors import NegotiationError

logger = logging.getLogger(__name__)

SendSignal = Callable[[str, dict], Awaitable[Any]]


def default_pc_factory() -> RTCPeerConnection:
    config = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in settings.ICE_SERVERS])
    return RTCPeerConnection(config)


def candidate_from_payload(payload: Optional[dict]):
    """Build an aiortc candidate from the browser-style {candidate, sdpMid, sdpMLineIndex} dict."""
    if not payload or not payload.get("candidate"):
        return None  # end-of-candidates
    sdp = payload["candidate"]
    if sdp.startswith("candidate:"):
        sdp = sdp[len("candidate:"):]
    if len(sdp.split()) < 8:
        raise ValueError(f"truncated candidate line: {sdp!r}")
    candidate = candidate_from_sdp(sdp)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


def candidate_to_payload(candidate) -> dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def _remote_description(link: PeerLink, message: dict) -> RTCSessionDescription:
    description = message.get("description")
    if not isinstance(description, dict) or "sdp" not in description or "type" not in description:
        raise NegotiationError(link.user_id, f"malformed {message.get('type', 'session')} description")
    return RTCSessionDescription(sdp=description["sdp"], type=description["type"])


# ============================================================================
# PEER CONNECTION MANAGER
# ============================================================================

class PeerConnectionManager(AsyncIOEventEmitter):
    """
    Drives one PeerLink per remote member of a room.

    Each link moves through IDLE -> NEGOTIATING -> CONNECTED -> RECONNECTING
    -> CLOSED. Links are independent: a failure on one peer only ever sends
    that peer down the restart path.

    Events:
        peer-state (user_id, PeerState)
        remote-media (user_id, tracks, is_screen_share)
            on CONNECTED, and again when a renegotiation relabels the media
        remote-media-removed (user_id)
        stats (user_id, ConnectionStats), emitted by the StatsCollector

    Args:
        room_id: Room the links belong to
        user_id / user_name: local identity, sent with every offer/answer
        send: coroutine (action, payload) delivering to the signaling server
        media: shared outgoing media; needs subscribe() and is_screen_share
        pc_factory: builds the underlying peer connection (aiortc by default)
    """

    def __init__(
        self,
        room_id: str,
        user_id: str,
        user_name: str,
        send: SendSignal,
        media: Any,
        pc_factory: Callable[[], Any] = default_pc_factory,
        max_reconnect_attempts: int = settings.MAX_RECONNECT_ATTEMPTS,
        reconnect_timeout: float = settings.RECONNECT_TIMEOUT,
    ) -> None:
        super().__init__()
        self.room_id = room_id
        self.user_id = user_id
        self.user_name = user_name
        self.media = media
        self.links: Dict[str, PeerLink] = {}
        # Peers whose departure we have seen; their late messages are dropped
        self.terminated: Set[str] = set()
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_timeout = reconnect_timeout
        self._send = send
        self._pc_factory = pc_factory

        @self.on("error")
        def on_handler_error(exc):
            logger.error("Peer event handler failed: %s", exc)

    @property
    def is_screen_share(self) -> bool:
        return bool(self.media.is_screen_share)

    def connected_links(self) -> List[PeerLink]:
        return [link for link in self.links.values() if link.state is PeerState.CONNECTED]

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    async def add_peer(self, user_id: str, restart: bool = False) -> Optional[PeerLink]:
        """
        Track a member announced by the room snapshot or "user-connected".

        A peer announced again after leaving gets a brand new link. With
        `restart`, our initial offer is flagged so a remote that still holds
        a connection from before swaps in a fresh one.
        """
        if user_id == self.user_id:
            return None
        self.terminated.discard(user_id)
        link = self.links.get(user_id)
        if link is None:
            link = self._create_link(user_id)
            if link.role is Role.OFFERER:
                await self._guarded(link, self._offer_step, restart)
        return link

    async def remove_peer(self, user_id: str) -> None:
        """Explicit departure ("user-disconnected"): close without retrying."""
        self.terminated.add(user_id)
        link = self.links.get(user_id)
        if link:
            await self._close_link(link, "peer left")

    async def close_all(self) -> None:
        """Close every link. Departures seen so far no longer matter after this."""
        for link in list(self.links.values()):
            await self._close_link(link, "local leave")
        self.terminated.clear()

    def _create_link(self, user_id: str) -> PeerLink:
        link = PeerLink(user_id=user_id, role=resolve_role(self.user_id, user_id))
        self._attach_pc(link)
        self.links[user_id] = link
        logger.info("→ Peer %s tracked as %s", user_id, link.role.value)
        self.emit("peer-state", user_id, link.state)
        return link

    def _resolve_link(self, caller: Optional[str], create: bool) -> Optional[PeerLink]:
        if not caller or caller == self.user_id:
            return None
        if caller in self.terminated:
            logger.debug("Discarding message from closed peer %s", caller)
            return None
        link = self.links.get(caller)
        if link is None and create:
            # Negotiation overtook the membership notification
            link = self._create_link(caller)
        return link

    # ------------------------------------------------------------------
    # Underlying connection
    # ------------------------------------------------------------------

    def _attach_pc(self, link: PeerLink) -> None:
        pc = self._pc_factory()
        link.reset_transport(pc)
        for track in self.media.subscribe():
            pc.addTrack(track)

        @pc.on("track")
        def on_track(track):
            if link.pc is pc:
                link.remote_tracks.append(track)

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            # aiortc bundles candidates into the SDP; trickling peers emit them here
            if candidate is None or link.pc is not pc or link.state is PeerState.CLOSED:
                return
            await self._send(
                "ice-candidate",
                {"targetUserId": link.user_id, "candidate": candidate_to_payload(candidate)},
            )

        @pc.on("connectionstatechange")
        async def on_connectionstatechange():
            if link.pc is pc:
                await self._on_transport_state(link, pc.connectionState)

        @pc.on("iceconnectionstatechange")
        async def on_iceconnectionstatechange():
            if link.pc is pc and pc.iceConnectionState == "disconnected":
                await self._on_transport_state(link, "disconnected")

    async def _replace_pc(self, link: PeerLink) -> None:
        old = link.pc
        self._attach_pc(link)
        try:
            await old.close()
        except Exception as e:
            logger.warning("Closing stale connection to %s failed: %s", link.user_id, e)

    def _set_state(self, link: PeerLink, state) -> None:
        if link.transition(state):
            self.emit("peer-state", link.user_id, state)

    # ------------------------------------------------------------------
    # Negotiation steps (each runs under the link's lock)
    # ------------------------------------------------------------------

    async def _guarded(self, link: PeerLink, step, *args) -> Any:
        try:
            async with link.lock:
                if link.state is PeerState.CLOSED:
                    return None
                return await step(link, *args)
        except Exception as e:
            logger.warning("Negotiation with %s failed: %s", link.user_id, e)
            await self._enter_reconnecting(link, f"negotiation failed: {e}")
            return None

    def _envelope(self, link: PeerLink, restart: bool = False) -> dict:
        description = link.pc.localDescription
        envelope = {
            "targetUserId": link.user_id,
            "userName": self.user_name,
            "isScreenShare": self.is_screen_share,
            "description": {"sdp": description.sdp, "type": description.type},
        }
        if restart:
            envelope["restart"] = True
        return envelope

    async def _offer_step(self, link: PeerLink, restart: bool = False) -> bool:
        """Send an offer on the link. Returns False when it was deferred instead."""
        pc = link.pc
        if pc.signalingState != "stable":
            # An exchange is already in flight; offer again once it settles
            link.renegotiation_pending = True
            return False
        if link.state is not PeerState.CONNECTED:
            self._set_state(link, PeerState.NEGOTIATING)
        link.renegotiation_pending = False

        offer = await pc.createOffer()
        await pc.setLocalDescription(offer)
        link.local_screen_share = self.is_screen_share
        await self._send("offer", self._envelope(link, restart))
        logger.debug("Offer sent to %s (restart=%s)", link.user_id, restart)
        return True

    async def _restart_step(self, link: PeerLink) -> None:
        await self._replace_pc(link)
        await self._offer_step(link, True)

    async def _apply_offer_step(self, link: PeerLink, message: dict) -> None:
        if message.get("restart") and link.pc.remoteDescription is not None:
            await self._replace_pc(link)
            if link.state is PeerState.CONNECTED:
                self._set_state(link, PeerState.RECONNECTING)
        pc = link.pc

        if pc.signalingState != "stable":
            if not link.polite:
                # The polite side rolls back, answers ours, then re-offers
                logger.info("Ignoring colliding offer from %s", link.user_id)
                return
            await pc.setLocalDescription(RTCSessionDescription(sdp="", type="rollback"))
            link.renegotiation_pending = True

        self._remember_remote(link, message)
        if link.state is not PeerState.CONNECTED:
            self._set_state(link, PeerState.NEGOTIATING)

        await pc.setRemoteDescription(_remote_description(link, message))
        link.remote_description_set = True
        await self._flush_candidates(link)

        answer = await pc.createAnswer()
        await pc.setLocalDescription(answer)
        link.local_screen_share = self.is_screen_share
        await self._send("answer", self._envelope(link))

        if link.state is PeerState.CONNECTED:
            self._publish_remote_media(link)

    async def _apply_answer_step(self, link: PeerLink, message: dict) -> None:
        pc = link.pc
        if pc.signalingState != "have-local-offer":
            logger.debug("Ignoring stale answer from %s", link.user_id)
            return
        self._remember_remote(link, message)
        await pc.setRemoteDescription(_remote_description(link, message))
        link.remote_description_set = True
        await self._flush_candidates(link)

        if link.state is PeerState.CONNECTED:
            self._publish_remote_media(link)

    async def _candidate_step(self, link: PeerLink, payload: Optional[dict]) -> None:
        if not link.remote_description_set:
            link.pending_candidates.append(payload)
            return
        await self._add_candidate(link, payload)

    async def _flush_candidates(self, link: PeerLink) -> None:
        while link.pending_candidates:
            await self._add_candidate(link, link.pending_candidates.popleft())

    async def _add_candidate(self, link: PeerLink, payload: Optional[dict]) -> None:
        # A bad candidate costs one network path, not the whole negotiation
        try:
            candidate = candidate_from_payload(payload)
        except ValueError as e:
            logger.warning("Unparseable ICE candidate from %s: %s", link.user_id, e)
            return
        if candidate is None:
            return
        try:
            await link.pc.addIceCandidate(candidate)
        except Exception as e:
            logger.warning("Failed to add ICE candidate from %s: %s", link.user_id, e)

    @staticmethod
    def _remember_remote(link: PeerLink, message: dict) -> None:
        link.display_name = message.get("userName") or link.display_name
        link.remote_screen_share = bool(message.get("isScreenShare"))

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------

    async def handle_offer(self, message: dict) -> None:
        link = self._resolve_link(message.get("callerId"), create=True)
        if link is None:
            return
        await self._guarded(link, self._apply_offer_step, message)
        await self._maybe_renegotiate(link)

    async def handle_answer(self, message: dict) -> None:
        # We only ever answer-wait on links we offered on, so never create here
        link = self._resolve_link(message.get("callerId"), create=False)
        if link is None:
            logger.debug("Discarding answer from unknown peer %s", message.get("callerId"))
            return
        await self._guarded(link, self._apply_answer_step, message)
        await self._maybe_renegotiate(link)

    async def handle_ice_candidate(self, message: dict) -> None:
        caller = message.get("callerId")
        created = caller is not None and caller not in self.links
        link = self._resolve_link(caller, create=True)
        if link is None:
            return
        await self._guarded(link, self._candidate_step, message.get("candidate"))
        if created and link.role is Role.OFFERER:
            await self._guarded(link, self._offer_step)

    # ------------------------------------------------------------------
    # Renegotiation (screen share / device switch)
    # ------------------------------------------------------------------

    async def update_local_media(self) -> int:
        """
        Propagate a change of the shared outgoing tracks to every link.

        Tracks are swapped on the existing senders and each CONNECTED link
        runs exactly one offer/answer exchange carrying the new
        isScreenShare flag. ICE state and link state are left alone.
        Links still negotiating renegotiate once they connect.

        Returns:
            Number of links that renegotiated now
        """
        renegotiated = 0
        for link in list(self.links.values()):
            if link.state is PeerState.CLOSED:
                continue
            self._replace_tracks(link)
            if link.state is PeerState.CONNECTED:
                if await self._guarded(link, self._offer_step):
                    renegotiated += 1
            elif link.state is PeerState.NEGOTIATING:
                link.renegotiation_pending = True
        return renegotiated

    def _replace_tracks(self, link: PeerLink) -> None:
        tracks = {track.kind: track for track in self.media.subscribe()}
        senders = link.pc.getSenders()
        for sender in senders:
            kind = sender.track.kind if sender.track is not None else getattr(sender, "kind", None)
            if kind in tracks:
                sender.replaceTrack(tracks.pop(kind))
        # Kinds with no sender yet get one; the renegotiation announces them
        for track in tracks.values():
            link.pc.addTrack(track)

    async def _maybe_renegotiate(self, link: PeerLink) -> None:
        if link.renegotiation_pending and link.state is PeerState.CONNECTED and link.pc.signalingState == "stable":
            await self._guarded(link, self._offer_step)

    # ------------------------------------------------------------------
    # Transport state, reconnection, teardown
    # ------------------------------------------------------------------

    async def _on_transport_state(self, link: PeerLink, state: str) -> None:
        if link.state is PeerState.CLOSED:
            return
        if state == "connected":
            if link.state in (PeerState.NEGOTIATING, PeerState.RECONNECTING):
                self._set_state(link, PeerState.CONNECTED)
                link.restart_attempts = 0
                logger.info("✓ Connected to %s", link.user_id)
                self._publish_remote_media(link)
                await self._maybe_renegotiate(link)
        elif state in ("disconnected", "failed"):
            await self._enter_reconnecting(link, f"transport {state}")

    async def _enter_reconnecting(self, link: PeerLink, reason: str) -> None:
        if link.state is PeerState.CLOSED:
            return
        if link.restart_task is not None and not link.restart_task.done():
            return  # already recovering
        logger.warning("Peer %s reconnecting: %s", link.user_id, reason)
        self._set_state(link, PeerState.RECONNECTING)
        link.restart_task = asyncio.create_task(self._reconnect(link))

    async def _reconnect(self, link: PeerLink) -> None:
        """
        Bounded restart loop. The offerer side rebuilds the connection and
        sends a restart offer per attempt; the answerer waits for it. Each
        attempt gets reconnect_timeout seconds to reach CONNECTED.
        """
        while link.restart_attempts < self.max_reconnect_attempts:
            link.restart_attempts += 1
            logger.info(
                "Restart attempt %d/%d for %s",
                link.restart_attempts, self.max_reconnect_attempts, link.user_id,
            )
            if link.role is Role.OFFERER:
                try:
                    async with link.lock:
                        if link.state is PeerState.CLOSED:
                            return
                        await self._restart_step(link)
                except Exception as e:
                    logger.warning("Restart offer to %s failed: %s", link.user_id, e)
                    continue
            try:
                await asyncio.wait_for(link.connected_event.wait(), self.reconnect_timeout)
                return
            except asyncio.TimeoutError:
                logger.info("Restart attempt %d for %s timed out", link.restart_attempts, link.user_id)
            if link.state is PeerState.CLOSED:
                return
        await self._close_link(link, "reconnection attempts exhausted")

    async def _close_link(self, link: PeerLink, reason: str) -> None:
        if link.state is PeerState.CLOSED:
            return
        self._set_state(link, PeerState.CLOSED)
        if self.links.get(link.user_id) is link:
            del self.links[link.user_id]
        self.terminated.add(link.user_id)

        task = link.restart_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

        try:
            await link.pc.close()
        except Exception as e:
            logger.warning("Closing connection to %s failed: %s", link.user_id, e)

        logger.info("✗ Peer %s closed (%s)", link.user_id, reason)
        self.emit("remote-media-removed", link.user_id)

    def _publish_remote_media(self, link: PeerLink) -> None:
        self.emit("remote-media", link.user_id, list(link.remote_tracks), link.remote_screen_share)
