# meshrooms/client/stats.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Tuple

from meshrooms.core.config import settings
from meshrooms.models.models import ConnectionStats

logger = logging.getLogger(__name__)


@dataclass
class LossCounters:
    lost: int = 0
    received: int = 0


def _field(stat: Any, name: str, default: Any = None) -> Any:
    # aiortc hands out dataclasses, browsers/JSON hand out dicts
    if isinstance(stat, Mapping):
        return stat.get(name, default)
    return getattr(stat, name, default)


def summarize_report(
    report: Mapping[str, Any],
    previous: Optional[LossCounters] = None,
) -> Tuple[ConnectionStats, LossCounters]:
    """
    Normalize one getStats() report into a ConnectionStats snapshot.

    Args:
        report: stats id -> stats object (aiortc RTCStatsReport or plain dicts)
        previous: cumulative counters from the previous sample of the same
            connection; None on the first sample

    Returns:
        (snapshot, cumulative counters to pass as `previous` next time)

    RTT comes from the nominated candidate pair when reported, else from the
    remote-inbound-rtp round trip. Times are converted from seconds to ms.
    Loss percentage covers only the packets since `previous` and is clamped
    to [0, 100].
    """
    pair_rtt = None
    remote_rtt = None
    jitter = 0.0
    counters = LossCounters()
    resolution = None
    frame_rate = None

    for stat in report.values():
        kind = _field(stat, "type")
        if kind == "candidate-pair":
            rtt = _field(stat, "currentRoundTripTime")
            if rtt is not None and (_field(stat, "nominated") or _field(stat, "state") == "succeeded"):
                pair_rtt = rtt
        elif kind == "remote-inbound-rtp":
            rtt = _field(stat, "roundTripTime")
            if rtt is not None:
                remote_rtt = rtt if remote_rtt is None else max(remote_rtt, rtt)
        elif kind == "inbound-rtp":
            counters.lost += max(int(_field(stat, "packetsLost", 0) or 0), 0)
            counters.received += int(_field(stat, "packetsReceived", 0) or 0)
            jitter = max(jitter, float(_field(stat, "jitter", 0.0) or 0.0))

            width = _field(stat, "frameWidth")
            height = _field(stat, "frameHeight")
            if width and height:
                resolution = f"{width}x{height}"
            fps = _field(stat, "framesPerSecond")
            if fps is not None:
                frame_rate = float(fps)

    rtt_seconds = pair_rtt if pair_rtt is not None else (remote_rtt or 0.0)

    baseline = previous or LossCounters()
    delta_lost = counters.lost - baseline.lost
    delta_received = counters.received - baseline.received
    total = delta_lost + delta_received
    loss = (delta_lost / total) * 100 if total > 0 else 0.0

    snapshot = ConnectionStats(
        rtt=round(rtt_seconds * 1000, 2),
        jitter=round(jitter * 1000, 2),
        packetLossPercentage=round(min(max(loss, 0.0), 100.0), 2),
        packetsLost=counters.lost,
        resolution=resolution,
        frameRate=frame_rate,
    )
    return snapshot, counters


# ============================================================================
# STATS COLLECTOR
# ============================================================================

class StatsCollector:
    """
    Samples every CONNECTED link of a PeerConnectionManager at a fixed
    interval and publishes the latest ConnectionStats per peer.

    Sampling never takes a link's negotiation lock, and a failure on one
    peer is logged and skipped without touching the others or the loop.
    """

    def __init__(self, manager, interval: float = settings.STATS_INTERVAL) -> None:
        self.manager = manager
        self.interval = interval
        # user_id -> (pc the counters belong to, counters)
        self._baselines: Dict[str, Tuple[Any, LossCounters]] = {}
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await self.sample_once()
            await asyncio.sleep(self.interval)

    async def sample_once(self) -> None:
        links = self.manager.connected_links()
        live = {link.user_id for link in links}
        for user_id in list(self._baselines):
            if user_id not in live:
                del self._baselines[user_id]

        results = await asyncio.gather(*(self._sample(link) for link in links), return_exceptions=True)
        for link, result in zip(links, results):
            if isinstance(result, Exception):
                logger.warning("Stats sampling for %s failed: %s", link.user_id, result)

    async def _sample(self, link) -> None:
        pc = link.pc
        report = await pc.getStats()

        previous = None
        baseline = self._baselines.get(link.user_id)
        # A restarted connection starts its counters from zero again
        if baseline is not None and baseline[0] is pc:
            previous = baseline[1]

        snapshot, counters = summarize_report(report, previous)
        self._baselines[link.user_id] = (pc, counters)
        link.stats = snapshot
        self.manager.emit("stats", link.user_id, snapshot)
