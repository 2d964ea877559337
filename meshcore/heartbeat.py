"""Periodic ping/pong on live peers and silent-peer escalation."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from .connection import DiagLevel, EngineHost
from .ladder import escalate_to_rehandshake

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PingMessage:
    """Heartbeat probe carrying the sender's wall-clock milliseconds."""

    t: int


@dataclass(frozen=True)
class PongMessage:
    """Echo of a ping's timestamp."""

    t: int


def monotonic_ms() -> int:
    """Wall-clock milliseconds since the Unix epoch."""
    return int(time.time() * 1000)


async def tick(state: EngineHost) -> None:
    """Ping every live peer and escalate peers silent past the timeout."""
    now = state.clock()
    for peer_id in state.live_peer_ids():
        await _send_ping(state, peer_id)

    # The wake-detection buffer stops a long-paused process from
    # re-handshaking every peer the moment it resumes.
    cutoff_ms = state.timings.heartbeat_timeout_ms + state.timings.wake_detection_threshold_ms
    stale = []
    for peer_id, peer in state.peers.items():
        data = peer.state
        if not data.is_live() or data.last_recv_at is None:
            continue
        elapsed_ms = int(max(now - data.last_recv_at, 0.0) * 1000)
        if elapsed_ms > cutoff_ms:
            stale.append(peer_id)

    for peer_id in stale:
        state.log_diag(
            DiagLevel.WARN,
            "heartbeat",
            f"peer silent past heartbeat timeout — escalating to Tier 4: {peer_id}",
            {"peer": peer_id},
        )
        await escalate_to_rehandshake(state, peer_id)


async def _send_ping(state: EngineHost, device_id: str) -> None:
    t = monotonic_ms()
    peer = state.peers.get(device_id)
    if peer is not None:
        peer.state.last_ping_sent_at = state.clock()
        peer.state.last_ping_t = t
    try:
        await state.send(device_id, PingMessage(t))
    except (LookupError, ConnectionError) as exc:
        log.debug("ping send to %s failed (peer probably gone): %s", device_id, exc)


async def on_ping(state: EngineHost, device_id: str, ping: PingMessage) -> None:
    """Echo the ping's timestamp back unchanged."""
    try:
        await state.send(device_id, PongMessage(ping.t))
    except (LookupError, ConnectionError) as exc:
        log.debug("pong send to %s failed: %s", device_id, exc)


async def on_pong(state: EngineHost, device_id: str, pong: PongMessage) -> None:
    """Record round-trip time when the pong answers our latest ping."""
    now = monotonic_ms()
    peer = state.peers.get(device_id)
    if peer is None:
        return
    if peer.state.last_ping_t == pong.t:
        peer.state.rtt_ms = max(now - pong.t, 0)