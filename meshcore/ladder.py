"""Reconnection ladder: topology shelving, re-handshake escalation, pruning.

Escalations are per-peer and idempotent; the engine tolerates being told
to escalate twice.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

from .connection import (
    ConnectionTier,
    DiagLevel,
    DropReason,
    EngineHost,
    PeerEvent,
    PeerEventKind,
    PeerStatus,
    TierKind,
)

log = logging.getLogger(__name__)

TOPOLOGY_REBALANCE = "topology-rebalance"


@dataclass(frozen=True)
class ShelveMessage:
    """Ask the peer to treat the link as a heartbeat-only path."""

    reason: Optional[str] = None


@dataclass(frozen=True)
class UnshelveMessage:
    """Promote a shelved link back to active."""


def jittered_delay_ms(base_ms: int, fraction: float) -> int:
    """``base_ms`` shifted by a uniform random amount within ±``fraction``."""
    signed = random.uniform(-1.0, 1.0)
    delta = base_ms * fraction * signed
    return int(max(base_ms + delta, 0.0))


async def reevaluate_topology(state: EngineHost) -> None:
    """Re-run the topology selector and send shelve/unshelve for any change."""
    active = state.live_peer_ids()
    if not active:
        return
    preferred = state.select_preferred(state.local_id, active)

    for peer_id in active:
        peer = state.peers.get(peer_id)
        if peer is None:
            continue
        should_be_shelved = peer_id not in preferred
        data = peer.state
        prev = data.local_shelved
        data.local_shelved = should_be_shelved
        if should_be_shelved and data.status is PeerStatus.ACTIVE:
            data.status = PeerStatus.SHELVED
        elif not should_be_shelved and data.status is PeerStatus.SHELVED:
            data.status = PeerStatus.ACTIVE
        if prev != should_be_shelved:
            await _send_shelve_unshelve(state, peer_id, should_be_shelved)


async def _send_shelve_unshelve(state: EngineHost, device_id: str, shelved: bool) -> None:
    msg = ShelveMessage(reason=TOPOLOGY_REBALANCE) if shelved else UnshelveMessage()
    try:
        await state.send(device_id, msg)
    except (LookupError, ConnectionError) as exc:
        log.debug("shelve/unshelve send to %s failed: %s", device_id, exc)
    if shelved:
        event = PeerEvent(
            PeerEventKind.SHELVED,
            state.network_id,
            device_id,
            reason=TOPOLOGY_REBALANCE,
            by_us=True,
        )
    else:
        event = PeerEvent(PeerEventKind.UNSHELVED, state.network_id, device_id, by_us=True)
    state.emit(event)


async def escalate_to_rehandshake(state: EngineHost, device_id: str) -> None:
    """Schedule a re-handshake for one peer, or give up to a room rejoin."""
    peer = state.peers.get(device_id)
    if peer is None:
        return
    data = peer.state
    timings = state.timings
    if data.rehandshake_attempt >= timings.rehandshake_rescue_attempts:
        state.log_diag(
            DiagLevel.WARN,
            "ladder",
            f"rehandshake attempts exhausted for {device_id} — escalating to Tier 5",
            {"peer": device_id},
        )
        data.tier = ConnectionTier(TierKind.ROOM_REJOIN, attempt=1, at=state.clock())
        data.status = PeerStatus.OFFLINE
        return

    data.rehandshake_attempt += 1
    data.status = PeerStatus.RECONNECTING
    attempt = data.rehandshake_attempt
    schedule = timings.rehandshake_backoff_ms_schedule
    base = schedule[min(attempt - 1, len(schedule) - 1)]
    jittered = jittered_delay_ms(base, timings.rehandshake_jitter_fraction)
    data.tier = ConnectionTier(
        TierKind.REHANDSHAKE, attempt=attempt, at=state.clock() + jittered / 1000.0
    )
    state.spawn(_run_rehandshake(state, device_id, attempt))


async def _run_rehandshake(state: EngineHost, device_id: str, attempt: int) -> None:
    peer = state.peers.get(device_id)
    if peer is None:
        return
    tier = peer.state.tier
    delay = 0.0
    if tier.kind is TierKind.REHANDSHAKE and tier.at is not None:
        delay = max(tier.at - state.clock(), 0.0)
    await asyncio.sleep(delay)
    state.log_diag(
        DiagLevel.INFO,
        "ladder",
        f"Tier 4 re-handshake attempt {attempt} for {device_id}",
        {"peer": device_id, "attempt": attempt},
    )
    await state.restart_handshake(device_id)


async def reconnect_prune_tick(state: EngineHost) -> None:
    """Drop reconnecting or offline peers that outlived the grace window."""
    now = state.clock()
    grace_ms = state.timings.reconnecting_grace_ms
    prune = []
    for peer_id, peer in state.peers.items():
        data = peer.state
        if data.status not in (PeerStatus.RECONNECTING, PeerStatus.OFFLINE):
            continue
        if data.tier.kind not in (TierKind.REHANDSHAKE, TierKind.ROOM_REJOIN):
            continue
        started = data.tier.at
        if started is None:
            continue
        if int(max(now - started, 0.0) * 1000) > grace_ms:
            prune.append(peer_id)
    for peer_id in prune:
        log.debug("pruning stale reconnecting entry %s", peer_id)
        await state.drop_peer(peer_id, DropReason.HEARTBEAT_TIMEOUT)