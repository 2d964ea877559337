import pytest

from meshcore.connection import (
    ConnectionTier,
    EngineHost,
    EngineTimings,
    PeerEvent,
    PeerEventKind,
    PeerStatus,
    TierKind,
)
from meshcore.ladder import (
    ShelveMessage,
    UnshelveMessage,
    escalate_to_rehandshake,
    jittered_delay_ms,
    reconnect_prune_tick,
    reevaluate_topology,
)


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def peer_events(host, kind):
    return [e for e in host.events if isinstance(e, PeerEvent) and e.kind is kind]


def test_jittered_delay_stays_in_range():
    for _ in range(100):
        v = jittered_delay_ms(10_000, 0.2)
        assert 8_000 <= v <= 12_000, f"out of range: {v}"


def test_jittered_delay_zero_base_returns_zero():
    for _ in range(20):
        assert jittered_delay_ms(0, 0.2) == 0


@pytest.mark.asyncio
async def test_reevaluate_shelves_non_preferred():
    host = EngineHost("net", "me", topology=lambda me, peers: ["b"])
    host.add_peer("a").state.status = PeerStatus.ACTIVE
    host.add_peer("b").state.status = PeerStatus.ACTIVE

    await reevaluate_topology(host)

    assert host.peers["a"].state.status is PeerStatus.SHELVED
    assert host.peers["a"].state.local_shelved is True
    assert host.peers["b"].state.status is PeerStatus.ACTIVE
    assert host.outbox == [("a", ShelveMessage(reason="topology-rebalance"))]
    shelved = peer_events(host, PeerEventKind.SHELVED)
    assert [e.device_id for e in shelved] == ["a"]
    assert shelved[0].by_us is True


@pytest.mark.asyncio
async def test_reevaluate_is_idempotent():
    host = EngineHost("net", "me", topology=lambda me, peers: ["b"])
    host.add_peer("a").state.status = PeerStatus.ACTIVE
    host.add_peer("b").state.status = PeerStatus.ACTIVE
    await reevaluate_topology(host)
    await reevaluate_topology(host)
    assert len(host.outbox) == 1


@pytest.mark.asyncio
async def test_reevaluate_unshelves_when_preferred_again():
    preferred = {"b"}
    host = EngineHost("net", "me", topology=lambda me, peers: preferred)
    host.add_peer("a").state.status = PeerStatus.ACTIVE
    host.add_peer("b").state.status = PeerStatus.ACTIVE
    await reevaluate_topology(host)
    preferred.add("a")
    await reevaluate_topology(host)
    assert host.peers["a"].state.status is PeerStatus.ACTIVE
    assert host.peers["a"].state.local_shelved is False
    assert host.outbox[-1] == ("a", UnshelveMessage())
    assert len(peer_events(host, PeerEventKind.UNSHELVED)) == 1


@pytest.mark.asyncio
async def test_reevaluate_without_live_peers_does_nothing():
    host = EngineHost("net", "me", topology=lambda me, peers: [])
    host.add_peer("a").state.status = PeerStatus.HANDSHAKING
    await reevaluate_topology(host)
    assert host.outbox == []
    assert host.peers["a"].state.local_shelved is False


@pytest.mark.asyncio
async def test_escalate_schedules_rehandshake():
    calls = []

    async def restart(host, device_id):
        calls.append(device_id)

    timings = EngineTimings(rehandshake_backoff_ms_schedule=(0,), rehandshake_rescue_attempts=3)
    host = EngineHost("net", "me", timings=timings, clock=FakeClock(5.0), on_rehandshake=restart)
    host.add_peer("a").state.status = PeerStatus.ACTIVE

    await escalate_to_rehandshake(host, "a")
    data = host.peers["a"].state
    assert data.status is PeerStatus.RECONNECTING
    assert data.rehandshake_attempt == 1
    assert data.tier.kind is TierKind.REHANDSHAKE
    assert data.tier.attempt == 1

    await host.wait_idle()
    assert calls == ["a"]


@pytest.mark.asyncio
async def test_escalate_applies_jitter_to_next_attempt():
    timings = EngineTimings(
        rehandshake_backoff_ms_schedule=(1_000,), rehandshake_jitter_fraction=0.2
    )
    host = EngineHost("net", "me", timings=timings, clock=FakeClock(100.0))
    host.add_peer("a").state.status = PeerStatus.ACTIVE
    await escalate_to_rehandshake(host, "a")
    next_at = host.peers["a"].state.tier.at
    host.close()
    await host.wait_idle()
    assert 100.8 <= next_at <= 101.2


@pytest.mark.asyncio
async def test_escalate_exhausted_moves_to_room_rejoin():
    calls = []

    async def restart(host, device_id):
        calls.append(device_id)

    timings = EngineTimings(rehandshake_backoff_ms_schedule=(0,), rehandshake_rescue_attempts=1)
    host = EngineHost("net", "me", timings=timings, on_rehandshake=restart)
    peer = host.add_peer("a")
    peer.state.rehandshake_attempt = 1

    await escalate_to_rehandshake(host, "a")
    await host.wait_idle()
    assert peer.state.status is PeerStatus.OFFLINE
    assert peer.state.tier.kind is TierKind.ROOM_REJOIN
    assert peer.state.tier.attempt == 1
    assert calls == []


@pytest.mark.asyncio
async def test_escalate_unknown_peer_is_noop():
    host = EngineHost("net", "me")
    await escalate_to_rehandshake(host, "ghost")
    await host.wait_idle()
    assert host.events == []
    assert host.peers == {}


@pytest.mark.asyncio
async def test_prune_drops_peers_past_grace():
    clock = FakeClock(0.0)
    timings = EngineTimings(reconnecting_grace_ms=1_000)
    host = EngineHost("net", "me", timings=timings, clock=clock)
    stale = host.add_peer("stale").state
    stale.status = PeerStatus.RECONNECTING
    stale.tier = ConnectionTier(TierKind.REHANDSHAKE, attempt=1, at=0.0)
    fresh = host.add_peer("fresh").state
    fresh.status = PeerStatus.OFFLINE
    fresh.tier = ConnectionTier(TierKind.ROOM_REJOIN, attempt=1, at=1.5)
    live = host.add_peer("live").state
    live.status = PeerStatus.ACTIVE
    live.tier = ConnectionTier(TierKind.REHANDSHAKE, attempt=1, at=0.0)

    clock.now = 2.0
    await reconnect_prune_tick(host)

    assert sorted(host.peers) == ["fresh", "live"]
    dropped = peer_events(host, PeerEventKind.DROPPED)
    assert [e.device_id for e in dropped] == ["stale"]


@pytest.mark.asyncio
async def test_prune_ignores_steady_tier():
    clock = FakeClock(1_000.0)
    host = EngineHost("net", "me", timings=EngineTimings(reconnecting_grace_ms=10), clock=clock)
    host.add_peer("a").state.status = PeerStatus.RECONNECTING
    await reconnect_prune_tick(host)
    assert "a" in host.peers