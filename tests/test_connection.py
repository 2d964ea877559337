import pytest

from meshcore.connection import (
    ConnectionTier,
    DiagEntry,
    DiagLevel,
    DropReason,
    EngineHost,
    EngineTimings,
    PeerConnection,
    PeerEvent,
    PeerEventKind,
    PeerStateData,
    PeerStatus,
    TierKind,
)


def test_peer_state_defaults():
    data = PeerStateData()
    assert data.status is PeerStatus.SIGHTED
    assert data.tier == ConnectionTier.steady()
    assert data.hello_attempt == 0
    assert data.rehandshake_attempt == 0
    assert data.pending_remote_candidates == []
    assert data.is_live() is False


@pytest.mark.parametrize(
    "status,live",
    [
        (PeerStatus.ACTIVE, True),
        (PeerStatus.SHELVED, True),
        (PeerStatus.HANDSHAKING, False),
        (PeerStatus.RECONNECTING, False),
    ],
)
def test_is_live(status, live):
    data = PeerStateData(status=status)
    assert data.is_live() is live


def test_status_wire_names_are_snake_case():
    assert PeerStatus.PENDING_APPROVAL.value == "pending_approval"
    assert PeerStatus("shelved") is PeerStatus.SHELVED


def test_tier_to_dict_is_tagged_by_kind():
    assert ConnectionTier.steady().to_dict() == {"kind": "steady"}
    assert ConnectionTier(TierKind.ICE_WATCHDOG).to_dict() == {"kind": "ice_watchdog"}
    tier = ConnectionTier(TierKind.REHANDSHAKE, attempt=2, at=5.0)
    assert tier.to_dict() == {"kind": "rehandshake", "attempt": 2}


def test_tier_round_trip_keeps_attempt():
    tier = ConnectionTier(TierKind.ROOM_REJOIN, attempt=3, at=1.0)
    back = ConnectionTier.from_dict(tier.to_dict())
    assert back.kind is TierKind.ROOM_REJOIN
    assert back.attempt == 3
    assert back.at is not None


def test_tier_unknown_kind_rejected():
    with pytest.raises(ValueError):
        ConnectionTier.from_dict({"kind": "warp_drive"})


def test_tier_counted_kind_requires_attempt():
    with pytest.raises(ValueError):
        ConnectionTier(TierKind.REHANDSHAKE)
    with pytest.raises(ValueError):
        ConnectionTier.from_dict({"kind": "rehandshake"})


def test_tier_steady_rejects_attempt():
    with pytest.raises(ValueError):
        ConnectionTier(TierKind.STEADY, attempt=1)


def test_peer_connections_do_not_share_state():
    a = PeerConnection("a")
    b = PeerConnection("b")
    a.state.label = "laptop"
    a.state.pending_remote_candidates.append("cand")
    assert b.state.label == ""
    assert b.state.pending_remote_candidates == []


def test_timings_reject_empty_schedule():
    with pytest.raises(ValueError):
        EngineTimings(rehandshake_backoff_ms_schedule=())


def test_timings_reject_bad_jitter():
    with pytest.raises(ValueError):
        EngineTimings(rehandshake_jitter_fraction=1.5)


@pytest.mark.asyncio
async def test_send_unknown_peer_raises():
    host = EngineHost("net", "me")
    with pytest.raises(LookupError):
        await host.send("ghost", "hi")


@pytest.mark.asyncio
async def test_send_without_sender_goes_to_outbox():
    host = EngineHost("net", "me")
    host.add_peer("a")
    await host.send("a", "hello")
    assert host.outbox == [("a", "hello")]


@pytest.mark.asyncio
async def test_send_uses_async_sender():
    sent = []

    async def sender(device_id, message):
        sent.append((device_id, message))

    host = EngineHost("net", "me", sender=sender)
    host.add_peer("a")
    await host.send("a", 42)
    assert sent == [("a", 42)]
    assert host.outbox == []


def test_log_diag_emits_entry():
    host = EngineHost("net", "me")
    entry = host.log_diag(DiagLevel.WARN, "ice", "boom", {"peer": "a"})
    assert isinstance(host.events[-1], DiagEntry)
    assert host.events[-1] is entry
    assert entry.network_id == "net"
    assert entry.detail == {"peer": "a"}


@pytest.mark.asyncio
async def test_drop_peer_removes_and_emits():
    closed = []

    class Session:
        def close(self):
            closed.append(True)

    host = EngineHost("net", "me")
    host.add_peer("a", Session())
    await host.drop_peer("a", DropReason.AUTH_FAILED)
    assert "a" not in host.peers
    assert closed == [True]
    dropped = [e for e in host.events if isinstance(e, PeerEvent)]
    assert len(dropped) == 1
    assert dropped[0].kind is PeerEventKind.DROPPED
    assert dropped[0].drop_reason is DropReason.AUTH_FAILED


@pytest.mark.asyncio
async def test_subscribe_receives_events():
    host = EngineHost("net", "me")
    queue = host.subscribe()
    host.log_diag(DiagLevel.INFO, "peer", "hello")
    event = queue.get_nowait()
    assert event.message == "hello"


def test_live_peer_ids_and_full_mesh_selector():
    host = EngineHost("net", "me")
    host.add_peer("a").state.status = PeerStatus.ACTIVE
    host.add_peer("b").state.status = PeerStatus.HANDSHAKING
    host.add_peer("c").state.status = PeerStatus.SHELVED
    live = host.live_peer_ids()
    assert sorted(live) == ["a", "c"]
    assert host.select_preferred("me", live) == {"a", "c"}