"""Per-peer connection state and the engine host that peer routines act on.

Each entry in :attr:`EngineHost.peers` is a :class:`PeerConnection`: the
mutable :class:`PeerStateData` (status, tier, watermarks, capabilities)
plus an optional transport session handle.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

log = logging.getLogger(__name__)


class PeerStatus(str, Enum):
    """Lifecycle of one peer connection."""

    SIGHTED = "sighted"
    HANDSHAKING = "handshaking"
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    SHELVED = "shelved"
    RECONNECTING = "reconnecting"
    OFFLINE = "offline"
    ERROR = "error"


_LIVE_STATUSES = frozenset({PeerStatus.ACTIVE, PeerStatus.SHELVED})


class TierKind(str, Enum):
    """Rung of the reconnection ladder."""

    STEADY = "steady"
    WAKE_PROBE = "wake_probe"
    ICE_WATCHDOG = "ice_watchdog"
    ICE_RESTART = "ice_restart"
    REHANDSHAKE = "rehandshake"
    ROOM_REJOIN = "room_rejoin"
    STOP_START = "stop_start"


_COUNTED_TIERS = frozenset({TierKind.REHANDSHAKE, TierKind.ROOM_REJOIN})
_TIMED_TIERS = frozenset(
    {TierKind.ICE_WATCHDOG, TierKind.ICE_RESTART, TierKind.REHANDSHAKE, TierKind.ROOM_REJOIN}
)


@dataclass(frozen=True)
class ConnectionTier:
    """Current ladder tier for a peer.

    ``attempt`` is carried by the rehandshake and room-rejoin tiers. ``at`` is
    a monotonic timestamp in seconds (watchdog start, restart start or next
    attempt time); it is local-only and never serialized.
    """

    kind: TierKind = TierKind.STEADY
    attempt: Optional[int] = None
    at: Optional[float] = None

    def __post_init__(self) -> None:
        try:
            kind = TierKind(self.kind)
        except ValueError as exc:
            raise ValueError(f"unknown tier kind: {self.kind!r}") from exc
        object.__setattr__(self, "kind", kind)
        if kind in _COUNTED_TIERS:
            if isinstance(self.attempt, bool) or not isinstance(self.attempt, int):
                raise ValueError(f"{kind.value} tier requires an integer attempt")
        elif self.attempt is not None:
            raise ValueError(f"{kind.value} tier takes no attempt")
        if kind in _TIMED_TIERS:
            if self.at is None:
                object.__setattr__(self, "at", time.monotonic())
        elif self.at is not None:
            raise ValueError(f"{kind.value} tier takes no timestamp")

    @classmethod
    def steady(cls) -> "ConnectionTier":
        return cls(TierKind.STEADY)

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind.value}
        if self.kind in _COUNTED_TIERS:
            out["attempt"] = self.attempt
        return out

    @classmethod
    def from_dict(cls, data: Mapping) -> "ConnectionTier":
        if not isinstance(data, Mapping) or "kind" not in data:
            raise ValueError("tier must be an object with a `kind` field")
        kind = TierKind(data["kind"])
        if kind in _COUNTED_TIERS:
            if "attempt" not in data:
                raise ValueError(f"{kind.value} tier is missing `attempt`")
            return cls(kind, attempt=data["attempt"])
        return cls(kind)


class DiagLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class DropReason(str, Enum):
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"
    AUTH_FAILED = "auth_failed"
    DENIED = "denied"


class PeerEventKind(str, Enum):
    AUTHENTICATED = "authenticated"
    APPROVED = "approved"
    SHELVED = "shelved"
    UNSHELVED = "unshelved"
    DROPPED = "dropped"


@dataclass
class PeerEvent:
    """A peer lifecycle event surfaced to embedders."""

    kind: PeerEventKind
    network_id: str
    device_id: str
    label: str = ""
    verification_code: str = ""
    capabilities: Optional[dict] = None
    rostered: bool = False
    reason: Optional[str] = None
    by_us: bool = False
    drop_reason: Optional[DropReason] = None


@dataclass
class DiagEntry:
    """One diagnostic log line."""

    ts: int
    network_id: str
    level: DiagLevel
    category: str
    message: str
    detail: dict = field(default_factory=dict)


MeshEvent = Union[PeerEvent, DiagEntry]


def now_unix_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class CandidateCounts:
    host: int = 0
    server_reflexive: int = 0
    peer_reflexive: int = 0
    relay: int = 0


@dataclass
class PeerDiag:
    """Per-peer counters surfaced for diagnostics."""

    hellos_sent: int = 0
    ice_restarts: int = 0
    local_candidates: CandidateCounts = field(default_factory=CandidateCounts)
    remote_candidates: CandidateCounts = field(default_factory=CandidateCounts)


@dataclass
class PeerStateData:
    """Mutable per-peer state. Timestamps are monotonic seconds."""

    status: PeerStatus = PeerStatus.SIGHTED
    tier: ConnectionTier = field(default_factory=ConnectionTier.steady)
    authenticated: bool = False
    local_approve_sent: bool = False
    remote_approve_seen: bool = False
    local_shelved: bool = False
    remote_shelved: bool = False
    label: str = ""
    capabilities: Optional[dict] = None
    nonce_sent: Optional[str] = None
    nonce_received: Optional[str] = None
    verification_code_sent: Optional[str] = None
    verification_code_received: Optional[str] = None
    last_recv_at: Optional[float] = None
    last_ping_sent_at: Optional[float] = None
    last_offer_sent_at: Optional[float] = None
    last_ping_t: Optional[int] = None
    rtt_ms: Optional[int] = None
    ice_disconnected_since: Optional[float] = None
    handshake_started_at: Optional[float] = None
    hello_attempt: int = 0
    rehandshake_attempt: int = 0
    ice_failed_count: int = 0
    no_turn_diag_emitted: bool = False
    selected_pair: Optional[Any] = None
    remote_description_set: bool = False
    pending_remote_candidates: list = field(default_factory=list)
    diag: PeerDiag = field(default_factory=PeerDiag)

    def is_live(self) -> bool:
        """True when the peer is active or shelved."""
        return self.status in _LIVE_STATUSES


@dataclass
class PeerConnection:
    device_id: str
    session: Optional[Any] = None
    state: PeerStateData = field(default_factory=PeerStateData)


@dataclass(frozen=True)
class EngineTimings:
    """Timing knobs for heartbeat, handshake and reconnection (milliseconds)."""

    heartbeat_interval_ms: int = 5_000
    heartbeat_timeout_ms: int = 15_000
    wake_detection_threshold_ms: int = 10_000
    handshake_timeout_ms: int = 15_000
    handshake_hello_retry_schedule_ms: tuple[int, ...] = (1_000, 3_000, 7_000)
    ice_disconnected_restart_ms: int = 3_000
    ice_restart_recovery_ms: int = 10_000
    reconnecting_grace_ms: int = 120_000
    rehandshake_backoff_ms_schedule: tuple[int, ...] = (1_000, 2_000, 5_000, 10_000, 30_000)
    rehandshake_jitter_fraction: float = 0.2
    rehandshake_rescue_attempts: int = 5

    def __post_init__(self) -> None:
        if not self.rehandshake_backoff_ms_schedule:
            raise ValueError("rehandshake backoff schedule must not be empty")
        if not 0.0 <= self.rehandshake_jitter_fraction <= 1.0:
            raise ValueError("jitter fraction must lie within [0, 1]")


Sender = Callable[[str, Any], Any]
TopologySelector = Callable[[str, list], Iterable[str]]
HandshakeStarter = Callable[["EngineHost", str], Awaitable[None]]


def _full_mesh(me: str, peers: list) -> Iterable[str]:
    return peers


class EngineHost:
    """Per-network engine state: peers, outbound sends, events and tasks.

    ``sender`` delivers a message to a peer; without one, sends are collected
    in :attr:`outbox`. ``topology`` picks the preferred peer set (full mesh by
    default). ``on_rehandshake`` restarts the handshake for a peer.
    """

    def __init__(
        self,
        network_id: str,
        local_id: str,
        *,
        label: str = "",
        timings: Optional[EngineTimings] = None,
        clock: Callable[[], float] = time.monotonic,
        sender: Optional[Sender] = None,
        topology: Optional[TopologySelector] = None,
        on_rehandshake: Optional[HandshakeStarter] = None,
        auto_approve: bool = False,
    ) -> None:
        self.network_id = network_id
        self.local_id = local_id
        self.label = label
        self.timings = timings or EngineTimings()
        self.clock = clock
        self.sender = sender
        self.topology = topology or _full_mesh
        self.on_rehandshake = on_rehandshake
        self.auto_approve = auto_approve
        self.peers: dict[str, PeerConnection] = {}
        self.rostered: set[str] = set()
        self.outbox: list[tuple[str, Any]] = []
        self.events: list[MeshEvent] = []
        self._subscribers: list[asyncio.Queue] = []
        self._tasks: set[asyncio.Task] = set()

    # ---- peers -------------------------------------------------------

    def add_peer(self, device_id: str, session: Any = None) -> PeerConnection:
        peer = PeerConnection(device_id, session)
        self.peers[device_id] = peer
        return peer

    def peer(self, device_id: str) -> Optional[PeerConnection]:
        return self.peers.get(device_id)

    def live_peer_ids(self) -> list[str]:
        return [pid for pid, peer in self.peers.items() if peer.state.is_live()]

    def is_rostered(self, device_id: str) -> bool:
        return device_id in self.rostered

    def select_preferred(self, me: str, active: list) -> set:
        return set(self.topology(me, list(active)))

    async def send(self, device_id: str, message: Any) -> None:
        """Send one message to a peer; raises LookupError for unknown peers."""
        if device_id not in self.peers:
            raise LookupError(f"peer {device_id} not found")
        if self.sender is None:
            self.outbox.append((device_id, message))
            return
        result = self.sender(device_id, message)
        if inspect.isawaitable(result):
            await result

    async def drop_peer(self, device_id: str, reason: DropReason) -> None:
        """Tear down a peer entry and emit a dropped event."""
        peer = self.peers.pop(device_id, None)
        if peer is None:
            return
        if peer.session is not None:
            close = getattr(peer.session, "close", None)
            if callable(close):
                result = close()
                if inspect.isawaitable(result):
                    await result
        self.log_diag(
            DiagLevel.INFO,
            "peer",
            f"peer dropped: {device_id} ({reason.value})",
            {"peer": device_id, "reason": reason.value},
        )
        self.emit(
            PeerEvent(
                PeerEventKind.DROPPED,
                self.network_id,
                device_id,
                label=peer.state.label,
                drop_reason=reason,
            )
        )

    async def restart_handshake(self, device_id: str) -> None:
        if self.on_rehandshake is None:
            log.debug("no handshake driver attached; skipping restart for %s", device_id)
            return
        await self.on_rehandshake(self, device_id)

    # ---- events ------------------------------------------------------

    def emit(self, event: MeshEvent) -> None:
        self.events.append(event)
        for queue in self._subscribers:
            queue.put_nowait(event)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def log_diag(
        self,
        level: DiagLevel,
        category: str,
        message: str,
        detail: Optional[dict] = None,
    ) -> DiagEntry:
        entry = DiagEntry(
            ts=now_unix_ms(),
            network_id=self.network_id,
            level=level,
            category=category,
            message=message,
            detail=dict(detail or {}),
        )
        log.log(_LOG_LEVELS[level], "[%s] %s", category, message)
        self.emit(entry)
        return entry

    # ---- background tasks --------------------------------------------

    def spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.warning("background task failed: %s", task.exception())

    async def wait_idle(self) -> None:
        """Wait until every spawned background task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def close(self) -> None:
        """Cancel every outstanding background task."""
        for task in list(self._tasks):
            task.cancel()


_LOG_LEVELS = {
    DiagLevel.DEBUG: logging.DEBUG,
    DiagLevel.INFO: logging.INFO,
    DiagLevel.WARN: logging.WARNING,
    DiagLevel.ERROR: logging.ERROR,
}