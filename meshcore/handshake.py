"""Hello → auth_response → approve handshake between two peers.

When the data channel opens, each side sends a ``hello`` carrying a fresh
nonce and verification code. The receiver signs the domain-tagged payload
``tag || nonce || signer_id || verifier_id`` with its Ed25519 key and replies
with ``auth_response``. The originator verifies that signature against the
nonce it sent. Approval follows, either automatically (auto-approve or
rostered peer) or through the user.

The engine host must carry ``signing_key``: the 32-byte Ed25519 seed whose
hex-encoded public key is the host's ``local_id``. Device ids may carry a
``-XXXXX`` display suffix; only the part before the first ``-`` is the key.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

from .connection import (
    ConnectionTier,
    DiagLevel,
    DropReason,
    EngineHost,
    PeerEvent,
    PeerEventKind,
    PeerStatus,
)
from .ladder import reevaluate_topology

log = logging.getLogger(__name__)

PROTOCOL_VERSION = 1
SIGN_DOMAIN_TAG = b"meshcore/handshake/v1\x00"
ADVERTISED_FEATURES = ("network_state_v1",)
APP_VERSION = "0.1.3"

_SEND_ERRORS = (LookupError, OSError)


# ---- wire messages ----------------------------------------------------


@dataclass(frozen=True)
class HelloMessage:
    """First frame on a fresh data channel."""

    protocol: int
    device_id: str
    label: str
    nonce: str
    verification_code: str
    capabilities: Optional[dict] = None
    max_connections: Optional[int] = None
    features: tuple = field(default_factory=tuple)
    app_version: Optional[str] = None


@dataclass(frozen=True)
class AuthResponseMessage:
    """Hex-encoded Ed25519 signature over the handshake payload."""

    signature: str


@dataclass(frozen=True)
class ApproveMessage:
    """The sender has approved the link."""


@dataclass(frozen=True)
class DenyMessage:
    """The sender refuses the link."""

    reason: Optional[str] = None


# ---- Ed25519 ----------------------------------------------------------

_P = 2**255 - 19
_Q = 2**252 + 27742317777372353535851937790883648493
_D = -121665 * pow(121666, _P - 2, _P) % _P
_SQRT_M1 = pow(2, (_P - 1) // 4, _P)


def _inv(x: int) -> int:
    return pow(x, _P - 2, _P)


def _point_add(a: tuple, b: tuple) -> tuple:
    pa = (a[1] - a[0]) * (b[1] - b[0]) % _P
    pb = (a[1] + a[0]) * (b[1] + b[0]) % _P
    pc = 2 * a[3] * b[3] * _D % _P
    pd = 2 * a[2] * b[2] % _P
    e, f, g, h = pb - pa, pd - pc, pd + pc, pb + pa
    return (e * f % _P, g * h % _P, f * g % _P, e * h % _P)


def _point_mul(scalar: int, point: tuple) -> tuple:
    result = (0, 1, 1, 0)
    while scalar > 0:
        if scalar & 1:
            result = _point_add(result, point)
        point = _point_add(point, point)
        scalar >>= 1
    return result


def _point_equal(a: tuple, b: tuple) -> bool:
    return (a[0] * b[2] - b[0] * a[2]) % _P == 0 and (a[1] * b[2] - b[1] * a[2]) % _P == 0


def _recover_x(y: int, sign: int) -> Optional[int]:
    if y >= _P:
        return None
    x2 = (y * y - 1) * _inv(_D * y * y + 1) % _P
    if x2 == 0:
        return None if sign else 0
    x = pow(x2, (_P + 3) // 8, _P)
    if (x * x - x2) % _P != 0:
        x = x * _SQRT_M1 % _P
    if (x * x - x2) % _P != 0:
        return None
    if (x & 1) != sign:
        x = _P - x
    return x


_GY = 4 * _inv(5) % _P
_GX = _recover_x(_GY, 0)
_G = (_GX, _GY, 1, _GX * _GY % _P)


def _compress(point: tuple) -> bytes:
    zinv = _inv(point[2])
    x = point[0] * zinv % _P
    y = point[1] * zinv % _P
    return (y | ((x & 1) << 255)).to_bytes(32, "little")


def _decompress(raw: bytes) -> Optional[tuple]:
    if len(raw) != 32:
        return None
    y = int.from_bytes(raw, "little")
    sign = y >> 255
    y &= (1 << 255) - 1
    x = _recover_x(y, sign)
    if x is None:
        return None
    return (x, y, 1, x * y % _P)


def _hash_mod_q(data: bytes) -> int:
    return int.from_bytes(hashlib.sha512(data).digest(), "little") % _Q


def _expand(seed: bytes) -> tuple[int, bytes]:
    digest = hashlib.sha512(seed).digest()
    a = int.from_bytes(digest[:32], "little")
    a &= (1 << 254) - 8
    a |= 1 << 254
    return a, digest[32:]


def _public_key(seed: bytes) -> bytes:
    a, _ = _expand(seed)
    return _compress(_point_mul(a, _G))


def _public_id(seed: bytes) -> str:
    """Device id (hex public key) for a 32-byte seed."""
    return _public_key(seed).hex()


def _sign(seed: bytes, message: bytes) -> bytes:
    a, prefix = _expand(seed)
    public = _compress(_point_mul(a, _G))
    r = _hash_mod_q(prefix + message)
    encoded_r = _compress(_point_mul(r, _G))
    h = _hash_mod_q(encoded_r + public + message)
    s = (r + h * a) % _Q
    return encoded_r + s.to_bytes(32, "little")


def _verify(public: bytes, message: bytes, signature: bytes) -> bool:
    if len(signature) != 64:
        return False
    point_a = _decompress(public)
    if point_a is None:
        return False
    encoded_r = signature[:32]
    point_r = _decompress(encoded_r)
    if point_r is None:
        return False
    s = int.from_bytes(signature[32:], "little")
    if s >= _Q:
        return False
    h = _hash_mod_q(encoded_r + public + message)
    return _point_equal(_point_mul(s, _G), _point_add(point_r, _point_mul(h, point_a)))


# ---- helpers ----------------------------------------------------------


def _pubkey_part(device_id: str) -> str:
    return device_id.split("-", 1)[0]


def _short(device_id: str) -> str:
    return device_id[:12]


def _handshake_payload(nonce: str, signer_id: str, verifier_id: str) -> bytes:
    return SIGN_DOMAIN_TAG + nonce.encode() + signer_id.encode() + verifier_id.encode()


def _signing_key(state: EngineHost) -> bytes:
    key = getattr(state, "signing_key", None)
    if not isinstance(key, (bytes, bytearray)) or len(key) != 32:
        raise ValueError("engine host has no 32-byte signing_key")
    return bytes(key)


def _verify_peer(device_id: str, payload: bytes, signature_hex: str) -> bool:
    try:
        public = bytes.fromhex(_pubkey_part(device_id))
        signature = bytes.fromhex(signature_hex)
    except ValueError:
        return False
    return _verify(public, payload, signature)


def _generate_code() -> str:
    return f"{secrets.randbelow(10**6):06d}"


def fresh_nonce() -> str:
    """32 random bytes, base32 without padding, lower case."""
    raw = base64.b32encode(secrets.token_bytes(32)).decode("ascii")
    return raw.rstrip("=").lower()


# ---- handshake --------------------------------------------------------


async def initiate(state: EngineHost, device_id: str) -> None:
    """Send the first hello and schedule retries plus the timeout watchdog."""
    nonce = fresh_nonce()
    code = _generate_code()
    hello = HelloMessage(
        protocol=PROTOCOL_VERSION,
        device_id=state.local_id,
        label=state.label,
        nonce=nonce,
        verification_code=code,
        capabilities={},
        features=ADVERTISED_FEATURES,
        app_version=APP_VERSION,
    )
    peer = state.peers.get(device_id)
    if peer is not None:
        data = peer.state
        data.status = PeerStatus.HANDSHAKING
        data.nonce_sent = nonce
        data.verification_code_sent = code
        data.handshake_started_at = state.clock()
        data.hello_attempt = 1
        data.diag.hellos_sent += 1
    state.log_diag(
        DiagLevel.INFO,
        "handshake",
        f"sending hello to {_short(device_id)} (code: {code})",
        {"peer": device_id, "code": code},
    )
    try:
        await state.send(device_id, hello)
    except _SEND_ERRORS as exc:
        state.log_diag(
            DiagLevel.ERROR,
            "handshake",
            f"send hello to {_short(device_id)} failed: {exc}",
            {"peer": device_id, "error": str(exc)},
        )
    state.spawn(_hello_retries(state, device_id, hello))
    state.spawn(_watchdog(state, device_id))


async def _hello_retries(state: EngineHost, device_id: str, hello: HelloMessage) -> None:
    # Replaying the same hello is safe: the receiver overwrites its nonce
    # slot and the reply signature is deterministic.
    for delay_ms in state.timings.handshake_hello_retry_schedule_ms:
        await asyncio.sleep(delay_ms / 1000.0)
        peer = state.peers.get(device_id)
        if peer is None:
            return
        if peer.state.status is not PeerStatus.HANDSHAKING or peer.state.authenticated:
            return
        try:
            await state.send(device_id, hello)
        except _SEND_ERRORS as exc:
            log.debug("hello retry send to %s failed: %s", device_id, exc)
        peer = state.peers.get(device_id)
        if peer is not None:
            peer.state.hello_attempt += 1
            peer.state.diag.hellos_sent += 1


async def _watchdog(state: EngineHost, device_id: str) -> None:
    timeout_ms = state.timings.handshake_timeout_ms
    await asyncio.sleep(timeout_ms / 1000.0)
    peer = state.peers.get(device_id)
    if peer is None:
        return
    data = peer.state
    started = data.handshake_started_at
    should_fail = (
        not data.authenticated
        and data.status is PeerStatus.HANDSHAKING
        and started is not None
        and (state.clock() - started) * 1000 >= timeout_ms
    )
    if should_fail:
        state.log_diag(
            DiagLevel.WARN,
            "handshake",
            f"handshake watchdog fired for {device_id} — tearing down",
            {"peer": device_id},
        )
        await state.drop_peer(device_id, DropReason.HEARTBEAT_TIMEOUT)


async def on_hello(state: EngineHost, device_id: str, hello: HelloMessage) -> None:
    """Record the peer's nonce and code, then reply with a signed auth_response."""
    if _pubkey_part(hello.device_id) != _pubkey_part(device_id):
        state.log_diag(
            DiagLevel.ERROR,
            "handshake",
            f"hello from {_short(device_id)} claimed a different id "
            f"({_short(hello.device_id)}) — dropping",
            {"connection_peer": device_id, "claimed_peer": hello.device_id},
        )
        await state.drop_peer(device_id, DropReason.AUTH_FAILED)
        return

    peer = state.peers.get(device_id)
    if peer is not None:
        data = peer.state
        data.nonce_received = hello.nonce
        data.verification_code_received = hello.verification_code
        data.label = hello.label
        if hello.capabilities is not None:
            data.capabilities = dict(hello.capabilities)

    state.log_diag(
        DiagLevel.INFO,
        "handshake",
        f"hello received from {_short(device_id)} "
        f"(label: {hello.label!r}, code: {hello.verification_code})",
        {"peer": device_id, "label": hello.label, "code": hello.verification_code},
    )

    payload = _handshake_payload(
        hello.nonce, _pubkey_part(state.local_id), _pubkey_part(device_id)
    )
    signature = _sign(_signing_key(state), payload).hex()
    try:
        await state.send(device_id, AuthResponseMessage(signature))
    except _SEND_ERRORS as exc:
        state.log_diag(
            DiagLevel.ERROR,
            "handshake",
            f"send auth_response to {_short(device_id)} failed: {exc}",
            {"peer": device_id, "error": str(exc)},
        )
        return
    log.debug("responded to hello from %s", device_id)


async def on_auth_response(
    state: EngineHost, device_id: str, resp: AuthResponseMessage
) -> None:
    """Verify the peer's signature over our nonce; authenticate or drop."""
    peer = state.peers.get(device_id)
    if peer is None:
        return
    my_nonce = peer.state.nonce_sent
    label = peer.state.label
    verification_code = peer.state.verification_code_received or ""
    if my_nonce is None:
        log.warning("auth_response from %s without having sent hello", device_id)
        return

    payload = _handshake_payload(
        my_nonce, _pubkey_part(device_id), _pubkey_part(state.local_id)
    )
    if not _verify_peer(device_id, payload, resp.signature):
        log.warning("auth_response signature from %s did not verify", device_id)
        await state.drop_peer(device_id, DropReason.AUTH_FAILED)
        return

    peer = state.peers.get(device_id)
    if peer is None:
        return
    data = peer.state
    data.authenticated = True
    data.status = PeerStatus.PENDING_APPROVAL
    rostered = state.is_rostered(device_id)
    auto_approve = state.auto_approve or rostered
    capabilities = dict(data.capabilities or {})

    if not auto_approve:
        mode = "awaiting user approval"
    elif rostered:
        mode = "rostered → auto-approve"
    else:
        mode = "auto-approve enabled"
    state.log_diag(
        DiagLevel.INFO,
        "handshake",
        f"auth ok with {device_id} ({mode})",
        {"peer": device_id, "rostered": rostered, "auto_approve": auto_approve},
    )
    state.emit(
        PeerEvent(
            PeerEventKind.AUTHENTICATED,
            state.network_id,
            device_id,
            label=label,
            verification_code=verification_code,
            capabilities=capabilities,
            rostered=rostered,
        )
    )
    if auto_approve:
        await send_local_approve(state, device_id)


async def on_approve(state: EngineHost, device_id: str) -> None:
    """Note the remote approve; go active once both sides have approved."""
    peer = state.peers.get(device_id)
    if peer is None:
        return
    data = peer.state
    data.remote_approve_seen = True
    if not (data.local_approve_sent and data.remote_approve_seen):
        return
    data.status = PeerStatus.ACTIVE
    data.tier = ConnectionTier.steady()
    data.ice_failed_count = 0
    data.no_turn_diag_emitted = False
    state.log_diag(
        DiagLevel.INFO, "peer", f"peer active: {device_id}", {"peer": device_id}
    )
    state.emit(
        PeerEvent(PeerEventKind.APPROVED, state.network_id, device_id, label=data.label)
    )
    await reevaluate_topology(state)


async def on_deny(state: EngineHost, device_id: str, deny: DenyMessage) -> None:
    """The peer refused us; tear the link down."""
    state.log_diag(
        DiagLevel.WARN,
        "auth",
        f"peer denied us: {device_id} (reason: {deny.reason!r})",
        {"peer": device_id, "reason": repr(deny.reason)},
    )
    await state.drop_peer(device_id, DropReason.DENIED)


async def send_local_approve(state: EngineHost, device_id: str) -> None:
    """Send our approve frame once, then run the approve transition."""
    peer = state.peers.get(device_id)
    if peer is None or peer.state.local_approve_sent:
        return
    peer.state.local_approve_sent = True
    try:
        await state.send(device_id, ApproveMessage())
    except _SEND_ERRORS as exc:
        log.warning("send approve to %s failed: %s", device_id, exc)
        return
    await on_approve(state, device_id)