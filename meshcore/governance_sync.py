"""Signed governance ledger for one network and the handlers that keep it in sync.

The ledger records the network's kind (open or closed), the role held by
each member, the signed transition log, pending proposals and spawned
splits. Peers float proposals. Each signer adds an Ed25519 signature over a
canonical, domain-tagged payload. A proposal is ratified once its signer set
meets the quorum:

* a split needs only its proposer;
* in a closed network every owner must sign;
* in an open network every member must sign.

Any single deny kills a proposal.

The engine host must carry ``governance`` (a :class:`GovernanceLedger`) and
``signing_key`` (the 32-byte Ed25519 seed behind its ``local_id``). Ledger
keys are bare public keys; a ``-XXXXX`` display suffix on a device id is
stripped.
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Union

from .connection import DiagLevel, EngineHost
from .dirs import states_dir
from .handshake import _public_id, _pubkey_part, _sign, _signing_key, _verify

log = logging.getLogger(__name__)

SIGN_DOMAIN_TAG_STATE = "meshcore/network-state/v1|"

_SEND_ERRORS = (LookupError, OSError)


class NetworkKind(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Role(str, Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"


class TransitionKind(str, Enum):
    KIND_CHANGE = "kind_change"
    ROLE_GRANT = "role_grant"
    SPLIT = "split"


@dataclass(frozen=True)
class TransitionVariant:
    """What a transition changes: the network kind, a role, or a split."""

    kind: TransitionKind
    to: Optional[NetworkKind] = None
    target: Optional[str] = None
    role: Optional[Role] = None
    new_network_id: Optional[str] = None
    members: tuple = ()

    def __post_init__(self) -> None:
        kind = TransitionKind(self.kind)
        object.__setattr__(self, "kind", kind)
        object.__setattr__(self, "members", tuple(self.members))
        if kind is TransitionKind.KIND_CHANGE:
            if self.to is None:
                raise ValueError("kind_change requires `to`")
            object.__setattr__(self, "to", NetworkKind(self.to))
        elif kind is TransitionKind.ROLE_GRANT:
            if not self.target or self.role is None:
                raise ValueError("role_grant requires `target` and `role`")
            object.__setattr__(self, "role", Role(self.role))
        elif not self.new_network_id:
            raise ValueError("split requires `new_network_id`")

    @classmethod
    def kind_change(cls, to: NetworkKind) -> "TransitionVariant":
        return cls(TransitionKind.KIND_CHANGE, to=to)

    @classmethod
    def role_grant(cls, target: str, role: Role) -> "TransitionVariant":
        return cls(TransitionKind.ROLE_GRANT, target=target, role=role)

    @classmethod
    def split(cls, new_network_id: str, members: Iterable[str]) -> "TransitionVariant":
        return cls(TransitionKind.SPLIT, new_network_id=new_network_id, members=tuple(members))

    def to_dict(self) -> dict:
        out: dict = {"kind": self.kind.value}
        if self.kind is TransitionKind.KIND_CHANGE:
            out["to"] = self.to.value
        elif self.kind is TransitionKind.ROLE_GRANT:
            out["target"] = self.target
            out["role"] = self.role.value
        else:
            out["new_network_id"] = self.new_network_id
            out["members"] = list(self.members)
        return out

    @classmethod
    def from_dict(cls, data: Mapping) -> "TransitionVariant":
        if not isinstance(data, Mapping) or "kind" not in data:
            raise ValueError("transition variant must be an object with a `kind` field")
        return cls(
            TransitionKind(data["kind"]),
            to=data.get("to"),
            target=data.get("target"),
            role=data.get("role"),
            new_network_id=data.get("new_network_id"),
            members=tuple(data.get("members", ())),
        )


@dataclass
class Transition:
    """A ratified, signed change to the network state."""

    at: int
    variant: TransitionVariant
    signers: list = field(default_factory=list)
    signatures: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "at": self.at,
            "variant": self.variant.to_dict(),
            "signers": list(self.signers),
            "signatures": list(self.signatures),
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "Transition":
        return cls(
            at=int(data["at"]),
            variant=TransitionVariant.from_dict(data["variant"]),
            signers=list(data.get("signers", [])),
            signatures=list(data.get("signatures", [])),
        )


@dataclass
class Proposal:
    """A transition waiting for signatures."""

    id: str
    created_at: int
    proposer: str
    variant: TransitionVariant
    signers: list = field(default_factory=list)
    signatures: list = field(default_factory=list)
    deniers: list = field(default_factory=list)
    split_spawned: bool = False

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "created_at": self.created_at,
            "proposer": self.proposer,
            "variant": self.variant.to_dict(),
            "signers": list(self.signers),
            "signatures": list(self.signatures),
            "deniers": list(self.deniers),
            "split_spawned": self.split_spawned,
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "Proposal":
        return cls(
            id=data["id"],
            created_at=int(data["created_at"]),
            proposer=data["proposer"],
            variant=TransitionVariant.from_dict(data["variant"]),
            signers=list(data.get("signers", [])),
            signatures=list(data.get("signatures", [])),
            deniers=list(data.get("deniers", [])),
            split_spawned=bool(data.get("split_spawned", False)),
        )


class AckDecision(str, Enum):
    SIGN = "sign"
    DENY = "deny"


@dataclass(frozen=True)
class NetworkStateProposeMessage:
    proposal_id: str
    variant: TransitionVariant
    proposer: str
    created_at: int
    signature: str


@dataclass(frozen=True)
class NetworkStateAckMessage:
    proposal_id: str
    signer: str
    decision: AckDecision
    at: int
    signature: str


@dataclass(frozen=True)
class NetworkStateSplitMessage:
    parent_proposal_id: str
    new_network_id: str
    members: tuple
    proposer: str
    at: int
    signature: str


@dataclass(frozen=True)
class NetworkStateBroadcast:
    kind: NetworkKind
    transitions_count: int
    roster_root: str


GovernanceMessage = Union[
    NetworkStateProposeMessage,
    NetworkStateAckMessage,
    NetworkStateSplitMessage,
    NetworkStateBroadcast,
]


# ---- signing ----------------------------------------------------------


def _canonical(variant: TransitionVariant) -> str:
    return json.dumps(variant.to_dict(), sort_keys=True, separators=(",", ":"))


def transition_payload(network_id: str, variant: TransitionVariant) -> bytes:
    """Canonical bytes a signer signs for a transition on ``network_id``."""
    return f"{SIGN_DOMAIN_TAG_STATE}transition|{network_id}|{_canonical(variant)}".encode()


def deny_payload(network_id: str, proposal_id: str, signer: str) -> bytes:
    """Bytes a denier signs; distinct from any transition payload."""
    return f"{SIGN_DOMAIN_TAG_STATE}deny|{network_id}|{proposal_id}|{signer}".encode()


def sign_bytes(seed: bytes, payload: bytes) -> str:
    """Hex Ed25519 signature of ``payload`` with a 32-byte seed."""
    return _sign(bytes(seed), payload).hex()


def sign_transition(network_id: str, variant: TransitionVariant, seed: bytes) -> str:
    return sign_bytes(seed, transition_payload(network_id, variant))


def verify_signature(signer: str, payload: bytes, signature: str) -> bool:
    """Check a hex signature against the signer's hex public key."""
    try:
        public = bytes.fromhex(_pubkey_part(signer))
        raw = bytes.fromhex(signature)
    except ValueError:
        return False
    return _verify(public, payload, raw)


def device_id_for_seed(seed: bytes) -> str:
    """Hex public key for a 32-byte Ed25519 seed."""
    if len(seed) != 32:
        raise ValueError("seed must be 32 bytes")
    return _public_id(bytes(seed))


def derive_split_network_id(parent_network_id: str, members: Iterable[str]) -> str:
    """Deterministic id for a split: the same signers always land together."""
    joined = "\n".join(sorted(set(members)))
    digest = hashlib.sha256(f"{parent_network_id}\n{joined}".encode()).hexdigest()
    return f"{parent_network_id}-split-{digest[:16]}"


def roster_root(device_ids: Iterable[str]) -> str:
    """Order-independent digest of a roster's members."""
    joined = "\n".join(sorted({_pubkey_part(d) for d in device_ids}))
    return hashlib.sha256(joined.encode()).hexdigest()


# ---- ledger -----------------------------------------------------------


@dataclass
class GovernanceLedger:
    """Kind, roles, signed transitions, pending proposals and splits of a network."""

    network_id: str
    kind: NetworkKind = NetworkKind.OPEN
    roles: dict = field(default_factory=dict)
    transitions: list = field(default_factory=list)
    pending: list = field(default_factory=list)
    splits: list = field(default_factory=list)
    path: Optional[Path] = field(default=None, compare=False, repr=False)

    @classmethod
    def for_network(cls, network_id: str) -> "GovernanceLedger":
        """Load the ledger stored in the default states directory."""
        return cls.load(states_dir() / f"{network_id}.json", network_id)

    @classmethod
    def load(cls, path: Path, network_id: str) -> "GovernanceLedger":
        """Read a ledger from ``path``; a missing file yields a fresh open ledger."""
        path = Path(path)
        if not path.exists():
            return cls(network_id, path=path)
        ledger = cls.from_dict(json.loads(path.read_text(encoding="utf-8")))
        ledger.path = path
        return ledger

    def save(self) -> None:
        """Persist to :attr:`path`; a ledger without a path stays in memory."""
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
        if os.name == "posix":
            os.chmod(self.path, 0o600)

    def to_dict(self) -> dict:
        return {
            "network_id": self.network_id,
            "kind": self.kind.value,
            "roles": {k: v.value for k, v in self.roles.items()},
            "transitions": [t.to_dict() for t in self.transitions],
            "pending": [p.to_dict() for p in self.pending],
            "splits": [t.to_dict() for t in self.splits],
        }

    @classmethod
    def from_dict(cls, data: Mapping) -> "GovernanceLedger":
        return cls(
            network_id=data["network_id"],
            kind=NetworkKind(data.get("kind", NetworkKind.OPEN.value)),
            roles={k: Role(v) for k, v in data.get("roles", {}).items()},
            transitions=[Transition.from_dict(t) for t in data.get("transitions", [])],
            pending=[Proposal.from_dict(p) for p in data.get("pending", [])],
            splits=[Transition.from_dict(t) for t in data.get("splits", [])],
        )

    def copy(self) -> "GovernanceLedger":
        return copy.deepcopy(self)

    def role_of(self, device_id: str) -> Role:
        return self.roles.get(_pubkey_part(device_id), Role.MEMBER)

    def owners(self) -> set:
        return {k for k, role in self.roles.items() if role is Role.OWNER}

    def find(self, proposal_id: str) -> Optional[Proposal]:
        return next((p for p in self.pending if p.id == proposal_id), None)

    def signatures_valid(self, transition: Transition) -> bool:
        """Every signer's signature verifies over the transition payload."""
        if not transition.signers or len(transition.signers) != len(transition.signatures):
            return False
        payload = transition_payload(self.network_id, transition.variant)
        return all(
            verify_signature(signer, payload, sig)
            for signer, sig in zip(transition.signers, transition.signatures)
        )

    def quorum_met(self, transition: Transition, members: Iterable[str]) -> bool:
        signed = {_pubkey_part(s) for s in transition.signers}
        if not signed:
            return False
        if transition.variant.kind is TransitionKind.SPLIT:
            return True
        if self.kind is NetworkKind.CLOSED:
            owners = self.owners()
            return bool(owners) and owners <= signed
        return {_pubkey_part(m) for m in members} <= signed

    def apply(self, transition: Transition) -> None:
        """Fold a ratified transition into the state and append it to the log."""
        variant = transition.variant
        if variant.kind is TransitionKind.KIND_CHANGE:
            self.kind = variant.to
            # Founder election: the proposer (first signer) owns a new closed network.
            if variant.to is NetworkKind.CLOSED and not self.owners() and transition.signers:
                self.roles[_pubkey_part(transition.signers[0])] = Role.OWNER
        elif variant.kind is TransitionKind.ROLE_GRANT:
            self.roles[_pubkey_part(variant.target)] = variant.role
        else:
            self.splits.append(transition)
        self.transitions.append(transition)


# ---- engine helpers ---------------------------------------------------


def _ledger(state: EngineHost) -> GovernanceLedger:
    ledger = getattr(state, "governance", None)
    if not isinstance(ledger, GovernanceLedger):
        raise ValueError("engine host has no governance ledger")
    return ledger


def self_pubkey(state: EngineHost) -> str:
    return _pubkey_part(state.local_id)


def _short(value: str) -> str:
    return value[:12]


def _diag(state: EngineHost, level: DiagLevel, message: str) -> None:
    state.log_diag(level, "governance", message)


def _save_or_warn(state: EngineHost, ledger: GovernanceLedger, what: str) -> None:
    try:
        ledger.save()
    except OSError as exc:
        _diag(state, DiagLevel.WARN, f"persist after {what} failed: {exc}")


def active_peer_ids(state: EngineHost) -> list:
    """Live, authenticated peers that governance frames go to."""
    return [
        pid
        for pid, peer in state.peers.items()
        if peer.state.is_live() and peer.state.authenticated
    ]


async def broadcast(state: EngineHost, msg: GovernanceMessage) -> int:
    """Best-effort send to every active peer; returns how many sends succeeded."""
    sent = 0
    for peer_id in active_peer_ids(state):
        try:
            await state.send(peer_id, msg)
        except _SEND_ERRORS as exc:
            log.debug("governance broadcast to %s failed: %s", peer_id, exc)
            continue
        sent += 1
    return sent


def quorum_members(state: EngineHost, ledger: GovernanceLedger) -> list:
    """Roster members, role holders and the local device, deduplicated."""
    members = {_pubkey_part(d) for d in state.rostered}
    members.update(ledger.roles)
    members.add(self_pubkey(state))
    return sorted(members)


def snapshot(state: EngineHost) -> GovernanceLedger:
    """Independent copy of the host's governance state."""
    return _ledger(state).copy()


async def broadcast_state(state: EngineHost) -> None:
    """Send the current kind, log length and roster digest to every active peer."""
    ledger = _ledger(state)
    msg = NetworkStateBroadcast(
        kind=ledger.kind,
        transitions_count=len(ledger.transitions),
        roster_root=roster_root(state.rostered),
    )
    await broadcast(state, msg)


def _rostered_keys(state: EngineHost) -> set:
    return {_pubkey_part(d) for d in state.rostered}


async def try_ratify(state: EngineHost, proposal_id: str) -> bool:
    """Ratify a pending proposal if it meets quorum; drop it if denied.

    Returns True when the transition was applied. Raises OSError when the
    ledger cannot be persisted.
    """
    ledger = _ledger(state)
    proposal = ledger.find(proposal_id)
    if proposal is None:
        return False
    if proposal.deniers:
        ledger.pending.remove(proposal)
        ledger.save()
        return False

    candidate = Transition(
        at=proposal.created_at,
        variant=proposal.variant,
        signers=list(proposal.signers),
        signatures=list(proposal.signatures),
    )
    if not ledger.signatures_valid(candidate):
        return False
    if not ledger.quorum_met(candidate, quorum_members(state, ledger)):
        return False

    ledger.apply(candidate)
    ledger.pending = [p for p in ledger.pending if p.id != proposal_id]
    ledger.save()

    variant = candidate.variant
    if variant.kind is TransitionKind.ROLE_GRANT:
        # A role granted to a non-member makes them a member locally too.
        if _pubkey_part(variant.target) not in _rostered_keys(state):
            state.rostered.add(variant.target)
    elif variant.kind is TransitionKind.KIND_CHANGE and variant.to is NetworkKind.CLOSED:
        if self_pubkey(state) not in _rostered_keys(state):
            state.rostered.add(state.local_id)

    _diag(state, DiagLevel.INFO, f"ratified transition: {variant.to_dict()}")
    await broadcast_state(state)
    return True


async def _ratify_quietly(state: EngineHost, proposal_id: str) -> None:
    try:
        await try_ratify(state, proposal_id)
    except OSError as exc:
        _diag(state, DiagLevel.WARN, f"persist during ratification failed: {exc}")


# ---- inbound ----------------------------------------------------------


async def on_propose(
    state: EngineHost, peer_id: str, msg: NetworkStateProposeMessage
) -> None:
    """Record a peer's verified proposal so the local user can sign or deny."""
    peer_pubkey = _pubkey_part(peer_id)
    if msg.proposer != peer_pubkey:
        _diag(
            state,
            DiagLevel.WARN,
            f"rejecting proposal claiming proposer={_short(msg.proposer)} "
            f"from peer={_short(peer_pubkey)}",
        )
        return
    payload = transition_payload(state.network_id, msg.variant)
    if not verify_signature(msg.proposer, payload, msg.signature):
        _diag(state, DiagLevel.WARN, f"rejecting unsigned/forged proposal {msg.proposal_id}")
        return

    ledger = _ledger(state)
    if ledger.find(msg.proposal_id) is None:
        ledger.pending.append(
            Proposal(
                id=msg.proposal_id,
                created_at=msg.created_at,
                proposer=msg.proposer,
                variant=msg.variant,
                signers=[msg.proposer],
                signatures=[msg.signature],
            )
        )
        _save_or_warn(state, ledger, "inbound propose")
        _diag(
            state,
            DiagLevel.INFO,
            f"inbound proposal {msg.proposal_id} from {_short(msg.proposer)}",
        )
    await _ratify_quietly(state, msg.proposal_id)


async def on_ack(state: EngineHost, peer_id: str, msg: NetworkStateAckMessage) -> None:
    """Fold a peer's verified sign or deny into a pending proposal."""
    peer_pubkey = _pubkey_part(peer_id)
    if msg.signer != peer_pubkey:
        _diag(
            state,
            DiagLevel.WARN,
            f"rejecting ack claiming signer={_short(msg.signer)} "
            f"from peer={_short(peer_pubkey)}",
        )
        return

    ledger = _ledger(state)
    proposal = ledger.find(msg.proposal_id)
    if proposal is None:
        _diag(state, DiagLevel.DEBUG, f"ack for unknown proposal {msg.proposal_id}")
        return

    decision = AckDecision(msg.decision)
    if decision is AckDecision.SIGN:
        payload = transition_payload(state.network_id, proposal.variant)
    else:
        payload = deny_payload(state.network_id, msg.proposal_id, msg.signer)
    if not verify_signature(msg.signer, payload, msg.signature):
        _diag(state, DiagLevel.WARN, f"rejecting forged ack on {msg.proposal_id}")
        return

    if decision is AckDecision.SIGN:
        if msg.signer not in proposal.signers:
            proposal.signers.append(msg.signer)
            proposal.signatures.append(msg.signature)
    elif msg.signer not in proposal.deniers:
        proposal.deniers.append(msg.signer)
    _save_or_warn(state, ledger, "ack")
    await _ratify_quietly(state, msg.proposal_id)


async def on_split(state: EngineHost, peer_id: str, msg: NetworkStateSplitMessage) -> None:
    """Record a verified split spawned by the peer that proposed it."""
    if msg.proposer != _pubkey_part(peer_id):
        _diag(state, DiagLevel.WARN, "rejecting split with mismatched proposer")
        return
    variant = TransitionVariant.split(msg.new_network_id, msg.members)
    payload = transition_payload(state.network_id, variant)
    if not verify_signature(msg.proposer, payload, msg.signature):
        _diag(state, DiagLevel.WARN, "rejecting unsigned split")
        return

    ledger = _ledger(state)
    if any(s.variant.new_network_id == msg.new_network_id for s in ledger.splits):
        return
    ledger.apply(
        Transition(at=msg.at, variant=variant, signers=[msg.proposer], signatures=[msg.signature])
    )
    parent = ledger.find(msg.parent_proposal_id)
    if parent is not None:
        parent.split_spawned = True
    _save_or_warn(state, ledger, "split")
    _diag(
        state,
        DiagLevel.INFO,
        f"split → {msg.new_network_id} spawned by {_short(msg.proposer)}",
    )


async def on_state_broadcast(
    state: EngineHost, peer_id: str, msg: NetworkStateBroadcast
) -> None:
    """Note drift between our governance state and a peer's."""
    ledger = _ledger(state)
    local_count = len(ledger.transitions)
    if ledger.kind is not NetworkKind(msg.kind) or local_count != msg.transitions_count:
        _diag(
            state,
            DiagLevel.INFO,
            f"governance drift with {_short(peer_id)}: local "
            f"{ledger.kind.value}/{local_count} vs theirs "
            f"{NetworkKind(msg.kind).value}/{msg.transitions_count}",
        )