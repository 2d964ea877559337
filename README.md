# meshcore

The transport-independent core of a peer-to-peer mesh node, written as a
plain asyncio library with no third-party runtime dependencies.

## Modules

- **`meshcore.dirs`**: where state lives on disk. `data_dir()` is
  `$MESHCORE_HOME` when that is set and not blank, otherwise
  `~/.meshcore`; `config_path()`, `rosters_dir()`, `states_dir()`,
  `secrets_dir()` and `updates_dir()` sit beneath it. Nothing is
  created by these functions. `DataDirError` is raised when no home
  directory can be found.
- **`meshcore.connection`**: per-peer state (`PeerStatus`,
  `PeerStateData`, `PeerConnection`, `PeerDiag`), the reconnection
  tiers (`TierKind`, `ConnectionTier`), events (`PeerEvent`,
  `DiagEntry`), timing knobs (`EngineTimings`) and `EngineHost`, the
  per-network state every other module acts on.
- **`meshcore.handshake`**: the hello → auth_response → approve
  exchange. Each side signs the other's nonce with Ed25519 (implemented
  with the standard library); a peer becomes `ACTIVE` once both sides
  have approved. Hello retries and a timeout watchdog run as background
  tasks.
- **`meshcore.heartbeat`**: `tick()` pings every live peer and escalates
  peers silent past the heartbeat timeout plus the wake-detection
  buffer; `on_ping` / `on_pong` echo and measure round-trip time.
- **`meshcore.ladder`**: `reevaluate_topology()` shelves and unshelves
  peers according to the host's topology selector;
  `escalate_to_rehandshake()` schedules a jittered re-handshake or gives
  up to the room-rejoin tier; `reconnect_prune_tick()` drops peers that
  stayed reconnecting or offline past the grace window.
- **`meshcore.governance_sync`**: the signed governance ledger
  (`GovernanceLedger`, `TransitionVariant`, `Transition`, `Proposal`)
  and the handlers for inbound governance frames.

## Setting up a host

```python
import secrets

from meshcore import handshake
from meshcore.connection import EngineHost
from meshcore.governance_sync import GovernanceLedger, device_id_for_seed

seed = secrets.token_bytes(32)
host = EngineHost(
    "demo-net",
    device_id_for_seed(seed),
    label="laptop",
    auto_approve=True,
    on_rehandshake=handshake.initiate,
)
host.signing_key = seed                       # needed by handshake and governance
host.governance = GovernanceLedger("demo-net")  # needed by governance_sync
```

Without a `sender`, every outgoing message is appended to `host.outbox`
as `(device_id, message)`. Pass `sender=` (a plain or async callable
taking `(device_id, message)`) to deliver frames yourself. Events are
kept in `host.events`, and `host.subscribe()` returns an
`asyncio.Queue` that receives each new one.

## Driving a peer

```python
async def connect(host, peer_id):
    host.add_peer(peer_id)
    await handshake.initiate(host, peer_id)   # sends HelloMessage
```

Feed inbound frames to the matching handler:
`handshake.on_hello`, `on_auth_response`, `on_approve`, `on_deny`,
`heartbeat.on_ping`, `heartbeat.on_pong`. Call `heartbeat.tick(host)`
every `host.timings.heartbeat_interval_ms` and
`ladder.reconnect_prune_tick(host)` periodically. `host.wait_idle()`
waits for background tasks; `host.close()` cancels them.

## Governance

A proposal is ratified once its signers meet the quorum: a split needs
only its proposer, a closed network needs every owner, and an open
network needs every member (the host's `rostered` set, role holders and
the local device). Any deny drops the proposal. Closing a network makes
the first signer its owner.

Inbound frames go to `on_propose`, `on_ack`, `on_split` and
`on_state_broadcast`; each verifies the sender's signature and that the
claimed signer is the peer the frame came from. `try_ratify()` applies a
proposal that meets quorum, `broadcast_state()` sends the current kind,
log length and roster digest to active peers, and `snapshot()` returns
an independent copy of the ledger. `GovernanceLedger.for_network()`
loads and saves the ledger under `states_dir()`.

## What this package does not do

- It has no network transport, ICE handling or signaling: frames are
  Python objects handed to your `sender`, and inbound frames must be
  passed to the handlers by you.
- It does not read or write a config file, although `dirs.config_path()`
  says where one would live.
- It has no typed publish/subscribe channels between peers.
- It has no functions for authoring proposals, signatures or denies on
  the local device; `sign_transition` and `deny_payload` give the bytes
  and signatures, but adding them to the ledger and broadcasting is left
  to the caller.
- It offers no command-line program or daemon.