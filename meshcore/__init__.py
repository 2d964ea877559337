"""Transport-independent core of a peer-to-peer mesh node: peer state, handshake, heartbeat, reconnection and signed governance."""

__version__ = "0.1.3"

__all__ = [
    "connection",
    "dirs",
    "governance_sync",
    "handshake",
    "heartbeat",
    "ladder",
]