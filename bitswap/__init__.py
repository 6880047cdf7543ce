"""Bitswap building blocks: CIDs, wantlists, wire messages, session and connection bookkeeping, and message sending over a supplied host."""

__version__ = "0.1.0"

__all__ = [
    "cid",
    "wantlist",
    "message",
    "session_interest_manager",
    "session_peer_manager",
    "session_manager",
    "connect_event_manager",
    "network",
    "testutil",
]