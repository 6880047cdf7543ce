"""Keeps track of the peers of one session and tags their connections."""

from __future__ import annotations

import logging
import threading
from typing import Protocol

log = logging.getLogger("bitswap.sessionpeermanager")

# Connection manager tag value for session peers: keep the connection.
SESSION_PEER_TAG_VALUE = 5


class PeerTagger(Protocol):
    def tag_peer(self, peer: str, tag: str, value: int) -> None: ...

    def untag_peer(self, peer: str, tag: str) -> None: ...

    def protect(self, peer: str, tag: str) -> None: ...

    def unprotect(self, peer: str, tag: str) -> bool: ...


class SessionPeerManager:
    """The peers of a session, tagged with the connection manager."""

    def __init__(self, session_id: int, tagger: PeerTagger) -> None:
        self.session_id = session_id
        self.tag = f"bs-ses-{session_id}"
        self._tagger = tagger
        self._lock = threading.RLock()
        self._peers: set[str] = set()
        self._peers_discovered = False

    def add_peer(self, peer: str) -> bool:
        """Add the peer; return True if it was not already present."""
        with self._lock:
            if peer in self._peers:
                return False
            self._peers.add(peer)
            self._peers_discovered = True
            self._tagger.tag_peer(peer, self.tag, SESSION_PEER_TAG_VALUE)
            log.debug(
                "added peer to session %s: %s (peer count %d)",
                self.session_id,
                peer,
                len(self._peers),
            )
            return True

    def protect_connection(self, peer: str) -> None:
        """Protect the connection to a session peer from being pruned."""
        with self._lock:
            if peer not in self._peers:
                return
            self._tagger.protect(peer, self.tag)

    def remove_peer(self, peer: str) -> bool:
        """Remove the peer; return True if it was present."""
        with self._lock:
            if peer not in self._peers:
                return False
            self._peers.discard(peer)
            self._tagger.untag_peer(peer, self.tag)
            self._tagger.unprotect(peer, self.tag)
            log.debug(
                "removed peer from session %s: %s (peer count %d)",
                self.session_id,
                peer,
                len(self._peers),
            )
            return True

    def peers_discovered(self) -> bool:
        """True once any peer has been added, even if all were later removed."""
        with self._lock:
            return self._peers_discovered

    def peers(self) -> list[str]:
        with self._lock:
            return list(self._peers)

    def has_peers(self) -> bool:
        with self._lock:
            return bool(self._peers)

    def has_peer(self, peer: str) -> bool:
        with self._lock:
            return peer in self._peers

    def shutdown(self) -> None:
        """Untag and unprotect every peer."""
        with self._lock:
            for peer in self._peers:
                self._tagger.untag_peer(peer, self.tag)
                self._tagger.unprotect(peer, self.tag)