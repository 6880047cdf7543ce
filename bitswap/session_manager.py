"""Creates sessions, keeps track of them and dispatches messages to them."""

from __future__ import annotations

import itertools
import threading
from collections.abc import Callable, Sequence
from typing import Any, Protocol

from bitswap.cid import Cid
from bitswap.session_interest_manager import SessionInterestManager


class Session(Protocol):
    def receive_from(
        self,
        peer: str,
        blocks: Sequence[Cid],
        haves: Sequence[Cid],
        dont_haves: Sequence[Cid],
    ) -> None: ...

    def shutdown(self) -> None: ...


class BlockPresenceManager(Protocol):
    def receive_from(
        self, peer: str, haves: Sequence[Cid], dont_haves: Sequence[Cid]
    ) -> None: ...

    def remove_keys(self, keys: Sequence[Cid]) -> None: ...


class PeerManager(Protocol):
    def send_cancels(self, keys: Sequence[Cid]) -> None: ...


SessionFactory = Callable[..., Session]
PeerManagerFactory = Callable[[int], Any]


class SessionManager:
    """Responsible for creating, managing and dispatching to sessions.

    The session factory is called as ``factory(session_manager, session_id,
    session_peer_manager, session_interest_manager, peer_manager,
    block_presence_manager, notif, provider_search_delay, rebroadcast_delay,
    self_id)``.
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        session_interest_manager: SessionInterestManager,
        peer_manager_factory: PeerManagerFactory,
        block_presence_manager: BlockPresenceManager,
        peer_manager: PeerManager,
        notif: Any,
        self_id: str,
    ) -> None:
        self._session_factory = session_factory
        self._sim = session_interest_manager
        self._peer_manager_factory = peer_manager_factory
        self._bpm = block_presence_manager
        self._peer_manager = peer_manager
        self._notif = notif
        self.self_id = self_id
        self._sessions_lock = threading.RLock()
        self._sessions: dict[int, Session] | None = {}
        self._id_lock = threading.Lock()
        self._ids = itertools.count(1)

    def new_session(self, provider_search_delay: Any, rebroadcast_delay: Any) -> Session:
        """Create a session and start tracking it."""
        session_id = self.next_session_id()
        session_peers = self._peer_manager_factory(session_id)
        session = self._session_factory(
            self,
            session_id,
            session_peers,
            self._sim,
            self._peer_manager,
            self._bpm,
            self._notif,
            provider_search_delay,
            rebroadcast_delay,
            self.self_id,
        )
        with self._sessions_lock:
            if self._sessions is not None:
                self._sessions[session_id] = session
        return session

    def shutdown(self) -> None:
        """Shut down every session; calling it again does nothing."""
        with self._sessions_lock:
            sessions = list(self._sessions.values()) if self._sessions else []
            self._sessions = None
        for session in sessions:
            session.shutdown()

    def remove_session(self, session_id: int) -> None:
        """Forget the session and cancel wants nobody has any more."""
        cancel_keys = self._sim.remove_session(session_id)
        self._cancel_wants(cancel_keys)
        with self._sessions_lock:
            if self._sessions is not None:
                self._sessions.pop(session_id, None)

    def next_session_id(self) -> int:
        """Return the next sequential session id."""
        with self._id_lock:
            return next(self._ids)

    def receive_from(
        self,
        peer: str,
        blocks: Sequence[Cid],
        haves: Sequence[Cid],
        dont_haves: Sequence[Cid],
    ) -> None:
        """Dispatch a received message to every interested session."""
        self._bpm.receive_from(peer, haves, dont_haves)

        for session_id in self._sim.interested_sessions(blocks, haves, dont_haves):
            with self._sessions_lock:
                if self._sessions is None:
                    return
                session = self._sessions.get(session_id)
            if session is not None:
                session.receive_from(peer, blocks, haves, dont_haves)

        self._peer_manager.send_cancels(blocks)

    def cancel_session_wants(self, session_id: int, wants: Sequence[Cid]) -> None:
        """Called when a session's request is cancelled."""
        cancel_keys = self._sim.remove_session_interested(session_id, wants)
        self._cancel_wants(cancel_keys)

    def _cancel_wants(self, wants: Sequence[Cid]) -> None:
        self._bpm.remove_keys(wants)
        self._peer_manager.send_cancels(wants)