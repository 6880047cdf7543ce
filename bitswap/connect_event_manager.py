"""Turns raw connection events into connected / disconnected notifications."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

log = logging.getLogger("bitswap.network")


class ConnectionListener(Protocol):
    def peer_connected(self, peer: str) -> None: ...

    def peer_disconnected(self, peer: str) -> None: ...


class _State(Enum):
    DISCONNECTED = 0
    RESPONSIVE = 1
    UNRESPONSIVE = 2


@dataclass
class _PeerState:
    new: _State = _State.DISCONNECTED
    cur: _State = _State.DISCONNECTED
    pending: bool = False


class ConnectEventManager:
    """Tracks peer responsiveness and notifies listeners from a worker thread.

    Listeners hear ``peer_connected`` when a peer becomes responsive and
    ``peer_disconnected`` when a responsive peer becomes unresponsive or
    disconnects. Rapid flip-flops that end where they began produce no events.
    """

    def __init__(self, *args: ConnectionListener) -> None:
        self._listeners = list(args)
        self._cond = threading.Condition(threading.Lock())
        self._peers: dict[str, _PeerState] = {}
        self._queue: deque[str] = deque()
        self._stop = False
        self._dispatching = False
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        """Start the worker that delivers events to the listeners."""
        self._thread = threading.Thread(
            target=self._worker, name="connect-event-manager", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the worker and wait for it to finish."""
        with self._cond:
            self._stop = True
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join()

    def wait_idle(self, timeout: float | None) -> bool:
        """Wait until every queued change has been delivered.

        Returns False if the timeout ran out first.
        """
        with self._cond:
            return self._cond.wait_for(
                lambda: not self._queue and not self._dispatching, timeout
            )

    def tracked_peers(self) -> set[str]:
        """The peers whose state is currently being tracked."""
        with self._cond:
            return set(self._peers)

    def _get_state(self, peer: str) -> _State:
        state = self._peers.get(peer)
        return state.new if state is not None else _State.DISCONNECTED

    def _set_state(self, peer: str, new_state: _State) -> None:
        state = self._peers.setdefault(peer, _PeerState())
        state.new = new_state
        if not state.pending and state.new != state.cur:
            state.pending = True
            self._queue.append(peer)
            self._cond.notify_all()

    def _wait_change(self) -> bool:
        self._cond.wait_for(lambda: self._stop or bool(self._queue))
        return not self._stop

    def _notify(self, peer: str, connected: bool) -> None:
        self._dispatching = True
        self._cond.release()
        try:
            for listener in self._listeners:
                if connected:
                    listener.peer_connected(peer)
                else:
                    listener.peer_disconnected(peer)
        finally:
            self._cond.acquire()
            self._dispatching = False

    def _worker(self) -> None:
        with self._cond:
            while self._wait_change():
                peer = self._queue.popleft()
                state = self._peers.get(peer)
                if state is None:
                    log.error("a change was enqueued for a peer we're not tracking")
                else:
                    state.pending = False
                    if state.cur != state.new:
                        old = state.cur
                        state.cur = state.new
                        if state.new is _State.DISCONNECTED:
                            del self._peers[peer]
                        if state.new is _State.RESPONSIVE:
                            self._notify(peer, True)
                        elif old is _State.RESPONSIVE:
                            # Unresponsive -> disconnected produces no event.
                            self._notify(peer, False)
                self._cond.notify_all()
            self._cond.notify_all()

    def connected(self, peer: str) -> None:
        """A new connection to the peer was made; may be called many times."""
        with self._cond:
            if self._get_state(peer) is _State.RESPONSIVE:
                return
            self._set_state(peer, _State.RESPONSIVE)

    def disconnected(self, peer: str) -> None:
        """The last connection to the peer was dropped."""
        with self._cond:
            if self._get_state(peer) is _State.DISCONNECTED:
                return
            self._set_state(peer, _State.DISCONNECTED)

    def mark_unresponsive(self, peer: str) -> None:
        """A responsive peer stopped responding."""
        with self._cond:
            if self._get_state(peer) is not _State.RESPONSIVE:
                return
            self._set_state(peer, _State.UNRESPONSIVE)

    def on_message(self, peer: str) -> None:
        """A message arrived from the peer.

        Only an unresponsive (hence connected) peer becomes responsive again;
        a message from an unknown peer is not taken as proof of a connection.
        """
        with self._cond:
            if self._get_state(peer) is not _State.UNRESPONSIVE:
                return
            self._set_state(peer, _State.RESPONSIVE)