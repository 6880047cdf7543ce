"""Tracks which sessions want, or are interested in, which cids."""

from __future__ import annotations

import threading
from collections.abc import Iterable

from bitswap.cid import Block, Cid


class SessionInterestManager:
    """Records the cids that each session is interested in.

    For each cid, the flag per session says whether the session still wants
    the block (True) or only wants to hear messages about it (False).
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._wants: dict[Cid, dict[int, bool]] = {}

    def record_session_interest(self, session_id: int, keys: Iterable[Cid]) -> None:
        with self._lock:
            for key in keys:
                self._wants.setdefault(key, {})[session_id] = True

    def remove_session(self, session_id: int) -> list[Cid]:
        """Forget the session; return the cids no session cares about any more."""
        with self._lock:
            deleted = []
            for key in list(self._wants):
                sessions = self._wants[key]
                sessions.pop(session_id, None)
                if not sessions:
                    del self._wants[key]
                    deleted.append(key)
            return deleted

    def remove_session_wants(self, session_id: int, keys: Iterable[Cid]) -> None:
        """Mark the cids as no longer wanted by the session, keeping interest."""
        with self._lock:
            for key in keys:
                sessions = self._wants.get(key)
                if sessions and sessions.get(session_id):
                    sessions[session_id] = False

    def remove_session_interested(
        self, session_id: int, keys: Iterable[Cid]
    ) -> list[Cid]:
        """Drop the session's interest in the cids; return those left unwanted."""
        with self._lock:
            deleted = []
            for key in keys:
                sessions = self._wants.get(key)
                if sessions is None:
                    continue
                sessions.pop(session_id, None)
                if not sessions:
                    del self._wants[key]
                    deleted.append(key)
            return deleted

    def filter_session_interested(
        self, session_id: int, *args: Iterable[Cid]
    ) -> list[list[Cid]]:
        """For each key set, keep the cids the session is interested in."""
        with self._lock:
            return [
                [key for key in keys if session_id in self._wants.get(key, {})]
                for keys in args
            ]

    def split_wanted_unwanted(
        self, blocks: Iterable[Block]
    ) -> tuple[list[Block], list[Block]]:
        """Split blocks into those some session still wants and the rest."""
        blocks = list(blocks)
        with self._lock:
            wanted_keys = {
                block.cid
                for block in blocks
                if any(self._wants.get(block.cid, {}).values())
            }
        wanted = [b for b in blocks if b.cid in wanted_keys]
        unwanted = [b for b in blocks if b.cid not in wanted_keys]
        return wanted, unwanted

    def interested_sessions(
        self,
        blocks: Iterable[Cid],
        haves: Iterable[Cid],
        dont_haves: Iterable[Cid],
    ) -> list[int]:
        """Return the ids of sessions interested in any of the given cids."""
        with self._lock:
            sessions: set[int] = set()
            for group in (blocks, haves, dont_haves):
                for key in group:
                    sessions.update(self._wants.get(key, {}))
            return sorted(sessions)