"""A list of wanted blocks and their priorities."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from bitswap.cid import Cid


class WantType(IntEnum):
    """Whether the block itself or only word of its presence is wanted."""

    BLOCK = 0
    HAVE = 1


@dataclass(frozen=True)
class Entry:
    """A wantlist entry: a cid, its priority and what is wanted."""

    cid: Cid
    priority: int
    want_type: WantType = WantType.BLOCK


def new_ref_entry(cid: Cid, priority: int) -> Entry:
    """Create a want-block entry."""
    return Entry(cid, priority, WantType.BLOCK)


class Wantlist:
    """A raw list of wanted blocks keyed by cid."""

    def __init__(self) -> None:
        self._set: dict[Cid, Entry] = {}
        self._cached: tuple[Entry, ...] | None = None

    def __len__(self) -> int:
        return len(self._set)

    def add(self, cid: Cid, priority: int, want_type: WantType) -> bool:
        """Add an entry; want-have never overrides an existing want."""
        existing = self._set.get(cid)
        if existing is not None and (
            existing.want_type == WantType.BLOCK or want_type == WantType.HAVE
        ):
            return False
        self._put(Entry(cid, priority, WantType(want_type)))
        return True

    def remove(self, cid: Cid) -> bool:
        if cid not in self._set:
            return False
        self._delete(cid)
        return True

    def remove_type(self, cid: Cid, want_type: WantType) -> bool:
        """Remove the cid, except that want-have never removes a want-block."""
        existing = self._set.get(cid)
        if existing is None:
            return False
        if existing.want_type == WantType.BLOCK and want_type == WantType.HAVE:
            return False
        self._delete(cid)
        return True

    def contains(self, cid: Cid) -> Entry | None:
        """Return the entry for the cid, or None."""
        return self._set.get(cid)

    def entries(self) -> list[Entry]:
        """All entries, highest priority first."""
        if self._cached is None:
            self._cached = tuple(
                sorted(self._set.values(), key=lambda e: e.priority, reverse=True)
            )
        return list(self._cached)

    def absorb(self, other: Wantlist) -> None:
        """Add every entry of ``other`` to this list."""
        self._cached = None
        for entry in other.entries():
            self.add(entry.cid, entry.priority, entry.want_type)

    def _put(self, entry: Entry) -> None:
        self._cached = None
        self._set[entry.cid] = entry

    def _delete(self, cid: Cid) -> None:
        del self._set[cid]
        self._cached = None