"""Generators of blocks, cids, peers and entries for tests and benchmarks."""

from __future__ import annotations

import itertools
import os
from collections.abc import Sequence

from bitswap.cid import Block, Cid
from bitswap.message import Entry
from bitswap.wantlist import WantType

_block_seq = itertools.count(1)
_priority_seq = itertools.count(1)
_session_seq = itertools.count(1)


def _next_block() -> Block:
    seq = next(_block_seq)
    return Block.from_data(chr(seq).encode("utf-8", "surrogatepass"))


def generate_blocks_of_size(n: int, size: int) -> list[Block]:
    """Generate ``n`` blocks of random data, each ``size`` bytes long."""
    return [Block.from_data(os.urandom(size)) for _ in range(n)]


def generate_cids(n: int) -> list[Cid]:
    """Produce ``n`` distinct content identifiers."""
    return [_next_block().cid for _ in range(n)]


def generate_message_entries(n: int, is_cancel: bool) -> list[Entry]:
    """Make want-block message entries with ever increasing priorities."""
    return [
        Entry(
            cid=_next_block().cid,
            priority=next(_priority_seq),
            want_type=WantType.BLOCK,
            cancel=is_cancel,
        )
        for _ in range(n)
    ]


def generate_peers(n: int) -> list[str]:
    """Create ``n`` peer ids, named by their position."""
    return [str(i) for i in range(n)]


def generate_session_id() -> int:
    """Return a new, unique session id."""
    return next(_session_seq)


def contains_peer(peers: Sequence[str], peer: str) -> bool:
    return peer in peers


def index_of(blocks: Sequence[Block], cid: Cid) -> int:
    """The position of the block with ``cid``, or -1 when there is none."""
    return next((i for i, block in enumerate(blocks) if block.cid == cid), -1)


def contains_block(blocks: Sequence[Block], block: Block) -> bool:
    return index_of(blocks, block.cid) != -1


def contains_key(keys: Sequence[Cid], cid: Cid) -> bool:
    return cid in keys


def match_keys_ignore_order(keys1: Sequence[Cid], keys2: Sequence[Cid]) -> bool:
    """True when both lists have the same length and every key of the first is in the second."""
    return len(keys1) == len(keys2) and all(k in keys2 for k in keys1)


def match_peers_ignore_order(peers1: Sequence[str], peers2: Sequence[str]) -> bool:
    """True when both lists have the same length and every peer of the first is in the second."""
    return len(peers1) == len(peers2) and all(p in peers2 for p in peers1)