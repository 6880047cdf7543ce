"""Bitswap protocol messages and their protobuf wire encoding."""

from __future__ import annotations

import dataclasses
from collections.abc import Iterator
from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Protocol

from bitswap.cid import Block, Cid, CidError, Prefix, sha256_multihash
from bitswap.wantlist import WantType

MESSAGE_SIZE_MAX = 4 << 20

_UINT64_MASK = (1 << 64) - 1
_MAX_VARINT_LEN = 10

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_BYTES = 2
_WIRE_FIXED32 = 5


class MessageError(ValueError):
    """Raised when a message cannot be decoded."""


class BlockPresenceType(IntEnum):
    HAVE = 0
    DONT_HAVE = 1


@dataclass(frozen=True)
class BlockPresence:
    """A HAVE or DONT_HAVE for a given cid."""

    cid: Cid
    type: BlockPresenceType


class _Writer(Protocol):
    def write(self, data: bytes) -> Any: ...


class _Reader(Protocol):
    def read(self, size: int) -> bytes: ...


def _uvarint(value: int) -> bytes:
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(field: int, wire: int) -> bytes:
    return _uvarint(field << 3 | wire)


def _bytes_field(field: int, payload: bytes) -> bytes:
    return _key(field, _WIRE_BYTES) + _uvarint(len(payload)) + payload


def _varint_field(field: int, value: int) -> bytes:
    return _key(field, _WIRE_VARINT) + _uvarint(value & _UINT64_MASK)


def _read_varint(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    shift = 0
    for count, byte in enumerate(data[offset:], start=1):
        if count > _MAX_VARINT_LEN:
            break
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset + count
        shift += 7
    raise MessageError("truncated or overlong varint")


def _fields(data: bytes) -> Iterator[tuple[int, int, Any]]:
    """Yield (field number, wire type, value) for each field of a protobuf."""
    offset = 0
    while offset < len(data):
        key, offset = _read_varint(data, offset)
        field, wire = key >> 3, key & 7
        if field == 0:
            raise MessageError("invalid field number 0")
        if wire == _WIRE_VARINT:
            value, offset = _read_varint(data, offset)
        elif wire == _WIRE_BYTES:
            length, offset = _read_varint(data, offset)
            end = offset + length
            if end > len(data):
                raise MessageError("length-delimited field overruns message")
            value = data[offset:end]
            offset = end
        elif wire in (_WIRE_FIXED64, _WIRE_FIXED32):
            width = 8 if wire == _WIRE_FIXED64 else 4
            end = offset + width
            if end > len(data):
                raise MessageError("fixed-width field overruns message")
            value = data[offset:end]
            offset = end
        else:
            raise MessageError(f"unsupported wire type {wire}")
        yield field, wire, value


def _expect(wire: int, expected: int, name: str) -> None:
    if wire != expected:
        raise MessageError(f"wrong wire type {wire} for field {name}")


def _to_int32(value: int) -> int:
    value &= 0xFFFFFFFF
    return value - (1 << 32) if value >= 1 << 31 else value


def _decode_cid(raw: bytes | None) -> Cid:
    if not raw:
        raise MessageError("missing cid")
    try:
        return Cid.from_bytes(raw)
    except CidError as exc:
        raise MessageError(f"invalid cid: {exc}") from exc


def _enum(kind: type[IntEnum], value: int) -> Any:
    try:
        return kind(value)
    except ValueError:
        raise MessageError(f"unknown {kind.__name__} value {value}") from None


@dataclass
class Entry:
    """A wantlist entry in a message, with its cancel and DONT_HAVE flags."""

    cid: Cid
    priority: int
    want_type: WantType = WantType.BLOCK
    cancel: bool = False
    send_dont_have: bool = False

    def size(self) -> int:
        """The size of the entry on the wire."""
        return len(self.encode())

    def encode(self) -> bytes:
        """The entry in protobuf form."""
        out = _bytes_field(1, self.cid.to_bytes())
        if self.priority:
            out += _varint_field(2, self.priority)
        if self.cancel:
            out += _varint_field(3, 1)
        if self.want_type:
            out += _varint_field(4, int(self.want_type))
        if self.send_dont_have:
            out += _varint_field(5, 1)
        return out


def _max_entry_size() -> int:
    entry = Entry(
        cid=Cid.v0(sha256_multihash(b"cid")),
        priority=(1 << 31) - 1,
        want_type=WantType.HAVE,
        cancel=True,
        send_dont_have=True,
    )
    return entry.size()


MAX_ENTRY_SIZE = _max_entry_size()


def encode_block_presence(cid: Cid, presence_type: BlockPresenceType) -> bytes:
    """The protobuf form of a block presence."""
    out = _bytes_field(1, cid.to_bytes())
    if presence_type:
        out += _varint_field(2, int(presence_type))
    return out


def block_presence_size(cid: Cid) -> int:
    """The size on the wire of a block presence for ``cid``."""
    return len(encode_block_presence(cid, BlockPresenceType.HAVE))


class BitSwapMessage:
    """A bitswap message: wants, blocks and block presences."""

    def __init__(self, full: bool) -> None:
        self.full = full
        self.pending_bytes = 0
        self._wantlist: dict[Cid, Entry] = {}
        self._blocks: dict[Cid, Block] = {}
        self._presences: dict[Cid, BlockPresenceType] = {}

    def clone(self) -> BitSwapMessage:
        msg = BitSwapMessage(self.full)
        msg._wantlist = dict(self._wantlist)
        msg._blocks = dict(self._blocks)
        msg._presences = dict(self._presences)
        msg.pending_bytes = self.pending_bytes
        return msg

    def reset(self, full: bool) -> None:
        """Return the message to its defaults so it can be reused."""
        self.full = full
        self._wantlist.clear()
        self._blocks.clear()
        self._presences.clear()
        self.pending_bytes = 0

    def empty(self) -> bool:
        return not (self._blocks or self._wantlist or self._presences)

    def wantlist(self) -> list[Entry]:
        return [dataclasses.replace(entry) for entry in self._wantlist.values()]

    def blocks(self) -> list[Block]:
        return list(self._blocks.values())

    def block_presences(self) -> list[BlockPresence]:
        return [BlockPresence(c, t) for c, t in self._presences.items()]

    def haves(self) -> list[Cid]:
        return self._presences_of(BlockPresenceType.HAVE)

    def dont_haves(self) -> list[Cid]:
        return self._presences_of(BlockPresenceType.DONT_HAVE)

    def _presences_of(self, presence_type: BlockPresenceType) -> list[Cid]:
        return [c for c, t in self._presences.items() if t == presence_type]

    def remove(self, cid: Cid) -> None:
        """Remove any wantlist entry for the cid."""
        self._wantlist.pop(cid, None)

    def cancel(self, cid: Cid) -> int:
        """Add a CANCEL for the cid; return the size of a newly added entry."""
        return self._add_entry(cid, 0, True, WantType.BLOCK, False)

    def add_entry(
        self, cid: Cid, priority: int, want_type: WantType, send_dont_have: bool
    ) -> int:
        """Add a want; return the size of a newly added entry, else 0."""
        return self._add_entry(cid, priority, False, want_type, send_dont_have)

    def _add_entry(
        self,
        cid: Cid,
        priority: int,
        cancel: bool,
        want_type: WantType,
        send_dont_have: bool,
    ) -> int:
        entry = self._wantlist.get(cid)
        if entry is not None:
            if entry.want_type == want_type:
                entry.priority = priority
            if cancel:
                entry.cancel = True
            if send_dont_have:
                entry.send_dont_have = True
            if want_type == WantType.BLOCK and entry.want_type == WantType.HAVE:
                entry.want_type = WantType.BLOCK
            return 0
        entry = Entry(cid, priority, WantType(want_type), cancel, send_dont_have)
        self._wantlist[cid] = entry
        return entry.size()

    def add_block(self, block: Block) -> None:
        """Add a block; it replaces any HAVE / DONT_HAVE for the same cid."""
        self._presences.pop(block.cid, None)
        self._blocks[block.cid] = block

    def add_block_presence(self, cid: Cid, presence_type: BlockPresenceType) -> None:
        """Add a HAVE / DONT_HAVE unless the block itself is in the message."""
        if cid in self._blocks:
            return
        self._presences[cid] = BlockPresenceType(presence_type)

    def add_have(self, cid: Cid) -> None:
        self.add_block_presence(cid, BlockPresenceType.HAVE)

    def add_dont_have(self, cid: Cid) -> None:
        self.add_block_presence(cid, BlockPresenceType.DONT_HAVE)

    def size(self) -> int:
        """The size of the message contents in bytes."""
        return (
            sum(len(block.data) for block in self._blocks.values())
            + sum(block_presence_size(c) for c in self._presences)
            + sum(entry.size() for entry in self._wantlist.values())
        )

    def _encode_wantlist(self) -> bytes:
        body = b"".join(_bytes_field(1, e.encode()) for e in self._wantlist.values())
        if self.full:
            body += _varint_field(2, 1)
        return _bytes_field(1, body)

    def to_proto_v0(self) -> bytes:
        """Encode in the legacy format: no presences, blocks as raw data."""
        out = self._encode_wantlist()
        out += b"".join(_bytes_field(2, block.data) for block in self._blocks.values())
        return out

    def to_proto_v1(self) -> bytes:
        """Encode in the current format, with cid prefixes and presences."""
        out = self._encode_wantlist()
        for block in self._blocks.values():
            payload = b""
            prefix = block.cid.prefix().to_bytes()
            if prefix:
                payload += _bytes_field(1, prefix)
            if block.data:
                payload += _bytes_field(2, block.data)
            out += _bytes_field(3, payload)
        for c, t in self._presences.items():
            out += _bytes_field(4, encode_block_presence(c, t))
        if self.pending_bytes:
            out += _varint_field(5, self.pending_bytes)
        return out

    def to_net_v0(self, writer: _Writer) -> None:
        _write_delimited(writer, self.to_proto_v0())

    def to_net_v1(self, writer: _Writer) -> None:
        _write_delimited(writer, self.to_proto_v1())

    def loggable(self) -> dict[str, Any]:
        return {
            "blocks": [str(block.cid) for block in self._blocks.values()],
            "wants": self.wantlist(),
        }


def _write_delimited(writer: _Writer, payload: bytes) -> None:
    writer.write(_uvarint(len(payload)) + payload)


def _decode_wantlist(data: bytes, entries: list[Entry]) -> bool:
    full = False
    for field, wire, value in _fields(data):
        if field == 1:
            _expect(wire, _WIRE_BYTES, "wantlist.entries")
            entries.append(_decode_entry(value))
        elif field == 2:
            _expect(wire, _WIRE_VARINT, "wantlist.full")
            full = bool(value)
    return full


def _decode_entry(data: bytes) -> Entry:
    raw_cid = None
    priority = 0
    cancel = False
    want_type = 0
    send_dont_have = False
    for field, wire, value in _fields(data):
        if field == 1:
            _expect(wire, _WIRE_BYTES, "entry.block")
            raw_cid = value
        elif field == 2:
            _expect(wire, _WIRE_VARINT, "entry.priority")
            priority = _to_int32(value)
        elif field == 3:
            _expect(wire, _WIRE_VARINT, "entry.cancel")
            cancel = bool(value)
        elif field == 4:
            _expect(wire, _WIRE_VARINT, "entry.wantType")
            want_type = value
        elif field == 5:
            _expect(wire, _WIRE_VARINT, "entry.sendDontHave")
            send_dont_have = bool(value)
    return Entry(
        _decode_cid(raw_cid),
        priority,
        _enum(WantType, want_type),
        cancel,
        send_dont_have,
    )


def _decode_payload_block(data: bytes) -> Block:
    prefix = b""
    payload = b""
    for field, wire, value in _fields(data):
        if field == 1:
            _expect(wire, _WIRE_BYTES, "block.prefix")
            prefix = value
        elif field == 2:
            _expect(wire, _WIRE_BYTES, "block.data")
            payload = value
    try:
        cid = Prefix.from_bytes(prefix).sum(payload)
    except CidError as exc:
        raise MessageError(f"invalid block prefix: {exc}") from exc
    return Block.with_cid(payload, cid)


def _decode_presence(data: bytes) -> BlockPresence:
    raw_cid = None
    presence_type = 0
    for field, wire, value in _fields(data):
        if field == 1:
            _expect(wire, _WIRE_BYTES, "blockPresence.cid")
            raw_cid = value
        elif field == 2:
            _expect(wire, _WIRE_VARINT, "blockPresence.type")
            presence_type = value
    return BlockPresence(_decode_cid(raw_cid), _enum(BlockPresenceType, presence_type))


def from_proto(data: bytes) -> BitSwapMessage:
    """Decode a message from its protobuf form (either wire version)."""
    entries: list[Entry] = []
    raw_blocks: list[bytes] = []
    payload: list[Block] = []
    presences: list[BlockPresence] = []
    full = False
    pending_bytes = 0
    for field, wire, value in _fields(bytes(data)):
        if field == 1:
            _expect(wire, _WIRE_BYTES, "wantlist")
            full = _decode_wantlist(value, entries) or full
        elif field == 2:
            _expect(wire, _WIRE_BYTES, "blocks")
            raw_blocks.append(value)
        elif field == 3:
            _expect(wire, _WIRE_BYTES, "payload")
            payload.append(_decode_payload_block(value))
        elif field == 4:
            _expect(wire, _WIRE_BYTES, "blockPresences")
            presences.append(_decode_presence(value))
        elif field == 5:
            _expect(wire, _WIRE_VARINT, "pendingBytes")
            pending_bytes = _to_int32(value)

    msg = BitSwapMessage(full)
    for e in entries:
        msg._add_entry(e.cid, e.priority, e.cancel, e.want_type, e.send_dont_have)
    for raw in raw_blocks:
        msg.add_block(Block.from_data(raw))
    for block in payload:
        msg.add_block(block)
    for presence in presences:
        msg.add_block_presence(presence.cid, presence.type)
    msg.pending_bytes = pending_bytes
    return msg


def _read_length(reader: _Reader) -> int:
    value = 0
    shift = 0
    for count in range(_MAX_VARINT_LEN):
        chunk = reader.read(1)
        if not chunk:
            if count == 0:
                raise EOFError("end of stream")
            raise MessageError("unexpected end of stream in length prefix")
        byte = chunk[0]
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value
        shift += 7
    raise MessageError("overlong length prefix")


def _read_exact(reader: _Reader, size: int) -> bytes:
    parts = []
    remaining = size
    while remaining:
        chunk = reader.read(remaining)
        if not chunk:
            raise MessageError("unexpected end of stream in message body")
        parts.append(chunk)
        remaining -= len(chunk)
    return b"".join(parts)


def from_net(reader: _Reader) -> BitSwapMessage:
    """Read one length-prefixed message; raise EOFError at a clean end of stream."""
    length = _read_length(reader)
    if length > MESSAGE_SIZE_MAX:
        raise MessageError(f"message of {length} bytes exceeds {MESSAGE_SIZE_MAX}")
    return from_proto(_read_exact(reader, length))