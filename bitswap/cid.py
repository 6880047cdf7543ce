"""Content identifiers, multihashes and blocks."""

from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass

DAG_PB = 0x70
RAW = 0x55

IDENTITY = 0x00
SHA1 = 0x11
SHA2_256 = 0x12
SHA2_512 = 0x13
SHA3_512 = 0x14
SHA3_256 = 0x16

_HASHERS = {
    SHA1: hashlib.sha1,
    SHA2_256: hashlib.sha256,
    SHA2_512: hashlib.sha512,
    SHA3_512: hashlib.sha3_512,
    SHA3_256: hashlib.sha3_256,
}

_UINT64_MASK = (1 << 64) - 1
_MAX_VARINT_LEN = 10

_BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
_BASE58_INDEX = {ch: i for i, ch in enumerate(_BASE58_ALPHABET)}


class CidError(ValueError):
    """Raised for malformed content identifiers or multihashes."""


def _encode_uvarint(value: int) -> bytes:
    if value < 0:
        raise CidError(f"cannot encode negative varint {value}")
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _read_uvarint(data: bytes, offset: int) -> tuple[int, int]:
    value = 0
    shift = 0
    for count, byte in enumerate(data[offset:], start=1):
        if count > _MAX_VARINT_LEN:
            break
        value |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return value, offset + count
        shift += 7
    raise CidError("truncated or overlong varint")


def _digest(code: int, data: bytes) -> bytes:
    if code == IDENTITY:
        return bytes(data)
    try:
        hasher = _HASHERS[code]
    except KeyError:
        raise CidError(f"unsupported multihash code 0x{code:x}") from None
    return hasher(data).digest()


def _make_multihash(code: int, digest: bytes) -> bytes:
    return _encode_uvarint(code) + _encode_uvarint(len(digest)) + digest


def _parse_multihash(data: bytes) -> tuple[int, int]:
    """Return (code, digest length), checking the multihash is exactly well formed."""
    code, offset = _read_uvarint(data, 0)
    length, offset = _read_uvarint(data, offset)
    if len(data) - offset != length:
        raise CidError("multihash length does not match its digest")
    return code, length


def sha256_multihash(data: bytes) -> bytes:
    """Return the sha2-256 multihash of ``data``."""
    return _make_multihash(SHA2_256, hashlib.sha256(data).digest())


def base58_encode(data: bytes) -> str:
    """Encode bytes with the Bitcoin base58 alphabet."""
    number = int.from_bytes(data, "big")
    digits = []
    while number:
        number, remainder = divmod(number, 58)
        digits.append(_BASE58_ALPHABET[remainder])
    leading_zeros = len(data) - len(data.lstrip(b"\0"))
    return "1" * leading_zeros + "".join(reversed(digits))


def base58_decode(text: str) -> bytes:
    """Decode a Bitcoin base58 string."""
    number = 0
    for ch in text:
        try:
            number = number * 58 + _BASE58_INDEX[ch]
        except KeyError:
            raise CidError(f"invalid base58 character {ch!r}") from None
    leading_ones = len(text) - len(text.lstrip("1"))
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\0" * leading_ones + body


def _base32_decode(text: str) -> bytes:
    padded = text.upper() + "=" * (-len(text) % 8)
    try:
        return base64.b32decode(padded)
    except (binascii.Error, ValueError) as exc:
        raise CidError(f"invalid base32 text: {exc}") from None


@dataclass(frozen=True)
class Prefix:
    """The metadata of a CID: everything but the digest itself."""

    version: int
    codec: int
    mh_type: int
    mh_length: int = -1

    def to_bytes(self) -> bytes:
        return b"".join(
            _encode_uvarint(value & _UINT64_MASK)
            for value in (self.version, self.codec, self.mh_type, self.mh_length)
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> Prefix:
        values = []
        offset = 0
        for _ in range(4):
            value, offset = _read_uvarint(data, offset)
            values.append(value)
        version, codec, mh_type, mh_length = values
        if mh_length >= 1 << 63:
            mh_length -= 1 << 64
        return cls(version, codec, mh_type, mh_length)

    def sum(self, data: bytes) -> Cid:
        """Hash ``data`` and build the CID this prefix describes."""
        digest = _digest(self.mh_type, data)
        if self.mh_length >= 0:
            if self.mh_type == IDENTITY:
                if self.mh_length != len(digest):
                    raise CidError("identity hash length must equal the data length")
            elif self.mh_length > len(digest):
                raise CidError(
                    f"requested digest length {self.mh_length} exceeds {len(digest)}"
                )
            else:
                digest = digest[: self.mh_length]
        multihash = _make_multihash(self.mh_type, digest)
        if self.version == 0:
            return Cid.v0(multihash)
        if self.version == 1:
            return Cid.v1(self.codec, multihash)
        raise CidError(f"invalid cid version {self.version}")


@dataclass(frozen=True)
class Cid:
    """A content identifier (version 0 or 1)."""

    version: int
    codec: int
    multihash: bytes

    def __post_init__(self) -> None:
        code, length = _parse_multihash(self.multihash)
        if self.version == 0:
            if self.codec != DAG_PB or code != SHA2_256 or length != 32:
                raise CidError("version 0 cids must be dag-pb sha2-256 with 32 bytes")
        elif self.version != 1:
            raise CidError(f"invalid cid version {self.version}")

    @classmethod
    def v0(cls, multihash: bytes) -> Cid:
        return cls(0, DAG_PB, bytes(multihash))

    @classmethod
    def v1(cls, codec: int, multihash: bytes) -> Cid:
        return cls(1, codec, bytes(multihash))

    @classmethod
    def from_bytes(cls, data: bytes) -> Cid:
        data = bytes(data)
        if len(data) == 34 and data[0] == SHA2_256 and data[1] == 32:
            return cls.v0(data)
        version, offset = _read_uvarint(data, 0)
        if version != 1:
            raise CidError(f"invalid cid version {version}")
        codec, offset = _read_uvarint(data, offset)
        return cls.v1(codec, data[offset:])

    @classmethod
    def decode(cls, text: str) -> Cid:
        if not text:
            raise CidError("cid string is empty")
        if len(text) == 46 and text.startswith("Qm"):
            return cls.v0(base58_decode(text))
        base, body = text[0], text[1:]
        if base == "z":
            raw = base58_decode(body)
        elif base in "bB":
            raw = _base32_decode(body)
        elif base in "fF":
            try:
                raw = bytes.fromhex(body)
            except ValueError:
                raise CidError("invalid hex text") from None
        else:
            raise CidError(f"unsupported multibase prefix {base!r}")
        return cls.from_bytes(raw)

    def to_bytes(self) -> bytes:
        if self.version == 0:
            return self.multihash
        return _encode_uvarint(1) + _encode_uvarint(self.codec) + self.multihash

    def prefix(self) -> Prefix:
        code, length = _parse_multihash(self.multihash)
        return Prefix(self.version, self.codec, code, length)

    def __str__(self) -> str:
        if self.version == 0:
            return base58_encode(self.multihash)
        encoded = base64.b32encode(self.to_bytes()).decode("ascii")
        return "b" + encoded.lower().rstrip("=")

    def __repr__(self) -> str:
        return f"Cid({str(self)!r})"


@dataclass(frozen=True)
class Block:
    """Raw data together with its content identifier."""

    data: bytes
    cid: Cid

    @classmethod
    def from_data(cls, data: bytes) -> Block:
        data = bytes(data)
        return cls(data, Cid.v0(sha256_multihash(data)))

    @classmethod
    def with_cid(cls, data: bytes, cid: Cid) -> Block:
        return cls(bytes(data), cid)