import io

import pytest

from bitswap.cid import RAW, SHA2_256, Block, Cid, Prefix, sha256_multihash
from bitswap.message import (
    MAX_ENTRY_SIZE,
    BitSwapMessage,
    BlockPresence,
    BlockPresenceType,
    Entry,
    MessageError,
    block_presence_size,
    encode_block_presence,
    from_net,
    from_proto,
)
from bitswap.wantlist import WantType


def mk_fake_cid(s):
    return Cid.v0(sha256_multihash(s.encode()))


def wantlist_cids(msg):
    return {e.cid for e in msg.wantlist()}


def test_append_wanted():
    c = mk_fake_cid("foo")
    m = BitSwapMessage(True)
    m.add_entry(c, 1, WantType.BLOCK, True)
    assert wantlist_cids(from_proto(m.to_proto_v0())) == {c}


def test_new_message_from_proto():
    c = mk_fake_cid("a_key")
    entry = b"\x0a" + bytes([len(c.to_bytes())]) + c.to_bytes()
    wantlist = b"\x0a" + bytes([len(entry)]) + entry
    proto = b"\x0a" + bytes([len(wantlist)]) + wantlist
    m = from_proto(proto)
    assert wantlist_cids(m) == {c}
    assert wantlist_cids(from_proto(m.to_proto_v0())) == {c}
    e = m.wantlist()[0]
    assert e.priority == 0
    assert e.want_type == WantType.BLOCK
    assert m.full is False


def test_append_block():
    strs = ["", "", "Celeritas", "Incendia"]
    m = BitSwapMessage(True)
    for s in strs:
        m.add_block(Block.from_data(s.encode()))
    decoded = from_proto(m.to_proto_v0())
    datas = {b.data for b in decoded.blocks()}
    assert datas == {b"", b"Celeritas", b"Incendia"}
    assert all(d.decode() in strs for d in datas)


def test_wantlist():
    keys = [mk_fake_cid(s) for s in ("foo", "bar", "baz", "bat")]
    m = BitSwapMessage(True)
    for k in keys:
        m.add_entry(k, 1, WantType.BLOCK, True)
    assert wantlist_cids(m) == set(keys)


def test_copy_proto_by_value():
    c = mk_fake_cid("foo")
    m = BitSwapMessage(True)
    before = m.to_proto_v0()
    m.add_entry(c, 1, WantType.BLOCK, True)
    assert from_proto(before).wantlist() == []


def test_to_net_from_net_preserves_wantlist():
    original = BitSwapMessage(True)
    for s in "MBDTF":
        original.add_entry(mk_fake_cid(s), 1, WantType.BLOCK, True)
    buf = io.BytesIO()
    original.to_net_v1(buf)
    buf.seek(0)
    copied = from_net(buf)
    assert copied.full is True
    assert wantlist_cids(copied) == wantlist_cids(original)


def test_to_and_from_net_message():
    original = BitSwapMessage(True)
    for s in "WEFM":
        original.add_block(Block.from_data(s.encode()))
    buf = io.BytesIO()
    original.to_net_v1(buf)
    buf.seek(0)
    m2 = from_net(buf)
    assert {b.cid for b in m2.blocks()} == {b.cid for b in original.blocks()}


def test_block_presence_encoding_matches_format():
    expected = bytes(
        [
            10, 34, 18, 32, 195, 171,
            143, 241, 55, 32, 232, 173,
            144, 71, 221, 57, 70, 107,
            60, 137, 116, 229, 146, 194,
            250, 56, 61, 74, 57, 96,
            113, 76, 174, 240, 196, 242,
        ]
    )
    c = Cid.v0(sha256_multihash(b"foobar"))
    assert encode_block_presence(c, BlockPresenceType.HAVE) == expected


def test_duplicates():
    b = Block.from_data(b"foo")
    msg = BitSwapMessage(True)
    msg.add_entry(b.cid, 1, WantType.BLOCK, True)
    msg.add_entry(b.cid, 1, WantType.BLOCK, True)
    assert len(msg.wantlist()) == 1

    msg.add_block(b)
    msg.add_block(b)
    assert len(msg.blocks()) == 1

    b2 = Block.from_data(b"bar")
    msg.add_block_presence(b2.cid, BlockPresenceType.HAVE)
    msg.add_block_presence(b2.cid, BlockPresenceType.HAVE)
    assert len(msg.haves()) == 1


def test_block_presences():
    b1 = Block.from_data(b"foo")
    b2 = Block.from_data(b"bar")
    msg = BitSwapMessage(True)
    msg.add_block_presence(b1.cid, BlockPresenceType.HAVE)
    msg.add_block_presence(b2.cid, BlockPresenceType.DONT_HAVE)
    assert msg.haves() == [b1.cid]
    assert msg.dont_haves() == [b2.cid]

    msg.add_block(b1)
    assert msg.haves() == []
    msg.add_block(b2)
    assert msg.dont_haves() == []

    msg.add_block_presence(b1.cid, BlockPresenceType.HAVE)
    assert msg.haves() == []
    msg.add_block_presence(b2.cid, BlockPresenceType.DONT_HAVE)
    assert msg.dont_haves() == []


def test_add_wantlist_entry():
    b = Block.from_data(b"foo")
    msg = BitSwapMessage(True)
    msg.add_entry(b.cid, 1, WantType.HAVE, False)
    msg.add_entry(b.cid, 2, WantType.BLOCK, True)
    entries = msg.wantlist()
    assert len(entries) == 1
    e = entries[0]
    assert e.want_type == WantType.BLOCK
    assert e.send_dont_have is True
    assert e.priority == 1

    msg.add_entry(b.cid, 2, WantType.BLOCK, True)
    assert msg.wantlist()[0].priority == 2

    msg.add_entry(b.cid, 3, WantType.HAVE, False)
    e = msg.wantlist()[0]
    assert e.want_type == WantType.BLOCK
    assert e.send_dont_have is True
    assert e.priority == 2

    msg.cancel(b.cid)
    assert msg.wantlist()[0].cancel is True

    msg.add_entry(b.cid, 10, WantType.BLOCK, True)
    assert msg.wantlist()[0].cancel is True


def test_entry_size():
    e = Entry(mk_fake_cid("x"), 10, WantType.HAVE, cancel=False, send_dont_have=True)
    assert e.size() == len(e.encode())
    assert e.size() == 42


def test_max_entry_size():
    largest = Entry(
        Cid.v0(sha256_multihash(b"cid")),
        (1 << 31) - 1,
        WantType.HAVE,
        cancel=True,
        send_dont_have=True,
    )
    assert largest.size() == 48
    assert MAX_ENTRY_SIZE == largest.size()


def test_block_presence_size():
    assert block_presence_size(mk_fake_cid("x")) == 36


def test_add_entry_returns_size_only_for_new_entries():
    c = mk_fake_cid("x")
    msg = BitSwapMessage(False)
    assert msg.add_entry(c, 1, WantType.BLOCK, False) == 38
    assert msg.add_entry(c, 2, WantType.BLOCK, False) == 0
    assert msg.cancel(mk_fake_cid("y")) == 38


def test_message_size():
    msg = BitSwapMessage(False)
    msg.add_block(Block.from_data(b"abc"))
    msg.add_have(mk_fake_cid("p"))
    msg.add_entry(mk_fake_cid("w"), 1, WantType.BLOCK, False)
    assert msg.size() == 3 + 36 + 38


def test_remove():
    c = mk_fake_cid("x")
    msg = BitSwapMessage(False)
    msg.add_entry(c, 1, WantType.BLOCK, False)
    msg.remove(c)
    assert msg.wantlist() == []
    assert msg.empty() is True


def test_empty_and_reset():
    msg = BitSwapMessage(True)
    assert msg.empty() is True
    msg.add_have(mk_fake_cid("a"))
    msg.pending_bytes = 10
    assert msg.empty() is False
    msg.reset(False)
    assert msg.empty() is True
    assert msg.full is False
    assert msg.pending_bytes == 0


def test_clone_is_independent():
    msg = BitSwapMessage(True)
    msg.add_entry(mk_fake_cid("a"), 1, WantType.BLOCK, False)
    msg.pending_bytes = 7
    copy = msg.clone()
    copy.add_block(Block.from_data(b"z"))
    copy.add_dont_have(mk_fake_cid("b"))
    assert msg.blocks() == []
    assert msg.dont_haves() == []
    assert copy.pending_bytes == 7
    assert wantlist_cids(copy) == wantlist_cids(msg)


def test_v1_round_trip_keeps_presences_and_pending_bytes():
    msg = BitSwapMessage(False)
    msg.add_have(mk_fake_cid("h"))
    msg.add_dont_have(mk_fake_cid("d"))
    msg.pending_bytes = 1234
    decoded = from_proto(msg.to_proto_v1())
    assert decoded.haves() == [mk_fake_cid("h")]
    assert decoded.dont_haves() == [mk_fake_cid("d")]
    assert decoded.pending_bytes == 1234
    assert set(decoded.block_presences()) == {
        BlockPresence(mk_fake_cid("h"), BlockPresenceType.HAVE),
        BlockPresence(mk_fake_cid("d"), BlockPresenceType.DONT_HAVE),
    }


def test_v0_drops_presences_and_pending_bytes():
    msg = BitSwapMessage(False)
    msg.add_have(mk_fake_cid("h"))
    msg.pending_bytes = 99
    decoded = from_proto(msg.to_proto_v0())
    assert decoded.haves() == []
    assert decoded.pending_bytes == 0


def test_v1_keeps_cid_of_raw_block():
    data = b"raw payload"
    cid = Prefix(1, RAW, SHA2_256, 32).sum(data)
    msg = BitSwapMessage(False)
    msg.add_block(Block.with_cid(data, cid))
    buf = io.BytesIO()
    msg.to_net_v1(buf)
    buf.seek(0)
    decoded = from_net(buf)
    assert [b.cid for b in decoded.blocks()] == [cid]
    assert decoded.blocks()[0].data == data


def test_negative_priority_round_trip():
    c = mk_fake_cid("neg")
    msg = BitSwapMessage(False)
    msg.add_entry(c, -5, WantType.HAVE, True)
    e = from_proto(msg.to_proto_v1()).wantlist()[0]
    assert (e.priority, e.want_type, e.send_dont_have) == (-5, WantType.HAVE, True)


def test_several_messages_on_one_stream():
    first = BitSwapMessage(True)
    first.add_entry(mk_fake_cid("1"), 1, WantType.BLOCK, False)
    second = BitSwapMessage(False)
    second.add_block(Block.from_data(b"two"))
    buf = io.BytesIO()
    first.to_net_v1(buf)
    second.to_net_v0(buf)
    buf.seek(0)
    assert wantlist_cids(from_net(buf)) == {mk_fake_cid("1")}
    assert [b.data for b in from_net(buf).blocks()] == [b"two"]
    with pytest.raises(EOFError):
        from_net(buf)


def test_from_net_empty_stream_is_eof():
    with pytest.raises(EOFError):
        from_net(io.BytesIO(b""))


def test_from_net_truncated_body():
    with pytest.raises(MessageError):
        from_net(io.BytesIO(b"\x05ab"))


def test_from_net_too_large():
    size = (4 << 20) + 1
    prefix = bytearray()
    while size >= 0x80:
        prefix.append(size & 0x7F | 0x80)
        size >>= 7
    prefix.append(size)
    with pytest.raises(MessageError):
        from_net(io.BytesIO(bytes(prefix)))


def test_from_proto_missing_cid():
    with pytest.raises(MessageError):
        from_proto(b"\x0a\x02\x0a\x00")


def test_from_proto_invalid_cid():
    with pytest.raises(MessageError):
        from_proto(b"\x0a\x06\x0a\x04\x0a\x02\x01\x02")


def test_from_proto_truncated():
    with pytest.raises(MessageError):
        from_proto(b"\x0a\x05")


def test_loggable():
    block = Block.from_data(b"log")
    msg = BitSwapMessage(False)
    msg.add_block(block)
    msg.add_entry(mk_fake_cid("w"), 3, WantType.BLOCK, False)
    log = msg.loggable()
    assert log["blocks"] == [str(block.cid)]
    assert [e.cid for e in log["wants"]] == [mk_fake_cid("w")]