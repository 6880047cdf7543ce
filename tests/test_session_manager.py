import threading

import pytest

from bitswap.cid import Block
from bitswap.session_interest_manager import SessionInterestManager
from bitswap.session_manager import SessionManager
from bitswap.testutil import match_keys_ignore_order


class _FakeSession:
    def __init__(self, session_id, sm):
        self.id = session_id
        self.sm = sm
        self.ks = []
        self.want_blocks = []
        self.want_haves = []

    def receive_from(self, peer, ks, want_blocks, want_haves):
        self.ks.extend(ks)
        self.want_blocks.extend(want_blocks)
        self.want_haves.extend(want_haves)

    def shutdown(self):
        self.sm.remove_session(self.id)


class _FakeSessionPeerManager:
    pass


class _FakePeerManager:
    def __init__(self):
        self.lock = threading.Lock()
        self.cancels = []

    def send_cancels(self, keys):
        with self.lock:
            self.cancels.extend(keys)


class _FakeBlockPresenceManager:
    def __init__(self):
        self.keys = set()

    def receive_from(self, peer, haves, dont_haves):
        self.keys.update(haves)
        self.keys.update(dont_haves)

    def remove_keys(self, keys):
        self.keys.difference_update(keys)

    def has_key(self, key):
        return key in self.keys


def _session_factory(sm, session_id, spm, sim, pm, bpm, notif, search, rebroadcast, self_id):
    assert isinstance(spm, _FakeSessionPeerManager)
    return _FakeSession(session_id, sm)


def _peer_manager_factory(session_id):
    return _FakeSessionPeerManager()


@pytest.fixture
def env():
    sim = SessionInterestManager()
    bpm = _FakeBlockPresenceManager()
    pm = _FakePeerManager()
    sm = SessionManager(
        _session_factory, sim, _peer_manager_factory, bpm, pm, None, ""
    )
    return sm, sim, bpm, pm


def test_receive_from(env):
    sm, sim, bpm, pm = env
    peer = "123"
    block = Block.from_data(b"block")

    first = sm.new_session(1.0, 60.0)
    second = sm.new_session(1.0, 60.0)
    third = sm.new_session(1.0, 60.0)

    sim.record_session_interest(first.id, [block.cid])
    sim.record_session_interest(third.id, [block.cid])

    sm.receive_from(peer, [block.cid], [], [])
    assert first.ks and third.ks
    assert second.ks == []

    sm.receive_from(peer, [], [block.cid], [])
    assert first.want_blocks and third.want_blocks
    assert second.want_blocks == []

    sm.receive_from(peer, [], [], [block.cid])
    assert first.want_haves and third.want_haves
    assert second.want_haves == []

    assert pm.cancels == [block.cid]


def test_receive_blocks_when_manager_shutdown(env):
    sm, sim, bpm, pm = env
    block = Block.from_data(b"block")

    sessions = [sm.new_session(1.0, 60.0) for _ in range(3)]
    for session in sessions:
        sim.record_session_interest(session.id, [block.cid])

    sm.shutdown()

    sm.receive_from("123", [block.cid], [], [])
    assert all(session.ks == [] for session in sessions)


def test_receive_blocks_when_session_removed(env):
    sm, sim, bpm, pm = env
    block = Block.from_data(b"block")

    first = sm.new_session(1.0, 60.0)
    second = sm.new_session(1.0, 60.0)
    third = sm.new_session(1.0, 60.0)
    for session in (first, second, third):
        sim.record_session_interest(session.id, [block.cid])

    sm.remove_session(second.id)

    sm.receive_from("123", [block.cid], [], [])
    assert first.ks == [block.cid]
    assert second.ks == []
    assert third.ks == [block.cid]


def test_shutdown(env):
    sm, sim, bpm, pm = env
    block = Block.from_data(b"block")
    cids = [block.cid]
    first = sm.new_session(1.0, 60.0)
    sim.record_session_interest(first.id, cids)
    sm.receive_from("123", [], [], cids)

    assert bpm.has_key(block.cid)

    sm.shutdown()

    assert not bpm.has_key(block.cid)
    assert match_keys_ignore_order(pm.cancels, cids)


def test_session_ids_are_sequential(env):
    sm, _, _, _ = env
    first = sm.new_session(1.0, 60.0)
    second = sm.new_session(1.0, 60.0)
    assert (first.id, second.id) == (1, 2)
    assert sm.next_session_id() == 3


def test_cancel_session_wants(env):
    sm, sim, bpm, pm = env
    a = Block.from_data(b"a").cid
    b = Block.from_data(b"b").cid
    first = sm.new_session(1.0, 60.0)
    second = sm.new_session(1.0, 60.0)
    sim.record_session_interest(first.id, [a, b])
    sim.record_session_interest(second.id, [b])

    sm.cancel_session_wants(first.id, [a, b])
    assert pm.cancels == [a]
    assert sim.interested_sessions([b], [], []) == [second.id]


def test_new_session_after_shutdown_is_not_tracked(env):
    sm, sim, bpm, pm = env
    block = Block.from_data(b"block")
    sm.shutdown()
    late = sm.new_session(1.0, 60.0)
    sim.record_session_interest(late.id, [block.cid])
    sm.receive_from("123", [block.cid], [], [])
    assert late.ks == []