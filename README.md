# bitswap

Building blocks for the Bitswap block-exchange protocol. The package covers content identifiers, wantlists and wire messages, and keeps the books on sessions and peer connections. It uses only the standard library.

## Installation

```
pip install .
```

To install with the test dependencies:

```
pip install ".[test]"
```

## Modules

- `bitswap.cid` defines `Cid`, `Prefix` and `Block`.
  - `Cid` covers version 0 and 1 CIDs. `Cid.decode` reads base58 (`Qm...` and `z...`), base32 (`b...`) and hex (`f...`) text. `str()` gives base58 for v0 and base32 for v1.
  - `Prefix.sum` hashes data into a CID, using the identity, SHA-1, SHA-2 or SHA-3 multihashes.
  - `Block.from_data` builds a block with a CIDv0 SHA-256 identifier.
  - Bad input raises `CidError`.
  - `sha256_multihash`, `base58_encode` and `base58_decode` are also available.
- `bitswap.wantlist` defines `Wantlist`, a set of wanted CIDs.
  - Each `Entry` has a priority and a `WantType` (`BLOCK` or `HAVE`).
  - A want-have never overrides an existing want, and `remove_type` with `HAVE` never removes a want-block.
  - `entries()` returns the entries ordered by descending priority.
  - `contains()` returns the entry or `None`.
- `bitswap.message` defines `BitSwapMessage`, which holds wantlist entries, blocks and HAVE / DONT_HAVE presences.
  - `add_entry` and `cancel` merge entries for the same CID. A want-block upgrades a want-have, and the cancel and send-DONT_HAVE flags are only ever turned on.
  - A block replaces any presence for the same CID.
  - `to_proto_v0` and `to_proto_v1` encode the message. `to_net_v0` and `to_net_v1` write the encoding with a varint length prefix.
  - `from_proto` and `from_net` decode a message. They raise `MessageError` for malformed data, and `from_net` raises `EOFError` at a clean end of stream.
- `bitswap.session_interest_manager` defines `SessionInterestManager`. It records which sessions want, or are only interested in, which CIDs, and splits received blocks into wanted and unwanted.
- `bitswap.session_peer_manager` defines `SessionPeerManager`. It tracks the peers of one session and tags, untags, protects and unprotects them through a tagger you supply. The tag is `bs-ses-<id>`.
- `bitswap.session_manager` defines `SessionManager`.
  - It hands out sequential session ids and creates sessions through a factory.
  - `receive_from` dispatches received blocks, HAVEs and DONT_HAVEs to the interested sessions.
  - It sends cancels through a peer manager.
  - After `shutdown()` it tracks no sessions.
- `bitswap.connect_event_manager` defines `ConnectEventManager`.
  - It turns `connected`, `disconnected`, `mark_unresponsive` and `on_message` calls into deduplicated `peer_connected` / `peer_disconnected` calls on its listeners, delivered from a worker thread.
  - `wait_idle(timeout)` waits until every queued change has been delivered.
- `bitswap.network` defines `BitswapNetwork` and `StreamMessageSender`.
  - They speak `/ipfs/bitswap/1.2.0`, `1.1.0`, `1.0.0` and the unversioned protocol, with an optional prefix. `supports_have` is true only for 1.2.0.
  - Messages are written in the v1 or v0 format according to the negotiated protocol.
  - A sender retries failed sends. The defaults in `MessageSenderOpts` are 3 attempts, a 120 s timeout and a 0.1 s backoff. When the retries run out, or the remote peer answers with `ProtocolNotSupportedError`, the peer is marked unresponsive.
  - `send_timeout(size)` gives the time allowed for a send, in seconds, between 10 and 120.
  - `stats()` counts messages sent and received.
- `bitswap.testutil` generates blocks, CIDs, peers, session ids and wantlist entries, and provides matching helpers.

## Example

```python
import io

from bitswap.cid import Block
from bitswap.message import BitSwapMessage, from_net
from bitswap.wantlist import WantType, Wantlist

block = Block.from_data(b"hello")

msg = BitSwapMessage(True)
msg.add_entry(block.cid, 1, WantType.BLOCK, True)
msg.add_block(Block.from_data(b"world"))

buf = io.BytesIO()
msg.to_net_v1(buf)
buf.seek(0)

decoded = from_net(buf)
assert decoded.full
assert [e.cid for e in decoded.wantlist()] == [block.cid]

wl = Wantlist()
wl.add(block.cid, 5, WantType.HAVE)
wl.add(block.cid, 5, WantType.BLOCK)
assert wl.contains(block.cid).want_type is WantType.BLOCK
```

## What this package does not do

This package is a set of building blocks, not a running node.

- It has no transport, host or content routing of its own. `BitswapNetwork` expects you to supply objects that open streams, connect to peers and find providers.
- `SessionManager` does not implement sessions, a peer manager or a block-presence manager. You pass these in as factories and objects.
- There is no block store, no decision engine that answers other peers' wants, and no command-line program.

## Running the tests

```
pytest
```