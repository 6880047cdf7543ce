"""The bitswap network: protocol negotiation, message sending and receiving."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from bitswap.cid import Cid
from bitswap.connect_event_manager import ConnectEventManager
from bitswap.message import BitSwapMessage, from_net

log = logging.getLogger("bitswap.network")

# The legacy bitswap protocol, without a version.
PROTOCOL_BITSWAP_NO_VERS = "/ipfs/bitswap"
# The legacy bitswap protocol, version 1.0.0.
PROTOCOL_BITSWAP_ONE_ZERO = "/ipfs/bitswap/1.0.0"
# Version 1.1.0 of the protocol.
PROTOCOL_BITSWAP_ONE_ONE = "/ipfs/bitswap/1.1.0"
# The current version of the protocol: 1.2.0.
PROTOCOL_BITSWAP = "/ipfs/bitswap/1.2.0"

DEFAULT_PROTOCOLS = (
    PROTOCOL_BITSWAP,
    PROTOCOL_BITSWAP_ONE_ONE,
    PROTOCOL_BITSWAP_ONE_ZERO,
    PROTOCOL_BITSWAP_NO_VERS,
)

# All durations are in seconds.
CONNECT_TIMEOUT = 5.0
MAX_SEND_TIMEOUT = 120.0
MIN_SEND_TIMEOUT = 10.0
SEND_LATENCY = 2.0
MIN_SEND_RATE = (100 * 1000) // 8  # 100 kbit/s in bytes per second
TEMP_ADDR_TTL = 120.0

DEFAULT_MAX_RETRIES = 3
DEFAULT_SEND_ERROR_BACKOFF = 0.1

_NS_PER_SECOND = 1_000_000_000


def _ns(seconds: float) -> int:
    return int(round(seconds * _NS_PER_SECOND))


class ProtocolNotSupportedError(Exception):
    """The remote peer does not speak any of the offered protocols."""


class UnrecognizedProtocolError(Exception):
    """A stream was negotiated on a protocol this network cannot write."""


class Stream(Protocol):
    """A negotiated stream to a remote peer.

    ``set_write_deadline`` takes a ``time.monotonic()`` instant, or None to
    clear the deadline.
    """

    protocol: str
    remote_peer: str

    def read(self, size: int) -> bytes: ...

    def write(self, data: bytes) -> Any: ...

    def close(self) -> None: ...

    def reset(self) -> None: ...

    def set_write_deadline(self, deadline: float | None) -> None: ...


class Host(Protocol):
    """The peer-to-peer host the network runs on."""

    peer_id: str

    def connect(self, peer: str, timeout: float | None) -> None: ...

    def new_stream(
        self, peer: str, protocols: Sequence[str], timeout: float | None
    ) -> Stream: ...

    def set_stream_handler(
        self, protocol: str, handler: Callable[[Stream], None]
    ) -> None: ...

    def notify(self, notifiee: Any) -> None: ...

    def stop_notify(self, notifiee: Any) -> None: ...

    def latency(self, peer: str) -> float: ...

    def connection_manager(self) -> Any: ...

    def add_addrs(self, peer: str, addrs: Sequence[Any], ttl: float) -> None: ...


class ContentRouting(Protocol):
    def find_providers(
        self, key: Cid, limit: int
    ) -> Iterable[tuple[str, Sequence[Any]]]: ...

    def provide(self, key: Cid, announce: bool) -> None: ...


class Receiver(Protocol):
    """Receives messages and connection events from the network."""

    def receive_message(self, sender: str, incoming: BitSwapMessage) -> None: ...

    def receive_error(self, error: Exception) -> None: ...

    def peer_connected(self, peer: str) -> None: ...

    def peer_disconnected(self, peer: str) -> None: ...


@dataclass(frozen=True)
class Stats:
    """Counts of bitswap messages sent and received on this network."""

    messages_sent: int = 0
    messages_recvd: int = 0


@dataclass(frozen=True)
class MessageSenderOpts:
    """Options of a message sender; zero values mean "use the default"."""

    max_retries: int = 0
    send_timeout: float = 0.0
    send_error_backoff: float = 0.0

    def with_defaults(self) -> MessageSenderOpts:
        return dataclasses.replace(
            self,
            max_retries=self.max_retries or DEFAULT_MAX_RETRIES,
            send_timeout=self.send_timeout or MAX_SEND_TIMEOUT,
            send_error_backoff=self.send_error_backoff or DEFAULT_SEND_ERROR_BACKOFF,
        )


def process_settings(
    protocol_prefix: str = "", supported_protocols: Iterable[str] | None = None
) -> list[str]:
    """Return the supported protocols, each with the prefix applied."""
    protocols = DEFAULT_PROTOCOLS if supported_protocols is None else supported_protocols
    return [protocol_prefix + proto for proto in protocols]


def send_timeout(size: int) -> float:
    """The time allowed to send ``size`` bytes, in seconds."""
    timeout = _ns(SEND_LATENCY) + (_NS_PER_SECOND * size) // MIN_SEND_RATE
    timeout = min(max(timeout, _ns(MIN_SEND_TIMEOUT)), _ns(MAX_SEND_TIMEOUT))
    return timeout / _NS_PER_SECOND


class StreamMessageSender:
    """Sends a series of messages to one peer over a reusable stream."""

    def __init__(self, to: str, network: BitswapNetwork, opts: MessageSenderOpts):
        self.to = to
        self._network = network
        self._opts = opts
        self._stream: Stream | None = None
        self._connected = False

    def connect(self) -> Stream:
        """Open a stream to the remote peer, unless one is already open."""
        if self._connected and self._stream is not None:
            return self._stream
        timeout = self._opts.send_timeout
        self._network._connect_to(self.to, timeout)
        self._stream = self._network._new_stream_to_peer(self.to, timeout)
        self._connected = True
        return self._stream

    def reset(self) -> None:
        if self._stream is not None:
            try:
                self._stream.reset()
            finally:
                self._connected = False

    def close(self) -> None:
        if self._stream is not None:
            self._stream.close()

    def supports_have(self) -> bool:
        """Whether the remote peer supports HAVE / DONT_HAVE messages."""
        if self._stream is None:
            return False
        return self._network.supports_have(self._stream.protocol)

    def send_msg(self, message: BitSwapMessage) -> None:
        """Send a message, retrying on failure."""
        self._multi_attempt(lambda: self._send(message))

    def _multi_attempt(self, fn: Callable[[], Any]) -> None:
        retries = self._opts.max_retries
        for attempt in range(retries):
            try:
                fn()
                return
            except ProtocolNotSupportedError:
                # No point in trying again.
                self._network._mark_unresponsive(self.to)
                raise
            except Exception as err:
                try:
                    self.reset()
                except Exception as reset_err:
                    log.debug("error resetting stream to %s: %s", self.to, reset_err)
                if attempt == retries - 1:
                    self._network._mark_unresponsive(self.to)
                    raise
                time.sleep(self._opts.send_error_backoff)
                log.info("send message to %s failed, retrying: %s", self.to, err)

    def _send(self, message: BitSwapMessage) -> None:
        start = time.monotonic()
        try:
            stream = self.connect()
        except Exception as err:
            log.info("failed to open stream to %s: %s", self.to, err)
            raise
        # The send timeout includes the time taken to connect.
        timeout = self._opts.send_timeout - (time.monotonic() - start)
        try:
            self._network._msg_to_stream(stream, message, timeout)
        except Exception as err:
            log.info("failed to send message to %s: %s", self.to, err)
            raise


class BitswapNetwork:
    """Bitswap messaging on top of a peer-to-peer host."""

    def __init__(
        self,
        host: Host,
        routing: ContentRouting,
        protocol_prefix: str = "",
        supported_protocols: Iterable[str] | None = None,
    ) -> None:
        self._host = host
        self._routing = routing
        self._protocol_no_vers = protocol_prefix + PROTOCOL_BITSWAP_NO_VERS
        self._protocol_one_zero = protocol_prefix + PROTOCOL_BITSWAP_ONE_ZERO
        self._protocol_one_one = protocol_prefix + PROTOCOL_BITSWAP_ONE_ONE
        self._protocol_bitswap = protocol_prefix + PROTOCOL_BITSWAP
        self.supported_protocols = process_settings(protocol_prefix, supported_protocols)
        self._receivers: list[Receiver] = []
        self._events: ConnectEventManager | None = None
        self._stats_lock = threading.Lock()
        self._sent = 0
        self._recvd = 0

    def self_id(self) -> str:
        return self._host.peer_id

    def latency(self, peer: str) -> float:
        return self._host.latency(peer)

    def supports_have(self, protocol: str) -> bool:
        """Whether the protocol supports HAVE / DONT_HAVE messages."""
        return protocol not in (
            self._protocol_one_one,
            self._protocol_one_zero,
            self._protocol_no_vers,
        )

    def start(self, *args: Receiver) -> None:
        """Register the receivers and start handling streams and events."""
        self._receivers = list(args)
        self._events = ConnectEventManager(*self._receivers)
        for proto in self.supported_protocols:
            self._host.set_stream_handler(proto, self.handle_new_stream)
        self._host.notify(self)
        self._events.start()

    def stop(self) -> None:
        if self._events is not None:
            self._events.stop()
        self._host.stop_notify(self)

    def connect_to(self, peer: str) -> None:
        self._connect_to(peer, None)

    def _connect_to(self, peer: str, timeout: float | None) -> None:
        self._host.connect(peer, timeout)

    def _new_stream_to_peer(self, peer: str, timeout: float | None) -> Stream:
        return self._host.new_stream(peer, self.supported_protocols, timeout)

    def _mark_unresponsive(self, peer: str) -> None:
        if self._events is not None:
            self._events.mark_unresponsive(peer)

    def _msg_to_stream(
        self, stream: Stream, message: BitSwapMessage, timeout: float
    ) -> None:
        try:
            stream.set_write_deadline(time.monotonic() + timeout)
        except Exception as err:
            log.warning("error setting deadline: %s", err)

        # Older versions use a different wire format.
        protocol = stream.protocol
        if protocol in (self._protocol_one_one, self._protocol_bitswap):
            message.to_net_v1(stream)
        elif protocol in (self._protocol_one_zero, self._protocol_no_vers):
            message.to_net_v0(stream)
        else:
            raise UnrecognizedProtocolError(
                f"unrecognized protocol on remote: {protocol}"
            )

        with self._stats_lock:
            self._sent += 1

        try:
            stream.set_write_deadline(None)
        except Exception as err:
            log.warning("error resetting deadline: %s", err)

    def send_message(self, peer: str, message: BitSwapMessage) -> None:
        """Send one message to the peer on a new stream."""
        stream = self._new_stream_to_peer(peer, CONNECT_TIMEOUT)
        try:
            self._msg_to_stream(stream, message, send_timeout(message.size()))
        except Exception:
            try:
                stream.reset()
            except Exception as reset_err:
                log.debug("error resetting stream to %s: %s", peer, reset_err)
            raise
        stream.close()

    def new_message_sender(
        self, peer: str, opts: MessageSenderOpts | None = None
    ) -> StreamMessageSender:
        """Open a sender to the peer, retrying the connection as configured."""
        opts = (opts or MessageSenderOpts()).with_defaults()
        sender = StreamMessageSender(peer, self, opts)
        sender._multi_attempt(sender.connect)
        return sender

    def find_providers(self, key: Cid, limit: int) -> Iterator[str]:
        """Yield the peers that provide the key, never this host itself."""
        for peer, addrs in self._routing.find_providers(key, limit):
            if peer == self._host.peer_id:
                continue
            self._host.add_addrs(peer, addrs, TEMP_ADDR_TTL)
            yield peer

    def provide(self, key: Cid) -> None:
        self._routing.provide(key, True)

    def handle_new_stream(self, stream: Stream) -> None:
        """Read messages from an incoming stream until it ends."""
        try:
            if not self._receivers:
                stream.reset()
                return
            while True:
                try:
                    received = from_net(stream)
                except EOFError:
                    return
                except Exception as err:
                    stream.reset()
                    for receiver in self._receivers:
                        receiver.receive_error(err)
                    log.debug(
                        "handleNewStream from %s error: %s", stream.remote_peer, err
                    )
                    return
                peer = stream.remote_peer
                log.debug("handleNewStream from %s", peer)
                if self._events is not None:
                    self._events.on_message(peer)
                with self._stats_lock:
                    self._recvd += 1
                for receiver in self._receivers:
                    receiver.receive_message(peer, received)
        finally:
            stream.close()

    def connection_manager(self) -> Any:
        return self._host.connection_manager()

    def stats(self) -> Stats:
        with self._stats_lock:
            return Stats(messages_sent=self._sent, messages_recvd=self._recvd)

    def peer_connected(self, peer: str, transient: bool) -> None:
        """Host notification of a new connection; transient ones are ignored."""
        if transient or self._events is None:
            return
        self._events.connected(peer)

    def peer_disconnected(self, peer: str, still_connected: bool) -> None:
        """Host notification of a closed connection."""
        if still_connected or self._events is None:
            return
        self._events.disconnected(peer)