"""Bidirectional message channels connecting a host controller and a worker registry."""

import asyncio
import logging
import pickle
import threading
from collections.abc import Callable
from multiprocessing.connection import Connection
from typing import Protocol

from emissary.errors import EmissaryProtocolError

logger = logging.getLogger(__name__)

Envelope = dict[str, object]
Receiver = Callable[[Envelope], None]
CloseCallback = Callable[[], None]
_READER_POLL_SECONDS: float = 0.05
_READER_JOIN_SECONDS: float = 1.0


class Channel(Protocol):
    """Abstract bidirectional channel of structured, serializable envelopes."""

    @property
    def is_closed(self) -> bool:
        """Report whether the channel is closed."""
        ...

    def send(self, envelope: Envelope) -> None:
        """Send one envelope to the peer."""
        ...

    def set_receiver(self, receiver: Receiver) -> None:
        """Install the inbound-message callback."""
        ...

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Register a callback invoked once when the channel closes."""
        ...

    def close(self) -> None:
        """Close the channel."""
        ...


class _ChannelBase:
    """Receiver, backlog, and close-callback bookkeeping shared by concrete channels.

    Messages that arrive before a receiver is installed are kept in arrival
    order and replayed when the receiver is set.
    """

    _loop: asyncio.AbstractEventLoop
    _receiver: Receiver | None
    _backlog: list[Envelope]
    _close_callbacks: list[CloseCallback]
    _is_closed: bool

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Initialize channel bookkeeping.

        :param loop: Event loop used for delivery. Defaults to the running loop.
        """
        if loop is None:
            loop = asyncio.get_running_loop()
        self._loop = loop
        self._receiver = None
        self._backlog = []
        self._close_callbacks = []
        self._is_closed = False

    @property
    def is_closed(self) -> bool:
        """Report whether the channel is closed.

        :returns: ``True`` when closed.
        """
        return self._is_closed

    def set_receiver(self, receiver: Receiver) -> None:
        """Install the inbound-message callback and replay any backlog.

        :param receiver: Callback invoked with each inbound envelope.
        """
        self._receiver = receiver
        backlog: list[Envelope] = self._backlog
        self._backlog = []
        for envelope in backlog:
            self._loop.call_soon(self._dispatch, envelope)

    def add_close_callback(self, callback: CloseCallback) -> None:
        """Register a callback invoked once when the channel closes.

        :param callback: Zero-argument callback.
        """
        if self._is_closed is True:
            self._loop.call_soon(callback)
            return
        self._close_callbacks.append(callback)

    def _dispatch(self, envelope: Envelope) -> None:
        if self._is_closed is True:
            return
        receiver: Receiver | None = self._receiver
        if receiver is None:
            self._backlog.append(envelope)
            return
        receiver(envelope)

    def _mark_closed(self) -> bool:
        """Flip the closed flag and schedule close callbacks.

        :returns: ``True`` when this call closed the channel.
        """
        if self._is_closed is True:
            return False
        self._is_closed = True
        self._backlog.clear()
        callbacks: list[CloseCallback] = self._close_callbacks
        self._close_callbacks = []
        for callback in callbacks:
            self._loop.call_soon(callback)
        return True


class LocalChannel(_ChannelBase):
    """One end of an in-process channel pair.

    Every envelope is pickled on send and unpickled on delivery, so payloads
    that could not cross a process boundary fail here as well. Delivery is
    asynchronous and ordered per direction.
    """

    _peer: "LocalChannel | None"

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Initialize an unconnected channel end.

        :param loop: Event loop used for delivery. Defaults to the running loop.
        """
        super().__init__(loop)
        self._peer = None

    def _connect(self, peer: "LocalChannel") -> None:
        self._peer = peer

    def send(self, envelope: Envelope) -> None:
        """Send one envelope to the peer end.

        :param envelope: Serializable envelope.
        :raises EmissaryProtocolError: If the channel is closed or the envelope is not serializable.
        """
        peer: LocalChannel | None = self._peer
        if self._is_closed is True or peer is None:
            raise EmissaryProtocolError("Channel is closed")
        try:
            payload: bytes = pickle.dumps(envelope, protocol=pickle.HIGHEST_PROTOCOL)
        except (pickle.PicklingError, TypeError, AttributeError) as exc:
            raise EmissaryProtocolError("Envelope is not serializable") from exc
        self._loop.call_soon(peer._deliver, payload)

    def _deliver(self, payload: bytes) -> None:
        if self._is_closed is True:
            return
        envelope: object = pickle.loads(payload)
        self._dispatch(envelope)  # type: ignore[arg-type]

    def close(self) -> None:
        """Close this end and the peer end."""
        was_open: bool = self._mark_closed()
        if was_open is False:
            return
        peer: LocalChannel | None = self._peer
        if peer is not None:
            peer.close()


def create_local_channel_pair(
    loop: asyncio.AbstractEventLoop | None = None,
) -> tuple[LocalChannel, LocalChannel]:
    """Create two connected in-process channel ends.

    :param loop: Event loop used for delivery. Defaults to the running loop.
    :returns: ``(host_end, worker_end)``.
    """
    host_end: LocalChannel = LocalChannel(loop)
    worker_end: LocalChannel = LocalChannel(host_end._loop)
    host_end._connect(worker_end)
    worker_end._connect(host_end)
    return host_end, worker_end


class PipeChannel(_ChannelBase):
    """Channel over a duplex ``multiprocessing`` connection.

    A daemon reader thread polls the connection and hands each message to the
    event loop. End of file from the peer closes the channel.
    """

    _connection: Connection
    _send_lock: threading.Lock
    _stop_reading: threading.Event
    _closed_event: asyncio.Event
    _reader: threading.Thread

    def __init__(self, connection: Connection, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Initialize the channel and start its reader thread.

        :param connection: Duplex connection to the peer process.
        :param loop: Event loop used for delivery. Defaults to the running loop.
        """
        super().__init__(loop)
        self._connection = connection
        self._send_lock = threading.Lock()
        self._stop_reading = threading.Event()
        self._closed_event = asyncio.Event()
        self._reader = threading.Thread(target=self._read_loop, name="emissary-pipe-reader", daemon=True)
        self._reader.start()

    def _read_loop(self) -> None:
        """Forward inbound messages to the event loop until EOF or stop."""
        while self._stop_reading.is_set() is False:
            try:
                has_data: bool = self._connection.poll(_READER_POLL_SECONDS)
                if has_data is False:
                    continue
                message: object = self._connection.recv()
            except (EOFError, OSError):
                break
            try:
                self._loop.call_soon_threadsafe(self._dispatch, message)
            except RuntimeError:
                return

        if self._stop_reading.is_set() is True:
            return
        try:
            self._loop.call_soon_threadsafe(self._on_peer_closed)
        except RuntimeError:
            return

    def _on_peer_closed(self) -> None:
        logger.debug("Pipe peer closed the channel")
        self.close()

    def send(self, envelope: Envelope) -> None:
        """Send one envelope to the peer process.

        :param envelope: Picklable envelope.
        :raises EmissaryProtocolError: If the channel is closed, broken, or the envelope is not picklable.
        """
        if self._is_closed is True:
            raise EmissaryProtocolError("Channel is closed")
        with self._send_lock:
            try:
                self._connection.send(envelope)
            except (pickle.PicklingError, TypeError, AttributeError) as exc:
                raise EmissaryProtocolError("Envelope is not serializable") from exc
            except (BrokenPipeError, EOFError, OSError) as exc:
                raise EmissaryProtocolError("Failed to send envelope to peer process") from exc

    async def wait_closed(self) -> None:
        """Wait until the channel is closed locally or by the peer."""
        await self._closed_event.wait()

    def close(self) -> None:
        """Stop the reader thread and close the connection."""
        was_open: bool = self._mark_closed()
        if was_open is False:
            return
        self._stop_reading.set()
        is_reader_thread: bool = threading.current_thread() is self._reader
        if is_reader_thread is False:
            self._reader.join(timeout=_READER_JOIN_SECONDS)
        try:
            self._connection.close()
        except OSError:
            pass
        self._closed_event.set()
