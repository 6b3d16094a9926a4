"""Host-side controller: request correlation, stand-in construction, and teardown."""

import asyncio
import logging
import weakref
from collections.abc import Callable
from collections.abc import Sequence
from typing import Any

from emissary.channel import Channel
from emissary.channel import Envelope
from emissary.descriptors import ExposureDescriptor
from emissary.descriptors import encode_key
from emissary.errors import EmissaryError
from emissary.errors import EmissaryProtocolError
from emissary.errors import StaleReferenceError
from emissary.errors import TeardownTimeoutError
from emissary.protocol import RESPONSE_KEYS
from emissary.protocol import build_request
from emissary.protocol import encode_slot_ref
from emissary.protocol import parse_exposed
from emissary.protocol import reconstruct_error
from emissary.protocol import require_invocation_id
from emissary.standin import StandIn
from emissary.standin import stand_in_class_for

logger = logging.getLogger(__name__)

DEFAULT_TEARDOWN_TIMEOUT: float = 5.0
_DRAIN_INITIAL_DELAY: float = 0.005
_DRAIN_MAX_DELAY: float = 0.1


def _validate_timeout(name: str, value: float | None, allow_none: bool = False) -> float | None:
    """Validate a timeout option.

    :param name: Option name used in the error message.
    :param value: Candidate value.
    :param allow_none: Whether ``None`` (no deadline) is accepted.
    :returns: Validated value.
    :raises ValueError: If the value is negative, not a number, or a disallowed ``None``.
    """
    if value is None:
        if allow_none is True:
            return None
        raise ValueError(f"{name} must be a number")
    if isinstance(value, bool) is True or isinstance(value, (int, float)) is False:
        raise ValueError(f"{name} must be a number")
    if value < 0:
        raise ValueError(f"{name} must not be negative")
    return float(value)


def _release_collected_slot(controller_ref: "weakref.ReferenceType[HostController]", slot: int) -> None:
    """Finalize a collected stand-in by destroying its slot.

    :param controller_ref: Weak reference to the owning controller.
    :param slot: Slot of the collected stand-in.
    """
    controller: HostController | None = controller_ref()
    if controller is None:
        return
    controller.release_slot_nowait(slot)


def _consume_outcome(future: "asyncio.Future[object]") -> None:
    if future.cancelled() is True:
        return
    exc: BaseException | None = future.exception()
    if exc is not None:
        logger.debug("Fire-and-forget request settled with %s: %s", type(exc).__name__, exc)


class HostController:
    """Issue requests to a worker registry and correlate its responses."""

    _channel: Channel
    _loop: asyncio.AbstractEventLoop
    _teardown_timeout: float
    _track_liveness: bool
    _next_invocation_id: int
    _pending: dict[int, "asyncio.Future[object]"]
    _roots: "asyncio.Future[object]"
    _is_terminating: bool
    _is_terminated: bool
    _terminated_event: asyncio.Event

    def __init__(
        self,
        channel: Channel,
        teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
        track_liveness: bool = True,
    ) -> None:
        """Initialize the controller and start receiving from ``channel``.

        Must be called from a running event loop.

        :param channel: Channel to the worker.
        :param teardown_timeout: Seconds :meth:`terminate` waits for in-flight requests.
        :param track_liveness: Whether collected stand-ins destroy their slot.
        :raises ValueError: If ``teardown_timeout`` is invalid.
        """
        self._teardown_timeout = _validate_timeout("teardown_timeout", teardown_timeout)  # type: ignore[assignment]
        self._channel = channel
        self._loop = asyncio.get_running_loop()
        self._track_liveness = track_liveness
        self._next_invocation_id = 1
        self._pending = {}
        self._roots = self._loop.create_future()
        self._is_terminating = False
        self._is_terminated = False
        self._terminated_event = asyncio.Event()
        channel.set_receiver(self._on_message)
        channel.add_close_callback(self._on_channel_closed)

    @property
    def channel(self) -> Channel:
        """Return the channel to the worker.

        :returns: Channel.
        """
        return self._channel

    @property
    def in_flight(self) -> frozenset[int]:
        """Return the invocation ids still awaiting a response.

        :returns: Outstanding invocation ids.
        """
        return frozenset(self._pending)

    @property
    def is_terminated(self) -> bool:
        """Report whether the controller was torn down.

        :returns: ``True`` once terminated or closed.
        """
        return self._is_terminated

    async def connect(self, timeout: float | None = None) -> Any:
        """Wait for the worker's root announcement.

        :param timeout: Optional deadline in seconds.
        :returns: One stand-in for a single root, otherwise a list of stand-ins.
        :raises asyncio.TimeoutError: If the announcement does not arrive in time.
        :raises EmissaryProtocolError: If the channel closes or the announcement is malformed.
        """
        validated_timeout: float | None = _validate_timeout("timeout", timeout, allow_none=True)
        return await asyncio.wait_for(asyncio.shield(self._roots), validated_timeout)

    async def request(
        self,
        path: Sequence[object],
        action: str,
        slot: int,
        args: Sequence[object] = (),
        kwargs: dict[str, object] | None = None,
    ) -> Any:
        """Send one request and wait for its correlated response.

        :param path: Member path relative to the slot (raw keys).
        :param action: Action name.
        :param slot: Target slot.
        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Raw data, one stand-in, or a list of stand-ins.
        :raises EmissaryError: For protocol failures and reconstructed library errors.
        :raises RemoteExecutionError: When the worker raised while serving the request.
        """
        future: asyncio.Future[object] = self._submit(path, action, slot, args, kwargs)
        return await future

    def _submit(
        self,
        path: Sequence[object],
        action: str,
        slot: int,
        args: Sequence[object] = (),
        kwargs: dict[str, object] | None = None,
        allow_during_teardown: bool = False,
    ) -> "asyncio.Future[object]":
        """Register a pending invocation and send its request.

        :returns: Future settled by the matching response.
        """
        if self._is_terminated is True:
            raise EmissaryProtocolError("Controller is terminated")
        if self._is_terminating is True and allow_during_teardown is False:
            raise EmissaryProtocolError("Controller is terminating")

        encoded_path: list[str] = [encode_key(segment) for segment in path]
        encoded_args: list[object] = [self._encode_argument(item) for item in args]
        encoded_kwargs: dict[str, object] = {}
        if kwargs is not None:
            for key, value in kwargs.items():
                encoded_kwargs[key] = self._encode_argument(value)

        invocation_id: int = self._next_invocation_id
        self._next_invocation_id += 1
        envelope: Envelope = build_request(invocation_id, encoded_path, action, slot, encoded_args, encoded_kwargs)

        future: asyncio.Future[object] = self._loop.create_future()
        self._pending[invocation_id] = future
        try:
            self._channel.send(envelope)
        except EmissaryProtocolError:
            self._pending.pop(invocation_id, None)
            raise
        logger.debug("Sent %s #%d for slot %d path %r", action, invocation_id, slot, encoded_path)
        return future

    def _encode_argument(self, value: object) -> object:
        """Replace stand-ins inside arguments with slot references.

        :param value: Runtime argument.
        :returns: Wire argument.
        :raises EmissaryError: If a stand-in belongs to another controller.
        :raises StaleReferenceError: If a stand-in was released.
        """
        if isinstance(value, StandIn) is True:
            if value.controller is not self:
                raise EmissaryError("Cannot pass stand-ins between different controllers")
            if value.is_released is True:
                raise StaleReferenceError(f"Stand-in for slot {value.slot} was released")
            return encode_slot_ref(value.slot)
        if isinstance(value, list) is True:
            return [self._encode_argument(item) for item in value]
        if isinstance(value, tuple) is True:
            return tuple(self._encode_argument(item) for item in value)
        if isinstance(value, dict) is True:
            return {key: self._encode_argument(item) for key, item in value.items()}
        return value

    def _on_message(self, envelope: Envelope) -> None:
        if isinstance(envelope, dict) is False:
            logger.warning("Dropping non-dict message from worker: %r", envelope)
            return

        if "invocation_id" not in envelope:
            if "exposed" in envelope:
                self._on_announcement(envelope)
                return
            logger.warning("Dropping uncorrelated message without exposed payload")
            return

        try:
            invocation_id: int = require_invocation_id(envelope)
        except EmissaryProtocolError as exc:
            logger.warning("Dropping response: %s", exc)
            return

        future: asyncio.Future[object] | None = self._pending.pop(invocation_id, None)
        if future is None:
            logger.debug("Discarding response for unknown or settled invocation %d", invocation_id)
            return
        if future.done() is True:
            return

        present_keys: list[str] = [key for key in RESPONSE_KEYS if key in envelope]
        if len(present_keys) != 1:
            future.set_exception(
                EmissaryProtocolError(
                    f"Response {invocation_id} must carry exactly one of result, exposed, error"
                )
            )
            return

        response_key: str = present_keys[0]
        if response_key == "error":
            future.set_exception(reconstruct_error(envelope["error"]))
            return
        if response_key == "exposed":
            try:
                descriptors: list[ExposureDescriptor] = parse_exposed(envelope)
            except EmissaryProtocolError as exc:
                future.set_exception(exc)
                return
            future.set_result(self._materialize(descriptors))
            return
        future.set_result(envelope["result"])

    def _on_announcement(self, envelope: Envelope) -> None:
        if self._roots.done() is True:
            logger.warning("Ignoring repeated root announcement")
            return
        try:
            descriptors: list[ExposureDescriptor] = parse_exposed(envelope)
        except EmissaryProtocolError as exc:
            self._roots.set_exception(exc)
            return
        logger.debug("Received %d root descriptor(s)", len(descriptors))
        self._roots.set_result(self._materialize(descriptors))

    def _materialize(self, descriptors: list[ExposureDescriptor]) -> Any:
        stand_ins: list[StandIn] = [self._create_stand_in(descriptor) for descriptor in descriptors]
        if len(stand_ins) == 1:
            return stand_ins[0]
        return stand_ins

    def _create_stand_in(self, descriptor: ExposureDescriptor) -> StandIn:
        """Build a stand-in and register it with the liveness tracker.

        :param descriptor: Exposure descriptor.
        :returns: Bound stand-in.
        """
        stand_in_type: type[StandIn] = stand_in_class_for(descriptor)
        stand_in: StandIn = stand_in_type(self, descriptor)
        if self._track_liveness is True:
            controller_ref: weakref.ReferenceType[HostController] = weakref.ref(self)
            finalizer: weakref.finalize = weakref.finalize(
                stand_in,
                _release_collected_slot,
                controller_ref,
                descriptor.slot,
            )
            finalizer.atexit = False
            stand_in._attach_finalizer(finalizer)
        return stand_in

    async def release_slot(self, slot: int) -> None:
        """Destroy ``slot`` and wait for the acknowledgment.

        Does nothing once the controller is torn down.

        :param slot: Slot to destroy.
        """
        if self._is_terminated is True or self._channel.is_closed is True:
            return
        await self.request([], "destroy", slot)

    def release_slot_nowait(self, slot: int) -> None:
        """Destroy ``slot`` without waiting. Safe to call from any thread.

        :param slot: Slot to destroy.
        """
        if self._is_terminated is True or self._loop.is_closed() is True:
            return
        try:
            running_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None
        if running_loop is self._loop:
            self._send_destroy(slot)
            return
        try:
            self._loop.call_soon_threadsafe(self._send_destroy, slot)
        except RuntimeError:
            return

    def _send_destroy(self, slot: int) -> None:
        if self._is_terminated is True or self._channel.is_closed is True:
            return
        try:
            future: asyncio.Future[object] = self._submit([], "destroy", slot, allow_during_teardown=True)
        except EmissaryError as exc:
            logger.debug("Skipping destroy for slot %d: %s", slot, exc)
            return
        future.add_done_callback(_consume_outcome)

    async def drain(self, timeout: float) -> bool:
        """Wait until no invocation is in flight, polling with increasing backoff.

        :param timeout: Deadline in seconds.
        :returns: ``True`` when the in-flight set emptied before the deadline.
        """
        validated_timeout: float = _validate_timeout("timeout", timeout)  # type: ignore[assignment]
        deadline: float = self._loop.time() + validated_timeout
        delay: float = _DRAIN_INITIAL_DELAY
        while len(self._pending) > 0:
            remaining: float = deadline - self._loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, _DRAIN_MAX_DELAY)
        return True

    async def terminate(self, slot: int | None = None) -> None:
        """Tear down the controller, first destroying ``slot`` when given.

        Waits up to ``teardown_timeout`` for in-flight requests. Requests still
        pending at the deadline are rejected with :class:`TeardownTimeoutError`.
        The channel is closed in every case.

        :param slot: Optional slot to destroy before draining.
        """
        if self._is_terminated is True:
            return
        if self._is_terminating is True:
            await self._terminated_event.wait()
            return

        if slot is not None:
            self._send_destroy(slot)
        self._is_terminating = True
        try:
            drained: bool = await self.drain(self._teardown_timeout)
            if drained is False:
                outstanding: int = len(self._pending)
                logger.warning(
                    "Teardown deadline of %.3fs elapsed with %d request(s) in flight",
                    self._teardown_timeout,
                    outstanding,
                )
                self._reject_pending(
                    lambda invocation_id: TeardownTimeoutError(
                        f"Invocation {invocation_id} was still in flight when teardown timed out"
                    )
                )
        finally:
            self._shutdown()

    def close(self) -> None:
        """Tear down immediately, rejecting outstanding requests."""
        if self._is_terminated is True:
            return
        self._reject_pending(
            lambda invocation_id: EmissaryProtocolError(
                f"Controller closed while invocation {invocation_id} was in flight"
            )
        )
        self._shutdown()

    def _shutdown(self) -> None:
        self._is_terminated = True
        self._is_terminating = False
        if self._roots.done() is False:
            self._roots.set_exception(EmissaryProtocolError("Controller terminated before roots were announced"))
            self._roots.exception()
        if self._channel.is_closed is False:
            self._channel.close()
        self._terminated_event.set()

    def _on_channel_closed(self) -> None:
        self._reject_pending(
            lambda invocation_id: EmissaryProtocolError(
                f"Channel closed while invocation {invocation_id} was in flight"
            )
        )
        if self._is_terminated is False and self._is_terminating is False:
            self._shutdown()

    def _reject_pending(self, make_error: Callable[[int], Exception]) -> None:
        pending: dict[int, asyncio.Future[object]] = self._pending
        self._pending = {}
        for invocation_id, future in pending.items():
            if future.done() is False:
                future.set_exception(make_error(invocation_id))

    async def __aenter__(self) -> "HostController":
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        await self.terminate()


async def connect(
    channel: Channel,
    teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
    connect_timeout: float | None = None,
    track_liveness: bool = True,
) -> tuple[HostController, Any]:
    """Create a controller on ``channel`` and wait for the worker's roots.

    :param channel: Channel to the worker.
    :param teardown_timeout: Seconds :meth:`HostController.terminate` waits for in-flight requests.
    :param connect_timeout: Optional deadline for the root announcement.
    :param track_liveness: Whether collected stand-ins destroy their slot.
    :returns: ``(controller, roots)``.
    """
    controller: HostController = HostController(
        channel,
        teardown_timeout=teardown_timeout,
        track_liveness=track_liveness,
    )
    try:
        roots: Any = await controller.connect(timeout=connect_timeout)
    except BaseException:
        controller.close()
        raise
    return controller, roots
