"""Worker-side exposure registry for emissary."""

import asyncio
import inspect
import logging
from collections.abc import Iterable
from collections.abc import Mapping
from collections.abc import MutableMapping

from emissary.channel import Channel
from emissary.channel import Envelope
from emissary.descriptors import ExposureDescriptor
from emissary.descriptors import ExposureKind
from emissary.descriptors import MemberDescriptor
from emissary.descriptors import classify
from emissary.descriptors import classify_root
from emissary.descriptors import decode_key
from emissary.descriptors import entity_name
from emissary.descriptors import enumerate_members
from emissary.errors import EmissaryProtocolError
from emissary.errors import ExposureValidationError
from emissary.errors import StaleReferenceError
from emissary.protocol import UNKNOWN_INVOCATION_ID
from emissary.protocol import build_error
from emissary.protocol import build_exposed
from emissary.protocol import build_result
from emissary.protocol import decode_slot_ref
from emissary.protocol import marshal_error
from emissary.protocol import require_action
from emissary.protocol import require_arguments
from emissary.protocol import require_invocation_id
from emissary.protocol import require_path
from emissary.protocol import require_slot

logger = logging.getLogger(__name__)

_TOMBSTONE: object = object()
_NO_KEY: object = object()


class SlotTable:
    """Store exposed entities under monotonically increasing slots.

    Slots are never reused. A destroyed slot keeps a tombstone so later
    operations can be told apart from operations on slots that never existed.
    """

    _entries: list[object]

    def __init__(self) -> None:
        """Initialize an empty slot table."""
        self._entries = []

    def assign(self, value: object) -> int:
        """Store a value under a fresh slot.

        :param value: Entity to store.
        :returns: Assigned slot.
        """
        slot: int = len(self._entries)
        self._entries.append(value)
        return slot

    def require_known(self, slot: int) -> None:
        """Ensure ``slot`` was assigned at some point.

        :param slot: Slot identifier.
        :raises EmissaryProtocolError: If the slot was never assigned.
        """
        if slot < 0 or slot >= len(self._entries):
            raise EmissaryProtocolError(f"Unknown slot: {slot}")

    def get(self, slot: int) -> object:
        """Return the entity stored under ``slot``.

        :param slot: Slot identifier.
        :returns: Stored entity.
        :raises EmissaryProtocolError: If the slot was never assigned.
        :raises StaleReferenceError: If the slot was destroyed.
        """
        self.require_known(slot)
        value: object = self._entries[slot]
        if value is _TOMBSTONE:
            raise StaleReferenceError(f"Slot {slot} was destroyed")
        return value

    def is_tombstoned(self, slot: int) -> bool:
        """Report whether ``slot`` was destroyed.

        :param slot: Slot identifier.
        :returns: ``True`` for destroyed slots.
        """
        self.require_known(slot)
        return self._entries[slot] is _TOMBSTONE

    def tombstone(self, slot: int) -> bool:
        """Clear the entry for ``slot``.

        :param slot: Slot identifier.
        :returns: ``True`` when the slot was live before this call.
        """
        self.require_known(slot)
        was_live: bool = self._entries[slot] is not _TOMBSTONE
        self._entries[slot] = _TOMBSTONE
        return was_live

    @property
    def live_count(self) -> int:
        """Return the number of slots that were not destroyed.

        :returns: Live slot count.
        """
        return sum(1 for value in self._entries if value is not _TOMBSTONE)

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        """Tombstone every slot while keeping the numbering."""
        for slot in range(len(self._entries)):
            self._entries[slot] = _TOMBSTONE


def _get_member(base: object, key: object) -> object:
    if isinstance(base, Mapping) is True:
        return base[key]  # type: ignore[index]
    if isinstance(key, str) is False:
        raise TypeError(f"Attribute names must be strings, received {type(key).__name__}")
    return getattr(base, key)  # type: ignore[arg-type]


def _set_member(base: object, key: object, value: object) -> None:
    if isinstance(base, MutableMapping) is True:
        base[key] = value  # type: ignore[index]
        return
    if isinstance(base, Mapping) is True:
        raise TypeError(f"{type(base).__name__} does not support item assignment")
    if isinstance(key, str) is False:
        raise TypeError(f"Attribute names must be strings, received {type(key).__name__}")
    setattr(base, key, value)  # type: ignore[arg-type]


def _has_member(base: object, key: object) -> bool:
    if isinstance(base, Mapping) is True:
        return key in base
    if isinstance(key, str) is False:
        return False
    return hasattr(base, key)  # type: ignore[arg-type]


def _walk(value: object, segments: list[object]) -> object:
    """Resolve intermediate path segments, short-circuiting to ``None`` when one is missing.

    :param value: Starting entity.
    :param segments: Decoded intermediate segments.
    :returns: Resolved base or ``None``.
    """
    base: object = value
    for segment in segments:
        if base is None:
            return None
        if _has_member(base, segment) is False:
            return None
        base = _get_member(base, segment)
    return base


class ExposureRegistry:
    """Own the worker's slot table and serve inbound requests against it."""

    _channel: Channel
    _slots: SlotTable
    _active_operations: dict[int, int]
    _closing_slots: set[int]
    _idle_events: dict[int, asyncio.Event]
    _destroyed_events: dict[int, asyncio.Event]
    _tasks: set["asyncio.Task[None]"]
    _closed_event: asyncio.Event
    _is_announced: bool

    def __init__(self, channel: Channel) -> None:
        """Initialize registry state.

        :param channel: Channel to the host controller.
        """
        self._channel = channel
        self._slots = SlotTable()
        self._active_operations = {}
        self._closing_slots = set()
        self._idle_events = {}
        self._destroyed_events = {}
        self._tasks = set()
        self._closed_event = asyncio.Event()
        self._is_announced = False

    def attach(self) -> None:
        """Start receiving requests from the channel."""
        self._channel.set_receiver(self._on_message)
        self._channel.add_close_callback(self._on_channel_closed)

    @property
    def slot_count(self) -> int:
        """Return the number of slots ever assigned.

        :returns: Slot count.
        """
        return len(self._slots)

    @property
    def live_count(self) -> int:
        """Return the number of slots not yet destroyed.

        :returns: Live slot count.
        """
        return self._slots.live_count

    def is_tombstoned(self, slot: int) -> bool:
        """Report whether ``slot`` was destroyed.

        :param slot: Slot identifier.
        :returns: ``True`` for destroyed slots.
        """
        return self._slots.is_tombstoned(slot)

    def expose_roots(self, entities: Iterable[object]) -> list[ExposureDescriptor]:
        """Expose root entities and announce them to the host.

        Every entity is validated and described before any slot is assigned,
        so a failure leaves the slot table untouched.

        :param entities: Functions, classes, or objects to expose.
        :returns: Root descriptors, in order.
        :raises ExposureValidationError: If an entity cannot be exposed or none are given.
        """
        roots: list[object] = list(entities)
        if len(roots) == 0:
            raise ExposureValidationError("At least one entity must be exposed")
        kinds: list[ExposureKind] = [classify_root(entity) for entity in roots]
        surfaces: list[tuple[MemberDescriptor, ...]] = [
            enumerate_members(entity, kind) for entity, kind in zip(roots, kinds)
        ]

        descriptors: list[ExposureDescriptor] = []
        for entity, kind, members in zip(roots, kinds, surfaces):
            descriptors.append(self._commit(entity, kind, members))

        if self._is_announced is True:
            logger.warning("Roots were already announced; sending another announcement")
        self._is_announced = True
        self._send(build_exposed(None, descriptors))
        return descriptors

    def _expose(self, value: object, kind: ExposureKind) -> ExposureDescriptor:
        return self._commit(value, kind, enumerate_members(value, kind))

    def _commit(
        self,
        value: object,
        kind: ExposureKind,
        members: tuple[MemberDescriptor, ...],
    ) -> ExposureDescriptor:
        """Assign a slot to an entity whose member surface is already known.

        :param value: Entity being exposed.
        :param kind: Entity kind.
        :param members: Member surface computed before the slot is assigned.
        :returns: Exposure descriptor.
        """
        name: str = entity_name(value)
        slot: int = self._slots.assign(value)
        logger.debug("Exposed %s %r as slot %d", kind.value, name, slot)
        return ExposureDescriptor(slot, name, kind, members)

    def _pack(self, invocation_id: int, value: object) -> Envelope:
        """Answer with raw data or with a new exposure.

        :param invocation_id: Correlation identifier.
        :param value: Outcome of the operation.
        :returns: Response envelope.
        """
        kind: ExposureKind | None = classify(value)
        if kind is None:
            return build_result(invocation_id, value)
        return build_exposed(invocation_id, [self._expose(value, kind)])

    def _on_message(self, envelope: Envelope) -> None:
        task: asyncio.Task[None] = asyncio.ensure_future(self.handle_request(envelope))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_channel_closed(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._closed_event.set()

    async def wait_closed(self) -> None:
        """Wait until the channel to the host closes."""
        await self._closed_event.wait()

    async def handle_request(self, envelope: object) -> None:
        """Serve one inbound request and send its correlated response.

        Every failure is answered with an ``error`` response; nothing raised
        while serving a request escapes this method.

        :param envelope: Request envelope.
        """
        invocation_id: int = UNKNOWN_INVOCATION_ID
        response: Envelope
        try:
            if isinstance(envelope, dict) is False:
                raise EmissaryProtocolError("Incoming message must be a dict")
            invocation_id = require_invocation_id(envelope)
            response = await self._dispatch(invocation_id, envelope)
        except Exception as exc:
            error: dict[str, str] = marshal_error(exc)
            logger.warning(
                "Request %d failed with %s: %s",
                invocation_id,
                error["kind"],
                error["message"],
            )
            response = build_error(invocation_id, error)
        self._send(response)

    async def _dispatch(self, invocation_id: int, envelope: dict[str, object]) -> Envelope:
        action: str = require_action(envelope)
        slot: int = require_slot(envelope)
        path: list[str] = require_path(envelope)
        args, kwargs = require_arguments(envelope)

        if action == "destroy":
            return await self._destroy(invocation_id, slot)

        self._begin_operation(slot)
        try:
            target: object = self._slots.get(slot)
            segments: list[object] = [decode_key(segment) for segment in path]
            args = [self._decode_argument(item) for item in args]
            kwargs = {key: self._decode_argument(item) for key, item in kwargs.items()}

            base: object = target
            key: object = _NO_KEY
            if len(segments) > 0:
                base = _walk(target, segments[:-1])
                key = segments[-1]

            if action == "read":
                return self._read(invocation_id, base, key)
            if action == "write":
                return self._write(invocation_id, base, key, args)
            if action == "has":
                return self._has(invocation_id, base, key)
            if action == "call":
                return await self._call(invocation_id, base, key, args, kwargs)
            if action == "construct":
                return self._construct(invocation_id, base, key, args, kwargs)
            raise EmissaryProtocolError(f"Unsupported action: {action}")
        finally:
            self._end_operation(slot)

    def _begin_operation(self, slot: int) -> None:
        self._slots.get(slot)
        if slot in self._closing_slots:
            raise StaleReferenceError(f"Slot {slot} is being destroyed")
        self._active_operations[slot] = self._active_operations.get(slot, 0) + 1

    def _end_operation(self, slot: int) -> None:
        remaining: int = self._active_operations.get(slot, 0) - 1
        if remaining > 0:
            self._active_operations[slot] = remaining
            return
        self._active_operations.pop(slot, None)
        idle_event: asyncio.Event | None = self._idle_events.get(slot)
        if idle_event is not None:
            idle_event.set()

    def _decode_argument(self, value: object) -> object:
        """Replace slot references inside arguments with the referenced entities.

        :param value: Wire argument.
        :returns: Runtime argument.
        """
        referenced_slot: int | None = decode_slot_ref(value)
        if referenced_slot is not None:
            referenced: object = self._slots.get(referenced_slot)
            if referenced_slot in self._closing_slots:
                raise StaleReferenceError(f"Slot {referenced_slot} is being destroyed")
            return referenced
        if isinstance(value, list) is True:
            return [self._decode_argument(item) for item in value]
        if isinstance(value, tuple) is True:
            return tuple(self._decode_argument(item) for item in value)
        if isinstance(value, dict) is True:
            return {key: self._decode_argument(item) for key, item in value.items()}
        return value

    def _read(self, invocation_id: int, base: object, key: object) -> Envelope:
        if key is _NO_KEY:
            return self._pack(invocation_id, base)
        if base is None:
            return build_result(invocation_id, None)
        return self._pack(invocation_id, _get_member(base, key))

    def _write(self, invocation_id: int, base: object, key: object, args: list[object]) -> Envelope:
        if key is _NO_KEY:
            raise EmissaryProtocolError("write requires a member path")
        if len(args) == 0:
            raise EmissaryProtocolError("write requires a value argument")
        if base is None:
            raise AttributeError(f"Cannot set {key!r} on a missing path")
        value: object = args[0]
        _set_member(base, key, value)
        return self._pack(invocation_id, value)

    def _has(self, invocation_id: int, base: object, key: object) -> Envelope:
        if key is _NO_KEY:
            raise EmissaryProtocolError("has requires a member path")
        if base is None:
            return build_result(invocation_id, False)
        return build_result(invocation_id, _has_member(base, key))

    def _resolve_target(self, base: object, key: object) -> object:
        if key is _NO_KEY:
            return base
        if base is None:
            raise AttributeError(f"Cannot resolve {key!r} on a missing path")
        return _get_member(base, key)

    async def _call(
        self,
        invocation_id: int,
        base: object,
        key: object,
        args: list[object],
        kwargs: dict[str, object],
    ) -> Envelope:
        function: object = self._resolve_target(base, key)
        if callable(function) is False:
            raise TypeError(f"{type(function).__name__!r} object is not callable")
        outcome: object = function(*args, **kwargs)  # type: ignore[operator]
        if inspect.isawaitable(outcome) is True:
            outcome = await outcome  # type: ignore[misc]
        return self._pack(invocation_id, outcome)

    def _construct(
        self,
        invocation_id: int,
        base: object,
        key: object,
        args: list[object],
        kwargs: dict[str, object],
    ) -> Envelope:
        constructor: object = self._resolve_target(base, key)
        if inspect.isclass(constructor) is False:
            raise TypeError(f"{type(constructor).__name__!r} object is not a class")
        instance: object = constructor(*args, **kwargs)  # type: ignore[operator]
        return self._pack(invocation_id, instance)

    async def _destroy(self, invocation_id: int, slot: int) -> Envelope:
        """Tombstone ``slot`` once in-progress operations on it have finished.

        Destroying an already destroyed slot is acknowledged without effect. A
        destroy that arrives while the slot is closing is acknowledged only
        once the slot is tombstoned.

        :param invocation_id: Correlation identifier.
        :param slot: Slot to destroy.
        :returns: Acknowledgment envelope.
        """
        self._slots.require_known(slot)
        if self._slots.is_tombstoned(slot) is True:
            return build_result(invocation_id, None)
        destroyed_event: asyncio.Event | None = self._destroyed_events.get(slot)
        if destroyed_event is not None:
            await destroyed_event.wait()
            return build_result(invocation_id, None)

        destroyed_event = asyncio.Event()
        self._destroyed_events[slot] = destroyed_event
        self._closing_slots.add(slot)
        try:
            active: int = self._active_operations.get(slot, 0)
            if active > 0:
                idle_event: asyncio.Event = asyncio.Event()
                self._idle_events[slot] = idle_event
                await idle_event.wait()
            self._slots.tombstone(slot)
            logger.debug("Destroyed slot %d", slot)
        finally:
            self._closing_slots.discard(slot)
            self._idle_events.pop(slot, None)
            self._destroyed_events.pop(slot, None)
            destroyed_event.set()
        return build_result(invocation_id, None)

    def _send(self, envelope: Envelope) -> None:
        """Send a response, falling back to an error when it cannot be serialized.

        :param envelope: Response envelope.
        """
        if self._channel.is_closed is True:
            logger.debug("Channel closed; dropping response %r", envelope.get("invocation_id"))
            return
        try:
            self._channel.send(envelope)
        except EmissaryProtocolError as exc:
            if self._channel.is_closed is True:
                return
            invocation_id: object = envelope.get("invocation_id", UNKNOWN_INVOCATION_ID)
            if isinstance(invocation_id, int) is False:
                invocation_id = UNKNOWN_INVOCATION_ID
            fallback: Envelope = build_error(invocation_id, marshal_error(exc))  # type: ignore[arg-type]
            try:
                self._channel.send(fallback)
            except EmissaryProtocolError:
                logger.warning("Failed to send response %r: %s", invocation_id, exc)


async def serve(channel: Channel, entities: Iterable[object]) -> ExposureRegistry:
    """Expose ``entities`` over ``channel`` and serve requests until it closes.

    :param channel: Channel to the host controller.
    :param entities: Root entities.
    :returns: The registry, after the channel closed.
    """
    registry: ExposureRegistry = ExposureRegistry(channel)
    registry.attach()
    registry.expose_roots(entities)
    await registry.wait_closed()
    return registry
