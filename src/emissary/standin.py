"""Host-side stand-ins for entities living in the worker.

A stand-in never intercepts arbitrary attribute access. Its surface is the
explicit interface of :class:`StandIn` plus the members listed in its
descriptor at first contact: callable members become forwarding coroutine
methods, other members become properties that evaluate to an awaitable read.
"""

import functools
import weakref
from typing import TYPE_CHECKING
from typing import Any

from emissary.descriptors import CALLABLE_KINDS
from emissary.descriptors import ExposureDescriptor
from emissary.descriptors import ExposureKind
from emissary.descriptors import MemberDescriptor
from emissary.descriptors import decode_key
from emissary.errors import EmissaryError
from emissary.errors import StaleReferenceError

if TYPE_CHECKING:
    from emissary.host import HostController


class StandIn:
    """Base stand-in bound to one worker slot."""

    _controller: "HostController"
    _descriptor: ExposureDescriptor
    _finalizer: weakref.finalize | None
    _is_released: bool

    def __init__(self, controller: "HostController", descriptor: ExposureDescriptor) -> None:
        """Bind the stand-in to a controller and a descriptor.

        :param controller: Owning host controller.
        :param descriptor: Descriptor received from the worker.
        """
        self._controller = controller
        self._descriptor = descriptor
        self._finalizer = None
        self._is_released = False

    def _attach_finalizer(self, finalizer: weakref.finalize) -> None:
        self._finalizer = finalizer

    def _detach_finalizer(self) -> None:
        finalizer: weakref.finalize | None = self._finalizer
        if finalizer is not None:
            finalizer.detach()
        self._finalizer = None

    @property
    def controller(self) -> "HostController":
        """Return the owning host controller.

        :returns: Host controller.
        """
        return self._controller

    @property
    def descriptor(self) -> ExposureDescriptor:
        """Return the descriptor captured at exposure time.

        :returns: Exposure descriptor.
        """
        return self._descriptor

    @property
    def slot(self) -> int:
        """Return the worker slot this stand-in is bound to.

        :returns: Slot identifier.
        """
        return self._descriptor.slot

    @property
    def name(self) -> str:
        """Return the remote entity name.

        :returns: Entity name.
        """
        return self._descriptor.name

    @property
    def kind(self) -> ExposureKind:
        """Return the remote entity kind.

        :returns: Exposure kind.
        """
        return self._descriptor.kind

    @property
    def members(self) -> tuple[object, ...]:
        """Return the member keys captured at exposure time.

        :returns: Decoded member keys.
        """
        return tuple(decode_key(member.name) for member in self._descriptor.members)

    @property
    def is_released(self) -> bool:
        """Report whether this stand-in was released or terminated.

        :returns: ``True`` once released.
        """
        return self._is_released

    def _ensure_live(self) -> None:
        if self._is_released is True:
            raise StaleReferenceError(f"Stand-in for slot {self.slot} was released")

    async def get_member(self, key: object) -> Any:
        """Read one member of the remote entity.

        :param key: Attribute name or mapping key.
        :returns: Plain data, or a stand-in for an exposable value.
        """
        self._ensure_live()
        return await self._controller.request([key], "read", self.slot)

    async def set_member(self, key: object, value: object) -> Any:
        """Assign one member of the remote entity.

        :param key: Attribute name or mapping key.
        :param value: New value.
        :returns: The assigned value as seen by the worker.
        """
        self._ensure_live()
        return await self._controller.request([key], "write", self.slot, [value])

    async def has_member(self, key: object) -> bool:
        """Test whether the remote entity currently has a member.

        :param key: Attribute name or mapping key.
        :returns: Membership result.
        """
        self._ensure_live()
        result: object = await self._controller.request([key], "has", self.slot)
        return result is True

    async def call_member(self, key: object, *args: object, **kwargs: object) -> Any:
        """Invoke one member of the remote entity.

        :param key: Attribute name or mapping key.
        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Plain data, or a stand-in for an exposable return value.
        """
        self._ensure_live()
        return await self._controller.request([key], "call", self.slot, list(args), kwargs)

    async def call(self, *args: object, **kwargs: object) -> Any:
        """Invoke the remote entity itself.

        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Plain data, or a stand-in for an exposable return value.
        """
        self._ensure_live()
        return await self._controller.request([], "call", self.slot, list(args), kwargs)

    async def construct(self, *args: object, **kwargs: object) -> Any:
        """Instantiate the remote entity with constructor semantics.

        :param args: Positional arguments.
        :param kwargs: Keyword arguments.
        :returns: Stand-in for the new instance.
        """
        self._ensure_live()
        return await self._controller.request([], "construct", self.slot, list(args), kwargs)

    async def release(self) -> None:
        """Destroy the remote entity now. Safe to call more than once."""
        if self._is_released is True:
            return
        self._is_released = True
        self._detach_finalizer()
        await self._controller.release_slot(self.slot)

    async def terminate(self) -> None:
        """Destroy the remote entity, drain outstanding requests, and tear down the channel."""
        already_released: bool = self._is_released
        self._is_released = True
        self._detach_finalizer()
        if already_released is True:
            await self._controller.terminate()
            return
        await self._controller.terminate(self.slot)

    async def __aenter__(self) -> "StandIn":
        return self

    async def __aexit__(self, exc_type: object, exc_value: object, exc_traceback: object) -> None:
        await self.release()

    def __reduce__(self) -> object:
        """Block pickling of stand-ins.

        :raises EmissaryError: Always.
        """
        raise EmissaryError("Stand-ins cannot be pickled; pass them as request arguments instead")

    def __reduce_ex__(self, protocol: int) -> object:
        """Block pickling of stand-ins.

        :param protocol: Pickle protocol version.
        :raises EmissaryError: Always.
        """
        raise EmissaryError("Stand-ins cannot be pickled; pass them as request arguments instead")

    def __repr__(self) -> str:
        state: str = " released" if self._is_released is True else ""
        return f"<StandIn {self.kind.value} {self.name!r} slot={self.slot}{state}>"


_RESERVED_NAMES: frozenset[str] = frozenset(dir(StandIn))


def _forward_call(key: str) -> Any:
    async def forward(self: StandIn, *args: object, **kwargs: object) -> Any:
        return await self.call_member(key, *args, **kwargs)

    forward.__name__ = key
    forward.__doc__ = f"Invoke remote member {key!r}."
    return forward


def _forward_read(key: str) -> property:
    def read(self: StandIn) -> Any:
        return self.get_member(key)

    return property(read, doc=f"Awaitable read of remote member {key!r}.")


def _construct_on_call(self: StandIn, *args: object, **kwargs: object) -> Any:
    return self.construct(*args, **kwargs)


def _invoke_on_call(self: StandIn, *args: object, **kwargs: object) -> Any:
    return self.call(*args, **kwargs)


@functools.lru_cache(maxsize=256)
def _stand_in_class(
    name: str,
    kind: ExposureKind,
    members: tuple[MemberDescriptor, ...],
) -> type[StandIn]:
    """Build the stand-in class for one descriptor shape.

    :param name: Entity name.
    :param kind: Entity kind.
    :param members: Member descriptors.
    :returns: ``StandIn`` subclass.
    """
    class_name: str = name if name.isidentifier() is True else "RemoteEntity"
    namespace: dict[str, object] = {
        "__module__": "emissary.standin",
        "__doc__": f"Stand-in for remote {kind.value} {name!r}.",
    }

    for member in members:
        key: object = decode_key(member.name)
        if isinstance(key, str) is False:
            continue
        if key.isidentifier() is False or key.startswith("_") is True:
            continue
        if key in _RESERVED_NAMES:
            continue
        if member.is_callable is True:
            namespace[key] = _forward_call(key)
        else:
            namespace[key] = _forward_read(key)

    if kind is ExposureKind.CLASS:
        namespace["__call__"] = _construct_on_call
    elif kind in CALLABLE_KINDS:
        namespace["__call__"] = _invoke_on_call

    return type(class_name, (StandIn,), namespace)


def stand_in_class_for(descriptor: ExposureDescriptor) -> type[StandIn]:
    """Return the stand-in class matching ``descriptor``.

    :param descriptor: Exposure descriptor.
    :returns: ``StandIn`` subclass.
    """
    return _stand_in_class(descriptor.name, descriptor.kind, descriptor.members)
