"""End-to-end tests pairing a host controller with a registry over a local channel."""

import asyncio
import threading
from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from emissary import EmissaryProtocolError
from emissary import ExposureKind
from emissary import ExposureRegistry
from emissary import HostController
from emissary import StaleReferenceError
from emissary import StandIn
from emissary import TeardownTimeoutError
from emissary import create_local_channel_pair
from emissary import expose
from emissary import wrap


class Point:
    """Class exposed to the host and constructed remotely."""

    x: int
    y: int
    z: int

    def __init__(self, x: int, y: int, z: int) -> None:
        """Initialize the point.

        :param x: First coordinate.
        :param y: Second coordinate.
        :param z: Third coordinate.
        """
        self.x = x
        self.y = y
        self.z = z

    def total(self) -> int:
        """Sum the coordinates.

        :returns: Coordinate sum.
        """
        return self.x + self.y + self.z


def combine(left: Point, right: Point) -> int:
    """Add the totals of two points.

    :param left: First point.
    :param right: Second point.
    :returns: Combined total.
    """
    return left.total() + right.total()


def pick(items: list[int], index: int) -> int:
    """Index into a list.

    :param items: Items.
    :param index: Position.
    :returns: Selected item.
    """
    return items[index]


def fail_with_index_error() -> None:
    """Raise an ``IndexError``.

    :raises IndexError: Always.
    """
    raise IndexError("bad index")


async def hang() -> None:
    """Never complete."""
    await asyncio.Event().wait()


class Pair:
    """Connected host controller and worker registry."""

    controller: HostController
    registry: ExposureRegistry
    roots: object

    def __init__(self, controller: HostController, registry: ExposureRegistry, roots: object) -> None:
        """Bundle both ends.

        :param controller: Host controller.
        :param registry: Worker registry.
        :param roots: Root stand-in or list of stand-ins.
        """
        self.controller = controller
        self.registry = registry
        self.roots = roots


async def _pair(*entities: object, teardown_timeout: float = 1.0) -> Pair:
    """Expose ``entities`` and connect a controller to them.

    :param entities: Root entities.
    :param teardown_timeout: Controller teardown deadline.
    :returns: Connected pair.
    """
    host_end, worker_end = create_local_channel_pair()
    registry: ExposureRegistry = expose(worker_end, *entities)
    controller, roots = await wrap(host_end, teardown_timeout=teardown_timeout, connect_timeout=1.0)
    return Pair(controller, registry, roots)


@pytest_asyncio.fixture
async def mapping_pair() -> AsyncIterator[Pair]:
    """Expose a mapping with data and a lambda.

    :yields: Connected pair.
    """
    pair: Pair = await _pair({"a": 1, "b": lambda x: x * 2, 3: "three"})
    yield pair
    await pair.controller.terminate()


@pytest.mark.asyncio
async def test_mapping_members_read_and_call(mapping_pair: Pair) -> None:
    """Read data members and call function members of an exposed mapping."""
    root: StandIn = mapping_pair.roots  # type: ignore[assignment]
    assert root.kind is ExposureKind.OBJECT
    assert root.members == ("a", "b", 3)

    assert await root.a == 1  # type: ignore[attr-defined]
    assert await root.b(21) == 42  # type: ignore[attr-defined]
    assert await root.call_member("b", 4) == 8
    assert await root.get_member(3) == "three"


@pytest.mark.asyncio
async def test_mapping_members_write_and_has(mapping_pair: Pair) -> None:
    """Assign and test mapping members, including keys added later."""
    root: StandIn = mapping_pair.roots  # type: ignore[assignment]
    assert await root.set_member("a", 5) == 5
    assert await root.a == 5  # type: ignore[attr-defined]

    assert await root.has_member("c") is False
    await root.set_member("c", [1, 2])
    assert await root.has_member("c") is True
    assert await root.get_member("c") == [1, 2]
    with pytest.raises(KeyError):
        await root.get_member("missing")


@pytest.mark.asyncio
async def test_nested_mappings_are_exposed_and_written_through() -> None:
    """Read a nested dict as a stand-in whose writes reach the worker's dict."""
    config: dict[str, object] = {"level": 1}
    pair: Pair = await _pair({"config": config, "levels": [1, 2]})
    try:
        root: StandIn = pair.roots  # type: ignore[assignment]
        nested: StandIn = await root.get_member("config")
        assert isinstance(nested, StandIn) is True
        assert nested.kind is ExposureKind.OBJECT
        assert nested.members == ("level",)

        assert await nested.set_member("level", 99) == 99
        assert config["level"] == 99
        assert await nested.level == 99  # type: ignore[attr-defined]
        assert await root.get_member("levels") == [1, 2]
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_function_member_read_returns_callable_stand_in(mapping_pair: Pair) -> None:
    """Expose function values read from members under fresh slots."""
    root: StandIn = mapping_pair.roots  # type: ignore[assignment]
    double: StandIn = await root.get_member("b")
    assert isinstance(double, StandIn) is True
    assert double.kind is ExposureKind.ARROW_FUNCTION
    assert double.slot == 1
    assert await double(10) == 20


@pytest.mark.asyncio
async def test_constructed_instance_exposes_init_attributes() -> None:
    """Construct a class remotely and use the instance stand-in."""
    pair: Pair = await _pair(Point)
    try:
        point_class: StandIn = pair.roots  # type: ignore[assignment]
        assert point_class.kind is ExposureKind.CLASS

        point: StandIn = await point_class(1, 2, 3)
        assert point.kind is ExposureKind.OBJECT
        assert {"x", "y", "z", "total"} <= set(point.members)
        assert await point.x == 1  # type: ignore[attr-defined]
        assert await point.total() == 6  # type: ignore[attr-defined]

        await point.set_member("z", 10)
        assert await point.total() == 13  # type: ignore[attr-defined]
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_remote_error_keeps_kind_and_message() -> None:
    """Reject with the remote kind and message."""
    pair: Pair = await _pair({"fail": fail_with_index_error, "pick": pick})
    try:
        root: StandIn = pair.roots  # type: ignore[assignment]
        with pytest.raises(IndexError) as raised:
            await root.fail()  # type: ignore[attr-defined]
        assert raised.value.kind == "IndexError"  # type: ignore[attr-defined]
        assert raised.value.message == "bad index"  # type: ignore[attr-defined]

        with pytest.raises(IndexError):
            await root.pick([1, 2], 5)  # type: ignore[attr-defined]
        assert await root.pick([1, 2], 1) == 2  # type: ignore[attr-defined]
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_destroyed_slot_is_stale_for_every_action() -> None:
    """Report staleness, never ``None``, for actions against a destroyed slot."""
    pair: Pair = await _pair({"a": 1, "make": Point})
    try:
        root: StandIn = pair.roots  # type: ignore[assignment]
        await root.release()
        assert pair.registry.is_tombstoned(root.slot) is True

        controller: HostController = pair.controller
        for action, args in (("read", []), ("write", [2]), ("has", []), ("call", []), ("construct", [])):
            with pytest.raises(StaleReferenceError):
                await controller.request(["a"], action, root.slot, args)
        assert await controller.request([], "destroy", root.slot) is None

        with pytest.raises(StaleReferenceError):
            await root.get_member("a")
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_stand_ins_travel_back_as_slot_references() -> None:
    """Pass stand-ins as arguments and receive the real entities in the worker."""
    pair: Pair = await _pair(Point, combine)
    try:
        point_class, combine_stand_in = pair.roots  # type: ignore[misc]
        first: StandIn = await point_class(1, 2, 3)
        second: StandIn = await point_class(4, 5, 6)
        assert await combine_stand_in(first, second) == 21
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_async_with_releases_the_remote_slot() -> None:
    """Destroy the remote slot when the ``async with`` block ends."""
    pair: Pair = await _pair(Point)
    try:
        point_class: StandIn = pair.roots  # type: ignore[assignment]
        async with await point_class(1, 2, 3) as point:
            slot: int = point.slot
            assert await point.total() == 6
        assert pair.registry.is_tombstoned(slot) is True
        assert point.is_released is True
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_unserializable_arguments_fail_at_the_sender() -> None:
    """Refuse arguments that could not cross a process boundary."""
    pair: Pair = await _pair({"pick": pick})
    try:
        root: StandIn = pair.roots  # type: ignore[assignment]
        with pytest.raises(EmissaryProtocolError):
            await root.pick(threading.Lock(), 0)  # type: ignore[attr-defined]
        assert pair.controller.in_flight == frozenset()
    finally:
        await pair.controller.terminate()


@pytest.mark.asyncio
async def test_terminate_rejects_hanging_calls_and_closes_both_ends() -> None:
    """Reject unanswered calls at the teardown deadline and stop the worker."""
    pair: Pair = await _pair({"hang": hang}, teardown_timeout=0.1)
    root: StandIn = pair.roots  # type: ignore[assignment]
    pending: asyncio.Task[object] = asyncio.create_task(root.hang())  # type: ignore[attr-defined]
    await asyncio.sleep(0.01)

    await pair.controller.terminate()
    with pytest.raises(TeardownTimeoutError):
        await pending
    await asyncio.wait_for(pair.registry.wait_closed(), timeout=1.0)


@pytest.mark.asyncio
async def test_terminate_with_nothing_in_flight_is_prompt() -> None:
    """Resolve teardown without waiting for the deadline when idle."""
    pair: Pair = await _pair({"a": 1}, teardown_timeout=5.0)
    root: StandIn = pair.roots  # type: ignore[assignment]
    assert await root.a == 1  # type: ignore[attr-defined]
    await asyncio.wait_for(root.terminate(), timeout=1.0)
    await asyncio.wait_for(pair.registry.wait_closed(), timeout=1.0)
    assert pair.registry.is_tombstoned(root.slot) is True
