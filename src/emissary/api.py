"""User-facing API entrypoints for emissary."""

from typing import Any

from emissary.channel import Channel
from emissary.host import DEFAULT_TEARDOWN_TIMEOUT
from emissary.host import HostController
from emissary.host import connect
from emissary.process import spawn_worker
from emissary.registry import ExposureRegistry


def expose(channel: Channel, *entities: object) -> ExposureRegistry:
    """Expose entities to the host on the other end of ``channel``.

    The registry keeps serving requests from the running event loop until the
    channel closes; await :meth:`ExposureRegistry.wait_closed` to block on that.

    :param channel: Worker end of a channel.
    :param entities: Functions, classes, or objects to expose as roots.
    :returns: The attached registry.
    :raises ExposureValidationError: If an entity cannot be exposed or none are given.
    """
    registry: ExposureRegistry = ExposureRegistry(channel)
    registry.expose_roots(entities)
    registry.attach()
    return registry


async def wrap(
    channel: Channel,
    teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
    connect_timeout: float | None = None,
    track_liveness: bool = True,
) -> tuple[HostController, Any]:
    """Connect to the worker on the other end of ``channel``.

    :param channel: Host end of a channel.
    :param teardown_timeout: Seconds ``terminate`` waits for in-flight requests.
    :param connect_timeout: Optional deadline for the root announcement.
    :param track_liveness: Whether collected stand-ins destroy their slot.
    :returns: ``(controller, roots)`` where ``roots`` is one stand-in or a list.
    """
    return await connect(
        channel,
        teardown_timeout=teardown_timeout,
        connect_timeout=connect_timeout,
        track_liveness=track_liveness,
    )


async def connect_worker(
    target: str,
    factory: bool = False,
    teardown_timeout: float = DEFAULT_TEARDOWN_TIMEOUT,
    connect_timeout: float | None = None,
    track_liveness: bool = True,
) -> tuple[HostController, Any]:
    """Spawn a worker process exposing ``target`` and connect to it.

    :param target: Target in ``module.path:qualname`` format.
    :param factory: Call the resolved object in the worker and expose what it returns.
    :param teardown_timeout: Seconds ``terminate`` waits for in-flight requests.
    :param connect_timeout: Optional deadline for the root announcement.
    :param track_liveness: Whether collected stand-ins destroy their slot.
    :returns: ``(controller, roots)`` where ``roots`` is one stand-in or a list.
    :raises ValueError: If the target format is invalid.
    """
    channel: Channel = spawn_worker(target, factory=factory)
    return await connect(
        channel,
        teardown_timeout=teardown_timeout,
        connect_timeout=connect_timeout,
        track_liveness=track_liveness,
    )
