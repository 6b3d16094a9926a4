"""Worker processes: spawn a child interpreter that serves exposed entities over a pipe."""

import asyncio
import importlib
import logging
import multiprocessing
import threading
from multiprocessing.connection import Connection

from emissary.channel import PipeChannel
from emissary.registry import serve

logger = logging.getLogger(__name__)

_PROCESS_JOIN_SECONDS: float = 2.0


def parse_target(target: str) -> tuple[str, str]:
    """Parse ``module.path:qualname`` targets.

    :param target: Raw target string.
    :returns: Tuple of ``(module_name, qualname)``.
    :raises ValueError: If the target format is invalid.
    """
    parts: list[str] = target.split(":")
    if len(parts) != 2:
        raise ValueError("Target must use module.path:qualname format")

    module_name: str = parts[0].strip()
    qualname: str = parts[1].strip()
    if len(module_name) == 0:
        raise ValueError("Module path in target cannot be empty")
    if len(qualname) == 0:
        raise ValueError("Qualname in target cannot be empty")
    return module_name, qualname


def resolve_target(module_name: str, qualname: str) -> object:
    """Import ``module_name`` and resolve a dotted ``qualname`` inside it.

    :param module_name: Module path.
    :param qualname: Dotted qualname, such as ``Outer.Inner``.
    :returns: Resolved object.
    """
    current: object = importlib.import_module(module_name)
    for piece in qualname.split("."):
        current = getattr(current, piece)
    return current


def load_entities(module_name: str, qualname: str, factory: bool = False) -> list[object]:
    """Resolve the root entities a worker exposes.

    :param module_name: Module path.
    :param qualname: Dotted qualname.
    :param factory: Call the resolved object and expose what it returns.
    :returns: Root entities. A list or tuple result exposes each item.
    """
    resolved: object = resolve_target(module_name, qualname)
    if factory is True:
        if callable(resolved) is False:
            raise TypeError(f"Factory target {module_name}:{qualname} is not callable")
        resolved = resolved()  # type: ignore[operator]
    if isinstance(resolved, (list, tuple)) is True:
        return list(resolved)  # type: ignore[arg-type]
    return [resolved]


async def _serve_connection(connection: Connection, module_name: str, qualname: str, factory: bool) -> None:
    channel: PipeChannel = PipeChannel(connection)
    try:
        entities: list[object] = load_entities(module_name, qualname, factory)
        await serve(channel, entities)
    except Exception:
        logger.exception("Worker failed to serve %s:%s", module_name, qualname)
        channel.close()
        raise


def worker_entry(connection: Connection, module_name: str, qualname: str, factory: bool = False) -> None:
    """Run the child interpreter event loop until the host disconnects.

    :param connection: IPC connection from the parent process.
    :param module_name: Module holding the root entities.
    :param qualname: Qualname of the root entities inside the module.
    :param factory: Call the resolved object and expose what it returns.
    """
    asyncio.run(_serve_connection(connection, module_name, qualname, factory))


class ProcessChannel(PipeChannel):
    """Host end of a pipe to a spawned worker process.

    Closing the channel also stops the process, escalating to ``terminate``
    when it does not exit on its own. The escalation runs off the event loop.
    """

    _process: multiprocessing.process.BaseProcess
    _reaper: threading.Thread | None

    def __init__(
        self,
        connection: Connection,
        process: multiprocessing.process.BaseProcess,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Initialize the channel.

        :param connection: Parent end of the duplex pipe.
        :param process: Started worker process.
        :param loop: Event loop used for delivery. Defaults to the running loop.
        """
        self._process = process
        self._reaper = None
        super().__init__(connection, loop)

    @property
    def process(self) -> multiprocessing.process.BaseProcess:
        """Return the worker process.

        :returns: Worker process.
        """
        return self._process

    def close(self) -> None:
        """Close the pipe and stop the worker process.

        Joining and, when needed, terminating the process happens on a daemon
        reaper thread so the event loop keeps running while the worker exits.
        """
        was_closed: bool = self._is_closed
        super().close()
        if was_closed is True:
            return
        self._reaper = threading.Thread(
            target=self._reap_process,
            name=f"emissary-reaper-{self._process.pid}",
            daemon=True,
        )
        self._reaper.start()

    def _reap_process(self) -> None:
        process: multiprocessing.process.BaseProcess = self._process
        process.join(timeout=_PROCESS_JOIN_SECONDS)
        is_alive: bool = process.is_alive()
        if is_alive is True:
            logger.warning("Worker process %s did not exit; terminating it", process.pid)
            process.terminate()
            process.join(timeout=_PROCESS_JOIN_SECONDS)

    async def wait_process_exit(self, timeout: float | None = None) -> bool:
        """Wait for the reaper started by :meth:`close` without blocking the loop.

        :param timeout: Seconds to wait, or ``None`` to wait until reaping ends.
        :returns: ``True`` when the worker process has exited.
        """
        reaper: threading.Thread | None = self._reaper
        if reaper is not None:
            loop: asyncio.AbstractEventLoop = asyncio.get_running_loop()
            await loop.run_in_executor(None, reaper.join, timeout)
        return self._process.is_alive() is False


def spawn_worker(
    target: str,
    factory: bool = False,
    loop: asyncio.AbstractEventLoop | None = None,
) -> ProcessChannel:
    """Start a worker process exposing the entities named by ``target``.

    :param target: Target in ``module.path:qualname`` format.
    :param factory: Call the resolved object in the worker and expose what it returns.
    :param loop: Event loop used for delivery. Defaults to the running loop.
    :returns: Host end of the channel to the worker.
    :raises ValueError: If the target format is invalid.
    """
    module_name, qualname = parse_target(target)
    context = multiprocessing.get_context("spawn")
    parent_connection, child_connection = context.Pipe(duplex=True)
    process = context.Process(
        target=worker_entry,
        args=(child_connection, module_name, qualname, factory),
    )
    process.daemon = True
    process.start()
    child_connection.close()
    logger.debug("Spawned worker process %s for %s", process.pid, target)
    return ProcessChannel(parent_connection, process, loop)
