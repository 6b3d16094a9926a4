"""Message envelopes exchanged between the host controller and the worker registry.

Requests::

    {"invocation_id": int, "path": [str, ...], "action": str, "slot": int,
     "args": [...], "kwargs": {...}}

Responses carry the request's ``invocation_id`` and exactly one of
``result``, ``exposed`` (a list of descriptors) or ``error``
(``{kind, message, stack}``). The bootstrap announcement is the only message
without an ``invocation_id``; it carries ``exposed``.
"""

import traceback
from typing import Literal

from emissary.descriptors import ExposureDescriptor
from emissary.errors import EmissaryProtocolError
from emissary.errors import ExposureValidationError
from emissary.errors import RemoteExecutionError
from emissary.errors import StaleReferenceError

SLOT_REF_TAG: str = "__emissary_slot_ref_v1__"
Action = Literal["read", "write", "has", "call", "construct", "destroy"]
ACTIONS: frozenset[str] = frozenset({"read", "write", "has", "call", "construct", "destroy"})
UNKNOWN_INVOCATION_ID: int = -1
RESPONSE_KEYS: tuple[str, ...] = ("result", "exposed", "error")

_LIBRARY_ERROR_TYPES: dict[str, type[Exception]] = {
    "EmissaryProtocolError": EmissaryProtocolError,
    "ExposureValidationError": ExposureValidationError,
    "StaleReferenceError": StaleReferenceError,
}
_MIRRORED_BUILTIN_ERRORS: tuple[type[Exception], ...] = (
    ArithmeticError,
    AssertionError,
    AttributeError,
    Exception,
    IndexError,
    KeyError,
    LookupError,
    NotImplementedError,
    OverflowError,
    RecursionError,
    RuntimeError,
    TypeError,
    ValueError,
    ZeroDivisionError,
)


def _mirror_builtin_error(builtin_type: type[Exception]) -> type[RemoteExecutionError]:
    """Create a remote error class that also derives from ``builtin_type``.

    :param builtin_type: Builtin exception class.
    :returns: ``RemoteExecutionError`` subclass.
    """
    if builtin_type is Exception:
        return RemoteExecutionError
    class_name: str = f"Remote{builtin_type.__name__}"
    namespace: dict[str, object] = {
        "__module__": "emissary.protocol",
        "__doc__": f"Remote {builtin_type.__name__} reconstructed on the host.",
        "__str__": RemoteExecutionError.__str__,
    }
    return type(class_name, (RemoteExecutionError, builtin_type), namespace)


REMOTE_ERROR_TYPES: dict[str, type[RemoteExecutionError]] = {
    builtin_type.__name__: _mirror_builtin_error(builtin_type)
    for builtin_type in _MIRRORED_BUILTIN_ERRORS
}


def build_request(
    invocation_id: int,
    path: list[str],
    action: str,
    slot: int,
    args: list[object],
    kwargs: dict[str, object],
) -> dict[str, object]:
    """Build a request envelope.

    :param invocation_id: Correlation identifier.
    :param path: Encoded member path relative to the slot.
    :param action: Action name.
    :param slot: Target slot.
    :param args: Positional arguments.
    :param kwargs: Keyword arguments.
    :returns: Request envelope.
    """
    return {
        "invocation_id": invocation_id,
        "path": list(path),
        "action": action,
        "slot": slot,
        "args": list(args),
        "kwargs": dict(kwargs),
    }


def encode_slot_ref(slot: int) -> tuple[str, int]:
    """Encode a reference to an exposed entity for use inside arguments.

    :param slot: Slot of the referenced entity.
    :returns: Wire reference tuple.
    """
    return (SLOT_REF_TAG, slot)


def decode_slot_ref(value: object) -> int | None:
    """Return the slot of a wire reference, or ``None`` for ordinary values.

    :param value: Wire value.
    :returns: Referenced slot or ``None``.
    :raises EmissaryProtocolError: If a tagged reference is malformed.
    """
    if isinstance(value, tuple) is False or len(value) != 2:
        return None
    if value[0] != SLOT_REF_TAG:
        return None
    slot: object = value[1]
    if isinstance(slot, int) is False or isinstance(slot, bool) is True:
        raise EmissaryProtocolError("Slot reference must carry an integer slot")
    return slot


def build_result(invocation_id: int, value: object) -> dict[str, object]:
    """Build a plain-data response envelope.

    :param invocation_id: Correlation identifier.
    :param value: Plain-data result.
    :returns: Response envelope.
    """
    return {"invocation_id": invocation_id, "result": value}


def build_exposed(invocation_id: int | None, descriptors: list[ExposureDescriptor]) -> dict[str, object]:
    """Build an exposure response, or the bootstrap announcement when ``invocation_id`` is ``None``.

    :param invocation_id: Correlation identifier or ``None``.
    :param descriptors: Newly exposed entities.
    :returns: Response envelope.
    """
    envelope: dict[str, object] = {"exposed": [descriptor.to_wire() for descriptor in descriptors]}
    if invocation_id is not None:
        envelope["invocation_id"] = invocation_id
    return envelope


def build_error(invocation_id: int, error: dict[str, str]) -> dict[str, object]:
    """Build an error response envelope.

    :param invocation_id: Correlation identifier.
    :param error: Marshaled error from :func:`marshal_error`.
    :returns: Response envelope.
    """
    return {"invocation_id": invocation_id, "error": dict(error)}


def marshal_error(exc: BaseException) -> dict[str, str]:
    """Marshal an exception as ``{kind, message, stack}``.

    Remote errors received from a nested exchange keep their original kind.

    :param exc: Exception to marshal.
    :returns: Marshaled error.
    """
    if isinstance(exc, RemoteExecutionError) is True:
        return {
            "kind": exc.remote_kind,
            "message": exc.remote_message,
            "stack": exc.remote_traceback,
        }

    message: str = str(exc)
    if isinstance(exc, KeyError) is True and len(exc.args) == 1:
        message = str(exc.args[0])
    stack: str = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return {
        "kind": type(exc).__name__,
        "message": message,
        "stack": stack,
    }


def reconstruct_error(payload: object) -> Exception:
    """Rebuild a local exception from a marshaled error.

    :param payload: Marshaled ``{kind, message, stack}`` dictionary.
    :returns: Local exception instance.
    """
    kind: str = "Exception"
    message: str = ""
    stack: str = ""
    if isinstance(payload, dict) is True:
        kind_obj: object = payload.get("kind")
        if isinstance(kind_obj, str) is True:
            kind = kind_obj
        message_obj: object = payload.get("message")
        if isinstance(message_obj, str) is True:
            message = message_obj
        stack_obj: object = payload.get("stack")
        if isinstance(stack_obj, str) is True:
            stack = stack_obj

    library_type: type[Exception] | None = _LIBRARY_ERROR_TYPES.get(kind)
    if library_type is not None:
        return library_type(message)

    remote_type: type[RemoteExecutionError] = REMOTE_ERROR_TYPES.get(kind, RemoteExecutionError)
    return remote_type(kind, message, stack)


def require_invocation_id(envelope: dict[str, object]) -> int:
    """Extract and validate the invocation identifier.

    :param envelope: Message envelope.
    :returns: Invocation identifier.
    :raises EmissaryProtocolError: If ``invocation_id`` is missing or invalid.
    """
    invocation_id: object = envelope.get("invocation_id")
    if isinstance(invocation_id, int) is False or isinstance(invocation_id, bool) is True:
        raise EmissaryProtocolError("invocation_id must be an integer")
    return invocation_id


def require_action(envelope: dict[str, object]) -> str:
    """Extract and validate the action name.

    :param envelope: Request envelope.
    :returns: Action name.
    :raises EmissaryProtocolError: If the action is missing or unrecognized.
    """
    action: object = envelope.get("action")
    if isinstance(action, str) is False:
        raise EmissaryProtocolError("action must be a string")
    if action not in ACTIONS:
        raise EmissaryProtocolError(f"Unsupported action: {action}")
    return action


def require_slot(envelope: dict[str, object]) -> int:
    """Extract and validate the slot.

    :param envelope: Request envelope.
    :returns: Slot identifier.
    :raises EmissaryProtocolError: If ``slot`` is missing or invalid.
    """
    slot: object = envelope.get("slot")
    if isinstance(slot, int) is False or isinstance(slot, bool) is True:
        raise EmissaryProtocolError("slot must be an integer")
    if slot < 0:
        raise EmissaryProtocolError("slot must not be negative")
    return slot


def require_path(envelope: dict[str, object]) -> list[str]:
    """Extract and validate the member path.

    A missing or ``None`` path means the slot's entity itself.

    :param envelope: Request envelope.
    :returns: Path segments.
    :raises EmissaryProtocolError: If the path is not a list of strings.
    """
    path: object = envelope.get("path")
    if path is None:
        return []
    if isinstance(path, list) is False:
        raise EmissaryProtocolError("path must be a list")
    for segment in path:
        if isinstance(segment, str) is False:
            raise EmissaryProtocolError("path segments must be strings")
    return list(path)


def require_arguments(envelope: dict[str, object]) -> tuple[list[object], dict[str, object]]:
    """Extract and validate positional and keyword arguments.

    :param envelope: Request envelope.
    :returns: Positional and keyword arguments.
    :raises EmissaryProtocolError: If argument payload types are invalid.
    """
    raw_args: object = envelope.get("args", [])
    if raw_args is None:
        raw_args = []
    if isinstance(raw_args, list) is False:
        raise EmissaryProtocolError("args must be a list")

    raw_kwargs: object = envelope.get("kwargs", {})
    if raw_kwargs is None:
        raw_kwargs = {}
    if isinstance(raw_kwargs, dict) is False:
        raise EmissaryProtocolError("kwargs must be a dict")
    for key in raw_kwargs:
        if isinstance(key, str) is False:
            raise EmissaryProtocolError("kwargs keys must be strings")
    return list(raw_args), dict(raw_kwargs)


def parse_exposed(envelope: dict[str, object]) -> list[ExposureDescriptor]:
    """Parse the descriptors carried by an ``exposed`` message.

    :param envelope: Response or bootstrap envelope.
    :returns: Exposure descriptors.
    :raises EmissaryProtocolError: If the payload shape is invalid.
    """
    raw_exposed: object = envelope.get("exposed")
    if isinstance(raw_exposed, list) is False:
        raise EmissaryProtocolError("exposed must be a list")
    if len(raw_exposed) == 0:
        raise EmissaryProtocolError("exposed must not be empty")
    return [ExposureDescriptor.from_wire(item) for item in raw_exposed]
