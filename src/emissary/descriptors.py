"""Exposure descriptors: the wire description of entities living in the worker.

A descriptor is computed once, at the moment an entity first crosses the
boundary, and is never refreshed. Members added to or removed from the entity
afterwards are still reachable through the explicit stand-in operations, but
they are not reflected in the descriptor.
"""

import ast
import enum
import functools
import inspect
import logging
import types
from collections.abc import Mapping

from emissary.errors import EmissaryProtocolError
from emissary.errors import ExposureValidationError

logger = logging.getLogger(__name__)

KEY_LITERAL_PREFIX: str = "@literal:"
_SCALAR_TYPES: tuple[type, ...] = (type(None), bool, int, float, complex, str, bytes)
_SEQUENCE_TYPES: tuple[type, ...] = (list, tuple, set, frozenset)
_ARROW_CALLABLE_TYPES: tuple[type, ...] = (
    types.BuiltinFunctionType,
    types.BuiltinMethodType,
    types.MethodWrapperType,
    types.WrapperDescriptorType,
    types.MethodDescriptorType,
    functools.partial,
)


class ExposureKind(enum.Enum):
    """Capability kinds carried verbatim in descriptors."""

    PLAIN_FUNCTION = "plainFunction"
    ARROW_FUNCTION = "arrowFunction"
    CLASS = "class"
    OBJECT = "object"
    DATA = "data"


CALLABLE_KINDS: frozenset[ExposureKind] = frozenset(
    {ExposureKind.PLAIN_FUNCTION, ExposureKind.ARROW_FUNCTION, ExposureKind.CLASS}
)
EXPOSABLE_KINDS: frozenset[ExposureKind] = CALLABLE_KINDS | {ExposureKind.OBJECT}


def _bare_function() -> None:
    """Baseline function used to subtract inherited function attributes."""


class _BareClass:
    """Baseline class used to subtract inherited class and instance attributes."""


_FUNCTION_BASELINE: frozenset[str] = frozenset(dir(_bare_function))
_CLASS_BASELINE: frozenset[str] = frozenset(dir(_BareClass))
_INSTANCE_BASELINE: frozenset[str] = frozenset(dir(_BareClass()))


def _is_dunder(name: str) -> bool:
    return name.startswith("__") is True and name.endswith("__") is True


def is_plain_data(value: object, seen_ids: set[int] | None = None) -> bool:
    """Report whether ``value`` travels as data rather than being exposed.

    Scalars are plain data. Lists, tuples and sets are plain data when every
    item is plain data. Mappings never are: they are exposed as objects so
    writes through their stand-ins reach the worker.

    :param value: Candidate runtime value.
    :param seen_ids: Cycle-breaker set.
    :returns: ``True`` when ``value`` is plain data.
    """
    if isinstance(value, _SCALAR_TYPES) is True:
        return True
    if isinstance(value, _SEQUENCE_TYPES) is False:
        return False

    if seen_ids is None:
        seen_ids = set()
    identity: int = id(value)
    if identity in seen_ids:
        return True
    seen_ids.add(identity)

    for item in value:  # type: ignore[union-attr]
        if is_plain_data(item, seen_ids) is False:
            return False
    return True


def classify(value: object) -> ExposureKind | None:
    """Classify a value crossing the boundary.

    :param value: Candidate runtime value.
    :returns: Exposure kind, or ``None`` when the value is plain data.
    """
    if is_plain_data(value) is True:
        return None

    if isinstance(value, Mapping) is True:
        return ExposureKind.OBJECT

    if inspect.isclass(value) is True:
        return ExposureKind.CLASS

    is_function: bool = inspect.isfunction(value) is True or inspect.ismethod(value) is True
    if is_function is True:
        function_name: object = getattr(value, "__name__", None)
        if function_name == "<lambda>":
            return ExposureKind.ARROW_FUNCTION
        return ExposureKind.PLAIN_FUNCTION

    if isinstance(value, _ARROW_CALLABLE_TYPES) is True:
        return ExposureKind.ARROW_FUNCTION

    return ExposureKind.OBJECT


def classify_root(value: object) -> ExposureKind:
    """Classify an entity offered for exposure as a root.

    Mappings are always exposable as roots, even when they hold only data.

    :param value: Candidate root entity.
    :returns: Exposure kind.
    :raises ExposureValidationError: If ``value`` is a scalar or a sequence.
    """
    is_rejected: bool = isinstance(value, _SCALAR_TYPES) is True or isinstance(value, _SEQUENCE_TYPES) is True
    if is_rejected is True:
        raise ExposureValidationError(
            "Exposed entities must be functions, classes, or objects, received: "
            + type(value).__name__
        )

    if isinstance(value, Mapping) is True:
        return ExposureKind.OBJECT

    kind: ExposureKind | None = classify(value)
    if kind is None:
        return ExposureKind.OBJECT
    return kind


def member_kind(value: object) -> ExposureKind:
    """Return the kind tag of a member's current value.

    :param value: Member value.
    :returns: Exposure kind, ``DATA`` for plain data.
    """
    kind: ExposureKind | None = classify(value)
    if kind is None:
        return ExposureKind.DATA
    return kind


def encode_key(key: object) -> str:
    """Encode a member key as text that survives serialization.

    Ordinary string keys pass through unchanged. Other keys (and strings that
    would be mistaken for encoded keys) are written as a Python literal behind
    :data:`KEY_LITERAL_PREFIX`.

    :param key: Attribute name or mapping key.
    :returns: Text form of the key.
    :raises EmissaryProtocolError: If the key has no reversible literal form.
    """
    if isinstance(key, str) is True:
        needs_escape: bool = key.startswith(KEY_LITERAL_PREFIX)
        if needs_escape is False:
            return key

    literal: str = repr(key)
    try:
        round_tripped: object = ast.literal_eval(literal)
    except (ValueError, SyntaxError) as exc:
        raise EmissaryProtocolError(f"Key {literal} has no reversible text form") from exc
    if round_tripped != key:
        raise EmissaryProtocolError(f"Key {literal} has no reversible text form")
    return KEY_LITERAL_PREFIX + literal


def decode_key(text: object) -> object:
    """Decode a key produced by :func:`encode_key`.

    :param text: Encoded key.
    :returns: Original key.
    :raises EmissaryProtocolError: If ``text`` is not a valid encoded key.
    """
    if isinstance(text, str) is False:
        raise EmissaryProtocolError("Path segments must be strings")

    is_literal: bool = text.startswith(KEY_LITERAL_PREFIX)
    if is_literal is False:
        return text

    literal: str = text[len(KEY_LITERAL_PREFIX):]
    try:
        return ast.literal_eval(literal)
    except (ValueError, SyntaxError) as exc:
        raise EmissaryProtocolError(f"Malformed encoded key: {text!r}") from exc


def entity_name(value: object) -> str:
    """Return a human-readable name for an exposed entity.

    :param value: Exposed entity.
    :returns: ``__name__`` when available, otherwise the type name.
    """
    name: object = getattr(value, "__name__", None)
    if isinstance(name, str) is True:
        return name
    return type(value).__name__


def _parse_kind(raw_kind: object) -> ExposureKind:
    if isinstance(raw_kind, str) is False:
        raise EmissaryProtocolError("Descriptor kind must be a string")
    try:
        return ExposureKind(raw_kind)
    except ValueError as exc:
        raise EmissaryProtocolError(f"Unknown descriptor kind: {raw_kind!r}") from exc


class MemberDescriptor:
    """Describe one member of an exposed entity."""

    name: str
    kind: ExposureKind

    def __init__(self, name: str, kind: ExposureKind) -> None:
        """Initialize a member descriptor.

        :param name: Encoded member name.
        :param kind: Kind of the member's value at exposure time.
        """
        self.name = name
        self.kind = kind

    @property
    def is_callable(self) -> bool:
        """Report whether the member was callable at exposure time.

        :returns: ``True`` for function and class members.
        """
        return self.kind in CALLABLE_KINDS

    def to_wire(self) -> dict[str, object]:
        """Return the wire form.

        :returns: ``{name, kind}`` dictionary.
        """
        return {"name": self.name, "kind": self.kind.value}

    @classmethod
    def from_wire(cls, payload: object) -> "MemberDescriptor":
        """Parse a wire member description.

        :param payload: Wire value.
        :returns: Member descriptor.
        :raises EmissaryProtocolError: If the payload shape is invalid.
        """
        if isinstance(payload, dict) is False:
            raise EmissaryProtocolError("Member descriptor must be a dict")
        name: object = payload.get("name")
        if isinstance(name, str) is False:
            raise EmissaryProtocolError("Member descriptor name must be a string")
        return cls(name, _parse_kind(payload.get("kind")))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, MemberDescriptor) is False:
            return NotImplemented
        return self.name == other.name and self.kind is other.kind

    def __hash__(self) -> int:
        return hash((self.name, self.kind))

    def __repr__(self) -> str:
        return f"MemberDescriptor({self.name!r}, {self.kind.value!r})"


class ExposureDescriptor:
    """Describe an exposed entity: its slot, kind, and member surface."""

    slot: int
    name: str
    kind: ExposureKind
    members: tuple[MemberDescriptor, ...]

    def __init__(
        self,
        slot: int,
        name: str,
        kind: ExposureKind,
        members: tuple[MemberDescriptor, ...] = (),
    ) -> None:
        """Initialize an exposure descriptor.

        :param slot: Worker slot holding the entity.
        :param name: Entity name.
        :param kind: Entity kind.
        :param members: Member surface at exposure time.
        :raises ValueError: If ``kind`` is not an exposable kind.
        """
        if kind not in EXPOSABLE_KINDS:
            raise ValueError(f"Descriptor kind must be exposable, received {kind.value!r}")
        self.slot = slot
        self.name = name
        self.kind = kind
        self.members = tuple(members)

    def member(self, name: str) -> MemberDescriptor | None:
        """Look up one member by encoded name.

        :param name: Encoded member name.
        :returns: Member descriptor or ``None``.
        """
        for candidate in self.members:
            if candidate.name == name:
                return candidate
        return None

    @property
    def member_names(self) -> tuple[str, ...]:
        """Return all encoded member names in descriptor order.

        :returns: Member names.
        """
        return tuple(candidate.name for candidate in self.members)

    def to_wire(self) -> dict[str, object]:
        """Return the wire form.

        :returns: ``{slot, name, kind, members}`` dictionary.
        """
        return {
            "slot": self.slot,
            "name": self.name,
            "kind": self.kind.value,
            "members": [candidate.to_wire() for candidate in self.members],
        }

    @classmethod
    def from_wire(cls, payload: object) -> "ExposureDescriptor":
        """Parse a wire exposure descriptor.

        :param payload: Wire value.
        :returns: Exposure descriptor.
        :raises EmissaryProtocolError: If the payload shape is invalid.
        """
        if isinstance(payload, dict) is False:
            raise EmissaryProtocolError("Exposure descriptor must be a dict")

        slot: object = payload.get("slot")
        if isinstance(slot, int) is False or isinstance(slot, bool) is True:
            raise EmissaryProtocolError("Exposure descriptor slot must be an integer")
        name: object = payload.get("name")
        if isinstance(name, str) is False:
            raise EmissaryProtocolError("Exposure descriptor name must be a string")
        kind: ExposureKind = _parse_kind(payload.get("kind"))
        if kind not in EXPOSABLE_KINDS:
            raise EmissaryProtocolError(f"Exposure descriptor kind {kind.value!r} is not exposable")

        raw_members: object = payload.get("members", [])
        if isinstance(raw_members, list) is False:
            raise EmissaryProtocolError("Exposure descriptor members must be a list")
        members: tuple[MemberDescriptor, ...] = tuple(
            MemberDescriptor.from_wire(item) for item in raw_members
        )
        return cls(slot, name, kind, members)

    def __repr__(self) -> str:
        return (
            f"ExposureDescriptor(slot={self.slot}, name={self.name!r}, "
            + f"kind={self.kind.value!r}, members={list(self.member_names)!r})"
        )


def _baseline_for(value: object, kind: ExposureKind) -> frozenset[str]:
    if kind is ExposureKind.CLASS:
        return _CLASS_BASELINE
    if kind is ExposureKind.OBJECT:
        return _INSTANCE_BASELINE
    return _FUNCTION_BASELINE


def enumerate_members(value: object, kind: ExposureKind) -> tuple[MemberDescriptor, ...]:
    """Enumerate the member surface of an entity.

    Mappings contribute their keys. Everything else contributes ``dir()``
    names minus the names a bare function, class, or instance already has.
    Dunder names are left out. Members whose lookup raises, and keys with no
    reversible text form, are skipped.

    :param value: Entity being exposed.
    :param kind: Entity kind.
    :returns: Member descriptors in a stable order.
    """
    members: list[MemberDescriptor] = []

    if isinstance(value, Mapping) is True:
        for key, item in value.items():
            try:
                encoded_key: str = encode_key(key)
            except EmissaryProtocolError as exc:
                logger.debug("Skipping key %r of %s: %s", key, entity_name(value), exc)
                continue
            members.append(MemberDescriptor(encoded_key, member_kind(item)))
        return tuple(members)

    baseline: frozenset[str] = _baseline_for(value, kind)
    for name in dir(value):
        if name in baseline:
            continue
        if _is_dunder(name) is True:
            continue
        try:
            item = getattr(value, name)
        except Exception as exc:
            logger.debug("Skipping member %r of %s: %s", name, entity_name(value), exc)
            continue
        members.append(MemberDescriptor(encode_key(name), member_kind(item)))
    return tuple(members)


def describe(value: object, slot: int, kind: ExposureKind) -> ExposureDescriptor:
    """Build the descriptor for an entity assigned to ``slot``.

    :param value: Entity being exposed.
    :param slot: Slot the entity was assigned.
    :param kind: Entity kind.
    :returns: Exposure descriptor.
    """
    return ExposureDescriptor(slot, entity_name(value), kind, enumerate_members(value, kind))
