"""Tests for entity classification, member enumeration, and the key codec."""

import enum
import functools

import pytest

from emissary.descriptors import ExposureDescriptor
from emissary.descriptors import ExposureKind
from emissary.descriptors import MemberDescriptor
from emissary.descriptors import classify
from emissary.descriptors import classify_root
from emissary.descriptors import decode_key
from emissary.descriptors import describe
from emissary.descriptors import encode_key
from emissary.descriptors import enumerate_members
from emissary.descriptors import is_plain_data
from emissary.errors import EmissaryProtocolError
from emissary.errors import ExposureValidationError


class Point:
    """Small class with data attributes and one method."""

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


def named_function(value: int) -> int:
    """Return the value unchanged.

    :param value: Input value.
    :returns: Same value.
    """
    return value


def test_plain_data_covers_scalars_and_nested_containers() -> None:
    """Treat scalars and sequences of scalars as data."""
    assert is_plain_data(None) is True
    assert is_plain_data(3.5) is True
    assert is_plain_data("text") is True
    assert is_plain_data(b"raw") is True
    assert is_plain_data([1, (2, 3), frozenset({4, 5})]) is True

    assert is_plain_data([1, named_function]) is False
    assert is_plain_data({"k": 1}) is False
    assert is_plain_data([1, {"k": 1}]) is False


def test_plain_data_tolerates_self_referencing_lists() -> None:
    """Do not recurse forever on cyclic containers."""
    cyclic: list[object] = [1, 2]
    cyclic.append(cyclic)
    assert is_plain_data(cyclic) is True


def test_classify_distinguishes_function_kinds() -> None:
    """Classify named functions, lambdas, builtins, classes, and instances."""
    assert classify(named_function) is ExposureKind.PLAIN_FUNCTION
    assert classify(Point(1, 2, 3).total) is ExposureKind.PLAIN_FUNCTION
    assert classify(lambda value: value) is ExposureKind.ARROW_FUNCTION
    assert classify(len) is ExposureKind.ARROW_FUNCTION
    assert classify(functools.partial(named_function, 1)) is ExposureKind.ARROW_FUNCTION
    assert classify(Point) is ExposureKind.CLASS
    assert classify(Point(1, 2, 3)) is ExposureKind.OBJECT
    assert classify({"callback": named_function}) is ExposureKind.OBJECT
    assert classify({"a": 1}) is ExposureKind.OBJECT
    assert classify({}) is ExposureKind.OBJECT
    assert classify(42) is None


@pytest.mark.parametrize("value", [5, "text", None, [1, 2], (1,), {1, 2}])
def test_classify_root_rejects_scalars_and_sequences(value: object) -> None:
    """Reject roots that are neither functions, classes, nor objects."""
    with pytest.raises(ExposureValidationError):
        classify_root(value)


def test_classify_root_accepts_data_only_mappings() -> None:
    """Expose a mapping as an object even when it only holds data."""
    assert classify_root({"a": 1}) is ExposureKind.OBJECT
    assert classify_root(Point) is ExposureKind.CLASS
    assert classify_root(named_function) is ExposureKind.PLAIN_FUNCTION


def test_string_keys_pass_through_the_codec() -> None:
    """Leave ordinary attribute names and mapping keys untouched."""
    assert encode_key("total") == "total"
    assert decode_key("total") == "total"


@pytest.mark.parametrize("key", [3, -1.5, ("a", 1), b"raw", True, None, "@literal:spoof"])
def test_non_string_keys_survive_the_codec(key: object) -> None:
    """Encode keys that are not plain strings so they decode to an equal key."""
    encoded: str = encode_key(key)
    assert encoded.startswith("@literal:") is True
    assert decode_key(encoded) == key


def test_codec_rejects_keys_without_literal_form() -> None:
    """Refuse keys that cannot be rebuilt from their text."""
    with pytest.raises(EmissaryProtocolError):
        encode_key(object())
    with pytest.raises(EmissaryProtocolError):
        decode_key("@literal:<not a literal>")
    with pytest.raises(EmissaryProtocolError):
        decode_key(7)


def test_mapping_members_follow_key_order() -> None:
    """Enumerate mapping keys with their value kinds."""
    members: tuple[MemberDescriptor, ...] = enumerate_members(
        {"a": 1, "b": lambda value: value * 2, 3: named_function},
        ExposureKind.OBJECT,
    )
    assert members == (
        MemberDescriptor("a", ExposureKind.DATA),
        MemberDescriptor("b", ExposureKind.ARROW_FUNCTION),
        MemberDescriptor("@literal:3", ExposureKind.PLAIN_FUNCTION),
    )


def test_mapping_keys_without_text_form_are_skipped() -> None:
    """Leave out enum and object keys instead of failing the whole mapping."""

    class Color(enum.Enum):
        """Enum used as a mapping key."""

        RED = "red"

    members: tuple[MemberDescriptor, ...] = enumerate_members(
        {Color.RED: named_function, object(): 1, "kept": 2},
        ExposureKind.OBJECT,
    )
    assert members == (MemberDescriptor("kept", ExposureKind.DATA),)


def test_instance_members_exclude_baseline_and_dunders() -> None:
    """Enumerate instance state and methods without inherited object machinery."""
    descriptor: ExposureDescriptor = describe(Point(1, 2, 3), 4, ExposureKind.OBJECT)
    assert descriptor.slot == 4
    assert descriptor.name == "Point"
    assert set(descriptor.member_names) == {"total", "x", "y", "z"}

    total_member: MemberDescriptor | None = descriptor.member("total")
    assert total_member is not None
    assert total_member.is_callable is True

    x_member: MemberDescriptor | None = descriptor.member("x")
    assert x_member is not None
    assert x_member.kind is ExposureKind.DATA


def test_class_and_function_members_exclude_baseline() -> None:
    """Enumerate only what a class or function adds over a bare one."""
    class_descriptor: ExposureDescriptor = describe(Point, 0, ExposureKind.CLASS)
    assert class_descriptor.member_names == ("total",)

    def tagged() -> None:
        """Function carrying a custom attribute."""

    tagged.tag = "v1"  # type: ignore[attr-defined]
    function_descriptor: ExposureDescriptor = describe(tagged, 1, ExposureKind.PLAIN_FUNCTION)
    assert function_descriptor.member_names == ("tag",)


def test_members_whose_lookup_raises_are_skipped() -> None:
    """Leave out members whose getter raises."""

    class Fragile:
        """Object with one broken property."""

        value: int = 1

        @property
        def broken(self) -> int:
            """Always raise.

            :raises RuntimeError: Always.
            """
            raise RuntimeError("boom")

    descriptor: ExposureDescriptor = describe(Fragile(), 0, ExposureKind.OBJECT)
    assert descriptor.member_names == ("value",)


def test_descriptor_wire_form_is_validated() -> None:
    """Parse well-formed descriptors and reject malformed ones."""
    descriptor: ExposureDescriptor = describe({"a": 1}, 2, ExposureKind.OBJECT)
    parsed: ExposureDescriptor = ExposureDescriptor.from_wire(descriptor.to_wire())
    assert parsed.slot == 2
    assert parsed.kind is ExposureKind.OBJECT
    assert parsed.members == descriptor.members

    with pytest.raises(EmissaryProtocolError):
        ExposureDescriptor.from_wire({"slot": 0, "name": "x", "kind": "data", "members": []})
    with pytest.raises(EmissaryProtocolError):
        ExposureDescriptor.from_wire({"slot": "0", "name": "x", "kind": "object", "members": []})
    with pytest.raises(EmissaryProtocolError):
        ExposureDescriptor.from_wire({"slot": 0, "name": "x", "kind": "object", "members": [{"name": 1}]})
    with pytest.raises(ValueError):
        ExposureDescriptor(0, "x", ExposureKind.DATA)
