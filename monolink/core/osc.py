"""OSC 1.0 message codec.

Implements the subset of OSC used by serialosc and monome devices:
int32, float32 and string arguments. Bundles are not supported.

Arguments are explicitly typed (Int32 / Float32 / Str). Native Python
values are accepted where their type says what they are: an ``int`` is
always an int32 and a ``float`` is always a float32, so ``2.0`` is sent
as a float.

OSC spec: http://opensoundcontrol.org/spec-1_0
"""

import struct
from dataclasses import dataclass, field

from monolink.core.errors import (
    InvalidArgumentError,
    MalformedMessageError,
    TruncatedMessageError,
)

INT32_MIN = -(2**31)
INT32_MAX = 2**31 - 1

# Largest payload that fits in a single IPv4 UDP datagram.
MAX_DATAGRAM_SIZE = 65507

_INT32 = struct.Struct(">i")
_FLOAT32 = struct.Struct(">f")


@dataclass(frozen=True)
class Int32:
    """Signed 32-bit integer argument (type tag ``i``)."""

    value: int
    tag = "i"

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, int):
            raise InvalidArgumentError(f"Int32 needs an int, got {type(self.value).__name__}")
        if not INT32_MIN <= self.value <= INT32_MAX:
            raise InvalidArgumentError(f"Int32 out of range: {self.value}")


@dataclass(frozen=True)
class Float32:
    """IEEE 754 single precision argument (type tag ``f``).

    The value is rounded to single precision on construction, so a decoded
    Float32 compares equal to the one that was encoded. Equality compares
    the packed bits: NaN equals NaN, and 0.0 differs from -0.0.
    """

    value: float
    tag = "f"

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
            raise InvalidArgumentError(
                f"Float32 needs a float, got {type(self.value).__name__}"
            )
        try:
            rounded = _FLOAT32.unpack(_FLOAT32.pack(float(self.value)))[0]
        except (OverflowError, struct.error) as e:
            raise InvalidArgumentError(f"Float32 out of range: {self.value}") from e
        object.__setattr__(self, "value", rounded)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Float32):
            return NotImplemented
        return _FLOAT32.pack(self.value) == _FLOAT32.pack(other.value)

    def __hash__(self) -> int:
        return hash(_FLOAT32.pack(self.value))


@dataclass(frozen=True)
class Str:
    """NUL-terminated string argument (type tag ``s``)."""

    value: str
    tag = "s"

    def __post_init__(self) -> None:
        if not isinstance(self.value, str):
            raise InvalidArgumentError(f"Str needs a str, got {type(self.value).__name__}")
        if "\x00" in self.value:
            raise InvalidArgumentError("OSC strings cannot contain NUL bytes")


TypedValue = Int32 | Float32 | Str


def typed(value: "TypedValue | int | float | str") -> TypedValue:
    """Lift a native value into a TypedValue by its Python type.

    Args:
        value: A TypedValue, int, float or str.

    Returns:
        The matching TypedValue.

    Raises:
        InvalidArgumentError: If the value has an unsupported type.
    """
    if isinstance(value, (Int32, Float32, Str)):
        return value
    # bool is an int subclass; refuse it rather than send 0/1 silently.
    if isinstance(value, bool):
        raise InvalidArgumentError("Unsupported OSC argument type: bool")
    if isinstance(value, int):
        return Int32(value)
    if isinstance(value, float):
        return Float32(value)
    if isinstance(value, str):
        return Str(value)
    raise InvalidArgumentError(f"Unsupported OSC argument type: {type(value)}")


def osc_string(s: str) -> bytes:
    """Encode string as OSC string (null-terminated, 4-byte padded).

    Args:
        s: String to encode.

    Returns:
        Padded bytes.
    """
    encoded = s.encode("utf-8") + b"\x00"
    padded_len = (len(encoded) + 3) & ~3
    return encoded.ljust(padded_len, b"\x00")


def osc_int(value: int) -> bytes:
    """Encode int32 big-endian."""
    return _INT32.pack(value)


def osc_float(value: float) -> bytes:
    """Encode float32 big-endian (IEEE 754)."""
    return _FLOAT32.pack(value)


def _check_address(address: str) -> None:
    if not isinstance(address, str) or not address.startswith("/"):
        raise InvalidArgumentError(f"OSC address must start with '/': {address!r}")
    if "\x00" in address:
        raise InvalidArgumentError("OSC address cannot contain NUL bytes")


@dataclass(frozen=True)
class OscMessage:
    """A decoded or to-be-encoded OSC message."""

    address: str
    args: tuple[TypedValue, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        _check_address(self.address)
        object.__setattr__(self, "args", tuple(typed(a) for a in self.args))

    @classmethod
    def build(cls, address: str, *values: "TypedValue | int | float | str") -> "OscMessage":
        """Build a message from native or typed values."""
        return cls(address, tuple(typed(v) for v in values))

    @property
    def type_tags(self) -> str:
        return "," + "".join(a.tag for a in self.args)

    @property
    def values(self) -> tuple[int | float | str, ...]:
        """Plain Python values of the arguments."""
        return tuple(a.value for a in self.args)

    def encode(self) -> bytes:
        """Encode to the OSC binary wire form.

        Raises:
            InvalidArgumentError: If the encoded message does not fit in
                a UDP datagram.
        """
        parts = [osc_string(self.address), osc_string(self.type_tags)]
        for arg in self.args:
            if isinstance(arg, Int32):
                parts.append(osc_int(arg.value))
            elif isinstance(arg, Float32):
                parts.append(osc_float(arg.value))
            else:
                parts.append(osc_string(arg.value))

        data = b"".join(parts)
        if len(data) > MAX_DATAGRAM_SIZE:
            raise InvalidArgumentError(
                f"OSC message for {self.address} is {len(data)} bytes, "
                f"max is {MAX_DATAGRAM_SIZE}"
            )
        return data


def encode_message(address: str, *args: "TypedValue | int | float | str") -> bytes:
    """Build a complete OSC message with type tag string.

    Args:
        address: OSC address pattern (e.g., "/serialosc/list").
        *args: Values to encode (TypedValue, int, float, or str).

    Returns:
        Complete OSC binary message.

    Raises:
        InvalidArgumentError: If the address or an argument is invalid.
    """
    return OscMessage.build(address, *args).encode()


def _read_string(data: bytes, offset: int, what: str) -> tuple[str, int]:
    """Read a padded OSC string, returning it and the offset after padding."""
    end = data.find(b"\x00", offset)
    if end == -1:
        raise TruncatedMessageError(f"Unterminated {what} at offset {offset}")
    try:
        value = data[offset:end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedMessageError(f"Invalid UTF-8 in {what}: {e}") from e
    return value, (end + 4) & ~3


def _read_word(data: bytes, offset: int, codec: struct.Struct, what: str) -> tuple:
    if offset + 4 > len(data):
        raise TruncatedMessageError(
            f"Need 4 bytes for {what} at offset {offset}, have {len(data) - offset}"
        )
    return codec.unpack_from(data, offset)[0], offset + 4


def decode_message(data: bytes) -> OscMessage:
    """Decode an OSC message from a datagram.

    A message with no type tag string (nothing, or anything other than
    ``,`` after the address) decodes with no arguments. Unknown type tags
    are skipped without consuming payload bytes.

    Args:
        data: Raw datagram bytes.

    Returns:
        The decoded OscMessage.

    Raises:
        TruncatedMessageError: If the buffer ends mid-field.
        MalformedMessageError: If the buffer is not an OSC message.
    """
    if not data:
        raise MalformedMessageError("Empty datagram")

    address, offset = _read_string(data, 0, "address")
    if not address.startswith("/"):
        raise MalformedMessageError(f"Not an OSC message address: {address!r}")

    if offset >= len(data) or data[offset] != ord(","):
        return OscMessage(address)

    type_tags, offset = _read_string(data, offset, "type tags")

    args: list[TypedValue] = []
    for tag in type_tags[1:]:
        if tag == "i":
            value, offset = _read_word(data, offset, _INT32, "int32")
            args.append(Int32(value))
        elif tag == "f":
            value, offset = _read_word(data, offset, _FLOAT32, "float32")
            args.append(Float32(value))
        elif tag == "s":
            value, offset = _read_string(data, offset, "string argument")
            args.append(Str(value))

    return OscMessage(address, tuple(args))
