"""
RESP2 framing for redwire.

This module turns commands into request frames and reads reply frames back
into a small closed set of reply types. It knows nothing about what any
command means.
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union

from .exceptions import ConnectionLost, DataError, ProtocolError

CRLF = b"\r\n"

STATUS = b"+"
ERROR = b"-"
INTEGER = b":"
BULK = b"$"
ARRAY = b"*"

# Largest bulk string a server sends by default (proto-max-bulk-len)
MAX_BULK_LENGTH = 512 * 1024 * 1024
# Deepest array nesting accepted in one reply
MAX_NESTING = 64


@dataclass(frozen=True)
class Command:
    """A command name plus its encoded arguments."""

    name: str
    args: Tuple[bytes, ...] = ()

    @classmethod
    def build(cls, name: str, *args) -> "Command":
        """Create a command, encoding each argument to bytes."""
        return cls(name.upper(), tuple(encode_arg(a) for a in args))

    @property
    def tokens(self) -> Tuple[bytes, ...]:
        """The full request: name token(s) followed by the arguments."""
        return tuple(t.encode("utf-8") for t in self.name.split()) + self.args


@dataclass(frozen=True)
class Status:
    text: str


@dataclass(frozen=True)
class Integer:
    value: int


@dataclass(frozen=True)
class BulkString:
    # None is the null bulk string
    data: Optional[bytes]


@dataclass(frozen=True)
class Array:
    # None is the null array
    items: Optional[Tuple["Reply", ...]]


@dataclass(frozen=True)
class Error:
    text: str


Reply = Union[Status, Integer, BulkString, Array, Error]


def encode_arg(value) -> bytes:
    """Encode a single argument to bytes."""
    if isinstance(value, bytes):
        return value
    if isinstance(value, str):
        return value.encode("utf-8")
    # bool is an int subclass but has no unambiguous wire form
    if isinstance(value, bool):
        raise DataError(f"Invalid argument type bool: {value!r}")
    if isinstance(value, int):
        return str(value).encode("ascii")
    if isinstance(value, float):
        return repr(value).encode("ascii")
    raise DataError(
        f"Invalid argument type {type(value).__name__}: {value!r}. "
        "Convert to bytes, str, int or float first."
    )


def encode(command: Command) -> bytes:
    """Serialize a command into a RESP array of bulk strings."""
    tokens = command.tokens
    out = [b"*%d\r\n" % len(tokens)]
    for token in tokens:
        out.append(b"$%d\r\n" % len(token))
        out.append(token)
        out.append(CRLF)
    return b"".join(out)


def _read_line(reader) -> bytes:
    line = reader.readline()
    if not line or not line.endswith(b"\n"):
        raise ConnectionLost("Connection closed by server")
    if not line.endswith(CRLF):
        raise ProtocolError(f"Reply line not terminated by CRLF: {line!r}")
    return line[:-2]


def _parse_int(payload: bytes) -> int:
    try:
        return int(payload)
    except ValueError:
        raise ProtocolError(f"Invalid integer in reply: {payload!r}") from None


def decode(reader) -> Reply:
    """
    Read exactly one reply frame.

    Args:
        reader: Binary file object with readline() and read(n),
            typically socket.makefile("rb")

    Returns:
        The decoded reply

    Raises:
        ConnectionLost: The stream ended before the frame was complete
        ProtocolError: The frame is malformed, or exceeds MAX_BULK_LENGTH
            or MAX_NESTING
    """
    return _decode(reader, 0)


def _decode(reader, depth: int) -> Reply:
    line = _read_line(reader)
    prefix, payload = line[:1], line[1:]

    if prefix == STATUS:
        return Status(payload.decode("utf-8", "replace"))
    if prefix == ERROR:
        return Error(payload.decode("utf-8", "replace"))
    if prefix == INTEGER:
        return Integer(_parse_int(payload))
    if prefix == BULK:
        length = _parse_int(payload)
        if length == -1:
            return BulkString(None)
        if length < 0:
            raise ProtocolError(f"Invalid bulk string length: {length}")
        if length > MAX_BULK_LENGTH:
            raise ProtocolError(f"Bulk string length {length} exceeds {MAX_BULK_LENGTH}")
        data = reader.read(length + 2)
        if len(data) < length + 2:
            raise ConnectionLost("Connection closed by server")
        if data[-2:] != CRLF:
            raise ProtocolError("Bulk string not terminated by CRLF")
        return BulkString(data[:-2])
    if prefix == ARRAY:
        count = _parse_int(payload)
        if count == -1:
            return Array(None)
        if count < 0:
            raise ProtocolError(f"Invalid array length: {count}")
        if depth >= MAX_NESTING:
            raise ProtocolError(f"Arrays nested deeper than {MAX_NESTING} levels")
        return Array(tuple(_decode(reader, depth + 1) for _ in range(count)))

    raise ProtocolError(f"Unknown reply type: {prefix!r}")
