"""
Reply interpretation for redwire.

Every typed operation names one projection kind. The kind decides what counts
as success and how a reply becomes a Python value:

    ACK           "OK" status or integer 1 -> True, anything else False
    SCALAR        bulk string -> str, null -> "", array is a protocol error
    COUNTER       integer -> int
    POSITIVE      integer > 0 -> True, anything else False
    MEMBERS       array -> list of str, missing -> []
    PAIRS         flat array of pairs -> dict, missing -> {}
    SCORE         bulk string holding a float -> float, otherwise 0.0
    CONFIG_VALUE  second item of a [name, value] array -> str, otherwise ""
    PUBSUB_ACK    non-null array -> True, anything else False

Error replies never reach a projection: they raise CommandError.
"""

from typing import Any, Callable, Dict, List

from ._resp import Array, BulkString, Error, Integer, Reply, Status
from .exceptions import CommandError, ProtocolError

ACK = "ack"
SCALAR = "scalar"
COUNTER = "counter"
POSITIVE = "positive"
MEMBERS = "members"
PAIRS = "pairs"
SCORE = "score"
CONFIG_VALUE = "config_value"
PUBSUB_ACK = "pubsub_ack"

Decoder = Callable[[bytes], str]


def check_error(reply: Reply) -> Reply:
    """Raise CommandError if the reply is an error, else return it."""
    if isinstance(reply, Error):
        raise CommandError(reply.text)
    return reply


def reply_to_str(reply: Reply, decode: Decoder) -> str:
    """Convert a scalar reply to str; a null bulk string gives "".

    Raises:
        ProtocolError: The reply is an array
    """
    if isinstance(reply, BulkString):
        return decode(reply.data) if reply.data is not None else ""
    if isinstance(reply, Status):
        return reply.text
    if isinstance(reply, Integer):
        return str(reply.value)
    if isinstance(reply, Array):
        raise ProtocolError(f"Expected a scalar reply, got {reply!r}")
    return ""


def _ack(reply: Reply, decode: Decoder) -> bool:
    if isinstance(reply, Status):
        return reply.text == "OK"
    if isinstance(reply, Integer):
        return reply.value == 1
    return False


def _scalar(reply: Reply, decode: Decoder) -> str:
    return reply_to_str(reply, decode)


def _counter(reply: Reply, decode: Decoder) -> int:
    if isinstance(reply, Integer):
        return reply.value
    raise ProtocolError(f"Expected an integer reply, got {reply!r}")


def _positive(reply: Reply, decode: Decoder) -> bool:
    return isinstance(reply, Integer) and reply.value > 0


def _members(reply: Reply, decode: Decoder) -> List[str]:
    if not isinstance(reply, Array) or not reply.items:
        return []
    return [reply_to_str(item, decode) for item in reply.items]


def _pairs(reply: Reply, decode: Decoder) -> Dict[str, str]:
    items = _members(reply, decode)
    if len(items) % 2:
        raise ProtocolError(f"Expected field/value pairs, got {len(items)} items")
    return dict(zip(items[::2], items[1::2]))


def _score(reply: Reply, decode: Decoder) -> float:
    if not isinstance(reply, BulkString) or reply.data is None:
        return 0.0
    try:
        return float(reply.data)
    except ValueError:
        return 0.0


def _config_value(reply: Reply, decode: Decoder) -> str:
    if not isinstance(reply, Array) or not reply.items or len(reply.items) < 2:
        return ""
    return reply_to_str(reply.items[1], decode)


def _pubsub_ack(reply: Reply, decode: Decoder) -> bool:
    return isinstance(reply, Array) and reply.items is not None


PROJECTIONS: Dict[str, Callable[[Reply, Decoder], Any]] = {
    ACK: _ack,
    SCALAR: _scalar,
    COUNTER: _counter,
    POSITIVE: _positive,
    MEMBERS: _members,
    PAIRS: _pairs,
    SCORE: _score,
    CONFIG_VALUE: _config_value,
    PUBSUB_ACK: _pubsub_ack,
}


def interpret(kind: str, reply: Reply, decode: Decoder) -> Any:
    """
    Project a reply into the result type of an operation kind.

    Args:
        kind: One of the projection kinds defined in this module
        reply: Decoded reply from the store
        decode: Converts bulk string payloads to str

    Raises:
        CommandError: The reply is an error reply
        ProtocolError: The reply shape cannot satisfy the kind
    """
    check_error(reply)
    return PROJECTIONS[kind](reply, decode)
