"""
Redwire client - typed operations over a single store connection.

Every operation encodes one command, dispatches it on the client's
connection and projects the reply through one of the kinds defined in
redwire._replies. Reads of missing data return empty values; mutating
operations that changed nothing return False.
"""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Set, Union

from ._replies import (
    ACK,
    CONFIG_VALUE,
    COUNTER,
    MEMBERS,
    PAIRS,
    POSITIVE,
    PUBSUB_ACK,
    SCALAR,
    SCORE,
    check_error,
    interpret,
)
from ._resp import Array, BulkString, Command, Reply
from .connection import _DEFAULT, Connection, connect, parse_url
from .exceptions import InvalidTransactionState, SubscribedError
from .settings import Settings
from .transaction import Transaction, TransactionState

logger = logging.getLogger(__name__)

Value = Union[str, bytes, int, float]

_PUSHED_MESSAGES = (b"message", b"pmessage", b"smessage")

# Sent by Transaction itself; raw use would desync its state
_TRANSACTION_COMMANDS = frozenset({"MULTI", "EXEC", "DISCARD", "WATCH", "UNWATCH"})


class ConfigNamespace:
    """Server configuration namespace for CONFIG GET/SET."""

    def __init__(self, client: "Redwire"):
        self._client = client

    def get(self, parameter: str) -> str:
        """Get a configuration parameter, "" if unknown."""
        return self._client._call(CONFIG_VALUE, "CONFIG GET", parameter)

    def get_all(self, pattern: str = "*") -> Dict[str, str]:
        """Get every configuration parameter matching a glob pattern."""
        return self._client._call(PAIRS, "CONFIG GET", pattern)

    def set(self, parameter: str, value: Value) -> bool:
        """Set a configuration parameter."""
        return self._client._call(ACK, "CONFIG SET", parameter, value)


class Redwire:
    """
    Client for a key-value store speaking RESP2.

    The client is explicitly constructed and owned by the caller; share one
    instance between threads if needed. Commands are serialized on the
    connection, one round trip at a time.

        db = Redwire.connect("localhost", 6379)
        db = Redwire.from_url("redis://:secret@localhost:6379/1")
        db = Redwire(connection)            # bring your own transport

    With context manager:
        >>> with Redwire.connect() as db:
        ...     db.set("hello", "world")
        ...     db.rpush("queue", "job1", "job2")
        ...     db.hset("user:1", "name", "Alice")
    """

    def __init__(
        self,
        connection: Connection,
        encoding: str = "utf-8",
        encoding_errors: str = "strict",
    ):
        """
        Wrap an open connection.

        Args:
            connection: Connection the client takes ownership of
            encoding: Codec used to turn reply payloads into str
            encoding_errors: Error handler for that codec
        """
        self.connection = connection
        self.encoding = encoding
        self.encoding_errors = encoding_errors
        self.subscriptions: Set[str] = set()
        self._transaction: Optional[Transaction] = None

        self.config = ConfigNamespace(self)

    @classmethod
    def connect(
        cls,
        host: Optional[str] = None,
        port: Optional[int] = None,
        settings: Optional[Settings] = None,
        **kwargs,
    ) -> "Redwire":
        """
        Connect to a server.

        Unspecified options come from settings (default: Settings.from_env()).
        Extra keyword arguments are passed to redwire.connection.connect(),
        except encoding and encoding_errors which configure the client.
        """
        settings = settings or Settings.from_env()
        encoding = kwargs.pop("encoding", settings.ENCODING)
        encoding_errors = kwargs.pop("encoding_errors", "strict")
        options = settings.connect_kwargs()
        if host is not None:
            options["host"] = host
        if port is not None:
            options["port"] = port
        options.update(kwargs)
        return cls(connect(**options), encoding=encoding, encoding_errors=encoding_errors)

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "Redwire":
        """
        Connect using a URL: redis://[[username]:password@]host[:port][/db]

        Keyword arguments override values from the URL.
        """
        encoding = kwargs.pop("encoding", "utf-8")
        encoding_errors = kwargs.pop("encoding_errors", "strict")
        options = parse_url(url)
        options.update(kwargs)
        return cls(connect(**options), encoding=encoding, encoding_errors=encoding_errors)

    def __repr__(self) -> str:
        return f"<Redwire {self.connection!r}>"

    @property
    def closed(self) -> bool:
        return self.connection.closed

    def close(self) -> None:
        """Close the connection."""
        self.connection.close()

    def __enter__(self) -> "Redwire":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _decode(self, data: bytes) -> str:
        return data.decode(self.encoding, self.encoding_errors)

    def _in_multi(self) -> bool:
        tx = self._transaction
        return tx is not None and tx.state is TransactionState.QUEUED

    def _dispatch(self, kind: Optional[str], command: Command, timeout=_DEFAULT):
        with self.connection.lock:
            reply = self.connection.execute(command, timeout=timeout)
            # Only the thread holding the transaction can get here while it is
            # active, since the transaction holds the same lock.
            if self._in_multi():
                return self._transaction.queue(command, kind, reply)
        if kind is None:
            return check_error(reply)
        return interpret(kind, reply, self._decode)

    def _require_unsubscribed(self, name: str) -> None:
        # Pushed messages would be read as this command's reply
        if self.subscriptions:
            raise SubscribedError(
                f"Cannot send {name} while subscribed to {len(self.subscriptions)} channel(s)"
            )

    def _call(self, kind: str, name: str, *args):
        self._require_unsubscribed(name)
        return self._dispatch(kind, Command.build(name, *args))

    def execute_command(self, name: str, *args, timeout=_DEFAULT) -> Union[Reply, bool]:
        """
        Execute a raw command and return the undecoded reply.

        Args:
            name: Command name, e.g. "OBJECT ENCODING"
            args: Command arguments
            timeout: Deadline in seconds for this round trip; the
                connection's socket_timeout by default

        Returns:
            The reply, or True if the command was queued inside MULTI

        Raises:
            CommandError: The store returned an error reply
            SubscribedError: The client is subscribed to channels
            InvalidTransactionState: A transaction control command was sent
                while a transaction is active
        """
        command = Command.build(name, *args)
        self._require_unsubscribed(command.name)
        with self.connection.lock:
            control = command.name.partition(" ")[0] in _TRANSACTION_COMMANDS
            if control and self._transaction is not None:
                raise InvalidTransactionState(
                    f"Use the Transaction methods instead of sending {command.name}"
                )
            return self._dispatch(None, command, timeout=timeout)

    # =========================================================================
    # String Commands
    # =========================================================================

    def set(self, key: str, value: Value) -> bool:
        """Set the value of a key."""
        return self._call(ACK, "SET", key, value)

    def get(self, key: str) -> str:
        """Get the value of a key, "" if it does not exist."""
        return self._call(SCALAR, "GET", key)

    def incr(self, key: str) -> int:
        """Increment the integer value of a key by one, return the new value."""
        return self._call(COUNTER, "INCR", key)

    # =========================================================================
    # Key Commands
    # =========================================================================

    def delete(self, *keys: str) -> bool:
        """Delete keys. False if none of them existed."""
        if not keys:
            return False
        return self._call(POSITIVE, "DEL", *keys)

    def keys(self, pattern: str = "*") -> List[str]:
        """Find all keys matching a pattern."""
        return self._call(MEMBERS, "KEYS", pattern)

    def expire(self, key: str, seconds: int) -> bool:
        """Set a timeout on key in seconds. False if the key does not exist."""
        return self._call(ACK, "EXPIRE", key, seconds)

    def ttl(self, key: str) -> int:
        """Get the TTL of a key in seconds (-1 no expiry, -2 missing key)."""
        return self._call(COUNTER, "TTL", key)

    # =========================================================================
    # Hash Commands
    # =========================================================================

    def hset(self, key: str, field: str, value: Value) -> bool:
        """Set a hash field. False if the field already existed and was updated."""
        return self._call(ACK, "HSET", key, field, value)

    def hget(self, key: str, field: str) -> str:
        """Get the value of a hash field, "" if it does not exist."""
        return self._call(SCALAR, "HGET", key, field)

    def hdel(self, key: str, *fields: str) -> bool:
        """Delete hash fields. False if none of them existed."""
        if not fields:
            return False
        return self._call(POSITIVE, "HDEL", key, *fields)

    def hgetall(self, key: str) -> Dict[str, str]:
        """Get all fields and values of a hash, in server order."""
        return self._call(PAIRS, "HGETALL", key)

    # =========================================================================
    # List Commands
    # =========================================================================

    def lpush(self, key: str, *values: Value) -> int:
        """Push values to the head of a list, return the new length."""
        if not values:
            return 0
        return self._call(COUNTER, "LPUSH", key, *values)

    def rpush(self, key: str, *values: Value) -> int:
        """Push values to the tail of a list, return the new length."""
        if not values:
            return 0
        return self._call(COUNTER, "RPUSH", key, *values)

    def lpop(self, key: str) -> str:
        """Pop the head of a list, "" if the list is empty."""
        return self._call(SCALAR, "LPOP", key)

    def rpop(self, key: str) -> str:
        """Pop the tail of a list, "" if the list is empty."""
        return self._call(SCALAR, "RPOP", key)

    def lrange(self, key: str, start: int, stop: int) -> List[str]:
        """Get a range of elements from a list."""
        return self._call(MEMBERS, "LRANGE", key, start, stop)

    # =========================================================================
    # Set Commands
    # =========================================================================

    def sadd(self, key: str, *members: Value) -> bool:
        """Add members to a set. False if all of them were already present."""
        if not members:
            return False
        return self._call(POSITIVE, "SADD", key, *members)

    def srem(self, key: str, *members: Value) -> bool:
        """Remove members from a set. False if none of them were present."""
        if not members:
            return False
        return self._call(POSITIVE, "SREM", key, *members)

    def smembers(self, key: str) -> List[str]:
        """Get all members of a set."""
        return self._call(MEMBERS, "SMEMBERS", key)

    def sismember(self, key: str, member: Value) -> bool:
        """Check if a value is a member of a set."""
        return self._call(POSITIVE, "SISMEMBER", key, member)

    # =========================================================================
    # Sorted Set Commands
    # =========================================================================

    def zadd(self, key: str, score: float, member: Value) -> bool:
        """Add a member with a score. False if the member was already present."""
        return self._call(POSITIVE, "ZADD", key, float(score), member)

    def zrange(self, key: str, start: int, stop: int) -> List[str]:
        """Get members by rank, lowest score first."""
        return self._call(MEMBERS, "ZRANGE", key, start, stop)

    def zrem(self, key: str, *members: Value) -> bool:
        """Remove members from a sorted set. False if none of them were present."""
        if not members:
            return False
        return self._call(POSITIVE, "ZREM", key, *members)

    def zscore(self, key: str, member: Value) -> float:
        """Get the score of a member, 0.0 if it is not in the set."""
        return self._call(SCORE, "ZSCORE", key, member)

    # =========================================================================
    # Transactions
    # =========================================================================

    def transaction(self) -> Transaction:
        """
        Create a transaction scope for WATCH/MULTI/EXEC.

        Use the result as a context manager; other threads' commands wait
        until it exits.
        """
        return Transaction(self)

    # =========================================================================
    # Publish/Subscribe
    # =========================================================================

    def publish(self, channel: str, message: Value) -> int:
        """Publish a message, return the number of subscribers that got it."""
        return self._call(COUNTER, "PUBLISH", channel, message)

    def _subscription_ack(self, name: str, channel: str) -> bool:
        command = Command.build(name, channel)
        with self.connection.lock:
            if self._in_multi():
                return self._dispatch(PUBSUB_ACK, command)
            reply = check_error(self.connection.execute(command))
            # Messages for channels already subscribed may arrive first
            while _is_pushed_message(reply):
                logger.debug(f"Dropping pushed message while waiting for {name} ack")
                reply = check_error(self.connection.read_reply())
            ok = interpret(PUBSUB_ACK, reply, self._decode)
            if ok and name == "SUBSCRIBE":
                self.subscriptions.add(channel)
            elif ok:
                self.subscriptions.discard(channel)
        return ok

    def subscribe(self, channel: str) -> bool:
        """Subscribe to a channel (acknowledgement only, no message delivery)."""
        return self._subscription_ack("SUBSCRIBE", channel)

    def unsubscribe(self, channel: str) -> bool:
        """Unsubscribe from a channel."""
        return self._subscription_ack("UNSUBSCRIBE", channel)

    # =========================================================================
    # Server Commands
    # =========================================================================

    def info(self, section: Optional[str] = None) -> str:
        """Get server information as the raw INFO text."""
        if section is None:
            return self._call(SCALAR, "INFO")
        return self._call(SCALAR, "INFO", section)

    def flushdb(self) -> bool:
        """Delete all keys in the current database."""
        return self._call(ACK, "FLUSHDB")

    def flushall(self) -> bool:
        """Delete all keys in all databases."""
        return self._call(ACK, "FLUSHALL")


def _is_pushed_message(reply: Reply) -> bool:
    if not isinstance(reply, Array) or not reply.items:
        return False
    head = reply.items[0]
    return isinstance(head, BulkString) and head.data in _PUSHED_MESSAGES
