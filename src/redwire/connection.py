"""
Connection handling for redwire.

A Connection owns one socket to the store and is the only thing that writes
to or reads from it. Commands go out one at a time: each call to execute()
holds the connection lock from the first request byte to the last reply
byte, because replies carry no request identifier.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

from ._replies import check_error
from ._resp import Command, Reply, Status, decode, encode
from .exceptions import ConnectionError, ConnectionLost, ProtocolError, RedwireError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 6379

# Sentinel: use the connection's socket_timeout
_DEFAULT = object()


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    CLOSED = "closed"


class Connection:
    """
    A single transport to the store.

    Args:
        sock: Connected socket (or socket-like object with sendall(),
            settimeout(), makefile() and close()). If omitted, attach()
            must be called before use.
        socket_timeout: Default deadline in seconds for each round trip.
            None waits forever.
        description: Human readable endpoint used in errors and logs
    """

    def __init__(
        self,
        sock=None,
        socket_timeout: Optional[float] = None,
        description: str = "<socket>",
    ):
        self.lock = threading.RLock()
        self.socket_timeout = socket_timeout
        self.description = description
        self.state = ConnectionState.DISCONNECTED
        self._sock = None
        self._reader = None
        if sock is not None:
            self.attach(sock)

    def __repr__(self) -> str:
        return f"<Connection {self.description} {self.state.value}>"

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    def attach(self, sock) -> None:
        """Take ownership of a connected socket."""
        with self.lock:
            if self.state is not ConnectionState.DISCONNECTED:
                raise RedwireError(f"Connection is already {self.state.value}")
            self._sock = sock
            self._reader = sock.makefile("rb")
            self.state = ConnectionState.CONNECTED

    def execute(self, command: Command, timeout=_DEFAULT) -> Reply:
        """
        Send one command and read its reply.

        Args:
            command: Command to send
            timeout: Deadline in seconds for this round trip. Defaults to
                socket_timeout; None waits forever.

        Returns:
            The decoded reply. Error replies are returned, not raised.

        Raises:
            ConnectionLost: The connection is closed, broke, or the deadline
                expired. The connection is unusable afterwards.
            ProtocolError: The reply was malformed. The connection is
                unusable afterwards.
        """
        logger.debug(f"Sending {command.name} to {self.description}")
        return self._round_trip(encode(command), command.name, timeout)

    def read_reply(self, timeout=_DEFAULT) -> Reply:
        """Read one reply without sending a command first (pushed messages)."""
        return self._round_trip(None, "pushed message", timeout)

    def _round_trip(self, payload: Optional[bytes], what: str, timeout) -> Reply:
        if timeout is _DEFAULT:
            timeout = self.socket_timeout
        with self.lock:
            if self.state is not ConnectionState.CONNECTED:
                raise ConnectionLost(f"Connection to {self.description} is closed")
            try:
                self._sock.settimeout(timeout)
                if payload is not None:
                    self._sock.sendall(payload)
                return decode(self._reader)
            except socket.timeout as exc:
                self._invalidate(f"timed out after {timeout}s")
                raise ConnectionLost(
                    f"Timed out waiting for {what} from {self.description}"
                ) from exc
            except OSError as exc:
                self._invalidate(str(exc))
                raise ConnectionLost(
                    f"Error while talking to {self.description}: {exc}"
                ) from exc
            except (ConnectionLost, ProtocolError) as exc:
                self._invalidate(str(exc))
                raise
            except BaseException as exc:
                # Interrupted mid-frame: the rest of the reply is still unread
                self._invalidate(f"{type(exc).__name__} while reading {what}")
                raise

    def _invalidate(self, reason: str) -> None:
        # Protocol position is unknown after a partial exchange
        logger.warning(f"Connection to {self.description} invalidated: {reason}")
        self._release()

    def _release(self) -> None:
        self.state = ConnectionState.CLOSED
        reader, sock = self._reader, self._sock
        self._reader = None
        self._sock = None
        for resource in (reader, sock):
            if resource is None:
                continue
            try:
                resource.close()
            except OSError as exc:
                logger.debug(f"Ignoring error closing {self.description}: {exc}")

    def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        with self.lock:
            if self.state is ConnectionState.CLOSED:
                return
            logger.debug(f"Closing connection to {self.description}")
            self._release()


def _handshake(connection: Connection, command: Command) -> None:
    reply = check_error(connection.execute(command))
    if reply != Status("OK"):
        raise ProtocolError(f"Unexpected reply to {command.name}: {reply!r}")


def connect(
    host: str = "127.0.0.1",
    port: int = DEFAULT_PORT,
    *,
    db: int = 0,
    username: Optional[str] = None,
    password: Optional[str] = None,
    socket_timeout: Optional[float] = None,
    connect_timeout: Optional[float] = None,
) -> Connection:
    """
    Open a connection to the store, authenticated and on the right database.

    Args:
        host: Server host
        port: Server port
        db: Database index to SELECT (0 skips the SELECT)
        username: ACL user name, sent with AUTH when a password is given
        password: Password for AUTH
        socket_timeout: Default per-command deadline in seconds
        connect_timeout: Deadline for establishing the TCP connection

    Raises:
        ConnectionError: The connection or its handshake failed. Not retried.
    """
    description = f"{host}:{port}"
    try:
        sock = socket.create_connection((host, port), timeout=connect_timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as exc:
        raise ConnectionError(f"Error connecting to {description}: {exc}") from exc

    connection = Connection(sock, socket_timeout=socket_timeout, description=description)
    try:
        if password is not None:
            credentials = (username, password) if username else (password,)
            _handshake(connection, Command.build("AUTH", *credentials))
        if db:
            _handshake(connection, Command.build("SELECT", db))
    except RedwireError as exc:
        connection.close()
        raise ConnectionError(
            f"Error initializing connection to {description}: {exc}"
        ) from exc

    logger.debug(f"Connected to {description} (db={db})")
    return connection


def parse_url(url: str) -> Dict[str, Any]:
    """
    Parse a redis:// URL into connect() keyword arguments.

    Format: redis://[[username]:password@]host[:port][/db]

    Examples:
        >>> parse_url("redis://localhost:6380/2")
        {'host': 'localhost', 'port': 6380, 'db': 2, 'username': None, 'password': None}
    """
    parsed = urlparse(url)
    if parsed.scheme == "rediss":
        raise ValueError("TLS connections (rediss://) are not supported")
    if parsed.scheme != "redis":
        raise ValueError(f"Unsupported URL scheme {parsed.scheme!r}, expected redis://")

    path = parsed.path.lstrip("/")
    try:
        db = int(path) if path else 0
    except ValueError:
        raise ValueError(f"Invalid database index in URL: {path!r}") from None

    return {
        "host": parsed.hostname or "127.0.0.1",
        "port": parsed.port or DEFAULT_PORT,
        "db": db,
        "username": unquote(parsed.username) if parsed.username else None,
        "password": unquote(parsed.password) if parsed.password else None,
    }
