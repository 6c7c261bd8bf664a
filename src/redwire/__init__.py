"""
Redwire - typed client for RESP key-value stores.

One connection, one command at a time, typed results:
    >>> db = Redwire.connect("localhost", 6379)
    >>> db = Redwire.from_url("redis://localhost:6379/0")

    >>> db.set("key", "value")
    True
    >>> db.get("key")
    'value'
    >>> db.get("missing")
    ''
    >>> db.close()

Optimistic locking:
    >>> with db.transaction() as tx:
    ...     tx.watch("counter")
    ...     tx.multi()
    ...     db.incr("counter")
    ...     results = tx.exec()      # None if "counter" changed meanwhile
"""

from .client import ConfigNamespace, Redwire
from .connection import Connection, ConnectionState, connect, parse_url
from .exceptions import (
    CommandError,
    ConnectionError,
    ConnectionLost,
    DataError,
    InvalidTransactionState,
    ProtocolError,
    RedwireError,
    SubscribedError,
)
from .settings import Settings
from .transaction import Transaction, TransactionState

__all__ = [
    "Redwire",
    "ConfigNamespace",
    "Connection",
    "ConnectionState",
    "connect",
    "parse_url",
    "Settings",
    "Transaction",
    "TransactionState",
    "RedwireError",
    "ConnectionError",
    "ConnectionLost",
    "ProtocolError",
    "CommandError",
    "InvalidTransactionState",
    "SubscribedError",
    "DataError",
]
__version__ = "0.1.0"
