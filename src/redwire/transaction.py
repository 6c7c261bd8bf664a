"""
Optimistic-locking transactions (WATCH/MULTI/EXEC/DISCARD).

A Transaction is scoped to one logical watch -> multi -> exec sequence. While
it is active it holds the connection lock, so commands from other threads
cannot land inside it:

    with client.transaction() as tx:
        tx.watch("balance")
        balance = int(client.get("balance") or 0)
        tx.multi()
        client.set("balance", balance + 10)    # True: queued by the store
        results = tx.exec()                    # [True], or None if aborted
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, List, Optional, Set, Tuple

from ._replies import check_error, interpret
from ._resp import Array, Command, Error, Reply, Status
from .exceptions import CommandError, InvalidTransactionState, ProtocolError

if TYPE_CHECKING:
    from .client import Redwire

logger = logging.getLogger(__name__)

OK = Status("OK")
QUEUED = Status("QUEUED")


class TransactionState(Enum):
    IDLE = "idle"
    WATCHING = "watching"
    QUEUED = "queued"


class Transaction:
    """
    WATCH/MULTI/EXEC state machine for one client.

    Attributes:
        state: Current TransactionState
        watched_keys: Keys watched since the last EXEC/DISCARD/UNWATCH
        pending: (command, kind) for every command queued since MULTI
        aborted: True if the last exec() found a watched key modified
    """

    def __init__(self, client: "Redwire"):
        self._client = client
        self._active = False
        self.state = TransactionState.IDLE
        self.watched_keys: Set[Any] = set()
        self.pending: List[Tuple[Command, Optional[str]]] = []
        self.aborted = False

    def __repr__(self) -> str:
        return f"<Transaction {self.state.value} pending={len(self.pending)}>"

    def __enter__(self) -> "Transaction":
        lock = self._client.connection.lock
        lock.acquire()
        if self._client._transaction is not None:
            lock.release()
            raise InvalidTransactionState(
                "Another transaction is already active on this client"
            )
        self._client._transaction = self
        self._active = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        try:
            # A subscribed connection refuses DISCARD and UNWATCH
            if not self._client.connection.closed and not self._client.subscriptions:
                if self.state is TransactionState.QUEUED:
                    self.discard()
                elif self.state is TransactionState.WATCHING:
                    self.unwatch()
        finally:
            self._reset()
            self._active = False
            self._client._transaction = None
            self._client.connection.lock.release()

    def _require_active(self) -> None:
        if not self._active:
            raise InvalidTransactionState(
                "Transaction is not active; use it as a context manager"
            )

    def _reset(self) -> None:
        self.state = TransactionState.IDLE
        self.watched_keys = set()
        self.pending = []

    def _send(self, name: str, *args) -> Reply:
        self._client._require_unsubscribed(name)
        return check_error(self._client.connection.execute(Command.build(name, *args)))

    def _send_expecting_ok(self, name: str, *args) -> None:
        reply = self._send(name, *args)
        if reply != OK:
            raise ProtocolError(f"Unexpected reply to {name}: {reply!r}")

    def watch(self, *keys) -> bool:
        """Watch keys; EXEC aborts if any of them changes before it runs."""
        self._require_active()
        if self.state is TransactionState.QUEUED:
            raise InvalidTransactionState("WATCH inside MULTI is not allowed")
        if not keys:
            raise ValueError("watch() requires at least one key")
        self._send_expecting_ok("WATCH", *keys)
        self.watched_keys.update(keys)
        self.state = TransactionState.WATCHING
        logger.debug(f"Watching {len(self.watched_keys)} key(s)")
        return True

    def unwatch(self) -> bool:
        """Forget all watched keys."""
        self._require_active()
        if self.state is not TransactionState.WATCHING:
            raise InvalidTransactionState(f"UNWATCH while {self.state.value}")
        try:
            self._send_expecting_ok("UNWATCH")
        finally:
            self._reset()
        return True

    def multi(self) -> bool:
        """Start queuing commands."""
        self._require_active()
        if self.state is TransactionState.QUEUED:
            raise InvalidTransactionState("MULTI calls can not be nested")
        self._send_expecting_ok("MULTI")
        self.state = TransactionState.QUEUED
        self.pending = []
        self.aborted = False
        logger.debug("Transaction started")
        return True

    def queue(self, command: Command, kind: Optional[str], reply: Reply) -> bool:
        """
        Record a command the store acknowledged with QUEUED.

        Called by the client for every command sent while in MULTI. The
        command's real result is only known after exec().
        """
        check_error(reply)
        if reply != QUEUED:
            raise ProtocolError(f"Expected QUEUED for {command.name}, got {reply!r}")
        self.pending.append((command, kind))
        return True

    def exec(self) -> Optional[List[Any]]:
        """
        Execute the queued commands.

        Returns:
            One result per queued command, projected like the operation that
            queued it. An element that failed at execution time is a
            CommandError instance. None if a watched key was modified and
            nothing was applied.

        Raises:
            InvalidTransactionState: Not in MULTI
            CommandError: The store refused the whole transaction
        """
        self._require_active()
        if self.state is not TransactionState.QUEUED:
            raise InvalidTransactionState("EXEC without MULTI")
        pending = self.pending
        try:
            reply = self._send("EXEC")
        finally:
            self._reset()

        if reply == Array(None):
            self.aborted = True
            logger.warning(
                f"Transaction aborted: a watched key changed ({len(pending)} command(s) dropped)"
            )
            return None
        if not isinstance(reply, Array):
            raise ProtocolError(f"Unexpected reply to EXEC: {reply!r}")
        if len(reply.items) != len(pending):
            raise ProtocolError(
                f"EXEC returned {len(reply.items)} results for {len(pending)} commands"
            )

        results = []
        for (command, kind), item in zip(pending, reply.items):
            if isinstance(item, Error):
                results.append(CommandError(item.text))
            elif kind is None:
                results.append(item)
            else:
                results.append(interpret(kind, item, self._client._decode))
        logger.debug(f"Transaction committed {len(results)} command(s)")
        return results

    def discard(self) -> bool:
        """Drop queued commands, or release watches if MULTI was not sent."""
        self._require_active()
        if self.state is TransactionState.IDLE:
            raise InvalidTransactionState("DISCARD without MULTI")
        if self.state is TransactionState.WATCHING:
            return self.unwatch()
        try:
            self._send_expecting_ok("DISCARD")
        finally:
            self._reset()
        logger.debug("Transaction discarded")
        return True
