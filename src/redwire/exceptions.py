"""Exception hierarchy for redwire."""


class RedwireError(Exception):
    """Base class for all redwire errors."""

    pass


class ConnectionError(RedwireError):
    """Could not establish a connection to the store."""

    pass


class ConnectionLost(RedwireError):
    """The transport closed, broke or timed out mid-operation.

    The connection is unusable afterwards.
    """

    pass


class ProtocolError(RedwireError):
    """A reply could not be framed, or had a shape the command never returns."""

    pass


class CommandError(RedwireError):
    """The store answered with an error reply."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        head = message.split(" ", 1)[0]
        self.code = head if head.isupper() else "ERR"


class InvalidTransactionState(RedwireError):
    """Transaction method called in a state that does not allow it."""

    pass


class DataError(RedwireError):
    """An argument cannot be encoded as a command argument."""

    pass


class SubscribedError(RedwireError):
    """Command refused because the connection is subscribed to channels.

    A subscribed connection only accepts SUBSCRIBE and UNSUBSCRIBE until
    every channel is unsubscribed.
    """

    pass
