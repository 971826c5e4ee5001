"""Error types raised by the termbench engine."""


class TermbenchError(Exception):
    """Base class for all termbench errors."""


class NotEditable(TermbenchError):
    """Edit or row action attempted without a resolved identity key."""


class TypeCoercionError(TermbenchError):
    """Proposed cell value cannot be coerced to the column's declared type."""

    def __init__(self, message, column=None, value=None):
        super().__init__(message)
        self.column = column
        self.value = value


class NullNotConfirmed(TypeCoercionError):
    """NULL proposed for a non-nullable column without explicit confirmation."""


class WriteConflict(TermbenchError):
    """Re-select after a write matched zero or several rows.

    The transaction has been rolled back and the result set is stale.
    """

    def __init__(self, message, matched=0):
        super().__init__(message)
        self.matched = matched


class ConstraintViolation(TermbenchError):
    """The server rejected a generated statement.

    ``server_message`` carries the raw driver message.
    """

    def __init__(self, server_message):
        super().__init__(server_message)
        self.server_message = server_message


class SessionConnectionError(TermbenchError):
    """Session-level failure: network, authentication or server restart."""


class ConsistencyError(TermbenchError):
    """Reconciliation found zero or several buffered rows for an identity."""


class ResultSetError(TermbenchError):
    """Invalid operation against the result buffer."""


class SessionBusy(TermbenchError):
    """The session is owned by a running query."""
