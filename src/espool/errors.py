"""
Exception classes for espool.

Statement failures are not wrapped: they surface as the driver's own
exceptions (``psycopg.Error``), re-exported here as ``StatementError``.
The classes below cover the transaction lifecycle and the scope.

A caller of ``within_transaction`` receives exactly one exception per call.
A unit of work that failed and a unit of work that succeeded but could not
be committed are told apart only by type (``CommitError`` /
``RollbackError`` vs. whatever the unit of work raised).
"""

import psycopg

StatementError = psycopg.Error


class EsPoolError(Exception):
    """Base exception for espool errors."""

    pass


class TransactionOpenError(EsPoolError):
    """Raised when the pool cannot begin a transaction."""

    pass


class TransactionFinalizeError(EsPoolError):
    """Raised when commit or rollback fails for a reason other than an already closed transaction.

    ``__cause__`` is the driver error. ``original`` is the exception the unit
    of work raised, when it raised one.
    """

    def __init__(self, message: str, original: BaseException | None = None):
        self.original = original
        super().__init__(message)


class CommitError(TransactionFinalizeError):
    """Raised when committing a transaction fails."""

    pass


class RollbackError(TransactionFinalizeError):
    """Raised when rolling back a transaction fails."""

    pass


class TxClosedError(EsPoolError):
    """Raised by commit/rollback on a transaction that is already finalized or broken."""

    def __init__(self, message: str = "transaction is already closed"):
        super().__init__(message)


class CancellationError(EsPoolError):
    """Raised when a scope is cancelled or its deadline passes while work is pending."""

    def __init__(self, message: str = "scope cancelled", deadline_exceeded: bool = False):
        self.deadline_exceeded = deadline_exceeded
        super().__init__(message)


class NoRowsError(EsPoolError):
    """Raised by ``Row.scan`` when the query returned no rows."""

    def __init__(self, message: str = "no rows in result set"):
        super().__init__(message)
