"""
Transaction lifecycle.

``within_transaction_with_options`` opens a transaction, runs a unit of work
with a scope that carries it, then commits when the unit of work returns or
rolls back when it raises. Any statement the unit of work issues through an
``EsPool`` with that scope runs inside the transaction.

A unit of work that returns normally can still fail the call: when commit
fails (for any reason other than the transaction being already closed) the
``CommitError`` replaces the successful outcome. Likewise a failed rollback
raises ``RollbackError`` in place of the unit of work's own exception, which
remains available as ``RollbackError.original``. The driver error is the
``__cause__`` of both.
"""

from typing import Awaitable, Callable, Protocol, TypeVar

from espool.config.logging_config import get_logger
from espool.errors import (
    CommitError,
    RollbackError,
    TransactionFinalizeError,
    TransactionOpenError,
    TxClosedError,
)
from espool.runtime.scope import Scope
from espool.runtime.tx_context import inject_tx
from espool.runtime.types import Transaction, TransactionInitiator, TxOptions

log = get_logger(__name__)

T = TypeVar("T")

TxFunc = Callable[[Scope], Awaitable[T]]


class Transactor(Protocol):
    """Runs units of work inside a transaction."""

    async def within_transaction(self, scope: Scope, tx_func: TxFunc[T]) -> T: ...

    async def within_transaction_with_options(self, scope: Scope, tx_func: TxFunc[T], options: TxOptions) -> T: ...


async def _finalize(
    action: Callable[[Scope], Awaitable[None]],
    scope: Scope,
    name: str,
    error_cls: type[TransactionFinalizeError],
    original: BaseException | None = None,
) -> None:
    try:
        await action(scope)
    except TxClosedError:
        log.debug(f"Transaction already closed before {name}")
    except TransactionFinalizeError:
        raise
    except Exception as e:
        log.warning(f"Transaction {name} failed: {e}")
        raise error_cls(f"transaction {name} failed: {e}", original=original) from e


async def within_transaction(scope: Scope, initiator: TransactionInitiator, tx_func: TxFunc[T]) -> T:
    """Run ``tx_func`` inside a transaction opened with the server's default options."""
    return await within_transaction_with_options(scope, initiator, tx_func, TxOptions())


async def within_transaction_with_options(
    scope: Scope,
    initiator: TransactionInitiator,
    tx_func: TxFunc[T],
    options: TxOptions,
) -> T:
    """Run ``tx_func`` inside a transaction opened with ``options``.

    Args:
        scope: Scope the transaction is opened (and finalized) with
        initiator: Anything exposing ``begin_tx``, normally the pool
        tx_func: Unit of work; receives a scope carrying the transaction
        options: Isolation level, access mode and deferrable mode

    Returns:
        Whatever ``tx_func`` returned

    Raises:
        TransactionOpenError: the transaction could not be opened
        CommitError: ``tx_func`` succeeded but commit failed
        RollbackError: ``tx_func`` raised and rollback failed
    """
    try:
        tx: Transaction = await initiator.begin_tx(scope, options)
    except Exception as e:
        raise TransactionOpenError(f"failed to begin transaction: {e}") from e

    try:
        result = await tx_func(inject_tx(scope, tx))
    except Exception as e:
        await _finalize(tx.rollback, scope, "rollback", RollbackError, original=e)
        raise
    except BaseException:
        # Task cancellation and interpreter exits still release the transaction
        try:
            await tx.rollback(scope)
        except TxClosedError:
            pass
        except Exception as e:
            log.warning(f"Transaction rollback failed while unwinding: {e}")
        raise

    await _finalize(tx.commit, scope, "commit", CommitError)
    return result

