"""Tests for the transaction lifecycle (open, run, commit or roll back)."""

import asyncio

import psycopg
import pytest

from espool.errors import CommitError, RollbackError, TransactionOpenError, TxClosedError
from espool.runtime.scope import Scope
from espool.runtime.tx_context import extract_tx
from espool.runtime.types import AccessMode, IsoLevel, TxOptions
from espool.transactor import within_transaction, within_transaction_with_options


class UnitOfWorkError(Exception):
    pass


@pytest.mark.asyncio
async def test_commits_when_unit_of_work_succeeds(pool, db, scope):
    async def tx_func(tx_scope: Scope) -> str:
        assert extract_tx(tx_scope) is pool.transactions[0]
        return "done"

    result = await within_transaction(scope, pool, tx_func)

    assert result == "done"
    tx = pool.transactions[0]
    assert tx.commit_calls == 1
    assert tx.rollback_calls == 0
    assert db.events == ["begin", "commit"]


@pytest.mark.asyncio
async def test_rolls_back_and_reraises_when_unit_of_work_fails(pool, db, scope):
    async def tx_func(tx_scope: Scope) -> None:
        raise UnitOfWorkError("boom")

    with pytest.raises(UnitOfWorkError, match="boom"):
        await within_transaction(scope, pool, tx_func)

    tx = pool.transactions[0]
    assert tx.rollback_calls == 1
    assert tx.commit_calls == 0
    assert db.events == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_outer_scope_is_not_modified(pool, scope):
    async def tx_func(tx_scope: Scope) -> None:
        assert extract_tx(tx_scope) is not None

    await within_transaction(scope, pool, tx_func)

    assert extract_tx(scope) is None


@pytest.mark.asyncio
async def test_begin_failure_raises_transaction_open_error(pool, scope):
    pool.begin_error = psycopg.OperationalError("connection refused")
    called = False

    async def tx_func(tx_scope: Scope) -> None:
        nonlocal called
        called = True

    with pytest.raises(TransactionOpenError) as exc_info:
        await within_transaction(scope, pool, tx_func)

    assert isinstance(exc_info.value.__cause__, psycopg.OperationalError)
    assert not called


@pytest.mark.asyncio
async def test_cancelled_scope_cannot_open_transaction(pool, scope):
    cancelled, cancel = scope.with_cancel()
    cancel()

    async def tx_func(tx_scope: Scope) -> None:
        pass

    with pytest.raises(TransactionOpenError):
        await within_transaction(cancelled, pool, tx_func)
    assert pool.transactions == []


@pytest.mark.asyncio
async def test_commit_failure_overrides_successful_unit_of_work(pool, scope):
    commit_failure = psycopg.errors.SerializationFailure("could not serialize access")
    pool.on_begin = lambda tx: setattr(tx, "commit_error", commit_failure)

    async def tx_func(tx_scope: Scope) -> None:
        return None

    with pytest.raises(CommitError) as exc_info:
        await within_transaction(scope, pool, tx_func)

    assert exc_info.value.__cause__ is commit_failure
    assert exc_info.value.original is None


@pytest.mark.asyncio
async def test_rollback_failure_overrides_unit_of_work_error(pool, scope):
    rollback_failure = psycopg.OperationalError("server closed the connection")
    pool.on_begin = lambda tx: setattr(tx, "rollback_error", rollback_failure)

    async def tx_func(tx_scope: Scope) -> None:
        raise UnitOfWorkError("original")

    with pytest.raises(RollbackError) as exc_info:
        await within_transaction(scope, pool, tx_func)

    assert exc_info.value.__cause__ is rollback_failure
    assert isinstance(exc_info.value.original, UnitOfWorkError)
    assert str(exc_info.value.original) == "original"


@pytest.mark.asyncio
async def test_early_commit_inside_unit_of_work_is_not_masked(pool, scope):
    async def tx_func(tx_scope: Scope) -> str:
        await extract_tx(tx_scope).commit(tx_scope)
        return "committed early"

    assert await within_transaction(scope, pool, tx_func) == "committed early"
    tx = pool.transactions[0]
    assert tx.commit_calls == 2


@pytest.mark.asyncio
async def test_early_rollback_keeps_unit_of_work_error(pool, scope):
    async def tx_func(tx_scope: Scope) -> None:
        await extract_tx(tx_scope).rollback(tx_scope)
        raise UnitOfWorkError("after rollback")

    with pytest.raises(UnitOfWorkError, match="after rollback"):
        await within_transaction(scope, pool, tx_func)
    assert pool.transactions[0].rollback_calls == 2


@pytest.mark.asyncio
async def test_task_cancellation_rolls_back_before_propagating(pool, db, scope):
    started = asyncio.Event()

    async def tx_func(tx_scope: Scope) -> None:
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(within_transaction(scope, pool, tx_func))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert db.events == ["begin", "rollback"]


@pytest.mark.asyncio
async def test_rollback_failure_while_unwinding_keeps_cancellation(pool, scope):
    pool.on_begin = lambda tx: setattr(tx, "rollback_error", psycopg.OperationalError("gone"))
    started = asyncio.Event()

    async def tx_func(tx_scope: Scope) -> None:
        started.set()
        await asyncio.sleep(10)

    task = asyncio.create_task(within_transaction(scope, pool, tx_func))
    await started.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task


@pytest.mark.asyncio
async def test_options_are_passed_to_begin(pool, db, scope):
    options = TxOptions(iso_level=IsoLevel.SERIALIZABLE, access_mode=AccessMode.READ_ONLY)

    async def tx_func(tx_scope: Scope) -> None:
        pass

    await within_transaction_with_options(scope, pool, tx_func, options)

    assert pool.options == [options]
    assert db.events[0] == "begin isolation level serializable read only"


@pytest.mark.asyncio
async def test_already_closed_commit_error_is_swallowed(pool, scope):
    pool.on_begin = lambda tx: setattr(tx, "commit_error", TxClosedError())

    async def tx_func(tx_scope: Scope) -> int:
        return 7

    assert await within_transaction(scope, pool, tx_func) == 7
