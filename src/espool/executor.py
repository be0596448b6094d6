"""
Scope-aware statement executor.

``EsPool`` is what repositories hold. Every statement call looks at the
scope it was given: when the scope carries a transaction (because the call
is nested inside ``within_transaction``), the statement runs on that
transaction, otherwise on the pool. The lookup is repeated for every call,
so one unit of work can mix statements on the transaction (the inner scope)
with statements on the pool (an outer scope it kept hold of).

Example:
    executor = await EsPool.connect()

    async def create_order(scope: Scope) -> None:
        await executor.execute(scope, "insert into payment values (%s, %s)", 123, 12500)
        await executor.execute(scope, "insert into orders values (%s, %s)", 123, 105)

    await executor.within_transaction(Scope.background(), create_order)
"""

from typing import Any, Optional, Sequence, TypeVar

from espool.observability.tracing import BATCH_DESCRIPTOR, NilTracer, Tracer
from espool.runtime.db_postgres import PostgresConnectionPool
from espool.runtime.scope import Scope
from espool.runtime.tx_context import extract_tx
from espool.runtime.types import (
    Batch,
    BatchResults,
    CommandTag,
    CopySource,
    Pool,
    QueryRunner,
    Row,
    Rows,
    TableIdentifier,
    Transaction,
    TxOptions,
)
from espool.transactor import TxFunc, within_transaction, within_transaction_with_options

T = TypeVar("T")


class EsPool:
    """Statement executor that routes each call to the scope's transaction or to the pool.

    Instances are immutable once built: ``with_tracer`` returns a new
    executor, so one instance can be shared freely between tasks.
    """

    def __init__(self, pool: Pool, tracer: Optional[Tracer] = None):
        self._pool = pool
        self._tracer: Tracer = tracer if tracer is not None else NilTracer()

    @classmethod
    async def connect(
        cls,
        conninfo: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> "EsPool":
        """Build an executor on the shared pool for ``conninfo`` (default: from the environment)."""
        pool = await PostgresConnectionPool.get_shared(conninfo, min_size, max_size)
        return cls(pool)

    def with_tracer(self, tracer: Tracer) -> "EsPool":
        """Return an executor on the same pool that traces statements with ``tracer``."""
        return EsPool(self._pool, tracer)

    @property
    def pool(self) -> Pool:
        return self._pool

    @property
    def tracer(self) -> Tracer:
        return self._tracer

    def runner(self, scope: Scope) -> QueryRunner:
        """Return the transaction carried by ``scope``, or the pool when there is none."""
        tx = extract_tx(scope)
        if tx is not None:
            return tx
        return self._pool

    async def execute(self, scope: Scope, sql: str, *args: Any) -> CommandTag:
        finish = self._tracer.trace_data(sql)
        try:
            return await self.runner(scope).execute(scope, sql, *args)
        finally:
            finish()

    async def query(self, scope: Scope, sql: str, *args: Any) -> Rows:
        """Run ``sql`` and return its rows; the caller must drain or close them."""
        finish = self._tracer.trace_data(sql)
        try:
            return await self.runner(scope).query(scope, sql, *args)
        finally:
            finish()

    async def query_row(self, scope: Scope, sql: str, *args: Any) -> Row:
        """Run ``sql`` for a single row. Failures surface from ``Row.scan()``."""
        finish = self._tracer.trace_data(sql)
        try:
            return await self.runner(scope).query_row(scope, sql, *args)
        finally:
            finish()

    async def begin(self, scope: Scope) -> Transaction:
        """Begin a transaction by hand (a savepoint when ``scope`` already carries one)."""
        return await self.runner(scope).begin(scope)

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults:
        finish = self._tracer.trace_data(BATCH_DESCRIPTOR)
        try:
            return await self.runner(scope).send_batch(scope, batch)
        finally:
            finish()

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int:
        """Bulk load ``source`` rows into ``table`` with COPY. Not traced."""
        return await self.runner(scope).copy_from(scope, table, columns, source)

    async def within_transaction(self, scope: Scope, tx_func: TxFunc[T]) -> T:
        """Run ``tx_func`` in a new transaction with default options."""
        return await within_transaction(scope, self._pool, tx_func)

    async def within_transaction_with_options(self, scope: Scope, tx_func: TxFunc[T], options: TxOptions) -> T:
        """Run ``tx_func`` in a new transaction opened with ``options``."""
        return await within_transaction_with_options(scope, self._pool, tx_func, options)
