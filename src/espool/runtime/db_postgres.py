"""
PostgreSQL pool and transactions on top of psycopg 3.

``PostgresConnectionPool`` runs each statement on a connection borrowed for
that statement alone (connections are in autocommit mode). ``begin_tx``
checks a connection out for the lifetime of a ``PostgresTransaction``, which
exposes the same statement surface and returns the connection on commit or
rollback.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, ClassVar, Dict, Optional, Sequence

from psycopg import AsyncConnection, AsyncCursor, sql
from psycopg_pool import AsyncConnectionPool

from espool.config.environment import Environment
from espool.config.logging_config import get_logger
from espool.errors import CancellationError, CommitError, TxClosedError
from espool.runtime.scope import Scope
from espool.runtime.types import (
    Batch,
    BatchResult,
    BatchResults,
    CommandTag,
    CopySource,
    Row,
    Rows,
    TableIdentifier,
    TxOptions,
)

log = get_logger(__name__)

Release = Callable[[AsyncConnection], Awaitable[None]]


def _params(args: Sequence[Any]) -> Optional[Sequence[Any]]:
    # No params means psycopg leaves literal '%' in the query alone
    return tuple(args) if args else None


def _command_tag(cur: AsyncCursor) -> CommandTag:
    return CommandTag(status=cur.statusmessage or "", rows_affected=max(cur.rowcount, 0))


def _table_identifier(table: TableIdentifier) -> sql.Identifier:
    if isinstance(table, str):
        return sql.Identifier(table)
    return sql.Identifier(*table)


async def _execute(scope: Scope, conn: AsyncConnection, query: str, args: Sequence[Any]) -> CommandTag:
    cur = await scope.run(conn.execute(query, _params(args)))
    return _command_tag(cur)


async def _open_cursor(scope: Scope, conn: AsyncConnection, query: str, args: Sequence[Any]) -> AsyncCursor:
    cur = conn.cursor()
    try:
        await scope.run(cur.execute(query, _params(args)))
    except BaseException:
        await cur.close()
        raise
    return cur


async def _query_row(scope: Scope, conn: AsyncConnection, query: str, args: Sequence[Any]) -> Row:
    try:
        cur = await _open_cursor(scope, conn, query, args)
        try:
            values = await cur.fetchone()
        finally:
            await cur.close()
    except Exception as e:
        return Row(error=e)
    return Row(values)


async def _send_batch(scope: Scope, conn: AsyncConnection, batch: Batch, atomic: bool) -> BatchResults:
    cursors: list[AsyncCursor] = []

    async def send() -> None:
        async with conn.pipeline():
            for item in batch:
                cur = conn.cursor()
                cursors.append(cur)
                await cur.execute(item.sql, _params(item.args))

    error: Optional[Exception] = None
    try:
        if atomic:
            async with conn.transaction():
                await scope.run(send())
        else:
            await scope.run(send())
    except Exception as e:
        error = e

    results: list[BatchResult] = []
    for cur in cursors:
        # Statements after a failure in the pipeline never produce a result
        if cur.statusmessage is None:
            break
        rows = list(await cur.fetchall()) if cur.description else []
        results.append(BatchResult(_command_tag(cur), rows))
    return BatchResults(results, len(batch), error)


async def _copy_from(
    scope: Scope,
    conn: AsyncConnection,
    table: TableIdentifier,
    columns: Sequence[str],
    source: CopySource,
) -> int:
    statement = sql.SQL("COPY {} ({}) FROM STDIN").format(
        _table_identifier(table),
        sql.SQL(", ").join(sql.Identifier(column) for column in columns),
    )

    async def copy() -> int:
        async with conn.cursor() as cur:
            async with cur.copy(statement) as writer:
                if hasattr(source, "__aiter__"):
                    async for record in source:
                        await writer.write_row(record)
                else:
                    for record in source:
                        await writer.write_row(record)
            return max(cur.rowcount, 0)

    return await scope.run(copy())


class PostgresConnectionPool:
    """Async connection pool for PostgreSQL."""

    _pools: ClassVar[Dict[str, "PostgresConnectionPool"]] = {}
    _pool_locks: ClassVar[Dict[str, asyncio.Lock]] = {}

    def __init__(
        self,
        conninfo: str,
        min_size: int = 1,
        max_size: int = 10,
    ):
        """Initialize the connection pool.

        Args:
            conninfo: PostgreSQL connection string
            min_size: Minimum number of connections
            max_size: Maximum number of connections
        """
        self.conninfo = conninfo
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[AsyncConnectionPool] = None
        self._lock = asyncio.Lock()

    @classmethod
    def _get_pool_lock(cls, pool_key: str) -> asyncio.Lock:
        """Return an asyncio.Lock for the pool key."""
        if pool_key not in cls._pool_locks:
            cls._pool_locks[pool_key] = asyncio.Lock()
        return cls._pool_locks[pool_key]

    @classmethod
    async def get_shared(
        cls,
        conninfo: Optional[str] = None,
        min_size: Optional[int] = None,
        max_size: Optional[int] = None,
    ) -> "PostgresConnectionPool":
        """Get or create a shared connection pool.

        Arguments left out are read from ``Environment``.

        Returns:
            A PostgresConnectionPool instance
        """
        pool_key = conninfo or Environment.get_postgres_conninfo()
        pool_lock = cls._get_pool_lock(pool_key)

        if pool_key in cls._pools:
            return cls._pools[pool_key]

        async with pool_lock:
            if pool_key not in cls._pools:
                pool = cls(
                    pool_key,
                    min_size if min_size is not None else Environment.get_pool_min_size(),
                    max_size if max_size is not None else Environment.get_pool_max_size(),
                )
                cls._pools[pool_key] = pool
                log.info(f"Created PostgreSQL connection pool with size {pool.min_size}-{pool.max_size}")

            return cls._pools[pool_key]

    async def get_pool(self) -> AsyncConnectionPool:
        """Get or create the underlying psycopg pool."""
        if self._pool is None:
            async with self._lock:
                if self._pool is None:
                    pool = AsyncConnectionPool(
                        self.conninfo,
                        min_size=self.min_size,
                        max_size=self.max_size,
                        kwargs={"autocommit": True},
                        open=False,
                    )
                    await pool.open()
                    self._pool = pool
                    log.debug("Opened PostgreSQL connection pool")
        return self._pool

    async def close(self) -> None:
        """Close all connections in the pool."""
        if self._pool is not None:
            await self._pool.close()
            log.debug("Closed PostgreSQL connection pool")
            self._pool = None
        if self._pools.get(self.conninfo) is self:
            del self._pools[self.conninfo]

    async def _checkout(self, scope: Scope) -> AsyncConnection:
        pool = await self.get_pool()
        return await scope.run(pool.getconn(timeout=scope.remaining()))

    async def _checkin(self, conn: AsyncConnection) -> None:
        # The pool discards closed connections and replaces them
        assert self._pool is not None
        await self._pool.putconn(conn)

    async def _discard(self, conn: AsyncConnection) -> None:
        await conn.close()
        await self._checkin(conn)

    @asynccontextmanager
    async def _connection(self, scope: Scope) -> AsyncIterator[AsyncConnection]:
        conn = await self._checkout(scope)
        try:
            yield conn
        except CancellationError:
            # An aborted statement leaves the connection in an unknown protocol state
            await self._discard(conn)
            raise
        except BaseException:
            await self._checkin(conn)
            raise
        else:
            await self._checkin(conn)

    async def execute(self, scope: Scope, query: str, *args: Any) -> CommandTag:
        async with self._connection(scope) as conn:
            return await _execute(scope, conn, query, args)

    async def query(self, scope: Scope, query: str, *args: Any) -> Rows:
        conn = await self._checkout(scope)
        try:
            cur = await _open_cursor(scope, conn, query, args)
        except CancellationError:
            await self._discard(conn)
            raise
        except BaseException:
            await self._checkin(conn)
            raise
        return Rows(cur, release=lambda: self._checkin(conn))

    async def query_row(self, scope: Scope, query: str, *args: Any) -> Row:
        try:
            conn = await self._checkout(scope)
        except Exception as e:
            return Row(error=e)
        try:
            row = await _query_row(scope, conn, query, args)
        except BaseException:
            # Task cancelled mid-statement
            await self._discard(conn)
            raise
        if isinstance(row.error, CancellationError):
            await self._discard(conn)
        else:
            await self._checkin(conn)
        return row

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults:
        try:
            conn = await self._checkout(scope)
        except Exception as e:
            return BatchResults([], len(batch), e)
        try:
            results = await _send_batch(scope, conn, batch, atomic=True)
        except BaseException:
            await self._discard(conn)
            raise
        if isinstance(results.error, CancellationError):
            await self._discard(conn)
        else:
            await self._checkin(conn)
        return results

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int:
        async with self._connection(scope) as conn:
            return await _copy_from(scope, conn, table, columns, source)

    async def begin(self, scope: Scope) -> "PostgresTransaction":
        return await self.begin_tx(scope, TxOptions())

    async def begin_tx(self, scope: Scope, options: TxOptions) -> "PostgresTransaction":
        """Check out a connection and open a transaction on it."""
        conn = await self._checkout(scope)
        statement = options.begin_sql()
        try:
            await scope.run(conn.execute(statement))
        except CancellationError:
            await self._discard(conn)
            raise
        except BaseException:
            await self._checkin(conn)
            raise
        log.debug(f"Transaction opened: {statement}")
        return PostgresTransaction(conn, self._checkin)


class PostgresTransaction:
    """An open transaction holding one pooled connection until commit or rollback.

    A statement aborted by scope cancellation closes the connection, and with
    it the transaction: the server rolls it back and any later commit or
    rollback raises ``TxClosedError``.
    """

    def __init__(self, conn: AsyncConnection, release: Release):
        self._conn = conn
        self._release = release
        self._closed = False
        self._savepoints = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self) -> None:
        if self._closed:
            raise TxClosedError()

    async def _finish(self) -> None:
        self._closed = True
        await self._release(self._conn)

    async def _abort(self) -> None:
        log.debug("Closing transaction connection after cancellation")
        await self._conn.close()
        await self._finish()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[AsyncConnection]:
        self._check_open()
        try:
            yield self._conn
        except CancellationError:
            if not self._closed:
                await self._abort()
            raise

    async def execute(self, scope: Scope, query: str, *args: Any) -> CommandTag:
        async with self._guard() as conn:
            return await _execute(scope, conn, query, args)

    async def query(self, scope: Scope, query: str, *args: Any) -> Rows:
        async with self._guard() as conn:
            return Rows(await _open_cursor(scope, conn, query, args))

    async def query_row(self, scope: Scope, query: str, *args: Any) -> Row:
        if self._closed:
            return Row(error=TxClosedError())
        row = await _query_row(scope, self._conn, query, args)
        if isinstance(row.error, CancellationError):
            await self._abort()
        return row

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults:
        if self._closed:
            return BatchResults([], len(batch), TxClosedError())
        results = await _send_batch(scope, self._conn, batch, atomic=False)
        if isinstance(results.error, CancellationError):
            await self._abort()
        return results

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int:
        async with self._guard() as conn:
            return await _copy_from(scope, conn, table, columns, source)

    async def begin(self, scope: Scope) -> "PostgresSavepoint":
        """Open a pseudo nested transaction backed by a savepoint."""
        self._savepoints += 1
        name = f"sp_{self._savepoints}"
        async with self._guard() as conn:
            await scope.run(conn.execute(sql.SQL("SAVEPOINT {}").format(sql.Identifier(name))))
        return PostgresSavepoint(self, name)

    async def commit(self, scope: Scope) -> None:
        async with self._guard() as conn:
            try:
                cur = await scope.run(conn.execute("COMMIT"))
            except CancellationError:
                raise
            except BaseException:
                await self._finish()
                raise
        await self._finish()
        # COMMIT of a transaction that already hit an error is answered with ROLLBACK
        if (cur.statusmessage or "").upper() == "ROLLBACK":
            raise CommitError("commit unexpectedly resulted in rollback")
        log.debug("Transaction committed")

    async def rollback(self, scope: Scope) -> None:
        self._check_open()
        # Not bound to the scope: cleanup must reach the server even when the scope is cancelled
        try:
            await self._conn.execute("ROLLBACK")
        finally:
            await self._finish()
        log.debug("Transaction rolled back")


class PostgresSavepoint:
    """A savepoint inside a ``PostgresTransaction`` with the transaction interface."""

    def __init__(self, tx: PostgresTransaction, name: str):
        self._tx = tx
        self.name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed or self._tx.closed

    async def execute(self, scope: Scope, query: str, *args: Any) -> CommandTag:
        return await self._tx.execute(scope, query, *args)

    async def query(self, scope: Scope, query: str, *args: Any) -> Rows:
        return await self._tx.query(scope, query, *args)

    async def query_row(self, scope: Scope, query: str, *args: Any) -> Row:
        return await self._tx.query_row(scope, query, *args)

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults:
        return await self._tx.send_batch(scope, batch)

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int:
        return await self._tx.copy_from(scope, table, columns, source)

    async def begin(self, scope: Scope) -> "PostgresSavepoint":
        return await self._tx.begin(scope)

    async def commit(self, scope: Scope) -> None:
        if self._closed:
            raise TxClosedError()
        async with self._tx._guard() as conn:
            await scope.run(conn.execute(sql.SQL("RELEASE SAVEPOINT {}").format(sql.Identifier(self.name))))
        self._closed = True

    async def rollback(self, scope: Scope) -> None:
        if self._closed:
            raise TxClosedError()
        async with self._tx._guard() as conn:
            await conn.execute(sql.SQL("ROLLBACK TO SAVEPOINT {}").format(sql.Identifier(self.name)))
        self._closed = True
