"""
Collaborator protocols and the value types they exchange.

``QueryRunner`` is the statement surface shared by the pool and by an open
transaction, which is what lets the executor route a statement to either
one without the caller noticing. ``Transaction`` adds commit/rollback and
``TransactionInitiator`` is anything that can begin one.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterable,
    Awaitable,
    Callable,
    Iterable,
    Iterator,
    Optional,
    Protocol,
    Sequence,
    Union,
)

from espool.errors import EsPoolError, NoRowsError

if TYPE_CHECKING:
    from espool.runtime.scope import Scope

TableIdentifier = Union[str, Sequence[str]]
CopySource = Union[Iterable[Sequence[Any]], AsyncIterable[Sequence[Any]]]


class IsoLevel(str, Enum):
    SERIALIZABLE = "serializable"
    REPEATABLE_READ = "repeatable read"
    READ_COMMITTED = "read committed"
    READ_UNCOMMITTED = "read uncommitted"


class AccessMode(str, Enum):
    READ_WRITE = "read write"
    READ_ONLY = "read only"


class DeferrableMode(str, Enum):
    DEFERRABLE = "deferrable"
    NOT_DEFERRABLE = "not deferrable"


@dataclass(frozen=True)
class TxOptions:
    """Options applied when a transaction is opened.

    Unset fields leave the server defaults in place. ``begin_query``
    replaces the generated statement entirely.
    """

    iso_level: Optional[IsoLevel] = None
    access_mode: Optional[AccessMode] = None
    deferrable_mode: Optional[DeferrableMode] = None
    begin_query: Optional[str] = None

    def begin_sql(self) -> str:
        if self.begin_query:
            return self.begin_query
        parts = ["begin"]
        if self.iso_level:
            parts.append(f"isolation level {IsoLevel(self.iso_level).value}")
        if self.access_mode:
            parts.append(AccessMode(self.access_mode).value)
        if self.deferrable_mode:
            parts.append(DeferrableMode(self.deferrable_mode).value)
        return " ".join(parts)


@dataclass(frozen=True)
class CommandTag:
    """Completion status of a statement, e.g. ``INSERT 0 1``."""

    status: str = ""
    rows_affected: int = 0

    def _verb(self) -> str:
        return self.status.split(" ", 1)[0].upper()

    def insert(self) -> bool:
        return self._verb() == "INSERT"

    def update(self) -> bool:
        return self._verb() == "UPDATE"

    def delete(self) -> bool:
        return self._verb() == "DELETE"

    def select(self) -> bool:
        return self._verb() == "SELECT"

    def __str__(self) -> str:
        return self.status


class Cursor(Protocol):
    """Minimal async cursor surface consumed by ``Rows``."""

    description: Any

    async def fetchone(self) -> Optional[Sequence[Any]]: ...

    async def close(self) -> None: ...


class Rows:
    """Lazy, forward-only sequence of result rows.

    Rows are pulled one at a time from the underlying cursor. Draining the
    iterator or calling ``close()`` releases the cursor, and the pooled
    connection behind it when there is one. Not restartable.

    Example:
        async with await executor.query(scope, "select id, name from users") as rows:
            async for user_id, name in rows:
                ...
    """

    def __init__(self, cursor: Cursor, release: Optional[Callable[[], Awaitable[None]]] = None):
        self._cursor = cursor
        self._release = release
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def fields(self) -> list[str]:
        description = self._cursor.description or []
        return [column.name if hasattr(column, "name") else column[0] for column in description]

    def __aiter__(self) -> Rows:
        return self

    async def __anext__(self) -> Sequence[Any]:
        if self._closed:
            raise StopAsyncIteration
        try:
            row = await self._cursor.fetchone()
        except BaseException:
            await self.close()
            raise
        if row is None:
            await self.close()
            raise StopAsyncIteration
        return row

    async def all(self) -> list[Sequence[Any]]:
        """Drain the remaining rows into a list."""
        return [row async for row in self]

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._cursor.close()
        finally:
            if self._release is not None:
                await self._release()

    async def __aenter__(self) -> Rows:
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()


class Row:
    """Result of ``query_row``. Errors are deferred until ``scan()``."""

    def __init__(self, values: Optional[Sequence[Any]] = None, error: Optional[BaseException] = None):
        self._values = values
        self._error = error

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def scan(self) -> tuple[Any, ...]:
        """Return the row's column values.

        Raises:
            NoRowsError: the query returned no rows
            Exception: whatever the query itself failed with
        """
        if self._error is not None:
            raise self._error
        if self._values is None:
            raise NoRowsError()
        return tuple(self._values)


@dataclass(frozen=True)
class QueuedQuery:
    sql: str
    args: tuple[Any, ...] = ()


@dataclass
class Batch:
    """Statements sent to the server together and read back in order."""

    queries: list[QueuedQuery] = field(default_factory=list)

    def queue(self, sql: str, *args: Any) -> Batch:
        self.queries.append(QueuedQuery(sql, tuple(args)))
        return self

    def __len__(self) -> int:
        return len(self.queries)

    def __iter__(self) -> Iterator[QueuedQuery]:
        return iter(self.queries)


@dataclass(frozen=True)
class BatchResult:
    command_tag: CommandTag
    rows: list[Sequence[Any]] = field(default_factory=list)


class BatchResults:
    """Results of a batch, consumed in the order the statements were queued.

    When a statement failed, reading its result (or any later one) raises
    that failure.
    """

    def __init__(self, results: list[BatchResult], size: int, error: Optional[BaseException] = None):
        self._results = results
        self._size = size
        self._error = error
        self._position = 0
        self._closed = False

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    def _next(self) -> BatchResult:
        if self._closed:
            raise EsPoolError("batch results already closed")
        if self._position >= self._size:
            raise EsPoolError("no more results in batch")
        position = self._position
        self._position += 1
        if position >= len(self._results):
            if self._error is None:
                raise EsPoolError("batch result missing")
            raise self._error
        return self._results[position]

    def exec(self) -> CommandTag:
        return self._next().command_tag

    def query(self) -> list[Sequence[Any]]:
        return self._next().rows

    def query_row(self) -> Row:
        try:
            rows = self._next().rows
        except Exception as e:
            return Row(error=e)
        return Row(rows[0] if rows else None)

    def close(self) -> None:
        self._closed = True


class QueryRunner(Protocol):
    """Statement operations shared by the pool and an open transaction."""

    async def execute(self, scope: Scope, sql: str, *args: Any) -> CommandTag: ...

    async def query(self, scope: Scope, sql: str, *args: Any) -> Rows: ...

    async def query_row(self, scope: Scope, sql: str, *args: Any) -> Row: ...

    async def begin(self, scope: Scope) -> Transaction: ...

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults: ...

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int: ...


class Transaction(QueryRunner, Protocol):
    """An open transaction.

    ``commit`` and ``rollback`` on a finalized transaction raise ``TxClosedError``.
    """

    async def commit(self, scope: Scope) -> None: ...

    async def rollback(self, scope: Scope) -> None: ...


class TransactionInitiator(Protocol):
    async def begin_tx(self, scope: Scope, options: TxOptions) -> Transaction: ...


class Pool(QueryRunner, TransactionInitiator, Protocol):
    """A connection pool: the statement surface plus ``begin_tx``."""
