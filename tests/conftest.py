"""
Shared fixtures: an in-memory stand-in for the PostgreSQL pool.

``FakeDatabase`` understands just enough SQL for the tests: inserts append
the arguments to the named table, selects return the rows of the table named
after ``from``. Transactions buffer their inserts and publish them on commit,
so visibility to other scopes behaves like a real server.
"""

import re
from collections import defaultdict
from typing import Any, Callable, Optional, Sequence

import psycopg
import pytest

from espool.errors import TxClosedError
from espool.executor import EsPool
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

_INSERT_RE = re.compile(r"^\s*insert\s+into\s+(\w+)", re.IGNORECASE)
_FROM_RE = re.compile(r"\bfrom\s+(\w+)", re.IGNORECASE)

Tables = dict[str, list[tuple[Any, ...]]]


class FakeDatabase:
    def __init__(self) -> None:
        self.tables: Tables = defaultdict(list)
        # table -> column index that must be unique
        self.unique: dict[str, int] = {}
        self.failing: set[str] = set()
        self.events: list[str] = []

    def visible(self, table: str, pending: Optional[Tables] = None) -> list[tuple[Any, ...]]:
        rows = list(self.tables.get(table, []))
        if pending:
            rows.extend(pending.get(table, []))
        return rows

    def write(self, sql: str, args: Sequence[Any], target: Tables, pending: Optional[Tables] = None) -> CommandTag:
        if sql in self.failing:
            raise psycopg.errors.SyntaxError(f"forced failure: {sql}")
        match = _INSERT_RE.match(sql)
        if match is None:
            return CommandTag(sql.split()[0].upper(), 0)
        table = match.group(1)
        row = tuple(args)
        column = self.unique.get(table)
        if column is not None and any(r[column] == row[column] for r in self.visible(table, pending)):
            raise psycopg.errors.UniqueViolation(f'duplicate key value violates unique constraint "{table}"')
        target[table].append(row)
        return CommandTag("INSERT 0 1", 1)

    def read(self, sql: str, pending: Optional[Tables] = None) -> list[tuple[Any, ...]]:
        if sql in self.failing:
            raise psycopg.errors.SyntaxError(f"forced failure: {sql}")
        match = _FROM_RE.search(sql)
        if match is None:
            return [(1,)]
        return self.visible(match.group(1), pending)


class FakeCursor:
    def __init__(self, rows: list[tuple[Any, ...]]):
        self.description = [("value",)]
        self._rows = list(rows)
        self.closed = False

    async def fetchone(self) -> Optional[tuple[Any, ...]]:
        if not self._rows:
            return None
        return self._rows.pop(0)

    async def close(self) -> None:
        self.closed = True


class _FakeRunner:
    """Statement surface shared by the fake pool and fake transactions."""

    db: FakeDatabase

    def _target(self) -> Tables:
        raise NotImplementedError

    def _pending(self) -> Optional[Tables]:
        return None

    def _check(self, scope: Scope) -> None:
        scope.raise_if_cancelled()

    async def execute(self, scope: Scope, sql: str, *args: Any) -> CommandTag:
        self._check(scope)
        return self.db.write(sql, args, self._target(), self._pending())

    async def query(self, scope: Scope, sql: str, *args: Any) -> Rows:
        self._check(scope)
        cursor = FakeCursor(self.db.read(sql, self._pending()))
        return Rows(cursor, release=self._release_cursor)

    async def _release_cursor(self) -> None:
        pass

    async def query_row(self, scope: Scope, sql: str, *args: Any) -> Row:
        try:
            self._check(scope)
            rows = self.db.read(sql, self._pending())
        except Exception as e:
            return Row(error=e)
        return Row(rows[0] if rows else None)

    async def send_batch(self, scope: Scope, batch: Batch) -> BatchResults:
        staged: Tables = defaultdict(list)
        combined: Tables = defaultdict(list)
        for table, rows in (self._pending() or {}).items():
            combined[table].extend(rows)
        results: list[BatchResult] = []
        try:
            self._check(scope)
            for item in batch:
                if _INSERT_RE.match(item.sql):
                    tag = self.db.write(item.sql, item.args, staged, combined)
                    combined[_INSERT_RE.match(item.sql).group(1)].append(tuple(item.args))
                    results.append(BatchResult(tag))
                else:
                    rows = self.db.read(item.sql, combined)
                    results.append(BatchResult(CommandTag(f"SELECT {len(rows)}", len(rows)), rows))
        except Exception as e:
            return BatchResults(results, len(batch), e)
        for table, rows in staged.items():
            self._target()[table].extend(rows)
        return BatchResults(results, len(batch))

    async def copy_from(
        self,
        scope: Scope,
        table: TableIdentifier,
        columns: Sequence[str],
        source: CopySource,
    ) -> int:
        self._check(scope)
        name = table if isinstance(table, str) else table[-1]
        if hasattr(source, "__aiter__"):
            rows = [tuple(r) async for r in source]
        else:
            rows = [tuple(r) for r in source]
        self._target()[name].extend(rows)
        return len(rows)


class FakeTransaction(_FakeRunner):
    def __init__(self, db: FakeDatabase, parent: Optional["FakeTransaction"] = None):
        self.db = db
        self.parent = parent
        self.pending: Tables = defaultdict(list)
        self.closed = False
        self.commit_error: Optional[Exception] = None
        self.rollback_error: Optional[Exception] = None
        self.commit_calls = 0
        self.rollback_calls = 0

    def _target(self) -> Tables:
        return self.pending

    def _pending(self) -> Tables:
        merged: Tables = defaultdict(list)
        if self.parent is not None:
            for table, rows in self.parent._pending().items():
                merged[table].extend(rows)
        for table, rows in self.pending.items():
            merged[table].extend(rows)
        return merged

    def _check(self, scope: Scope) -> None:
        if self.closed:
            raise TxClosedError()
        super()._check(scope)

    async def begin(self, scope: Scope) -> "FakeTransaction":
        self._check(scope)
        self.db.events.append("savepoint")
        return FakeTransaction(self.db, parent=self)

    async def commit(self, scope: Scope) -> None:
        self.commit_calls += 1
        if self.closed:
            raise TxClosedError()
        self.closed = True
        if self.commit_error is not None:
            self.db.events.append("commit-failed")
            raise self.commit_error
        destination = self.parent.pending if self.parent is not None else self.db.tables
        for table, rows in self.pending.items():
            destination[table].extend(rows)
        self.db.events.append("commit")

    async def rollback(self, scope: Scope) -> None:
        self.rollback_calls += 1
        if self.closed:
            raise TxClosedError()
        self.closed = True
        self.pending.clear()
        if self.rollback_error is not None:
            self.db.events.append("rollback-failed")
            raise self.rollback_error
        self.db.events.append("rollback")


class FakePool(_FakeRunner):
    def __init__(self, db: FakeDatabase):
        self.db = db
        self.begin_error: Optional[Exception] = None
        self.on_begin: Optional[Callable[[FakeTransaction], None]] = None
        self.transactions: list[FakeTransaction] = []
        self.options: list[TxOptions] = []
        self.released_cursors = 0

    def _target(self) -> Tables:
        return self.db.tables

    async def _release_cursor(self) -> None:
        self.released_cursors += 1

    async def begin(self, scope: Scope) -> FakeTransaction:
        return await self.begin_tx(scope, TxOptions())

    async def begin_tx(self, scope: Scope, options: TxOptions) -> FakeTransaction:
        if self.begin_error is not None:
            raise self.begin_error
        scope.raise_if_cancelled()
        tx = FakeTransaction(self.db)
        self.transactions.append(tx)
        self.options.append(options)
        self.db.events.append(options.begin_sql())
        if self.on_begin is not None:
            self.on_begin(tx)
        return tx


class RecordingTracer:
    """Tracer that records every descriptor and counts finished callbacks."""

    def __init__(self) -> None:
        self.started: list[str] = []
        self.finished: list[str] = []

    def trace_data(self, request: str) -> Callable[[], None]:
        self.started.append(request)

        def finish() -> None:
            self.finished.append(request)

        return finish


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def pool(db: FakeDatabase) -> FakePool:
    return FakePool(db)


@pytest.fixture
def tracer() -> RecordingTracer:
    return RecordingTracer()


@pytest.fixture
def executor(pool: FakePool, tracer: RecordingTracer) -> EsPool:
    return EsPool(pool).with_tracer(tracer)


@pytest.fixture
def scope() -> Scope:
    return Scope.background()
