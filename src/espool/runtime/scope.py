"""
Explicit request scopes.

A ``Scope`` is an immutable, parent-linked chain that is passed by hand
through a call graph. Each layer adds one thing to its parent: a key/value
binding, a cancellation signal, or a deadline. Deriving a scope never
changes the parent, so a caller always keeps the scope it started with.

Cancellation flows down the chain: cancelling a scope cancels every scope
derived from it, and a derived deadline can only shorten the inherited one.
Driver calls are awaited through ``Scope.run`` so that a cancelled scope
aborts the call in flight with ``CancellationError``.

Example:
    root = Scope.background()
    scope, cancel = root.with_timeout(5.0)
    try:
        await executor.execute(scope, "select pg_sleep(10)")
    except CancellationError:
        ...
    finally:
        cancel()
"""

from __future__ import annotations

import asyncio
import time
import weakref
from typing import Any, Awaitable, Callable, Hashable, Optional, TypeVar

from espool.config.logging_config import get_logger
from espool.errors import CancellationError

log = get_logger(__name__)

T = TypeVar("T")

_MISSING = object()


class _CancelSignal:
    """Cancellation state shared by a cancellable scope and the scopes derived from it."""

    def __init__(self) -> None:
        self.cancelled = False
        self.deadline_exceeded = False
        # Futures resolved on cancel, one per Scope.run in flight
        self._waiters: set[asyncio.Future[None]] = set()
        # Children are held weakly: a dropped child scope must not be kept alive by its parent
        self._children: weakref.WeakSet[_CancelSignal] = weakref.WeakSet()

    def attach(self, child: "_CancelSignal") -> None:
        if self.cancelled:
            child.cancel(self.deadline_exceeded)
        else:
            self._children.add(child)

    def cancel(self, deadline_exceeded: bool = False) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        self.deadline_exceeded = deadline_exceeded
        waiters, self._waiters = self._waiters, set()
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)
        for child in list(self._children):
            child.cancel(deadline_exceeded)
        self._children = weakref.WeakSet()

    def add_waiter(self) -> "asyncio.Future[None]":
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self.cancelled:
            waiter.set_result(None)
        else:
            self._waiters.add(waiter)
        return waiter

    def remove_waiter(self, waiter: "asyncio.Future[None]") -> None:
        self._waiters.discard(waiter)
        waiter.cancel()


class Scope:
    """Immutable carrier of request-local values, cancellation and deadline."""

    def __init__(
        self,
        parent: Optional[Scope] = None,
        key: Any = _MISSING,
        value: Any = None,
        signal: Optional[_CancelSignal] = None,
        deadline: Optional[float] = None,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value
        self._signal = signal if signal is not None else (parent._signal if parent else None)
        self._deadline = deadline if deadline is not None else (parent._deadline if parent else None)

    @classmethod
    def background(cls) -> Scope:
        """Return an empty root scope that is never cancelled."""
        return cls()

    def with_value(self, key: Hashable, value: Any) -> Scope:
        """Derive a scope in which ``value(key)`` resolves to ``value``."""
        return Scope(self, key=key, value=value)

    def value(self, key: Hashable, default: Any = None) -> Any:
        """Resolve ``key`` against the innermost binding in the chain."""
        scope: Optional[Scope] = self
        while scope is not None:
            if scope._key is not _MISSING and scope._key == key:
                return scope._value
            scope = scope._parent
        return default

    def with_cancel(self) -> tuple[Scope, Callable[[], None]]:
        """Derive a cancellable scope.

        Returns:
            The child scope and an idempotent function that cancels it
        """
        signal = _CancelSignal()
        if self._signal is not None:
            self._signal.attach(signal)
        return Scope(self, signal=signal), signal.cancel

    def with_timeout(self, seconds: float) -> tuple[Scope, Callable[[], None]]:
        """Derive a cancellable scope whose deadline is ``seconds`` from now.

        The inherited deadline still applies when it is earlier.
        """
        deadline = time.monotonic() + seconds
        if self._deadline is not None:
            deadline = min(deadline, self._deadline)
        signal = _CancelSignal()
        if self._signal is not None:
            self._signal.attach(signal)
        return Scope(self, signal=signal, deadline=deadline), signal.cancel

    @property
    def deadline(self) -> Optional[float]:
        """Deadline on the ``time.monotonic()`` clock, or None."""
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None when there is none."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    @property
    def cancelled(self) -> bool:
        if self._signal is not None and self._signal.cancelled:
            return True
        return self._deadline is not None and time.monotonic() >= self._deadline

    def _error(self) -> CancellationError:
        if self._signal is not None and self._signal.cancelled and not self._signal.deadline_exceeded:
            return CancellationError("scope cancelled")
        return CancellationError("scope deadline exceeded", deadline_exceeded=True)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self._error()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``, aborting it if this scope is cancelled first.

        Raises:
            CancellationError: the scope was cancelled, or its deadline passed,
                before the awaitable finished
        """
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise self._error()
        if self._signal is None and self._deadline is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        waiter = self._signal.add_waiter() if self._signal is not None else None
        pending = {task} if waiter is None else {task, waiter}
        try:
            done, _ = await asyncio.wait(pending, timeout=self.remaining(), return_when=asyncio.FIRST_COMPLETED)
        except BaseException:
            task.cancel()
            raise
        finally:
            if waiter is not None and self._signal is not None:
                self._signal.remove_waiter(waiter)

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug(f"Aborted call failed while cancelling: {e}")
        raise self._error()

    def __repr__(self) -> str:
        depth = 0
        scope = self._parent
        while scope is not None:
            depth += 1
            scope = scope._parent
        return f"Scope(depth={depth}, cancelled={self.cancelled}, deadline={self._deadline})"
