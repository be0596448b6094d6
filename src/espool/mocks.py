"""
Test doubles for code that depends on a ``Transactor``.

``Transactor`` runs the unit of work directly with the caller's scope, so a
service can be unit-tested against fake repositories without a database.
"""

from espool.runtime.scope import Scope
from espool.runtime.types import TxOptions
from espool.transactor import T, TxFunc


class Transactor:
    """Pass-through transactor: no transaction is opened, committed or rolled back."""

    def __init__(self) -> None:
        self.calls: list[TxOptions] = []

    async def within_transaction(self, scope: Scope, tx_func: TxFunc[T]) -> T:
        return await self.within_transaction_with_options(scope, tx_func, TxOptions())

    async def within_transaction_with_options(self, scope: Scope, tx_func: TxFunc[T], options: TxOptions) -> T:
        self.calls.append(options)
        return await tx_func(scope)
