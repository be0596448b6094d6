"""
Example application: a shop that records a payment and an order atomically.

The repositories know nothing about transactions. They issue statements
through the executor with whatever scope they are handed. ``ShopService``
decides that both inserts belong to one transaction.

Usage:
    executor = await EsPool.connect()
    shop = ShopService.from_executor(executor)
    scope = Scope.background()
    await shop.create_schema(scope)
    await shop.create_order(scope, price=12500, customer_id=123, order_id=105)
"""

from typing import TYPE_CHECKING, Protocol

from espool.config.logging_config import get_logger
from espool.runtime.scope import Scope
from espool.runtime.types import CommandTag
from espool.transactor import Transactor

if TYPE_CHECKING:
    from espool.executor import EsPool

log = get_logger(__name__)


class StatementExecutor(Protocol):
    async def execute(self, scope: Scope, sql: str, *args: object) -> CommandTag: ...


class PaymentRepository:
    def __init__(self, executor: StatementExecutor):
        self.executor = executor

    async def create_payment(self, scope: Scope, customer_id: int, amount: int) -> None:
        await self.executor.execute(
            scope,
            "insert into payment(customer_id, amount) values (%s, %s)",
            customer_id,
            amount,
        )


class OrderRepository:
    def __init__(self, executor: StatementExecutor):
        self.executor = executor

    async def create_order(self, scope: Scope, customer_id: int, order_id: int) -> None:
        await self.executor.execute(
            scope,
            "insert into orders(customer_id, order_id) values (%s, %s)",
            customer_id,
            order_id,
        )


class ShopService:
    """Creates orders together with their payments."""

    def __init__(
        self,
        transactor: Transactor,
        payments: PaymentRepository,
        orders: OrderRepository,
        executor: StatementExecutor | None = None,
    ):
        self.transactor = transactor
        self.payments = payments
        self.orders = orders
        self.executor = executor

    @classmethod
    def from_executor(cls, executor: "EsPool") -> "ShopService":
        return cls(executor, PaymentRepository(executor), OrderRepository(executor), executor)

    async def create_schema(self, scope: Scope) -> None:
        if self.executor is None:
            raise ValueError("create_schema requires an executor")
        await self.executor.execute(scope, "create table if not exists payment(customer_id integer, amount integer)")
        await self.executor.execute(
            scope,
            "create table if not exists orders(customer_id integer, order_id integer unique)",
        )

    async def create_order(self, scope: Scope, price: int, customer_id: int, order_id: int) -> None:
        """Record the payment and the order in one transaction; neither is kept if either fails."""

        async def tx_func(tx_scope: Scope) -> None:
            try:
                await self.payments.create_payment(tx_scope, customer_id, price)
            except Exception:
                log.info("failed to create payment, rolling back transaction...")
                raise
            try:
                await self.orders.create_order(tx_scope, customer_id, order_id)
            except Exception:
                log.info("failed to create order, rolling back transaction...")
                raise

        await self.transactor.within_transaction(scope, tx_func)
