from typing import Optional

from espool.runtime.scope import Scope
from espool.runtime.types import Transaction


class _TxKey:
    """Private scope key under which the active transaction is stored."""

    def __repr__(self) -> str:
        return "<espool.tx>"


_TX_KEY = _TxKey()


def inject_tx(scope: Scope, tx: Transaction) -> Scope:
    """Derive a scope carrying ``tx``; ``scope`` itself is left unchanged."""
    return scope.with_value(_TX_KEY, tx)


def extract_tx(scope: Scope) -> Optional[Transaction]:
    """Return the innermost transaction attached to ``scope``, or None."""
    return scope.value(_TX_KEY)
