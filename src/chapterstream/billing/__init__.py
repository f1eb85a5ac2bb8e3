"""Word balance tracking and usage estimates."""

from .balance import (
    BalanceCheckResult,
    BalanceFeed,
    BalanceListener,
    BalanceStore,
    WordBalance,
    WordEstimates,
)

__all__ = [
    "BalanceCheckResult",
    "BalanceFeed",
    "BalanceListener",
    "BalanceStore",
    "WordBalance",
    "WordEstimates",
]
