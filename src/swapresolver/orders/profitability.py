"""Profitability gate applied before any fill is attempted."""

from swapresolver.orders.models import PendingOrder

BPS = 10_000


class ProfitabilityPolicy:
    """Minimum spread between destination and source amounts, in basis points.

    Pure integer arithmetic: ``(taking - making) / making * 10000 >= min``
    is evaluated as ``(taking - making) * 10000 >= min * making``.
    """

    def __init__(self, min_profit_bps: int = 0):
        self.min_profit_bps = min_profit_bps

    def is_profitable(self, making_amount: int, taking_amount: int) -> bool:
        if making_amount <= 0:
            return False
        return (taking_amount - making_amount) * BPS >= self.min_profit_bps * making_amount

    def profit_bps(self, making_amount: int, taking_amount: int) -> int:
        """Spread in whole basis points, rounded towards zero."""
        if making_amount <= 0:
            return 0
        diff = (taking_amount - making_amount) * BPS
        bps = abs(diff) // making_amount
        return bps if diff >= 0 else -bps

    def check(self, pending: PendingOrder) -> bool:
        return self.is_profitable(pending.src_amount, pending.dst_amount)
