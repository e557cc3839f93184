"""Escrow withdrawal module.

Claims source and destination escrows once a swap's secret is known.
"""

from swapresolver.withdrawal.base import WithdrawalResult, WithdrawTarget

__all__ = ["WithdrawalResult", "WithdrawTarget"]
