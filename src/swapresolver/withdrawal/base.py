"""Withdrawal targets and results.

Withdrawal flow:
1. A secret becomes known (revealed on-chain or self-generated)
2. Swaps with an un-withdrawn escrow owned by this resolver become targets
3. The withdrawal is simulated, then submitted and confirmed
4. The secret is confirmed, or marked failed on a non-retryable error
5. The coordinator advances the swap record
"""

from dataclasses import dataclass
from typing import Optional

from swapresolver.chains.errors import FailureKind


@dataclass
class WithdrawTarget:
    """One escrow to claim, with the immutables the escrow was created with."""
    order_hash: str
    hashlock: str
    chain_id: int
    escrow: str
    is_source: bool
    secret: str
    maker: str
    taker: str
    token: str
    amount: int
    safety_deposit: int = 0
    timelocks: Optional[int] = None  # Packed

    @property
    def side(self) -> str:
        return "source" if self.is_source else "destination"


@dataclass
class WithdrawalResult:
    """Result of withdrawal operation."""
    success: bool
    target: Optional[WithdrawTarget] = None
    tx_ref: Optional[str] = None
    gas_used: Optional[int] = None
    attempts: int = 0
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return not self.success and self.failure is not None and self.failure.retryable
