"""Read-only swap index interface.

The index surfaces on-chain events as rows. It is eventually consistent and
may be unavailable at any time; implementations return empty results rather
than raising, since the Swap Ledger is the local source of truth.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from swapresolver.orders.models import PendingOrder

logger = logging.getLogger(__name__)


@dataclass
class IndexedSwap:
    """Swap as observed by the index."""
    order_hash: str
    hashlock: str
    src_chain_id: int
    dst_chain_id: int
    status: str                     # pending | src_created | src_deposited | dst_created | dst_funded | completed
    src_token: Optional[str] = None
    dst_token: Optional[str] = None
    src_amount: Optional[int] = None
    dst_amount: Optional[int] = None
    src_maker: Optional[str] = None
    src_taker: Optional[str] = None
    src_escrow: Optional[str] = None
    dst_escrow: Optional[str] = None
    secret: Optional[str] = None
    src_created_at: Optional[int] = None
    dst_created_at: Optional[int] = None
    completed_at: Optional[int] = None


@dataclass
class RevealedSecret:
    """Secret observed in an on-chain withdrawal."""
    hashlock: str
    secret: str
    order_hash: Optional[str] = None
    escrow_address: Optional[str] = None
    chain_id: Optional[int] = None
    tx_ref: Optional[str] = None
    revealed_at: Optional[int] = None


class SwapIndexQuery(ABC):
    """Abstract query capability over the swap index."""

    @abstractmethod
    async def pending_orders(self, resolver: str) -> list[PendingOrder]:
        """Signed orders addressed to ``resolver`` that are not yet filled."""
        pass

    @abstractmethod
    async def swap_rows(self, order_hashes: list[str]) -> list[IndexedSwap]:
        """Current index view of the given swaps."""
        pass

    @abstractmethod
    async def revealed_secrets(self) -> list[RevealedSecret]:
        """Secrets revealed by recent withdrawals."""
        pass
