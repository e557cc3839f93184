"""Order filler interface.

The filler knows the contract shapes (limit-order protocol, escrow factory,
escrow) and turns domain objects into ``ContractCall``s. Signing, ABI
encoding and EIP-712 hashing live behind this interface.
"""

from abc import ABC, abstractmethod
from typing import Optional

from swapresolver.chains.base import ContractCall, Receipt
from swapresolver.ledger.models import SwapRecord
from swapresolver.orders.models import Order, PendingOrder
from swapresolver.withdrawal.base import WithdrawTarget

# (token, spender, amount)
Approval = tuple[str, str, int]

SRC_ESCROW_EVENT = "SrcEscrowCreated"
DST_ESCROW_EVENT = "DstEscrowCreated"


class OrderFiller(ABC):
    """Builds the contract calls of a cross-chain swap."""

    @abstractmethod
    def order_hash(self, order: Order, chain_id: int) -> str:
        """Typed-data hash of an order on a chain."""
        pass

    @abstractmethod
    def approval_targets(self, pending: PendingOrder) -> list[Approval]:
        """Allowances the resolver must grant before filling."""
        pass

    @abstractmethod
    def build_fill_call(self, pending: PendingOrder) -> ContractCall:
        """Fill with exactly the encoded order, split signature and extension."""
        pass

    @abstractmethod
    def dst_approval_targets(self, swap: SwapRecord) -> list[Approval]:
        pass

    @abstractmethod
    def build_dst_escrow_call(self, swap: SwapRecord) -> ContractCall:
        pass

    @abstractmethod
    def build_withdraw_call(self, target: WithdrawTarget) -> ContractCall:
        pass

    def extract_src_escrow(self, pending: PendingOrder, receipt: Receipt) -> Optional[str]:
        """Source escrow address from the fill receipt."""
        return self._find_escrow(receipt, SRC_ESCROW_EVENT, pending.hashlock)

    def extract_dst_escrow(self, swap: SwapRecord, receipt: Receipt) -> Optional[str]:
        """Destination escrow address from the creation receipt."""
        return self._find_escrow(receipt, DST_ESCROW_EVENT, swap.hashlock)

    @staticmethod
    def _find_escrow(receipt: Receipt, event_name: str, hashlock: str) -> Optional[str]:
        for event in receipt.events:
            if event.name != event_name:
                continue
            event_hashlock = event.args.get("hashlock")
            if event_hashlock and event_hashlock.lower() != hashlock.lower():
                continue
            escrow = event.args.get("escrow")
            if escrow:
                return escrow.lower()
        return None
