"""In-memory swap index for dry-run mode and tests."""

from swapresolver.indexer.base import IndexedSwap, RevealedSecret, SwapIndexQuery
from swapresolver.orders.models import PendingOrder


class InMemorySwapIndex(SwapIndexQuery):
    """Index whose rows are pushed by the caller."""

    def __init__(self):
        self.orders: list[PendingOrder] = []
        self.swaps: dict[str, IndexedSwap] = {}
        self.secrets: list[RevealedSecret] = []
        self.available = True

    def add_order(self, pending: PendingOrder) -> None:
        self.orders.append(pending)

    def observe_swap(self, row: IndexedSwap) -> None:
        self.swaps[row.order_hash.lower()] = row

    def reveal(self, secret: RevealedSecret) -> None:
        self.secrets.append(secret)

    async def pending_orders(self, resolver: str) -> list[PendingOrder]:
        if not self.available:
            return []
        return list(self.orders)

    async def swap_rows(self, order_hashes: list[str]) -> list[IndexedSwap]:
        if not self.available:
            return []
        return [self.swaps[h.lower()] for h in order_hashes if h.lower() in self.swaps]

    async def revealed_secrets(self) -> list[RevealedSecret]:
        if not self.available:
            return []
        return list(self.secrets)
