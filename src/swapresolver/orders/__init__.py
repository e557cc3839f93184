"""Order intake module: signed orders, the pending queue and fills."""

from swapresolver.orders.models import MakerTraits, Order, PendingOrder, split_signature

__all__ = ["MakerTraits", "Order", "PendingOrder", "split_signature"]
