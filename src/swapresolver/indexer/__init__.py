"""Swap index query module."""

from swapresolver.indexer.base import IndexedSwap, RevealedSecret, SwapIndexQuery
from swapresolver.indexer.http import HttpSwapIndex
from swapresolver.indexer.memory import InMemorySwapIndex

__all__ = [
    "IndexedSwap",
    "RevealedSecret",
    "SwapIndexQuery",
    "HttpSwapIndex",
    "InMemorySwapIndex",
]
