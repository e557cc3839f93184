"""Utility modules for the resolver."""

from swapresolver.utils.locks import ResolverLock
from swapresolver.utils.ticker import Ticker

__all__ = ["ResolverLock", "Ticker"]
