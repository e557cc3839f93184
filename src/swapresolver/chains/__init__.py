"""Chain client interfaces and registry."""

from swapresolver.chains.base import CallResult, ChainClient, ChainEvent, ContractCall, Receipt
from swapresolver.chains.errors import FailureKind, classify_failure
from swapresolver.chains.registry import ChainRegistry

__all__ = [
    "CallResult",
    "ChainClient",
    "ChainEvent",
    "ContractCall",
    "Receipt",
    "FailureKind",
    "classify_failure",
    "ChainRegistry",
]
