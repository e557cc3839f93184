"""Ledger module for swap state and secret persistence."""

from swapresolver.ledger.database import Database
from swapresolver.ledger.models import (
    ALLOWED_TRANSITIONS,
    ResolverLease,
    SecretRecord,
    SecretStatus,
    SwapRecord,
    SwapStatus,
)
from swapresolver.ledger.secret_store import SecretStore
from swapresolver.ledger.swap_ledger import SwapLedger

__all__ = [
    # Models
    "SwapRecord",
    "SecretRecord",
    "ResolverLease",
    # Enums
    "SwapStatus",
    "SecretStatus",
    "ALLOWED_TRANSITIONS",
    # Database
    "Database",
    "SwapLedger",
    "SecretStore",
]
