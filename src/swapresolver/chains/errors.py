"""Failure classification for chain calls.

This is the only place raw error text from a chain client is turned into a
``FailureKind``. Everything downstream branches on the kind, never on the
message.
"""

from enum import Enum


class FailureKind(str, Enum):
    """Classified failure of a ledger-facing call."""

    TRANSIENT = "transient"  # RPC timeout, nonce contention, gas underpriced
    INVALID_SECRET = "invalid_secret"
    INVALID_TIME = "invalid_time"  # Timelock window closed or not yet open
    INVALID_CALLER = "invalid_caller"
    ORDER_FILLED = "order_filled"  # Order already filled or invalidated
    VALIDATION = "validation"  # Bad signature, bad immutables, bad amounts
    REVERTED = "reverted"  # Revert with an unrecognised reason

    @property
    def retryable(self) -> bool:
        return self is FailureKind.TRANSIENT


# Checked in order; first match wins. Patterns are matched against the
# lowercased message.
_PATTERNS: list[tuple[FailureKind, tuple[str, ...]]] = [
    (FailureKind.INVALID_SECRET, ("invalidsecret", "invalid secret")),
    (FailureKind.INVALID_TIME, ("invalidtime", "invalid time", "orderexpired", "order expired")),
    (
        FailureKind.INVALID_CALLER,
        ("invalidcaller", "invalid caller", "unauthorized", "privateorder", "not authorized"),
    ),
    (
        FailureKind.ORDER_FILLED,
        (
            "bitinvalidatedorder",
            "remaininginvalidatedorder",
            "invalidatedorder",
            "already filled",
            "wrongseriesnonce",
        ),
    ),
    (
        FailureKind.VALIDATION,
        (
            "badsignature",
            "invalid signature",
            "invalidimmutables",
            "invalidmsgvalue",
            "swapwithzeroamount",
            "makingamounttoolow",
            "takingamounttoohigh",
            "takingamountexceeded",
            "partialfillnotallowed",
            "predicateisnottrue",
            "insufficient funds",
            "transfer amount exceeds",
        ),
    ),
    (
        FailureKind.TRANSIENT,
        (
            "timeout",
            "timed out",
            "nonce too low",
            "nonce too high",
            "replacement transaction underpriced",
            "transaction underpriced",
            "max fee per gas less than block base fee",
            "already known",
            "connection",
            "rate limit",
            "too many requests",
            "temporarily unavailable",
            "service unavailable",
            "502",
            "503",
            "504",
        ),
    ),
]

_REVERT_MARKERS = ("revert", "execution reverted", "call exception")


def classify_failure(message: str) -> FailureKind:
    """Classify raw chain error text.

    Decoded domain errors are non-retryable. Network-level errors are
    transient. A revert with an unrecognised reason is not retried; an
    error that is neither recognised nor a revert is assumed transient.
    """
    text = (message or "").lower()
    for kind, patterns in _PATTERNS:
        if any(p in text for p in patterns):
            return kind
    if any(marker in text for marker in _REVERT_MARKERS):
        return FailureKind.REVERTED
    return FailureKind.TRANSIENT
