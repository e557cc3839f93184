"""Cross-chain HTLC swap resolver.

Coordinates hash-time-locked swaps between two independent ledgers:
order intake, source fills, secret propagation and escrow withdrawals.
"""

__version__ = "0.1.0"
