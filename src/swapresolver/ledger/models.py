"""SQLAlchemy models for swap and secret state."""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, TypeDecorator
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo on round trip)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch(value: Optional[datetime]) -> Optional[float]:
    """Unix timestamp of a naive UTC datetime."""
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).timestamp()


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class BigUInt(TypeDecorator):
    """Arbitrary-precision integer stored as a decimal string.

    uint256 amounts, salts and packed timelocks do not fit in BIGINT and
    must never pass through a float.
    """

    impl = String(78)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"Expected int, got {type(value).__name__}")
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return int(value)


class SwapStatus(str, Enum):
    """Cross-chain swap lifecycle."""

    CREATED = "CREATED"
    SRC_ESCROW_CREATED = "SRC_ESCROW_CREATED"
    SRC_DEPOSITED = "SRC_DEPOSITED"
    DST_ESCROW_CREATED = "DST_ESCROW_CREATED"
    DST_FUNDED = "DST_FUNDED"
    SECRET_REVEALED = "SECRET_REVEALED"
    SRC_WITHDRAWN = "SRC_WITHDRAWN"
    COMPLETED = "COMPLETED"  # Terminal
    FAILED = "FAILED"  # Terminal
    EXPIRED = "EXPIRED"  # Terminal

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the happy path; terminal failures rank last."""
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [
    SwapStatus.CREATED,
    SwapStatus.SRC_ESCROW_CREATED,
    SwapStatus.SRC_DEPOSITED,
    SwapStatus.DST_ESCROW_CREATED,
    SwapStatus.DST_FUNDED,
    SwapStatus.SECRET_REVEALED,
    SwapStatus.SRC_WITHDRAWN,
    SwapStatus.COMPLETED,
    SwapStatus.FAILED,
    SwapStatus.EXPIRED,
]

TERMINAL_STATUSES = frozenset({SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.EXPIRED})

# Forward edges. Index observations can skip intermediate states, so a
# state may jump to any later state listed here. FAILED and EXPIRED are
# reachable from every non-terminal state and are added below.
ALLOWED_TRANSITIONS: dict[SwapStatus, frozenset[SwapStatus]] = {
    SwapStatus.CREATED: frozenset({
        SwapStatus.SRC_ESCROW_CREATED,
        SwapStatus.SRC_DEPOSITED,
    }),
    SwapStatus.SRC_ESCROW_CREATED: frozenset({
        SwapStatus.SRC_DEPOSITED,
        SwapStatus.DST_ESCROW_CREATED,
        SwapStatus.DST_FUNDED,
        SwapStatus.SECRET_REVEALED,
    }),
    SwapStatus.SRC_DEPOSITED: frozenset({
        SwapStatus.DST_ESCROW_CREATED,
        SwapStatus.DST_FUNDED,
        SwapStatus.SECRET_REVEALED,
    }),
    SwapStatus.DST_ESCROW_CREATED: frozenset({
        SwapStatus.DST_FUNDED,
        SwapStatus.SECRET_REVEALED,
    }),
    SwapStatus.DST_FUNDED: frozenset({SwapStatus.SECRET_REVEALED}),
    SwapStatus.SECRET_REVEALED: frozenset({SwapStatus.SRC_WITHDRAWN, SwapStatus.COMPLETED}),
    SwapStatus.SRC_WITHDRAWN: frozenset({SwapStatus.COMPLETED}),
    SwapStatus.COMPLETED: frozenset(),
    SwapStatus.FAILED: frozenset(),
    SwapStatus.EXPIRED: frozenset(),
}
for _status, _edges in list(ALLOWED_TRANSITIONS.items()):
    if not _status.is_terminal:
        ALLOWED_TRANSITIONS[_status] = _edges | {SwapStatus.FAILED, SwapStatus.EXPIRED}


def is_allowed_transition(current: SwapStatus, requested: SwapStatus) -> bool:
    """Check an edge against the transition table.

    A same-state request on a non-terminal record is a patch-only update.
    """
    if current == requested:
        return not current.is_terminal
    return requested in ALLOWED_TRANSITIONS[current]


# Timestamp column stamped when a record enters each status
STATUS_TIMESTAMP_FIELDS = {
    SwapStatus.SRC_ESCROW_CREATED: "src_escrow_created_at",
    SwapStatus.SRC_DEPOSITED: "src_deposited_at",
    SwapStatus.DST_ESCROW_CREATED: "dst_escrow_created_at",
    SwapStatus.DST_FUNDED: "dst_funded_at",
    SwapStatus.SECRET_REVEALED: "secret_revealed_at",
    SwapStatus.SRC_WITHDRAWN: "src_withdrawn_at",
    SwapStatus.COMPLETED: "completed_at",
    SwapStatus.FAILED: "failed_at",
    SwapStatus.EXPIRED: "failed_at",
}


class SecretStatus(str, Enum):
    """Status of a stored secret."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class SwapRecord(Base):
    """Canonical cross-chain state machine instance, one per order hash."""

    __tablename__ = "swaps"
    __table_args__ = (
        Index("ix_swaps_hashlock", "hashlock", unique=True),
        Index("ix_swaps_status", "status"),
    )

    order_hash: Mapped[str] = mapped_column(String(66), primary_key=True)
    hashlock: Mapped[str] = mapped_column(String(66), nullable=False)
    secret: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Participants
    maker: Mapped[str] = mapped_column(String(42), nullable=False)
    taker: Mapped[str] = mapped_column(String(42), nullable=False)

    # Source side
    src_chain_id: Mapped[int] = mapped_column(nullable=False)
    src_token: Mapped[str] = mapped_column(String(42), nullable=False)
    src_amount: Mapped[int] = mapped_column(BigUInt, nullable=False)
    src_safety_deposit: Mapped[int] = mapped_column(BigUInt, default=0)
    src_escrow: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)

    # Destination side
    dst_chain_id: Mapped[int] = mapped_column(nullable=False)
    dst_token: Mapped[str] = mapped_column(String(42), nullable=False)
    dst_amount: Mapped[int] = mapped_column(BigUInt, nullable=False)
    dst_safety_deposit: Mapped[int] = mapped_column(BigUInt, default=0)
    dst_escrow: Mapped[Optional[str]] = mapped_column(String(42), nullable=True, index=True)

    timelocks: Mapped[Optional[int]] = mapped_column(BigUInt, nullable=True)  # Packed uint256

    status: Mapped[SwapStatus] = mapped_column(
        String(24), default=SwapStatus.CREATED, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Transaction references
    fill_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    dst_create_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    src_withdraw_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    dst_withdraw_tx: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    # Transition timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    src_escrow_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    src_deposited_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dst_escrow_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dst_funded_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    secret_revealed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    src_withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    dst_withdrawn_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    @property
    def swap_status(self) -> SwapStatus:
        return SwapStatus(self.status)

    @property
    def is_terminal(self) -> bool:
        return self.swap_status.is_terminal

    def to_dict(self) -> dict:
        """Status view for external queries."""
        status = self.swap_status
        return {
            "orderHash": self.order_hash,
            "hashlock": self.hashlock,
            "status": status.value,
            "srcChainId": self.src_chain_id,
            "dstChainId": self.dst_chain_id,
            "srcEscrow": self.src_escrow,
            "dstEscrow": self.dst_escrow,
            "srcAmount": str(self.src_amount),
            "dstAmount": str(self.dst_amount),
            "retryCount": self.retry_count,
            "lastError": self.last_error if status == SwapStatus.FAILED else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class SecretRecord(Base):
    """Secret keyed by hashlock; append-only audit trail."""

    __tablename__ = "secrets"
    __table_args__ = (Index("ix_secrets_order_hash", "order_hash", unique=True),)

    hashlock: Mapped[str] = mapped_column(String(66), primary_key=True)
    secret: Mapped[str] = mapped_column(String(66), nullable=False)
    order_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    escrow_address: Mapped[Optional[str]] = mapped_column(String(42), nullable=True)
    chain_id: Mapped[Optional[int]] = mapped_column(nullable=True)
    revealed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    status: Mapped[SecretStatus] = mapped_column(
        String(20), default=SecretStatus.PENDING, nullable=False
    )
    tx_ref: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigUInt, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def to_dict(self) -> dict:
        """Mirror-file representation."""
        return {
            "hashlock": self.hashlock,
            "secret": self.secret,
            "orderHash": self.order_hash,
            "escrowAddress": self.escrow_address,
            "chainId": self.chain_id,
            "revealedAt": int(self.revealed_at.replace(tzinfo=timezone.utc).timestamp() * 1000),
            "status": SecretStatus(self.status).value,
            "txHash": self.tx_ref,
            "gasUsed": str(self.gas_used) if self.gas_used is not None else None,
            "failureReason": self.failure_reason,
        }


class ResolverLease(Base):
    """Single-writer lease per resolver identity."""

    __tablename__ = "resolver_leases"

    identity: Mapped[str] = mapped_column(String(66), primary_key=True)
    holder: Mapped[str] = mapped_column(String(255), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
