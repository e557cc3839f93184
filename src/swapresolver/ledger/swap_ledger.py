"""Swap Ledger: durable order-hash -> swap record map.

The coordinator is the only writer. Every mutation runs in its own
transaction, so reads always reflect the latest committed write.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from swapresolver.crypto import is_placeholder, normalize_hex, verify_secret
from swapresolver.errors import (
    AlreadyExists,
    EscrowAlreadySet,
    InvalidTransition,
    SecretConflict,
    SwapAlreadyExists,
    SwapNotFound,
    ValidationError,
)
from swapresolver.ledger.database import Database
from swapresolver.ledger.models import (
    STATUS_TIMESTAMP_FIELDS,
    TERMINAL_STATUSES,
    SwapRecord,
    SwapStatus,
    is_allowed_transition,
    utcnow,
)
from swapresolver.timelocks import Timelocks

logger = logging.getLogger(__name__)

# Fields a status update may patch
PATCHABLE_FIELDS = frozenset({
    "secret",
    "src_escrow",
    "dst_escrow",
    "src_safety_deposit",
    "dst_safety_deposit",
    "timelocks",
    "fill_tx",
    "dst_create_tx",
    "src_withdraw_tx",
    "dst_withdraw_tx",
    "dst_withdrawn_at",
    "last_error",
})

ESCROW_FIELDS = ("src_escrow", "dst_escrow")
TX_FIELDS = ("fill_tx", "dst_create_tx", "src_withdraw_tx", "dst_withdraw_tx")


class SwapLedger:
    """Repository for swap state machine records."""

    def __init__(self, db: Database):
        self.db = db

    async def create(self, swap: SwapRecord) -> SwapRecord:
        """Start tracking a swap.

        Raises:
            SwapAlreadyExists: if the order hash is already tracked
            AlreadyExists: if another swap uses the same hashlock
            ValidationError: on malformed fields
        """
        swap.order_hash = normalize_hex(swap.order_hash)
        swap.hashlock = normalize_hex(swap.hashlock)
        if swap.src_amount is None or swap.src_amount <= 0:
            raise ValidationError(f"Swap {swap.order_hash}: src_amount must be positive")
        if swap.dst_amount is None or swap.dst_amount <= 0:
            raise ValidationError(f"Swap {swap.order_hash}: dst_amount must be positive")
        if swap.timelocks is not None:
            Timelocks.unpack(swap.timelocks)
        if swap.secret is not None:
            verify_secret(swap.secret, swap.hashlock)

        swap.status = SwapStatus(swap.status or SwapStatus.CREATED)
        swap.retry_count = swap.retry_count or 0
        now = utcnow()
        swap.created_at = swap.created_at or now
        swap.updated_at = now

        async with self.db.session() as session:
            if await session.get(SwapRecord, swap.order_hash) is not None:
                raise SwapAlreadyExists(swap.order_hash)
            stmt = select(SwapRecord.order_hash).where(SwapRecord.hashlock == swap.hashlock)
            other = (await session.execute(stmt)).scalar_one_or_none()
            if other is not None:
                raise AlreadyExists(f"Hashlock {swap.hashlock} already tracked by swap {other}")
            session.add(swap)
            try:
                await session.flush()
            except IntegrityError:
                raise SwapAlreadyExists(swap.order_hash)

        logger.info(
            f"Tracking swap {swap.order_hash[:10]}... "
            f"{swap.src_chain_id} -> {swap.dst_chain_id} status={swap.status.value}"
        )
        return swap

    async def get(self, order_hash: str) -> Optional[SwapRecord]:
        """Get swap by order hash (archived records included)."""
        async with self.db.session() as session:
            return await session.get(SwapRecord, normalize_hex(order_hash))

    async def get_by_hashlock(self, hashlock: str) -> Optional[SwapRecord]:
        """Get swap by hashlock."""
        async with self.db.session() as session:
            stmt = select(SwapRecord).where(SwapRecord.hashlock == normalize_hex(hashlock))
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def update_status(
        self, order_hash: str, new_status: SwapStatus, **patch
    ) -> SwapRecord:
        """Move a swap along its state machine and apply a field patch.

        Raises:
            SwapNotFound: if the order hash is not tracked
            InvalidTransition: if the edge is not allowed
            EscrowAlreadySet: if a set escrow address would change
        """
        new_status = SwapStatus(new_status)
        unknown = set(patch) - PATCHABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot patch swap fields: {sorted(unknown)}")

        async with self.db.session() as session:
            swap = await session.get(SwapRecord, normalize_hex(order_hash))
            if swap is None:
                raise SwapNotFound(order_hash)

            current = swap.swap_status
            if not is_allowed_transition(current, new_status):
                raise InvalidTransition(swap.order_hash, current.value, new_status.value)

            self._apply_patch(swap, patch)

            now = utcnow()
            if new_status != current:
                swap.status = new_status
                stamp = STATUS_TIMESTAMP_FIELDS.get(new_status)
                if stamp and getattr(swap, stamp) is None:
                    setattr(swap, stamp, now)
                logger.info(
                    f"Swap {swap.order_hash[:10]}... {current.value} -> {new_status.value}"
                )
            swap.updated_at = now
            await session.flush()
            return swap

    async def update_fields(self, order_hash: str, **patch) -> SwapRecord:
        """Patch a non-terminal swap without changing its status."""
        swap = await self.get(order_hash)
        if swap is None:
            raise SwapNotFound(order_hash)
        return await self.update_status(order_hash, swap.swap_status, **patch)

    async def mark_failed(self, order_hash: str, error: str) -> SwapRecord:
        """Move a swap to FAILED, preserving the reason for operators."""
        logger.error(f"Swap {order_hash[:10]}... failed: {error}")
        return await self.update_status(order_hash, SwapStatus.FAILED, last_error=error)

    async def list_by_status(self, status: SwapStatus) -> list[SwapRecord]:
        """List unarchived swaps in one status, oldest first."""
        async with self.db.session() as session:
            stmt = (
                select(SwapRecord)
                .where(
                    SwapRecord.status == SwapStatus(status),
                    SwapRecord.archived_at.is_(None),
                )
                .order_by(SwapRecord.created_at, SwapRecord.order_hash)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_pending(self) -> list[SwapRecord]:
        """List all non-terminal swaps, oldest first."""
        async with self.db.session() as session:
            stmt = (
                select(SwapRecord)
                .where(
                    SwapRecord.status.not_in([s.value for s in TERMINAL_STATUSES]),
                    SwapRecord.archived_at.is_(None),
                )
                .order_by(SwapRecord.created_at, SwapRecord.order_hash)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def increment_retry(self, order_hash: str, error: Optional[str] = None) -> int:
        """Bump the retry counter and return the new count."""
        async with self.db.session() as session:
            swap = await session.get(SwapRecord, normalize_hex(order_hash))
            if swap is None:
                raise SwapNotFound(order_hash)
            if swap.is_terminal:
                raise InvalidTransition(
                    swap.order_hash,
                    swap.status,
                    swap.status,
                    f"Swap {swap.order_hash} is terminal ({swap.status}), cannot retry",
                )
            swap.retry_count = (swap.retry_count or 0) + 1
            if error is not None:
                swap.last_error = error
            swap.updated_at = utcnow()
            await session.flush()
            return swap.retry_count

    async def list_processed_order_hashes(self) -> set[str]:
        """Order hashes that have moved past CREATED, archived ones included."""
        async with self.db.session() as session:
            stmt = select(SwapRecord.order_hash).where(
                SwapRecord.status != SwapStatus.CREATED.value
            )
            result = await session.execute(stmt)
            return set(result.scalars().all())

    async def statistics(self) -> dict:
        """Swap counts per outcome."""
        async with self.db.session() as session:
            stmt = select(SwapRecord.status, func.count()).group_by(SwapRecord.status)
            result = await session.execute(stmt)
            by_status = {SwapStatus(status).value: count for status, count in result.all()}

        total = sum(by_status.values())
        completed = by_status.get(SwapStatus.COMPLETED.value, 0)
        failed = by_status.get(SwapStatus.FAILED.value, 0)
        expired = by_status.get(SwapStatus.EXPIRED.value, 0)
        return {
            "total": total,
            "completed": completed,
            "failed": failed,
            "expired": expired,
            "pending": total - completed - failed - expired,
            "success_rate": round(completed / total * 100, 2) if total else 0.0,
            "by_status": by_status,
        }

    async def archive_terminal(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Move terminal swaps last touched before the cutoff to the archive partition."""
        cutoff = utcnow() - older_than
        async with self.db.session() as session:
            stmt = select(SwapRecord).where(
                SwapRecord.status.in_([s.value for s in TERMINAL_STATUSES]),
                SwapRecord.archived_at.is_(None),
                SwapRecord.updated_at < cutoff,
            )
            swaps = list((await session.execute(stmt)).scalars().all())
            now = utcnow()
            for swap in swaps:
                swap.archived_at = now
            await session.flush()

        if swaps:
            logger.info(f"Archived {len(swaps)} terminal swaps")
        return len(swaps)

    @staticmethod
    def _apply_patch(swap: SwapRecord, patch: dict) -> None:
        for field in ESCROW_FIELDS:
            value = patch.get(field)
            if value is None:
                continue
            value = normalize_hex(value)
            current = getattr(swap, field)
            if current is not None and current != value:
                raise EscrowAlreadySet(swap.order_hash, field, current, value)
            patch[field] = value

        for field in TX_FIELDS:
            value = patch.get(field)
            if value is not None and is_placeholder(value):
                raise ValidationError(f"Swap {swap.order_hash}: placeholder {field} {value!r}")

        secret = patch.get("secret")
        if secret is not None:
            verify_secret(secret, swap.hashlock)
            secret = normalize_hex(secret)
            if swap.secret is not None and swap.secret != secret:
                raise SecretConflict(swap.hashlock)
            patch["secret"] = secret

        if patch.get("timelocks") is not None:
            Timelocks.unpack(patch["timelocks"])

        for field, value in patch.items():
            if value is not None or field == "last_error":
                setattr(swap, field, value)
