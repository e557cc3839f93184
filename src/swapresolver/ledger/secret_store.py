"""Secret Store: durable hashlock -> secret map.

Each record lives in one row that carries both lookup keys (hashlock is the
primary key, order hash a unique index), so a single transaction updates
the record and both indexes together. An optional JSON mirror (one file per
hashlock) is written after every commit for out-of-band audit and repair.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import func, select

from swapresolver.crypto import compute_hashlock, is_placeholder, normalize_hex
from swapresolver.errors import SecretConflict, SecretNotFound, ValidationError
from swapresolver.ledger.database import Database
from swapresolver.ledger.models import SecretRecord, SecretStatus, utcnow

logger = logging.getLogger(__name__)


class SecretStore:
    """Repository for revealed and generated secrets."""

    def __init__(self, db: Database, mirror_dir: Optional[Path] = None):
        self.db = db
        self.mirror_dir = Path(mirror_dir) if mirror_dir else None

    async def put(
        self,
        secret: str,
        order_hash: str,
        escrow_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> SecretRecord:
        """Store a secret under its hashlock.

        Storing the same secret again is a no-op apart from filling in a
        missing escrow address or chain id; the status is left unchanged.

        Raises:
            ValidationError: if the secret is not 32 bytes of hex
            SecretConflict: if the hashlock or order hash is bound to
                different material
        """
        if is_placeholder(secret):
            raise ValidationError("Refusing to store a zero secret")
        secret = normalize_hex(secret)
        hashlock = compute_hashlock(secret)
        order_hash = normalize_hex(order_hash)
        if escrow_address is not None:
            escrow_address = normalize_hex(escrow_address)

        async with self.db.session() as session:
            record = await session.get(SecretRecord, hashlock)
            if record is not None:
                if record.secret != secret:
                    raise SecretConflict(hashlock)
                if record.order_hash != order_hash:
                    raise SecretConflict(
                        hashlock,
                        f"Hashlock {hashlock} already bound to order {record.order_hash}",
                    )
                if record.escrow_address is None and escrow_address is not None:
                    record.escrow_address = escrow_address
                    record.updated_at = utcnow()
                if record.chain_id is None and chain_id is not None:
                    record.chain_id = chain_id
                    record.updated_at = utcnow()
                await session.flush()
                is_new = False
            else:
                stmt = select(SecretRecord.hashlock).where(SecretRecord.order_hash == order_hash)
                bound = (await session.execute(stmt)).scalar_one_or_none()
                if bound is not None:
                    raise SecretConflict(
                        bound, f"Order {order_hash} already bound to hashlock {bound}"
                    )
                now = utcnow()
                record = SecretRecord(
                    hashlock=hashlock,
                    secret=secret,
                    order_hash=order_hash,
                    escrow_address=escrow_address,
                    chain_id=chain_id,
                    revealed_at=now,
                    status=SecretStatus.PENDING,
                    updated_at=now,
                )
                session.add(record)
                await session.flush()
                is_new = True

        if is_new:
            logger.info(f"Stored secret for hashlock {hashlock[:10]}... order {order_hash[:10]}...")
        self._write_mirror(record)
        return record

    async def get_record(self, hashlock: str) -> Optional[SecretRecord]:
        async with self.db.session() as session:
            return await session.get(SecretRecord, normalize_hex(hashlock))

    async def get_by_secret_hash(self, hashlock: str) -> Optional[str]:
        """Get the secret for a hashlock."""
        record = await self.get_record(hashlock)
        return record.secret if record else None

    async def get_by_order_hash(self, order_hash: str) -> Optional[str]:
        """Get the secret bound to an order."""
        async with self.db.session() as session:
            stmt = select(SecretRecord.secret).where(
                SecretRecord.order_hash == normalize_hex(order_hash)
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def has_secret(self, hashlock: str) -> bool:
        return await self.get_by_secret_hash(hashlock) is not None

    async def confirm(
        self, hashlock: str, tx_ref: str, gas_used: Optional[int] = None
    ) -> SecretRecord:
        """Mark a secret as used by a confirmed withdrawal.

        A failed record is confirmed too: the chain outcome wins.

        Raises:
            SecretNotFound: if no record exists for the hashlock
        """
        if is_placeholder(tx_ref):
            raise ValidationError(f"Refusing placeholder transaction reference {tx_ref!r}")

        async with self.db.session() as session:
            record = await session.get(SecretRecord, normalize_hex(hashlock))
            if record is None:
                raise SecretNotFound(hashlock)
            if record.status == SecretStatus.CONFIRMED:
                return record
            record.status = SecretStatus.CONFIRMED
            record.tx_ref = normalize_hex(tx_ref)
            record.gas_used = gas_used
            record.failure_reason = None
            record.updated_at = utcnow()
            await session.flush()

        logger.info(f"Secret {record.hashlock[:10]}... confirmed in tx {record.tx_ref[:10]}...")
        self._write_mirror(record)
        return record

    async def mark_failed(self, hashlock: str, reason: str) -> SecretRecord:
        """Mark a pending secret as failed. Confirmed records are left alone."""
        async with self.db.session() as session:
            record = await session.get(SecretRecord, normalize_hex(hashlock))
            if record is None:
                raise SecretNotFound(hashlock)
            if record.status != SecretStatus.PENDING:
                return record
            record.status = SecretStatus.FAILED
            record.failure_reason = reason
            record.updated_at = utcnow()
            await session.flush()

        logger.warning(f"Secret {record.hashlock[:10]}... marked failed: {reason}")
        self._write_mirror(record)
        return record

    async def list_pending(self) -> list[SecretRecord]:
        """Secrets not yet used by a confirmed withdrawal, oldest first."""
        async with self.db.session() as session:
            stmt = (
                select(SecretRecord)
                .where(SecretRecord.status == SecretStatus.PENDING.value)
                .order_by(SecretRecord.revealed_at, SecretRecord.hashlock)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def list_revealed(self, limit: Optional[int] = None) -> list[SecretRecord]:
        """All secrets, newest first."""
        async with self.db.session() as session:
            stmt = select(SecretRecord).order_by(SecretRecord.revealed_at.desc())
            if limit:
                stmt = stmt.limit(limit)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def statistics(self) -> dict:
        async with self.db.session() as session:
            stmt = select(SecretRecord.status, func.count()).group_by(SecretRecord.status)
            result = await session.execute(stmt)
            counts = {SecretStatus(status).value: count for status, count in result.all()}

        return {
            "total": sum(counts.values()),
            "pending": counts.get(SecretStatus.PENDING.value, 0),
            "confirmed": counts.get(SecretStatus.CONFIRMED.value, 0),
            "failed": counts.get(SecretStatus.FAILED.value, 0),
        }

    async def recover_from_files(self) -> int:
        """Re-import mirror files whose record is missing from the database.

        Returns:
            Number of records restored
        """
        if not self.mirror_dir or not self.mirror_dir.is_dir():
            return 0

        restored = 0
        for path in sorted(self.mirror_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text())
                secret = data["secret"]
                order_hash = data["orderHash"]
                hashlock = compute_hashlock(secret)
            except (OSError, ValueError, KeyError, ValidationError) as e:
                logger.warning(f"Skipping unreadable secret file {path.name}: {e}")
                continue

            if normalize_hex(data.get("hashlock", hashlock)) != hashlock:
                logger.warning(f"Skipping secret file {path.name}: hashlock does not match secret")
                continue
            if await self.has_secret(hashlock):
                continue

            try:
                await self.put(secret, order_hash, data.get("escrowAddress"), data.get("chainId"))
            except SecretConflict as e:
                logger.warning(f"Skipping secret file {path.name}: {e}")
                continue

            status = data.get("status")
            if status == SecretStatus.CONFIRMED.value and data.get("txHash"):
                gas = data.get("gasUsed")
                await self.confirm(hashlock, data["txHash"], int(gas) if gas else None)
            elif status == SecretStatus.FAILED.value:
                await self.mark_failed(hashlock, data.get("failureReason") or "restored")
            restored += 1

        if restored:
            logger.info(f"Recovered {restored} secrets from {self.mirror_dir}")
        return restored

    def _write_mirror(self, record: SecretRecord) -> None:
        if not self.mirror_dir:
            return
        try:
            self.mirror_dir.mkdir(parents=True, exist_ok=True)
            path = self.mirror_dir / f"{record.hashlock}.json"
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(record.to_dict(), indent=2))
            tmp.replace(path)
        except OSError as e:
            # The database row is the source of truth
            logger.error(f"Failed to write secret mirror for {record.hashlock[:10]}...: {e}")
