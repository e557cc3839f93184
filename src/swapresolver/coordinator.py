"""Swap Coordinator.

Ties the Swap Ledger, Secret Store, Order Intake and Withdrawal Engine
together in one polling loop. Each tick:

1. Intake: discover orders, gate on profitability, fill (FIFO)
2. Index sync: advance records from observed escrow events
3. Destination escrows for swaps filled in an earlier tick
4. Secret ingestion: store secrets revealed on-chain
5. Withdrawals, grouped per chain and run concurrently across chains
6. Expiry sweep and stuck-swap detection
7. Archive pass for old terminal swaps, every few ticks

One order's failure is logged and persisted on its record; it never aborts
the rest of the tick.
"""

import asyncio
import logging
import time
from datetime import timedelta
from collections import defaultdict
from typing import Callable, Optional

from swapresolver.crypto import compute_hashlock
from swapresolver.errors import LeaseHeldError, ResolverError, SecretMismatchError
from swapresolver.indexer.base import IndexedSwap, SwapIndexQuery
from swapresolver.ledger.models import (
    SecretRecord,
    SwapRecord,
    SwapStatus,
    is_allowed_transition,
    to_epoch,
    utcnow,
)
from swapresolver.ledger.secret_store import SecretStore
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.orders.intake import OrderIntake
from swapresolver.timelocks import Timelocks
from swapresolver.utils.locks import ResolverLock
from swapresolver.utils.ticker import Ticker
from swapresolver.withdrawal.base import WithdrawalResult, WithdrawTarget
from swapresolver.withdrawal.engine import WithdrawalEngine

logger = logging.getLogger(__name__)

# Index row status -> ledger status it proves
OBSERVED_STATUSES = {
    "src_created": SwapStatus.SRC_ESCROW_CREATED,
    "src_deposited": SwapStatus.SRC_DEPOSITED,
    "dst_created": SwapStatus.DST_ESCROW_CREATED,
    "dst_funded": SwapStatus.DST_FUNDED,
}

DST_ESCROW_PENDING = (SwapStatus.SRC_ESCROW_CREATED, SwapStatus.SRC_DEPOSITED)


class Coordinator:
    """Single logical actor per resolver identity."""

    def __init__(
        self,
        ledger: SwapLedger,
        secrets: SecretStore,
        intake: OrderIntake,
        withdrawals: WithdrawalEngine,
        resolver_address: str,
        index: Optional[SwapIndexQuery] = None,
        lease: Optional[ResolverLock] = None,
        polling_interval: float = 10.0,
        auto_create_dst_escrow: bool = True,
        auto_withdraw_on_reveal: bool = True,
        swap_timeout_seconds: int = 3600,
        stuck_swap_seconds: int = 600,
        archive_after_seconds: int = 7 * 24 * 3600,
        archive_every_ticks: int = 360,
        clock: Callable[[], float] = time.time,
    ):
        self.ledger = ledger
        self.secrets = secrets
        self.intake = intake
        self.withdrawals = withdrawals
        self.resolver_address = resolver_address.lower()
        self.index = index
        self.lease = lease
        self.polling_interval = polling_interval
        self.auto_create_dst_escrow = auto_create_dst_escrow
        self.auto_withdraw_on_reveal = auto_withdraw_on_reveal
        self.swap_timeout_seconds = swap_timeout_seconds
        self.stuck_swap_seconds = stuck_swap_seconds
        self.archive_after = timedelta(seconds=archive_after_seconds)
        self.archive_every_ticks = max(1, archive_every_ticks)
        self._clock = clock

        self.ticker = Ticker(self.tick, polling_interval, name="swap coordinator")
        self._started = False
        self._filled_this_tick: set[str] = set()
        self._stuck: set[str] = set()
        self.ticks = 0
        self.last_tick_at: Optional[float] = None
        self.started_at: Optional[float] = None
        self.stats = {
            "orders_processed": 0,
            "orders_filled": 0,
            "escrows_created": 0,
            "secrets_ingested": 0,
            "withdrawals_completed": 0,
            "swaps_expired": 0,
            "swaps_archived": 0,
            "errors": 0,
        }

    @property
    def is_running(self) -> bool:
        return self.ticker.is_running

    # Lifecycle

    async def start(self) -> None:
        """Acquire the lease, seed intake and repair the secret store."""
        if self._started:
            return
        if self.lease is not None:
            await self.lease.acquire()
        await self.intake.seed_processed()
        await self.secrets.recover_from_files()
        self.started_at = self._clock()
        self._started = True
        logger.info(f"Coordinator started for resolver {self.resolver_address}")

    async def run(self, max_ticks: Optional[int] = None) -> None:
        """Tick until ``stop()`` is called; the in-flight tick always finishes."""
        await self.start()
        try:
            await self.ticker.run(max_ticks=max_ticks)
        finally:
            await self.shutdown()

    def stop(self) -> None:
        self.ticker.stop()

    async def shutdown(self) -> None:
        if self.lease is not None:
            await self.lease.release()
        self._started = False
        logger.info("Coordinator stopped")

    async def run_once(self) -> None:
        await self.start()
        await self.tick()

    # Tick

    async def tick(self) -> None:
        """Run every step once."""
        if self.lease is not None and self.lease.acquired:
            try:
                await self.lease.renew()
            except LeaseHeldError as e:
                logger.error(f"Lost resolver lease, stopping: {e}")
                self.stop()
                return

        self._filled_this_tick = set()
        await self.process_orders()
        await self.sync_index()
        if self.auto_create_dst_escrow:
            await self.create_destination_escrows()
        await self.ingest_revealed_secrets()
        if self.auto_withdraw_on_reveal:
            await self.process_withdrawals()
        await self.sweep_expired()
        if self.ticks % self.archive_every_ticks == 0:
            await self.archive_terminal()

        self.ticks += 1
        self.last_tick_at = self._clock()

    async def process_orders(self) -> int:
        """Step 1: discover, gate and fill new orders in discovery order."""
        filled = 0
        for pending in await self.intake.discover():
            order_hash = pending.order_hash
            try:
                if not self.intake.is_profitable(pending):
                    self.intake.mark_processed(order_hash)
                    self.stats["orders_processed"] += 1
                    continue

                result = await self.intake.fill(pending)
                if result.success and not result.skipped:
                    filled += 1
                    self.stats["orders_filled"] += 1
                    self._filled_this_tick.add(order_hash)
                elif not result.success:
                    self.stats["errors"] += 1
                if order_hash in self.intake.processed:
                    self.stats["orders_processed"] += 1
            except Exception as e:
                await self._record_error(order_hash, "order processing", e)
        return filled

    async def sync_index(self) -> int:
        """Step 2: advance records from index observations."""
        if self.index is None:
            return 0
        swaps = await self.ledger.list_pending()
        if not swaps:
            return 0

        rows = {row.order_hash.lower(): row for row in await self.index.swap_rows(
            [s.order_hash for s in swaps]
        )}
        advanced = 0
        for swap in swaps:
            row = rows.get(swap.order_hash)
            if row is None:
                continue
            try:
                if await self.apply_observation(swap, row):
                    advanced += 1
            except Exception as e:
                await self._record_error(swap.order_hash, "index sync", e)
        return advanced

    async def apply_observation(self, swap: SwapRecord, row: IndexedSwap) -> bool:
        """Move a record forward to what the index has seen. Never moves back."""
        observed = []
        if row.src_escrow:
            observed.append(SwapStatus.SRC_ESCROW_CREATED)
        if row.dst_escrow:
            observed.append(SwapStatus.DST_ESCROW_CREATED)
        if row.status and row.status.lower() in OBSERVED_STATUSES:
            observed.append(OBSERVED_STATUSES[row.status.lower()])

        patch = {}
        if row.src_escrow and swap.src_escrow is None:
            patch["src_escrow"] = row.src_escrow
        if row.dst_escrow and swap.dst_escrow is None:
            patch["dst_escrow"] = row.dst_escrow

        changed = False
        current = swap.swap_status
        target = max(observed, key=lambda s: s.rank) if observed else None
        if target is not None and target.rank > current.rank:
            if not is_allowed_transition(current, target):
                # CREATED must pass through the source escrow first
                swap = await self.ledger.update_status(
                    swap.order_hash, SwapStatus.SRC_ESCROW_CREATED,
                    src_escrow=patch.pop("src_escrow", None),
                )
                current = swap.swap_status
            if target != current:
                swap = await self.ledger.update_status(swap.order_hash, target, **patch)
            changed = True
        elif patch:
            swap = await self.ledger.update_fields(swap.order_hash, **patch)
            changed = True

        if row.secret:
            await self.ingest_secret(
                row.secret,
                order_hash=swap.order_hash,
                escrow_address=row.dst_escrow,
                chain_id=row.dst_chain_id,
            )
        return changed

    async def create_destination_escrows(self) -> int:
        """Step 3: create and fund destination escrows for filled swaps."""
        created = 0
        for swap in await self.ledger.list_pending():
            if (
                swap.swap_status not in DST_ESCROW_PENDING
                or swap.dst_escrow is not None
                or swap.taker.lower() != self.resolver_address
                or swap.order_hash in self._filled_this_tick
            ):
                continue
            try:
                result = await self.intake.create_destination_escrow(swap)
                if result.success and result.tx_ref:
                    created += 1
                    self.stats["escrows_created"] += 1
                elif not result.success:
                    self.stats["errors"] += 1
            except Exception as e:
                await self._record_error(swap.order_hash, "destination escrow", e)
        return created

    async def ingest_revealed_secrets(self) -> int:
        """Step 4: learn secrets revealed by anyone on either chain."""
        if self.index is None:
            return 0
        ingested = 0
        for revealed in await self.index.revealed_secrets():
            try:
                known = await self.secrets.has_secret(revealed.hashlock)
                record = await self.ingest_secret(
                    revealed.secret,
                    order_hash=revealed.order_hash,
                    escrow_address=revealed.escrow_address,
                    chain_id=revealed.chain_id,
                )
                if record is not None and not known:
                    ingested += 1
            except Exception as e:
                await self._record_error(revealed.order_hash, "secret ingestion", e)
        return ingested

    async def ingest_secret(
        self,
        secret: str,
        order_hash: Optional[str] = None,
        escrow_address: Optional[str] = None,
        chain_id: Optional[int] = None,
    ) -> Optional[SecretRecord]:
        """Store a secret and advance its swap to SECRET_REVEALED.

        Ingesting the same secret twice leaves one record with its status
        unchanged. Secrets for unknown swaps without an order hash are skipped.

        Raises:
            ValidationError: if the secret is malformed or does not open
                the swap's hashlock
            SecretConflict: if different material is bound to the hashlock
        """
        hashlock = compute_hashlock(secret)
        swap = await self.ledger.get(order_hash) if order_hash else None
        if swap is None:
            swap = await self.ledger.get_by_hashlock(hashlock)
        if swap is not None and swap.hashlock != hashlock:
            raise SecretMismatchError(
                f"Secret for {swap.order_hash} opens {hashlock}, expected {swap.hashlock}"
            )
        if swap is None and order_hash is None:
            logger.debug(f"Ignoring secret for untracked hashlock {hashlock[:10]}...")
            return None

        known = await self.secrets.has_secret(hashlock)
        record = await self.secrets.put(
            secret, swap.order_hash if swap else order_hash, escrow_address, chain_id
        )
        if not known:
            self.stats["secrets_ingested"] += 1

        if swap is not None and not swap.is_terminal:
            await self._reveal(swap, record.secret)
        return record

    async def _reveal(self, swap: SwapRecord, secret: str) -> None:
        current = swap.swap_status
        if current.rank < SwapStatus.SECRET_REVEALED.rank and is_allowed_transition(
            current, SwapStatus.SECRET_REVEALED
        ):
            await self.ledger.update_status(swap.order_hash, SwapStatus.SECRET_REVEALED, secret=secret)
        elif swap.secret is None:
            await self.ledger.update_fields(swap.order_hash, secret=secret)

    async def process_withdrawals(self) -> int:
        """Step 5: claim escrows, chains in parallel, sequential within a chain.

        All targets of one swap run in the same group so a single order's
        lifecycle is never driven concurrently.
        """
        targets = await self.withdrawals.list_withdrawable()
        if not targets:
            return 0

        by_order: dict[str, list[WithdrawTarget]] = defaultdict(list)
        for target in targets:
            by_order[target.order_hash].append(target)
        groups: dict[int, list[WithdrawTarget]] = defaultdict(list)
        for order_targets in by_order.values():
            groups[order_targets[0].chain_id].extend(order_targets)

        logger.info(f"Withdrawing {len(targets)} escrows across {len(groups)} chains")
        counts = await asyncio.gather(
            *(self._withdraw_group(chain_id, group) for chain_id, group in groups.items())
        )
        return sum(counts)

    async def _withdraw_group(self, chain_id: int, targets: list[WithdrawTarget]) -> int:
        completed = 0
        failed_orders: set[str] = set()
        for target in targets:
            if target.order_hash in failed_orders:
                continue
            try:
                result = await self.withdrawals.withdraw_with_retry(target)
                await self._record_withdrawal(target, result)
                if result.success:
                    completed += 1
                else:
                    failed_orders.add(target.order_hash)
            except Exception as e:
                failed_orders.add(target.order_hash)
                await self._record_error(target.order_hash, f"withdrawal on chain {chain_id}", e)
        return completed

    async def _record_withdrawal(self, target: WithdrawTarget, result: WithdrawalResult) -> None:
        if not result.success:
            self.stats["errors"] += 1
            await self.ledger.mark_failed(target.order_hash, result.error or "withdrawal failed")
            return

        self.stats["withdrawals_completed"] += 1
        if target.is_source:
            swap = await self.ledger.update_status(
                target.order_hash, SwapStatus.SRC_WITHDRAWN, src_withdraw_tx=result.tx_ref
            )
        else:
            swap = await self.ledger.update_fields(
                target.order_hash, dst_withdraw_tx=result.tx_ref, dst_withdrawn_at=utcnow()
            )

        if self._owned_sides_withdrawn(swap):
            await self.ledger.update_status(target.order_hash, SwapStatus.COMPLETED)
            logger.info(f"Swap {target.order_hash[:10]}... completed")

    def _owned_sides_withdrawn(self, swap: SwapRecord) -> bool:
        src_owned = bool(swap.src_escrow) and swap.taker.lower() == self.resolver_address
        dst_owned = bool(swap.dst_escrow) and swap.maker.lower() == self.resolver_address
        if not src_owned and not dst_owned:
            return False
        src_done = not src_owned or bool(swap.src_withdraw_tx)
        dst_done = not dst_owned or bool(swap.dst_withdraw_tx)
        return src_done and dst_done

    async def sweep_expired(self) -> int:
        """Step 6: expire swaps past their deadline and flag stuck ones."""
        now = self._clock()
        expired = 0
        stuck = set()
        for swap in await self.ledger.list_pending():
            try:
                deadline = self.expiry_deadline(swap)
                if now >= deadline:
                    await self.ledger.update_status(
                        swap.order_hash,
                        SwapStatus.EXPIRED,
                        last_error=f"expired in {swap.swap_status.value}",
                    )
                    logger.warning(
                        f"Swap {swap.order_hash[:10]}... expired in {swap.swap_status.value}"
                    )
                    expired += 1
                    self.stats["swaps_expired"] += 1
                    continue

                updated = to_epoch(swap.updated_at) or now
                if now - updated >= self.stuck_swap_seconds:
                    stuck.add(swap.order_hash)
                    if swap.order_hash not in self._stuck:
                        logger.warning(
                            f"Swap {swap.order_hash[:10]}... stuck in {swap.swap_status.value} "
                            f"for {int(now - updated)}s, re-driving"
                        )
            except Exception as e:
                await self._record_error(swap.order_hash, "expiry sweep", e)
        self._stuck = stuck
        return expired

    async def archive_terminal(self) -> int:
        """Step 7: move terminal swaps untouched for a while into the archive."""
        archived = await self.ledger.archive_terminal(older_than=self.archive_after)
        self.stats["swaps_archived"] += archived
        return archived

    def expiry_deadline(self, swap: SwapRecord) -> float:
        """Source public-cancellation deadline, or the swap timeout without timelocks."""
        if swap.timelocks:
            timelocks = Timelocks.unpack(swap.timelocks)
            deployed_at = timelocks.deployed_at or to_epoch(swap.src_escrow_created_at)
            if deployed_at:
                return deployed_at + timelocks.src_public_cancellation
        return to_epoch(swap.created_at) + self.swap_timeout_seconds

    async def _record_error(self, order_hash: Optional[str], step: str, error: Exception) -> None:
        """Log and persist a failure against its swap, then carry on."""
        self.stats["errors"] += 1
        if isinstance(error, ResolverError):
            logger.error(f"{step} failed for {order_hash}: {error}")
        else:
            logger.exception(f"{step} failed for {order_hash}: {error}")
        if not order_hash:
            return
        try:
            swap = await self.ledger.get(order_hash)
            if swap is not None and not swap.is_terminal:
                await self.ledger.update_fields(order_hash, last_error=f"{step}: {error}")
        except ResolverError as e:
            logger.error(f"Could not record error on {order_hash}: {e}")

    async def status(self) -> dict:
        """Status view for external polling."""
        return {
            "ordersProcessed": self.stats["orders_processed"],
            "ordersFilled": self.stats["orders_filled"],
            "escrowsCreated": self.stats["escrows_created"],
            "secretsIngested": self.stats["secrets_ingested"],
            "withdrawalsCompleted": self.stats["withdrawals_completed"],
            "swapsExpired": self.stats["swaps_expired"],
            "swapsArchived": self.stats["swaps_archived"],
            "stuckSwaps": len(self._stuck),
            "errors": self.stats["errors"],
            "isRunning": self.is_running,
            "ticks": self.ticks,
            "lastTickAt": self.last_tick_at,
            "startedAt": self.started_at,
            "secretsStatistics": await self.secrets.statistics(),
            "swapStatistics": await self.ledger.statistics(),
        }
