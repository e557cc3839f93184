"""Order Intake & Fill Engine.

Discovers signed orders, gates them on profitability and submits the fill
that locks source-side funds. Also creates the destination escrow once the
source side is in place.

Fill flow:
1. Order discovered (local queue or swap index), deduplicated by order hash
2. Profitability gate (pure, no chain state)
3. Swap record created in CREATED
4. Approvals granted if the allowance is short
5. Fill simulated, submitted and confirmed
6. Source escrow parsed from the receipt, record advanced to SRC_ESCROW_CREATED
"""

import logging
from dataclasses import dataclass
from typing import Optional

from swapresolver.chains.base import CallResult
from swapresolver.chains.errors import FailureKind
from swapresolver.chains.registry import ChainRegistry
from swapresolver.errors import AlreadyExists, ResolverError, ValidationError
from swapresolver.indexer.base import SwapIndexQuery
from swapresolver.ledger.models import SwapRecord, SwapStatus
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.orders.filler import OrderFiller
from swapresolver.orders.models import PendingOrder
from swapresolver.orders.profitability import ProfitabilityPolicy
from swapresolver.orders.queue import PendingOrderQueue

logger = logging.getLogger(__name__)


@dataclass
class FillResult:
    """Result of a fill attempt."""
    order_hash: str
    success: bool
    tx_ref: Optional[str] = None
    src_escrow: Optional[str] = None
    skipped: bool = False           # Already beyond CREATED, nothing sent
    status: Optional[SwapStatus] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None


@dataclass
class EscrowResult:
    """Result of a destination escrow creation."""
    order_hash: str
    success: bool
    tx_ref: Optional[str] = None
    escrow: Optional[str] = None
    status: Optional[SwapStatus] = None
    failure: Optional[FailureKind] = None
    error: Optional[str] = None


class OrderIntake:
    """Turns signed orders into source-side fills."""

    def __init__(
        self,
        ledger: SwapLedger,
        registry: ChainRegistry,
        filler: OrderFiller,
        resolver_address: str,
        queue: Optional[PendingOrderQueue] = None,
        index: Optional[SwapIndexQuery] = None,
        policy: Optional[ProfitabilityPolicy] = None,
        max_retries: int = 3,
        auto_approve: bool = True,
    ):
        self.ledger = ledger
        self.registry = registry
        self.filler = filler
        self.resolver_address = resolver_address.lower()
        self.queue = queue
        self.index = index
        self.policy = policy or ProfitabilityPolicy()
        self.max_retries = max_retries
        self.auto_approve = auto_approve
        self._processed: set[str] = set()

    @property
    def processed(self) -> frozenset[str]:
        return frozenset(self._processed)

    def mark_processed(self, order_hash: str) -> None:
        self._processed.add(order_hash.lower())

    async def seed_processed(self) -> int:
        """Load every order hash the ledger has moved past CREATED.

        A restart must not re-fill an order merely because memory is empty.
        """
        hashes = await self.ledger.list_processed_order_hashes()
        self._processed.update(hashes)
        logger.info(f"Seeded {len(hashes)} processed orders from the swap ledger")
        return len(hashes)

    async def discover(self) -> list[PendingOrder]:
        """Merge queued and indexed orders, FIFO, minus already-processed ones."""
        found: list[PendingOrder] = []
        if self.queue is not None:
            found.extend(self.queue.load())
        if self.index is not None:
            found.extend(await self.index.pending_orders(self.resolver_address))

        seen: set[str] = set()
        orders = []
        for pending in sorted(found, key=lambda p: p.sort_key):
            if pending.order_hash in self._processed or pending.order_hash in seen:
                continue
            seen.add(pending.order_hash)
            orders.append(pending)

        if orders:
            logger.info(f"Discovered {len(orders)} pending orders")
        return orders

    def is_profitable(self, pending: PendingOrder) -> bool:
        profitable = self.policy.check(pending)
        if not profitable:
            bps = self.policy.profit_bps(pending.src_amount, pending.dst_amount)
            logger.info(
                f"Order {pending.order_hash[:10]}... unprofitable: {bps} bps "
                f"< {self.policy.min_profit_bps} bps"
            )
        return profitable

    async def fill(self, pending: PendingOrder) -> FillResult:
        """Fill an order once.

        A no-op when the ledger already has the order beyond CREATED. A fill
        submitted by an earlier attempt is awaited, never submitted again.
        """
        order_hash = pending.order_hash
        swap = await self.ledger.get(order_hash)
        if swap is not None and swap.swap_status != SwapStatus.CREATED:
            logger.info(
                f"Order {order_hash[:10]}... already {swap.swap_status.value}, not filling again"
            )
            self.mark_processed(order_hash)
            return FillResult(
                order_hash=order_hash, success=True, skipped=True, status=swap.swap_status,
                src_escrow=swap.src_escrow, tx_ref=swap.fill_tx,
            )

        if swap is None:
            try:
                pending.order.validate()
                swap = await self.ledger.create(self._build_record(pending))
            except (ValidationError, AlreadyExists) as e:
                logger.error(f"Rejecting order {order_hash[:10]}...: {e}")
                self.mark_processed(order_hash)
                return FillResult(
                    order_hash=order_hash, success=False,
                    failure=FailureKind.VALIDATION, error=str(e),
                )

        try:
            client = self.registry.get(pending.src_chain_id)
        except ResolverError as e:
            return await self._fill_failed(
                pending, CallResult.failed(str(e), FailureKind.VALIDATION)
            )

        if swap.fill_tx:
            # Submitted in an earlier attempt; only the receipt is outstanding
            logger.info(
                f"Order {order_hash[:10]}... fill {swap.fill_tx} already submitted, "
                f"awaiting receipt (attempt {swap.retry_count + 1}/{self.max_retries})"
            )
            result = await client.confirm(swap.fill_tx, f"fill of {order_hash[:10]}...")
        else:
            logger.info(
                f"Filling order {order_hash[:10]}... on chain {pending.src_chain_id} "
                f"(attempt {swap.retry_count + 1}/{self.max_retries})"
            )

            if self.auto_approve:
                for token, spender, amount in self.filler.approval_targets(pending):
                    approval = await client.ensure_allowance(token, spender, amount)
                    if not approval.success:
                        return await self._fill_failed(pending, approval)

            async def record_submission(tx_ref: str) -> None:
                await self.ledger.update_fields(order_hash, fill_tx=tx_ref)

            result = await client.execute(
                self.filler.build_fill_call(pending), on_submitted=record_submission
            )
        if not result.success:
            return await self._fill_failed(pending, result)

        src_escrow = self.filler.extract_src_escrow(pending, result.receipt)
        if src_escrow is None:
            logger.warning(
                f"Fill {result.tx_ref} for {order_hash[:10]}... has no escrow event, "
                "waiting for the index"
            )
        swap = await self.ledger.update_status(
            order_hash,
            SwapStatus.SRC_ESCROW_CREATED,
            fill_tx=result.tx_ref,
            src_escrow=src_escrow,
            last_error=None,
        )
        self.mark_processed(order_hash)
        if self.queue is not None and pending.source == "queue":
            self.queue.mark_filled(pending)

        logger.info(f"Order {order_hash[:10]}... filled: {result.tx_ref}")
        return FillResult(
            order_hash=order_hash,
            success=True,
            tx_ref=result.tx_ref,
            src_escrow=src_escrow,
            status=swap.swap_status,
        )

    async def create_destination_escrow(self, swap: SwapRecord) -> EscrowResult:
        """Create and fund the destination escrow of a filled swap."""
        order_hash = swap.order_hash
        if swap.dst_escrow is not None or swap.swap_status not in (
            SwapStatus.SRC_ESCROW_CREATED,
            SwapStatus.SRC_DEPOSITED,
        ):
            return EscrowResult(
                order_hash=order_hash, success=True, escrow=swap.dst_escrow,
                status=swap.swap_status,
            )

        try:
            client = self.registry.get(swap.dst_chain_id)
        except ResolverError as e:
            return await self._escrow_failed(
                swap, CallResult.failed(str(e), FailureKind.VALIDATION)
            )

        logger.info(f"Creating destination escrow for {order_hash[:10]}... on {swap.dst_chain_id}")

        if self.auto_approve:
            for token, spender, amount in self.filler.dst_approval_targets(swap):
                approval = await client.ensure_allowance(token, spender, amount)
                if not approval.success:
                    return await self._escrow_failed(swap, approval)

        result = await client.execute(self.filler.build_dst_escrow_call(swap))
        if not result.success:
            return await self._escrow_failed(swap, result)

        escrow = self.filler.extract_dst_escrow(swap, result.receipt)
        if escrow is None:
            return await self._escrow_failed(
                swap,
                CallResult.failed(
                    f"Destination escrow creation {result.tx_ref} emitted no escrow address",
                    FailureKind.REVERTED,
                ),
            )

        await self.ledger.update_status(
            order_hash,
            SwapStatus.DST_ESCROW_CREATED,
            dst_escrow=escrow,
            dst_create_tx=result.tx_ref,
            last_error=None,
        )
        # Creation transfers the funds in the same transaction
        swap = await self.ledger.update_status(order_hash, SwapStatus.DST_FUNDED)
        logger.info(f"Destination escrow {escrow} funded for {order_hash[:10]}...")
        return EscrowResult(
            order_hash=order_hash, success=True, tx_ref=result.tx_ref, escrow=escrow,
            status=swap.swap_status,
        )

    async def _fill_failed(self, pending: PendingOrder, result: CallResult) -> FillResult:
        swap = await self._record_failure(pending.order_hash, result, "fill")
        if swap.is_terminal:
            self.mark_processed(pending.order_hash)
        return FillResult(
            order_hash=pending.order_hash,
            success=False,
            status=swap.swap_status,
            tx_ref=result.tx_ref,
            failure=result.failure,
            error=result.error,
        )

    async def _escrow_failed(self, swap: SwapRecord, result: CallResult) -> EscrowResult:
        swap = await self._record_failure(swap.order_hash, result, "destination escrow")
        return EscrowResult(
            order_hash=swap.order_hash,
            success=False,
            status=swap.swap_status,
            failure=result.failure,
            error=result.error,
        )

    async def _record_failure(self, order_hash: str, result: CallResult, action: str) -> SwapRecord:
        """Transient errors spend one unit of retry budget; anything else fails the swap."""
        error = f"{action} failed ({result.failure.value}): {result.error}"
        if result.retryable:
            count = await self.ledger.increment_retry(order_hash, error)
            if count < self.max_retries:
                logger.warning(
                    f"Swap {order_hash[:10]}... {action} attempt {count}/{self.max_retries} "
                    f"failed, will retry: {result.error}"
                )
                return await self.ledger.get(order_hash)
            error = f"{error} (retry budget of {self.max_retries} exhausted)"
        return await self.ledger.mark_failed(order_hash, error)

    def _build_record(self, pending: PendingOrder) -> SwapRecord:
        order = pending.order
        return SwapRecord(
            order_hash=pending.order_hash,
            hashlock=pending.hashlock,
            maker=order.maker,
            taker=self.resolver_address,
            src_chain_id=pending.src_chain_id,
            src_token=order.maker_asset,
            src_amount=order.making_amount,
            src_safety_deposit=pending.src_safety_deposit,
            dst_chain_id=pending.dst_chain_id,
            dst_token=pending.dst_token,
            dst_amount=pending.dst_amount,
            dst_safety_deposit=pending.dst_safety_deposit,
            timelocks=pending.timelocks,
            status=SwapStatus.CREATED,
        )
