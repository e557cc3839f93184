"""Tests for Order Intake & Fill Engine."""

import pytest

from swapresolver.chains.errors import FailureKind
from swapresolver.chains.simulated import (
    APPROVE_METHOD,
    CREATE_DST_METHOD,
    FILL_METHOD,
    derive_address,
)
from swapresolver.indexer.memory import InMemorySwapIndex
from swapresolver.ledger.models import SwapStatus
from swapresolver.orders.intake import OrderIntake
from swapresolver.orders.profitability import ProfitabilityPolicy

from conftest import DST_CHAIN, RESOLVER, SRC_CHAIN


@pytest.fixture
def index() -> InMemorySwapIndex:
    return InMemorySwapIndex()


@pytest.fixture
def intake(ledger, registry, filler, index) -> OrderIntake:
    return OrderIntake(ledger, registry, filler, RESOLVER, index=index, max_retries=3)


class TestDiscover:
    """Tests for order discovery."""

    @pytest.mark.asyncio
    async def test_fifo_and_dedup(self, intake, index, make_pending):
        first, _ = make_pending(created_at=100)
        second, _ = make_pending(created_at=200)
        index.add_order(second)
        index.add_order(first)
        index.add_order(first)

        orders = await intake.discover()

        assert [p.order_hash for p in orders] == [first.order_hash, second.order_hash]

    @pytest.mark.asyncio
    async def test_processed_orders_skipped(self, intake, index, make_pending):
        pending, _ = make_pending()
        index.add_order(pending)
        intake.mark_processed(pending.order_hash)

        assert await intake.discover() == []

    @pytest.mark.asyncio
    async def test_index_unavailable(self, intake, index, make_pending):
        index.add_order(make_pending()[0])
        index.available = False

        assert await intake.discover() == []

    def test_profitability_gate(self, ledger, registry, filler, make_pending):
        intake = OrderIntake(
            ledger, registry, filler, RESOLVER, policy=ProfitabilityPolicy(min_profit_bps=100)
        )
        thin, _ = make_pending(making_amount=10_000, dst_amount=10_050)
        wide, _ = make_pending(making_amount=10_000, dst_amount=10_100)

        assert not intake.is_profitable(thin)
        assert intake.is_profitable(wide)


class TestFill:
    """Tests for filling orders."""

    @pytest.mark.asyncio
    async def test_fill(self, intake, ledger, src_chain, make_pending):
        pending, _ = make_pending()

        result = await intake.fill(pending)

        assert result.success
        assert not result.skipped
        swap = await ledger.get(pending.order_hash)
        assert swap.swap_status == SwapStatus.SRC_ESCROW_CREATED
        assert swap.src_escrow == derive_address("src", SRC_CHAIN, pending.hashlock)
        assert swap.fill_tx == result.tx_ref
        assert swap.taker == RESOLVER
        assert pending.order_hash in intake.processed
        assert len(src_chain.calls(APPROVE_METHOD)) == 2
        fill_call = src_chain.calls(FILL_METHOD)[0]
        assert fill_call.args["r"] == pending.r
        assert fill_call.args["vs"] == pending.vs

    @pytest.mark.asyncio
    async def test_fill_is_idempotent(self, intake, src_chain, make_pending):
        pending, _ = make_pending()
        await intake.fill(pending)

        again = await intake.fill(pending)

        assert again.success
        assert again.skipped
        assert again.status == SwapStatus.SRC_ESCROW_CREATED
        assert len(src_chain.calls(FILL_METHOD)) == 1

    @pytest.mark.asyncio
    async def test_transient_failure_uses_retry_budget(
        self, intake, ledger, src_chain, make_pending
    ):
        pending, _ = make_pending()
        src_chain.fail(FILL_METHOD, "connection refused", times=3, stage="submit")

        first = await intake.fill(pending)
        assert not first.success
        assert first.failure == FailureKind.TRANSIENT
        assert first.status == SwapStatus.CREATED
        assert pending.order_hash not in intake.processed

        await intake.fill(pending)
        last = await intake.fill(pending)

        assert last.status == SwapStatus.FAILED
        swap = await ledger.get(pending.order_hash)
        assert swap.retry_count == 3
        assert "retry budget" in swap.last_error
        assert pending.order_hash in intake.processed

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, intake, ledger, src_chain, make_pending):
        pending, _ = make_pending()
        src_chain.fail(FILL_METHOD, "request timed out", stage="submit")

        await intake.fill(pending)
        result = await intake.fill(pending)

        assert result.success
        swap = await ledger.get(pending.order_hash)
        assert swap.retry_count == 1
        assert swap.last_error is None

    @pytest.mark.asyncio
    async def test_confirmation_timeout_never_resubmits(
        self, intake, ledger, src_chain, make_pending
    ):
        pending, _ = make_pending()
        src_chain.fail(FILL_METHOD, "timeout waiting for receipt", stage="confirm")

        first = await intake.fill(pending)

        assert not first.success
        assert first.failure == FailureKind.TRANSIENT
        swap = await ledger.get(pending.order_hash)
        assert swap.swap_status == SwapStatus.CREATED
        assert swap.fill_tx == first.tx_ref
        assert swap.retry_count == 1

        second = await intake.fill(pending)

        assert second.success
        assert second.tx_ref == first.tx_ref
        swap = await ledger.get(pending.order_hash)
        assert swap.swap_status == SwapStatus.SRC_ESCROW_CREATED
        assert swap.src_escrow == derive_address("src", SRC_CHAIN, pending.hashlock)
        assert len(src_chain.calls(FILL_METHOD)) == 1
        assert [c.method for c in src_chain.simulated].count(FILL_METHOD) == 1

    @pytest.mark.asyncio
    async def test_deterministic_failure_fails_immediately(
        self, intake, ledger, src_chain, make_pending
    ):
        pending, _ = make_pending()
        src_chain.fail(FILL_METHOD, "execution reverted: BadSignature()")

        result = await intake.fill(pending)

        assert result.failure == FailureKind.VALIDATION
        swap = await ledger.get(pending.order_hash)
        assert swap.swap_status == SwapStatus.FAILED
        assert swap.retry_count == 0
        assert src_chain.calls(FILL_METHOD) == []

    @pytest.mark.asyncio
    async def test_unknown_source_chain(self, intake, ledger, make_pending):
        pending, _ = make_pending(src_chain_id=999)

        result = await intake.fill(pending)

        assert result.failure == FailureKind.VALIDATION
        assert (await ledger.get(pending.order_hash)).swap_status == SwapStatus.FAILED

    @pytest.mark.asyncio
    async def test_invalid_order_never_recorded(self, intake, ledger, src_chain, make_pending):
        pending, _ = make_pending(making_amount=0)

        result = await intake.fill(pending)

        assert not result.success
        assert result.failure == FailureKind.VALIDATION
        assert await ledger.get(pending.order_hash) is None
        assert pending.order_hash in intake.processed
        assert src_chain.submitted == []

    @pytest.mark.asyncio
    async def test_seed_processed(self, intake, ledger, registry, filler, make_pending):
        pending, _ = make_pending()
        await intake.fill(pending)

        restarted = OrderIntake(ledger, registry, filler, RESOLVER)
        assert await restarted.seed_processed() == 1
        assert pending.order_hash in restarted.processed


class TestDestinationEscrow:
    """Tests for destination escrow creation."""

    @pytest.mark.asyncio
    async def test_create_and_fund(self, intake, ledger, dst_chain, make_pending):
        pending, _ = make_pending()
        await intake.fill(pending)
        swap = await ledger.get(pending.order_hash)

        result = await intake.create_destination_escrow(swap)

        assert result.success
        assert result.status == SwapStatus.DST_FUNDED
        swap = await ledger.get(pending.order_hash)
        assert swap.dst_escrow == derive_address("dst", DST_CHAIN, pending.hashlock)
        assert swap.dst_create_tx == result.tx_ref
        assert swap.dst_escrow_created_at is not None
        assert swap.dst_funded_at is not None

        again = await intake.create_destination_escrow(swap)
        assert again.success and again.tx_ref is None
        assert len(dst_chain.calls(CREATE_DST_METHOD)) == 1

    @pytest.mark.asyncio
    async def test_creation_failure_is_recorded(self, intake, ledger, dst_chain, make_pending):
        pending, _ = make_pending()
        await intake.fill(pending)
        dst_chain.fail(CREATE_DST_METHOD, "nonce too low", stage="submit")

        result = await intake.create_destination_escrow(await ledger.get(pending.order_hash))

        assert not result.success
        swap = await ledger.get(pending.order_hash)
        assert swap.swap_status == SwapStatus.SRC_ESCROW_CREATED
        assert swap.retry_count == 1
