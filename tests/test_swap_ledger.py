"""Tests for the Swap Ledger."""

from datetime import timedelta

import pytest

from swapresolver.crypto import ZERO_BYTES32, generate_secret
from swapresolver.errors import (
    AlreadyExists,
    EscrowAlreadySet,
    InvalidTransition,
    SecretMismatchError,
    SwapAlreadyExists,
    SwapNotFound,
    ValidationError,
)
from swapresolver.ledger.models import (
    ALLOWED_TRANSITIONS,
    SwapStatus,
    is_allowed_transition,
    utcnow,
)
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.timelocks import Timelocks

ESCROW = "0x" + "e1" * 20
OTHER_ESCROW = "0x" + "e2" * 20
TX = "0x" + "ab" * 32


class TestTransitions:
    """Tests for the transition table."""

    def test_terminal_states_have_no_edges(self):
        for status in (SwapStatus.COMPLETED, SwapStatus.FAILED, SwapStatus.EXPIRED):
            assert ALLOWED_TRANSITIONS[status] == frozenset()
            assert not is_allowed_transition(status, status)

    def test_failure_reachable_from_every_live_state(self):
        for status in SwapStatus:
            if not status.is_terminal:
                assert is_allowed_transition(status, SwapStatus.FAILED)
                assert is_allowed_transition(status, SwapStatus.EXPIRED)

    def test_no_backward_edges(self):
        assert not is_allowed_transition(SwapStatus.DST_FUNDED, SwapStatus.SRC_ESCROW_CREATED)
        assert not is_allowed_transition(SwapStatus.CREATED, SwapStatus.COMPLETED)


class TestCreate:
    """Tests for swap creation."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap(src_amount=2**255 + 1)
        await ledger.create(record)

        swap = await ledger.get(record.order_hash.upper().replace("0X", "0x"))

        assert swap.swap_status == SwapStatus.CREATED
        assert swap.src_amount == 2**255 + 1
        assert swap.retry_count == 0
        assert (await ledger.get_by_hashlock(record.hashlock)).order_hash == record.order_hash

    @pytest.mark.asyncio
    async def test_duplicate_order_hash(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        duplicate, _ = make_swap(order_hash=record.order_hash)

        with pytest.raises(SwapAlreadyExists):
            await ledger.create(duplicate)

    @pytest.mark.asyncio
    async def test_duplicate_hashlock(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        other, _ = make_swap(hashlock=record.hashlock)

        with pytest.raises(AlreadyExists):
            await ledger.create(other)

    @pytest.mark.asyncio
    async def test_rejects_zero_amount(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap(dst_amount=0)
        with pytest.raises(ValidationError):
            await ledger.create(record)

    @pytest.mark.asyncio
    async def test_rejects_bad_timelocks(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap(timelocks=0)
        with pytest.raises(ValidationError):
            await ledger.create(record)

    @pytest.mark.asyncio
    async def test_accepts_packed_timelocks(self, ledger: SwapLedger, make_swap):
        packed = Timelocks.from_durations(deployed_at=1_700_000_000).pack()
        record, _ = make_swap(timelocks=packed)
        await ledger.create(record)

        assert (await ledger.get(record.order_hash)).timelocks == packed

    @pytest.mark.asyncio
    async def test_get_missing(self, ledger: SwapLedger):
        assert await ledger.get("0x" + "12" * 32) is None


class TestUpdateStatus:
    """Tests for state machine updates."""

    @pytest.mark.asyncio
    async def test_happy_path(self, ledger: SwapLedger, make_swap):
        record, secret = make_swap()
        await ledger.create(record)
        order_hash = record.order_hash

        swap = await ledger.update_status(
            order_hash, SwapStatus.SRC_ESCROW_CREATED, src_escrow=ESCROW, fill_tx=TX
        )
        assert swap.src_escrow == ESCROW
        assert swap.src_escrow_created_at is not None

        await ledger.update_status(order_hash, SwapStatus.DST_FUNDED, dst_escrow=OTHER_ESCROW)
        await ledger.update_status(order_hash, SwapStatus.SECRET_REVEALED, secret=secret)
        await ledger.update_status(order_hash, SwapStatus.SRC_WITHDRAWN, src_withdraw_tx=TX)
        swap = await ledger.update_status(order_hash, SwapStatus.COMPLETED)

        assert swap.swap_status == SwapStatus.COMPLETED
        assert swap.secret == secret
        assert swap.completed_at is not None
        assert swap.is_terminal

    @pytest.mark.asyncio
    async def test_invalid_transition(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)

        with pytest.raises(InvalidTransition):
            await ledger.update_status(record.order_hash, SwapStatus.COMPLETED)
        assert (await ledger.get(record.order_hash)).swap_status == SwapStatus.CREATED

    @pytest.mark.asyncio
    async def test_terminal_is_final(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        await ledger.mark_failed(record.order_hash, "fill reverted")

        with pytest.raises(InvalidTransition):
            await ledger.update_status(record.order_hash, SwapStatus.SRC_ESCROW_CREATED)
        with pytest.raises(InvalidTransition):
            await ledger.update_fields(record.order_hash, last_error="again")

    @pytest.mark.asyncio
    async def test_unknown_swap(self, ledger: SwapLedger):
        with pytest.raises(SwapNotFound):
            await ledger.update_status("0x" + "34" * 32, SwapStatus.FAILED)

    @pytest.mark.asyncio
    async def test_unknown_field(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)

        with pytest.raises(ValidationError):
            await ledger.update_status(record.order_hash, SwapStatus.CREATED, maker="0x00")

    @pytest.mark.asyncio
    async def test_escrow_is_write_once(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        await ledger.update_status(
            record.order_hash, SwapStatus.SRC_ESCROW_CREATED, src_escrow=ESCROW
        )

        # Same value is accepted
        await ledger.update_fields(record.order_hash, src_escrow=ESCROW.upper().replace("0X", "0x"))
        with pytest.raises(EscrowAlreadySet):
            await ledger.update_fields(record.order_hash, src_escrow=OTHER_ESCROW)
        assert (await ledger.get(record.order_hash)).src_escrow == ESCROW

    @pytest.mark.asyncio
    async def test_wrong_secret_rejected(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        await ledger.update_status(record.order_hash, SwapStatus.SRC_ESCROW_CREATED)
        wrong, _ = generate_secret()

        with pytest.raises(SecretMismatchError):
            await ledger.update_status(record.order_hash, SwapStatus.SECRET_REVEALED, secret=wrong)
        assert (await ledger.get(record.order_hash)).swap_status == SwapStatus.SRC_ESCROW_CREATED

    @pytest.mark.asyncio
    async def test_placeholder_tx_rejected(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)

        with pytest.raises(ValidationError):
            await ledger.update_status(
                record.order_hash, SwapStatus.SRC_ESCROW_CREATED, fill_tx=ZERO_BYTES32
            )

    @pytest.mark.asyncio
    async def test_last_error_only_exposed_when_failed(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        swap = await ledger.update_fields(record.order_hash, last_error="transient")
        assert swap.to_dict()["lastError"] is None

        swap = await ledger.mark_failed(record.order_hash, "InvalidSecret")
        assert swap.to_dict()["lastError"] == "InvalidSecret"
        assert swap.to_dict()["status"] == "FAILED"


class TestRetries:
    """Tests for retry accounting."""

    @pytest.mark.asyncio
    async def test_increment_retry(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)

        assert await ledger.increment_retry(record.order_hash, "timeout") == 1
        assert await ledger.increment_retry(record.order_hash) == 2
        swap = await ledger.get(record.order_hash)
        assert swap.retry_count == 2
        assert swap.last_error == "timeout"

    @pytest.mark.asyncio
    async def test_increment_retry_on_terminal(self, ledger: SwapLedger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        await ledger.mark_failed(record.order_hash, "boom")

        with pytest.raises(InvalidTransition):
            await ledger.increment_retry(record.order_hash)


class TestQueries:
    """Tests for listing and statistics."""

    @pytest.mark.asyncio
    async def test_list_pending_oldest_first(self, ledger: SwapLedger, make_swap):
        now = utcnow()
        newer, _ = make_swap(created_at=now)
        older, _ = make_swap(created_at=now - timedelta(minutes=5))
        done, _ = make_swap(created_at=now - timedelta(minutes=10))
        for record in (newer, older, done):
            await ledger.create(record)
        await ledger.mark_failed(done.order_hash, "boom")

        pending = await ledger.list_pending()

        assert [s.order_hash for s in pending] == [older.order_hash, newer.order_hash]
        failed = await ledger.list_by_status(SwapStatus.FAILED)
        assert [s.order_hash for s in failed] == [done.order_hash]

    @pytest.mark.asyncio
    async def test_processed_order_hashes(self, ledger: SwapLedger, make_swap):
        created, _ = make_swap()
        filled, _ = make_swap()
        await ledger.create(created)
        await ledger.create(filled)
        await ledger.update_status(filled.order_hash, SwapStatus.SRC_ESCROW_CREATED)

        assert await ledger.list_processed_order_hashes() == {filled.order_hash}

    @pytest.mark.asyncio
    async def test_statistics(self, ledger: SwapLedger, make_swap):
        records = [make_swap()[0] for _ in range(4)]
        for record in records:
            await ledger.create(record)
        await ledger.update_status(records[0].order_hash, SwapStatus.SRC_ESCROW_CREATED)
        await ledger.update_status(records[0].order_hash, SwapStatus.SECRET_REVEALED)
        await ledger.update_status(records[0].order_hash, SwapStatus.COMPLETED)
        await ledger.mark_failed(records[1].order_hash, "boom")
        await ledger.update_status(records[2].order_hash, SwapStatus.EXPIRED)

        stats = await ledger.statistics()

        assert stats["total"] == 4
        assert stats["completed"] == 1
        assert stats["failed"] == 1
        assert stats["expired"] == 1
        assert stats["pending"] == 1
        assert stats["success_rate"] == 25.0
        assert stats["by_status"]["CREATED"] == 1

    @pytest.mark.asyncio
    async def test_archive_terminal(self, ledger: SwapLedger, make_swap):
        live, _ = make_swap()
        done, _ = make_swap()
        await ledger.create(live)
        await ledger.create(done)
        await ledger.mark_failed(done.order_hash, "boom")

        archived = await ledger.archive_terminal(older_than=timedelta(seconds=-1))

        assert archived == 1
        assert (await ledger.get(done.order_hash)).archived_at is not None
        assert await ledger.list_by_status(SwapStatus.FAILED) == []
        # Archived swaps still count as processed after a restart
        assert done.order_hash in await ledger.list_processed_order_hashes()
        assert [s.order_hash for s in await ledger.list_pending()] == [live.order_hash]
