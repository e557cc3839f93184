"""Tests for the Escrow Withdrawal Engine."""

import pytest
from pydantic import ValidationError as PydanticValidationError

from swapresolver.chains.errors import FailureKind
from swapresolver.chains.simulated import WITHDRAW_METHOD
from swapresolver.config import Settings
from swapresolver.crypto import generate_secret
from swapresolver.ledger.models import SecretStatus, SwapStatus, to_epoch
from swapresolver.timelocks import Timelocks
from swapresolver.withdrawal.engine import WithdrawalEngine

from conftest import DST_CHAIN, RESOLVER, SRC_CHAIN

SRC_ESCROW = "0x" + "5e" * 20
DST_ESCROW = "0x" + "de" * 20


@pytest.fixture
def engine(ledger, secret_store, registry, filler, fake_sleep) -> WithdrawalEngine:
    return WithdrawalEngine(
        ledger,
        secret_store,
        registry,
        filler,
        RESOLVER,
        max_retries=3,
        retry_backoff_seconds=1.0,
        sleep=fake_sleep,
    )


@pytest.fixture
def revealed_swap(ledger, secret_store, make_swap):
    """Create a swap in SECRET_REVEALED with its secret stored."""

    async def _create(**overrides):
        record, secret = make_swap(**overrides)
        await ledger.create(record)
        await ledger.update_status(
            record.order_hash, SwapStatus.SRC_ESCROW_CREATED, src_escrow=SRC_ESCROW
        )
        if record.maker == RESOLVER:
            await ledger.update_status(
                record.order_hash, SwapStatus.DST_FUNDED, dst_escrow=DST_ESCROW
            )
        swap = await ledger.update_status(
            record.order_hash, SwapStatus.SECRET_REVEALED, secret=secret
        )
        await secret_store.put(secret, record.order_hash)
        return swap, secret

    return _create


class TestTargets:
    """Tests for withdrawable escrow discovery."""

    @pytest.mark.asyncio
    async def test_taker_claims_source(self, engine, revealed_swap):
        swap, secret = await revealed_swap()

        targets = await engine.list_withdrawable()

        assert len(targets) == 1
        target = targets[0]
        assert target.is_source
        assert target.chain_id == SRC_CHAIN
        assert target.escrow == SRC_ESCROW
        assert target.secret == secret
        assert target.side == "source"

    @pytest.mark.asyncio
    async def test_self_authored_claims_both(self, engine, revealed_swap):
        await revealed_swap(maker=RESOLVER)

        targets = await engine.list_withdrawable()

        assert [(t.chain_id, t.is_source) for t in targets] == [
            (SRC_CHAIN, True),
            (DST_CHAIN, False),
        ]

    @pytest.mark.asyncio
    async def test_nothing_before_reveal(self, engine, ledger, make_swap):
        record, _ = make_swap()
        await ledger.create(record)
        await ledger.update_status(
            record.order_hash, SwapStatus.SRC_ESCROW_CREATED, src_escrow=SRC_ESCROW
        )

        assert await engine.list_withdrawable() == []

    @pytest.mark.asyncio
    async def test_source_waits_for_withdrawal_window(
        self, ledger, secret_store, registry, filler, revealed_swap
    ):
        deployed_at = 1_800_000_000
        timelocks = Timelocks.from_durations(deployed_at=deployed_at)
        swap, _ = await revealed_swap(timelocks=timelocks.pack())
        now = [float(deployed_at)]
        engine = WithdrawalEngine(
            ledger, secret_store, registry, filler, RESOLVER, clock=lambda: now[0]
        )

        assert engine.window_opens_at(swap, is_source=True) == deployed_at + 600
        assert await engine.list_withdrawable() == []

        now[0] += timelocks.src_withdrawal - 1
        assert await engine.list_withdrawable() == []

        now[0] += 1
        targets = await engine.list_withdrawable()
        assert [t.order_hash for t in targets] == [swap.order_hash]

    @pytest.mark.asyncio
    async def test_window_from_escrow_creation_time(
        self, ledger, secret_store, registry, filler, revealed_swap
    ):
        timelocks = Timelocks.from_durations()
        swap, _ = await revealed_swap(timelocks=timelocks.pack())
        created = to_epoch(swap.src_escrow_created_at)
        now = [created]
        engine = WithdrawalEngine(
            ledger, secret_store, registry, filler, RESOLVER, clock=lambda: now[0]
        )

        assert engine.window_opens_at(swap, is_source=True) == int(created) + 600
        assert await engine.list_withdrawable() == []

        now[0] = created + timelocks.src_withdrawal
        assert len(await engine.list_withdrawable()) == 1

    @pytest.mark.asyncio
    async def test_no_timelocks_means_open(self, engine, revealed_swap):
        swap, _ = await revealed_swap()

        assert engine.window_opens_at(swap, is_source=True) is None
        assert len(await engine.list_withdrawable()) == 1


class TestWithdraw:
    """Tests for withdrawal attempts and retries."""

    @pytest.mark.asyncio
    async def test_success_confirms_secret(
        self, engine, revealed_swap, secret_store, src_chain, fake_sleep
    ):
        swap, _ = await revealed_swap()
        target = (await engine.list_withdrawable())[0]

        result = await engine.withdraw_with_retry(target)

        assert result.success
        assert result.attempts == 1
        assert result.gas_used == 150_000
        assert len(src_chain.calls(WITHDRAW_METHOD)) == 1
        record = await secret_store.get_record(swap.hashlock)
        assert record.status == SecretStatus.CONFIRMED
        assert record.tx_ref == result.tx_ref
        assert fake_sleep.delays == []

    @pytest.mark.asyncio
    async def test_invalid_time_not_retried(
        self, engine, revealed_swap, secret_store, src_chain, fake_sleep
    ):
        swap, _ = await revealed_swap()
        src_chain.fail_always(WITHDRAW_METHOD, "execution reverted: InvalidTime()")
        target = (await engine.list_withdrawable())[0]

        result = await engine.withdraw_with_retry(target)

        assert not result.success
        assert result.attempts == 1
        assert result.failure == FailureKind.INVALID_TIME
        assert src_chain.submitted == []
        assert fake_sleep.delays == []
        record = await secret_store.get_record(swap.hashlock)
        assert record.status == SecretStatus.FAILED
        assert "invalid_time" in record.failure_reason

    @pytest.mark.asyncio
    async def test_transient_then_success(self, engine, revealed_swap, src_chain, fake_sleep):
        await revealed_swap()
        src_chain.fail(WITHDRAW_METHOD, "connection reset by peer", times=2, stage="submit")
        target = (await engine.list_withdrawable())[0]

        result = await engine.withdraw_with_retry(target)

        assert result.success
        assert result.attempts == 3
        assert fake_sleep.delays == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_transient_exhausts_attempts(
        self, engine, revealed_swap, secret_store, src_chain, fake_sleep
    ):
        swap, _ = await revealed_swap()
        src_chain.fail_always(WITHDRAW_METHOD, "503 service unavailable", stage="submit")
        target = (await engine.list_withdrawable())[0]

        result = await engine.withdraw_with_retry(target)

        assert not result.success
        assert result.attempts == 3
        assert result.failure == FailureKind.TRANSIENT
        assert fake_sleep.delays == [2.0, 4.0]
        assert result.error.startswith("source withdrawal failed")
        assert (await secret_store.get_record(swap.hashlock)).status == SecretStatus.FAILED

    @pytest.mark.asyncio
    async def test_wrong_secret_never_reaches_chain(self, engine, revealed_swap, src_chain):
        await revealed_swap()
        target = (await engine.list_withdrawable())[0]
        target.secret = generate_secret()[0]

        result = await engine.withdraw(target)

        assert not result.success
        assert result.failure == FailureKind.INVALID_SECRET
        assert src_chain.simulated == []

    @pytest.mark.asyncio
    async def test_unknown_chain(self, engine, revealed_swap):
        await revealed_swap()
        target = (await engine.list_withdrawable())[0]
        target.chain_id = 999

        result = await engine.withdraw(target)

        assert result.failure == FailureKind.VALIDATION
        assert not result.retryable

    @pytest.mark.asyncio
    async def test_zero_retry_budget_still_attempts_once(
        self, ledger, secret_store, registry, filler, revealed_swap, src_chain, fake_sleep
    ):
        await revealed_swap()
        src_chain.fail_always(WITHDRAW_METHOD, "503 service unavailable", stage="submit")
        engine = WithdrawalEngine(
            ledger, secret_store, registry, filler, RESOLVER, max_retries=0, sleep=fake_sleep
        )
        target = (await engine.list_withdrawable())[0]

        result = await engine.withdraw_with_retry(target)

        assert not result.success
        assert result.attempts == 1
        assert result.failure == FailureKind.TRANSIENT
        assert fake_sleep.delays == []

    def test_settings_reject_zero_retries(self):
        with pytest.raises(PydanticValidationError):
            Settings(resolver_address=RESOLVER, max_retries=0)

    def test_backoff(self, engine):
        assert [engine.backoff(n) for n in (1, 2, 3)] == [2.0, 4.0, 8.0]
