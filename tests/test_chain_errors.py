"""Tests for chain failure classification and the call boundary."""

import pytest

from swapresolver.chains.base import ContractCall
from swapresolver.chains.errors import FailureKind, classify_failure
from swapresolver.chains.simulated import FILL_METHOD, SimulatedChainClient

from conftest import RESOLVER


@pytest.mark.parametrize(
    "message,kind",
    [
        ("execution reverted: InvalidSecret()", FailureKind.INVALID_SECRET),
        ("execution reverted: InvalidTime()", FailureKind.INVALID_TIME),
        ("execution reverted: OrderExpired()", FailureKind.INVALID_TIME),
        ("execution reverted: InvalidCaller()", FailureKind.INVALID_CALLER),
        ("execution reverted: PrivateOrder()", FailureKind.INVALID_CALLER),
        ("execution reverted: BitInvalidatedOrder()", FailureKind.ORDER_FILLED),
        ("execution reverted: BadSignature()", FailureKind.VALIDATION),
        ("execution reverted: InvalidImmutables()", FailureKind.VALIDATION),
        ("execution reverted: SomethingElse()", FailureKind.REVERTED),
        ("ReadTimeout: request timed out", FailureKind.TRANSIENT),
        ("nonce too low", FailureKind.TRANSIENT),
        ("replacement transaction underpriced", FailureKind.TRANSIENT),
        ("", FailureKind.TRANSIENT),
    ],
)
def test_classify_failure(message, kind):
    assert classify_failure(message) == kind


def test_only_transient_is_retryable():
    assert FailureKind.TRANSIENT.retryable
    assert not any(kind.retryable for kind in FailureKind if kind != FailureKind.TRANSIENT)


class TestExecute:
    """Tests for the simulate, submit and confirm boundary."""

    @pytest.mark.asyncio
    async def test_success(self):
        client = SimulatedChainClient(8453, RESOLVER)
        call = ContractCall(to="0x" + "01" * 20, method=FILL_METHOD, args={"hashlock": "0x" + "02" * 32})

        result = await client.execute(call)

        assert result.success
        assert result.tx_ref.startswith("0x")
        assert result.receipt.events[0].name == "SrcEscrowCreated"

    @pytest.mark.asyncio
    async def test_simulation_failure_sends_nothing(self):
        client = SimulatedChainClient(8453, RESOLVER)
        client.fail(FILL_METHOD, "execution reverted: BadSignature()")
        call = ContractCall(to="0x" + "01" * 20, method=FILL_METHOD)

        result = await client.execute(call)

        assert not result.success
        assert result.failure == FailureKind.VALIDATION
        assert not result.retryable
        assert client.submitted == []

    @pytest.mark.asyncio
    async def test_confirmation_failure_keeps_tx_ref(self):
        client = SimulatedChainClient(8453, RESOLVER)
        client.fail(FILL_METHOD, "connection reset", stage="confirm")
        call = ContractCall(to="0x" + "01" * 20, method=FILL_METHOD)

        result = await client.execute(call)

        assert not result.success
        assert result.retryable
        assert result.tx_ref is not None

    @pytest.mark.asyncio
    async def test_allowance_granted_once(self):
        client = SimulatedChainClient(8453, RESOLVER)
        token, spender = "0x" + "0a" * 20, "0x" + "0b" * 20

        first = await client.ensure_allowance(token, spender, 500)
        second = await client.ensure_allowance(token, spender, 400)

        assert first.success and first.tx_ref is not None
        assert second.success and second.tx_ref is None
        assert len(client.calls("approve")) == 1

    @pytest.mark.asyncio
    async def test_read_balance(self):
        client = SimulatedChainClient(8453, RESOLVER)
        token = "0x" + "0A" * 20
        client.balances[(token.lower(), RESOLVER)] = 750

        result = await client.read_balance(token, RESOLVER)

        assert result.success
        assert result.value == 750

    @pytest.mark.asyncio
    async def test_clear_failures(self):
        client = SimulatedChainClient(8453, RESOLVER)
        client.fail_always(FILL_METHOD, "execution reverted: InvalidCaller()")
        call = ContractCall(to="0x" + "01" * 20, method=FILL_METHOD, args={"hashlock": "0x" + "02" * 32})
        assert (await client.execute(call)).failure == FailureKind.INVALID_CALLER

        client.clear_failures()

        assert (await client.execute(call)).success
