"""Escrow Withdrawal Engine.

Claims an escrow with a revealed secret. Every withdrawal is simulated
before it is sent so deterministic failures (wrong secret, timelock window
not open, unauthorized caller) cost no gas. Those failures are never
retried; transient ones back off exponentially.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from swapresolver.chains.errors import FailureKind
from swapresolver.chains.registry import ChainRegistry
from swapresolver.crypto import is_placeholder, verify_secret
from swapresolver.errors import ResolverError, SecretMismatchError
from swapresolver.ledger.models import SwapRecord, SwapStatus, to_epoch
from swapresolver.ledger.secret_store import SecretStore
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.orders.filler import OrderFiller
from swapresolver.timelocks import Stage, Timelocks, format_duration
from swapresolver.withdrawal.base import WithdrawalResult, WithdrawTarget

logger = logging.getLogger(__name__)

# Statuses in which a swap's escrows may be claimed
WITHDRAWABLE_STATUSES = (SwapStatus.SECRET_REVEALED, SwapStatus.SRC_WITHDRAWN)


class WithdrawalEngine:
    """Drives escrow withdrawals against the right chain."""

    def __init__(
        self,
        ledger: SwapLedger,
        secrets: SecretStore,
        registry: ChainRegistry,
        filler: OrderFiller,
        resolver_address: str,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize engine.

        Args:
            ledger: Swap Ledger
            secrets: Secret Store, confirmed or failed after each withdrawal
            registry: Chain clients by chain id
            filler: Builds withdrawal calls
            resolver_address: This resolver's account
            max_retries: Attempts per withdrawal
            retry_backoff_seconds: Backoff base; attempt n waits 2**n * base
            sleep: Awaitable sleep, replaced in tests
            clock: Current unix time, replaced in tests
        """
        self.ledger = ledger
        self.secrets = secrets
        self.registry = registry
        self.filler = filler
        self.resolver_address = resolver_address.lower()
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._clock = clock

    def backoff(self, attempt: int) -> float:
        return (2 ** attempt) * self.retry_backoff_seconds

    async def withdraw(self, target: WithdrawTarget) -> WithdrawalResult:
        """Single withdrawal attempt: simulate, submit, confirm."""
        try:
            verify_secret(target.secret, target.hashlock)
        except SecretMismatchError as e:
            return WithdrawalResult(
                success=False, target=target, failure=FailureKind.INVALID_SECRET, error=str(e)
            )

        try:
            client = self.registry.get(target.chain_id)
        except ResolverError as e:
            return WithdrawalResult(
                success=False, target=target, failure=FailureKind.VALIDATION, error=str(e)
            )

        result = await client.execute(self.filler.build_withdraw_call(target), simulate=True)
        if not result.success:
            return WithdrawalResult(
                success=False, target=target, tx_ref=result.tx_ref,
                failure=result.failure, error=result.error,
            )
        if is_placeholder(result.tx_ref):
            return WithdrawalResult(
                success=False, target=target, failure=FailureKind.VALIDATION,
                error=f"Placeholder transaction reference {result.tx_ref!r}",
            )

        gas_used = result.receipt.gas_used if result.receipt else None
        return WithdrawalResult(
            success=True, target=target, tx_ref=result.tx_ref, gas_used=gas_used
        )

    async def withdraw_with_retry(
        self, target: WithdrawTarget, max_attempts: Optional[int] = None
    ) -> WithdrawalResult:
        """Withdraw with exponential backoff.

        Stops at the first non-retryable failure or after ``max_attempts``.
        Confirms the secret on success and marks it failed otherwise.
        """
        max_attempts = max(1, max_attempts or self.max_retries)
        label = f"{target.side} escrow {target.escrow[:10]}... ({target.order_hash[:10]}...)"

        result = WithdrawalResult(success=False, target=target)
        for attempt in range(1, max_attempts + 1):
            logger.info(f"Withdrawing {label} attempt {attempt}/{max_attempts}")
            result = await self.withdraw(target)
            result.attempts = attempt

            if result.success:
                logger.info(f"Withdrew {label}: {result.tx_ref}")
                if await self.secrets.has_secret(target.hashlock):
                    await self.secrets.confirm(target.hashlock, result.tx_ref, result.gas_used)
                return result

            if not result.retryable:
                logger.error(
                    f"Withdrawal of {label} failed ({result.failure.value}), not retrying: "
                    f"{result.error}"
                )
                break

            if attempt < max_attempts:
                delay = self.backoff(attempt)
                logger.warning(
                    f"Withdrawal of {label} attempt {attempt} failed: {result.error}; "
                    f"retrying in {delay}s"
                )
                await self._sleep(delay)
        else:
            logger.error(f"Withdrawal of {label} failed after {max_attempts} attempts")

        reason = f"{target.side} withdrawal failed ({result.failure.value}): {result.error}"
        if await self.secrets.has_secret(target.hashlock):
            await self.secrets.mark_failed(target.hashlock, reason)
        result.error = reason
        return result

    async def list_withdrawable(self) -> list[WithdrawTarget]:
        """Escrows this resolver can claim now, oldest swap first.

        Escrows whose withdrawal window has not opened yet are left for a
        later tick; claiming them early reverts with InvalidTime.
        """
        now = self._clock()
        targets: list[WithdrawTarget] = []
        for swap in await self.ledger.list_pending():
            if swap.swap_status not in WITHDRAWABLE_STATUSES:
                continue
            secret = swap.secret or await self.secrets.get_by_secret_hash(swap.hashlock)
            if secret is None:
                continue
            for target in self.targets_for(swap, secret):
                opens_at = self.window_opens_at(swap, target.is_source)
                if opens_at is not None and now < opens_at:
                    logger.debug(
                        f"{target.side.capitalize()} escrow of {swap.order_hash[:10]}... "
                        f"opens for withdrawal in {format_duration(int(opens_at - now))}"
                    )
                    continue
                targets.append(target)
        return targets

    @staticmethod
    def window_opens_at(swap: SwapRecord, is_source: bool) -> Optional[float]:
        """Unix time the private withdrawal window of one escrow opens.

        ``None`` when the swap carries no timelocks or the escrow's
        deployment time is unknown.
        """
        if not swap.timelocks:
            return None
        timelocks = Timelocks.unpack(swap.timelocks)
        if is_source:
            deployed_at = timelocks.deployed_at or to_epoch(swap.src_escrow_created_at)
            stage = Stage.SRC_WITHDRAWAL
        else:
            deployed_at = to_epoch(swap.dst_escrow_created_at)
            stage = Stage.DST_WITHDRAWAL
        if not deployed_at:
            return None
        return timelocks.with_deployed_at(int(deployed_at)).deadline(stage)

    def targets_for(self, swap: SwapRecord, secret: str) -> list[WithdrawTarget]:
        """Un-withdrawn escrows of one swap owned by this resolver.

        The taker claims the source escrow. The destination escrow is only
        ours to claim on self-authored orders, where we are the maker.
        """
        targets = []
        if (
            swap.src_escrow
            and not swap.src_withdraw_tx
            and swap.taker.lower() == self.resolver_address
            and swap.src_chain_id in self.registry
        ):
            targets.append(
                WithdrawTarget(
                    order_hash=swap.order_hash,
                    hashlock=swap.hashlock,
                    chain_id=swap.src_chain_id,
                    escrow=swap.src_escrow,
                    is_source=True,
                    secret=secret,
                    maker=swap.maker,
                    taker=swap.taker,
                    token=swap.src_token,
                    amount=swap.src_amount,
                    safety_deposit=swap.src_safety_deposit or 0,
                    timelocks=swap.timelocks,
                )
            )
        if (
            swap.dst_escrow
            and not swap.dst_withdraw_tx
            and swap.maker.lower() == self.resolver_address
            and swap.dst_chain_id in self.registry
        ):
            targets.append(
                WithdrawTarget(
                    order_hash=swap.order_hash,
                    hashlock=swap.hashlock,
                    chain_id=swap.dst_chain_id,
                    escrow=swap.dst_escrow,
                    is_source=False,
                    secret=secret,
                    maker=swap.maker,
                    taker=swap.taker,
                    token=swap.dst_token,
                    amount=swap.dst_amount,
                    safety_deposit=swap.dst_safety_deposit or 0,
                    timelocks=swap.timelocks,
                )
            )
        return targets
