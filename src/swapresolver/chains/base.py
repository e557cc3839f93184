"""Chain client interface.

Each chain the resolver serves has one ``ChainClient``. Implementations may
raise whatever their RPC stack raises; the concrete helpers on the base
class catch those at the boundary and return a ``CallResult`` instead, so
engines only ever see typed outcomes.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from swapresolver.chains.errors import FailureKind, classify_failure
from swapresolver.crypto import is_placeholder

logger = logging.getLogger(__name__)


@dataclass
class ContractCall:
    """Opaque contract invocation built by an ``OrderFiller``."""
    to: str
    method: str
    args: dict = field(default_factory=dict)
    value: int = 0                  # Native value sent with the call
    description: str = ""           # For logs


@dataclass
class ChainEvent:
    """Decoded log entry."""
    name: str
    address: str
    args: dict = field(default_factory=dict)


@dataclass
class Receipt:
    """Confirmed transaction receipt."""
    tx_ref: str
    success: bool = True
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    events: list[ChainEvent] = field(default_factory=list)


@dataclass
class CallResult:
    """Outcome of a ledger-facing call: success or classified failure."""
    success: bool
    tx_ref: Optional[str] = None
    receipt: Optional[Receipt] = None
    value: Any = None               # Read results (balance, allowance)
    failure: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def retryable(self) -> bool:
        return not self.success and self.failure is not None and self.failure.retryable

    @classmethod
    def ok(
        cls,
        tx_ref: Optional[str] = None,
        receipt: Optional[Receipt] = None,
        value: Any = None,
    ) -> "CallResult":
        return cls(success=True, tx_ref=tx_ref, receipt=receipt, value=value)

    @classmethod
    def failed(cls, error: str, kind: Optional[FailureKind] = None) -> "CallResult":
        return cls(success=False, failure=kind or classify_failure(error), error=error)


class ChainClient(ABC):
    """Abstract ledger client for one chain."""

    def __init__(self, chain_id: int, address: str):
        """Initialize client.

        Args:
            chain_id: Chain identifier
            address: Account the client signs for (the resolver)
        """
        self.chain_id = chain_id
        self.address = address.lower()

    @abstractmethod
    async def balance_of(self, token: str, owner: str) -> int:
        pass

    @abstractmethod
    async def allowance(self, token: str, owner: str, spender: str) -> int:
        pass

    @abstractmethod
    async def approve(self, token: str, spender: str, amount: int) -> str:
        """Submit an approval. Returns the transaction reference."""
        pass

    @abstractmethod
    async def simulate(self, call: ContractCall) -> None:
        """Dry-run a call; raise with the revert reason if it would fail."""
        pass

    @abstractmethod
    async def submit(self, call: ContractCall) -> str:
        """Sign and broadcast a call. Returns the transaction reference."""
        pass

    @abstractmethod
    async def wait_for_confirmation(self, tx_ref: str, timeout: float = 120.0) -> Receipt:
        pass

    @abstractmethod
    def parse_events(self, receipt: Receipt) -> list[ChainEvent]:
        pass

    # Boundary helpers: exceptions stop here

    async def read_balance(self, token: str, owner: str) -> CallResult:
        try:
            return CallResult.ok(value=await self.balance_of(token, owner))
        except Exception as e:
            return CallResult.failed(f"balanceOf failed: {e}", classify_failure(str(e)))

    async def ensure_allowance(self, token: str, spender: str, amount: int) -> CallResult:
        """Approve ``spender`` if its allowance is below ``amount`` and wait for the receipt."""
        try:
            current = await self.allowance(token, self.address, spender)
            if current >= amount:
                return CallResult.ok(value=current)
            logger.info(
                f"[chain {self.chain_id}] Approving {spender[:10]}... for {amount} of {token[:10]}..."
            )
            tx_ref = await self.approve(token, spender, amount)
            receipt = await self.wait_for_confirmation(tx_ref)
        except Exception as e:
            return CallResult.failed(f"approve failed: {e}", classify_failure(str(e)))
        if not receipt.success:
            return CallResult.failed(f"approve reverted in {tx_ref}", FailureKind.REVERTED)
        return CallResult.ok(tx_ref=tx_ref, receipt=receipt, value=amount)

    async def execute(
        self,
        call: ContractCall,
        simulate: bool = True,
        on_submitted: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> CallResult:
        """Simulate, submit and confirm a call.

        Simulation fails fast on deterministic errors (wrong secret,
        timelock not open, unauthorized caller) without spending gas.
        ``on_submitted`` runs with the transaction reference before the
        receipt is awaited, so callers can persist it.
        """
        label = call.description or call.method
        if simulate:
            try:
                await self.simulate(call)
            except Exception as e:
                result = CallResult.failed(
                    f"simulation of {label} failed: {e}", classify_failure(str(e))
                )
                logger.warning(
                    f"[chain {self.chain_id}] {label} simulation failed "
                    f"({result.failure.value}): {e}"
                )
                return result

        try:
            tx_ref = await self.submit(call)
        except Exception as e:
            return CallResult.failed(f"submit of {label} failed: {e}", classify_failure(str(e)))

        if is_placeholder(tx_ref):
            return CallResult.failed(
                f"{label} returned placeholder transaction reference {tx_ref!r}",
                FailureKind.VALIDATION,
            )

        if on_submitted is not None:
            await on_submitted(tx_ref)

        return await self.confirm(tx_ref, label)

    async def confirm(self, tx_ref: str, label: str = "") -> CallResult:
        """Wait for an already submitted transaction; never resubmits."""
        label = label or tx_ref
        try:
            receipt = await self.wait_for_confirmation(tx_ref)
        except Exception as e:
            result = CallResult.failed(
                f"confirmation of {tx_ref} failed: {e}", classify_failure(str(e))
            )
            result.tx_ref = tx_ref
            return result

        if not receipt.success:
            result = CallResult.failed(f"{label} reverted in {tx_ref}", FailureKind.REVERTED)
            result.tx_ref = tx_ref
            result.receipt = receipt
            return result

        if not receipt.events:
            try:
                receipt.events = self.parse_events(receipt)
            except Exception as e:
                logger.warning(f"[chain {self.chain_id}] Could not decode events of {tx_ref}: {e}")
        logger.info(f"[chain {self.chain_id}] {label} confirmed: {tx_ref}")
        return CallResult.ok(tx_ref=tx_ref, receipt=receipt)
