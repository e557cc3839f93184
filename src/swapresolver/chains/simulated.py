"""Simulated chain client and order filler.

In-memory implementations used in dry-run mode and tests. No transactions
are broadcast; escrow addresses and transaction references are derived
deterministically so repeated runs produce the same values. Failures can
be scripted per method and stage.
"""

import json
import logging
from collections import defaultdict
from typing import Optional

from swapresolver.chains.base import ChainClient, ChainEvent, ContractCall, Receipt
from swapresolver.crypto import compute_hashlock, keccak256
from swapresolver.errors import ValidationError
from swapresolver.ledger.models import SwapRecord
from swapresolver.orders.filler import (
    DST_ESCROW_EVENT,
    SRC_ESCROW_EVENT,
    Approval,
    OrderFiller,
)
from swapresolver.orders.models import Order, PendingOrder
from swapresolver.withdrawal.base import WithdrawTarget

logger = logging.getLogger(__name__)

FILL_METHOD = "fillOrderArgs"
CREATE_DST_METHOD = "createDstEscrow"
WITHDRAW_METHOD = "withdraw"
APPROVE_METHOD = "approve"

STAGES = ("simulate", "submit", "confirm")


def derive_address(*parts) -> str:
    """Deterministic pseudo-address."""
    digest = keccak256(":".join(str(p) for p in parts).encode())
    return "0x" + digest[-20:].hex()


class SimulatedChainClient(ChainClient):
    """In-memory chain.

    Example:
        client = SimulatedChainClient(8453, resolver)
        client.fail(WITHDRAW_METHOD, "execution reverted: InvalidSecret()")
    """

    def __init__(self, chain_id: int, address: str, gas_used: int = 150_000):
        super().__init__(chain_id, address)
        self.gas_used = gas_used
        self.balances: dict[tuple[str, str], int] = defaultdict(int)
        self.allowances: dict[tuple[str, str, str], int] = defaultdict(int)
        self.submitted: list[ContractCall] = []
        self.simulated: list[ContractCall] = []
        self.receipts: dict[str, Receipt] = {}
        self._pending: dict[str, ContractCall] = {}
        self._failures: dict[tuple[str, str], list[Optional[str]]] = defaultdict(list)
        self._always: dict[tuple[str, str], str] = {}
        self._nonce = 0

    # Scripting

    def fail(self, method: str, message: str, times: int = 1, stage: str = "simulate") -> None:
        """Fail the next ``times`` calls of ``method`` at ``stage``."""
        if stage not in STAGES:
            raise ValueError(f"Unknown stage {stage!r}")
        self._failures[(stage, method)].extend([message] * times)

    def fail_always(self, method: str, message: str, stage: str = "simulate") -> None:
        self._always[(stage, method)] = message

    def clear_failures(self) -> None:
        self._failures.clear()
        self._always.clear()

    def calls(self, method: str) -> list[ContractCall]:
        """Submitted calls of one method."""
        return [c for c in self.submitted if c.method == method]

    def _maybe_fail(self, stage: str, method: str) -> None:
        key = (stage, method)
        if key in self._always:
            raise RuntimeError(self._always[key])
        if self._failures.get(key):
            message = self._failures[key].pop(0)
            raise RuntimeError(message)

    # ChainClient

    async def balance_of(self, token: str, owner: str) -> int:
        return self.balances[(token.lower(), owner.lower())]

    async def allowance(self, token: str, owner: str, spender: str) -> int:
        return self.allowances[(token.lower(), owner.lower(), spender.lower())]

    async def approve(self, token: str, spender: str, amount: int) -> str:
        call = ContractCall(
            to=token,
            method=APPROVE_METHOD,
            args={"spender": spender, "amount": amount},
            description=f"approve {spender[:10]}...",
        )
        tx_ref = await self.submit(call)
        self.allowances[(token.lower(), self.address, spender.lower())] = amount
        return tx_ref

    async def simulate(self, call: ContractCall) -> None:
        self.simulated.append(call)
        self._maybe_fail("simulate", call.method)
        if call.method == WITHDRAW_METHOD:
            secret = call.args.get("secret", "")
            hashlock = call.args.get("hashlock", "")
            try:
                valid = compute_hashlock(secret) == hashlock.lower()
            except ValidationError:
                valid = False
            if not valid:
                raise RuntimeError("execution reverted: InvalidSecret()")

    async def submit(self, call: ContractCall) -> str:
        self._maybe_fail("submit", call.method)
        self._nonce += 1
        tx_ref = "0x" + keccak256(f"{self.chain_id}:{self._nonce}:{call.method}".encode()).hex()
        self.submitted.append(call)
        self._pending[tx_ref] = call
        logger.debug(f"[sim {self.chain_id}] submitted {call.method} as {tx_ref[:10]}...")
        return tx_ref

    async def wait_for_confirmation(self, tx_ref: str, timeout: float = 120.0) -> Receipt:
        if tx_ref in self.receipts:
            return self.receipts[tx_ref]
        call = self._pending.get(tx_ref)
        if call is None:
            raise RuntimeError(f"Unknown transaction {tx_ref}")
        self._maybe_fail("confirm", call.method)
        del self._pending[tx_ref]
        receipt = Receipt(
            tx_ref=tx_ref,
            success=True,
            block_number=self._nonce,
            gas_used=self.gas_used,
            events=self._events_for(call),
        )
        self.receipts[tx_ref] = receipt
        return receipt

    def parse_events(self, receipt: Receipt) -> list[ChainEvent]:
        return list(receipt.events)

    def _events_for(self, call: ContractCall) -> list[ChainEvent]:
        hashlock = call.args.get("hashlock")
        if call.method == FILL_METHOD:
            escrow = derive_address("src", self.chain_id, hashlock)
            return [ChainEvent(SRC_ESCROW_EVENT, call.to, {"escrow": escrow, "hashlock": hashlock})]
        if call.method == CREATE_DST_METHOD:
            escrow = derive_address("dst", self.chain_id, hashlock)
            return [ChainEvent(DST_ESCROW_EVENT, call.to, {"escrow": escrow, "hashlock": hashlock})]
        if call.method == WITHDRAW_METHOD:
            return [ChainEvent("EscrowWithdrawal", call.to, {"secret": call.args.get("secret")})]
        return []


class SimulatedOrderFiller(OrderFiller):
    """Filler producing calls the simulated chain understands."""

    def __init__(
        self,
        resolver_address: str,
        limit_order_protocol: Optional[str] = None,
        escrow_factory: Optional[str] = None,
    ):
        self.resolver_address = resolver_address.lower()
        self.limit_order_protocol = limit_order_protocol or derive_address("lop")
        self.escrow_factory = escrow_factory or derive_address("factory")

    def order_hash(self, order: Order, chain_id: int) -> str:
        payload = json.dumps({"chainId": chain_id, **order.to_dict()}, sort_keys=True)
        return "0x" + keccak256(payload.encode()).hex()

    def approval_targets(self, pending: PendingOrder) -> list[Approval]:
        token = pending.order.taker_asset
        amount = pending.order.taking_amount
        return [
            (token, self.limit_order_protocol, amount),
            (token, pending.escrow_factory or self.escrow_factory, amount),
        ]

    def build_fill_call(self, pending: PendingOrder) -> ContractCall:
        return ContractCall(
            to=self.limit_order_protocol,
            method=FILL_METHOD,
            args={
                "order": pending.order.to_dict(),
                "r": pending.r,
                "vs": pending.vs,
                "amount": pending.order.making_amount,
                "extension": "0x" + pending.extension.hex(),
                "hashlock": pending.hashlock,
                "orderHash": pending.order_hash,
            },
            value=pending.src_safety_deposit,
            description=f"fill {pending.order_hash[:10]}...",
        )

    def dst_approval_targets(self, swap: SwapRecord) -> list[Approval]:
        return [(swap.dst_token, self.escrow_factory, swap.dst_amount)]

    def build_dst_escrow_call(self, swap: SwapRecord) -> ContractCall:
        return ContractCall(
            to=self.escrow_factory,
            method=CREATE_DST_METHOD,
            args={
                "orderHash": swap.order_hash,
                "hashlock": swap.hashlock,
                "maker": swap.maker,
                "taker": swap.taker,
                "token": swap.dst_token,
                "amount": swap.dst_amount,
                "safetyDeposit": swap.dst_safety_deposit,
                "timelocks": swap.timelocks or 0,
            },
            value=swap.dst_safety_deposit or 0,
            description=f"create dst escrow {swap.order_hash[:10]}...",
        )

    def build_withdraw_call(self, target: WithdrawTarget) -> ContractCall:
        return ContractCall(
            to=target.escrow,
            method=WITHDRAW_METHOD,
            args={
                "secret": target.secret,
                "hashlock": target.hashlock,
                "orderHash": target.order_hash,
                "maker": target.maker,
                "taker": target.taker,
                "token": target.token,
                "amount": target.amount,
                "safetyDeposit": target.safety_deposit,
                "timelocks": target.timelocks or 0,
            },
            description=f"withdraw {target.side} {target.escrow[:10]}...",
        )
