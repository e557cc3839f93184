"""Pytest configuration and fixtures."""

import itertools
import os
import secrets

import pytest
import pytest_asyncio

# Set test environment
os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["DEBUG"] = "true"
os.environ["DRY_RUN"] = "true"

from swapresolver.chains.registry import ChainRegistry
from swapresolver.chains.simulated import SimulatedChainClient, SimulatedOrderFiller
from swapresolver.crypto import generate_secret
from swapresolver.ledger.database import Database
from swapresolver.ledger.models import SwapRecord, SwapStatus
from swapresolver.ledger.secret_store import SecretStore
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.orders.models import Order, PendingOrder

RESOLVER = "0x" + "aa" * 20
MAKER = "0x" + "bb" * 20
SRC_TOKEN = "0x" + "11" * 20
DST_TOKEN = "0x" + "22" * 20
SRC_CHAIN = 8453
DST_CHAIN = 10


class FakeSleep:
    """Records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest_asyncio.fixture
async def db():
    """In-memory database with all tables created."""
    database = Database("sqlite+aiosqlite:///:memory:")
    await database.init()
    yield database
    await database.close()


@pytest.fixture
def ledger(db) -> SwapLedger:
    return SwapLedger(db)


@pytest.fixture
def secret_store(db, tmp_path) -> SecretStore:
    return SecretStore(db, tmp_path / "secrets")


@pytest.fixture
def src_chain() -> SimulatedChainClient:
    return SimulatedChainClient(SRC_CHAIN, RESOLVER)


@pytest.fixture
def dst_chain() -> SimulatedChainClient:
    return SimulatedChainClient(DST_CHAIN, RESOLVER)


@pytest.fixture
def registry(src_chain, dst_chain) -> ChainRegistry:
    return ChainRegistry([src_chain, dst_chain])


@pytest.fixture
def filler() -> SimulatedOrderFiller:
    return SimulatedOrderFiller(RESOLVER)


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()


@pytest.fixture
def make_pending(filler):
    """Factory for signed pending orders. Returns ``(pending, secret)``."""
    salts = itertools.count(1)

    def _make(
        making_amount: int = 1000,
        dst_amount: int = None,
        src_chain_id: int = SRC_CHAIN,
        dst_chain_id: int = DST_CHAIN,
        created_at: int = None,
        timelocks: int = None,
    ):
        salt = next(salts)
        secret, hashlock = generate_secret()
        dst_amount = dst_amount if dst_amount is not None else making_amount
        order = Order(
            salt=salt,
            maker=MAKER,
            receiver=MAKER,
            maker_asset=SRC_TOKEN,
            taker_asset=SRC_TOKEN,
            making_amount=making_amount,
            taking_amount=dst_amount,
            maker_traits=0,
        )
        pending = PendingOrder(
            order_hash=filler.order_hash(order, src_chain_id),
            hashlock=hashlock,
            order=order,
            r="0x" + "01" * 32,
            vs="0x" + "02" * 32,
            extension=b"",
            src_chain_id=src_chain_id,
            dst_chain_id=dst_chain_id,
            dst_token=DST_TOKEN,
            dst_amount=dst_amount,
            created_at=created_at if created_at is not None else salt,
            source="index",
            timelocks=timelocks,
        )
        return pending, secret

    return _make


@pytest.fixture
def make_swap():
    """Factory for unsaved CREATED swap records. Returns ``(record, secret)``."""

    def _make(**overrides):
        secret, hashlock = generate_secret()
        fields = dict(
            order_hash="0x" + secrets.token_hex(32),
            hashlock=hashlock,
            maker=MAKER,
            taker=RESOLVER,
            src_chain_id=SRC_CHAIN,
            src_token=SRC_TOKEN,
            src_amount=1000,
            dst_chain_id=DST_CHAIN,
            dst_token=DST_TOKEN,
            dst_amount=1000,
            status=SwapStatus.CREATED,
        )
        fields.update(overrides)
        return SwapRecord(**fields), secret

    return _make
