"""SQL-over-HTTP swap index client.

Queries the indexer's ``/sql`` endpoint with a JSON body
``{"sql": ..., "params": [...]}`` and accepts either a bare list of rows or
``{"rows": [...]}`` back. Every failure (timeout, transport, HTTP status,
malformed body) yields an empty result.
"""

import logging
from typing import Any, Optional

import httpx

from swapresolver.errors import ValidationError
from swapresolver.indexer.base import IndexedSwap, RevealedSecret, SwapIndexQuery
from swapresolver.orders.models import PendingOrder
from swapresolver.orders.queue import OrderHasher, parse_order_document

logger = logging.getLogger(__name__)

PENDING_ORDERS_SQL = (
    "SELECT order_hash, document FROM limit_order "
    "WHERE taker = $1 AND status = 'pending' ORDER BY created_at LIMIT 100"
)
SWAP_ROWS_SQL = "SELECT * FROM atomic_swap WHERE order_hash = ANY($1)"
REVEALED_SECRETS_SQL = (
    "SELECT w.hashlock, w.secret, w.escrow_address, w.chain_id, w.transaction_hash, "
    "w.block_timestamp, s.order_hash "
    "FROM escrow_withdrawal w LEFT JOIN atomic_swap s ON s.hashlock = w.hashlock "
    "WHERE w.secret IS NOT NULL ORDER BY w.block_timestamp DESC LIMIT 100"
)


def _opt_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _opt_lower(value: Any) -> Optional[str]:
    return value.lower() if isinstance(value, str) and value else None


class HttpSwapIndex(SwapIndexQuery):
    """Swap index backed by a SQL-over-HTTP indexer."""

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        order_hasher: Optional[OrderHasher] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            url: Indexer base URL (``/sql`` is appended if missing)
            timeout: Per-request timeout in seconds
            order_hasher: Computes order hashes for documents lacking one
            transport: Optional httpx transport (tests)
        """
        base = url.rstrip("/")
        self.sql_url = base if base.endswith("/sql") else f"{base}/sql"
        self.timeout = timeout
        self.order_hasher = order_hasher
        self._transport = transport

    async def _query(self, sql: str, params: list) -> list[dict]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.sql_url, json={"sql": sql, "params": params})

                if response.status_code != 200:
                    logger.warning(f"Indexer error: HTTP {response.status_code}")
                    return []

                data = response.json()

        except httpx.TimeoutException:
            logger.warning(f"Indexer timeout after {self.timeout}s")
            return []
        except httpx.HTTPError as e:
            logger.warning(f"Indexer unavailable: {e}")
            return []
        except ValueError as e:
            logger.warning(f"Indexer returned invalid JSON: {e}")
            return []

        rows = data.get("rows") if isinstance(data, dict) else data
        if not isinstance(rows, list):
            logger.warning("Indexer returned an unexpected payload")
            return []
        return [row for row in rows if isinstance(row, dict)]

    async def pending_orders(self, resolver: str) -> list[PendingOrder]:
        rows = await self._query(PENDING_ORDERS_SQL, [resolver.lower()])
        orders = []
        for row in rows:
            document = row.get("document")
            if isinstance(document, dict) and row.get("order_hash") and "orderHash" not in document:
                document = {**document, "orderHash": row["order_hash"]}
            try:
                orders.append(
                    parse_order_document(document, self.order_hasher, source="index")
                )
            except ValidationError as e:
                logger.warning(f"Skipping indexed order {row.get('order_hash')}: {e}")
        return orders

    async def swap_rows(self, order_hashes: list[str]) -> list[IndexedSwap]:
        if not order_hashes:
            return []
        rows = await self._query(SWAP_ROWS_SQL, [[h.lower() for h in order_hashes]])
        swaps = []
        for row in rows:
            try:
                swaps.append(self._parse_swap(row))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed swap row: {e}")
        return swaps

    async def revealed_secrets(self) -> list[RevealedSecret]:
        rows = await self._query(REVEALED_SECRETS_SQL, [])
        secrets = []
        for row in rows:
            if not row.get("hashlock") or not row.get("secret"):
                continue
            try:
                secrets.append(
                    RevealedSecret(
                        hashlock=row["hashlock"].lower(),
                        secret=row["secret"].lower(),
                        order_hash=_opt_lower(row.get("order_hash")),
                        escrow_address=_opt_lower(row.get("escrow_address")),
                        chain_id=_opt_int(row.get("chain_id")),
                        tx_ref=_opt_lower(row.get("transaction_hash")),
                        revealed_at=_opt_int(row.get("block_timestamp")),
                    )
                )
            except (AttributeError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed withdrawal row: {e}")
        return secrets

    @staticmethod
    def _parse_swap(row: dict) -> IndexedSwap:
        return IndexedSwap(
            order_hash=row["order_hash"].lower(),
            hashlock=row["hashlock"].lower(),
            src_chain_id=int(row["src_chain_id"]),
            dst_chain_id=int(row["dst_chain_id"]),
            status=str(row.get("status") or "pending"),
            src_token=_opt_lower(row.get("src_token")),
            dst_token=_opt_lower(row.get("dst_token")),
            src_amount=_opt_int(row.get("src_amount")),
            dst_amount=_opt_int(row.get("dst_amount")),
            src_maker=_opt_lower(row.get("src_maker")),
            src_taker=_opt_lower(row.get("src_taker")),
            src_escrow=_opt_lower(row.get("src_escrow_address")),
            dst_escrow=_opt_lower(row.get("dst_escrow_address")),
            secret=_opt_lower(row.get("secret")),
            src_created_at=_opt_int(row.get("src_created_at")),
            dst_created_at=_opt_int(row.get("dst_created_at")),
            completed_at=_opt_int(row.get("completed_at")),
        )
