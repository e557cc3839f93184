"""Pending-order queue: a directory of signed order documents.

Each document is a JSON file (conventionally ``{hashlock}.json``)::

    {
      "order": {"salt": "...", "maker": "0x..", "receiver": "0x..",
                "makerAsset": "0x..", "takerAsset": "0x..",
                "makingAmount": "...", "takingAmount": "...",
                "makerTraits": "..."},
      "signature": "0x..",          # 65-byte r||s||v, or r with signatureVs
      "signatureVs": "0x..",        # optional
      "extensionData": "0x..",      # post-interaction payload, or
      "extension": "0x..",          # full limit-order extension
      "chainId": 8453,
      "hashlock": "0x..",
      "createdAt": 1735000000000,   # epoch ms
      "orderHash": "0x.."           # optional
    }

Filled documents are moved to the completed directory; undecodable ones
to ``rejected/`` next to the queue.
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Optional

from swapresolver.crypto import hex_to_bytes
from swapresolver.errors import OrderValidationError, ValidationError
from swapresolver.orders.extension import EscrowExtension, post_interaction_data
from swapresolver.orders.models import (
    Order,
    PendingOrder,
    parse_address,
    parse_bytes32,
    parse_uint,
    split_signature,
)

logger = logging.getLogger(__name__)

OrderHasher = Callable[[Order, int], str]

REJECTED_DIR = "rejected"


def _parse_chain_id(value: Any, name: str) -> int:
    chain_id = parse_uint(value, name)
    if chain_id == 0:
        raise OrderValidationError(f"{name} must be non-zero")
    return chain_id


def parse_order_document(
    data: dict,
    order_hasher: Optional[OrderHasher] = None,
    path: Optional[Path] = None,
    source: str = "queue",
) -> PendingOrder:
    """Decode and validate one pending-order document.

    Raises:
        OrderValidationError: if the document is malformed
    """
    if not isinstance(data, dict):
        raise OrderValidationError("Order document must be a JSON object")

    order = Order.from_dict(data.get("order"))
    hashlock = parse_bytes32(data.get("hashlock"), "hashlock")

    if "chainId" not in data:
        raise OrderValidationError("chainId missing")
    src_chain_id = _parse_chain_id(data["chainId"], "chainId")

    signature = data.get("signature")
    if not signature:
        raise OrderValidationError("signature missing")
    if data.get("signatureVs"):
        r = parse_bytes32(signature, "signature")
        vs = parse_bytes32(data["signatureVs"], "signatureVs")
    else:
        r, vs = split_signature(signature)

    try:
        if data.get("extensionData"):
            extension = hex_to_bytes(data["extensionData"])
            escrow_data = extension
        elif data.get("extension"):
            extension = hex_to_bytes(data["extension"])
            escrow_data = post_interaction_data(extension)
        else:
            extension = b""
            escrow_data = b""
    except ValidationError as e:
        raise OrderValidationError(f"Invalid extension: {e}")

    escrow = EscrowExtension.decode(escrow_data) if escrow_data else None
    if escrow is not None and escrow.hashlock != hashlock:
        raise OrderValidationError(
            f"Extension hashlock {escrow.hashlock} does not match order hashlock {hashlock}"
        )

    timelocks = None
    if escrow is not None and escrow.timelocks:
        escrow_timelocks = escrow.parsed_timelocks()
        if escrow_timelocks is None:
            raise OrderValidationError("Extension timelocks violate the required ordering")
        timelocks = escrow.timelocks

    if data.get("dstChainId") is not None:
        dst_chain_id = _parse_chain_id(data["dstChainId"], "dstChainId")
    elif escrow is not None:
        dst_chain_id = escrow.dst_chain_id
    else:
        raise OrderValidationError("Destination chain unknown: no dstChainId or extension")

    if data.get("dstToken") is not None:
        dst_token = parse_address(data["dstToken"], "dstToken")
    elif escrow is not None:
        dst_token = escrow.dst_token
    else:
        raise OrderValidationError("Destination token unknown: no dstToken or extension")

    if data.get("dstAmount") is not None:
        dst_amount = parse_uint(data["dstAmount"], "dstAmount")
    else:
        dst_amount = order.taking_amount
    if dst_amount <= 0:
        raise OrderValidationError("dstAmount must be positive")

    created_at = parse_uint(data.get("createdAt", 0), "createdAt")

    if data.get("orderHash"):
        order_hash = parse_bytes32(data["orderHash"], "orderHash")
    elif order_hasher is not None:
        order_hash = order_hasher(order, src_chain_id)
    else:
        raise OrderValidationError("orderHash missing and no order hasher configured")

    return PendingOrder(
        order_hash=order_hash,
        hashlock=hashlock,
        order=order,
        r=r,
        vs=vs,
        extension=extension,
        src_chain_id=src_chain_id,
        dst_chain_id=dst_chain_id,
        dst_token=dst_token,
        dst_amount=dst_amount,
        created_at=created_at,
        source=source,
        path=path,
        escrow_factory=escrow.factory if escrow else None,
        src_safety_deposit=escrow.src_safety_deposit if escrow else 0,
        dst_safety_deposit=escrow.dst_safety_deposit if escrow else 0,
        timelocks=timelocks,
    )


class PendingOrderQueue:
    """Directory-backed FIFO of self-authored orders."""

    def __init__(
        self,
        pending_dir: Path,
        completed_dir: Path,
        order_hasher: Optional[OrderHasher] = None,
    ):
        """Initialize queue.

        Args:
            pending_dir: Directory scanned for ``*.json`` order documents
            completed_dir: Where filled documents are moved
            order_hasher: Computes the order hash when a document lacks one
        """
        self.pending_dir = Path(pending_dir)
        self.completed_dir = Path(completed_dir)
        self.rejected_dir = self.pending_dir / REJECTED_DIR
        self.order_hasher = order_hasher

    def load(self) -> list[PendingOrder]:
        """Decode every queued document, oldest first.

        Documents that fail to decode are moved to ``rejected/``.
        """
        if not self.pending_dir.is_dir():
            return []

        orders = []
        for path in sorted(self.pending_dir.glob("*.json")):
            try:
                data = json.loads(path.read_text())
                pending = parse_order_document(data, self.order_hasher, path=path)
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Rejecting order document {path.name}: {e}")
                self._move(path, self.rejected_dir)
                continue
            except OSError as e:
                logger.warning(f"Could not read order document {path.name}: {e}")
                continue
            orders.append(pending)

        orders.sort(key=lambda p: p.sort_key)
        return orders

    def mark_filled(self, pending: PendingOrder) -> Optional[Path]:
        """Move a filled order's document to the completed directory."""
        if pending.path is None or not pending.path.exists():
            return None
        target = self._move(pending.path, self.completed_dir)
        logger.info(f"Order {pending.order_hash[:10]}... moved to {target}")
        return target

    @staticmethod
    def _move(path: Path, directory: Path) -> Path:
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / path.name
        shutil.move(str(path), str(target))
        return target
