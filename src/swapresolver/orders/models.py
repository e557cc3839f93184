"""Limit order data model.

Amounts, salt and traits are arbitrary-precision integers. On the wire they
are decimal strings; floats are rejected outright since they cannot carry a
uint256 without losing precision.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from swapresolver.crypto import hex_to_bytes, normalize_hex
from swapresolver.errors import OrderValidationError, ValidationError

UINT256_MAX = (1 << 256) - 1
ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")
BYTES32_RE = re.compile(r"^0x[0-9a-f]{64}$")

ORDER_FIELDS = (
    ("salt", "salt"),
    ("maker", "maker"),
    ("receiver", "receiver"),
    ("maker_asset", "makerAsset"),
    ("taker_asset", "takerAsset"),
    ("making_amount", "makingAmount"),
    ("taking_amount", "takingAmount"),
    ("maker_traits", "makerTraits"),
)


def parse_uint(value: Any, name: str) -> int:
    """Parse a decimal-string (or int) unsigned integer."""
    if isinstance(value, bool):
        raise OrderValidationError(f"{name} must be an integer, got bool")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str) and value.strip().isdigit():
        result = int(value.strip())
    else:
        raise OrderValidationError(f"{name} must be a decimal integer string, got {value!r}")
    if result < 0 or result > UINT256_MAX:
        raise OrderValidationError(f"{name} out of uint256 range")
    return result


def parse_address(value: Any, name: str) -> str:
    if not isinstance(value, str) or not ADDRESS_RE.match(value.lower()):
        raise OrderValidationError(f"{name} is not an address: {value!r}")
    return value.lower()


def parse_bytes32(value: Any, name: str) -> str:
    if not isinstance(value, str) or not BYTES32_RE.match(value.lower()):
        raise OrderValidationError(f"{name} is not a 32-byte hex value: {value!r}")
    return value.lower()


class MakerTraits:
    """Read-only view over the maker traits bitfield."""

    HAS_EXTENSION_FLAG = 249
    POST_INTERACTION_CALL_FLAG = 251
    ALLOW_MULTIPLE_FILLS_FLAG = 254
    NONCE_OR_EPOCH_OFFSET = 120
    NONCE_OR_EPOCH_MASK = (1 << 40) - 1
    EXPIRATION_OFFSET = 80
    EXPIRATION_MASK = (1 << 40) - 1

    def __init__(self, value: int):
        self.value = value

    def _flag(self, bit: int) -> bool:
        return bool(self.value >> bit & 1)

    @property
    def has_extension(self) -> bool:
        return self._flag(self.HAS_EXTENSION_FLAG)

    @property
    def post_interaction(self) -> bool:
        return self._flag(self.POST_INTERACTION_CALL_FLAG)

    @property
    def allow_multiple_fills(self) -> bool:
        return self._flag(self.ALLOW_MULTIPLE_FILLS_FLAG)

    @property
    def nonce_or_epoch(self) -> int:
        return self.value >> self.NONCE_OR_EPOCH_OFFSET & self.NONCE_OR_EPOCH_MASK

    @property
    def expiration(self) -> int:
        """Unix expiry, 0 when the order never expires."""
        return self.value >> self.EXPIRATION_OFFSET & self.EXPIRATION_MASK

    @classmethod
    def build(
        cls,
        nonce: int = 0,
        expiration: int = 0,
        has_extension: bool = False,
        post_interaction: bool = False,
        allow_multiple_fills: bool = False,
    ) -> "MakerTraits":
        value = (nonce & cls.NONCE_OR_EPOCH_MASK) << cls.NONCE_OR_EPOCH_OFFSET
        value |= (expiration & cls.EXPIRATION_MASK) << cls.EXPIRATION_OFFSET
        if has_extension:
            value |= 1 << cls.HAS_EXTENSION_FLAG
        if post_interaction:
            value |= 1 << cls.POST_INTERACTION_CALL_FLAG
        if allow_multiple_fills:
            value |= 1 << cls.ALLOW_MULTIPLE_FILLS_FLAG
        return cls(value)

    def __repr__(self) -> str:
        return f"MakerTraits({hex(self.value)})"


@dataclass(frozen=True)
class Order:
    """Signed limit order as consumed by the fill call."""

    salt: int
    maker: str
    receiver: str
    maker_asset: str
    taker_asset: str
    making_amount: int
    taking_amount: int
    maker_traits: int

    @property
    def traits(self) -> MakerTraits:
        return MakerTraits(self.maker_traits)

    def validate(self) -> None:
        """Reject malformed orders before any state mutation.

        Raises:
            OrderValidationError: on the first problem found
        """
        for name in ("maker", "receiver", "maker_asset", "taker_asset"):
            parse_address(getattr(self, name), name)
        for name in ("salt", "making_amount", "taking_amount", "maker_traits"):
            parse_uint(getattr(self, name), name)
        if self.making_amount <= 0:
            raise OrderValidationError("making_amount must be positive")
        if self.taking_amount <= 0:
            raise OrderValidationError("taking_amount must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "Order":
        if not isinstance(data, dict):
            raise OrderValidationError("order must be an object")
        values = {}
        for attr, key in ORDER_FIELDS:
            if key not in data:
                raise OrderValidationError(f"order.{key} missing")
            raw = data[key]
            if attr in ("maker", "receiver", "maker_asset", "taker_asset"):
                values[attr] = parse_address(raw, f"order.{key}")
            else:
                values[attr] = parse_uint(raw, f"order.{key}")
        order = cls(**values)
        order.validate()
        return order

    def to_dict(self) -> dict:
        result = {}
        for attr, key in ORDER_FIELDS:
            value = getattr(self, attr)
            result[key] = str(value) if isinstance(value, int) else value
        return result


def split_signature(signature: str) -> tuple[str, str]:
    """Convert a 65-byte ``r || s || v`` signature to compact ``(r, vs)``.

    A 64-byte signature is taken to be compact already.
    """
    try:
        raw = hex_to_bytes(signature)
    except ValidationError as e:
        raise OrderValidationError(f"Invalid signature: {e}")

    if len(raw) == 64:
        return "0x" + raw[:32].hex(), "0x" + raw[32:].hex()
    if len(raw) != 65:
        raise OrderValidationError(f"Signature must be 64 or 65 bytes, got {len(raw)}")

    r = raw[:32]
    s = int.from_bytes(raw[32:64], "big")
    v = raw[64]
    if v in (27, 28):
        v -= 27
    if v not in (0, 1):
        raise OrderValidationError(f"Invalid signature v value: {raw[64]}")
    if s >> 255:
        raise OrderValidationError("Signature s value has the high bit set")
    vs = s | (v << 255)
    return "0x" + r.hex(), "0x" + vs.to_bytes(32, "big").hex()


@dataclass
class PendingOrder:
    """Order discovered by intake, ready for the profitability gate."""
    order_hash: str
    hashlock: str
    order: Order
    r: str
    vs: str
    extension: bytes
    src_chain_id: int
    dst_chain_id: int
    dst_token: str
    dst_amount: int
    created_at: int = 0                    # Epoch milliseconds
    source: str = "queue"                  # queue | index
    path: Optional[Path] = None            # Queue file, when source == "queue"
    escrow_factory: Optional[str] = None
    src_safety_deposit: int = 0
    dst_safety_deposit: int = 0
    timelocks: Optional[int] = None        # Packed
    metadata: dict = field(default_factory=dict)

    def __post_init__(self):
        self.order_hash = normalize_hex(self.order_hash)
        self.hashlock = normalize_hex(self.hashlock)

    @property
    def src_amount(self) -> int:
        return self.order.making_amount

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, self.path.name if self.path else self.order_hash)
