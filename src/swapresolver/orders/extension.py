"""Escrow post-interaction extension payload.

Layout::

    factory (20 bytes) || abi.encode(
        bytes32 hashlock,
        uint256 dstChainId,
        address dstToken,
        uint256 deposits,      # dstSafetyDeposit << 128 | srcSafetyDeposit
        uint256 timelocks,     # packed, see swapresolver.timelocks
    )
"""

from dataclasses import dataclass
from typing import Optional

from swapresolver.errors import OrderValidationError, TimelockOrderError
from swapresolver.timelocks import Timelocks

WORD = 32
ADDRESS_SIZE = 20
PAYLOAD_SIZE = ADDRESS_SIZE + 5 * WORD
LOW_128 = (1 << 128) - 1


POST_INTERACTION_FIELD = 7


def post_interaction_data(extension: bytes) -> bytes:
    """Extract the post-interaction field from a full limit-order extension.

    The first word holds eight uint32 end offsets, field ``i`` ending at bits
    ``32*i``; field ``i`` starts where field ``i - 1`` ends.
    """
    if len(extension) < WORD:
        raise OrderValidationError("Extension shorter than its offsets header")
    offsets = int.from_bytes(extension[:WORD], "big")
    start = (offsets >> (32 * (POST_INTERACTION_FIELD - 1))) & 0xFFFFFFFF
    end = (offsets >> (32 * POST_INTERACTION_FIELD)) & 0xFFFFFFFF
    body = extension[WORD:]
    if start > end or end > len(body):
        raise OrderValidationError("Extension offsets out of bounds")
    return body[start:end]


def _word_to_address(word: bytes) -> str:
    if any(word[:WORD - ADDRESS_SIZE]):
        raise OrderValidationError("ABI address word has non-zero padding")
    return "0x" + word[WORD - ADDRESS_SIZE:].hex()


@dataclass(frozen=True)
class EscrowExtension:
    """Decoded escrow-creation parameters carried by an order."""

    factory: str
    hashlock: str
    dst_chain_id: int
    dst_token: str
    deposits: int
    timelocks: int

    @property
    def src_safety_deposit(self) -> int:
        return self.deposits & LOW_128

    @property
    def dst_safety_deposit(self) -> int:
        return self.deposits >> 128

    def parsed_timelocks(self) -> Optional[Timelocks]:
        """Timelocks if the packed word decodes to a valid ordering."""
        try:
            return Timelocks.unpack(self.timelocks)
        except TimelockOrderError:
            return None

    @classmethod
    def decode(cls, data: bytes) -> "EscrowExtension":
        """Decode the payload.

        Raises:
            OrderValidationError: if the payload is truncated or malformed
        """
        if len(data) < PAYLOAD_SIZE:
            raise OrderValidationError(
                f"Extension payload too short: {len(data)} bytes, need {PAYLOAD_SIZE}"
            )
        factory = "0x" + data[:ADDRESS_SIZE].hex()
        words = [
            data[ADDRESS_SIZE + i * WORD:ADDRESS_SIZE + (i + 1) * WORD] for i in range(5)
        ]
        return cls(
            factory=factory,
            hashlock="0x" + words[0].hex(),
            dst_chain_id=int.from_bytes(words[1], "big"),
            dst_token=_word_to_address(words[2]),
            deposits=int.from_bytes(words[3], "big"),
            timelocks=int.from_bytes(words[4], "big"),
        )

    def encode(self) -> bytes:
        def address_word(address: str) -> bytes:
            return bytes(WORD - ADDRESS_SIZE) + bytes.fromhex(address.removeprefix("0x"))

        return (
            bytes.fromhex(self.factory.removeprefix("0x"))
            + bytes.fromhex(self.hashlock.removeprefix("0x"))
            + self.dst_chain_id.to_bytes(WORD, "big")
            + address_word(self.dst_token)
            + self.deposits.to_bytes(WORD, "big")
            + self.timelocks.to_bytes(WORD, "big")
        )

    @staticmethod
    def pack_deposits(src_safety_deposit: int, dst_safety_deposit: int) -> int:
        return (dst_safety_deposit << 128) | (src_safety_deposit & LOW_128)
