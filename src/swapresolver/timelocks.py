"""Escrow timelocks.

Six offsets (seconds from escrow deployment) define the withdrawal and
cancellation windows on both sides of a swap. They are packed into a single
uint256 the same way the escrow contracts store them: stage ``i`` occupies
bits ``32*i .. 32*i+31`` and the deployment timestamp occupies the top 32
bits.
"""

import time
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Optional

from swapresolver.errors import TimelockOrderError

UINT32_MAX = (1 << 32) - 1
DEPLOYED_AT_OFFSET = 224


class Stage(IntEnum):
    """Timelock stages in packed order."""

    SRC_WITHDRAWAL = 0
    SRC_PUBLIC_WITHDRAWAL = 1
    SRC_CANCELLATION = 2
    SRC_PUBLIC_CANCELLATION = 3
    DST_WITHDRAWAL = 4
    DST_PUBLIC_WITHDRAWAL = 5
    DST_CANCELLATION = 6


# Demo durations (seconds) used by local test flows
DEFAULT_DURATIONS = {
    "src_withdrawal": 10 * 60,
    "src_public_withdrawal": 15 * 60,
    "src_cancellation": 20 * 60,
    "src_public_cancellation": 25 * 60,
    "dst_withdrawal": 5 * 60,
    "dst_cancellation": 15 * 60,
}

PRODUCTION_DURATIONS = {
    "src_withdrawal": 36 * 3600,
    "src_public_withdrawal": 48 * 3600,
    "src_cancellation": 72 * 3600,
    "src_public_cancellation": 96 * 3600,
    "dst_withdrawal": 24 * 3600,
    "dst_cancellation": 60 * 3600,
}


def validate_timelocks(
    src_withdrawal: int,
    src_public_withdrawal: int,
    src_cancellation: int,
    src_public_cancellation: int,
    dst_withdrawal: int,
    dst_cancellation: int,
) -> None:
    """Enforce the timelock ordering.

    Equal adjacent values are rejected: every inequality is strict.

    Raises:
        TimelockOrderError: on the first violated inequality
    """
    values = {
        "src_withdrawal": src_withdrawal,
        "src_public_withdrawal": src_public_withdrawal,
        "src_cancellation": src_cancellation,
        "src_public_cancellation": src_public_cancellation,
        "dst_withdrawal": dst_withdrawal,
        "dst_cancellation": dst_cancellation,
    }
    for name, value in values.items():
        if isinstance(value, bool) or not isinstance(value, int):
            raise TimelockOrderError(f"{name} must be an integer, got {value!r}")
        if value < 0 or value > UINT32_MAX:
            raise TimelockOrderError(f"{name} out of range: {value}")

    if not src_withdrawal < src_public_withdrawal:
        raise TimelockOrderError("src_withdrawal must be before src_public_withdrawal")
    if not src_public_withdrawal < src_cancellation:
        raise TimelockOrderError("src_public_withdrawal must be before src_cancellation")
    if not src_cancellation < src_public_cancellation:
        raise TimelockOrderError("src_cancellation must be before src_public_cancellation")
    if not dst_withdrawal < dst_cancellation:
        raise TimelockOrderError("dst_withdrawal must be before dst_cancellation")
    # The maker must be able to claim destination funds before the resolver
    # can claim source funds with the same secret.
    if not src_withdrawal > dst_withdrawal:
        raise TimelockOrderError("src_withdrawal must be after dst_withdrawal")


@dataclass(frozen=True)
class Timelocks:
    """Validated timelock offsets for one swap."""

    src_withdrawal: int
    src_public_withdrawal: int
    src_cancellation: int
    src_public_cancellation: int
    dst_withdrawal: int
    dst_cancellation: int
    deployed_at: int = 0

    def __post_init__(self):
        validate_timelocks(
            self.src_withdrawal,
            self.src_public_withdrawal,
            self.src_cancellation,
            self.src_public_cancellation,
            self.dst_withdrawal,
            self.dst_cancellation,
        )
        if self.deployed_at < 0 or self.deployed_at > UINT32_MAX:
            raise TimelockOrderError(f"deployed_at out of range: {self.deployed_at}")

    @classmethod
    def from_durations(cls, production: bool = False, deployed_at: int = 0) -> "Timelocks":
        durations = PRODUCTION_DURATIONS if production else DEFAULT_DURATIONS
        return cls(deployed_at=deployed_at, **durations)

    def offset(self, stage: Stage) -> int:
        return {
            Stage.SRC_WITHDRAWAL: self.src_withdrawal,
            Stage.SRC_PUBLIC_WITHDRAWAL: self.src_public_withdrawal,
            Stage.SRC_CANCELLATION: self.src_cancellation,
            Stage.SRC_PUBLIC_CANCELLATION: self.src_public_cancellation,
            Stage.DST_WITHDRAWAL: self.dst_withdrawal,
            # The destination side has no separate public withdrawal window
            Stage.DST_PUBLIC_WITHDRAWAL: self.dst_withdrawal,
            Stage.DST_CANCELLATION: self.dst_cancellation,
        }[stage]

    def pack(self) -> int:
        """Pack into the on-chain uint256 layout."""
        packed = self.deployed_at << DEPLOYED_AT_OFFSET
        for stage in Stage:
            packed |= self.offset(stage) << (32 * stage)
        return packed

    @classmethod
    def unpack(cls, packed: int) -> "Timelocks":
        """Decode a packed uint256.

        Raises:
            TimelockOrderError: if the decoded offsets are not ordered
        """
        if packed < 0 or packed >= 1 << 256:
            raise TimelockOrderError("Packed timelocks out of uint256 range")

        def stage_value(stage: Stage) -> int:
            return (packed >> (32 * stage)) & UINT32_MAX

        return cls(
            src_withdrawal=stage_value(Stage.SRC_WITHDRAWAL),
            src_public_withdrawal=stage_value(Stage.SRC_PUBLIC_WITHDRAWAL),
            src_cancellation=stage_value(Stage.SRC_CANCELLATION),
            src_public_cancellation=stage_value(Stage.SRC_PUBLIC_CANCELLATION),
            dst_withdrawal=stage_value(Stage.DST_WITHDRAWAL),
            dst_cancellation=stage_value(Stage.DST_CANCELLATION),
            deployed_at=(packed >> DEPLOYED_AT_OFFSET) & UINT32_MAX,
        )

    def with_deployed_at(self, deployed_at: int) -> "Timelocks":
        return replace(self, deployed_at=deployed_at)

    def deadline(self, stage: Stage) -> int:
        """Absolute unix timestamp at which ``stage`` opens."""
        return self.deployed_at + self.offset(stage)

    def has_passed(self, stage: Stage, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now >= self.deadline(stage)

    def seconds_until(self, stage: Stage, now: Optional[int] = None) -> int:
        now = int(time.time()) if now is None else now
        return max(0, self.deadline(stage) - now)

    def current_phase(self, now: Optional[int] = None) -> str:
        """Name of the window the swap is in at ``now``."""
        now = int(time.time()) if now is None else now

        if now < self.deadline(Stage.DST_WITHDRAWAL):
            return "DST_WITHDRAWAL_PENDING"
        if now < self.deadline(Stage.SRC_WITHDRAWAL):
            return "DST_WITHDRAWAL_ACTIVE"
        if now < self.deadline(Stage.SRC_PUBLIC_WITHDRAWAL):
            return "SRC_WITHDRAWAL_ACTIVE"
        if now < self.deadline(Stage.SRC_CANCELLATION):
            return "SRC_PUBLIC_WITHDRAWAL_ACTIVE"
        if now < self.deadline(Stage.SRC_PUBLIC_CANCELLATION):
            return "SRC_CANCELLATION_ACTIVE"
        return "EXPIRED"


def format_duration(seconds: int) -> str:
    """Format a duration like ``1h 5m 3s``."""
    hours, rest = divmod(int(seconds), 3600)
    minutes, secs = divmod(rest, 60)
    parts = []
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)
