"""Hashlock and secret helpers.

The hashlock is keccak256 over the raw 32 secret bytes, matching what the
escrow contracts check on withdrawal.
"""

import secrets
from typing import Optional

from Crypto.Hash import keccak

from swapresolver.errors import SecretMismatchError, ValidationError

SECRET_SIZE = 32
ZERO_BYTES32 = "0x" + "00" * 32


def normalize_hex(value: str) -> str:
    """Lowercase and ``0x``-prefix a hex string."""
    if not isinstance(value, str):
        raise ValidationError(f"Expected hex string, got {type(value).__name__}")
    value = value.strip().lower()
    if not value.startswith("0x"):
        value = "0x" + value
    try:
        int(value[2:] or "0", 16)
    except ValueError:
        raise ValidationError(f"Invalid hex value: {value[:20]}...")
    return value


def hex_to_bytes(value: str) -> bytes:
    value = normalize_hex(value)
    if len(value) % 2:
        raise ValidationError(f"Odd-length hex value: {value[:20]}...")
    return bytes.fromhex(value[2:])


def keccak256(data: bytes) -> bytes:
    k = keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def secret_bytes(secret: str) -> bytes:
    """Decode and size-check a hex secret."""
    raw = hex_to_bytes(secret)
    if len(raw) != SECRET_SIZE:
        raise ValidationError(f"Secret must be {SECRET_SIZE} bytes, got {len(raw)}")
    return raw


def compute_hashlock(secret: str) -> str:
    """Compute the public hashlock for a secret."""
    return "0x" + keccak256(secret_bytes(secret)).hex()


def verify_secret(secret: str, expected_hashlock: str) -> str:
    """Check ``H(secret) == expected_hashlock``.

    Returns:
        The normalised hashlock.

    Raises:
        SecretMismatchError: if the secret does not open the hashlock
    """
    computed = compute_hashlock(secret)
    if computed != normalize_hex(expected_hashlock):
        raise SecretMismatchError(
            f"Secret does not match hashlock {expected_hashlock} (computed {computed})"
        )
    return computed


def generate_secret() -> tuple[str, str]:
    """Generate a fresh random secret.

    Returns:
        Tuple of (secret, hashlock), both ``0x``-prefixed hex
    """
    secret = "0x" + secrets.token_bytes(SECRET_SIZE).hex()
    return secret, compute_hashlock(secret)


def is_placeholder(value: Optional[str]) -> bool:
    """True for empty or all-zero hex values (never a real secret or tx hash)."""
    if not value:
        return True
    body = value.lower().removeprefix("0x")
    return not body or set(body) == {"0"}
