"""Invite token generation."""

from __future__ import annotations

import secrets
import string

_BASE62_ALPHABET = string.digits + string.ascii_letters

MIN_TOKEN_BYTES = 8


def base62_encode(value: int) -> str:
    """Encode *value* as a base62 string."""

    if value < 0:
        raise ValueError("value must be non-negative")
    if value == 0:
        return _BASE62_ALPHABET[0]
    base = len(_BASE62_ALPHABET)
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, base)
        digits.append(_BASE62_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_token(num_bytes: int = 16) -> str:
    """Generate an opaque, URL-safe invite token."""

    if num_bytes < MIN_TOKEN_BYTES:
        raise ValueError(f"num_bytes must be at least {MIN_TOKEN_BYTES}")
    raw = secrets.token_bytes(num_bytes)
    return base62_encode(int.from_bytes(raw, "big"))


__all__ = ["base62_encode", "generate_token", "MIN_TOKEN_BYTES"]
