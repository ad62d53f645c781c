"""Token hashing and constant-time comparison helpers."""
from __future__ import annotations

import hashlib
import hmac
import secrets

TOKEN_BYTES = 32


def generate_token() -> str:
    """Return a 256-bit random token as hex."""
    return secrets.token_hex(TOKEN_BYTES)


def hash_token(token: str) -> str:
    """Return a SHA-256 hash of the provided token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def constant_time_equals(left: str, right: str) -> bool:
    """Compare two strings without leaking where they differ."""
    if not left or not right:
        return False
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))


def verify_token(token: str, stored_hash: str | None) -> bool:
    """Return True if ``token`` hashes to ``stored_hash``."""
    if not token or not stored_hash:
        return False
    return constant_time_equals(hash_token(token), stored_hash)
