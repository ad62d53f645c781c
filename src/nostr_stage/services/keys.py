"""Key normalization, derivation and generation for secp256k1 identities."""

from __future__ import annotations

import logging
import re
import secrets

from bech32 import bech32_decode, bech32_encode, convertbits
from coincurve import PrivateKey, PublicKeyXOnly

from nostr_stage.core.errors import InvalidEncoding, InvalidPublicKey

logger = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-fA-F]{64}$")
_LOWER_HEX64 = re.compile(r"^[0-9a-f]{64}$")

NSEC_PREFIX = "nsec"
NPUB_PREFIX = "npub"


def _decode_bech32(value: str, expected_hrp: str) -> bytes:
    hrp, data = bech32_decode(value.lower())
    if hrp is None or data is None or hrp != expected_hrp:
        raise InvalidEncoding(f"Not a valid {expected_hrp} string")
    decoded = convertbits(data, 5, 8, False)
    if decoded is None or len(decoded) != 32:
        raise InvalidEncoding(f"{expected_hrp} payload must be 32 bytes")
    return bytes(decoded)


def _encode_bech32(hrp: str, raw: bytes) -> str:
    data = convertbits(raw, 8, 5, True)
    if data is None:  # pragma: no cover - 32-byte input always converts
        raise InvalidEncoding("Could not convert key to bech32")
    return bech32_encode(hrp, data)


def normalize_secret_key(secret: str) -> str:
    """Return a secret key as 64 lowercase hex.

    Accepts raw hex (optionally prefixed with ``0x``) or a bech32 ``nsec1...``.

    Raises:
        InvalidEncoding: If the input is neither form or is outside the curve order.
    """
    if not isinstance(secret, str):
        raise InvalidEncoding("Secret key must be a string")
    value = secret.strip()
    if value.lower().startswith(NSEC_PREFIX + "1"):
        raw = _decode_bech32(value, NSEC_PREFIX)
    else:
        if value[:2].lower() == "0x":
            value = value[2:]
        if not _HEX64.match(value):
            raise InvalidEncoding("Secret key must be 64 hex characters or nsec")
        raw = bytes.fromhex(value)

    try:
        PrivateKey(raw)
    except ValueError as exc:
        raise InvalidEncoding("Secret key is outside the valid range") from exc
    return raw.hex()


def derive_public_key(secret: str) -> str:
    """Derive the x-only public key (lowercase hex) for a secret key."""
    normalized = normalize_secret_key(secret)
    return PublicKeyXOnly.from_secret(bytes.fromhex(normalized)).format().hex()


def validate_public_key(pubkey: str) -> str:
    """Require exactly 64 lowercase hex characters.

    Raises:
        InvalidPublicKey: For any other input.
    """
    if not isinstance(pubkey, str) or not _LOWER_HEX64.match(pubkey):
        raise InvalidPublicKey("Public key must be 64 lowercase hex characters")
    return pubkey


def normalize_public_key(pubkey: str) -> str:
    """Accept hex in any case or ``npub1...`` and return lowercase hex."""
    if not isinstance(pubkey, str):
        raise InvalidPublicKey("Public key must be a string")
    value = pubkey.strip()
    if value.lower().startswith(NPUB_PREFIX + "1"):
        try:
            return _decode_bech32(value, NPUB_PREFIX).hex()
        except InvalidEncoding as exc:
            raise InvalidPublicKey(str(exc)) from exc
    return validate_public_key(value.lower())


def is_valid_point(pubkey: str) -> bool:
    """Return True if the hex key is a valid x-only point on secp256k1."""
    try:
        PublicKeyXOnly(bytes.fromhex(validate_public_key(pubkey)))
    except (InvalidPublicKey, ValueError):
        return False
    return True


def generate_secret_key() -> str:
    """Return a fresh random secret key as lowercase hex."""
    while True:
        candidate = secrets.token_bytes(32)
        try:
            PrivateKey(candidate)
        except ValueError:  # pragma: no cover - probability ~2^-128
            continue
        return candidate.hex()


def generate_keypair() -> tuple[str, str]:
    """Return ``(secret_hex, pubkey_hex)`` for a new platform-held identity."""
    secret = generate_secret_key()
    return secret, derive_public_key(secret)


def encode_npub(pubkey: str) -> str:
    return _encode_bech32(NPUB_PREFIX, bytes.fromhex(validate_public_key(pubkey)))
