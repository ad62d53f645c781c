"""At-rest custody of platform-held secret keys.

Secrets are sealed with AES-256-GCM under the operator key from settings.
The payload layout is ``base64(nonce[12] | tag[16] | ciphertext)``. When no
operator key is configured the store runs in an explicit degraded mode:
``seal`` is the identity function and a warning is logged once.

Nothing outside this module sees a decrypted secret. Callers that need to
sign obtain a :class:`SigningCapability`, which signs events but never
exposes the key it wraps.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import re
from enum import Enum
from threading import Lock

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from nostr_stage.core.errors import InvalidEncoding, PrivateKeyRequired
from nostr_stage.core.settings import settings
from nostr_stage.models import User
from nostr_stage.schemas.event import SignedEvent, UnsignedEvent
from nostr_stage.services import crypto
from nostr_stage.services.keys import derive_public_key

logger = logging.getLogger(__name__)

NONCE_BYTES = 12
TAG_BYTES = 16
MIN_PAYLOAD_BYTES = NONCE_BYTES + TAG_BYTES + 1

_HEX_SECRET = re.compile(r"^(?:0x)?[0-9a-fA-F]{64}$")
_PLAIN_SECRET = re.compile(r"^[0-9a-fA-F]{64}$")


class Rejection(str, Enum):
    """Reasons a stored value cannot be opened."""

    REJECTED_PLAINTEXT = "rejected_plaintext"
    INVALID_PAYLOAD = "invalid_payload"


class SigningCapability:
    """Narrow handle that signs events for exactly one public key."""

    __slots__ = ("_secret", "pubkey")

    def __init__(self, secret_hex: str, pubkey: str) -> None:
        self._secret = secret_hex
        self.pubkey = pubkey

    def sign(self, event: UnsignedEvent) -> SignedEvent:
        if event.pubkey != self.pubkey:
            raise PrivateKeyRequired(
                "Signing key does not belong to the event author",
                details={"event_pubkey": event.pubkey},
            )
        return crypto.finalize_event(event, self._secret)

    def __repr__(self) -> str:
        return f"SigningCapability(pubkey={self.pubkey!r}, secret=<redacted>)"

    __str__ = __repr__


class KeyCustodyStore:
    """Seal and open platform-held secrets."""

    def __init__(self, key: bytes | None = None) -> None:
        if key is not None and len(key) != 32:
            raise ValueError("Custody key must be 32 bytes")
        self._aead = AESGCM(key) if key is not None else None
        self._warned: set[str] = set()
        self._lock = Lock()

    @property
    def encryption_enabled(self) -> bool:
        return self._aead is not None

    def _warn_once(self, reason: str, message: str) -> None:
        with self._lock:
            if reason in self._warned:
                return
            self._warned.add(reason)
        logger.warning(message)

    def seal(self, secret: str | None) -> str | None:
        """Encrypt a secret for storage. Degraded mode returns it unchanged."""
        if not secret:
            return secret
        if self._aead is None:
            self._warn_once(
                "missing_key",
                "PRIVKEY_ENCRYPTION_KEY is not set; storing platform-held keys unencrypted. "
                "Do not run this configuration in production.",
            )
            return secret

        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, secret.encode("utf-8"), None)
        # AESGCM appends the tag; reorder to nonce|tag|ciphertext.
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def classify(self, stored: str | None) -> str | Rejection | None:
        """Return the secret, a :class:`Rejection`, or None when nothing is stored."""
        if not stored:
            return None
        trimmed = stored.strip()

        if self._aead is None:
            if _HEX_SECRET.match(trimmed):
                return trimmed
            payload = _b64decode(trimmed)
            if payload is not None and len(payload) >= MIN_PAYLOAD_BYTES:
                self._warn_once(
                    "sealed_without_key",
                    "Encrypted privkey found but no PRIVKEY_ENCRYPTION_KEY is configured; "
                    "treating as missing.",
                )
                return Rejection.INVALID_PAYLOAD
            return trimmed

        if _HEX_SECRET.match(trimmed):
            self._warn_once(
                Rejection.REJECTED_PLAINTEXT.value,
                "Plaintext privkey encountered while encryption is enabled; rejecting.",
            )
            return Rejection.REJECTED_PLAINTEXT

        payload = _b64decode(trimmed)
        if payload is None or len(payload) < MIN_PAYLOAD_BYTES:
            self._warn_once(
                "malformed_payload",
                "Stored privkey does not match the expected encrypted payload format.",
            )
            return Rejection.INVALID_PAYLOAD

        nonce = payload[:NONCE_BYTES]
        tag = payload[NONCE_BYTES:NONCE_BYTES + TAG_BYTES]
        ciphertext = payload[NONCE_BYTES + TAG_BYTES:]
        try:
            plain = self._aead.decrypt(nonce, ciphertext + tag, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            self._warn_once("decrypt_failed", "Failed to decrypt stored privkey; treating as missing.")
            return Rejection.INVALID_PAYLOAD

        if not _PLAIN_SECRET.match(plain):
            self._warn_once("bad_plaintext", "Decrypted privkey is not valid hex; treating as invalid.")
            return Rejection.INVALID_PAYLOAD
        return plain

    def open(self, stored: str | None) -> str | None:
        """Decrypt a stored secret. Every rejection fails closed as None."""
        result = self.classify(stored)
        if result is None or isinstance(result, Rejection):
            return None
        return result

    def signing_capability(self, user: User) -> SigningCapability | None:
        """Return a capability for the user's platform-held key, if one is usable."""
        secret = self.open(user.privkey)
        if secret is None:
            return None
        secret = secret[2:] if secret[:2].lower() == "0x" else secret
        secret = secret.lower()
        try:
            pubkey = derive_public_key(secret)
        except InvalidEncoding:
            logger.error("Stored privkey is not a valid secp256k1 secret (user=%s)", user.id)
            return None
        if pubkey != user.pubkey:
            logger.error("Stored privkey does not derive the account pubkey (user=%s)", user.id)
            return None
        return SigningCapability(secret, pubkey)

    def require_capability(self, user: User) -> SigningCapability:
        capability = self.signing_capability(user)
        if capability is None:
            raise PrivateKeyRequired("Private key required to sign on behalf of this account")
        return capability


def _b64decode(value: str) -> bytes | None:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


class _Singleton:
    instance: KeyCustodyStore | None = None


def get_custody_store() -> KeyCustodyStore:
    """Return the process-wide custody store built from settings."""
    if _Singleton.instance is None:
        _Singleton.instance = KeyCustodyStore(settings.encryption_key_bytes)
    return _Singleton.instance
