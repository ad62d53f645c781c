"""Event digests and BIP-340 Schnorr signatures over secp256k1."""

from __future__ import annotations

import hashlib
import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass

from coincurve import PrivateKey, PublicKeyXOnly

from nostr_stage.schemas.event import SignedEvent, UnsignedEvent

logger = logging.getLogger(__name__)


def serialize_event(
    pubkey: str,
    created_at: int,
    kind: int,
    tags: Sequence[Sequence[str]],
    content: str,
) -> bytes:
    """Return the canonical serialization that the event id commits to."""
    payload = [0, pubkey, created_at, kind, [list(tag) for tag in tags], content]
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_event_id(event: UnsignedEvent) -> str:
    """Recompute the content-addressed id of an event."""
    serialized = serialize_event(
        event.pubkey, event.created_at, event.kind, event.tags, event.content
    )
    return hashlib.sha256(serialized).hexdigest()


def schnorr_sign(secret_hex: str, message: bytes) -> str:
    """Sign a 32-byte message with BIP-340 and fresh auxiliary randomness."""
    if len(message) != 32:
        raise ValueError("Schnorr messages must be 32 bytes")
    signature = PrivateKey(bytes.fromhex(secret_hex)).sign_schnorr(message, os.urandom(32))
    return signature.hex()


def schnorr_verify(pubkey_hex: str, message: bytes, signature_hex: str) -> bool:
    """Verify a BIP-340 signature.

    Returns:
        True if the signature is valid for ``message`` under ``pubkey_hex``; False otherwise,
        including for malformed keys or signatures.
    """
    try:
        pubkey = PublicKeyXOnly(bytes.fromhex(pubkey_hex))
        signature = bytes.fromhex(signature_hex)
        if len(signature) != 64 or len(message) != 32:
            return False
        return bool(pubkey.verify(signature, message))
    except ValueError:
        return False


def finalize_event(event: UnsignedEvent, secret_hex: str) -> SignedEvent:
    """Attach id and signature. Callers must already hold the matching secret."""
    event_id = compute_event_id(event)
    sig = schnorr_sign(secret_hex, bytes.fromhex(event_id))
    return SignedEvent(
        id=event_id,
        sig=sig,
        pubkey=event.pubkey,
        created_at=event.created_at,
        kind=event.kind,
        tags=[list(tag) for tag in event.tags],
        content=event.content,
    )


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of checking an event's digest and signature."""

    ok: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.ok


def verify_event(event: SignedEvent) -> VerificationResult:
    """Check the digest first, then the signature over it."""
    if compute_event_id(event) != event.id:
        return VerificationResult(False, "id does not match canonical digest")
    if not schnorr_verify(event.pubkey, bytes.fromhex(event.id), event.sig):
        return VerificationResult(False, "signature does not verify")
    return VerificationResult(True)
