"""Verification of signed HTTP-auth events (NIP-98).

Gates run in a fixed order and stop at the first failure. The specific
reason is logged; callers only ever see :class:`AuthenticationFailed`.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from nostr_stage.core.errors import AuthenticationFailed
from nostr_stage.core.settings import settings
from nostr_stage.schemas.event import SignedEvent
from nostr_stage.services.crypto import compute_event_id, schnorr_verify
from nostr_stage.services.events import KIND_HTTP_AUTH

logger = logging.getLogger(__name__)

MAX_FUTURE_SKEW_SECONDS = 30
MAX_AGE_SECONDS = 60


@dataclass(frozen=True)
class HttpAuthResult:
    """``ok`` with no reason, or a mismatch carrying the failed gate."""

    ok: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.ok


class HttpAuthVerifier:
    """Check that a signed event proves control of a key for one HTTP request."""

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        max_future_skew: int = MAX_FUTURE_SKEW_SECONDS,
        max_age: int = MAX_AGE_SECONDS,
    ) -> None:
        self._clock = clock
        self.max_future_skew = max_future_skew
        self.max_age = max_age

    def verify(
        self,
        event: SignedEvent,
        expected_pubkey: str,
        url: str,
        method: str,
    ) -> HttpAuthResult:
        if event.kind != KIND_HTTP_AUTH:
            return HttpAuthResult(False, f"unexpected kind {event.kind}")

        if compute_event_id(event) != event.id:
            return HttpAuthResult(False, "event id does not match canonical digest")

        if not schnorr_verify(event.pubkey, bytes.fromhex(event.id), event.sig):
            return HttpAuthResult(False, "invalid signature")

        if event.pubkey != expected_pubkey:
            return HttpAuthResult(False, "event author does not match asserted pubkey")

        now = int(self._clock())
        if event.created_at > now + self.max_future_skew:
            return HttpAuthResult(False, "event timestamp is in the future")
        if event.created_at < now - self.max_age:
            return HttpAuthResult(False, "event has expired")

        if event.first_tag("u") != url:
            return HttpAuthResult(False, "url tag does not match request url")

        signed_method = event.first_tag("method")
        if signed_method is None or signed_method.upper() != method.upper():
            return HttpAuthResult(False, "method tag does not match request method")

        return HttpAuthResult(True)

    def verify_or_raise(
        self,
        event: SignedEvent,
        expected_pubkey: str,
        url: str,
        method: str,
    ) -> None:
        result = self.verify(event, expected_pubkey, url, method)
        if not result:
            logger.warning(
                "HTTP auth rejected for pubkey %s: %s",
                expected_pubkey[:16],
                result.reason,
            )
            raise AuthenticationFailed(result.reason or "unspecified")


def expected_url(path: str) -> str:
    """Return the absolute URL a client must sign for ``path``."""
    return settings.public_base_url.rstrip("/") + path


def get_http_auth_verifier() -> HttpAuthVerifier:
    return HttpAuthVerifier()
