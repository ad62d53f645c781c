"""Service layer for the Nostr Stage application."""

from .custody import KeyCustodyStore, SigningCapability
from .http_auth import HttpAuthVerifier
from .identity import IdentityService
from .publish import PublishService
from .rate_limit import RateLimiter
from .reconnect import ReconnectTokenStore
from .relays import RelayPool
from .republish import RepublishService

__all__ = [
    "HttpAuthVerifier",
    "IdentityService",
    "KeyCustodyStore",
    "PublishService",
    "RateLimiter",
    "ReconnectTokenStore",
    "RelayPool",
    "RepublishService",
    "SigningCapability",
]
