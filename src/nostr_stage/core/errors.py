"""Exception taxonomy shared by the identity, signing and publishing services.

Every error carries a machine-readable ``code`` and optional ``details`` used
for logging and diagnostics. User-facing authentication failures stay
deliberately generic; the specific reason is only ever logged.
"""

from __future__ import annotations

from typing import Any


class StageError(Exception):
    """Base class for all service-level errors."""

    code: str = "STAGE_ERROR"

    def __init__(self, message: str, code: str | None = None, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class InputValidationError(StageError):
    """Malformed key, URL or encoding. Never retried."""

    code = "INVALID_INPUT"


class InvalidEncoding(InputValidationError):
    """A secret or public key is not valid hex or bech32."""

    code = "INVALID_ENCODING"


class InvalidPublicKey(InputValidationError):
    """A public key is not exactly 64 lowercase hex characters."""

    code = "INVALID_PUBKEY"


class AuthenticationFailed(StageError):
    """Identity proof rejected. The public message never includes the reason."""

    code = "AUTHENTICATION_FAILED"
    public_message = "Authentication failed"

    def __init__(self, reason: str = "unspecified", details: Any = None) -> None:
        super().__init__(self.public_message, details=details)
        self.reason = reason


class RateLimited(StageError):
    """Too many attempts for a guarded operation."""

    code = "RATE_LIMITED"

    def __init__(self, retry_after: int, key: str | None = None) -> None:
        super().__init__("Too many requests", details={"key": key})
        self.retry_after = max(0, int(retry_after))


class StorageUnavailable(StageError):
    """Backing storage failed on a security-sensitive path."""

    code = "STORAGE_UNAVAILABLE"


class NotFound(StageError):
    """Referenced record does not exist."""

    code = "NOT_FOUND"


class Forbidden(StageError):
    """Actor may not manage the referenced record."""

    code = "FORBIDDEN"


class PublishError(StageError):
    """Publishing an event or persisting its record failed."""

    code = "PUBLISH_FAILED"


class NoEndpointAccepted(PublishError):
    """No relay acknowledged the event. Retryable."""

    code = "RELAY_PUBLISH_FAILED"


class PrivateKeyRequired(PublishError):
    """No usable platform-held secret; the client must sign instead."""

    code = "PRIVKEY_REQUIRED"


class RepublishError(PublishError):
    """A republish request violated one of the replaceable-record invariants."""

    code = "REPUBLISH_FAILED"


class IdentifierMismatch(RepublishError):
    """Signed event's stable identifier tag does not match the record."""

    code = "INVALID_D_TAG"


class FieldMismatch(RepublishError):
    """A field inside the signed event differs from the declared payload."""

    code = "FIELD_MISMATCH"


class Conflict(StageError):
    """Request collides with existing state, e.g. a pubkey bound to another account."""

    code = "CONFLICT"
