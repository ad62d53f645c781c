"""Immutable identity projections handed to callers outside the custody boundary."""

from __future__ import annotations

from dataclasses import dataclass

from nostr_stage.models import User
from nostr_stage.services.keys import encode_npub


@dataclass(frozen=True)
class Identity:
    """Public view of an account. Never carries key material."""

    id: str
    pubkey: str
    custody: str
    primary_provider: str
    username: str | None = None
    avatar: str | None = None
    is_admin: bool = False

    @property
    def npub(self) -> str:
        return encode_npub(self.pubkey)

    @classmethod
    def from_user(cls, user: User) -> Identity:
        return cls(
            id=user.id,
            pubkey=user.pubkey,
            custody=user.custody,
            primary_provider=user.primary_provider,
            username=user.username,
            avatar=user.avatar,
            is_admin=bool(user.is_admin),
        )


@dataclass(frozen=True)
class IdentityProof:
    """Result of a successful ``prove_identity`` call."""

    identity: Identity
    created: bool = False
    # Plaintext reconnect token; only present right after issuance or rotation.
    reconnect_token: str | None = None

    def __repr__(self) -> str:
        token = "<redacted>" if self.reconnect_token else None
        return (
            f"IdentityProof(identity={self.identity!r}, created={self.created!r}, "
            f"reconnect_token={token!r})"
        )
