"""Proving, creating, resuming and re-binding user identities."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nostr_stage.core.errors import (
    AuthenticationFailed,
    Conflict,
    InputValidationError,
    StorageUnavailable,
)
from nostr_stage.core.security import constant_time_equals, hash_token
from nostr_stage.core.settings import AuthProvider, settings
from nostr_stage.models import Custody, User
from nostr_stage.schemas.event import SignedEvent
from nostr_stage.schemas.identity import Identity, IdentityProof
from nostr_stage.services.audit import ACCOUNT_LINK, record_audit
from nostr_stage.services.custody import KeyCustodyStore, get_custody_store
from nostr_stage.services.http_auth import HttpAuthVerifier, get_http_auth_verifier
from nostr_stage.services.keys import (
    derive_public_key,
    generate_keypair,
    is_valid_point,
    normalize_public_key,
    normalize_secret_key,
)
from nostr_stage.services.rate_limit import RateLimiter, get_rate_limiter
from nostr_stage.services.reconnect import ReconnectTokenStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NostrCredential:
    """Signed HTTP-auth event for the request being made."""

    pubkey: str
    event: SignedEvent
    url: str
    method: str = "POST"


@dataclass(frozen=True)
class AnonymousCredential:
    client_ip: str = "unknown"


@dataclass(frozen=True)
class ReconnectCredential:
    token: str

    def __repr__(self) -> str:
        return "ReconnectCredential(token=<redacted>)"


@dataclass(frozen=True)
class RecoveryCredential:
    private_key: str
    client_ip: str = "unknown"

    def __repr__(self) -> str:
        return f"RecoveryCredential(private_key=<redacted>, client_ip={self.client_ip!r})"


Credential = Union[NostrCredential, AnonymousCredential, ReconnectCredential, RecoveryCredential]

_CREDENTIAL_TYPES: dict[AuthProvider, type] = {
    AuthProvider.NOSTR: NostrCredential,
    AuthProvider.ANONYMOUS: AnonymousCredential,
    AuthProvider.RECONNECT: ReconnectCredential,
    AuthProvider.RECOVERY: RecoveryCredential,
}


class IdentityService:
    """Entry point for every way a caller proves who they are."""

    def __init__(
        self,
        db: Session,
        custody: KeyCustodyStore | None = None,
        rate_limiter: RateLimiter | None = None,
        verifier: HttpAuthVerifier | None = None,
    ) -> None:
        self.db = db
        self.custody = custody or get_custody_store()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.verifier = verifier or get_http_auth_verifier()
        self.tokens = ReconnectTokenStore(db)

    def prove_identity(self, method: AuthProvider, credential: Credential) -> IdentityProof:
        """Authenticate with one provider.

        Raises:
            AuthenticationFailed: For any rejected proof; the reason is only logged.
            RateLimited: When the provider's attempt budget is exhausted.
            StorageUnavailable: When a new account or rotated token cannot be saved.
        """
        if not settings.provider_enabled(method):
            logger.warning("Rejected login via disabled provider %s", method.value)
            raise AuthenticationFailed("provider disabled")
        expected_type = _CREDENTIAL_TYPES[method]
        if not isinstance(credential, expected_type):
            raise AuthenticationFailed("credential does not match provider")

        if method is AuthProvider.NOSTR:
            return self._prove_nostr(credential)
        if method is AuthProvider.ANONYMOUS:
            return self._create_anonymous(credential)
        if method is AuthProvider.RECONNECT:
            return self._resume(credential)
        return self._recover(credential)

    def _save(self, user: User) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to persist user %s: %s", user.id, exc.__class__.__name__)
            raise StorageUnavailable("Could not save account") from exc
        self.db.refresh(user)

    def _prove_nostr(self, credential: NostrCredential) -> IdentityProof:
        pubkey = self._claimed_pubkey(credential.pubkey)

        self.rate_limiter.enforce("auth_nostr", pubkey)
        self.verifier.verify_or_raise(credential.event, pubkey, credential.url, credential.method)

        user = self.db.scalars(select(User).where(User.pubkey == pubkey)).first()
        created = False
        if user is None:
            user = User(
                pubkey=pubkey,
                custody=Custody.SELF_HELD.value,
                primary_provider=AuthProvider.NOSTR.value,
            )
            self.db.add(user)
            self._save(user)
            created = True
            logger.info("Created self-held account %s", user.id)
        return IdentityProof(identity=Identity.from_user(user), created=created)

    def _create_anonymous(self, credential: AnonymousCredential) -> IdentityProof:
        self.rate_limiter.enforce("auth_anonymous_per_ip", credential.client_ip)
        self.rate_limiter.enforce("auth_anonymous_global", "all")

        secret, pubkey = generate_keypair()
        user = User(
            pubkey=pubkey,
            privkey=self.custody.seal(secret),
            custody=Custody.PLATFORM_HELD.value,
            primary_provider=AuthProvider.ANONYMOUS.value,
            username=settings.anonymous_username_prefix + pubkey[: settings.anonymous_username_length],
            avatar=settings.anonymous_avatar_base_url + pubkey,
        )
        token = self.tokens.issue(user, commit=False)
        self.db.add(user)
        self._save(user)
        logger.info("Created anonymous account %s", user.id)
        return IdentityProof(identity=Identity.from_user(user), created=True, reconnect_token=token)

    def _resume(self, credential: ReconnectCredential) -> IdentityProof:
        if not credential.token:
            raise AuthenticationFailed("empty reconnect token")
        self.rate_limiter.enforce("auth_reconnect", hash_token(credential.token))
        resumed = self.tokens.resume(credential.token)
        if resumed is None:
            logger.warning("Reconnect with unknown or stale token")
            raise AuthenticationFailed("unknown reconnect token")
        user, new_token = resumed
        return IdentityProof(identity=Identity.from_user(user), reconnect_token=new_token)

    def _recover(self, credential: RecoveryCredential) -> IdentityProof:
        self.rate_limiter.enforce("auth_recovery", credential.client_ip)
        try:
            secret = normalize_secret_key(credential.private_key)
            pubkey = derive_public_key(secret)
        except InputValidationError as exc:
            logger.warning("Recovery with malformed private key: %s", exc.code)
            raise AuthenticationFailed("malformed private key") from exc

        user = self.db.scalars(select(User).where(User.pubkey == pubkey)).first()
        if user is None:
            logger.warning("Recovery for unknown pubkey %s", pubkey[:16])
            raise AuthenticationFailed("no account for key")
        if not user.privkey:
            logger.warning("Recovery attempted for self-held account %s", user.id)
            raise AuthenticationFailed("account is self-held")

        stored = self.custody.open(user.privkey)
        if stored is not None and stored[:2].lower() == "0x":
            stored = stored[2:]
        if stored is None or not constant_time_equals(stored.lower(), secret):
            logger.warning("Recovery key does not match stored key for %s", user.id)
            raise AuthenticationFailed("stored key mismatch")

        token = self.tokens.issue(user)
        logger.info("Recovered account %s", user.id)
        return IdentityProof(identity=Identity.from_user(user), reconnect_token=token)

    def _claimed_pubkey(self, pubkey: str) -> str:
        try:
            normalized = normalize_public_key(pubkey)
        except InputValidationError as exc:
            logger.warning("Nostr proof with malformed pubkey: %s", exc.code)
            raise AuthenticationFailed("malformed pubkey") from exc
        if not is_valid_point(normalized):
            logger.warning("Nostr proof with off-curve pubkey %s", normalized[:16])
            raise AuthenticationFailed("pubkey is not a curve point")
        return normalized

    def link_self_held_key(
        self,
        user: User,
        pubkey: str,
        event: SignedEvent,
        url: str,
        method: str = "POST",
        client_ip: str | None = None,
    ) -> Identity:
        """Replace the account's key with one the user holds themselves.

        The platform-held secret and reconnect hash are cleared and an
        ``account.link`` audit record is written in the same commit.

        Raises:
            AuthenticationFailed: If the signed proof is rejected.
            Conflict: If the key belongs to another account, or the account
                already has a different self-held key (``PROVIDER_ALREADY_LINKED``).
        """
        normalized = self._claimed_pubkey(pubkey)

        self.rate_limiter.enforce("link_nostr", user.id)
        self.verifier.verify_or_raise(event, normalized, url, method)

        if user.custody == Custody.SELF_HELD.value and normalized != user.pubkey:
            logger.warning("Rejected key swap for self-held account %s", user.id)
            raise Conflict(
                "A self-held Nostr key is already linked to this account",
                code="PROVIDER_ALREADY_LINKED",
            )
        owner = self.db.scalars(select(User).where(User.pubkey == normalized)).first()
        if owner is not None and owner.id != user.id:
            raise Conflict("This Nostr key is already linked to another account")

        record_audit(
            self.db,
            user.id,
            ACCOUNT_LINK,
            {
                "provider": AuthProvider.NOSTR.value,
                "old_pubkey": user.pubkey,
                "new_pubkey": normalized,
                "previous_custody": user.custody,
            },
            ip=client_ip,
        )
        user.pubkey = normalized
        user.privkey = None
        user.custody = Custody.SELF_HELD.value
        user.primary_provider = AuthProvider.NOSTR.value
        self.tokens.revoke(user, commit=False)
        self._save(user)
        logger.info("Linked self-held key to account %s", user.id)
        return Identity.from_user(user)
