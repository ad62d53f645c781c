"""Rotating bearer tokens that resume an anonymous platform-held identity."""

from __future__ import annotations

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nostr_stage.core.errors import StorageUnavailable
from nostr_stage.core.security import generate_token, hash_token, verify_token
from nostr_stage.models import User

logger = logging.getLogger(__name__)


class ReconnectTokenStore:
    """Issue and rotate reconnect tokens. Only the SHA-256 hash is persisted."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def _commit(self) -> None:
        try:
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to persist reconnect token hash: %s", exc.__class__.__name__)
            raise StorageUnavailable("Could not persist reconnect token") from exc

    def _lookup(self, token_hash: str) -> User | None:
        return self.db.scalars(
            select(User).where(User.reconnect_token_hash == token_hash)
        ).first()

    def _rotate(self, user: User, old_hash: str, new_hash: str) -> bool:
        """Swap the stored hash only if it still equals ``old_hash``."""
        try:
            result = self.db.execute(
                update(User)
                .where(User.id == user.id, User.reconnect_token_hash == old_hash)
                .values(reconnect_token_hash=new_hash)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("Failed to rotate reconnect token: %s", exc.__class__.__name__)
            raise StorageUnavailable("Could not persist reconnect token") from exc
        if result.rowcount != 1:
            self.db.rollback()
            return False
        self._commit()
        self.db.refresh(user)
        return True

    def issue(self, user: User, *, commit: bool = True) -> str:
        """Attach a fresh token hash to ``user`` and return the plaintext once."""
        token = generate_token()
        user.reconnect_token_hash = hash_token(token)
        if commit:
            self._commit()
        return token

    def resume(self, token: str) -> tuple[User, str] | None:
        """Resolve a token to its user and rotate it.

        The rotation is a compare-and-swap on the stored hash, so a token
        resumes at most once even when two requests race.

        Returns:
            ``(user, new_token)`` on success, or None if the token is unknown or stale.

        Raises:
            StorageUnavailable: If the rotated hash cannot be committed.
        """
        if not token:
            return None
        token_hash = hash_token(token)
        user = self._lookup(token_hash)
        if user is None or not verify_token(token, user.reconnect_token_hash):
            return None

        new_token = generate_token()
        if not self._rotate(user, token_hash, hash_token(new_token)):
            logger.warning("Reconnect token for user %s was already rotated", user.id)
            return None
        logger.info("Rotated reconnect token for user %s", user.id)
        return user, new_token

    def revoke(self, user: User, *, commit: bool = True) -> None:
        user.reconnect_token_hash = None
        if commit:
            self._commit()
