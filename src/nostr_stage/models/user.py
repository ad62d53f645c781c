# src/nostr_stage/models/user.py
"""SQLAlchemy model for user identities bound to a secp256k1 public key."""

from __future__ import annotations

import uuid
from enum import Enum

from sqlalchemy import Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from nostr_stage.db.session import Base


class Custody(str, Enum):
    """Who holds the signing key for an identity."""

    SELF_HELD = "self_held"
    PLATFORM_HELD = "platform_held"


def _new_user_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Account keyed by a lowercase hex x-only public key."""

    __tablename__ = "user_account"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_user_id)
    pubkey: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    # Sealed by the custody store; never populated for self-held identities.
    privkey: Mapped[str | None] = mapped_column(Text, nullable=True)
    custody: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=Custody.SELF_HELD.value,
    )
    primary_provider: Mapped[str] = mapped_column(String(16), nullable=False, default="nostr")
    username: Mapped[str | None] = mapped_column(String(64), nullable=True)
    avatar: Mapped[str | None] = mapped_column(Text, nullable=True)
    reconnect_token_hash: Mapped[str | None] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=True,
    )
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    resources = relationship("Resource", back_populates="owner")
    courses = relationship("Course", back_populates="owner")

    @property
    def is_platform_held(self) -> bool:
        """Return True if the server holds this identity's secret key."""
        return self.custody == Custody.PLATFORM_HELD.value
