"""Pydantic schemas for the canonical Nostr event wire shape."""

import re

from pydantic import BaseModel, ConfigDict, Field, field_validator

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")


class UnsignedEvent(BaseModel):
    """Event draft without its content-addressed id and signature."""

    pubkey: str = Field(..., description="Author x-only public key (64 lowercase hex)")
    created_at: int = Field(..., ge=0, description="Unix timestamp in seconds")
    kind: int = Field(..., ge=0, description="Event kind")
    tags: list[list[str]] = Field(default_factory=list, description="Ordered tag lists")
    content: str = Field("", description="Event content")

    model_config = ConfigDict(extra="ignore")

    @field_validator("pubkey")
    @classmethod
    def _check_pubkey(cls, value: str) -> str:
        if not _HEX64.match(value):
            raise ValueError("pubkey must be 64 lowercase hex characters")
        return value

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag called ``name``, in order."""
        return [tag[1] for tag in self.tags if len(tag) > 1 and tag[0] == name]

    def first_tag(self, name: str) -> str | None:
        """Return the first value of the first tag called ``name``."""
        values = self.tag_values(name)
        return values[0] if values else None


class SignedEvent(UnsignedEvent):
    """Complete event as exchanged with relays and clients."""

    id: str = Field(..., description="sha256 of the canonical serialization (64 hex)")
    sig: str = Field(..., description="BIP-340 Schnorr signature (128 hex)")

    # Every field is required on the wire, including tags.
    tags: list[list[str]] = Field(..., description="Ordered tag lists")
    content: str = Field(..., description="Event content")

    @field_validator("id")
    @classmethod
    def _check_id(cls, value: str) -> str:
        if not _HEX64.match(value):
            raise ValueError("id must be 64 lowercase hex characters")
        return value

    @field_validator("sig")
    @classmethod
    def _check_sig(cls, value: str) -> str:
        if not _HEX128.match(value):
            raise ValueError("sig must be 128 lowercase hex characters")
        return value

    def to_wire(self) -> dict[str, object]:
        """Return the event as the plain dict relays expect."""
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": self.kind,
            "tags": [list(tag) for tag in self.tags],
            "content": self.content,
            "sig": self.sig,
        }
