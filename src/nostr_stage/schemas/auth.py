"""Authentication request and response schemas."""

from pydantic import BaseModel, Field

from nostr_stage.schemas.event import SignedEvent


class NostrLoginRequest(BaseModel):
    """Login by presenting a signed HTTP-auth event."""

    pubkey: str = Field(..., description="Public key the client claims to control")
    event: SignedEvent


class ReconnectRequest(BaseModel):
    token: str = Field(..., min_length=1, description="Reconnect token from a previous session")


class RecoveryRequest(BaseModel):
    private_key: str = Field(..., description="Platform-held secret as hex or nsec")


class LinkNostrRequest(BaseModel):
    """Replace a platform-held key with a self-held one."""

    pubkey: str
    event: SignedEvent


class AuthResponse(BaseModel):
    """Session token plus the public identity it belongs to."""

    access_token: str
    token_type: str = "bearer"
    user_id: str
    pubkey: str
    npub: str = Field(..., description="Public key in NIP-19 bech32 form")
    custody: str
    created: bool = False
    reconnect_token: str | None = Field(
        None,
        description="Store this to resume an anonymous identity; it rotates on every use",
    )
