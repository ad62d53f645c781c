"""Account management endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from nostr_stage.api.v1.dependencies import (
    ClientIpDep,
    CurrentUserDep,
    CustodyDep,
    HttpAuthVerifierDep,
    RateLimiterDep,
    SessionDep,
)
from nostr_stage.schemas.auth import AuthResponse, LinkNostrRequest
from nostr_stage.services.http_auth import expected_url
from nostr_stage.services.identity import IdentityService

from .auth import create_access_token

router = APIRouter(prefix="/account", tags=["account"])

LINK_NOSTR_PATH = "/api/v1/account/link-nostr"


@router.post("/link-nostr", response_model=AuthResponse, summary="Link a self-held Nostr key")
async def link_nostr(
    payload: LinkNostrRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
    client_ip: ClientIpDep,
) -> AuthResponse:
    """Replace a platform-held key with one proven by a signed HTTP-auth event.

    The stored secret and any reconnect token are discarded. A self-held
    account cannot switch to a different key.
    """
    service = IdentityService(db, custody=custody, rate_limiter=limiter, verifier=verifier)
    identity = service.link_self_held_key(
        current_user,
        payload.pubkey,
        payload.event,
        expected_url(LINK_NOSTR_PATH),
        client_ip=client_ip,
    )
    return AuthResponse(
        access_token=create_access_token(identity.id, {"pubkey": identity.pubkey}),
        user_id=identity.id,
        pubkey=identity.pubkey,
        npub=identity.npub,
        custody=identity.custody,
    )
