# src/nostr_stage/api/v1/endpoints/auth.py
"""Authentication endpoints for the Nostr Stage API."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from jose import jwt

from nostr_stage.api.v1.dependencies import (
    ClientIpDep,
    CustodyDep,
    HttpAuthVerifierDep,
    RateLimiterDep,
    SessionDep,
)
from nostr_stage.core.settings import AuthProvider, settings
from nostr_stage.schemas.auth import (
    AuthResponse,
    NostrLoginRequest,
    ReconnectRequest,
    RecoveryRequest,
)
from nostr_stage.schemas.identity import IdentityProof
from nostr_stage.services.http_auth import expected_url
from nostr_stage.services.identity import (
    AnonymousCredential,
    IdentityService,
    NostrCredential,
    ReconnectCredential,
    RecoveryCredential,
)

router = APIRouter(prefix="/auth", tags=["authentication"])

NOSTR_LOGIN_PATH = "/api/v1/auth/nostr"


def create_access_token(subject: str, extra_claims: dict[str, str] | None = None) -> str:
    """Create JWT access token for user authentication."""
    to_encode: dict[str, object] = {"sub": subject}
    if extra_claims:
        to_encode.update(extra_claims)
    expire = datetime.now(UTC) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode["exp"] = expire
    encoded_jwt: str = jwt.encode(
        to_encode,
        settings.secret_key,
        algorithm=settings.jwt_algorithm,
    )
    return encoded_jwt


def _response(proof: IdentityProof) -> AuthResponse:
    identity = proof.identity
    return AuthResponse(
        access_token=create_access_token(identity.id, {"pubkey": identity.pubkey}),
        user_id=identity.id,
        pubkey=identity.pubkey,
        npub=identity.npub,
        custody=identity.custody,
        created=proof.created,
        reconnect_token=proof.reconnect_token,
    )


def _service(
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
) -> IdentityService:
    return IdentityService(db, custody=custody, rate_limiter=limiter, verifier=verifier)


@router.post("/nostr", response_model=AuthResponse, summary="Log in with a signed HTTP-auth event")
async def login_nostr(
    payload: NostrLoginRequest,
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
) -> AuthResponse:
    """Verify a kind-27235 event signed for this URL and create the account on first use."""
    service = _service(db, custody, limiter, verifier)
    credential = NostrCredential(
        pubkey=payload.pubkey,
        event=payload.event,
        url=expected_url(NOSTR_LOGIN_PATH),
        method="POST",
    )
    return _response(service.prove_identity(AuthProvider.NOSTR, credential))


@router.post("/anonymous", response_model=AuthResponse, summary="Create an anonymous account")
async def login_anonymous(
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
    client_ip: ClientIpDep,
) -> AuthResponse:
    service = _service(db, custody, limiter, verifier)
    proof = service.prove_identity(AuthProvider.ANONYMOUS, AnonymousCredential(client_ip=client_ip))
    return _response(proof)


@router.post("/reconnect", response_model=AuthResponse, summary="Resume an anonymous account")
async def login_reconnect(
    payload: ReconnectRequest,
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
) -> AuthResponse:
    """Exchange a reconnect token for a session and a rotated token."""
    service = _service(db, custody, limiter, verifier)
    proof = service.prove_identity(AuthProvider.RECONNECT, ReconnectCredential(token=payload.token))
    return _response(proof)


@router.post("/recovery", response_model=AuthResponse, summary="Recover an account by private key")
async def login_recovery(
    payload: RecoveryRequest,
    db: SessionDep,
    custody: CustodyDep,
    limiter: RateLimiterDep,
    verifier: HttpAuthVerifierDep,
    client_ip: ClientIpDep,
) -> AuthResponse:
    service = _service(db, custody, limiter, verifier)
    credential = RecoveryCredential(private_key=payload.private_key, client_ip=client_ip)
    return _response(service.prove_identity(AuthProvider.RECOVERY, credential))
