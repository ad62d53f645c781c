"""Shared API dependencies for authentication and common functionality."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session

from nostr_stage.core.settings import settings
from nostr_stage.db.session import get_db
from nostr_stage.models import User
from nostr_stage.services.custody import KeyCustodyStore, get_custody_store
from nostr_stage.services.http_auth import HttpAuthVerifier, get_http_auth_verifier
from nostr_stage.services.rate_limit import RateLimiter, get_rate_limiter
from nostr_stage.services.relays import RelayPool, get_relay_pool

# HTTP Bearer scheme for JWT authentication
bearer_scheme = HTTPBearer()

# Type alias for database session dependency
SessionDep = Annotated[Session, Depends(get_db)]


def get_current_user(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: SessionDep,
) -> User:
    """Get the current authenticated user from JWT token.

    Raises:
        HTTPException: If token is invalid or user not found
    """
    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
        )
    except JWTError as err:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from err

    subject = payload.get("sub")
    if not isinstance(subject, str):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    user = db.get(User, subject)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user


def get_client_ip(request: Request) -> str:
    """Return the originating client address, preferring proxy headers."""
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def get_custody_store_dep() -> KeyCustodyStore:
    return get_custody_store()


def get_rate_limiter_dep() -> RateLimiter:
    return get_rate_limiter()


def get_relay_pool_dep() -> RelayPool:
    return get_relay_pool()


def get_http_auth_verifier_dep() -> HttpAuthVerifier:
    return get_http_auth_verifier()


# Type aliases for dependencies
CurrentUserDep = Annotated[User, Depends(get_current_user)]
ClientIpDep = Annotated[str, Depends(get_client_ip)]
CustodyDep = Annotated[KeyCustodyStore, Depends(get_custody_store_dep)]
RateLimiterDep = Annotated[RateLimiter, Depends(get_rate_limiter_dep)]
RelayPoolDep = Annotated[RelayPool, Depends(get_relay_pool_dep)]
HttpAuthVerifierDep = Annotated[HttpAuthVerifier, Depends(get_http_auth_verifier_dep)]
