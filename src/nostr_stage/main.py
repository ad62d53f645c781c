# src/nostr_stage/main.py
"""Main entry point for the Nostr Stage application."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from nostr_stage.api.v1 import account_router, auth_router, content_router
from nostr_stage.core.errors import (
    AuthenticationFailed,
    Conflict,
    Forbidden,
    InputValidationError,
    NoEndpointAccepted,
    NotFound,
    PrivateKeyRequired,
    PublishError,
    RateLimited,
    StageError,
    StorageUnavailable,
)
from nostr_stage.core.settings import settings
from nostr_stage.services.custody import get_custody_store
from nostr_stage.services.relays import get_relay_pool

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Most specific first; the first matching class wins.
_STATUS_BY_ERROR: tuple[tuple[type[StageError], int], ...] = (
    (AuthenticationFailed, status.HTTP_401_UNAUTHORIZED),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
    (InputValidationError, status.HTTP_400_BAD_REQUEST),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (Conflict, status.HTTP_409_CONFLICT),
    (PrivateKeyRequired, status.HTTP_409_CONFLICT),
    (NoEndpointAccepted, status.HTTP_502_BAD_GATEWAY),
    (StorageUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PublishError, status.HTTP_400_BAD_REQUEST),
)

_SERVER_SIDE_CODES = {"PERSIST_FAILED"}


def status_for(error: StageError) -> int:
    """Map a service error to its HTTP status code."""
    if error.code in _SERVER_SIDE_CODES:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if error.code == "ALREADY_PUBLISHED":
        return status.HTTP_409_CONFLICT
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Initialize FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Nostr identity, signing and relay publishing API",
    version=settings.app_version,
)

# Add GZip middleware for compression
app.add_middleware(GZipMiddleware)

# Include API routers
app.include_router(auth_router, prefix="/api/v1")
app.include_router(account_router, prefix="/api/v1")
app.include_router(content_router, prefix="/api/v1")


@app.exception_handler(StageError)
async def stage_error_handler(request: Request, exc: StageError) -> JSONResponse:
    status_code = status_for(exc)
    if isinstance(exc, AuthenticationFailed):
        # Reason is already logged by the verifier; never echo it.
        return JSONResponse(
            status_code=status_code,
            content={"detail": AuthenticationFailed.public_message, "code": exc.code},
        )

    headers: dict[str, str] = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    if status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    body: dict[str, object] = {"detail": exc.message, "code": exc.code}
    if status_code < status.HTTP_500_INTERNAL_SERVER_ERROR and exc.details is not None:
        body["details"] = exc.details
    return JSONResponse(status_code=status_code, content=body, headers=headers or None)


@app.on_event("startup")
async def on_startup() -> None:
    store = get_custody_store()
    if not store.encryption_enabled:
        logger.warning("Platform-held keys will be stored unencrypted (no PRIVKEY_ENCRYPTION_KEY)")


@app.get("/health")
async def health_check() -> dict[str, object]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok", "relays": get_relay_pool().get_metrics()}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("nostr_stage.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
