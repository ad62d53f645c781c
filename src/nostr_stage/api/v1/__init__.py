"""Version 1 API endpoints."""

from .endpoints import account_router, auth_router, content_router

__all__ = [
    "account_router",
    "auth_router",
    "content_router",
]
