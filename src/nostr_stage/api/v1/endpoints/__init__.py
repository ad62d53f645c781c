"""API endpoint modules for version 1."""

from .account import router as account_router
from .auth import router as auth_router
from .content import router as content_router

__all__ = [
    "account_router",
    "auth_router",
    "content_router",
]
