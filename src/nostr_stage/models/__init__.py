# src/nostr_stage/models/__init__.py
"""SQLAlchemy models for the Nostr Stage application."""

from .audit import AuditLog
from .content import Course, Lesson, Resource
from .user import Custody, User

__all__ = [
    "AuditLog",
    "Course", "Lesson", "Resource",
    "Custody", "User",
]
