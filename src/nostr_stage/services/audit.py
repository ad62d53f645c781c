"""Structured audit records for account actions."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.orm import Session

from nostr_stage.models import AuditLog

logger = logging.getLogger(__name__)

ACCOUNT_LINK = "account.link"


def record_audit(
    db: Session,
    user_id: str,
    action: str,
    details: dict[str, Any],
    ip: str | None = None,
) -> AuditLog:
    """Stage an audit row on ``db``.

    The row is not committed here; it is written by the caller's commit so the
    record and the action it describes succeed or fail together.
    """
    entry = AuditLog(user_id=user_id, action=action, details=details, ip=ip)
    db.add(entry)
    logger.info("audit action=%s user=%s ip=%s details=%s", action, user_id, ip, details)
    return entry
