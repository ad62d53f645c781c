"""Checks that a client-signed event says what the request payload declares.

Each check raises a :class:`RepublishError` subclass with a specific code;
mismatches are always rejected and never corrected.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from nostr_stage.core.errors import FieldMismatch, IdentifierMismatch, RepublishError
from nostr_stage.schemas.event import SignedEvent
from nostr_stage.schemas.publish import CourseFields, ResourceFields
from nostr_stage.services.crypto import verify_event
from nostr_stage.services.events import (
    LessonReference,
    extract_identifier,
    lesson_reference_keys,
    parse_course_event,
    parse_resource_event,
)

logger = logging.getLogger(__name__)


def parse_price(raw: str | None) -> int:
    """Return a price tag value as whole sats; a missing tag means free."""
    value = (raw or "").strip()
    if not value:
        return 0
    try:
        price = int(value)
    except ValueError:
        try:
            as_float = float(value)
        except ValueError:
            raise RepublishError(
                "Signed event price is invalid", code="INVALID_PRICE", details={"price": raw}
            ) from None
        if not as_float.is_integer():
            raise RepublishError(
                "Signed event price is invalid", code="INVALID_PRICE", details={"price": raw}
            ) from None
        price = int(as_float)
    if price < 0:
        raise RepublishError("Signed event price is invalid", code="INVALID_PRICE", details={"price": raw})
    return price


def check_signed_event(event: SignedEvent, identifier: str, owner_pubkey: str) -> None:
    """Digest and signature, then the ``d`` tag, then the author."""
    result = verify_event(event)
    if not result:
        logger.warning("Rejected signed event %s: %s", event.id[:16], result.reason)
        raise RepublishError("Signed event failed verification", code="INVALID_EVENT")

    if extract_identifier(event) != identifier:
        raise IdentifierMismatch(
            "Signed event must include matching d tag",
            details={"expected": identifier, "event": extract_identifier(event)},
        )

    if event.pubkey != owner_pubkey:
        raise RepublishError("Signed event must be signed by the record owner", code="INVALID_PUBKEY")


def _check_price(declared: int, event_price: int) -> None:
    if declared != event_price:
        raise FieldMismatch(
            "Payload price does not match signed event",
            code="PRICE_MISMATCH",
            details={"payload_price": declared, "event_price": event_price},
        )


def check_resource_fields(event: SignedEvent, fields: ResourceFields) -> tuple[int, str | None]:
    """Compare price, type and video URL. Returns ``(price, video_url)`` from the event."""
    parsed = parse_resource_event(event)
    event_price = parse_price(parsed.price)
    _check_price(fields.price, event_price)

    if fields.type != parsed.type:
        raise FieldMismatch(
            "Payload type does not match signed event",
            code="TYPE_MISMATCH",
            details={"payload_type": fields.type, "event_type": parsed.type},
        )

    event_video = ((parsed.video_url or "").strip() or None) if parsed.type == "video" else None
    payload_video = ((fields.video_url or "").strip() or None) if fields.type == "video" else None

    if (event_video is None) != (payload_video is None):
        raise FieldMismatch(
            "Video URL presence differs between payload and signed event",
            code="VIDEO_TYPE_MISMATCH",
            details={"payload_video_url": payload_video, "event_video_url": event_video},
        )
    if payload_video != event_video:
        raise FieldMismatch(
            "Payload video URL does not match signed event",
            code="VIDEO_URL_MISMATCH",
            details={"payload_video_url": payload_video, "event_video_url": event_video},
        )
    return event_price, event_video


def check_course_fields(
    event: SignedEvent,
    fields: CourseFields,
    lessons: Iterable[LessonReference],
) -> int:
    """Compare price and the lesson reference set. Returns the event price."""
    parsed = parse_course_event(event)
    event_price = parse_price(parsed.price)
    _check_price(fields.price, event_price)

    expected = {lesson.key for lesson in lessons}
    referenced = lesson_reference_keys(event)
    if not referenced or referenced != expected:
        raise RepublishError(
            "Signed course event lessons do not match current course lessons",
            code="LESSON_MISMATCH",
            details={"expected": sorted(expected), "event": sorted(referenced)},
        )
    return event_price
