"""First publication of resources and courses."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Literal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nostr_stage.core.errors import PublishError, RepublishError
from nostr_stage.models import Course, Lesson, Resource, User
from nostr_stage.schemas.event import SignedEvent
from nostr_stage.schemas.publish import CourseDraft, PublishOptions, ResourceDraft
from nostr_stage.services.custody import KeyCustodyStore, get_custody_store
from nostr_stage.services.events import (
    LessonReference,
    build_course_event,
    build_resource_event,
    sign_event,
    validate_video_url,
)
from nostr_stage.services.invariants import (
    check_course_fields,
    check_resource_fields,
    check_signed_event,
)
from nostr_stage.services.relays import (
    PublishResult,
    RelayPool,
    get_relay_pool,
    get_relays,
    sanitize_relay_hints,
)

logger = logging.getLogger(__name__)

PublishMode = Literal["server-sign", "signed-event"]


@dataclass(frozen=True)
class PublishOutcome:
    """Signed event plus where it landed."""

    event: SignedEvent
    note_id: str
    published_relays: list[str]
    failed_relays: list[str] = field(default_factory=list)
    mode: PublishMode = "server-sign"

    @classmethod
    def from_result(cls, event: SignedEvent, result: PublishResult, mode: PublishMode) -> PublishOutcome:
        return cls(
            event=event,
            note_id=event.id,
            published_relays=list(result.succeeded),
            failed_relays=result.failed_relays,
            mode=mode,
        )


def select_relays(options: PublishOptions) -> list[str]:
    """Use allowlisted explicit relays when given, otherwise the named relay set."""
    explicit = sanitize_relay_hints(options.relays)
    if options.relays and not explicit:
        logger.warning("Discarded %d relay hint(s) not on the allowlist", len(options.relays))
    return explicit or get_relays(options.relay_set)


def commit_or_raise(db: Session, event: SignedEvent, result: PublishResult) -> None:
    """Commit the record update that pairs with a relay publish.

    Raises:
        RepublishError: ``PERSIST_FAILED`` after rolling back. The event is
            already on relays, so this is never reported as success.
    """
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error(
            "Event %s published to %d relay(s) but the record update failed: %s",
            event.id[:16],
            len(result.succeeded),
            exc.__class__.__name__,
        )
        raise RepublishError(
            "Event was published but the record could not be saved",
            code="PERSIST_FAILED",
            details={"event_id": event.id, "published_relays": list(result.succeeded)},
        ) from exc


def resolve_lessons(lessons: Sequence[Resource | None]) -> list[LessonReference]:
    """Map lesson resources to references, rejecting gaps.

    Raises:
        RepublishError: ``MISSING_LESSONS`` when a lesson has no resource or
            publisher, or when there are no lessons at all.
    """
    references: list[LessonReference] = []
    missing = 0
    for resource in lessons:
        if resource is None or resource.owner is None or not resource.owner.pubkey:
            missing += 1
            continue
        references.append(
            LessonReference(resource_id=resource.id, pubkey=resource.owner.pubkey, price=resource.price)
        )
    if missing or not references:
        message = (
            f"Course contains {missing} lesson(s) missing resources or publisher pubkeys"
            if missing
            else "Course must reference at least one published lesson"
        )
        raise RepublishError(message, code="MISSING_LESSONS")
    return references


class PublishService:
    """Sign (or accept a client signature), fan out, then create the record."""

    def __init__(
        self,
        db: Session,
        relay_pool: RelayPool | None = None,
        custody: KeyCustodyStore | None = None,
    ) -> None:
        self.db = db
        self.relay_pool = relay_pool or get_relay_pool()
        self.custody = custody or get_custody_store()

    def _ensure_new(self, model: type[Resource] | type[Course], identifier: str) -> None:
        if self.db.get(model, identifier) is not None:
            raise PublishError(
                f"{model.__name__} {identifier} is already published; republish it instead",
                code="ALREADY_PUBLISHED",
            )

    async def publish_resource(
        self,
        user: User,
        draft: ResourceDraft,
        options: PublishOptions | None = None,
    ) -> PublishOutcome:
        options = options or PublishOptions()
        self._ensure_new(Resource, draft.id)
        relays = select_relays(options)

        if options.signed_event is not None:
            event = options.signed_event
            check_signed_event(event, draft.id, user.pubkey)
            price, video_url = check_resource_fields(event, draft)
            mode: PublishMode = "signed-event"
        else:
            capability = self.custody.require_capability(user)
            event = sign_event(build_resource_event(draft, user.pubkey), capability)
            price = draft.price
            video_url = validate_video_url(draft.video_url) if draft.type == "video" else None
            mode = "server-sign"

        result = await self.relay_pool.publish(relays, event)
        self.db.add(
            Resource(id=draft.id, user_id=user.id, price=price, note_id=event.id, video_url=video_url)
        )
        commit_or_raise(self.db, event, result)
        logger.info("Published resource %s as %s (%s)", draft.id, event.id[:16], mode)
        return PublishOutcome.from_result(event, result, mode)

    async def publish_course(
        self,
        user: User,
        draft: CourseDraft,
        lesson_resource_ids: Sequence[str],
        options: PublishOptions | None = None,
    ) -> PublishOutcome:
        options = options or PublishOptions()
        self._ensure_new(Course, draft.id)
        resources = {
            resource.id: resource
            for resource in self.db.scalars(
                select(Resource).where(Resource.id.in_(list(lesson_resource_ids)))
            )
        }
        lessons = resolve_lessons([resources.get(rid) for rid in lesson_resource_ids])
        relays = select_relays(options)

        if options.signed_event is not None:
            event = options.signed_event
            check_signed_event(event, draft.id, user.pubkey)
            price = check_course_fields(event, draft, lessons)
            mode: PublishMode = "signed-event"
        else:
            capability = self.custody.require_capability(user)
            event = sign_event(build_course_event(draft, lessons, user.pubkey), capability)
            price = draft.price
            mode = "server-sign"

        result = await self.relay_pool.publish(relays, event)
        course = Course(id=draft.id, user_id=user.id, price=price, note_id=event.id)
        course.lessons = [
            Lesson(resource_id=lesson.resource_id, index=position)
            for position, lesson in enumerate(lessons)
        ]
        self.db.add(course)
        commit_or_raise(self.db, event, result)
        logger.info("Published course %s as %s (%s)", draft.id, event.id[:16], mode)
        return PublishOutcome.from_result(event, result, mode)
