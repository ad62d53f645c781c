"""Republishing replaceable records under their existing identifier.

A republish is always a new signed event that shares the record's ``d``
tag. With a client-signed event every invariant in
:mod:`nostr_stage.services.invariants` must hold; otherwise the platform
signs with the owner's custodied key. The relay publish and the record
update run inside one transaction while the record row is locked.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from nostr_stage.core.errors import Forbidden, NotFound, PrivateKeyRequired, RepublishError
from nostr_stage.models import Course, Lesson, Resource, User
from nostr_stage.schemas.publish import (
    CourseDraft,
    RepublishCourseRequest,
    RepublishResourceRequest,
    ResourceDraft,
)
from nostr_stage.services.custody import KeyCustodyStore, SigningCapability, get_custody_store
from nostr_stage.services.events import (
    build_course_event,
    build_resource_event,
    extract_identifier,
    sign_event,
    validate_video_url,
)
from nostr_stage.services.invariants import (
    check_course_fields,
    check_resource_fields,
    check_signed_event,
)
from nostr_stage.services.publish import (
    PublishMode,
    PublishOutcome,
    commit_or_raise,
    resolve_lessons,
    select_relays,
)
from nostr_stage.services.relays import RelayPool, get_relay_pool

logger = logging.getLogger(__name__)


def _assert_can_manage(owner_id: str, actor: User) -> None:
    if owner_id == actor.id:
        return
    if not actor.is_admin:
        raise Forbidden("Access denied")


class RepublishService:
    """Validate and publish updated versions of resources and courses."""

    def __init__(
        self,
        db: Session,
        relay_pool: RelayPool | None = None,
        custody: KeyCustodyStore | None = None,
    ) -> None:
        self.db = db
        self.relay_pool = relay_pool or get_relay_pool()
        self.custody = custody or get_custody_store()

    def _load_resource(self, resource_id: str) -> Resource:
        resource = self.db.scalars(
            select(Resource)
            .where(Resource.id == resource_id)
            .options(selectinload(Resource.owner))
            .with_for_update()
        ).first()
        if resource is None or resource.owner is None:
            raise NotFound("Resource not found")
        return resource

    def _load_course(self, course_id: str) -> Course:
        course = self.db.scalars(
            select(Course)
            .where(Course.id == course_id)
            .options(
                selectinload(Course.owner),
                selectinload(Course.lessons).selectinload(Lesson.resource).selectinload(Resource.owner),
            )
            .with_for_update()
        ).first()
        if course is None or course.owner is None:
            raise NotFound("Course not found")
        return course

    def _capability_for(self, owner: User) -> SigningCapability:
        capability = self.custody.signing_capability(owner)
        if capability is None:
            message = (
                "Private key required to republish this record"
                if not owner.privkey
                else "Private key unavailable for server-side signing"
            )
            raise PrivateKeyRequired(message)
        return capability

    async def republish_resource(
        self,
        resource_id: str,
        actor: User,
        request: RepublishResourceRequest,
    ) -> PublishOutcome:
        try:
            return await self._republish_resource(resource_id, actor, request)
        except BaseException:
            # Release the row lock on every failure path.
            self.db.rollback()
            raise

    async def _republish_resource(
        self,
        resource_id: str,
        actor: User,
        request: RepublishResourceRequest,
    ) -> PublishOutcome:
        resource = self._load_resource(resource_id)
        owner = resource.owner
        _assert_can_manage(resource.user_id, actor)
        relays = select_relays(request)
        fields = request.fields

        if request.signed_event is not None:
            event = request.signed_event
            check_signed_event(event, resource_id, owner.pubkey)
            price, video_url = check_resource_fields(event, fields)
            mode: PublishMode = "signed-event"
        else:
            capability = self._capability_for(owner)
            draft = ResourceDraft(id=resource_id, **fields.model_dump())
            event = sign_event(build_resource_event(draft, owner.pubkey), capability)
            if extract_identifier(event) != resource_id:
                raise RepublishError("Generated event missing matching d tag", code="INVALID_EVENT")
            price = fields.price
            video_url = validate_video_url(fields.video_url) if fields.type == "video" else None
            mode = "server-sign"

        result = await self.relay_pool.publish(relays, event)
        resource.price = price
        resource.note_id = event.id
        resource.video_url = video_url
        commit_or_raise(self.db, event, result)
        logger.info("Republished resource %s as %s (%s)", resource_id, event.id[:16], mode)
        return PublishOutcome.from_result(event, result, mode)

    async def republish_course(
        self,
        course_id: str,
        actor: User,
        request: RepublishCourseRequest,
    ) -> PublishOutcome:
        try:
            return await self._republish_course(course_id, actor, request)
        except BaseException:
            self.db.rollback()
            raise

    async def _republish_course(
        self,
        course_id: str,
        actor: User,
        request: RepublishCourseRequest,
    ) -> PublishOutcome:
        course = self._load_course(course_id)
        owner = course.owner
        _assert_can_manage(course.user_id, actor)
        relays = select_relays(request)
        fields = request.fields
        lessons = resolve_lessons([lesson.resource for lesson in course.lessons])

        if request.signed_event is not None:
            event = request.signed_event
            check_signed_event(event, course_id, owner.pubkey)
            price = check_course_fields(event, fields, lessons)
            mode: PublishMode = "signed-event"
        else:
            capability = self._capability_for(owner)
            draft = CourseDraft(id=course_id, **fields.model_dump())
            event = sign_event(build_course_event(draft, lessons, owner.pubkey), capability)
            price = fields.price
            mode = "server-sign"

        result = await self.relay_pool.publish(relays, event)
        course.price = price
        course.note_id = event.id
        commit_or_raise(self.db, event, result)
        logger.info("Republished course %s as %s (%s)", course_id, event.id[:16], mode)
        return PublishOutcome.from_result(event, result, mode)
