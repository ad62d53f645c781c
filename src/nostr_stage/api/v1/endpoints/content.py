"""Publishing endpoints for resources and courses."""

from __future__ import annotations

from fastapi import APIRouter

from nostr_stage.api.v1.dependencies import CurrentUserDep, CustodyDep, RelayPoolDep, SessionDep
from nostr_stage.schemas.publish import (
    PublishCourseRequest,
    PublishResourceRequest,
    PublishResponse,
    RepublishCourseRequest,
    RepublishResourceRequest,
)
from nostr_stage.services.publish import PublishOutcome, PublishService
from nostr_stage.services.republish import RepublishService

router = APIRouter(tags=["content"])


def _response(outcome: PublishOutcome) -> PublishResponse:
    return PublishResponse(
        event=outcome.event,
        note_id=outcome.note_id,
        published_relays=outcome.published_relays,
        failed_relays=outcome.failed_relays,
        mode=outcome.mode,
    )


@router.post("/resources/publish", response_model=PublishResponse)
async def publish_resource(
    payload: PublishResourceRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    relay_pool: RelayPoolDep,
    custody: CustodyDep,
) -> PublishResponse:
    """Publish a new resource, signed by the client or by the platform."""
    service = PublishService(db, relay_pool=relay_pool, custody=custody)
    return _response(await service.publish_resource(current_user, payload.draft, payload))


@router.post("/courses/publish", response_model=PublishResponse)
async def publish_course(
    payload: PublishCourseRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    relay_pool: RelayPoolDep,
    custody: CustodyDep,
) -> PublishResponse:
    service = PublishService(db, relay_pool=relay_pool, custody=custody)
    outcome = await service.publish_course(
        current_user, payload.draft, payload.lesson_resource_ids, payload
    )
    return _response(outcome)


@router.post("/resources/{resource_id}/republish", response_model=PublishResponse)
async def republish_resource(
    resource_id: str,
    payload: RepublishResourceRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    relay_pool: RelayPoolDep,
    custody: CustodyDep,
) -> PublishResponse:
    """Publish an updated version of a resource under its existing identifier."""
    service = RepublishService(db, relay_pool=relay_pool, custody=custody)
    return _response(await service.republish_resource(resource_id, current_user, payload))


@router.post("/courses/{course_id}/republish", response_model=PublishResponse)
async def republish_course(
    course_id: str,
    payload: RepublishCourseRequest,
    current_user: CurrentUserDep,
    db: SessionDep,
    relay_pool: RelayPoolDep,
    custody: CustodyDep,
) -> PublishResponse:
    service = RepublishService(db, relay_pool=relay_pool, custody=custody)
    return _response(await service.republish_course(course_id, current_user, payload))
