import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from nostr_stage.core.errors import FieldMismatch, IdentifierMismatch, PrivateKeyRequired, PublishError, RepublishError
from nostr_stage.core.settings import settings
from nostr_stage.models import Course, Resource
from nostr_stage.schemas.publish import CourseDraft, PublishOptions, ResourceDraft
from nostr_stage.services.crypto import finalize_event
from nostr_stage.services.events import (
    KIND_CLASSIFIED,
    KIND_CURATION_SET,
    LessonReference,
    build_course_event,
    build_resource_event,
)
from nostr_stage.services.publish import PublishService, resolve_lessons, select_relays

RELAYS = ["wss://relay.one", "wss://relay.two", "wss://relay.three"]


@pytest.fixture()
def service(db_session: Session, relay_pool, custody_store) -> PublishService:
    return PublishService(db_session, relay_pool, custody_store)


def _draft(**overrides) -> ResourceDraft:
    fields = {"id": "lesson-1", "title": "Lesson", "content": "Body"}
    fields.update(overrides)
    return ResourceDraft(**fields)


@pytest.mark.asyncio
async def test_server_signs_and_records_resource(service, db_session: Session, make_user, relay_transport) -> None:
    user, _ = make_user()
    outcome = await service.publish_resource(user, _draft(price=100))

    assert outcome.mode == "server-sign"
    assert outcome.event.kind == KIND_CLASSIFIED
    assert outcome.event.pubkey == user.pubkey
    assert outcome.published_relays == RELAYS
    assert len(relay_transport.sent) == 3

    stored = db_session.get(Resource, "lesson-1")
    assert stored.note_id == outcome.note_id == outcome.event.id
    assert stored.price == 100
    assert stored.user_id == user.id


@pytest.mark.asyncio
async def test_self_held_user_without_signature_needs_key(service, make_user, relay_transport) -> None:
    user, _ = make_user(platform_held=False)
    with pytest.raises(PrivateKeyRequired):
        await service.publish_resource(user, _draft())
    assert relay_transport.sent == []


@pytest.mark.asyncio
async def test_client_signed_resource_is_accepted(service, db_session: Session, make_user) -> None:
    user, secret = make_user(platform_held=False)
    draft = _draft(type="video", video_url="https://youtu.be/abc12345678")
    signed = finalize_event(build_resource_event(draft, user.pubkey), secret)

    outcome = await service.publish_resource(user, draft, PublishOptions(signed_event=signed))

    assert outcome.mode == "signed-event"
    assert outcome.event.id == signed.id
    assert db_session.get(Resource, "lesson-1").video_url == "https://youtu.be/abc12345678"


@pytest.mark.asyncio
async def test_client_signed_resource_with_other_identifier_is_rejected(service, make_user) -> None:
    user, secret = make_user(platform_held=False)
    signed = finalize_event(build_resource_event(_draft(id="other"), user.pubkey), secret)
    with pytest.raises(IdentifierMismatch):
        await service.publish_resource(user, _draft(), PublishOptions(signed_event=signed))


@pytest.mark.asyncio
async def test_client_signed_price_mismatch_is_rejected(service, make_user, relay_transport) -> None:
    user, secret = make_user(platform_held=False)
    signed = finalize_event(build_resource_event(_draft(price=5), user.pubkey), secret)
    with pytest.raises(FieldMismatch) as excinfo:
        await service.publish_resource(user, _draft(price=10), PublishOptions(signed_event=signed))
    assert excinfo.value.code == "PRICE_MISMATCH"
    assert relay_transport.sent == []


@pytest.mark.asyncio
async def test_publishing_twice_is_rejected(service, make_user) -> None:
    user, _ = make_user()
    await service.publish_resource(user, _draft())
    with pytest.raises(PublishError) as excinfo:
        await service.publish_resource(user, _draft())
    assert excinfo.value.code == "ALREADY_PUBLISHED"


@pytest.mark.asyncio
async def test_course_references_lessons_in_order(service, db_session: Session, make_user) -> None:
    user, _ = make_user()
    await service.publish_resource(user, _draft(id="a", price=10))
    await service.publish_resource(user, _draft(id="b"))

    outcome = await service.publish_course(user, CourseDraft(id="course", title="C"), ["b", "a"])

    assert outcome.event.kind == KIND_CURATION_SET
    assert outcome.event.tag_values("a") == [f"30023:{user.pubkey}:b", f"30402:{user.pubkey}:a"]
    course = db_session.get(Course, "course")
    assert [lesson.resource_id for lesson in course.lessons] == ["b", "a"]
    assert [lesson.index for lesson in course.lessons] == [0, 1]


@pytest.mark.asyncio
async def test_course_with_unknown_lesson_is_rejected(service, make_user) -> None:
    user, _ = make_user()
    await service.publish_resource(user, _draft(id="a"))
    with pytest.raises(RepublishError) as excinfo:
        await service.publish_course(user, CourseDraft(id="course", title="C"), ["a", "missing"])
    assert excinfo.value.code == "MISSING_LESSONS"


@pytest.mark.asyncio
async def test_client_signed_course_lesson_mismatch(service, make_user) -> None:
    user, secret = make_user(platform_held=False)
    db_resource = Resource(id="a", user_id=user.id, price=0)
    service.db.add(db_resource)
    service.db.commit()

    draft = CourseDraft(id="course", title="C")
    wrong = [LessonReference(resource_id="z", pubkey=user.pubkey)]
    signed = finalize_event(build_course_event(draft, wrong, user.pubkey), secret)

    with pytest.raises(RepublishError) as excinfo:
        await service.publish_course(user, draft, ["a"], PublishOptions(signed_event=signed))
    assert excinfo.value.code == "LESSON_MISMATCH"


@pytest.mark.asyncio
async def test_persist_failure_is_reported(service, db_session: Session, make_user, mocker) -> None:
    user, _ = make_user()
    mocker.patch.object(db_session, "commit", side_effect=OperationalError("INSERT", {}, Exception("locked")))

    with pytest.raises(RepublishError) as excinfo:
        await service.publish_resource(user, _draft())
    assert excinfo.value.code == "PERSIST_FAILED"
    assert excinfo.value.details["published_relays"] == RELAYS


def test_resolve_lessons_rejects_empty_course() -> None:
    with pytest.raises(RepublishError) as excinfo:
        resolve_lessons([])
    assert excinfo.value.code == "MISSING_LESSONS"


def test_select_relays_prefers_allowlisted_explicit_relays() -> None:
    assert select_relays(PublishOptions(relays=["wss://relay.two"])) == ["wss://relay.two"]
    assert select_relays(PublishOptions(relays=["wss://evil.test"])) == RELAYS
    assert select_relays(PublishOptions()) == RELAYS


def test_select_relays_defaults_to_default_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings, "relays_content", ["wss://content.example"])
    assert PublishOptions().relay_set == "default"
    assert select_relays(PublishOptions()) == RELAYS
    assert select_relays(PublishOptions(relay_set="content")) == ["wss://content.example"]
