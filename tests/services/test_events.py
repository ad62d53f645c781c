import pytest

from nostr_stage.schemas.publish import AdditionalLink, CourseDraft, ResourceDraft
from nostr_stage.services.crypto import compute_event_id, verify_event
from nostr_stage.services.custody import SigningCapability
from nostr_stage.services.events import (
    KIND_CLASSIFIED,
    KIND_CURATION_SET,
    KIND_LONG_FORM,
    LessonReference,
    build_course_event,
    build_resource_event,
    build_video_embed,
    extract_identifier,
    format_resource_content,
    lesson_reference_keys,
    parse_course_event,
    parse_resource_event,
    sign_event,
    validate_video_url,
)
from nostr_stage.services.keys import generate_keypair

PUBKEY = "f9308a019258c31049344f85f89d5229b531c845836f99b08601f113bce036f9"


def _resource(**overrides) -> ResourceDraft:
    fields = {
        "id": "res-1",
        "title": "Intro",
        "summary": "A short summary",
        "content": "Body text",
        "topics": ["Bitcoin", "NOSTR"],
    }
    fields.update(overrides)
    return ResourceDraft(**fields)


def test_free_document_tags_in_canonical_order() -> None:
    event = build_resource_event(
        _resource(additional_links=[AdditionalLink(url="example.com/docs", title="Docs")]),
        PUBKEY,
        created_at=1_700_000_000,
    )
    assert event.kind == KIND_LONG_FORM
    assert event.tags == [
        ["d", "res-1"],
        ["title", "Intro"],
        ["summary", "A short summary"],
        ["published_at", "1700000000"],
        ["t", "bitcoin"],
        ["t", "nostr"],
        ["t", "document"],
        ["r", "https://example.com/docs", "Docs"],
    ]
    assert event.content == "Body text"


def test_paid_resource_is_classified_with_price_tag() -> None:
    event = build_resource_event(_resource(price=2100, image="https://img.test/a.png"), PUBKEY)
    assert event.kind == KIND_CLASSIFIED
    names = [tag[0] for tag in event.tags]
    assert names.index("image") < names.index("price") < names.index("t")
    assert ["price", "2100", "SATS"] in event.tags


def test_zero_price_has_no_price_tag() -> None:
    event = build_resource_event(_resource(price=0), PUBKEY)
    assert not any(tag[0] == "price" for tag in event.tags)


def test_video_draft_embeds_player_and_video_tag() -> None:
    draft = _resource(
        type="video",
        title="Intro",
        video_url="https://youtu.be/abc12345678",
        content="notes",
    )
    event = build_resource_event(draft, PUBKEY)

    assert "https://www.youtube.com/embed/abc12345678" in event.content
    assert event.content.startswith("# Intro\n\n")
    assert event.content.endswith("\n\nnotes")
    assert event.content.index("abc12345678") < event.content.index("notes")
    assert "\n\n\n" not in event.content
    assert ["video", "https://youtu.be/abc12345678"] in event.tags
    assert ["t", "video"] in event.tags


def test_video_url_must_be_https() -> None:
    draft = _resource(type="video", video_url="http://youtu.be/abc12345678", content="notes")
    event = build_resource_event(draft, PUBKEY)
    assert not any(tag[0] == "video" for tag in event.tags)
    assert event.content == "# Intro\n\nnotes"
    assert validate_video_url("javascript:alert(1)") is None
    assert validate_video_url("  ") is None


def test_document_ignores_video_url() -> None:
    event = build_resource_event(_resource(video_url="https://youtu.be/abc12345678"), PUBKEY)
    assert not any(tag[0] == "video" for tag in event.tags)


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("https://www.youtube.com/watch?v=abc12345678", "https://www.youtube.com/embed/abc12345678"),
        ("https://youtube.com/shorts/abc12345678", "https://www.youtube.com/embed/abc12345678"),
        ("https://vimeo.com/123456", "https://player.vimeo.com/video/123456"),
        ("https://cdn.test/clip.MP4?sig=1", '<video controls src="https://cdn.test/clip.MP4?sig=1"'),
        ("https://example.com/watch/42", ">[!TIP]\n> Watch the video here: [T](https://example.com/watch/42)"),
    ],
)
def test_video_embed_variants(url: str, expected: str) -> None:
    assert expected in build_video_embed(url, "T")


def test_video_embed_escapes_title() -> None:
    embed = build_video_embed("https://youtu.be/abc12345678", '<script>"x"</script>')
    assert "<script>" not in embed
    assert "&lt;script&gt;&quot;x&quot;&lt;/script&gt;" in embed


def test_video_content_collapses_blank_lines() -> None:
    draft = _resource(type="video", video_url=None, content="\n\n\nline one\n\n\n\nline two\n")
    content = format_resource_content(draft)
    assert "\n\n\n" not in content
    assert content == "# Intro\n\nline one\n\nline two"


def test_course_event_references_lessons_in_order() -> None:
    lessons = [
        LessonReference(resource_id="free-1", pubkey="aa" * 32, price=0),
        LessonReference(resource_id="paid-1", pubkey="bb" * 32, price=500),
    ]
    draft = CourseDraft(id="course-1", title="Course", summary="About", price=1000, topics=["Dev"])
    event = build_course_event(draft, lessons, PUBKEY, created_at=1_700_000_000)

    assert event.kind == KIND_CURATION_SET
    assert event.content == ""
    assert event.tags == [
        ["d", "course-1"],
        ["name", "Course"],
        ["about", "About"],
        ["published_at", "1700000000"],
        ["price", "1000", "SATS"],
        ["t", "dev"],
        ["t", "course"],
        ["a", f"30023:{'aa' * 32}:free-1"],
        ["a", f"30402:{'bb' * 32}:paid-1"],
    ]
    assert lesson_reference_keys(event) == {f"{'aa' * 32}:free-1", f"{'bb' * 32}:paid-1"}


def test_signed_builder_output_verifies() -> None:
    secret, pubkey = generate_keypair()
    capability = SigningCapability(secret, pubkey)
    for unsigned in (
        build_resource_event(_resource(price=10), pubkey),
        build_resource_event(_resource(type="video", video_url="https://vimeo.com/1"), pubkey),
        build_course_event(
            CourseDraft(id="c", title="C"),
            [LessonReference(resource_id="r", pubkey=pubkey)],
            pubkey,
        ),
    ):
        signed = sign_event(unsigned, capability)
        assert signed.id == compute_event_id(signed)
        assert verify_event(signed).ok


def test_parse_resource_event_reads_back_fields() -> None:
    draft = _resource(
        type="video",
        price=42,
        video_url="https://youtu.be/abc12345678",
        additional_links=[AdditionalLink(url="https://a.test")],
    )
    parsed = parse_resource_event(build_resource_event(draft, PUBKEY))
    assert parsed.identifier == "res-1"
    assert parsed.title == "Intro"
    assert parsed.price == "42"
    assert parsed.type == "video"
    assert parsed.video_url == "https://youtu.be/abc12345678"
    assert parsed.topics == ["bitcoin", "nostr"]
    assert [link.url for link in parsed.links] == ["https://a.test"]


def test_parse_course_event_and_identifier() -> None:
    event = build_course_event(
        CourseDraft(id="c-9", title="Name", summary="About", topics=["x"]),
        [LessonReference(resource_id="r", pubkey=PUBKEY)],
        PUBKEY,
    )
    parsed = parse_course_event(event)
    assert extract_identifier(event) == "c-9"
    assert parsed.name == "Name"
    assert parsed.about == "About"
    assert parsed.price is None
    assert parsed.topics == ["x"]
    assert parsed.lesson_addresses == [f"30023:{PUBKEY}:r"]


def test_lesson_reference_keys_skip_malformed_addresses() -> None:
    event = build_course_event(CourseDraft(id="c", title="C"), [], PUBKEY)
    event.tags.extend([["a", "30023:only-two"], ["a"], ["a", "30023::missing"]])
    assert lesson_reference_keys(event) == set()
