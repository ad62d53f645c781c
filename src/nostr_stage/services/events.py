"""Builders and parsers for the replaceable events this service publishes.

Kinds:
    30023  long-form content (free resource)
    30402  classified listing (paid resource)
    30004  curation set (course)
    27235  HTTP auth
"""

from __future__ import annotations

import html
import logging
import re
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from nostr_stage.schemas.event import SignedEvent, UnsignedEvent
from nostr_stage.schemas.publish import AdditionalLink, CourseDraft, ResourceDraft
from nostr_stage.services.custody import SigningCapability
from nostr_stage.utils.links import links_to_tags, normalize_links, tags_to_links

logger = logging.getLogger(__name__)

KIND_LONG_FORM = 30023
KIND_CLASSIFIED = 30402
KIND_CURATION_SET = 30004
KIND_HTTP_AUTH = 27235

PRICE_UNIT = "SATS"
COURSE_TYPE_TAG = "course"

_YOUTUBE = re.compile(r"(?:youtu\.be/|youtube\.com/(?:watch\?v=|embed/|shorts/))([A-Za-z0-9_-]{11})")
_VIMEO = re.compile(r"vimeo\.com/(?:video/)?(\d+)")
_DIRECT_VIDEO = re.compile(r"\.(mp4|webm|mov|m4v|mkv)(?:\?.*)?$", re.IGNORECASE)
_EXCESS_NEWLINES = re.compile(r"\n{3,}")

_EMBED_WRAPPER = (
    '<div class="video-embed" style="position:relative;padding-bottom:56.25%;height:0;'
    'overflow:hidden;border-radius:12px;">'
)
_IFRAME_STYLE = "position:absolute;top:0;left:0;width:100%;height:100%;"


def resource_kind(price: int | None) -> int:
    return KIND_CLASSIFIED if (price or 0) > 0 else KIND_LONG_FORM


def validate_video_url(url: str | None) -> str | None:
    """Return the trimmed URL if it is an absolute https URL, else None."""
    if not url:
        return None
    trimmed = url.strip()
    if not trimmed:
        return None
    try:
        parts = urlsplit(trimmed)
    except ValueError:
        logger.warning("Video URL rejected: invalid URL format (%s)", trimmed)
        return None
    if parts.scheme != "https" or not parts.netloc:
        logger.warning("Video URL rejected: must use https:// (%s)", trimmed)
        return None
    return trimmed


def build_video_embed(url: str, title: str) -> str:
    """Render the player block for a video URL."""
    safe_title = html.escape(title, quote=True)
    trimmed = url.strip()

    youtube = _YOUTUBE.search(trimmed)
    if youtube:
        src = f"https://www.youtube.com/embed/{youtube.group(1)}"
        return "\n".join([
            _EMBED_WRAPPER,
            f'<iframe src="{src}" title="{safe_title}" style="{_IFRAME_STYLE}" frameborder="0" '
            'allow="accelerometer; autoplay; clipboard-write; encrypted-media; gyroscope; '
            'picture-in-picture" allowfullscreen></iframe>',
            "</div>",
        ])

    vimeo = _VIMEO.search(trimmed)
    if vimeo:
        src = f"https://player.vimeo.com/video/{vimeo.group(1)}"
        return "\n".join([
            _EMBED_WRAPPER,
            f'<iframe src="{src}" title="{safe_title}" style="{_IFRAME_STYLE}" frameborder="0" '
            'allow="autoplay; fullscreen; picture-in-picture" allowfullscreen></iframe>',
            "</div>",
        ])

    if _DIRECT_VIDEO.search(trimmed):
        return "\n".join([
            _EMBED_WRAPPER,
            f'<video controls src="{html.escape(trimmed, quote=True)}" style="{_IFRAME_STYLE}" '
            'preload="metadata">',
            "  Your browser does not support the video tag.",
            "</video>",
            "</div>",
        ])

    return f">[!TIP]\n> Watch the video here: [{safe_title}]({trimmed})"


def format_resource_content(draft: ResourceDraft) -> str:
    """Return event content; videos get a heading and player ahead of the body."""
    if draft.type != "video":
        return draft.content

    title = draft.title.strip() or "Video Resource"
    video_url = validate_video_url(draft.video_url)
    body = (draft.content or "").strip()

    sections = [f"# {title}"]
    if video_url:
        sections.extend(["", build_video_embed(video_url, title)])
    if body:
        sections.extend(["", body])
    return _EXCESS_NEWLINES.sub("\n\n", "\n".join(sections))


def _now() -> int:
    return int(time.time())


def _common_tail(image: str | None, price: int, topics: Iterable[str]) -> list[list[str]]:
    tags: list[list[str]] = []
    if image:
        tags.append(["image", image])
    if price > 0:
        tags.append(["price", str(price), PRICE_UNIT])
    tags.extend(["t", topic.lower()] for topic in topics)
    return tags


def build_resource_event(
    draft: ResourceDraft,
    pubkey: str,
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Build the unsigned long-form or classified event for a resource."""
    timestamp = created_at if created_at is not None else _now()
    tags: list[list[str]] = [
        ["d", draft.id],
        ["title", draft.title],
        ["summary", draft.summary],
        ["published_at", str(timestamp)],
    ]
    tags.extend(_common_tail(draft.image, draft.price, draft.topics))
    tags.append(["t", draft.type])

    video_url = validate_video_url(draft.video_url) if draft.type == "video" else None
    if video_url:
        tags.append(["video", video_url])
    tags.extend(links_to_tags(normalize_links(draft.additional_links)))

    return UnsignedEvent(
        pubkey=pubkey,
        created_at=timestamp,
        kind=resource_kind(draft.price),
        tags=tags,
        content=format_resource_content(draft),
    )


@dataclass(frozen=True)
class LessonReference:
    """A lesson's published resource as referenced from a course."""

    resource_id: str
    pubkey: str
    price: int = 0

    @property
    def address(self) -> str:
        return f"{resource_kind(self.price)}:{self.pubkey}:{self.resource_id}"

    @property
    def key(self) -> str:
        return f"{self.pubkey}:{self.resource_id}"


def build_course_event(
    draft: CourseDraft,
    lessons: Iterable[LessonReference],
    pubkey: str,
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Build the unsigned curation-set event for a course."""
    timestamp = created_at if created_at is not None else _now()
    tags: list[list[str]] = [
        ["d", draft.id],
        ["name", draft.title],
        ["about", draft.summary],
        ["published_at", str(timestamp)],
    ]
    tags.extend(_common_tail(draft.image, draft.price, draft.topics))
    tags.append(["t", COURSE_TYPE_TAG])
    tags.extend(["a", lesson.address] for lesson in lessons)

    return UnsignedEvent(
        pubkey=pubkey,
        created_at=timestamp,
        kind=KIND_CURATION_SET,
        tags=tags,
        content="",
    )


def build_http_auth_event(
    pubkey: str,
    url: str,
    method: str,
    *,
    created_at: int | None = None,
) -> UnsignedEvent:
    """Build the unsigned HTTP-auth event a client signs to prove key ownership."""
    return UnsignedEvent(
        pubkey=pubkey,
        created_at=created_at if created_at is not None else _now(),
        kind=KIND_HTTP_AUTH,
        tags=[["u", url], ["method", method.upper()]],
        content="",
    )


def sign_event(event: UnsignedEvent, capability: SigningCapability) -> SignedEvent:
    return capability.sign(event)


def extract_identifier(event: UnsignedEvent) -> str | None:
    """Return the stable ``d`` identifier of a replaceable event."""
    return event.first_tag("d")


@dataclass
class ParsedResource:
    identifier: str | None = None
    title: str = ""
    summary: str = ""
    image: str | None = None
    price: str | None = None
    topics: list[str] = field(default_factory=list)
    type: str = "document"
    video_url: str | None = None
    links: list[AdditionalLink] = field(default_factory=list)


@dataclass
class ParsedCourse:
    identifier: str | None = None
    name: str = ""
    about: str = ""
    image: str | None = None
    price: str | None = None
    topics: list[str] = field(default_factory=list)
    lesson_addresses: list[str] = field(default_factory=list)


def parse_resource_event(event: UnsignedEvent) -> ParsedResource:
    """Read structured resource fields back out of an event's tags."""
    parsed = ParsedResource(links=tags_to_links(event.tags))
    for tag in event.tags:
        if len(tag) < 2:
            continue
        name, value = tag[0], tag[1]
        if name == "d" and parsed.identifier is None:
            parsed.identifier = value
        elif name == "title":
            parsed.title = value
        elif name == "summary":
            parsed.summary = value
        elif name == "image":
            parsed.image = value
        elif name == "price":
            parsed.price = value
        elif name == "t":
            if value == "video":
                parsed.type = "video"
            elif value != "document":
                parsed.topics.append(value)
        elif name == "video":
            parsed.video_url = value
    return parsed


def parse_course_event(event: UnsignedEvent) -> ParsedCourse:
    parsed = ParsedCourse()
    for tag in event.tags:
        if len(tag) < 2:
            continue
        name, value = tag[0], tag[1]
        if name == "d" and parsed.identifier is None:
            parsed.identifier = value
        elif name in ("name", "title"):
            parsed.name = value
        elif name in ("about", "summary", "description"):
            parsed.about = value
        elif name == "image":
            parsed.image = value
        elif name == "price":
            parsed.price = value
        elif name == "t" and value != COURSE_TYPE_TAG:
            parsed.topics.append(value)
        elif name == "a":
            parsed.lesson_addresses.append(value)
    return parsed


def lesson_reference_keys(event: UnsignedEvent) -> set[str]:
    """Return ``pubkey:identifier`` for every well-formed ``a`` tag."""
    keys: set[str] = set()
    for address in event.tag_values("a"):
        parts = address.split(":")
        if len(parts) >= 3 and parts[1] and parts[2]:
            keys.add(f"{parts[1]}:{parts[2]}")
    return keys
