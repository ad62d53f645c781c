"""Normalization of supplementary links carried as ``r`` tags."""

from __future__ import annotations

import re
from collections.abc import Iterable
from urllib.parse import urlsplit

from nostr_stage.schemas.publish import AdditionalLink

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*:", re.IGNORECASE)
_BLOCKED_SCHEMES = ("javascript:", "data:")


def sanitize_url(value: str) -> str | None:
    """Return a usable absolute URL or None.

    Dangerous schemes are dropped; a bare domain gets an ``https://`` prefix.
    Other schemes (``mailto:``, ``nostr:``) are preserved.
    """
    trimmed = value.strip()
    if not trimmed:
        return None
    if trimmed.lower().startswith(_BLOCKED_SCHEMES):
        return None

    candidate = trimmed if _SCHEME.match(trimmed) else f"https://{trimmed}"
    try:
        parts = urlsplit(candidate)
    except ValueError:
        return None
    if not parts.scheme:
        return None
    if parts.scheme in ("http", "https") and not parts.netloc:
        return None
    if any(ch.isspace() for ch in candidate):
        return None
    return candidate


def _coerce(raw: object) -> AdditionalLink | None:
    if isinstance(raw, AdditionalLink):
        url, title = raw.url, raw.title
    elif isinstance(raw, str):
        url, title = raw, None
    elif isinstance(raw, dict):
        url = raw.get("url") or raw.get("href") or raw.get("link")
        title = raw.get("title") or raw.get("label")
    else:
        return None

    if not isinstance(url, str):
        return None
    clean = sanitize_url(url)
    if clean is None:
        return None
    label = title.strip() if isinstance(title, str) and title.strip() else None
    return AdditionalLink(url=clean, title=label)


def normalize_links(raw: Iterable[object] | None) -> list[AdditionalLink]:
    """Sanitize links and drop duplicates (case-insensitive on the URL)."""
    if not raw:
        return []
    seen: set[str] = set()
    result: list[AdditionalLink] = []
    for entry in raw:
        link = _coerce(entry)
        if link is None:
            continue
        key = link.url.lower()
        if key in seen:
            continue
        seen.add(key)
        result.append(link)
    return result


def links_to_tags(links: Iterable[AdditionalLink]) -> list[list[str]]:
    tags: list[list[str]] = []
    for link in links:
        tag = ["r", link.url]
        if link.title:
            tag.append(link.title)
        tags.append(tag)
    return tags


def tags_to_links(tags: Iterable[list[str]], name: str = "r") -> list[AdditionalLink]:
    raw = [
        {"url": tag[1], "title": tag[2] if len(tag) > 2 else None}
        for tag in tags
        if len(tag) > 1 and tag[0] == name and tag[1]
    ]
    return normalize_links(raw)
