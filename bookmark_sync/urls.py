"""URL canonicalisation and bookmark identity helpers.

Everything here is pure and never raises on malformed input: a string that
cannot be parsed as a URL degrades to its trimmed, lowercased form.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Iterable

    from .models import Bookmark

LOGGER = logging.getLogger(__name__)

TRACKING_PARAMS: frozenset[str] = frozenset(
    {
        "utm_source",
        "utm_medium",
        "utm_campaign",
        "utm_term",
        "utm_content",
        "fbclid",
        "gclid",
        "igshid",
    },
)

DEFAULT_PORTS: dict[str, int] = {"http": 80, "https": 443}

# Hosts serving the same status (post) under different names.
STATUS_HOST_ALIASES: frozenset[str] = frozenset({"twitter.com", "x.com"})

STATUS_SEGMENTS: frozenset[str] = frozenset({"status", "statuses"})

STATUS_KEY_PREFIX = "tweet:"

# Ordered (host substrings, category) pairs; first match wins.
CATEGORY_HOSTS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("twitter.com", "x.com"), "x"),
    (("instagram.com",), "instagram"),
    (("youtube.com", "youtu.be"), "youtube"),
    (("medium.com", "dev.to", "substack.com"), "article"),
    (("vimeo.com", "dailymotion.com", "tiktok.com"), "video"),
)


def canonicalize(url_string: str) -> str:
    """Normalise a URL string for equality comparison.

    Lowercases scheme and host, drops a leading ``www.``, default ports,
    trailing slashes, the fragment and tracking parameters, and sorts the
    remaining query parameters by (name, value). The bare origin form is
    used for root URLs: ``https://example.com/`` becomes ``https://example.com``.
    """
    trimmed = url_string.strip()
    fallback = trimmed.lower()
    if any(ch.isspace() for ch in trimmed):
        return fallback
    try:
        parts = urlsplit(trimmed)
        port = parts.port
    except ValueError:
        return fallback

    scheme = parts.scheme.lower()
    netloc = _canonical_netloc(parts.netloc, parts.hostname, scheme, port)
    path = parts.path.rstrip("/")
    query_items = [
        (name, value)
        for name, value in parse_qsl(parts.query, keep_blank_values=True)
        if name.lower() not in TRACKING_PARAMS
    ]
    query_items.sort()

    try:
        return urlunsplit((scheme, netloc, path, urlencode(query_items), ""))
    except ValueError:
        LOGGER.debug("Could not reassemble URL %r; using lowercased input", trimmed)
        return fallback


def _canonical_netloc(
    netloc: str, hostname: str | None, scheme: str, port: int | None,
) -> str:
    if not hostname:
        return netloc.lower()
    host = hostname
    while host.startswith("www."):
        host = host[4:]
    if ":" in host:
        host = f"[{host}]"
    userinfo, sep, _ = netloc.rpartition("@")
    prefix = f"{userinfo}@" if sep else ""
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        return f"{prefix}{host}:{port}"
    return f"{prefix}{host}"


def status_id(url_string: str) -> str | None:
    """Return the numeric status id of a social status URL, if any.

    Matches a ``status`` or ``statuses`` path segment (``/i/status/`` included)
    followed by an all-digit segment on one of the alias hosts. Path matching
    is case-sensitive; the first match wins.
    """
    try:
        parts = urlsplit(url_string.strip())
    except ValueError:
        return None
    host = (parts.hostname or "").removeprefix("www.")
    if not _is_status_host(host):
        return None

    segments = [segment for segment in parts.path.split("/") if segment]
    for index, segment in enumerate(segments[:-1]):
        if segment not in STATUS_SEGMENTS:
            continue
        candidate = segments[index + 1]
        if candidate.isascii() and candidate.isdigit():
            return candidate
    return None


def _is_status_host(host: str) -> bool:
    return any(host == alias or host.endswith(f".{alias}") for alias in STATUS_HOST_ALIASES)


def dedupe_key(url_string: str) -> str:
    """Identity used to decide whether two saved links are the same bookmark."""
    canonical = canonicalize(url_string)
    found = status_id(canonical)
    if found is not None:
        return f"{STATUS_KEY_PREFIX}{found}"
    return canonical


def suggest_category(url_string: str) -> str | None:
    """Suggest a category key from the URL host, or None when nothing matches."""
    try:
        host = (urlsplit(url_string.strip()).hostname or "").lower()
    except ValueError:
        return None
    if not host:
        return None
    for needles, category in CATEGORY_HOSTS:
        if any(needle in host for needle in needles):
            return category
    return None


def find_duplicate(bookmarks: Iterable[Bookmark], url_string: str) -> Bookmark | None:
    """Return the first bookmark sharing the dedupe key of ``url_string``."""
    key = dedupe_key(url_string)
    for bookmark in bookmarks:
        if dedupe_key(bookmark.url) == key:
            return bookmark
    return None


def contains_duplicate(bookmarks: Iterable[Bookmark], url_string: str) -> bool:
    return find_duplicate(bookmarks, url_string) is not None
