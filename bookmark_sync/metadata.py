"""Extract link previews (title, description, image, favicon) from page HTML."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from enum import Enum
from html import unescape
from typing import TYPE_CHECKING
from urllib.parse import urlsplit, urlunsplit

import requests
from bs4 import BeautifulSoup

from .config import DEFAULT_REQUEST_TIMEOUT, PREVIEW_WORKERS

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterable

    from bs4 import Tag

    from .models import Bookmark

LOGGER = logging.getLogger(__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (iPhone; CPU iPhone OS 18_0 like Mac OS X) AppleWebKit/605.1.15 "
        "(KHTML, like Gecko) Version/18.0 Mobile/15E148 Safari/604.1"
    ),
}

# Applied in order; ``&amp;`` last so "&amp;lt;" decodes one level only.
HTML_ENTITIES: tuple[tuple[str, str], ...] = (
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&apos;", "'"),
    ("&#39;", "'"),
    ("&ldquo;", '"'),
    ("&rdquo;", '"'),
    ("&lsquo;", "'"),
    ("&rsquo;", "'"),
    ("&nbsp;", " "),
    ("&amp;", "&"),
)

# The parser decodes markup entities once; fold the typographic results of the
# fixed set to the same plain characters the raw-text decoder produces.
DECODED_ENTITY_FOLDS: dict[str, str] = {
    unescape(entity): replacement
    for entity, replacement in HTML_ENTITIES
    if unescape(entity) != replacement
}

# Titles served to unknown user agents instead of the real page title.
BOILERPLATE_TITLE_MARKERS: tuple[str, ...] = (
    "browser is deprecated",
    "browser deprecated",
    "please upgrade",
)

FAVICON_RELS = frozenset({"icon", "shortcut icon"})

_SMALL_BATCH_CUTOFF = 3


@dataclass(slots=True)
class PagePreview:
    """Best-effort preview of a linked page; any field may be absent."""

    title: str | None = None
    description: str | None = None
    image_url: str | None = None
    favicon_url: str | None = None


class PreviewEnrichMode(Enum):
    """Strategy for preview enrichment.

    ALL: fetch a preview for every bookmark.
    ONLY_MISSING: fetch only for bookmarks lacking a thumbnail or a title.
    """

    ALL = "all"
    ONLY_MISSING = "only-missing"


# Parsing ---------------------------------------------------------------------------------


def _soup(document: str | BeautifulSoup) -> BeautifulSoup:
    if isinstance(document, BeautifulSoup):
        return document
    return BeautifulSoup(document, "html.parser")


def _guarded(field_name: str, extractor: Callable[[], str | None]) -> str | None:
    """Run one field extractor; failures yield an absent field."""
    try:
        return extractor()
    except Exception as exc:  # noqa: BLE001
        LOGGER.debug("Could not extract %s: %s", field_name, exc)
        return None


def _meta_content(soup: BeautifulSoup, key: str) -> str | None:
    """Content of the first ``<meta>`` whose property or name equals ``key``."""
    for tag in soup.find_all("meta"):
        names = (tag.get("property"), tag.get("name"))
        if not any(isinstance(n, str) and n.strip().lower() == key for n in names):
            continue
        content = tag.get("content")
        if isinstance(content, str) and content.strip():
            return content.strip()
    return None


def _first_meta(soup: BeautifulSoup, *keys: str) -> str | None:
    for key in keys:
        value = _meta_content(soup, key)
        if value:
            return value
    return None


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    for decoded, replacement in DECODED_ENTITY_FOLDS.items():
        value = value.replace(decoded, replacement)
    text = " ".join(value.split())
    return text or None


def decode_entities(text: str) -> str:
    """Decode the fixed entity set in raw, unparsed text (one level only)."""
    for entity, replacement in HTML_ENTITIES:
        text = text.replace(entity, replacement)
    return text


def is_boilerplate_title(title: str) -> bool:
    lowered = title.lower()
    return any(marker in lowered for marker in BOILERPLATE_TITLE_MARKERS)


def extract_title(document: str | BeautifulSoup) -> str | None:
    """Page title: og:title, then twitter:title, then ``<title>``.

    Browser-upgrade boilerplate counts as no title.
    """

    def _extract() -> str | None:
        soup = _soup(document)
        raw = _first_meta(soup, "og:title", "twitter:title")
        if raw is None and soup.title is not None:
            raw = soup.title.get_text()
        title = _clean_text(raw)
        if title and is_boilerplate_title(title):
            LOGGER.debug("Discarding boilerplate title %r", title)
            return None
        return title

    return _guarded("title", _extract)


def extract_description(document: str | BeautifulSoup) -> str | None:
    return _guarded(
        "description",
        lambda: _clean_text(
            _first_meta(_soup(document), "og:description", "twitter:description", "description"),
        ),
    )


def extract_image(document: str | BeautifulSoup, base_url: str) -> str | None:
    return _guarded(
        "image",
        lambda: resolve_url(_first_meta(_soup(document), "og:image", "twitter:image"), base_url),
    )


def extract_favicon(document: str | BeautifulSoup, base_url: str) -> str | None:
    """First ``icon`` / ``shortcut icon`` link, else ``{origin}/favicon.ico``."""
    href = _guarded("favicon", lambda: _favicon_href(_soup(document)))
    resolved = resolve_url(href, base_url) if href else None
    if resolved:
        return resolved
    origin = _origin(base_url)
    return f"{origin}/favicon.ico" if origin else None


def _favicon_href(soup: BeautifulSoup) -> str | None:
    for link in soup.find_all("link"):
        if _rel_value(link) not in FAVICON_RELS:
            continue
        href = link.get("href")
        if isinstance(href, str) and href.strip():
            return href.strip()
    return None


def _rel_value(link: Tag) -> str:
    rel = link.get("rel")
    if isinstance(rel, list):
        return " ".join(str(token) for token in rel).lower()
    return str(rel or "").strip().lower()


def extract_preview(html_text: str, base_url: str) -> PagePreview:
    """Extract every preview field from one document, each independently."""
    try:
        soup: str | BeautifulSoup = _soup(html_text)
    except Exception as exc:  # noqa: BLE001
        LOGGER.debug("HTML parse failed for %s: %s", base_url, exc)
        soup = ""
    return PagePreview(
        title=extract_title(soup),
        description=extract_description(soup),
        image_url=extract_image(soup, base_url),
        favicon_url=extract_favicon(soup, base_url),
    )


# URL resolution --------------------------------------------------------------------------


def _origin(base_url: str) -> str | None:
    try:
        parsed = urlsplit(base_url.strip())
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc.rpartition('@')[2]}"


def resolve_url(value: str | None, base_url: str) -> str | None:
    """Make a page-relative URL absolute.

    Absolute http(s) URLs pass through, ``//host/x`` gains ``https:``, and
    paths are joined to the origin of ``base_url``.
    """
    if not value or not value.strip():
        return None
    candidate = value.strip()
    if candidate.lower().startswith(("http://", "https://")):
        return candidate
    if candidate.startswith("//"):
        return f"https:{candidate}"
    origin = _origin(base_url)
    if origin is None:
        return candidate
    if candidate.startswith("/"):
        return f"{origin}{candidate}"
    return f"{origin}/{candidate}"


# Fetching --------------------------------------------------------------------------------


def fetch_preview(
    url: str,
    session: requests.Session | None = None,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> PagePreview | None:
    """Download ``url`` and extract its preview; None when nothing usable came back."""
    if session is None:
        session = requests.Session()
        session.headers.update(HEADERS)
    response = _get_html(session, url, timeout)
    if response is None:
        return None
    content_type = response.headers.get("Content-Type", "")
    if "text/html" not in content_type.lower():
        LOGGER.debug("Skipping non-HTML content for %s (content-type=%s)", url, content_type)
        return None
    return extract_preview(response.text, response.url or url)


def apply_preview(bookmark: Bookmark, preview: PagePreview) -> bool:
    """Fill a missing thumbnail and an empty title from ``preview``."""
    changed = False
    if not bookmark.thumbnail_url and preview.image_url:
        bookmark.thumbnail_url = preview.image_url
        changed = True
    if not bookmark.title.strip() and preview.title:
        bookmark.title = preview.title
        changed = True
    return changed


def enrich_with_previews(
    bookmarks: Iterable[Bookmark],
    session: requests.Session | None = None,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
    workers: int = PREVIEW_WORKERS,
    mode: PreviewEnrichMode = PreviewEnrichMode.ONLY_MISSING,
) -> list[Bookmark]:
    """Fill missing thumbnails and titles from page previews, fetched concurrently.

    Returns the bookmarks that changed, in input order. A failed fetch leaves
    its bookmark untouched.
    """
    target: list[Bookmark] = list(bookmarks)
    if session is None:
        session = requests.Session()
        session.headers.update(HEADERS)

    def _should_skip(b: Bookmark) -> bool:
        if mode is PreviewEnrichMode.ALL:
            return False
        return bool(b.thumbnail_url) and bool(b.title.strip())

    def _work(b: Bookmark) -> bool:
        if _should_skip(b):
            return False
        try:
            preview = fetch_preview(b.url, session, timeout)
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Failed to fetch preview for %s: %s", b.url, exc)
            return False
        return preview is not None and apply_preview(b, preview)

    # Small batches are not worth a pool.
    if len(target) <= _SMALL_BATCH_CUTOFF:
        return [b for b in target if _work(b)]

    changed = [False] * len(target)
    with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
        future_map = {executor.submit(_work, b): idx for idx, b in enumerate(target)}
        for future in as_completed(future_map):
            idx = future_map[future]
            try:
                changed[idx] = future.result()
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Worker failed for bookmark index %d: %s", idx, exc)
    return [b for b, flag in zip(target, changed) if flag]


# Some sites refuse deep links to unknown clients but serve their home page.
_ROOT_RETRY_STATUSES = frozenset({401, 403, 407})


def _get_html(session: requests.Session, url: str, timeout: float) -> requests.Response | None:
    """GET ``url``, retrying once against the site root on a permission error."""
    candidates = [url]
    for candidate in candidates:
        try:
            response = session.get(candidate, timeout=timeout, allow_redirects=True)
            response.raise_for_status()
        except requests.HTTPError as exc:
            status = getattr(exc.response, "status_code", None)
            root = _root_url(candidate)
            if candidate == url and status in _ROOT_RETRY_STATUSES and root and root != url:
                LOGGER.debug("HTTP %s for %s; trying site root %s", status, url, root)
                candidates.append(root)
            else:
                LOGGER.debug("Preview fetch of %s failed: %s", candidate, exc)
        except requests.RequestException as exc:
            LOGGER.debug("Preview fetch of %s failed: %s", candidate, exc)
        else:
            return response
    return None


def _root_url(url: str) -> str | None:
    try:
        parsed = urlsplit(url)
    except ValueError:
        return None
    if not (parsed.scheme and parsed.netloc):
        return None
    return urlunsplit((parsed.scheme, parsed.netloc, "/", "", ""))
