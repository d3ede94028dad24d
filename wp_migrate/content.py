"""HTML extraction and metadata parsing utilities."""

from __future__ import annotations

import logging
import re
from datetime import datetime
from typing import Iterable, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Tag
from readability import Document

logger = logging.getLogger("wp_migrate")

_MIN_PLAINTEXT_CHARS = 200
MEDIA_TAGS = {"img", "picture", "video", "audio", "iframe", "embed", "object", "svg", "source"}
TITLE_SELECTORS = ("h1", ".title", ".post-title", ".article-title", ".page-title", "title")
DATE_SELECTORS = (
    "time[datetime]",
    "time",
    "meta[property='article:published_time']",
    ".post-date",
    ".entry-date",
    ".published",
    ".date",
)
_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%m/%d/%Y",
)


def _clean_content(soup: BeautifulSoup, strip_chrome: bool = False) -> BeautifulSoup:
    """Remove noisy tags and inline handlers while keeping content markup."""
    for tag in soup(["script", "style", "noscript", "template"]):
        tag.decompose()
    if strip_chrome:
        for tag in soup(["header", "footer", "nav", "aside"]):
            tag.decompose()
    for tag in soup.find_all(True):
        for attr in [a for a in tag.attrs if a.lower().startswith("on")]:
            del tag[attr]
    return soup


def has_text(node: Tag) -> bool:
    return bool(node.get_text(strip=True))


def has_media(node: Tag) -> bool:
    return node.find(sorted(MEDIA_TAGS)) is not None


def has_body(node: Tag) -> bool:
    """Text or embedded media; markup with neither is an empty body."""
    return has_text(node) or has_media(node)


def _iter_primary_candidates(soup_full: BeautifulSoup) -> Iterable[BeautifulSoup]:
    """Yield progressively broader content scopes to fall back on."""
    for selector in ("main", "article"):
        candidate = soup_full.select_one(selector)
        if candidate:
            yield BeautifulSoup(str(candidate), "html.parser")
    if soup_full.body:
        yield BeautifulSoup(str(soup_full.body), "html.parser")


def extract_by_chain(html: str, chain: Sequence[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return the first selector match with non-whitespace text.

    Gives ``(content_html, selector)`` or ``(None, None)`` when nothing in
    the chain matched.
    """
    soup = BeautifulSoup(html, "html.parser")
    _clean_content(soup)
    for selector in chain:
        node = soup.select_one(selector)
        if node is not None and has_text(node):
            logger.debug("Selector %s matched", selector)
            return node.decode(), selector
    return None, None


def extract_body_fallback(html: str) -> Optional[str]:
    """Whole-document heuristic used when no selector in the chain matched."""
    try:
        summary_html = Document(html).summary(html_partial=True)
    except Exception as exc:  # pylint: disable=broad-except
        logger.debug("Readability failed: %s", exc)
        summary_html = ""
    summary = _clean_content(BeautifulSoup(summary_html, "html.parser"))
    if len(summary.get_text(" ", strip=True)) >= _MIN_PLAINTEXT_CHARS:
        return summary.decode()

    soup_full = BeautifulSoup(html, "html.parser")
    for candidate in _iter_primary_candidates(soup_full):
        candidate = _clean_content(candidate, strip_chrome=True)
        if has_text(candidate):
            return candidate.decode()
    if has_text(summary):
        return summary.decode()
    return None


def extract_content(html: str, chain: Sequence[str]) -> Tuple[Optional[str], Optional[str]]:
    content, selector = extract_by_chain(html, chain)
    if content is not None:
        return content, selector
    return extract_body_fallback(html), None


def select_text(soup: BeautifulSoup, selector: Optional[str]) -> Optional[str]:
    if not selector:
        return None
    node = soup.select_one(selector)
    if node is None:
        return None
    if node.name == "meta":
        return (node.get("content") or "").strip() or None
    if node.name == "time" and node.get("datetime"):
        return node["datetime"].strip()
    text = node.get_text(" ", strip=True)
    return text or None


def extract_title(soup: BeautifulSoup, selector: Optional[str] = None) -> Optional[str]:
    for candidate in ((selector,) if selector else ()) + TITLE_SELECTORS:
        text = select_text(soup, candidate)
        if text:
            return re.sub(r"\s+", " ", text)
    return None


def extract_date(soup: BeautifulSoup, selector: Optional[str] = None) -> Optional[str]:
    for candidate in ((selector,) if selector else ()) + DATE_SELECTORS:
        text = select_text(soup, candidate)
        if text:
            return text
    return None


def normalize_date(value: Optional[str]) -> Optional[str]:
    """Coerce an extracted date to ``YYYY-MM-DD HH:MM:SS`` when parseable."""
    if not value:
        return None
    value = value.strip()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed.strftime("%Y-%m-%d %H:%M:%S")
    except ValueError:
        pass
    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", value)
    cleaned = re.sub(r"^(posted|published)( on)?[:\s]+", "", cleaned, flags=re.IGNORECASE)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).strftime("%Y-%m-%d %H:%M:%S")
        except ValueError:
            continue
    return None
