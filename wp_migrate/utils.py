"""Utility helpers for string normalization, URL handling and input parsing."""

from __future__ import annotations

import hashlib
import re
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlparse, urlunparse

SLUG_PATTERN = re.compile(r"[^a-z0-9]+")
URL_PATTERN = re.compile(r"^https?://[^\s/$.?#][^\s]*\.[^\s]+", re.IGNORECASE)
TRAILING_PUNCTUATION = ".,;:!?)"
CONTENT_TYPES = ("post", "page")


def slugify(value: str, fallback: str = "page") -> str:
    """Generate a filesystem-friendly slug using ASCII characters only."""
    normalized = value.encode("ascii", "ignore").decode("ascii")
    normalized = normalized.lower()
    normalized = SLUG_PATTERN.sub("-", normalized).strip("-")
    return normalized or fallback


def normalize_url(url: str) -> str:
    """Canonical form used for identity: lowercase host, no fragment, no trailing slash."""
    parsed = urlparse(url.strip())
    path = parsed.path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), path, "", parsed.query, "")
    )


def absolute_image_url(src: str, base_url: str) -> str:
    """Resolve an image reference against the page URL, keeping its query string."""
    absolute = urljoin(base_url, src.strip())
    return urldefrag(absolute).url


def normalize_image_url(src: str, base_url: str) -> str:
    """Resolve an image reference and drop its query string and fragment."""
    parsed = urlparse(absolute_image_url(src, base_url))
    return urlunparse(
        (parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, "", "", "")
    )


def url_digest(url: str, length: int = 16) -> str:
    return hashlib.sha1(url.encode("utf-8")).hexdigest()[:length]


def artifact_key(url: str) -> str:
    """Derive a stable storage key from a URL.

    The key keeps a readable slug of host and path and appends a short
    digest of the normalized URL, so two URLs that differ only in their
    query string never collide while re-fetching the same URL overwrites.
    """
    normalized = normalize_url(url)
    parsed = urlparse(normalized)
    readable = slugify(f"{parsed.netloc} {parsed.path}", fallback="page")[:80]
    return f"{readable}-{url_digest(normalized, 10)}"


def site_host(url: str) -> str:
    host = urlparse(url).netloc.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def is_valid_url(value: str) -> bool:
    return bool(URL_PATTERN.match(value))


def parse_url_lines(lines: Iterable[str]) -> List[Tuple[str, Optional[str]]]:
    """Parse a URL list where each line may carry an optional ``post``/``page`` tag.

    Blank lines and ``#`` or ``//`` comments are ignored, trailing punctuation
    left over from copy and paste is stripped, and duplicates keep their
    first occurrence.
    """
    entries: List[Tuple[str, Optional[str]]] = []
    seen = set()
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or line.startswith("//"):
            continue
        parts = line.split()
        url = parts[0].rstrip(TRAILING_PUNCTUATION)
        content_type: Optional[str] = None
        if len(parts) > 1 and parts[1].lower() in CONTENT_TYPES:
            content_type = parts[1].lower()
        if not is_valid_url(url) or url in seen:
            continue
        seen.add(url)
        entries.append((url, content_type))
    return entries
