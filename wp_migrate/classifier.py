"""Post versus page classification.

Priority order for a fragment:

1. a content type declared for the whole run,
2. a per-URL type from the URL list,
3. the post/page discriminator selectors,
4. the profile's named heuristic (``structural`` unless configured).

Ambiguous results are pages.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .models import FetchedFragment
from .profiles import Discriminators

logger = logging.getLogger("wp_migrate")

POST = "post"
PAGE = "page"

POST_PATH_PATTERN = re.compile(r"/(blog|news|posts?|articles?)/|/\d{4}/\d{1,2}/", re.IGNORECASE)
PAGE_PATH_PATTERN = re.compile(
    r"/(about|about-us|contact|contact-us|privacy|privacy-policy|terms|services?|careers|faq|"
    r"locations?|hours|directions|sitemap)(/|\.html?$|$)",
    re.IGNORECASE,
)
DATE_SIGNAL_SELECTOR = (
    "time, .post-date, .entry-date, .published, .date-published, "
    "[itemprop='datePublished']"
)
BYLINE_SELECTOR = ".byline, .author, .post-author, .entry-author, [rel='author'], [itemprop='author']"
LISTING_SELECTOR = ".post-meta, .entry-meta, .blog-post-detail, .post-categories, .tags-links"


@dataclass
class Classification:
    content_type: str
    reason: str


Heuristic = Callable[[FetchedFragment, BeautifulSoup], Classification]

_HEURISTICS: Dict[str, Heuristic] = {}


def register_heuristic(name: str) -> Callable[[Heuristic], Heuristic]:
    """Register a classification heuristic under ``name`` for use in profiles."""

    def decorator(func: Heuristic) -> Heuristic:
        _HEURISTICS[name] = func
        return func

    return decorator


def get_heuristic(name: str) -> Heuristic:
    try:
        return _HEURISTICS[name]
    except KeyError:
        logger.warning("Unknown classifier heuristic %r; using 'structural'", name)
        return _HEURISTICS["structural"]


def available_heuristics() -> list:
    return sorted(_HEURISTICS)


def _path(fragment: FetchedFragment) -> str:
    return urlparse(fragment.final_url or fragment.source_url).path or "/"


@register_heuristic("structural")
def structural_heuristic(fragment: FetchedFragment, soup: BeautifulSoup) -> Classification:
    path = _path(fragment)
    post_signals = []
    if soup.select_one(DATE_SIGNAL_SELECTOR) is not None:
        post_signals.append("date element")
    if soup.select_one(BYLINE_SELECTOR) is not None:
        post_signals.append("byline")
    if soup.select_one(LISTING_SELECTOR) is not None or POST_PATH_PATTERN.search(path):
        post_signals.append("article context")
    page_signals = ["page path"] if PAGE_PATH_PATTERN.search(path) else []

    if len(post_signals) > len(page_signals):
        return Classification(POST, "heuristic: " + ", ".join(post_signals))
    if page_signals:
        return Classification(PAGE, "heuristic: " + ", ".join(page_signals))
    return Classification(PAGE, "default")


@register_heuristic("url")
def url_heuristic(fragment: FetchedFragment, soup: BeautifulSoup) -> Classification:
    if POST_PATH_PATTERN.search(_path(fragment)):
        return Classification(POST, "heuristic: post path")
    return Classification(PAGE, "default")


@register_heuristic("page")
def page_heuristic(fragment: FetchedFragment, soup: BeautifulSoup) -> Classification:
    return Classification(PAGE, "default")


def classify_by_discriminators(
    soup: BeautifulSoup, discriminators: Discriminators
) -> Optional[Classification]:
    """Apply the discriminator pair; ``None`` means defer to the heuristic."""
    post, page = discriminators.post, discriminators.page
    if post and soup.select_one(post) is not None:
        return Classification(POST, f"found post selector {post}")
    if page and soup.select_one(page) is not None:
        return Classification(PAGE, f"found page selector {page}")
    if post and not page:
        return Classification(PAGE, f"post selector {post} not found")
    if page and not post:
        return Classification(POST, f"page selector {page} not found")
    return None


def classify(
    fragment: FetchedFragment,
    declared_type: Optional[str] = None,
    url_type: Optional[str] = None,
    discriminators: Optional[Discriminators] = None,
    heuristic: str = "structural",
    soup: Optional[BeautifulSoup] = None,
) -> Classification:
    if declared_type in (POST, PAGE):
        return Classification(declared_type, "declared for run")
    if url_type in (POST, PAGE):
        return Classification(url_type, "manual mapping")
    if soup is None:
        soup = BeautifulSoup(fragment.content_html, "html.parser")
    if discriminators is not None and discriminators.configured:
        result = classify_by_discriminators(soup, discriminators)
        if result is not None:
            return result
    return get_heuristic(heuristic)(fragment, soup)
