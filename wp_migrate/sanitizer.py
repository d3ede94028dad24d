"""Sanitize fetched fragments for WordPress and classify them as posts or pages."""

from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Mapping, Optional, Sequence
from urllib.parse import urlparse, urlunparse

from bs4 import BeautifulSoup, Tag

from .classifier import POST, classify
from .config import RunSettings
from .content import MEDIA_TAGS, extract_date, extract_title, has_body, has_media, normalize_date
from .errors import MigrationError, SanitizeError
from .images import BACKGROUND_IMAGE_PATTERN, rewrite_lookup, split_srcset
from .models import FetchedFragment, ImageRef, ItemFailure, ProcessedFragment, StageResult
from .profiles import LinkRewrite, merge_selectors
from .runs import CancellationToken
from .storage import ArtifactStore
from .utils import normalize_image_url, site_host

logger = logging.getLogger("wp_migrate")

LAYOUT_CLASS_PATTERNS = [
    re.compile(pattern)
    for pattern in (
        r"^col(-xs|-sm|-md|-lg|-xl)?(-\d+)?$",
        r"^col(-xs|-sm|-md|-lg|-xl)?-offset(-\d+)?$",
        r"^row$",
        r"^container(-fluid)?$",
        r"^text-(left|center|right|justify|start|end)$",
        r"^float-(left|right|none|start|end)$",
        r"^d-(none|inline|inline-block|block|flex|inline-flex|grid|table|table-row|table-cell)$",
        r"^align-(baseline|top|middle|bottom|text-top|text-bottom|start|center|end)$",
        r"^justify-content-(start|end|center|between|around|evenly)$",
        r"^align-items-(start|end|center|baseline|stretch)$",
        r"^align-self-(start|end|center|baseline|stretch)$",
        r"^flex-(row|row-reverse|column|column-reverse|wrap|nowrap|wrap-reverse|fill|grow-\d+|shrink-\d+)$",
        r"^m[tbrlxy]?-(\d+|auto)$",
        r"^p[tbrlxy]?-\d+$",
        r"^w-(\d+|auto)$",
        r"^h-(\d+|auto)$",
        r"^offset-\d+$",
        r"^order-\d+$",
    )
]
BUILTIN_REMOVE_SELECTORS = (
    "script", "style", "noscript", "form", "input", "select", "textarea", "button", "h1",
)
POST_CHROME_CLASS_PATTERN = re.compile(
    r"sidebar|widget|recent|categories|archive|breadcrumb|comment|post-meta|entry-meta|share",
    re.IGNORECASE,
)
CONTENT_CONTAINER_PATTERN = re.compile(
    r"container|row|col-|main|content|article|entry-content|post-content|post-body", re.IGNORECASE
)
POST_CHROME_TEXT_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^«.*»$",
        r"^(January|February|March|April|May|June|July|August|September|October|November|December)"
        r"\s+\d{1,2},?\s+\d{4}$",
        r"^\d{1,2}/\d{1,2}/\d{4}$",
        r"^\d{4}-\d{2}-\d{2}$",
        r"^Posted (on|in)\b.*$",
        r"^By\s+[\w\s.]+$",
        r"^Author:.*$",
        r"^(No|\d+)\s+Comments?.*$",
        r"^(Share this|Follow us|Connect with us).*$",
        r"^(Recent Posts|Recent Blog Entries|Categories|Tags|Archives|Related Posts)$",
    )
]
KEEP_EMPTY_TAGS = MEDIA_TAGS | {"br", "hr", "td", "th", "tr", "tbody", "thead", "table", "col"}
SKIPPED_LINK_PREFIXES = ("#", "mailto:", "tel:", "javascript:")


def keep_layout_class(name: str) -> bool:
    return any(pattern.match(name) for pattern in LAYOUT_CLASS_PATTERNS)


def _decompose_all(nodes: Iterable[Tag]) -> int:
    removed = 0
    for node in list(nodes):
        if not node.decomposed:
            node.decompose()
            removed += 1
    return removed


def remove_selectors(soup: BeautifulSoup, selectors: Sequence[str]) -> int:
    removed = 0
    for selector in selectors:
        removed += _decompose_all(soup.select(selector))
    return removed


def convert_background_images(soup: BeautifulSoup) -> None:
    """Turn inline CSS background images into ``<img>`` elements."""
    for tag in soup.find_all(style=BACKGROUND_IMAGE_PATTERN):
        for match in BACKGROUND_IMAGE_PATTERN.finditer(tag["style"]):
            src = match.group(1)
            if src.startswith("data:"):
                continue
            img = soup.new_tag("img", src=src, alt="")
            tag.insert(0, img)


def remove_post_chrome(soup: BeautifulSoup) -> int:
    """Drop blog widgets, bylines, share bars and date lines left inside posts."""
    doomed = []
    for tag in soup.find_all(True):
        text = tag.get_text(" ", strip=True)
        if len(text) > 500:
            continue
        classes = " ".join(tag.get("class") or [])
        if classes and CONTENT_CONTAINER_PATTERN.search(classes):
            continue
        if classes and POST_CHROME_CLASS_PATTERN.search(classes):
            doomed.append(tag)
        elif tag.get("id") and re.search(r"comment", tag["id"], re.IGNORECASE):
            doomed.append(tag)
        elif text and len(text) <= 80 and any(p.match(text) for p in POST_CHROME_TEXT_PATTERNS):
            doomed.append(tag)
    return _decompose_all(doomed)


def rewrite_images(soup: BeautifulSoup, base_url: str, lookup: Mapping[str, str]) -> int:
    """Point image references at their uploaded copies; unknown URLs stay as they are."""
    rewritten = 0

    def mapped(src: str) -> Optional[str]:
        if not src or src.startswith("data:"):
            return None
        return lookup.get(normalize_image_url(src, base_url))

    for img in soup.find_all("img"):
        src = img.get("src")
        lazy = img.get("data-src") or img.get("data-lazy-src")
        if (not src or src.startswith("data:")) and lazy:
            src = lazy
            img["src"] = lazy
        new_src = mapped(src or "")
        if new_src:
            img["src"] = new_src
            rewritten += 1
    for tag in soup.find_all(["img", "source"]):
        srcset = tag.get("srcset")
        if not srcset:
            continue
        pairs = []
        for url, descriptor in split_srcset(srcset):
            new_url = mapped(url)
            if new_url:
                rewritten += 1
            pairs.append(f"{new_url or url} {descriptor}".strip())
        tag["srcset"] = ", ".join(pairs)
    return rewritten


def rewrite_link(href: str, host: str, rewrites: Sequence[LinkRewrite]) -> str:
    for rule in rewrites:
        replaced = rule.apply(href)
        if replaced != href:
            return replaced
    if href.startswith(("http://", "https://", "//")):
        parsed = urlparse(href if not href.startswith("//") else "https:" + href)
        if site_host(parsed.geturl()) == host:
            return urlunparse(("", "", parsed.path or "/", parsed.params, parsed.query, parsed.fragment))
        return href
    if href.startswith("/") or href.startswith("./") or ".." in href:
        return href
    return "/" + href


def rewrite_links(soup: BeautifulSoup, base_url: str, rewrites: Sequence[LinkRewrite]) -> None:
    host = site_host(base_url)
    for link in soup.find_all("a", href=True):
        href = link["href"].strip()
        if not href or href.startswith(SKIPPED_LINK_PREFIXES):
            continue
        new_href = rewrite_link(href, host, rewrites)
        link["href"] = new_href
        if new_href.startswith(("http://", "https://", "//")):
            link["target"] = "_blank"
            link["rel"] = "noopener noreferrer"


def strip_attributes(
    soup: BeautifulSoup,
    preserve_layout_classes: bool = True,
    remove_all_classes: bool = False,
    remove_all_ids: bool = True,
) -> None:
    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            lowered = attr.lower()
            if lowered == "style" or lowered.startswith("on") or lowered.startswith("data-"):
                del tag[attr]
            elif lowered == "id" and remove_all_ids:
                del tag[attr]
        if "class" not in tag.attrs:
            continue
        if remove_all_classes or not preserve_layout_classes:
            del tag["class"]
            continue
        kept = [name for name in tag.get("class") or [] if keep_layout_class(name)]
        if kept:
            tag["class"] = kept
        else:
            del tag["class"]


def _is_empty(tag: Tag) -> bool:
    if tag.name in KEEP_EMPTY_TAGS:
        return False
    if tag.get_text(strip=True):
        return False
    return not has_media(tag)


def remove_empty_elements(soup: BeautifulSoup) -> None:
    changed = True
    while changed:
        changed = False
        for tag in soup.find_all(True):
            if not tag.decomposed and _is_empty(tag):
                tag.decompose()
                changed = True
    for span in soup.find_all("span"):
        if not span.attrs:
            span.unwrap()


def size_reduction(original: str, sanitized: str) -> float:
    if not original:
        return 0.0
    return round((1 - len(sanitized) / len(original)) * 100, 1)


class ContentSanitizer:
    """Sanitize and classify fragments in parallel, one failure per bad fragment."""

    def __init__(
        self,
        store: ArtifactStore,
        settings: RunSettings,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cancel_token = cancel_token or CancellationToken()

    def sanitize(self, fragment: FetchedFragment, lookup: Mapping[str, str]) -> ProcessedFragment:
        settings = self.settings
        base_url = fragment.final_url or fragment.source_url
        soup = BeautifulSoup(fragment.content_html, "html.parser")
        page = BeautifulSoup(fragment.raw_html or "", "html.parser")

        classification = classify(
            fragment,
            declared_type=settings.content_type,
            url_type=settings.url_types.get(fragment.source_url),
            discriminators=settings.discriminators,
            heuristic=settings.classifier_heuristic,
            soup=soup,
        )
        rules = settings.rules_for(classification.content_type)
        title = extract_title(soup, rules.title_selector) or extract_title(page, rules.title_selector)
        raw_date = extract_date(soup, rules.date_selector) or extract_date(page, rules.date_selector)

        convert_background_images(soup)
        selectors = merge_selectors(settings.remove_selectors, rules.exclude_selectors)
        removed = remove_selectors(soup, selectors)
        removed += remove_selectors(soup, BUILTIN_REMOVE_SELECTORS)
        if classification.content_type == POST:
            removed += remove_post_chrome(soup)
        rewritten = rewrite_images(soup, base_url, lookup)
        rewrite_links(soup, base_url, settings.link_rewrites)
        strip_attributes(
            soup,
            preserve_layout_classes=settings.preserve_layout_classes,
            remove_all_classes=settings.remove_all_classes,
            remove_all_ids=settings.remove_all_ids,
        )
        remove_empty_elements(soup)

        sanitized = soup.decode().strip()
        if not sanitized or not has_body(soup):
            raise SanitizeError(f"Sanitized content is empty for {fragment.source_url}", url=fragment.source_url)

        processed = ProcessedFragment(
            source_url=fragment.source_url,
            sanitized_html=sanitized,
            content_type=classification.content_type,
            extracted_title=title,
            extracted_date=normalize_date(raw_date) or raw_date,
            size_reduction_pct=size_reduction(fragment.content_html, sanitized),
            classification_reason=classification.reason,
        )
        logger.debug(
            "Sanitized %s as %s (%s): removed %d element(s), rewrote %d image(s), %.1f%% smaller",
            fragment.source_url,
            processed.content_type,
            classification.reason,
            removed,
            rewritten,
            processed.size_reduction_pct,
        )
        self.store.save_processed(processed)
        return processed

    def _process_one(self, fragment: FetchedFragment, lookup: Mapping[str, str]) -> object:
        if self.cancel_token.cancelled:
            return ItemFailure(fragment.source_url, "cancelled")
        try:
            return self.sanitize(fragment, lookup)
        except MigrationError as exc:
            logger.warning("Failed to sanitize %s: %s", fragment.source_url, exc)
            return ItemFailure(fragment.source_url, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error sanitizing %s", fragment.source_url)
            return ItemFailure(fragment.source_url, f"Failed to sanitize: {exc}")

    def process(
        self,
        fragments: Sequence[FetchedFragment],
        rewrite_map: Sequence[ImageRef],
        reuse_existing: bool = False,
    ) -> StageResult:
        lookup = rewrite_lookup(rewrite_map)
        outcomes: Dict[str, object] = {}
        pending: List[FetchedFragment] = []
        for fragment in fragments:
            existing = self.store.load_processed(fragment.source_url) if reuse_existing else None
            if existing is not None:
                outcomes[fragment.source_url] = existing
            else:
                pending.append(fragment)

        if pending:
            workers = max(1, self.settings.sanitize_workers)
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = {
                    executor.submit(self._process_one, fragment, lookup): fragment.source_url
                    for fragment in pending
                }
                for future in as_completed(futures):
                    outcomes[futures[future]] = future.result()

        result = StageResult()
        for fragment in fragments:
            outcome = outcomes[fragment.source_url]
            if isinstance(outcome, ProcessedFragment):
                result.items.append(outcome)
            else:
                result.errors.append(outcome)
        logger.info(
            "Processed %d/%d fragment(s), %d failed",
            len(result.items),
            len(fragments),
            len(result.errors),
        )
        return result
