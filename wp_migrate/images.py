"""Image discovery, download, validation and rewrite-map construction."""

from __future__ import annotations

import asyncio
import io
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup, Tag
from filetype import guess
from PIL import Image, UnidentifiedImageError

from .errors import ImageError, MigrationError, retry_async
from .models import FetchedFragment, ImageRef, ItemFailure, StageResult
from .profiles import ImagePolicy
from .runs import CancellationToken, utc_now
from .storage import ArtifactStore
from .utils import absolute_image_url, normalize_image_url, url_digest

logger = logging.getLogger("wp_migrate")

MAX_IMAGE_BYTES = 20 * 1024 * 1024
BACKGROUND_IMAGE_PATTERN = re.compile(
    r"background(?:-image)?\s*:[^;]*url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.IGNORECASE
)
CONTENT_TYPE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "image/x-icon": "ico",
    "image/vnd.microsoft.icon": "ico",
    "image/bmp": "bmp",
    "image/avif": "avif",
}
CHROME_TAGS = {"header", "footer", "nav"}
USER_IMAGE_URL_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"avatar", r"profile", r"testimonial", r"review.*user", r"user.*photo",
        r"customer.*photo", r"headshot", r"portrait", r"staff.*photo", r"team.*photo",
        r"author.*image", r"gravatar", r"uploads.*user", r"profile.*pic", r"reviewer.*image",
    )
]
USER_IMAGE_TEXT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"avatar", r"profile", r"testimonial", r"review", r"customer.*photo", r"user.*photo",
        r"headshot", r"portrait", r"staff.*photo", r"team.*member", r"author.*image",
    )
]
USER_IMAGE_CONTAINER_PATTERN = re.compile(
    r"testimonial|review|author.*bio|customer.*section|team.*section|profile.*section",
    re.IGNORECASE,
)


@dataclass
class DownloadedImage:
    data: bytes
    content_type: Optional[str]


class ImageDownloader(Protocol):
    def download(self, url: str, timeout: float) -> DownloadedImage: ...


class RequestsDownloader:
    """Blocking downloader backed by a shared ``requests.Session``."""

    def __init__(self, user_agent: Optional[str] = None) -> None:
        self.session = requests.Session()
        if user_agent:
            self.session.headers["User-Agent"] = user_agent
        self.session.headers["Accept"] = "image/avif,image/webp,image/*,*/*;q=0.8"

    def download(self, url: str, timeout: float) -> DownloadedImage:
        try:
            resp = self.session.get(url, timeout=timeout)
        except requests.RequestException as exc:
            raise ImageError(f"Failed to fetch image {url}: {exc}", url=url, retryable=True) from exc
        if resp.status_code >= 400:
            retryable = resp.status_code >= 500 or resp.status_code == 429
            raise ImageError(f"HTTP {resp.status_code} for image {url}", url=url, retryable=retryable)
        return DownloadedImage(data=resp.content, content_type=resp.headers.get("Content-Type"))

    def close(self) -> None:
        self.session.close()


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type using filetype; returns lowercase extension."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            return "jpg"
        return ext
    head = data[:512].lstrip().lower()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "svg"
    return None


def _looks_like_html(data: bytes) -> bool:
    head = data[:256].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html")


def infer_image_extension(content_type: Optional[str], data: bytes, url: str) -> Optional[str]:
    """Guess an image file extension from file signature, HTTP metadata or URL."""
    detected = detect_image_format(data)
    if detected:
        return detected
    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if mime in CONTENT_TYPE_EXTENSIONS:
            return CONTENT_TYPE_EXTENSIONS[mime]
    suffix = PurePosixPath(urlparse(url).path).suffix.lower().lstrip(".")
    if suffix == "jpeg":
        return "jpg"
    return suffix or None


def transcode_avif_to_jpeg(data: bytes) -> bytes:
    """Re-encode AVIF bytes as JPEG using Pillow's AVIF plugin."""
    try:
        with Image.open(io.BytesIO(data)) as image:
            buffer = io.BytesIO()
            image.convert("RGB").save(buffer, format="JPEG", quality=90)
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageError(f"Could not transcode AVIF image: {exc}") from exc
    return buffer.getvalue()


def _first_srcset_url(srcset: str) -> Optional[str]:
    for candidate in srcset.split(","):
        parts = candidate.strip().split()
        if parts:
            return parts[0]
    return None


def image_sources(tag: Tag) -> List[str]:
    """Every image URL an element references, in attribute order."""
    sources: List[str] = []
    if tag.name == "img":
        for attr in ("src", "data-src", "data-lazy-src"):
            value = tag.get(attr)
            if value:
                sources.append(value.strip())
    srcset = tag.get("srcset") or tag.get("data-srcset")
    if srcset:
        first = _first_srcset_url(srcset)
        if first:
            sources.append(first)
    style = tag.get("style")
    if style:
        sources.extend(m.group(1) for m in BACKGROUND_IMAGE_PATTERN.finditer(style))
    return [s for s in dict.fromkeys(sources) if s and not s.startswith("data:")]


def is_user_image(tag: Tag, url: str) -> bool:
    """Avatars, testimonials and other user pictures are not migrated."""
    if any(p.search(url) for p in USER_IMAGE_URL_PATTERNS):
        return True
    for attr in ("alt", "title"):
        text = tag.get(attr) or ""
        if text and any(p.search(text) for p in USER_IMAGE_TEXT_PATTERNS):
            return True
    classes = " ".join(tag.get("class") or [])
    if classes and re.search(r"avatar|profile|user.*photo|author.*image", classes, re.IGNORECASE):
        return True
    parent = tag.parent
    if isinstance(parent, Tag):
        parent_classes = " ".join(parent.get("class") or [])
        if parent_classes and USER_IMAGE_CONTAINER_PATTERN.search(parent_classes):
            return True
    return False


def _inside_chrome(tag: Tag) -> bool:
    return any(parent.name in CHROME_TAGS for parent in tag.parents)


def extract_image_urls(fragment: FetchedFragment) -> Dict[str, str]:
    """Image URLs referenced by a fragment's content.

    Keys are the normalized form used for dedupe and rewriting; values are
    the first absolute URL seen for that key, query string included, which
    is what gets downloaded.
    """
    soup = BeautifulSoup(fragment.content_html, "html.parser")
    base_url = fragment.final_url or fragment.source_url
    urls: Dict[str, str] = {}
    for tag in soup.find_all(True):
        if tag.name not in ("img", "source") and not tag.get("style"):
            continue
        if tag.name == "source" and (tag.parent is None or tag.parent.name != "picture"):
            continue
        if _inside_chrome(tag):
            continue
        for src in image_sources(tag):
            key = normalize_image_url(src, base_url)
            if urlparse(key).scheme not in ("http", "https"):
                continue
            if is_user_image(tag, key):
                logger.debug("Skipping user image %s", key)
                continue
            urls.setdefault(key, absolute_image_url(src, base_url))
    return urls


def collect_unique_urls(fragments: Iterable[FetchedFragment]) -> Dict[str, str]:
    unique: Dict[str, str] = {}
    for fragment in fragments:
        for key, url in extract_image_urls(fragment).items():
            unique.setdefault(key, url)
    return unique


def public_url_base(template: str, when: datetime) -> str:
    base = template.format(year=f"{when.year:04d}", month=f"{when.month:02d}")
    return base if base.endswith("/") else base + "/"


class ImageResolver:
    """Download each unique image once under a bounded worker pool."""

    def __init__(
        self,
        store: ArtifactStore,
        policy: ImagePolicy,
        downloader: Optional[ImageDownloader] = None,
        cancel_token: Optional[CancellationToken] = None,
        upload_base_url: str = "/wp-content/uploads/{year}/{month}/",
        retry_base_delay: float = 1.0,
        now: Optional[datetime] = None,
    ) -> None:
        self.store = store
        self.policy = policy
        self.downloader = downloader or RequestsDownloader()
        self.cancel_token = cancel_token or CancellationToken()
        self.public_base = public_url_base(upload_base_url, now or datetime.now())
        self.retry_base_delay = retry_base_delay

    async def resolve(self, fragments: Sequence[FetchedFragment]) -> StageResult:
        urls = collect_unique_urls(fragments)
        logger.info("Found %d unique image(s) across %d fragment(s)", len(urls), len(fragments))
        outcomes: Dict[str, object] = {}
        queue: asyncio.Queue = asyncio.Queue()
        for key, url in urls.items():
            queue.put_nowait((key, url))

        async def worker() -> None:
            while True:
                try:
                    key, url = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                if self.cancel_token.cancelled:
                    outcomes[key] = ItemFailure(key, "cancelled")
                    continue
                outcomes[key] = await self._resolve_one(key, url)

        workers = min(self.policy.max_concurrent, len(urls)) or 1
        await asyncio.gather(*(worker() for _ in range(workers)))

        result = StageResult()
        for key in sorted(outcomes):
            outcome = outcomes[key]
            if isinstance(outcome, ImageRef):
                result.items.append(outcome)
            else:
                result.errors.append(outcome)
        self.store.save_image_map(result.items, result.errors, utc_now())
        logger.info(
            "Resolved %d/%d image(s), %d failed",
            len(result.items),
            len(urls),
            len(result.errors),
        )
        return result

    async def _resolve_one(self, key: str, url: str) -> object:
        stem = url_digest(key)
        existing = self.store.find_image(stem)
        if existing is not None:
            logger.debug("Reusing downloaded image %s", existing.name)
            return self._make_ref(key, existing.name, existing.stat().st_size)
        try:
            return await retry_async(
                lambda: asyncio.to_thread(self._download_and_store, key, url, stem),
                attempts=self.policy.retry_attempts + 1,
                base_delay=self.retry_base_delay,
                label=url,
            )
        except MigrationError as exc:
            logger.warning("Failed to resolve image %s: %s", url, exc)
            return ItemFailure(key, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error resolving image %s", url)
            return ItemFailure(key, f"Unexpected error: {exc}")

    def _download_and_store(self, key: str, url: str, stem: str) -> ImageRef:
        downloaded = self.downloader.download(url, self.policy.timeout)
        data = downloaded.data
        if not data:
            raise ImageError(f"Empty response for image {url}", url=url)
        if _looks_like_html(data):
            raise ImageError(f"Received an HTML page instead of an image for {url}", url=url)
        if len(data) > MAX_IMAGE_BYTES:
            raise ImageError(f"Image larger than {MAX_IMAGE_BYTES} bytes: {url}", url=url)

        extension = infer_image_extension(downloaded.content_type, data, url)
        if not extension:
            raise ImageError(
                f"Unknown image type for {url} (Content-Type={downloaded.content_type})", url=url
            )
        if extension == "avif" and self.policy.auto_convert_avif:
            data = transcode_avif_to_jpeg(data)
            extension = "jpg"
        elif not self.policy.allows(extension):
            raise ImageError(f"Image format .{extension} is not allowed: {url}", url=url)

        filename = f"{stem}.{extension}"
        self.store.write_bytes(self.store.images_dir / filename, data)
        return self._make_ref(key, filename, len(data))

    def _make_ref(self, url: str, filename: str, size: int) -> ImageRef:
        return ImageRef(
            original_url=url,
            local_path=f"images/{filename}",
            new_public_url=f"{self.public_base}{filename}",
            format=PurePosixPath(filename).suffix.lstrip("."),
            bytes=size,
        )


def rewrite_lookup(refs: Iterable[ImageRef]) -> Dict[str, str]:
    return {ref.original_url: ref.new_public_url for ref in refs}


def split_srcset(srcset: str) -> List[Tuple[str, str]]:
    """Split a srcset into ``(url, descriptor)`` pairs."""
    pairs = []
    for candidate in srcset.split(","):
        parts = candidate.strip().split(None, 1)
        if parts:
            pairs.append((parts[0], parts[1] if len(parts) > 1 else ""))
    return pairs
