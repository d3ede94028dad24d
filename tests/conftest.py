import asyncio
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from wp_migrate.config import FetchSettings, MigrationConfig
from wp_migrate.errors import FetchError, ImageError
from wp_migrate.fetcher import RenderedPage
from wp_migrate.images import DownloadedImage

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 600
JPEG_BYTES = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00" + b"\x00" * 600
AVIF_BYTES = b"\x00\x00\x00\x1cftypavif\x00\x00\x00\x00avifmif1miaf" + b"\x00" * 600


def article_page(title: str, body: str, extra: str = "") -> str:
    return f"""
    <html>
      <head><title>{title} | Example</title></head>
      <body>
        <header><nav><a href="/">Home</a></nav></header>
        <article>
          <h1>{title}</h1>
          {body}
          {extra}
        </article>
        <footer>Footer text</footer>
      </body>
    </html>
    """


class FakeRenderer:
    """Serves canned pages and records every render call."""

    def __init__(self, pages: Dict[str, Tuple[int, str]]):
        self.pages = pages
        self.calls: List[str] = []

    async def render(self, url: str) -> RenderedPage:
        self.calls.append(url)
        if url not in self.pages:
            raise FetchError(f"connection refused for {url}", url=url)
        status, html = self.pages[url]
        return RenderedPage(html=html, final_url=url, status=status)


class FakeDownloader:
    """Thread-safe canned image responses."""

    def __init__(self, images: Dict[str, Tuple[bytes, Optional[str]]]):
        self.images = images
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def download(self, url: str, timeout: float) -> DownloadedImage:
        with self._lock:
            self.calls.append(url)
        if url not in self.images:
            raise ImageError(f"HTTP 404 for image {url}", url=url)
        data, content_type = self.images[url]
        return DownloadedImage(data=data, content_type=content_type)


class SlowRenderer(FakeRenderer):
    """Renders with a per-URL delay and tracks how many renders overlap."""

    def __init__(self, pages: Dict[str, Tuple[int, str]], delays: Dict[str, float]):
        super().__init__(pages)
        self.delays = delays
        self.in_flight = 0
        self.peak = 0
        self.finished: List[str] = []

    async def render(self, url: str) -> RenderedPage:
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(url, 0))
            return await super().render(url)
        finally:
            self.in_flight -= 1
            self.finished.append(url)


class SlowDownloader(FakeDownloader):
    """Holds every download briefly and tracks the peak number in flight."""

    def __init__(self, images: Dict[str, Tuple[bytes, Optional[str]]], delay: float = 0.05):
        super().__init__(images)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    def download(self, url: str, timeout: float) -> DownloadedImage:
        with self._lock:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(self.delay)
            return super().download(url, timeout)
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def fetch_settings() -> FetchSettings:
    return FetchSettings(wait_after_load=0, retry_base_delay=0.0, max_retries=2)


@pytest.fixture
def config(tmp_path: Path, fetch_settings: FetchSettings) -> MigrationConfig:
    return MigrationConfig(output_root=tmp_path / "output", fetch=fetch_settings, sanitize_workers=2)
