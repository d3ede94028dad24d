"""Content fetcher: render pages with Playwright and extract content fragments."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from playwright.async_api import (
    Browser,
    Error as PlaywrightError,
    Playwright,
    Route,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import FetchSettings, default_chain
from .content import extract_content
from .errors import FetchError, MigrationError, NotFoundError, retry_async
from .models import FetchedFragment, ItemFailure, StageResult
from .profiles import SiteProfile
from .runs import CancellationToken, utc_now
from .storage import ArtifactStore

logger = logging.getLogger("wp_migrate")

BLOCKED_RESOURCE_TYPES = {"image", "font", "media"}
VIEWPORT = {"width": 1920, "height": 1080}


@dataclass
class RenderedPage:
    html: str
    final_url: str
    status: Optional[int]


class PageRenderer(Protocol):
    async def render(self, url: str) -> RenderedPage: ...


async def _block_heavy_resources(route: Route) -> None:
    if route.request.resource_type in BLOCKED_RESOURCE_TYPES:
        await route.abort()
    else:
        await route.continue_()


class PlaywrightRenderer:
    """Shares one Chromium instance and opens a fresh context per attempt."""

    def __init__(self, settings: FetchSettings) -> None:
        self.settings = settings
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "PlaywrightRenderer":
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(headless=self.settings.headless)
        except BaseException:
            await self._playwright.stop()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
        finally:
            if self._playwright is not None:
                await self._playwright.stop()
            self._browser = None
            self._playwright = None

    async def render(self, url: str) -> RenderedPage:
        if self._browser is None:
            raise RuntimeError("PlaywrightRenderer must be used as an async context manager")
        context = await self._browser.new_context(
            viewport=VIEWPORT,
            user_agent=self.settings.user_agent,
            ignore_https_errors=True,
        )
        try:
            page = await context.new_page()
            page.set_default_navigation_timeout(self.settings.timeout * 1000)
            await page.route("**/*", _block_heavy_resources)
            logger.info("Loading %s", url)
            response = await page.goto(url, wait_until="domcontentloaded")
            if self.settings.wait_after_load:
                await page.wait_for_timeout(int(self.settings.wait_after_load * 1000))
            html = await page.content()
            return RenderedPage(html=html, final_url=page.url, status=response.status if response else None)
        except PlaywrightTimeoutError as exc:
            raise FetchError(f"Timeout while loading {url}: {exc}", url=url) from exc
        except PlaywrightError as exc:
            raise FetchError(f"Browser error while loading {url}: {exc}", url=url) from exc
        finally:
            await context.close()


def build_chain(
    profile: Optional[SiteProfile],
    content_type: Optional[str],
) -> Tuple[str, ...]:
    """Selector chain for a content type.

    Order: the type-specific content selector, then the profile's
    extraction chain, or the built-in chain for the type when the profile
    declares none.
    """
    chain: List[str] = []
    if profile is not None and content_type in ("post", "page"):
        selector = profile.rules_for(content_type).content_selector
        if selector:
            chain.append(selector)
    extraction = profile.extraction if profile is not None else ()
    for selector in extraction or default_chain(content_type):
        if selector not in chain:
            chain.append(selector)
    return tuple(chain)


class ContentFetcher:
    """Render each URL, extract its fragment and persist it by URL key."""

    def __init__(
        self,
        store: ArtifactStore,
        settings: FetchSettings,
        renderer: Optional[PageRenderer] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.renderer = renderer
        self.cancel_token = cancel_token or CancellationToken()

    async def fetch(
        self,
        urls: Sequence[str],
        chain: Sequence[str],
        chain_overrides: Optional[Mapping[str, Sequence[str]]] = None,
        reuse_existing: bool = False,
    ) -> StageResult:
        """Fetch every URL; each input ends up as a fragment or a failure, never both.

        A URL repeated in the input is fetched once and every later
        occurrence is reported as a duplicate failure.
        """
        outcomes: Dict[str, object] = {}
        pending: List[str] = []
        for url in dict.fromkeys(urls):
            existing = self.store.load_fragment(url) if reuse_existing else None
            if existing is not None:
                logger.debug("Reusing fetched fragment for %s", url)
                outcomes[url] = existing
            else:
                pending.append(url)

        if pending:
            if self.renderer is not None:
                await self._fetch_all(self.renderer, pending, chain, chain_overrides or {}, outcomes)
            else:
                async with PlaywrightRenderer(self.settings) as renderer:
                    await self._fetch_all(renderer, pending, chain, chain_overrides or {}, outcomes)

        result = StageResult()
        seen = set()
        for url in urls:
            if url in seen:
                logger.warning("Skipping duplicate URL %s", url)
                result.errors.append(ItemFailure(url, "duplicate URL"))
                continue
            seen.add(url)
            outcome = outcomes[url]
            if isinstance(outcome, FetchedFragment):
                result.items.append(outcome)
            else:
                result.errors.append(outcome)
        logger.info(
            "Fetched %d/%d URL(s), %d failed",
            len(result.items),
            len(urls),
            len(result.errors),
        )
        return result

    async def _fetch_all(
        self,
        renderer: PageRenderer,
        urls: List[str],
        chain: Sequence[str],
        chain_overrides: Mapping[str, Sequence[str]],
        outcomes: Dict[str, object],
    ) -> None:
        semaphore = asyncio.Semaphore(max(1, self.settings.concurrency))

        async def worker(url: str) -> Tuple[str, object]:
            async with semaphore:
                if self.cancel_token.cancelled:
                    return url, ItemFailure(url, "cancelled")
                return url, await self._fetch_one(renderer, url, chain_overrides.get(url, chain))

        results = await asyncio.gather(*(worker(url) for url in urls))
        for url, outcome in results:
            outcomes[url] = outcome

    async def _fetch_one(
        self,
        renderer: PageRenderer,
        url: str,
        chain: Sequence[str],
    ) -> object:
        try:
            return await retry_async(
                lambda: self._attempt(renderer, url, chain),
                attempts=self.settings.max_retries + 1,
                base_delay=self.settings.retry_base_delay,
                label=url,
            )
        except MigrationError as exc:
            logger.warning("Failed to fetch %s: %s", url, exc)
            return ItemFailure(url, str(exc))
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Unexpected error fetching %s", url)
            return ItemFailure(url, f"Unexpected error: {exc}")

    async def _attempt(self, renderer: PageRenderer, url: str, chain: Sequence[str]) -> FetchedFragment:
        page = await renderer.render(url)
        if page.status is not None and page.status >= 400:
            if page.status == 404:
                raise NotFoundError(url)
            raise FetchError(f"HTTP {page.status} for {url}", url=url, status=page.status)
        content_html, selector = extract_content(page.html, chain)
        if not content_html:
            raise FetchError(f"No content extracted from {url}", url=url, retryable=False)
        fragment = FetchedFragment(
            source_url=url,
            raw_html=page.html,
            content_html=content_html,
            fetched_at=utc_now(),
            final_url=page.final_url,
            matched_selector=selector,
        )
        self.store.save_fragment(fragment)
        return fragment
