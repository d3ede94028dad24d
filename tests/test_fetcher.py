import asyncio

from conftest import FakeRenderer, SlowRenderer, article_page

from wp_migrate.config import POST_CONTENT_SELECTORS, FetchSettings
from wp_migrate.fetcher import ContentFetcher, build_chain
from wp_migrate.profiles import parse_profile
from wp_migrate.storage import ArtifactStore

URLS = [
    "https://example.com/blog/first",
    "https://example.com/blog/second",
    "https://example.com/about",
]


def _pages():
    return {
        url: (200, article_page(f"Title {i}", f"<p>Body text number {i} with words.</p>"))
        for i, url in enumerate(URLS)
    }


def test_fetches_every_url_into_a_fragment(tmp_path, fetch_settings):
    store = ArtifactStore(tmp_path)
    renderer = FakeRenderer(_pages())
    fetcher = ContentFetcher(store, fetch_settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch(URLS, POST_CONTENT_SELECTORS))

    assert [f.source_url for f in result.items] == URLS
    assert result.errors == []
    for fragment in result.items:
        assert fragment.matched_selector == "article"
        assert "<header" not in fragment.content_html
        assert store.fragment_path(fragment.source_url).is_file()
    assert len(list(store.fetched_dir.glob("*.json"))) == 3


def test_not_found_is_not_retried(tmp_path, fetch_settings):
    url = "https://example.com/missing"
    renderer = FakeRenderer({url: (404, "<html><body>Not here</body></html>")})
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch([url], POST_CONTENT_SELECTORS))

    assert result.items == []
    assert len(result.errors) == 1
    assert "404" in result.errors[0].message
    assert renderer.calls == [url]


def test_transient_failures_are_retried_then_reported(tmp_path, fetch_settings):
    url = "https://example.com/flaky"
    renderer = FakeRenderer({url: (503, "<html><body>Busy</body></html>")})
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch([url], POST_CONTENT_SELECTORS))

    assert len(result.errors) == 1
    assert len(renderer.calls) == fetch_settings.max_retries + 1


def test_one_bad_url_does_not_stop_the_others(tmp_path, fetch_settings):
    pages = _pages()
    pages.pop(URLS[1])
    renderer = FakeRenderer(pages)
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch(URLS, POST_CONTENT_SELECTORS))

    assert [f.source_url for f in result.items] == [URLS[0], URLS[2]]
    assert [e.identity for e in result.errors] == [URLS[1]]


def test_empty_page_is_a_failure(tmp_path, fetch_settings):
    url = "https://example.com/empty"
    renderer = FakeRenderer({url: (200, "<html><head></head><body>   </body></html>")})
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch([url], POST_CONTENT_SELECTORS))

    assert result.items == []
    assert "No content" in result.errors[0].message
    assert renderer.calls == [url]


def test_existing_fragments_are_reused(tmp_path, fetch_settings):
    store = ArtifactStore(tmp_path)
    asyncio.run(ContentFetcher(store, fetch_settings, renderer=FakeRenderer(_pages())).fetch(
        URLS, POST_CONTENT_SELECTORS
    ))

    renderer = FakeRenderer({})
    result = asyncio.run(
        ContentFetcher(store, fetch_settings, renderer=renderer).fetch(
            URLS, POST_CONTENT_SELECTORS, reuse_existing=True
        )
    )

    assert renderer.calls == []
    assert len(result.items) == 3


def test_chain_falls_back_in_order(tmp_path, fetch_settings):
    url = "https://example.com/landing"
    html = """
    <html><body>
      <div class="entry-content">   </div>
      <div id="content"><p>Real content lives here.</p></div>
    </body></html>
    """
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=FakeRenderer({url: (200, html)}))

    result = asyncio.run(fetcher.fetch([url], [".entry-content", "#content"]))

    assert result.items[0].matched_selector == "#content"


def test_build_chain_puts_type_selector_first():
    profile = parse_profile({
        "name": "site",
        "extraction": [".wrapper", "main"],
        "postRules": {"contentSelector": ".blog-post-detail"},
    })
    assert build_chain(profile, "post") == (".blog-post-detail", ".wrapper", "main")
    assert build_chain(profile, "page") == (".wrapper", "main")
    assert build_chain(None, "post") == POST_CONTENT_SELECTORS


def test_duplicate_urls_are_each_accounted_for(tmp_path, fetch_settings):
    renderer = FakeRenderer(_pages())
    fetcher = ContentFetcher(ArtifactStore(tmp_path), fetch_settings, renderer=renderer)
    urls = [URLS[0], URLS[1], URLS[0]]

    result = asyncio.run(fetcher.fetch(urls, POST_CONTENT_SELECTORS))

    assert len(result.items) + len(result.errors) == len(urls)
    assert [f.source_url for f in result.items] == [URLS[0], URLS[1]]
    assert [(e.identity, e.message) for e in result.errors] == [(URLS[0], "duplicate URL")]
    assert renderer.calls.count(URLS[0]) == 1


def test_concurrent_fetch_is_bounded_and_keyed_by_url(tmp_path):
    urls = URLS + ["https://example.com/contact"]
    pages = {
        url: (200, article_page(f"Title {i}", f"<p>Body text number {i} with words.</p>"))
        for i, url in enumerate(urls)
    }
    delays = {url: 0.04 - 0.01 * i for i, url in enumerate(urls)}
    renderer = SlowRenderer(pages, delays)
    settings = FetchSettings(wait_after_load=0, retry_base_delay=0.0, concurrency=2)
    fetcher = ContentFetcher(ArtifactStore(tmp_path), settings, renderer=renderer)

    result = asyncio.run(fetcher.fetch(urls, POST_CONTENT_SELECTORS))

    assert renderer.peak == 2
    assert renderer.finished[0] == urls[1]
    assert [f.source_url for f in result.items] == urls
    for i, fragment in enumerate(result.items):
        assert f"Body text number {i}" in fragment.content_html
