from wp_migrate.classifier import (
    available_heuristics,
    classify,
    get_heuristic,
    register_heuristic,
    Classification,
)
from wp_migrate.models import FetchedFragment
from wp_migrate.profiles import Discriminators


def _fragment(url: str, content: str) -> FetchedFragment:
    return FetchedFragment(
        source_url=url,
        raw_html=f"<html><body>{content}</body></html>",
        content_html=content,
        fetched_at="2024-03-05T00:00:00+00:00",
    )


BLOG_POST = _fragment(
    "https://example.com/blog/spring-sale",
    '<article><time datetime="2024-03-01">March 1</time><span class="byline">By Sam</span>'
    "<p>Big sale this weekend.</p></article>",
)
ABOUT_PAGE = _fragment(
    "https://example.com/about-us",
    "<main><h2>Our story</h2><p>Family owned since 1950.</p></main>",
)


def test_declared_type_wins_over_everything():
    result = classify(BLOG_POST, declared_type="page", url_type="post")
    assert result == Classification("page", "declared for run")


def test_url_mapping_wins_over_discriminators():
    result = classify(ABOUT_PAGE, url_type="post", discriminators=Discriminators(page="main"))
    assert result.content_type == "post"
    assert result.reason == "manual mapping"


def test_discriminators_decide_before_heuristics():
    discriminators = Discriminators(post="blog-post")
    post = _fragment("https://example.com/about", '<div class="blog-post"><p>Hi</p></div>')

    assert classify(post, discriminators=discriminators).content_type == "post"
    result = classify(BLOG_POST, discriminators=discriminators)
    assert result.content_type == "page"
    assert "not found" in result.reason


def test_structural_heuristic():
    assert classify(BLOG_POST).content_type == "post"
    about = classify(ABOUT_PAGE)
    assert about.content_type == "page"
    assert "page path" in about.reason


def test_ambiguous_fragment_defaults_to_page():
    plain = _fragment("https://example.com/specials", "<div><p>Check back soon.</p></div>")
    assert classify(plain) == Classification("page", "default")


def test_classification_is_deterministic():
    results = {classify(BLOG_POST).reason for _ in range(5)}
    assert len(results) == 1


def test_unknown_heuristic_falls_back_to_structural():
    assert get_heuristic("does-not-exist") is get_heuristic("structural")


def test_registered_heuristic_is_selectable():
    @register_heuristic("always-post")
    def always_post(fragment, soup):
        return Classification("post", "heuristic: always")

    assert "always-post" in available_heuristics()
    assert classify(ABOUT_PAGE, heuristic="always-post").content_type == "post"
