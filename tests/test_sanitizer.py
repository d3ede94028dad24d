import pytest
from bs4 import BeautifulSoup

from wp_migrate.errors import SanitizeError
from wp_migrate.models import FetchedFragment, ImageRef, RunRequest
from wp_migrate.pipeline import resolve_settings
from wp_migrate.profiles import parse_profile
from wp_migrate.sanitizer import ContentSanitizer, rewrite_link, size_reduction, strip_attributes
from wp_migrate.storage import ArtifactStore

HERO = "https://cdn.example.com/img/hero.png"
HERO_PUBLIC = "/wp-content/uploads/2024/03/hero.png"


def _fragment(url: str, content: str, raw: str = "") -> FetchedFragment:
    return FetchedFragment(
        source_url=url,
        raw_html=raw or f"<html><body>{content}</body></html>",
        content_html=content,
        fetched_at="2024-03-05T00:00:00+00:00",
    )


def _sanitizer(config, profile=None, **request):
    urls = request.pop("urls", ["https://example.com/blog/post"])
    settings = resolve_settings(RunRequest(urls=urls, profile=profile, **request), config, "test-run")
    return ContentSanitizer(ArtifactStore(config.output_root), settings)


def test_profile_remove_selectors_drop_matching_elements(config):
    profile = parse_profile({"name": "site", "removeSelectors": [".ad"]})
    sanitizer = _sanitizer(config, profile, content_type="page")

    processed = sanitizer.sanitize(
        _fragment("https://example.com/offers", '<div><div class="ad">X</div><p>Y</p></div>'), {}
    )

    assert "Y" in processed.sanitized_html
    assert "X" not in processed.sanitized_html


def test_run_level_selectors_are_unioned_with_profile(config):
    profile = parse_profile({"name": "site", "removeSelectors": [".ad"]})
    sanitizer = _sanitizer(config, profile, content_type="page", custom_remove_selectors=[".promo"])

    processed = sanitizer.sanitize(
        _fragment(
            "https://example.com/offers",
            '<div><div class="ad">X</div><div class="promo">Z</div><p>Y</p></div>',
        ),
        {},
    )

    assert "X" not in processed.sanitized_html
    assert "Z" not in processed.sanitized_html


def test_images_are_rewritten_from_the_map(config):
    sanitizer = _sanitizer(config, content_type="post")
    lookup = {HERO: HERO_PUBLIC}
    content = (
        f'<article><p>Intro</p><img src="{HERO}?w=800" srcset="{HERO} 800w, '
        f'https://cdn.example.com/img/other.png 400w"></article>'
    )

    processed = sanitizer.sanitize(_fragment("https://example.com/blog/post", content), lookup)

    soup = BeautifulSoup(processed.sanitized_html, "html.parser")
    img = soup.find("img")
    assert img["src"] == HERO_PUBLIC
    assert img["srcset"] == f"{HERO_PUBLIC} 800w, https://cdn.example.com/img/other.png 400w"


def test_bypassed_images_keep_original_urls(config):
    sanitizer = _sanitizer(config, content_type="page", bypass_images=True)

    processed = sanitizer.sanitize(
        _fragment("https://example.com/about", f'<div><p>Team</p><img src="{HERO}"></div>'), {}
    )

    assert f'src="{HERO}"' in processed.sanitized_html


def test_attributes_follow_class_and_id_policy(config):
    sanitizer = _sanitizer(config, content_type="page")
    content = (
        '<div class="row fancy" id="wrap" style="color:red">'
        '<div class="col-md-6 shadow" data-x="1" onclick="go()"><p id="p1">Text</p></div></div>'
    )

    processed = sanitizer.sanitize(_fragment("https://example.com/about", content), {})

    html = processed.sanitized_html
    assert 'class="row"' in html
    assert 'class="col-md-6"' in html
    for gone in ("fancy", "shadow", "style=", "id=", "data-x", "onclick"):
        assert gone not in html


def test_remove_all_classes_takes_precedence():
    soup = BeautifulSoup('<div class="row" id="keep"><p class="col-6">x</p></div>', "html.parser")
    strip_attributes(soup, preserve_layout_classes=True, remove_all_classes=True, remove_all_ids=False)
    assert str(soup) == '<div id="keep"><p>x</p></div>'


def test_post_chrome_and_builtin_elements_are_removed(config):
    sanitizer = _sanitizer(config, content_type="post")
    content = (
        "<article><h1>Spring Sale</h1>"
        '<div class="post-meta">Posted on March 3, 2024</div>'
        "<p>By the way, the sale runs all weekend long at every one of our locations.</p>"
        "<p>By Jane Doe</p>"
        '<div class="share-buttons"><a href="https://facebook.com/x">Share</a></div>'
        '<form><input name="q"><button>Go</button></form>'
        "<script>track()</script>"
        "<p>   </p></article>"
    )

    processed = sanitizer.sanitize(_fragment("https://example.com/blog/spring-sale", content), {})

    html = processed.sanitized_html
    assert processed.extracted_title == "Spring Sale"
    assert "<h1" not in html
    assert "Posted on" not in html
    assert "By the way" in html
    assert "Jane Doe" not in html
    assert "facebook" not in html
    assert "<form" not in html and "<script" not in html
    assert "<p></p>" not in html


def test_links_are_normalized(config):
    sanitizer = _sanitizer(config, content_type="page")
    content = (
        '<div><p><a href="https://www.example.com/service/">Service</a> '
        '<a href="https://partner.org/deal">Partner</a> '
        '<a href="specials">Specials</a> <a href="#top">Top</a></p></div>'
    )

    processed = sanitizer.sanitize(_fragment("https://www.example.com/about", content), {})

    soup = BeautifulSoup(processed.sanitized_html, "html.parser")
    links = {a.get_text(): a for a in soup.find_all("a")}
    assert links["Service"]["href"] == "/service/"
    assert links["Partner"]["href"] == "https://partner.org/deal"
    assert links["Partner"]["target"] == "_blank"
    assert links["Specials"]["href"] == "/specials"
    assert links["Top"]["href"] == "#top"


def test_link_rewrite_rules_run_first():
    profile = parse_profile({"name": "s", "linkRewrites": [{"pattern": "^/inventory/", "replacement": "/cars/"}]})
    assert rewrite_link("/inventory/used", "example.com", profile.link_rewrites) == "/cars/used"


def test_metadata_uses_configured_selectors(config):
    profile = parse_profile({
        "name": "s",
        "postRules": {"dateSelector": ".stamp", "titleSelector": ".headline"},
    })
    sanitizer = _sanitizer(config, profile, content_type="post")
    content = '<article><p class="headline">Real Title</p><span class="stamp">2024-02-10</span><p>Body</p></article>'

    processed = sanitizer.sanitize(_fragment("https://example.com/blog/x", content), {})

    assert processed.extracted_title == "Real Title"
    assert processed.extracted_date == "2024-02-10 00:00:00"


def test_empty_output_is_a_sanitize_error(config):
    profile = parse_profile({"name": "s", "removeSelectors": [".everything"]})
    sanitizer = _sanitizer(config, profile, content_type="page")

    with pytest.raises(SanitizeError):
        sanitizer.sanitize(
            _fragment("https://example.com/x", '<div class="everything"><p>All of it</p></div>'), {}
        )


def test_process_reports_each_failure_and_keeps_order(config):
    urls = ["https://example.com/a", "https://example.com/b", "https://example.com/c"]
    profile = parse_profile({"name": "s", "removeSelectors": [".drop"]})
    sanitizer = _sanitizer(config, profile, content_type="page", urls=urls)
    fragments = [
        _fragment(urls[0], "<div><p>A</p></div>"),
        _fragment(urls[1], '<div class="drop"><p>B</p></div>'),
        _fragment(urls[2], "<div><p>C</p></div>"),
    ]

    result = sanitizer.process(fragments, [ImageRef(HERO, "images/h.png", HERO_PUBLIC, "png", 10)])

    assert [p.source_url for p in result.items] == [urls[0], urls[2]]
    assert [e.identity for e in result.errors] == [urls[1]]
    assert ArtifactStore(config.output_root).load_processed(urls[0]).sanitized_html == "<div><p>A</p></div>"


def test_size_reduction():
    assert size_reduction("x" * 200, "x" * 50) == 75.0
    assert size_reduction("", "") == 0.0
