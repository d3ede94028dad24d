from wp_migrate.utils import absolute_image_url, artifact_key, normalize_image_url, parse_url_lines, slugify


def test_artifact_key_is_stable_and_normalized():
    first = artifact_key("https://Example.com/blog/post-one/")
    second = artifact_key("https://example.com/blog/post-one#comments")
    assert first == second
    assert first.startswith("example-com-blog-post-one-")


def test_artifact_key_distinguishes_query_strings():
    assert artifact_key("https://example.com/page?id=1") != artifact_key("https://example.com/page?id=2")


def test_normalize_image_url_drops_query_and_resolves_relative():
    url = normalize_image_url("../img/photo.jpg?w=300#x", "https://example.com/blog/post/")
    assert url == "https://example.com/blog/img/photo.jpg"


def test_absolute_image_url_keeps_query_for_download():
    url = absolute_image_url("getimage.ashx?id=42#top", "https://dealer.example.com/inventory/")
    assert url == "https://dealer.example.com/inventory/getimage.ashx?id=42"


def test_parse_url_lines_reads_types_and_skips_noise():
    lines = [
        "# comment",
        "",
        "https://example.com/about page",
        "https://example.com/blog/hello post",
        "https://example.com/contact,",
        "https://example.com/about",
        "not a url",
        "// another comment",
    ]
    entries = parse_url_lines(lines)
    assert entries == [
        ("https://example.com/about", "page"),
        ("https://example.com/blog/hello", "post"),
        ("https://example.com/contact", None),
    ]


def test_slugify_falls_back():
    assert slugify("Hello, World!") == "hello-world"
    assert slugify("!!!", fallback="x") == "x"
