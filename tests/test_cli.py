import pytest

from wp_migrate import cli


def test_bare_urls_default_to_migrate():
    args = cli.parse_args(["https://example.com/a", "--content-type", "post", "--skip-fetch"])
    assert args.command == "migrate"
    assert args.urls == ["https://example.com/a"]
    assert args.content_type == "post"
    assert args.skip_fetch is True
    assert args.skip_images is False


def test_collect_urls_merges_file_and_arguments(tmp_path):
    urls_file = tmp_path / "urls.txt"
    urls_file.write_text(
        "# inventory pages\nhttps://example.com/about page\nhttps://example.com/blog/x post\n",
        encoding="utf-8",
    )
    args = cli.parse_args(["migrate", "https://example.com/contact", "--urls-file", str(urls_file)])

    urls, url_types = cli.collect_urls(args)

    assert urls == [
        "https://example.com/contact",
        "https://example.com/about",
        "https://example.com/blog/x",
    ]
    assert url_types == {"https://example.com/about": "page", "https://example.com/blog/x": "post"}


def test_build_request_carries_selectors_and_flags(tmp_path):
    args = cli.parse_args([
        "https://example.com/a",
        "--post-selector", "blog-post",
        "--remove-selector", ".ad",
        "--remove-selector", ".promo",
        "--bypass-images",
    ])
    request = cli.build_request(args, ["https://example.com/a"], {})
    assert request.custom_selectors.post == ".blog-post"
    assert request.custom_remove_selectors == [".ad", ".promo"]
    assert request.bypass_images is True
    assert request.profile is None


def test_build_config_applies_fetch_flags(tmp_path, monkeypatch):
    monkeypatch.delenv("SCRAPER_TIMEOUT", raising=False)
    args = cli.parse_args(["https://example.com/a", "--output", str(tmp_path), "--concurrency", "3", "--wait", "0"])
    config = cli.build_config(args)
    assert config.output_root == tmp_path.resolve()
    assert config.fetch.concurrency == 3
    assert config.fetch.wait_after_load == 0


def test_migrate_without_urls_exits_with_usage_error(tmp_path):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["migrate", "--output", str(tmp_path)])
    assert excinfo.value.code == 2


def test_status_lists_artifacts(tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main(["status", "https://example.com/a", "--output", str(tmp_path)])
    assert excinfo.value.code == 0
    out = capsys.readouterr().out
    assert "fetch: 0 existing" in out
