import asyncio

import pytest

from wp_migrate import mcp_server


def test_migrate_rejects_unknown_content_type(tmp_path, monkeypatch):
    def no_pipeline(*args, **kwargs):
        raise AssertionError("pipeline should not be built")

    monkeypatch.setattr(mcp_server, "MigrationPipeline", no_pipeline)

    with pytest.raises(ValueError, match="post, page"):
        asyncio.run(mcp_server.migrate(["https://example.com/a"], output=str(tmp_path), content_type="posts"))


def test_artifact_status_counts_nothing_for_a_fresh_output(tmp_path):
    counts = asyncio.run(mcp_server.artifact_status(["https://example.com/a"], output=str(tmp_path)))
    assert counts == {"fetch": 0, "images": 0, "sanitize": 0, "generate": 0}
