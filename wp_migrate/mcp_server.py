"""MCP server exposing the migration pipeline as tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

from mcp.server.fastmcp import FastMCP

from .config import MigrationConfig
from .models import RunRequest
from .pipeline import MigrationPipeline, inspect_artifacts
from .profiles import load_profile
from .runs import JsonRunRecordSink
from .storage import ArtifactStore
from .utils import CONTENT_TYPES

logger = logging.getLogger("wp_migrate.mcp")
logger.setLevel(logging.ERROR)

mcp = FastMCP(name="wp-migrate")


@mcp.tool()
async def migrate(
    urls: List[str],
    output: str = "output",
    profile: Optional[str] = None,
    content_type: Optional[str] = None,
    bypass_images: bool = False,
    skip_existing: bool = False,
) -> dict:
    """Run the migration pipeline headlessly and return the run summary."""

    if content_type is not None and content_type not in CONTENT_TYPES:
        raise ValueError(f"content_type must be one of {', '.join(CONTENT_TYPES)}, got {content_type!r}")
    config = MigrationConfig.from_env(output_root=Path(output).expanduser().resolve())
    request = RunRequest(
        urls=urls,
        profile=load_profile(Path(profile).expanduser()) if profile else None,
        content_type=content_type,
        bypass_images=bypass_images,
        skip_fetch=skip_existing,
        skip_images=skip_existing,
        skip_sanitize=skip_existing,
        skip_generate=skip_existing,
    )
    pipeline = MigrationPipeline(config, sink=JsonRunRecordSink(ArtifactStore(config.output_root)))
    summary = await pipeline.run(request)
    return summary.to_dict()


@mcp.tool()
async def artifact_status(urls: List[str], output: str = "output") -> dict:
    """Report how many artifacts already exist for each stage."""

    config = MigrationConfig.from_env(output_root=Path(output).expanduser().resolve())
    return inspect_artifacts(config, urls)


def main() -> None:
    """Entry point for running the MCP server."""
    logging.basicConfig(level=logging.ERROR)
    mcp.run()


if __name__ == "__main__":
    main()
