"""Command-line entry point for the WordPress migration pipeline."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .config import MigrationConfig
from .errors import MigrationError
from .models import RunRequest, RunSummary
from .pipeline import MigrationPipeline, inspect_artifacts, resume_run
from .profiles import Discriminators, load_profile
from .runs import CancellationToken, JsonRunRecordSink
from .storage import ArtifactStore
from .utils import parse_url_lines

logger = logging.getLogger("wp_migrate.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return argv
    first = argv[0]
    if first in commands or first.startswith("-"):
        return argv
    return ("migrate", *argv)


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Artifact directory (default: $WP_MIGRATE_OUTPUT or ./output)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_url_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("urls", nargs="*", help="URLs to migrate")
    parser.add_argument(
        "--urls-file",
        type=Path,
        help="File with one URL per line, optionally followed by 'post' or 'page'",
    )


def _add_migrate_arguments(parser: argparse.ArgumentParser) -> None:
    _add_url_arguments(parser)
    parser.add_argument("--profile", type=Path, help="Site profile (.json, .yaml or .yml)")
    parser.add_argument(
        "--content-type",
        choices=("post", "page"),
        help="Treat every URL as this content type instead of classifying",
    )
    parser.add_argument(
        "--bypass-images",
        action="store_true",
        help="Skip image downloads and leave image URLs untouched",
    )
    parser.add_argument(
        "--remove-selector",
        action="append",
        default=[],
        dest="remove_selectors",
        help="Extra CSS selector to remove from content (repeatable)",
    )
    parser.add_argument("--post-selector", help="Selector (or class name) that marks a post")
    parser.add_argument("--page-selector", help="Selector (or class name) that marks a page")
    for stage in ("fetch", "images", "sanitize", "generate"):
        parser.add_argument(
            f"--skip-{stage}",
            action="store_true",
            help=f"Reuse existing {stage} artifacts when present",
        )
    parser.add_argument("--concurrency", type=int, help="Pages rendered in parallel (default: 1)")
    parser.add_argument("--timeout", type=float, help="Navigation timeout in seconds")
    parser.add_argument("--wait", type=float, help="Seconds to wait after load before reading HTML")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    _add_common_arguments(parser)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render legacy pages with Playwright and build WordPress import files.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    migrate_parser = subparsers.add_parser("migrate", help="Run the migration pipeline")
    _add_migrate_arguments(migrate_parser)

    status_parser = subparsers.add_parser(
        "status", help="Show existing artifacts and persisted runs"
    )
    _add_url_arguments(status_parser)
    _add_common_arguments(status_parser)

    resume_parser = subparsers.add_parser("resume", help="Resume a persisted run")
    resume_parser.add_argument("run_id", help="Run identifier (see 'status')")
    _add_common_arguments(resume_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def collect_urls(args: argparse.Namespace) -> Tuple[List[str], Dict[str, str]]:
    lines = list(args.urls)
    if args.urls_file:
        lines.extend(args.urls_file.read_text(encoding="utf-8").splitlines())
    entries = parse_url_lines(lines)
    urls = [url for url, _ in entries]
    url_types = {url: kind for url, kind in entries if kind}
    return urls, url_types


def build_config(args: argparse.Namespace) -> MigrationConfig:
    config = MigrationConfig.from_env(output_root=args.output.resolve() if args.output else None)
    changes = {}
    if getattr(args, "concurrency", None):
        changes["concurrency"] = max(1, args.concurrency)
    if getattr(args, "timeout", None):
        changes["timeout"] = args.timeout
    if getattr(args, "wait", None) is not None:
        changes["wait_after_load"] = args.wait
    if getattr(args, "headed", False):
        changes["headless"] = False
    if changes:
        config.fetch = replace(config.fetch, **changes)
    return config


def build_request(args: argparse.Namespace, urls: List[str], url_types: Dict[str, str]) -> RunRequest:
    profile = load_profile(args.profile) if args.profile else None
    custom = None
    if args.post_selector or args.page_selector:
        custom = Discriminators(post=args.post_selector, page=args.page_selector)
    return RunRequest(
        urls=urls,
        profile=profile,
        content_type=args.content_type,
        url_types=url_types,
        bypass_images=args.bypass_images,
        custom_selectors=custom,
        custom_remove_selectors=list(args.remove_selectors),
        skip_fetch=args.skip_fetch,
        skip_images=args.skip_images,
        skip_sanitize=args.skip_sanitize,
        skip_generate=args.skip_generate,
    )


def _report(summary: RunSummary) -> None:
    metrics = summary.metrics
    logger.info(
        "Run %s %s: %d scraped, %d images, %d processed (%d posts, %d pages), %d error(s)",
        summary.run_id,
        summary.state.value,
        metrics.urls_scraped,
        metrics.images_downloaded,
        metrics.files_processed,
        metrics.posts_detected,
        metrics.pages_detected,
        metrics.error_count,
    )
    for stage, items in summary.failures.to_dict().items():
        for item in items:
            logger.warning("[%s] %s: %s", stage, item["identity"], item["message"])
    for path in summary.import_files:
        logger.info("Import file: %s", path)
    if summary.cause:
        logger.error("Cause: %s", json.dumps(summary.cause))


async def _run_with_interrupt(coro_factory, token: CancellationToken) -> RunSummary:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except (NotImplementedError, RuntimeError):
        logger.debug("Signal handlers unavailable; Ctrl+C will abort immediately")
    try:
        return await coro_factory()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def _run_migrate(args: argparse.Namespace) -> int:
    urls, url_types = collect_urls(args)
    if not urls:
        logger.error("No valid URLs given")
        return 2
    config = build_config(args)
    try:
        request = build_request(args, urls, url_types)
    except MigrationError as exc:
        logger.error("%s", exc)
        return 2

    existing = inspect_artifacts(config, urls)
    for stage, count in existing.items():
        if count and not getattr(args, f"skip_{stage}"):
            logger.info("%d existing %s artifact(s) found; pass --skip-%s to reuse them", count, stage, stage)

    token = CancellationToken()
    pipeline = MigrationPipeline(
        config,
        sink=JsonRunRecordSink(ArtifactStore(config.output_root)),
        cancel_token=token,
    )
    summary = asyncio.run(_run_with_interrupt(lambda: pipeline.run(request), token))
    _report(summary)
    return 0 if summary.succeeded else 1


def _run_status(args: argparse.Namespace) -> int:
    config = build_config(args)
    store = ArtifactStore(config.output_root)
    urls, _ = collect_urls(args)
    counts = inspect_artifacts(config, urls) if urls else {}
    sys.stdout.write(f"Output: {config.output_root}\n")
    for stage, count in counts.items():
        sys.stdout.write(f"  {stage}: {count} existing\n")
    for path in store.import_files():
        sys.stdout.write(f"  import file: {path.name}\n")
    records = sorted(store.runs_dir.glob("*.json")) if store.runs_dir.is_dir() else []
    for path in records:
        record = store.read_json(path) or {}
        metrics = record.get("metrics") or {}
        sys.stdout.write(
            f"  run {record.get('runId', path.stem)}: {record.get('state', 'unknown')}"
            f" (errors: {metrics.get('errorCount', '-')})\n"
        )
    sys.stdout.flush()
    return 0


def _run_resume(args: argparse.Namespace) -> int:
    config = build_config(args)
    store = ArtifactStore(config.output_root)
    token = CancellationToken()
    try:
        summary = asyncio.run(
            _run_with_interrupt(
                lambda: resume_run(
                    store.run_record_path(args.run_id),
                    config,
                    sink=JsonRunRecordSink(store),
                    cancel_token=token,
                ),
                token,
            )
        )
    except MigrationError as exc:
        logger.error("%s", exc)
        return 2
    _report(summary)
    return 0 if summary.succeeded else 1


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    if args.command == "migrate":
        code = _run_migrate(args)
    elif args.command == "status":
        code = _run_status(args)
    else:
        code = _run_resume(args)
    sys.exit(code)


if __name__ == "__main__":
    main()
