"""Pipeline orchestration: fetch, images, sanitize and generate, with failure tracking."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from .config import MigrationConfig, RunSettings, fetch_settings_for
from .errors import GenerateError, MigrationError, RunCancelledError, StageFailedError
from .fetcher import ContentFetcher, PageRenderer, build_chain
from .images import ImageDownloader, ImageResolver, RequestsDownloader
from .import_file import ImportFileBuilder
from .models import (
    FetchedFragment,
    ImageRef,
    ItemFailure,
    ProcessedFragment,
    RunFailures,
    RunMetrics,
    RunProgress,
    RunRequest,
    RunState,
    RunSummary,
)
from .profiles import ClassifierRules, Discriminators, merge_selectors
from .runs import CancellationToken, LoggingRunSink, RunRecordSink
from .sanitizer import ContentSanitizer
from .storage import ArtifactStore

logger = logging.getLogger("wp_migrate")

StageHook = Callable[[str, int], None]

STAGE_NAMES = {
    RunState.FETCHING: "fetch",
    RunState.IMAGING: "images",
    RunState.PROCESSING: "sanitize",
    RunState.GENERATING: "generate",
}


def new_run_id() -> str:
    return f"{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


def resolve_settings(request: RunRequest, config: MigrationConfig, run_id: str) -> RunSettings:
    """Freeze request, profile and config into the settings every stage reads."""
    profile = request.profile
    content_type = request.content_type if request.content_type in ("post", "page") else None
    url_types = {} if content_type else dict(request.url_types)

    if request.custom_selectors is not None and request.custom_selectors.configured:
        discriminators = request.custom_selectors
    elif profile is not None:
        discriminators = profile.discriminators()
    else:
        discriminators = Discriminators()

    image_policy = (profile.image_policy if profile and profile.image_policy else None) or config.images
    images_enabled = image_policy.enabled and not (request.bypass_images or config.bypass_images)

    post_rules = profile.post_rules if profile else ClassifierRules()
    page_rules = profile.page_rules if profile else ClassifierRules()

    return RunSettings(
        run_id=run_id,
        output_root=config.output_root,
        urls=tuple(request.urls),
        url_types=url_types,
        content_type=content_type,
        chain=build_chain(profile, content_type),
        chain_overrides={url: build_chain(profile, kind) for url, kind in url_types.items()},
        remove_selectors=merge_selectors(
            profile.remove_selectors if profile else (), request.custom_remove_selectors
        ),
        post_rules=post_rules,
        page_rules=page_rules,
        discriminators=discriminators,
        image_policy=image_policy,
        images_enabled=images_enabled,
        fetch=fetch_settings_for(profile, config.fetch),
        preserve_layout_classes=profile.preserve_layout_classes if profile else True,
        remove_all_classes=profile.remove_all_classes if profile else False,
        remove_all_ids=profile.remove_all_ids if profile else True,
        link_rewrites=profile.link_rewrites if profile else (),
        classifier_heuristic=profile.classifier_heuristic if profile else "structural",
        sanitize_workers=config.sanitize_workers,
        import_max_rows=config.import_max_rows,
        import_max_bytes=config.import_max_bytes,
        upload_base_url=config.upload_base_url,
        skip_fetch=request.skip_fetch,
        skip_images=request.skip_images,
        skip_sanitize=request.skip_sanitize,
        skip_generate=request.skip_generate,
    )


def inspect_artifacts(config: MigrationConfig, urls: Sequence[str]) -> Dict[str, int]:
    """Existing artifact counts per stage, for callers that prompt before a run."""
    return ArtifactStore(config.output_root).existing_counts(urls)


def _messages(errors: Sequence[ItemFailure]) -> List[str]:
    return [f"{error.identity}: {error.message}" for error in errors]


class MigrationPipeline:
    """Sequence the four stages for a run and report to a run record sink."""

    def __init__(
        self,
        config: MigrationConfig,
        sink: Optional[RunRecordSink] = None,
        renderer: Optional[PageRenderer] = None,
        downloader: Optional[ImageDownloader] = None,
        cancel_token: Optional[CancellationToken] = None,
        stage_hook: Optional[StageHook] = None,
        now: Optional[datetime] = None,
    ) -> None:
        self.config = config
        self.sink = sink or LoggingRunSink()
        self.renderer = renderer
        self.downloader = downloader
        self.cancel_token = cancel_token or CancellationToken()
        self.stage_hook = stage_hook
        self.now = now

    async def run(self, request: RunRequest) -> RunSummary:
        run_id = request.run_id or new_run_id()
        request.run_id = run_id
        settings = resolve_settings(request, self.config, run_id)
        store = ArtifactStore(settings.output_root)
        failures = RunFailures()
        metrics = RunMetrics()
        progress = RunProgress()
        summary = RunSummary(run_id=run_id, state=RunState.PENDING, metrics=metrics, failures=failures)
        start = time.perf_counter()

        self.sink.started(run_id, request)
        self.sink.transition(run_id, RunState.PENDING)
        existing = store.existing_counts(settings.urls)
        state = RunState.PENDING
        try:
            state = self._enter(run_id, RunState.FETCHING, progress)
            fragments = await self._fetch_stage(settings, store, existing, failures, metrics, progress)

            refs: List[ImageRef] = []
            if settings.images_enabled:
                state = self._enter(run_id, RunState.IMAGING, progress)
                refs = await self._image_stage(settings, store, existing, fragments, failures, metrics, progress)
            else:
                logger.info("Image stage bypassed; image URLs are left unchanged")

            state = self._enter(run_id, RunState.PROCESSING, progress)
            processed = await self._sanitize_stage(
                settings, store, existing, fragments, refs, failures, metrics, progress
            )

            state = self._enter(run_id, RunState.GENERATING, progress)
            self._generate_stage(settings, store, existing, processed, failures, summary)
            summary.state = RunState.COMPLETED
        except StageFailedError as exc:
            logger.error("Run %s failed: %s", run_id, exc)
            summary.state = RunState.FAILED
            summary.cause = exc.to_dict()
        except RunCancelledError:
            logger.warning("Run %s cancelled during %s", run_id, state.value)
            summary.state = RunState.FAILED
            summary.cause = {"stage": STAGE_NAMES.get(state, state.value), "reason": "cancelled"}
        except Exception as exc:  # pylint: disable=broad-except
            logger.exception("Run %s crashed during %s", run_id, state.value)
            summary.state = RunState.FAILED
            summary.cause = {
                "stage": STAGE_NAMES.get(state, state.value),
                "reason": "error",
                "messages": [str(exc)],
            }

        metrics.total_duration_ms = int((time.perf_counter() - start) * 1000)
        metrics.error_count = failures.total
        self.sink.transition(run_id, summary.state)
        self.sink.finished(run_id, summary)
        return summary

    def _enter(self, run_id: str, state: RunState, progress: RunProgress) -> RunState:
        self._check_cancelled()
        progress.stage = state.value
        self.sink.transition(run_id, state)
        return state

    def _notify(self, stage: str, existing: Dict[str, int]) -> None:
        if self.stage_hook is not None and existing.get(stage):
            self.stage_hook(stage, existing[stage])

    def _check_cancelled(self) -> None:
        if self.cancel_token.cancelled:
            raise RunCancelledError("Run cancelled by operator")

    async def _fetch_stage(
        self,
        settings: RunSettings,
        store: ArtifactStore,
        existing: Dict[str, int],
        failures: RunFailures,
        metrics: RunMetrics,
        progress: RunProgress,
    ) -> List[FetchedFragment]:
        self._notify("fetch", existing)
        reuse = settings.skip_fetch and existing["fetch"] > 0
        if reuse:
            logger.info("Reusing %d fetched fragment(s); fetching only missing URLs", existing["fetch"])
        fetcher = ContentFetcher(store, settings.fetch, renderer=self.renderer, cancel_token=self.cancel_token)
        result = await fetcher.fetch(
            settings.urls, settings.chain, settings.chain_overrides, reuse_existing=reuse
        )
        failures.extend("fetch", result.errors)
        metrics.urls_scraped = len(result.items)
        metrics.urls_failed = len(result.errors)
        progress.urls_scraped = len(result.items)
        self.sink.progress(settings.run_id, progress)
        self._check_cancelled()
        if settings.urls and not result.items:
            raise StageFailedError("fetch", len(settings.urls), _messages(result.errors))
        return result.items

    async def _image_stage(
        self,
        settings: RunSettings,
        store: ArtifactStore,
        existing: Dict[str, int],
        fragments: List[FetchedFragment],
        failures: RunFailures,
        metrics: RunMetrics,
        progress: RunProgress,
    ) -> List[ImageRef]:
        self._notify("images", existing)
        if settings.skip_images and store.image_map_path.is_file():
            loaded = store.load_image_map()
            refs = loaded[0] if loaded else []
            logger.info("Reusing image rewrite map with %d image(s)", len(refs))
        else:
            downloader = self.downloader or RequestsDownloader(settings.fetch.user_agent)
            resolver = ImageResolver(
                store,
                settings.image_policy,
                downloader=downloader,
                cancel_token=self.cancel_token,
                upload_base_url=settings.upload_base_url,
                retry_base_delay=settings.fetch.retry_base_delay,
                now=self.now,
            )
            try:
                result = await resolver.resolve(fragments)
            finally:
                if isinstance(downloader, RequestsDownloader) and self.downloader is None:
                    downloader.close()
            failures.extend("images", result.errors)
            metrics.images_failed = len(result.errors)
            refs = result.items
        metrics.images_downloaded = len(refs)
        progress.images_downloaded = len(refs)
        self.sink.progress(settings.run_id, progress)
        self._check_cancelled()
        return refs

    async def _sanitize_stage(
        self,
        settings: RunSettings,
        store: ArtifactStore,
        existing: Dict[str, int],
        fragments: List[FetchedFragment],
        refs: List[ImageRef],
        failures: RunFailures,
        metrics: RunMetrics,
        progress: RunProgress,
    ) -> List[ProcessedFragment]:
        self._notify("sanitize", existing)
        reuse = settings.skip_sanitize and existing["sanitize"] > 0
        sanitizer = ContentSanitizer(store, settings, cancel_token=self.cancel_token)
        result = await asyncio.to_thread(sanitizer.process, fragments, refs, reuse)
        failures.extend("sanitize", result.errors)
        metrics.files_processed = len(result.items)
        metrics.files_failed = len(result.errors)
        metrics.posts_detected = sum(1 for p in result.items if p.content_type == "post")
        metrics.pages_detected = len(result.items) - metrics.posts_detected
        progress.files_processed = len(result.items)
        self.sink.progress(settings.run_id, progress)
        self._check_cancelled()
        if fragments and not result.items:
            raise StageFailedError("sanitize", len(fragments), _messages(result.errors))
        return result.items

    def _generate_stage(
        self,
        settings: RunSettings,
        store: ArtifactStore,
        existing: Dict[str, int],
        processed: List[ProcessedFragment],
        failures: RunFailures,
        summary: RunSummary,
    ) -> None:
        self._notify("generate", existing)
        if settings.skip_generate and existing["generate"] > 0:
            summary.import_files = [str(path) for path in store.import_files()]
            logger.info("Keeping %d existing import file(s)", len(summary.import_files))
            return
        builder = ImportFileBuilder(
            store,
            max_rows=settings.import_max_rows,
            max_bytes=settings.import_max_bytes,
            now=self.now,
        )
        try:
            _, stats = builder.build(processed)
        except GenerateError as exc:
            failures.extend("generate", [ItemFailure("import", str(exc))])
            raise StageFailedError("generate", len(processed), [str(exc)]) from exc
        summary.import_files = stats.files
        summary.skipped = stats.skipped


class RunHandle:
    """A started run: await it, or cancel it cooperatively."""

    def __init__(self, run_id: str, task: "asyncio.Task[RunSummary]", token: CancellationToken) -> None:
        self.run_id = run_id
        self.task = task
        self.token = token

    def cancel(self) -> None:
        """Stop issuing new work; in-flight items finish and the run ends ``failed``."""
        self.token.cancel()

    @property
    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> RunSummary:
        return await self.task


def start_run(
    request: RunRequest,
    config: MigrationConfig,
    sink: Optional[RunRecordSink] = None,
    **kwargs,
) -> RunHandle:
    """Schedule a run on the running event loop and return its handle."""
    token = kwargs.pop("cancel_token", None) or CancellationToken()
    pipeline = MigrationPipeline(config, sink=sink, cancel_token=token, **kwargs)
    request.run_id = request.run_id or new_run_id()
    task = asyncio.get_running_loop().create_task(pipeline.run(request))
    return RunHandle(request.run_id, task, token)


def load_resume_request(record: Dict) -> RunRequest:
    """Rebuild a request from a persisted run record so completed work is reused."""
    if not record or "request" not in record:
        raise MigrationError("Run record has no request to resume")
    request = RunRequest.from_dict(record["request"])
    request.run_id = record.get("runId") or request.run_id
    request.skip_fetch = True
    request.skip_sanitize = True
    request.skip_images = False
    request.skip_generate = False
    return request


async def resume_run(
    record_path: Path,
    config: MigrationConfig,
    sink: Optional[RunRecordSink] = None,
    **kwargs,
) -> RunSummary:
    store = ArtifactStore(config.output_root)
    record = store.read_json(Path(record_path))
    if record is None:
        raise MigrationError(f"Run record not found: {record_path}")
    request = load_resume_request(record)
    logger.info("Resuming run %s (%s)", request.run_id, record.get("state", "unknown"))
    pipeline = MigrationPipeline(config, sink=sink, **kwargs)
    return await pipeline.run(request)
