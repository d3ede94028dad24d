"""Run record sinks and cancellation.

The surrounding run tracking store is a write-only collaborator: the
orchestrator pushes status transitions, progress snapshots and final
metrics into a :class:`RunRecordSink` and never reads them back, except
when resuming a run from its persisted JSON record.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from .models import RunProgress, RunRequest, RunState, RunSummary
from .storage import ArtifactStore

logger = logging.getLogger("wp_migrate")


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class CancellationToken:
    """Thread-safe flag flipped by an operator interrupt."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class RunRecordSink(Protocol):
    def started(self, run_id: str, request: RunRequest) -> None: ...

    def transition(self, run_id: str, state: RunState) -> None: ...

    def progress(self, run_id: str, progress: RunProgress) -> None: ...

    def finished(self, run_id: str, summary: RunSummary) -> None: ...


class LoggingRunSink:
    """Sink that only reports to the log."""

    def started(self, run_id: str, request: RunRequest) -> None:
        logger.info("Run %s started with %d URL(s)", run_id, len(request.urls))

    def transition(self, run_id: str, state: RunState) -> None:
        logger.info("Run %s -> %s", run_id, state.value)

    def progress(self, run_id: str, progress: RunProgress) -> None:
        logger.debug(
            "Run %s progress: scraped=%d images=%d processed=%d",
            run_id,
            progress.urls_scraped,
            progress.images_downloaded,
            progress.files_processed,
        )

    def finished(self, run_id: str, summary: RunSummary) -> None:
        metrics = summary.metrics
        logger.info(
            "Run %s %s in %.2fs (%d scraped, %d processed, %d error(s))",
            run_id,
            summary.state.value,
            metrics.total_duration_ms / 1000.0,
            metrics.urls_scraped,
            metrics.files_processed,
            metrics.error_count,
        )


class JsonRunRecordSink(LoggingRunSink):
    """Persist the run record as ``runs/<run_id>.json`` after every update."""

    def __init__(self, store: ArtifactStore) -> None:
        self.store = store
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _update(self, run_id: str, **changes: Any) -> None:
        with self._lock:
            record = self._records.setdefault(run_id, {"runId": run_id})
            record.update(changes)
            record["updatedAt"] = utc_now()
            self.store.save_run_record(run_id, record)

    def started(self, run_id: str, request: RunRequest) -> None:
        super().started(run_id, request)
        self._update(
            run_id,
            request=request.to_dict(),
            status=RunState.PENDING.status,
            state=RunState.PENDING.value,
            createdAt=utc_now(),
        )

    def transition(self, run_id: str, state: RunState) -> None:
        super().transition(run_id, state)
        self._update(run_id, status=state.status, state=state.value)

    def progress(self, run_id: str, progress: RunProgress) -> None:
        super().progress(run_id, progress)
        self._update(run_id, progress=progress.to_dict())

    def finished(self, run_id: str, summary: RunSummary) -> None:
        super().finished(run_id, summary)
        self._update(
            run_id,
            status=summary.state.status,
            state=summary.state.value,
            metrics=summary.metrics.to_dict(),
            failures=summary.failures.to_dict(),
            importFiles=summary.import_files,
            cause=summary.cause,
            completedAt=utc_now(),
        )


class MemoryRunSink(LoggingRunSink):
    """Collects every event in memory; useful for callers that poll."""

    def __init__(self) -> None:
        self.events: List[tuple] = []
        self.summary: Optional[RunSummary] = None

    def started(self, run_id: str, request: RunRequest) -> None:
        self.events.append(("started", run_id))

    def transition(self, run_id: str, state: RunState) -> None:
        self.events.append(("transition", state.value))

    def progress(self, run_id: str, progress: RunProgress) -> None:
        self.events.append(("progress", progress.to_dict()))

    def finished(self, run_id: str, summary: RunSummary) -> None:
        self.events.append(("finished", summary.state.value))
        self.summary = summary

    @property
    def states(self) -> List[str]:
        return [value for kind, value in self.events if kind == "transition"]
