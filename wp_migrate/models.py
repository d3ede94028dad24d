"""Data models used throughout the migration pipeline."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from .profiles import Discriminators, SiteProfile

STAGES = ("fetch", "images", "sanitize", "generate")


class RunState(str, Enum):
    PENDING = "pending"
    FETCHING = "fetching"
    IMAGING = "imaging"
    PROCESSING = "processing"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def status(self) -> str:
        """Coarse status reported to the run record sink."""
        if self in (RunState.PENDING, RunState.COMPLETED, RunState.FAILED):
            return self.value
        return "running"


def _from_dict(cls, data: Dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class FetchedFragment:
    """Rendered page and the content subtree extracted from it."""

    source_url: str
    raw_html: str
    content_html: str
    fetched_at: str
    final_url: Optional[str] = None
    matched_selector: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FetchedFragment":
        return _from_dict(cls, data)


@dataclass
class ImageRef:
    """One unique downloaded image and where it will be published."""

    original_url: str
    local_path: str
    new_public_url: str
    format: str
    bytes: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRef":
        return _from_dict(cls, data)


@dataclass
class ProcessedFragment:
    """Sanitized, classified fragment ready for the import file."""

    source_url: str
    sanitized_html: str
    content_type: str
    extracted_title: Optional[str]
    extracted_date: Optional[str]
    size_reduction_pct: float
    classification_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProcessedFragment":
        return _from_dict(cls, data)


@dataclass
class ImportRecord:
    """One row of the generated import file."""

    content_type: str
    title: str
    date: str
    body: str
    source_url: str
    status: str = "publish"
    slug: str = ""
    excerpt: str = ""
    category: str = ""


@dataclass
class FileStats:
    """What the import file builder wrote."""

    files: List[str] = field(default_factory=list)
    rows: int = 0
    posts: int = 0
    pages: int = 0
    skipped: List[str] = field(default_factory=list)
    bytes_written: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ItemFailure:
    identity: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"identity": self.identity, "message": self.message}


@dataclass
class StageResult:
    """Outputs and per-item failures of one stage invocation."""

    items: List[Any] = field(default_factory=list)
    errors: List[ItemFailure] = field(default_factory=list)


@dataclass
class RunFailures:
    """Append-only failure ledger for a run, grouped by stage."""

    fetch: List[ItemFailure] = field(default_factory=list)
    images: List[ItemFailure] = field(default_factory=list)
    sanitize: List[ItemFailure] = field(default_factory=list)
    generate: List[ItemFailure] = field(default_factory=list)

    def extend(self, stage: str, failures: List[ItemFailure]) -> None:
        getattr(self, stage).extend(failures)

    @property
    def total(self) -> int:
        return sum(len(getattr(self, stage)) for stage in STAGES)

    def to_dict(self) -> Dict[str, List[Dict[str, str]]]:
        return {stage: [f.to_dict() for f in getattr(self, stage)] for stage in STAGES}


@dataclass
class RunRequest:
    """Fully decided inputs for one run; nothing is asked mid-run."""

    urls: List[str]
    profile: Optional[SiteProfile] = None
    content_type: Optional[str] = None
    url_types: Dict[str, str] = field(default_factory=dict)
    bypass_images: bool = False
    custom_selectors: Optional[Discriminators] = None
    custom_remove_selectors: List[str] = field(default_factory=list)
    skip_fetch: bool = False
    skip_images: bool = False
    skip_sanitize: bool = False
    skip_generate: bool = False
    run_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "urls": list(self.urls),
            "profile": self.profile.to_dict() if self.profile else None,
            "contentType": self.content_type,
            "urlTypes": dict(self.url_types),
            "bypassImages": self.bypass_images,
            "customSelectors": self.custom_selectors.model_dump() if self.custom_selectors else None,
            "customRemoveSelectors": list(self.custom_remove_selectors),
            "skipFetch": self.skip_fetch,
            "skipImages": self.skip_images,
            "skipSanitize": self.skip_sanitize,
            "skipGenerate": self.skip_generate,
            "runId": self.run_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunRequest":
        profile = data.get("profile")
        selectors = data.get("customSelectors")
        return cls(
            urls=list(data.get("urls", [])),
            profile=SiteProfile.model_validate(profile) if profile else None,
            content_type=data.get("contentType"),
            url_types=dict(data.get("urlTypes") or {}),
            bypass_images=bool(data.get("bypassImages", False)),
            custom_selectors=Discriminators.model_validate(selectors) if selectors else None,
            custom_remove_selectors=list(data.get("customRemoveSelectors") or []),
            skip_fetch=bool(data.get("skipFetch", False)),
            skip_images=bool(data.get("skipImages", False)),
            skip_sanitize=bool(data.get("skipSanitize", False)),
            skip_generate=bool(data.get("skipGenerate", False)),
            run_id=data.get("runId"),
        )


@dataclass
class RunProgress:
    """Progress snapshot polled by the run tracking store."""

    stage: str = RunState.PENDING.value
    urls_scraped: int = 0
    images_downloaded: int = 0
    files_processed: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "urlsScraped": self.urls_scraped,
            "imagesDownloaded": self.images_downloaded,
            "filesProcessed": self.files_processed,
        }


@dataclass
class RunMetrics:
    urls_scraped: int = 0
    urls_failed: int = 0
    images_downloaded: int = 0
    images_failed: int = 0
    files_processed: int = 0
    files_failed: int = 0
    posts_detected: int = 0
    pages_detected: int = 0
    total_duration_ms: int = 0
    error_count: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "urlsScraped": self.urls_scraped,
            "urlsFailed": self.urls_failed,
            "imagesDownloaded": self.images_downloaded,
            "imagesFailed": self.images_failed,
            "filesProcessed": self.files_processed,
            "filesFailed": self.files_failed,
            "postsDetected": self.posts_detected,
            "pagesDetected": self.pages_detected,
            "totalDurationMs": self.total_duration_ms,
            "errorCount": self.error_count,
        }


@dataclass
class RunSummary:
    """Terminal report of a run, including every failed item."""

    run_id: str
    state: RunState
    metrics: RunMetrics
    failures: RunFailures
    import_files: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    cause: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "state": self.state.value,
            "metrics": self.metrics.to_dict(),
            "failures": self.failures.to_dict(),
            "importFiles": list(self.import_files),
            "skipped": list(self.skipped),
            "cause": self.cause,
        }
