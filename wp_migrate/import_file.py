"""WordPress import file generation (Really Simple CSV Importer layout)."""

from __future__ import annotations

import csv
import io
import logging
import re
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from bs4 import BeautifulSoup

from .content import has_body
from .errors import GenerateError
from .models import FileStats, ImportRecord, ProcessedFragment
from .storage import IMPORT_PREFIX, ArtifactStore
from .utils import slugify

logger = logging.getLogger("wp_migrate")

COLUMNS = (
    "post_type",
    "post_title",
    "post_date",
    "post_content",
    "source_url",
    "post_status",
    "post_name",
    "post_excerpt",
    "post_category",
)
EXCERPT_LENGTH = 150
POST_CATEGORY = "Imported Content"
WP_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_WP_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$")


def _last_segment(url: str) -> str:
    segments = [s for s in urlparse(url).path.split("/") if s]
    if not segments:
        return ""
    return re.sub(r"\.(html?|php|aspx?)$", "", segments[-1], flags=re.IGNORECASE)


def title_from_url(url: str) -> str:
    segment = _last_segment(url)
    if not segment:
        return urlparse(url).netloc or "Untitled"
    words = re.split(r"[-_]+", segment)
    return " ".join(word.capitalize() for word in words if word) or "Untitled"


def make_excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) <= length:
        return text
    return text[: length - 3].rstrip() + "..."


def build_record(processed: ProcessedFragment, generated_at: datetime) -> Optional[ImportRecord]:
    """Turn a processed fragment into an import row; ``None`` when the body is empty."""
    body = (processed.sanitized_html or "").strip()
    soup = BeautifulSoup(body, "html.parser")
    text = soup.get_text(" ", strip=True)
    if not body or not has_body(soup):
        return None
    title = processed.extracted_title or title_from_url(processed.source_url)
    date = processed.extracted_date
    if not date or not _WP_DATE_PATTERN.match(date):
        date = generated_at.strftime(WP_DATE_FORMAT)
    return ImportRecord(
        content_type=processed.content_type,
        title=title,
        date=date,
        body=body,
        source_url=processed.source_url,
        slug=slugify(_last_segment(processed.source_url) or title, fallback="imported"),
        excerpt=make_excerpt(text),
        category=POST_CATEGORY if processed.content_type == "post" else "",
    )


def record_row(record: ImportRecord) -> List[str]:
    return [
        record.content_type,
        record.title,
        record.date,
        record.body,
        record.source_url,
        record.status,
        record.slug,
        record.excerpt,
        record.category,
    ]


def _encode_rows(rows: Sequence[Sequence[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue()


class ImportFileBuilder:
    """Write sorted import records to one or more dated CSV files."""

    def __init__(
        self,
        store: ArtifactStore,
        max_rows: int = 1000,
        max_bytes: int = 50 * 1024 * 1024,
        now: Optional[datetime] = None,
    ) -> None:
        self.store = store
        self.max_rows = max(1, max_rows)
        self.max_bytes = max_bytes
        self.now = now

    def _chunks(self, records: Sequence[ImportRecord]) -> List[List[str]]:
        header_size = len(_encode_rows([COLUMNS]).encode("utf-8"))
        chunks: List[List[str]] = []
        current: List[str] = []
        current_bytes = header_size
        for record in records:
            encoded = _encode_rows([record_row(record)])
            size = len(encoded.encode("utf-8"))
            if current and (len(current) >= self.max_rows or current_bytes + size > self.max_bytes):
                chunks.append(current)
                current, current_bytes = [], header_size
            current.append(encoded)
            current_bytes += size
        if current:
            chunks.append(current)
        return chunks

    def _file_names(self, generated_at: datetime, parts: int) -> List[Path]:
        base = f"{IMPORT_PREFIX}{generated_at.strftime('%Y-%m-%d')}"
        existing = {path.name for path in self.store.import_files()}

        def taken(stem: str) -> bool:
            return any(name == f"{stem}.csv" or name.startswith(f"{stem}-part") for name in existing)

        stem = base
        run = 2
        while taken(stem):
            stem = f"{base}-run{run}"
            run += 1
        if parts == 1:
            return [self.store.import_dir / f"{stem}.csv"]
        return [self.store.import_dir / f"{stem}-part{index}.csv" for index in range(1, parts + 1)]

    def build(self, processed: Sequence[ProcessedFragment]) -> Tuple[List[ImportRecord], FileStats]:
        generated_at = self.now or datetime.now()
        stats = FileStats()
        records: List[ImportRecord] = []
        for item in sorted(processed, key=lambda p: p.source_url):
            record = build_record(item, generated_at)
            if record is None:
                logger.warning("Skipping %s: empty body", item.source_url)
                stats.skipped.append(item.source_url)
                continue
            records.append(record)
        if not records:
            raise GenerateError(
                f"No valid records to write ({len(stats.skipped)} skipped with empty bodies)"
            )

        header = _encode_rows([COLUMNS])
        chunks = self._chunks(records)
        for path, rows in zip(self._file_names(generated_at, len(chunks)), chunks):
            text = header + "".join(rows)
            self.store.write_text(path, text)
            stats.files.append(str(path))
            stats.bytes_written += len(text.encode("utf-8"))
            logger.info("Wrote %d record(s) to %s", len(rows), path)

        stats.rows = len(records)
        stats.posts = sum(1 for r in records if r.content_type == "post")
        stats.pages = stats.rows - stats.posts
        self.store.write_json(
            self.store.import_dir / "generation-summary.json",
            {"generatedAt": generated_at.isoformat(timespec="seconds"), **stats.to_dict()},
        )
        return records, stats


def read_import_file(path: Path) -> List[dict]:
    """Read a generated import file back into dictionaries."""
    with path.open(newline="", encoding="utf-8") as handle:
        return list(csv.DictReader(handle))
