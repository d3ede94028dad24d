"""Durable artifact store shared by the pipeline stages.

Layout under the output root::

    fetched/<key>.json             one fetched fragment per URL
    images/<digest>.<ext>          downloaded images
    images/image-mapping.json      persisted image rewrite map
    processed/<key>.json           one sanitized fragment per URL
    import/wordpress-import-*.csv  generated import files
    runs/<run_id>.json             persisted run records

Keys are derived from URLs, so concurrent writers never target the same
file. Every write goes to a temporary file in the destination directory
and is renamed into place, so an interrupted write never leaves a
truncated artifact behind.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .models import FetchedFragment, ImageRef, ItemFailure, ProcessedFragment
from .utils import artifact_key

logger = logging.getLogger("wp_migrate")

IMAGE_MAP_FILENAME = "image-mapping.json"
IMPORT_PREFIX = "wordpress-import-"


class ArtifactStore:
    """Filesystem-backed, overwrite-by-key artifact storage."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.fetched_dir = self.root / "fetched"
        self.images_dir = self.root / "images"
        self.processed_dir = self.root / "processed"
        self.import_dir = self.root / "import"
        self.runs_dir = self.root / "runs"

    @property
    def image_map_path(self) -> Path:
        return self.images_dir / IMAGE_MAP_FILENAME

    def write_bytes(self, path: Path, data: bytes) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return path

    def write_text(self, path: Path, text: str) -> Path:
        return self.write_bytes(path, text.encode("utf-8"))

    def write_json(self, path: Path, data: Any) -> Path:
        return self.write_text(path, json.dumps(data, indent=2, ensure_ascii=False))

    def read_json(self, path: Path) -> Optional[Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable artifact %s: %s", path, exc)
            return None

    # Fetched fragments

    def fragment_path(self, url: str) -> Path:
        return self.fetched_dir / f"{artifact_key(url)}.json"

    def save_fragment(self, fragment: FetchedFragment) -> Path:
        return self.write_json(self.fragment_path(fragment.source_url), fragment.to_dict())

    def load_fragment(self, url: str) -> Optional[FetchedFragment]:
        data = self.read_json(self.fragment_path(url))
        return FetchedFragment.from_dict(data) if data else None

    # Processed fragments

    def processed_path(self, url: str) -> Path:
        return self.processed_dir / f"{artifact_key(url)}.json"

    def save_processed(self, processed: ProcessedFragment) -> Path:
        return self.write_json(self.processed_path(processed.source_url), processed.to_dict())

    def load_processed(self, url: str) -> Optional[ProcessedFragment]:
        data = self.read_json(self.processed_path(url))
        return ProcessedFragment.from_dict(data) if data else None

    # Images

    def find_image(self, stem: str) -> Optional[Path]:
        if not self.images_dir.is_dir():
            return None
        for candidate in sorted(self.images_dir.glob(f"{stem}.*")):
            if candidate.suffix != ".tmp" and candidate.is_file():
                return candidate
        return None

    def save_image_map(
        self,
        refs: Iterable[ImageRef],
        errors: Iterable[ItemFailure],
        generated_at: str,
    ) -> Path:
        payload = {
            "generatedAt": generated_at,
            "images": [ref.to_dict() for ref in sorted(refs, key=lambda r: r.original_url)],
            "errors": [{"url": e.identity, "message": e.message} for e in errors],
        }
        return self.write_json(self.image_map_path, payload)

    def load_image_map(self) -> Optional[Tuple[List[ImageRef], List[ItemFailure]]]:
        data = self.read_json(self.image_map_path)
        if data is None:
            return None
        refs = [ImageRef.from_dict(item) for item in data.get("images", [])]
        errors = [ItemFailure(e.get("url", ""), e.get("message", "")) for e in data.get("errors", [])]
        return refs, errors

    # Import files

    def import_files(self) -> List[Path]:
        if not self.import_dir.is_dir():
            return []
        return sorted(self.import_dir.glob(f"{IMPORT_PREFIX}*.csv"))

    # Run records

    def run_record_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.json"

    def save_run_record(self, run_id: str, record: Dict[str, Any]) -> Path:
        return self.write_json(self.run_record_path(run_id), record)

    def load_run_record(self, run_id: str) -> Optional[Dict[str, Any]]:
        return self.read_json(self.run_record_path(run_id))

    def existing_counts(self, urls: Iterable[str]) -> Dict[str, int]:
        """Count artifacts that already exist for each stage of a URL set."""
        urls = list(dict.fromkeys(urls))
        image_map = self.load_image_map()
        return {
            "fetch": sum(1 for url in urls if self.fragment_path(url).is_file()),
            "images": len(image_map[0]) if image_map else 0,
            "sanitize": sum(1 for url in urls if self.processed_path(url).is_file()),
            "generate": len(self.import_files()),
        }
