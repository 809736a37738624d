import os
import threading
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .errors import ArchiveIOError
from .models import CategoryMeta, SnapshotRecord

META_FILE_NAME = "meta.json"


class MetadataStore:
    """Per-category ``meta.json`` sidecar kept next to the snapshot directories."""

    def __init__(self, archive_root: Path):
        self.archive_root = archive_root
        self._lock = threading.Lock()

    def meta_path(self, category: str) -> Path:
        return self.archive_root / category / META_FILE_NAME

    def load(self, category: str) -> CategoryMeta:
        with self._lock:
            return self._read(category)

    def update(self, category: str, mutate: Callable[[CategoryMeta], None]) -> CategoryMeta:
        with self._lock:
            meta = self._read(category)
            mutate(meta)
            self._write(category, meta)
            return meta

    def get_memo(self, category: str) -> str:
        return self.load(category).memo

    def set_memo(self, category: str, memo: str) -> None:
        def apply(meta: CategoryMeta):
            meta.memo = memo

        self.update(category, apply)
        logger.debug(f"Saved memo for {category} ({len(memo)} chars)")

    def record_snapshot(self, category: str, timestamp: str, is_auto: bool, created_at: datetime):
        def apply(meta: CategoryMeta):
            meta.snapshots[timestamp] = SnapshotRecord(is_auto=is_auto, created_at=created_at)

        self.update(category, apply)

    def forget_snapshots(self, category: str, timestamps: list[str]) -> None:
        if not timestamps:
            return

        def apply(meta: CategoryMeta):
            for timestamp in timestamps:
                meta.snapshots.pop(timestamp, None)
                if timestamp in meta.corrupted:
                    meta.corrupted.remove(timestamp)

        self.update(category, apply)

    def mark_corrupted(self, category: str, timestamp: str) -> None:
        def apply(meta: CategoryMeta):
            if timestamp not in meta.corrupted:
                meta.corrupted.append(timestamp)

        self.update(category, apply)
        logger.warning(f"Snapshot {category}/{timestamp} marked as corrupted")

    def set_degraded(self, category: str, degraded: bool) -> None:
        if not degraded and not self.meta_path(category).exists():
            return

        def apply(meta: CategoryMeta):
            meta.degraded = degraded

        self.update(category, apply)

    def delete(self, category: str) -> bool:
        with self._lock:
            path = self.meta_path(category)
            try:
                path.unlink()
            except FileNotFoundError:
                return False
            except OSError as e:
                logger.error(f"Failed to delete metadata for {category}: {e}")
                raise ArchiveIOError(f"Cannot delete metadata: {e}", category) from e
            logger.debug(f"Deleted metadata for {category}")
            return True

    def _read(self, category: str) -> CategoryMeta:
        path = self.meta_path(category)
        if not path.exists():
            return CategoryMeta()
        try:
            return CategoryMeta.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Failed to read metadata for {category}: {e}")
            return CategoryMeta()

    def _write(self, category: str, meta: CategoryMeta) -> None:
        path = self.meta_path(category)
        tmp_path = path.with_name(f".{META_FILE_NAME}.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(meta.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            logger.error(f"Failed to save metadata for {category}: {e}")
            raise ArchiveIOError(f"Cannot write metadata: {e}", category) from e
