import os
import secrets
import shutil
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from .clock import TimestampSource, is_snapshot_id, parse_snapshot_id
from .errors import ArchiveIOError, NotFound, PartialFailure, SourceMissing
from .metadata_store import MetadataStore
from .models import CategoryMeta, Settings, Snapshot, clamp_generations

INCOMING_PREFIX = ".incoming-"


def validate_category(category: str) -> str:
    if (
        not category
        or category in (".", "..")
        or category.startswith(".")
        or "/" in category
        or "\\" in category
    ):
        raise NotFound(f"Invalid category name: {category!r}", category)
    return category


def remove_tree(path: Path) -> bool:
    """Permanently delete a directory tree; True when nothing is left behind."""
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Cannot fully remove {path}: {e}")
    return not path.exists()


class GenerationStore:
    """Owns the on-disk layout of every category's snapshots.

    Layout::

        <archive_root>/<category>/meta.json
        <archive_root>/<category>/<YYYYMMDD_HHMMSS>[_NN]/...

    New snapshots are copied into a hidden ``.incoming-*`` directory first and
    renamed into place once the copy is complete, so a crash never leaves a
    partially copied snapshot under a valid identifier.
    """

    def __init__(
        self,
        archive_root: Path,
        settings: Callable[[], Settings],
        metadata: MetadataStore | None = None,
        clock: TimestampSource | None = None,
    ):
        self.archive_root = archive_root
        self.archive_root.mkdir(parents=True, exist_ok=True)
        self._settings = settings
        self.metadata = metadata or MetadataStore(archive_root)
        self.clock = clock or TimestampSource()

    def category_dir(self, category: str) -> Path:
        return self.archive_root / validate_category(category)

    def source_path(self, category: str) -> Path | None:
        root = self._settings().watched_root
        return root / validate_category(category) if root else None

    def categories(self) -> list[str]:
        if not self.archive_root.exists():
            return []
        return sorted(
            entry.name
            for entry in self.archive_root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def snapshot_names(self, category: str) -> list[str]:
        """Snapshot identifiers of a category, oldest first."""
        folder = self.category_dir(category)
        if not folder.is_dir():
            return []
        return sorted(
            entry.name for entry in folder.iterdir() if entry.is_dir() and is_snapshot_id(entry.name)
        )

    def list_snapshots(self, category: str, meta: CategoryMeta | None = None) -> list[Snapshot]:
        """Snapshots of a category, newest first."""
        if meta is None:
            meta = self.metadata.load(category)
        folder = self.category_dir(category)
        return [
            self._snapshot(folder, name, meta) for name in reversed(self.snapshot_names(category))
        ]

    def get_snapshot(self, category: str, timestamp: str) -> Snapshot:
        folder = self.category_dir(category)
        if not is_snapshot_id(timestamp) or not (folder / timestamp).is_dir():
            raise NotFound(f"No snapshot {timestamp} in {category}", category)
        return self._snapshot(folder, timestamp, self.metadata.load(category))

    def create(self, category: str, is_auto: bool) -> Snapshot:
        settings = self._settings()
        source = self.source_path(category)
        if source is None or not source.is_dir():
            raise SourceMissing(f"Source folder for {category} does not exist", category)

        folder = self.category_dir(category)
        folder.mkdir(parents=True, exist_ok=True)

        timestamp = self.clock.next_id(category, self.snapshot_names(category))
        staging = folder / f"{INCOMING_PREFIX}{timestamp}-{secrets.token_hex(4)}"
        target = folder / timestamp

        logger.info(f"Creating {'auto' if is_auto else 'manual'} snapshot {category}/{timestamp}")
        try:
            shutil.copytree(source, staging, symlinks=True)
            os.rename(staging, target)
        except OSError as e:
            self._discard(staging)
            if not source.is_dir():
                raise SourceMissing(
                    f"Source folder for {category} disappeared during copy", category
                ) from e
            logger.error(f"Snapshot {category}/{timestamp} failed: {e}")
            raise ArchiveIOError(f"Copy failed: {e}", category) from e

        created_at = parse_snapshot_id(timestamp)
        try:
            self.metadata.record_snapshot(category, timestamp, is_auto, created_at)
        except ArchiveIOError as e:
            logger.error(f"Snapshot {category}/{timestamp} kept without metadata: {e}")

        removed = self.prune(category, settings.max_generations)
        if removed:
            logger.info(f"Retention removed {len(removed)} old snapshots of {category}")

        return Snapshot(
            timestamp=timestamp,
            is_auto=is_auto,
            created_at=created_at,
            path=target,
        )

    def prune(self, category: str, limit: int) -> list[str]:
        """Delete the oldest snapshots beyond ``limit``; failures are logged only."""
        limit = clamp_generations(limit)
        names = self.snapshot_names(category)
        excess = len(names) - limit
        if excess <= 0:
            return []

        folder = self.category_dir(category)
        removed = []
        for name in names[:excess]:
            if remove_tree(folder / name):
                logger.debug(f"Pruned snapshot {category}/{name}")
                removed.append(name)
            else:
                logger.error(f"Pruning {category}/{name} failed, snapshot left corrupted")
                self._mark_corrupted(category, name)

        try:
            self.metadata.forget_snapshots(category, removed)
        except ArchiveIOError as e:
            logger.error(f"Failed to update metadata after pruning {category}: {e}")
        return removed

    def delete_one(self, category: str, timestamp: str) -> None:
        folder = self.category_dir(category)
        target = folder / timestamp
        if not is_snapshot_id(timestamp) or not target.is_dir():
            raise NotFound(f"No snapshot {timestamp} in {category}", category)

        if not remove_tree(target):
            self._mark_corrupted(category, timestamp)
            raise PartialFailure(
                f"Snapshot {timestamp} of {category} was only partially deleted", category
            )

        self.metadata.forget_snapshots(category, [timestamp])
        logger.info(f"Deleted snapshot {category}/{timestamp}")

        if not self.snapshot_names(category) and not self.metadata.get_memo(category):
            self.metadata.delete(category)
            remove_tree(folder)

    def delete_all(self, category: str) -> None:
        folder = self.category_dir(category)
        if not folder.is_dir():
            raise NotFound(f"No backups for {category}", category)

        if not remove_tree(folder):
            remaining = self.snapshot_names(category)
            for name in remaining:
                self._mark_corrupted(category, name)
            raise PartialFailure(
                f"Backups of {category} were only partially deleted "
                f"({len(remaining)} snapshots remain)",
                category,
            )
        logger.info(f"Deleted all backups of {category}")

    def sweep_incomplete(self) -> int:
        """Remove copies left behind by an interrupted create."""
        swept = 0
        for category in self.categories():
            for entry in self.category_dir(category).iterdir():
                if entry.is_dir() and entry.name.startswith(INCOMING_PREFIX):
                    logger.warning(f"Removing incomplete snapshot copy {entry}")
                    if remove_tree(entry):
                        swept += 1
        return swept

    def _mark_corrupted(self, category: str, timestamp: str) -> None:
        try:
            self.metadata.mark_corrupted(category, timestamp)
        except ArchiveIOError as e:
            logger.error(f"Cannot record corrupted snapshot {category}/{timestamp}: {e}")

    def _discard(self, path: Path) -> None:
        if path.exists() and not remove_tree(path):
            logger.error(f"Left incomplete copy at {path}")

    @staticmethod
    def _snapshot(folder: Path, name: str, meta: CategoryMeta) -> Snapshot:
        record = meta.snapshots.get(name)
        return Snapshot(
            timestamp=name,
            is_auto=record.is_auto if record else False,
            corrupted=name in meta.corrupted,
            created_at=record.created_at if record else parse_snapshot_id(name),
            path=folder / name,
        )
