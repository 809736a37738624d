import contextlib
import os
import secrets
import shutil
from collections.abc import Callable
from contextlib import AbstractContextManager
from pathlib import Path

from loguru import logger

from .errors import ArchiveIOError, PartialFailure, SourceLocked, SourceMissing
from .generation_store import GenerationStore, remove_tree
from .models import Snapshot


def _no_guard(category: str) -> AbstractContextManager:
    return contextlib.nullcontext()


class RestoreCoordinator:
    """Replaces a category's live folder with the content of one snapshot.

    The snapshot is staged beside the live folder first. The live folder is
    then moved aside, the staged copy moved into its place, and the old
    content removed permanently. Until the final removal every step can be
    rolled back; only a failed rollback leaves the category degraded.
    """

    def __init__(
        self,
        store: GenerationStore,
        guard: Callable[[str], AbstractContextManager] = _no_guard,
    ):
        self.store = store
        self.metadata = store.metadata
        self._guard = guard

    def restore(self, category: str, timestamp: str) -> Snapshot:
        snapshot = self.store.get_snapshot(category, timestamp)
        if snapshot.corrupted:
            raise PartialFailure(
                f"Snapshot {timestamp} of {category} is corrupted and cannot be restored",
                category,
            )

        live = self.store.source_path(category)
        if live is None or not live.parent.is_dir():
            raise SourceMissing(f"Watched folder for {category} is not available", category)

        with self._guard(category):
            staging = self._stage(category, snapshot, live.parent)
            self._swap(category, staging, live)

        self._set_degraded(category, False)
        logger.info(f"Restored {category} to {timestamp}")
        return snapshot

    def _stage(self, category: str, snapshot: Snapshot, root: Path) -> Path:
        staging = root / f".{category}.restore-{secrets.token_hex(4)}"
        try:
            shutil.copytree(snapshot.path, staging, symlinks=True)
        except OSError as e:
            self._discard(staging)
            logger.error(f"Staging {category}/{snapshot.timestamp} failed: {e}")
            raise ArchiveIOError(f"Could not stage snapshot: {e}", category) from e
        return staging

    def _swap(self, category: str, staging: Path, live: Path) -> None:
        aside = None
        if live.exists():
            aside = live.parent / f".{category}.old-{secrets.token_hex(4)}"
            try:
                os.rename(live, aside)
            except OSError as e:
                self._discard(staging)
                logger.warning(f"Live folder of {category} is locked: {e}")
                raise SourceLocked(f"{category} is in use and cannot be replaced", category) from e

        try:
            os.rename(staging, live)
        except OSError as e:
            if aside is not None:
                try:
                    os.rename(aside, live)
                except OSError as rollback_error:
                    logger.error(
                        f"Rollback of {category} failed, original content left at {aside}: "
                        f"{rollback_error}"
                    )
                    self._set_degraded(category, True)
                    raise PartialFailure(
                        f"Restore of {category} failed midway; live folder is missing "
                        f"(original content kept at {aside.name})",
                        category,
                    ) from e
            self._discard(staging)
            raise SourceLocked(f"{category} could not be replaced: {e}", category) from e

        # Permanent removal; the replaced content is never sent to a trash folder
        if aside is not None and not remove_tree(aside):
            logger.error(f"Replaced content of {category} could not be fully removed: {aside}")

    def _set_degraded(self, category: str, degraded: bool) -> None:
        try:
            self.metadata.set_degraded(category, degraded)
        except ArchiveIOError as e:
            logger.error(f"Cannot record degraded state of {category}: {e}")

    @staticmethod
    def _discard(path: Path) -> None:
        if path.exists() and not remove_tree(path):
            logger.error(f"Left staging folder behind at {path}")
