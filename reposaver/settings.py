import os
import threading
from concurrent.futures import Future, wait
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from .errors import ArchiveIOError
from .generation_store import GenerationStore
from .models import OperationKind, OperationResult, OperationStatus, Settings, clamp_generations
from .monitor import FileMonitor
from .publisher import StatePublisher
from .scheduler import BackupScheduler


class SettingsStore:
    """Durable JSON record of the process-wide settings."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Settings:
        if not self.path.exists():
            defaults = Settings()
            try:
                self.save(defaults)
            except ArchiveIOError as e:
                logger.warning(f"Could not write default settings: {e}")
            return defaults

        try:
            return Settings.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            logger.error(f"Invalid settings file {self.path}, using defaults: {e}")
            return Settings()

    def save(self, settings: Settings) -> None:
        tmp_path = self.path.with_name(f".{self.path.name}.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.error(f"Failed to save settings to {self.path}: {e}")
            raise ArchiveIOError(f"Cannot save settings: {e}") from e


class SettingsCoordinator:
    """Owns the watched root and retention limit and applies changes to them."""

    def __init__(
        self,
        store: SettingsStore,
        generations: GenerationStore,
        monitor: FileMonitor,
        scheduler: BackupScheduler,
        publisher: StatePublisher,
        watch: bool = True,
    ):
        self.store = store
        self.generations = generations
        self.monitor = monitor
        self.scheduler = scheduler
        self.publisher = publisher
        self.watch = watch
        self._settings = Settings()
        self._lock = threading.Lock()
        self.last_prunes: list[Future] = []

    @property
    def current(self) -> Settings:
        return self._settings

    def load(self) -> Settings:
        with self._lock:
            self._settings = self.store.load()
            logger.info(
                f"Loaded settings: root={self._settings.repo_save_path or '(none)'}, "
                f"max_generations={self._settings.max_generations}"
            )
            return self._settings

    def apply_settings(
        self, path: str, max_generations: int | None = None, theme: str | None = None
    ) -> Settings:
        with self._lock:
            old = self._settings
            new = Settings(
                repo_save_path=path,
                max_generations=clamp_generations(
                    old.max_generations if max_generations is None else max_generations
                ),
                theme=theme or old.theme,
            )
            self.store.save(new)

            root_changed = new.watched_root != old.watched_root
            if root_changed:
                # The old subscription is fully torn down before the new root is visible
                self.monitor.stop()
            self._settings = new
            if root_changed and self.watch and new.watched_root is not None:
                self.monitor.start(new.watched_root)

            self.last_prunes = []
            if new.max_generations < old.max_generations:
                # Pruning completes before the new limit is reported back
                self.last_prunes = self._prune_all(new.max_generations)
                wait(self.last_prunes)

            logger.info(
                f"Settings applied: root={new.repo_save_path or '(none)'}, "
                f"max_generations={new.max_generations}, theme={new.theme}"
            )

        self.publisher.publish_settings()
        self.publisher.publish_categories()
        return new

    def _prune_all(self, limit: int) -> list[Future]:
        futures = []
        for category in self.generations.categories():
            futures.append(
                self.scheduler.submit(
                    OperationKind.PRUNE,
                    category,
                    lambda category=category: self._prune(category, limit),
                )
            )
        return futures

    def _prune(self, category: str, limit: int) -> OperationResult:
        removed = self.generations.prune(category, limit)
        return OperationResult(
            kind=OperationKind.PRUNE,
            category=category,
            status=OperationStatus.OK,
            message=f"Removed {len(removed)} old snapshots" if removed else "",
        )
