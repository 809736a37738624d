"""Backup engine facade.

Wires the watcher, scheduler, stores and publisher together and exposes the
inbound operations consumed by a transport (CLI, GUI bridge, ...). Every
operation that touches a category runs through the scheduler and returns a
``Future`` resolving to an ``OperationResult``; failures are reported as
results and notifications, never raised.
"""

import queue
from concurrent.futures import Future

from loguru import logger

from .errors import NotFound, PartialFailure, SourceMissing
from .generation_store import GenerationStore, validate_category
from .metadata_store import MetadataStore
from .models import (
    CategoryState,
    EngineConfig,
    Notification,
    OperationKind,
    OperationResult,
    OperationStatus,
    Settings,
    Severity,
)
from .monitor import FileMonitor, MonitorConfig
from .publisher import EventSink, StatePublisher
from .restore import RestoreCoordinator
from .scheduler import BackupScheduler
from .settings import SettingsCoordinator, SettingsStore

_TITLES = {
    OperationKind.BACKUP: "Backup created",
    OperationKind.RESTORE: "Restore complete",
    OperationKind.DELETE_SNAPSHOT: "Backup deleted",
    OperationKind.DELETE_CATEGORY: "All backups deleted",
    OperationKind.PRUNE: "Old backups removed",
}

_FAILURE_TITLES = {
    OperationKind.BACKUP: "Backup failed",
    OperationKind.RESTORE: "Restore failed",
    OperationKind.DELETE_SNAPSHOT: "Delete failed",
    OperationKind.DELETE_CATEGORY: "Delete failed",
    OperationKind.PRUNE: "Pruning failed",
    OperationKind.MEMO: "Memo not saved",
}


class BackupEngine:
    def __init__(self, config: EngineConfig, sink: EventSink | None = None, watch: bool = True):
        self.config = config
        self.watch = watch
        self.intents: queue.Queue = queue.Queue(maxsize=config.intent_queue_size)

        self.settings_store = SettingsStore(config.settings_path)
        self.metadata = MetadataStore(config.archive_root)
        self.generations = GenerationStore(
            config.archive_root, settings=self.get_settings, metadata=self.metadata
        )
        self.monitor = FileMonitor(self.intents, MonitorConfig.from_engine_config(config))
        self.restorer = RestoreCoordinator(self.generations, guard=self.monitor.suppressed)
        self.publisher = StatePublisher(self.generations, self.get_settings, sink)
        self.scheduler = BackupScheduler(
            backup=self._backup,
            on_result=self._report,
            change_count=self.monitor.change_count,
            intents=self.intents,
            max_workers=config.max_workers,
        )
        self.settings = SettingsCoordinator(
            self.settings_store,
            self.generations,
            self.monitor,
            self.scheduler,
            self.publisher,
            watch=watch,
        )
        self.monitor.on_layout_change = self.publisher.refresh
        self.monitor.on_watch_error = self._watch_error
        self._initialized = False
        self._closed = False

    def __enter__(self):
        self.initialize_engine()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def initialize_engine(self) -> None:
        """Load settings, start watching and broadcast the initial state.

        Only a watching engine sweeps incomplete snapshot copies; short-lived
        engines opened next to a running daemon must not touch its staging
        directories.
        """
        if self._closed:
            raise RuntimeError("Backup engine has been shut down")
        if not self._initialized:
            settings = self.settings.load()
            if self.watch:
                swept = self.generations.sweep_incomplete()
                if swept:
                    logger.info(f"Removed {swept} incomplete snapshot copies")
            self.scheduler.start()
            if self.watch and settings.watched_root is not None:
                self.monitor.start(settings.watched_root)
            self._initialized = True

        self.publisher.publish_settings()
        self.publisher.publish_categories()

    def shutdown(self) -> None:
        logger.info("Shutting down backup engine...")
        self.monitor.stop()
        self.scheduler.shutdown(wait=True)
        self._initialized = False
        self._closed = True

    def get_settings(self) -> Settings:
        return self.settings.current

    def get_state(self) -> list[CategoryState]:
        return self.publisher.compute_categories()

    def update_settings(
        self, path: str, max_generations: int | None = None, theme: str | None = None
    ) -> Settings:
        return self.settings.apply_settings(path, max_generations, theme)

    def request_backup(self, category: str) -> Future:
        return self.scheduler.submit_backup(category, is_auto=False)

    def request_restore(self, category: str, timestamp: str) -> Future:
        def work() -> OperationResult:
            snapshot = self.restorer.restore(category, timestamp)
            return self._result(
                OperationKind.RESTORE,
                category,
                f"{category} restored to {timestamp}",
                snapshot=snapshot,
            )

        return self.scheduler.submit(OperationKind.RESTORE, category, work)

    def delete_snapshot(self, category: str, timestamp: str) -> Future:
        def work() -> OperationResult:
            self.generations.delete_one(category, timestamp)
            return self._result(
                OperationKind.DELETE_SNAPSHOT, category, f"Deleted backup {timestamp} of {category}"
            )

        return self.scheduler.submit(OperationKind.DELETE_SNAPSHOT, category, work)

    def delete_category(self, category: str) -> Future:
        def work() -> OperationResult:
            self.generations.delete_all(category)
            return self._result(
                OperationKind.DELETE_CATEGORY, category, f"Deleted all backups of {category}"
            )

        return self.scheduler.submit(OperationKind.DELETE_CATEGORY, category, work)

    def set_memo(self, category: str, text: str) -> Future:
        def work() -> OperationResult:
            validate_category(category)
            self.metadata.set_memo(category, text)
            return self._result(OperationKind.MEMO, category, "Memo saved")

        return self.scheduler.submit(OperationKind.MEMO, category, work)

    def _backup(self, category: str, is_auto: bool) -> OperationResult:
        snapshot = self.generations.create(category, is_auto)
        kind = "Automatic" if is_auto else "Manual"
        return self._result(
            OperationKind.BACKUP,
            category,
            f"{kind} backup of {category} created ({snapshot.timestamp})",
            snapshot=snapshot,
        )

    @staticmethod
    def _result(kind, category, message, snapshot=None) -> OperationResult:
        return OperationResult(
            kind=kind,
            category=category,
            status=OperationStatus.OK,
            message=message,
            snapshot=snapshot,
        )

    def _report(self, result: OperationResult) -> None:
        """Turn a finished operation into a state broadcast and a user notification."""
        self.publisher.refresh()

        if result.status == OperationStatus.FAILED:
            if result.kind == OperationKind.BACKUP and result.error_kind == SourceMissing.kind:
                logger.info(f"Skipped {result.kind.value} of {result.category}: {result.message}")
                return
            title = _FAILURE_TITLES[result.kind]
            if result.error_kind == PartialFailure.kind:
                title = "Degraded state"
            elif result.error_kind == NotFound.kind:
                title = f"{title}: not found"
            self.publisher.notify(
                Notification(Severity.ERROR, title, result.message, result.category)
            )
            return

        if result.status == OperationStatus.COALESCED:
            self.publisher.notify(
                Notification(
                    Severity.INFO, "Backup up to date", result.message, result.category
                )
            )
            return

        if result.kind == OperationKind.MEMO:
            return
        if result.kind == OperationKind.PRUNE and not result.message:
            return
        severity = Severity.INFO if result.kind == OperationKind.PRUNE else Severity.SUCCESS
        self.publisher.notify(
            Notification(severity, _TITLES[result.kind], result.message, result.category)
        )

    def _watch_error(self, root, error: Exception) -> None:
        self.publisher.notify(
            Notification(
                Severity.ERROR,
                "Watching unavailable",
                f"Cannot watch {root}: {error}. Retrying until the folder appears.",
            )
        )
