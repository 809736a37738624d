import threading
from collections.abc import Callable

from loguru import logger

from .generation_store import GenerationStore
from .models import (
    CategoriesDocument,
    CategoryState,
    Notification,
    Settings,
    SettingsDocument,
    Severity,
)


class EventSink:
    """Receiver of the engine's outbound broadcasts. Methods must not block for long."""

    def settings_changed(self, document: SettingsDocument) -> None:
        pass

    def categories_changed(self, document: CategoriesDocument) -> None:
        pass

    def notify(self, notification: Notification) -> None:
        pass


class LoggingSink(EventSink):
    def settings_changed(self, document: SettingsDocument) -> None:
        logger.debug(f"Settings broadcast #{document.revision}: {document.settings}")

    def categories_changed(self, document: CategoriesDocument) -> None:
        logger.debug(
            f"Categories broadcast #{document.revision}: {len(document.categories)} categories"
        )

    def notify(self, notification: Notification) -> None:
        message = f"[{notification.title}] {notification.message}"
        if notification.severity == Severity.ERROR:
            logger.error(message)
        else:
            logger.info(message)


class CallbackSink(EventSink):
    def __init__(
        self,
        on_settings: Callable[[SettingsDocument], None] | None = None,
        on_categories: Callable[[CategoriesDocument], None] | None = None,
        on_notify: Callable[[Notification], None] | None = None,
    ):
        self.on_settings = on_settings
        self.on_categories = on_categories
        self.on_notify = on_notify

    def settings_changed(self, document: SettingsDocument) -> None:
        if self.on_settings:
            self.on_settings(document)

    def categories_changed(self, document: CategoriesDocument) -> None:
        if self.on_categories:
            self.on_categories(document)

    def notify(self, notification: Notification) -> None:
        if self.on_notify:
            self.on_notify(notification)


class CompositeSink(EventSink):
    def __init__(self, *sinks: EventSink):
        self.sinks = list(sinks)

    def settings_changed(self, document: SettingsDocument) -> None:
        for sink in self.sinks:
            sink.settings_changed(document)

    def categories_changed(self, document: CategoriesDocument) -> None:
        for sink in self.sinks:
            sink.categories_changed(document)

    def notify(self, notification: Notification) -> None:
        for sink in self.sinks:
            sink.notify(notification)


class StatePublisher:
    """Computes the full externally visible state and broadcasts it.

    Every broadcast is a complete document carrying a revision number that
    increases per document type, so a consumer can always replace what it
    holds with the latest broadcast.
    """

    def __init__(
        self,
        store: GenerationStore,
        settings: Callable[[], Settings],
        sink: EventSink | None = None,
    ):
        self.store = store
        self._settings = settings
        self.sink = sink or EventSink()
        self._lock = threading.Lock()
        self._settings_revision = 0
        self._categories_revision = 0

    def compute_categories(self) -> list[CategoryState]:
        root = self._settings().watched_root
        states: dict[str, CategoryState] = {}

        for name in self.store.categories():
            try:
                meta = self.store.metadata.load(name)
                snapshots = self.store.list_snapshots(name, meta)
                states[name] = CategoryState(
                    name=name,
                    memo=meta.memo,
                    snapshots=snapshots,
                    latest=snapshots[0].timestamp if snapshots else None,
                    source_exists=bool(root and (root / name).is_dir()),
                    degraded=meta.degraded,
                )
            except OSError as e:
                logger.error(f"Failed to scan backups of {name}: {e}")

        if root and root.is_dir():
            try:
                for entry in root.iterdir():
                    if entry.is_dir() and not entry.name.startswith(".") and entry.name not in states:
                        states[entry.name] = CategoryState(name=entry.name, source_exists=True)
            except OSError as e:
                logger.error(f"Failed to scan {root}: {e}")

        return [states[name] for name in sorted(states)]

    def get_category(self, category: str) -> CategoryState | None:
        for state in self.compute_categories():
            if state.name == category:
                return state
        return None

    def publish_settings(self) -> SettingsDocument:
        with self._lock:
            self._settings_revision += 1
            document = SettingsDocument(
                revision=self._settings_revision, settings=self._settings().model_copy()
            )
            self._send(self.sink.settings_changed, document)
            return document

    def publish_categories(self) -> CategoriesDocument:
        with self._lock:
            self._categories_revision += 1
            document = CategoriesDocument(
                revision=self._categories_revision, categories=self.compute_categories()
            )
            self._send(self.sink.categories_changed, document)
            return document

    def refresh(self) -> None:
        self.publish_categories()

    def notify(self, notification: Notification) -> None:
        self._send(self.sink.notify, notification)

    @staticmethod
    def _send(method, payload) -> None:
        try:
            method(payload)
        except Exception as e:
            logger.error(f"Event sink failed: {e}")
