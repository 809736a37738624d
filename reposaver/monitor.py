import queue
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePath

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .models import BackupIntent, EngineConfig


@dataclass
class MonitorConfig:
    debounce_seconds: float = 1.0  # Quiet time after the last change before a backup is requested
    restore_grace_seconds: float = 1.0  # Events ignored for this long after a restore
    probe_initial_seconds: float = 1.0
    probe_max_seconds: float = 60.0
    tick_seconds: float = 0.1
    ignore_patterns: set[str] = field(
        default_factory=lambda: {"*.tmp", "*.swp", ".DS_Store", "Thumbs.db"}
    )

    @classmethod
    def from_engine_config(cls, config: EngineConfig) -> "MonitorConfig":
        return cls(
            debounce_seconds=config.debounce_seconds,
            restore_grace_seconds=config.restore_grace_seconds,
            probe_initial_seconds=config.probe_initial_seconds,
            probe_max_seconds=config.probe_max_seconds,
            tick_seconds=min(0.25, max(0.01, config.debounce_seconds / 4)),
            ignore_patterns=set(config.ignore_patterns),
        )


class SaveEventHandler(FileSystemEventHandler):
    def __init__(self, monitor: "FileMonitor"):
        self.monitor = monitor

    def on_any_event(self, event: FileSystemEvent):
        if event.event_type in ("opened", "closed", "closed_no_write"):
            return

        paths = [event.src_path]
        dest_path = getattr(event, "dest_path", "")
        if dest_path:
            paths.append(dest_path)

        for raw_path in paths:
            if isinstance(raw_path, bytes):
                raw_path = raw_path.decode(errors="replace")
            self.monitor._record_change(Path(raw_path), event.event_type, event.is_directory)


class FileMonitor:
    """Watches the save root and turns bursts of changes into backup intents.

    Every change is attributed to the immediate child folder of the root that
    contains it. A category's window restarts on each change; once it has
    been quiet for ``debounce_seconds`` one auto intent is put on the intent
    queue. The queue is drained by the scheduler on its own thread.
    """

    def __init__(
        self,
        intents: queue.Queue,
        config: MonitorConfig | None = None,
        observer_factory: Callable[[], Observer] = Observer,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.intents = intents
        self.config = config or MonitorConfig()
        self._observer_factory = observer_factory
        self._clock = clock

        self.root: Path | None = None
        self.observer = None
        self.handler = SaveEventHandler(self)
        self._pending: dict[str, float] = {}
        self._suppressed: dict[str, float | None] = {}
        self._change_counts: dict[str, int] = {}
        self._lock = threading.RLock()
        self._lifecycle_lock = threading.Lock()
        self._monitor_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._subscribed = False
        self._resubscribe = False
        self._layout_dirty = False
        self._error_reported = False
        self._probe_delay = self.config.probe_initial_seconds
        self._next_probe = 0.0

        # Callbacks
        self.on_layout_change: Callable[[], None] | None = None
        self.on_watch_error: Callable[[Path, Exception], None] | None = None

    @property
    def running(self) -> bool:
        return self._monitor_thread is not None and self._monitor_thread.is_alive()

    @property
    def subscribed(self) -> bool:
        return self._subscribed

    def start(self, root: Path) -> None:
        with self._lifecycle_lock:
            if self.running and self.root == root:
                return
            if self.running:
                self._stop_locked()

            logger.info(f"Starting file monitor on {root}")
            self.root = root
            self._stop_event.clear()
            self._probe_delay = self.config.probe_initial_seconds
            self._next_probe = 0.0
            self._error_reported = False
            self._subscribe()

            self._monitor_thread = threading.Thread(
                target=self._monitor_loop, name="reposaver-monitor", daemon=True
            )
            self._monitor_thread.start()

    def stop(self) -> None:
        with self._lifecycle_lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        if not self.running and self.observer is None:
            return

        logger.info("Stopping file monitor...")
        self._stop_event.set()
        if self._monitor_thread and self._monitor_thread.is_alive():
            self._monitor_thread.join(timeout=5.0)
        self._monitor_thread = None
        self._unsubscribe()

        with self._lock:
            self._pending.clear()
        dropped = self._drain_intents()
        if dropped:
            logger.debug(f"Discarded {dropped} queued backup intents")
        logger.info("File monitor stopped")

    def _drain_intents(self) -> int:
        dropped = 0
        while True:
            try:
                self.intents.get_nowait()
            except queue.Empty:
                return dropped
            dropped += 1

    def _subscribe(self) -> bool:
        root = self.root
        try:
            if root is None or not root.is_dir():
                raise FileNotFoundError(f"Watch root does not exist: {root}")
            observer = self._observer_factory()
            observer.schedule(self.handler, str(root), recursive=True)
            observer.start()
        except OSError as e:
            self._subscribed = False
            self._next_probe = self._clock() + self._probe_delay
            logger.warning(f"Cannot watch {root}: {e}; retrying in {self._probe_delay:.0f}s")
            self._probe_delay = min(self._probe_delay * 2, self.config.probe_max_seconds)
            if self.on_watch_error and root is not None and not self._error_reported:
                self._error_reported = True
                try:
                    self.on_watch_error(root, e)
                except Exception as callback_error:
                    logger.error(f"Error in watch error callback: {callback_error}")
            return False

        self.observer = observer
        self._subscribed = True
        self._error_reported = False
        self._probe_delay = self.config.probe_initial_seconds
        logger.info(f"Monitoring: {root}")
        return True

    def _unsubscribe(self) -> None:
        observer, self.observer = self.observer, None
        self._subscribed = False
        if observer is not None:
            observer.stop()
            observer.join()

    def category_for(self, path: Path) -> str | None:
        if self.root is None:
            return None
        try:
            relative = PurePath(path).relative_to(self.root)
        except ValueError:
            return None
        if not relative.parts:
            return None

        category = relative.parts[0]
        # Engine staging folders and other hidden entries are not categories
        if category.startswith("."):
            return None
        for pattern in self.config.ignore_patterns:
            if PurePath(path).match(pattern):
                return None
        return category

    def _record_change(self, path: Path, event_type: str, is_directory: bool = False) -> None:
        if self.root is not None and PurePath(path) == PurePath(self.root):
            if event_type in ("deleted", "moved"):
                logger.warning(f"Watch root {self.root} was removed")
                self._resubscribe = True
            return

        category = self.category_for(path)
        if category is None:
            return

        layout_changed = is_directory and PurePath(path).parent == PurePath(self.root)
        with self._lock:
            until = self._suppressed.get(category, 0.0)
            if until is None or self._clock() < until:
                logger.debug(f"Ignoring {event_type} in {category} during restore")
                return
            self._suppressed.pop(category, None)
            self._change_counts[category] = self._change_counts.get(category, 0) + 1
            self._pending[category] = self._clock()

        logger.debug(f"{event_type}: {path} ({category})")
        if layout_changed:
            self._layout_dirty = True

    def _monitor_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._check_pending()
                self._check_subscription()
                self._check_layout()
            except Exception as e:
                logger.error(f"Error in monitor loop: {e}")
            self._stop_event.wait(self.config.tick_seconds)

    def _check_pending(self, now: float | None = None) -> list[str]:
        now = self._clock() if now is None else now
        with self._lock:
            due = {
                category: last_change
                for category, last_change in self._pending.items()
                if now - last_change >= self.config.debounce_seconds
            }
            for category in due:
                del self._pending[category]

        submitted = []
        for category in due:
            try:
                self.intents.put_nowait(BackupIntent(category=category, is_auto=True))
                submitted.append(category)
            except queue.Full:
                logger.warning(f"Intent queue full, deferring backup of {category}")
                with self._lock:
                    self._pending.setdefault(category, due[category])
        if submitted:
            logger.debug(f"Backup requested for {', '.join(submitted)}")
        return submitted

    def _check_subscription(self) -> None:
        if self._resubscribe:
            self._resubscribe = False
            self._unsubscribe()
            self._next_probe = self._clock() + self._probe_delay
            if self.on_layout_change:
                self.on_layout_change()
            return

        if not self._subscribed and self._clock() >= self._next_probe:
            if self._subscribe() and self.on_layout_change:
                self.on_layout_change()

    def _check_layout(self) -> None:
        if self._layout_dirty:
            self._layout_dirty = False
            if self.on_layout_change:
                self.on_layout_change()

    def pending_categories(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def change_count(self, category: str) -> int:
        with self._lock:
            return self._change_counts.get(category, 0)

    def clear_pending(self, category: str | None = None) -> None:
        with self._lock:
            if category is None:
                self._pending.clear()
            else:
                self._pending.pop(category, None)

    @contextmanager
    def suppressed(self, category: str) -> Iterator[None]:
        """Ignore changes to ``category`` made by the engine itself."""
        with self._lock:
            self._suppressed[category] = None
            self._pending.pop(category, None)
        try:
            yield
        finally:
            with self._lock:
                self._suppressed[category] = self._clock() + self.config.restore_grace_seconds
                self._pending.pop(category, None)

    def get_status(self) -> dict:
        with self._lock:
            return {
                "monitoring": self.running,
                "subscribed": self._subscribed,
                "root": str(self.root) if self.root else None,
                "pending": sorted(self._pending),
                "config": {
                    "debounce_seconds": self.config.debounce_seconds,
                    "restore_grace_seconds": self.config.restore_grace_seconds,
                },
            }
