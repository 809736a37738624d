import queue
import threading
from collections import deque
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field

from loguru import logger

from .errors import EngineError
from .models import BackupIntent, OperationKind, OperationResult, OperationStatus


@dataclass
class _Operation:
    kind: OperationKind
    category: str
    work: Callable[[], OperationResult]
    future: Future = field(default_factory=Future)
    is_auto: bool = False
    waited_on_backup: bool = False

    @property
    def is_manual_backup(self) -> bool:
        return self.kind == OperationKind.BACKUP and not self.is_auto


@dataclass
class _CategorySlot:
    """Exclusion token for one category, held while an operation runs."""

    running: _Operation
    waiting: deque = field(default_factory=deque)
    backup_change_count: int | None = None
    last_backup_ok: bool = False
    follow_up: bool = False  # an auto backup was dropped while this slot was busy


class BackupScheduler:
    """Serializes backup, restore and delete work per category.

    At most one operation runs per category; different categories run in
    parallel on a thread pool. While a category is busy an auto backup is
    dropped, a manual backup waits (replacing any manual backup already
    waiting), and everything else queues in arrival order. A dropped auto
    backup is made up for by one follow-up backup when changes were observed
    after the running backup began.
    """

    def __init__(
        self,
        backup: Callable[[str, bool], OperationResult],
        on_result: Callable[[OperationResult], None] | None = None,
        change_count: Callable[[str], int] | None = None,
        intents: queue.Queue | None = None,
        max_workers: int = 4,
    ):
        self._backup = backup
        self._on_result = on_result
        self._change_count = change_count or (lambda category: 0)
        self.intents = intents if intents is not None else queue.Queue()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="reposaver-op"
        )
        self._slots: dict[str, _CategorySlot] = {}
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._closed = False
        self._stop_event = threading.Event()
        self._dispatcher: threading.Thread | None = None

    def start(self) -> None:
        if self._dispatcher and self._dispatcher.is_alive():
            return
        self._stop_event.clear()
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="reposaver-dispatch", daemon=True
        )
        self._dispatcher.start()

    def shutdown(self, wait: bool = True) -> None:
        self._stop_event.set()
        if self._dispatcher and self._dispatcher.is_alive():
            self._dispatcher.join(timeout=5.0)
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                intent: BackupIntent = self.intents.get(timeout=0.2)
            except queue.Empty:
                continue
            try:
                self.submit_backup(intent.category, is_auto=intent.is_auto)
            except Exception as e:
                logger.error(f"Failed to dispatch backup intent for {intent.category}: {e}")

    def submit_backup(self, category: str, is_auto: bool) -> Future:
        return self._submit(self._backup_operation(category, is_auto))

    def _backup_operation(self, category: str, is_auto: bool) -> _Operation:
        return _Operation(
            kind=OperationKind.BACKUP,
            category=category,
            work=lambda: self._backup(category, is_auto),
            is_auto=is_auto,
        )

    def submit(
        self, kind: OperationKind, category: str, work: Callable[[], OperationResult]
    ) -> Future:
        return self._submit(_Operation(kind=kind, category=category, work=work))

    def is_busy(self, category: str) -> bool:
        with self._lock:
            return category in self._slots

    def wait_idle(self, timeout: float | None = None) -> bool:
        with self._idle:
            return self._idle.wait_for(lambda: not self._slots, timeout=timeout)

    def _submit(self, operation: _Operation) -> Future:
        with self._lock:
            if self._closed:
                operation.future.set_result(
                    self._outcome(operation, OperationStatus.SKIPPED, "Engine is shutting down")
                )
                return operation.future

            slot = self._slots.get(operation.category)
            if slot is None:
                slot = _CategorySlot(running=operation)
                self._slots[operation.category] = slot
                self._launch(slot, operation)
                return operation.future

            if operation.kind == OperationKind.BACKUP and operation.is_auto:
                slot.follow_up = True
                logger.debug(
                    f"Auto backup of {operation.category} dropped, category is busy"
                )
                operation.future.set_result(
                    self._outcome(
                        operation, OperationStatus.SKIPPED, "Covered by the current or next backup"
                    )
                )
                return operation.future

            if operation.is_manual_backup:
                operation.waited_on_backup = slot.running.kind == OperationKind.BACKUP
                for index, waiting in enumerate(slot.waiting):
                    if waiting.is_manual_backup:
                        operation.waited_on_backup = (
                            operation.waited_on_backup or waiting.waited_on_backup
                        )
                        slot.waiting[index] = operation
                        logger.debug(f"Queued manual backup of {operation.category} superseded")
                        waiting.future.set_result(
                            self._outcome(
                                waiting, OperationStatus.SUPERSEDED, "Replaced by a newer request"
                            )
                        )
                        return operation.future

            slot.waiting.append(operation)
            logger.debug(
                f"{operation.kind.value} of {operation.category} queued behind "
                f"{slot.running.kind.value}"
            )
            return operation.future

    def _launch(self, slot: _CategorySlot, operation: _Operation) -> None:
        slot.running = operation
        if operation.kind == OperationKind.BACKUP:
            slot.follow_up = False
            if (
                operation.waited_on_backup
                and slot.last_backup_ok
                and slot.backup_change_count == self._change_count(operation.category)
            ):
                operation.work = lambda: self._outcome(
                    operation,
                    OperationStatus.COALESCED,
                    "No changes since the backup that just finished",
                )
            else:
                slot.backup_change_count = self._change_count(operation.category)
        else:
            slot.backup_change_count = None
        self._executor.submit(self._execute, operation)

    def _execute(self, operation: _Operation) -> None:
        try:
            result = operation.work()
        except EngineError as e:
            result = self._outcome(operation, OperationStatus.FAILED, str(e), error_kind=e.kind)
        except Exception as e:
            logger.exception(
                f"Unexpected failure in {operation.kind.value} of {operation.category}"
            )
            result = self._outcome(operation, OperationStatus.FAILED, str(e), error_kind="error")

        if self._on_result:
            try:
                self._on_result(result)
            except Exception as e:
                logger.error(f"Error in result callback: {e}")

        operation.future.set_result(result)
        self._release(operation, result)

    def _release(self, operation: _Operation, result: OperationResult) -> None:
        with self._lock:
            slot = self._slots[operation.category]
            if operation.kind == OperationKind.BACKUP and result.status != OperationStatus.COALESCED:
                slot.last_backup_ok = result.ok

            if slot.waiting and not self._closed:
                self._launch(slot, slot.waiting.popleft())
                return

            if slot.follow_up and not self._closed and self._changed_since_backup(slot):
                logger.debug(
                    f"Changes arrived during backup of {operation.category}, backing up again"
                )
                self._launch(slot, self._backup_operation(operation.category, is_auto=True))
                return

            for waiting in slot.waiting:
                waiting.future.set_result(
                    self._outcome(waiting, OperationStatus.SKIPPED, "Engine is shutting down")
                )
            del self._slots[operation.category]
            self._idle.notify_all()

    def _changed_since_backup(self, slot: _CategorySlot) -> bool:
        return (
            slot.backup_change_count is not None
            and self._change_count(slot.running.category) > slot.backup_change_count
        )

    @staticmethod
    def _outcome(
        operation: _Operation,
        status: OperationStatus,
        message: str = "",
        error_kind: str | None = None,
    ) -> OperationResult:
        return OperationResult(
            kind=operation.kind,
            category=operation.category,
            status=status,
            message=message,
            error_kind=error_kind,
        )
