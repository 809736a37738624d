from .engine import BackupEngine
from .errors import (
    ArchiveIOError,
    EngineError,
    NotFound,
    PartialFailure,
    SourceLocked,
    SourceMissing,
)
from .generation_store import GenerationStore
from .metadata_store import MetadataStore
from .models import (
    CategoryState,
    EngineConfig,
    Notification,
    OperationResult,
    OperationStatus,
    Settings,
    Severity,
    Snapshot,
)
from .monitor import FileMonitor, MonitorConfig
from .publisher import CallbackSink, EventSink, LoggingSink, StatePublisher
from .restore import RestoreCoordinator
from .scheduler import BackupScheduler

__version__ = "0.1.0"

__all__ = [
    "BackupEngine",
    "EngineConfig",
    "Settings",
    "Snapshot",
    "CategoryState",
    "Notification",
    "Severity",
    "OperationResult",
    "OperationStatus",
    "GenerationStore",
    "MetadataStore",
    "RestoreCoordinator",
    "BackupScheduler",
    "FileMonitor",
    "MonitorConfig",
    "StatePublisher",
    "EventSink",
    "CallbackSink",
    "LoggingSink",
    "EngineError",
    "SourceMissing",
    "NotFound",
    "SourceLocked",
    "PartialFailure",
    "ArchiveIOError",
]
