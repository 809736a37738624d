from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

MIN_GENERATIONS = 1
MAX_GENERATIONS = 100
DEFAULT_GENERATIONS = 10
DEFAULT_THEME = "system"


class Severity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


class OperationKind(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    DELETE_SNAPSHOT = "delete_snapshot"
    DELETE_CATEGORY = "delete_category"
    PRUNE = "prune"
    MEMO = "memo"


class OperationStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"  # auto intent dropped while the category was busy
    SUPERSEDED = "superseded"  # queued manual backup replaced by a newer one
    COALESCED = "coalesced"  # covered by the backup that ran just before it


def clamp_generations(value: int) -> int:
    return max(MIN_GENERATIONS, min(MAX_GENERATIONS, int(value)))


@dataclass
class EngineConfig:
    archive_root: Path
    settings_path: Path
    debounce_seconds: float = 1.0
    restore_grace_seconds: float = 1.0
    max_workers: int = 4
    intent_queue_size: int = 256
    probe_initial_seconds: float = 1.0
    probe_max_seconds: float = 60.0
    ignore_patterns: set[str] = field(
        default_factory=lambda: {"*.tmp", "*.swp", ".DS_Store", "Thumbs.db"}
    )

    @classmethod
    def from_home(cls, home: Path, **overrides) -> "EngineConfig":
        return cls(
            archive_root=home / "Backups",
            settings_path=home / "settings.json",
            **overrides,
        )


class Settings(BaseModel):
    repo_save_path: str = ""
    max_generations: int = DEFAULT_GENERATIONS
    theme: str = DEFAULT_THEME

    @field_validator("max_generations", mode="before")
    @classmethod
    def _clamp(cls, value):
        try:
            return clamp_generations(value)
        except (TypeError, ValueError):
            return DEFAULT_GENERATIONS

    @property
    def watched_root(self) -> Path | None:
        return Path(self.repo_save_path) if self.repo_save_path else None


class SnapshotRecord(BaseModel):
    is_auto: bool = False
    created_at: datetime = Field(default_factory=datetime.now)


class CategoryMeta(BaseModel):
    memo: str = ""
    snapshots: dict[str, SnapshotRecord] = Field(default_factory=dict)
    corrupted: list[str] = Field(default_factory=list)
    degraded: bool = False


class Snapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str
    is_auto: bool = False
    corrupted: bool = False
    created_at: datetime | None = None
    path: Path = Field(exclude=True)


class CategoryState(BaseModel):
    name: str
    memo: str = ""
    snapshots: list[Snapshot] = Field(default_factory=list)
    latest: str | None = None
    source_exists: bool = False
    degraded: bool = False


class CategoriesDocument(BaseModel):
    revision: int
    categories: list[CategoryState]


class SettingsDocument(BaseModel):
    revision: int
    settings: Settings


@dataclass
class Notification:
    severity: Severity
    title: str
    message: str
    category: str | None = None


@dataclass
class BackupIntent:
    category: str
    is_auto: bool


@dataclass
class OperationResult:
    kind: OperationKind
    category: str
    status: OperationStatus
    message: str = ""
    error_kind: str | None = None
    snapshot: Snapshot | None = None

    @property
    def ok(self) -> bool:
        return self.status == OperationStatus.OK
