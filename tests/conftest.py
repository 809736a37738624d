"""
Shared pytest fixtures for RepoSaver tests.

This module provides fixtures for:
- A temporary save folder with category subfolders
- A temporary archive root
- Generation store and metadata store instances
- A fully wired BackupEngine that does not watch the filesystem
- A recording event sink to capture broadcasts and notifications
"""

import threading
from pathlib import Path

import pytest

from reposaver.engine import BackupEngine
from reposaver.generation_store import GenerationStore
from reposaver.metadata_store import MetadataStore
from reposaver.models import EngineConfig, Settings, Severity
from reposaver.publisher import EventSink


def write_tree(root: Path, files: dict[str, str]) -> None:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def read_tree(root: Path) -> dict[str, str]:
    return {
        str(path.relative_to(root)).replace("\\", "/"): path.read_text()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class RecordingSink(EventSink):
    """Captures everything the engine broadcasts."""

    def __init__(self):
        self._lock = threading.Lock()
        self.settings_docs = []
        self.categories_docs = []
        self.notifications = []

    def settings_changed(self, document):
        with self._lock:
            self.settings_docs.append(document)

    def categories_changed(self, document):
        with self._lock:
            self.categories_docs.append(document)

    def notify(self, notification):
        with self._lock:
            self.notifications.append(notification)

    def errors(self):
        with self._lock:
            return [n for n in self.notifications if n.severity == Severity.ERROR]

    def titles(self):
        with self._lock:
            return [n.title for n in self.notifications]


class SettingsHolder:
    """Mutable settings provider for components tested in isolation."""

    def __init__(self, settings: Settings):
        self.settings = settings

    def __call__(self) -> Settings:
        return self.settings


@pytest.fixture(scope='function')
def save_root(tmp_path):
    """
    Save folder with two categories.

    SaveA: slot.dat, sub/extra.dat
    SaveB: slot.dat
    """
    root = tmp_path / "saves"
    write_tree(root / "SaveA", {"slot.dat": "alpha-1", "sub/extra.dat": "alpha-extra"})
    write_tree(root / "SaveB", {"slot.dat": "beta-1"})
    return root


@pytest.fixture(scope='function')
def archive_root(tmp_path):
    return tmp_path / "Backups"


@pytest.fixture(scope='function')
def settings_holder(save_root):
    return SettingsHolder(Settings(repo_save_path=str(save_root), max_generations=10))


@pytest.fixture(scope='function')
def metadata(archive_root):
    return MetadataStore(archive_root)


@pytest.fixture(scope='function')
def store(archive_root, settings_holder, metadata):
    return GenerationStore(archive_root, settings=settings_holder, metadata=metadata)


@pytest.fixture(scope='function')
def sink():
    return RecordingSink()


@pytest.fixture(scope='function')
def engine_config(tmp_path):
    return EngineConfig.from_home(tmp_path / "home", debounce_seconds=0.05)


@pytest.fixture(scope='function')
def engine(engine_config, save_root, sink):
    """
    Initialized engine pointed at ``save_root``.

    Filesystem watching is disabled so that tests control every trigger.
    """
    engine = BackupEngine(engine_config, sink=sink, watch=False)
    engine.initialize_engine()
    engine.update_settings(str(save_root), 10, "system")
    yield engine
    engine.shutdown()


@pytest.fixture
def make_tree():
    return write_tree


@pytest.fixture
def tree_of():
    return read_tree
