"""
Unit tests for the per-category metadata sidecar (reposaver/metadata_store.py).
"""

from datetime import datetime
from unittest.mock import patch

import pytest

from reposaver.errors import ArchiveIOError
from reposaver.metadata_store import MetadataStore


class TestMetadataStore:
    """Test MetadataStore reads and writes."""

    def test_missing_file_yields_defaults(self, metadata):
        meta = metadata.load("SaveA")

        assert meta.memo == ""
        assert meta.snapshots == {}
        assert meta.corrupted == []
        assert meta.degraded is False

    def test_memo_round_trip(self, metadata):
        metadata.set_memo("SaveA", "before the boss fight")

        assert metadata.get_memo("SaveA") == "before the boss fight"
        assert metadata.meta_path("SaveA").exists()

    def test_memo_survives_new_instance(self, archive_root, metadata):
        metadata.set_memo("SaveA", "checkpoint")

        assert MetadataStore(archive_root).get_memo("SaveA") == "checkpoint"

    def test_invalid_file_falls_back_to_defaults(self, metadata):
        path = metadata.meta_path("SaveA")
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        assert metadata.load("SaveA").memo == ""

    def test_record_and_forget_snapshots(self, metadata):
        metadata.record_snapshot("SaveA", "20240115_093000", True, datetime(2024, 1, 15, 9, 30))
        metadata.record_snapshot("SaveA", "20240115_093001", False, datetime(2024, 1, 15, 9, 30, 1))

        metadata.forget_snapshots("SaveA", ["20240115_093000"])

        meta = metadata.load("SaveA")
        assert list(meta.snapshots) == ["20240115_093001"]
        assert meta.snapshots["20240115_093001"].is_auto is False

    def test_mark_corrupted_is_idempotent(self, metadata):
        metadata.mark_corrupted("SaveA", "20240115_093000")
        metadata.mark_corrupted("SaveA", "20240115_093000")

        assert metadata.load("SaveA").corrupted == ["20240115_093000"]

    def test_forget_clears_corrupted_flag(self, metadata):
        metadata.mark_corrupted("SaveA", "20240115_093000")

        metadata.forget_snapshots("SaveA", ["20240115_093000"])

        assert metadata.load("SaveA").corrupted == []

    def test_clearing_degraded_does_not_create_file(self, metadata):
        metadata.set_degraded("SaveA", False)

        assert not metadata.meta_path("SaveA").exists()

    def test_degraded_flag(self, metadata):
        metadata.set_degraded("SaveA", True)
        assert metadata.load("SaveA").degraded is True

        metadata.set_degraded("SaveA", False)
        assert metadata.load("SaveA").degraded is False

    def test_delete(self, metadata):
        metadata.set_memo("SaveA", "memo")

        assert metadata.delete("SaveA") is True
        assert metadata.delete("SaveA") is False
        assert metadata.get_memo("SaveA") == ""

    def test_write_failure_raises_archive_error(self, metadata):
        with patch("reposaver.metadata_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(ArchiveIOError):
                metadata.set_memo("SaveA", "memo")
