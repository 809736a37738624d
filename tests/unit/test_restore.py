"""
Unit tests for RestoreCoordinator (reposaver/restore.py).

A restore must leave the live folder either fully replaced by the snapshot
or untouched; these tests force failures at each step of the swap.
"""

import os
import shutil
from contextlib import contextmanager
from unittest.mock import patch

import pytest

from reposaver.errors import ArchiveIOError, NotFound, PartialFailure, SourceLocked, SourceMissing
from reposaver.restore import RestoreCoordinator


@pytest.fixture
def coordinator(store):
    return RestoreCoordinator(store)


@pytest.fixture
def snapshot(store):
    return store.create("SaveA", is_auto=False)


def hidden_entries(root):
    return [entry.name for entry in root.iterdir() if entry.name.startswith(".")]


class TestRestore:
    """Test the happy paths of RestoreCoordinator.restore."""

    def test_replaces_live_content(self, coordinator, snapshot, save_root, make_tree, tree_of):
        live = save_root / "SaveA"
        make_tree(live, {"slot.dat": "alpha-2", "new.dat": "created later"})

        coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(live) == {"slot.dat": "alpha-1", "sub/extra.dat": "alpha-extra"}
        assert hidden_entries(save_root) == []

    def test_recreates_missing_live_folder(self, coordinator, snapshot, save_root, tree_of):
        shutil.rmtree(save_root / "SaveA")

        coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(save_root / "SaveA")["slot.dat"] == "alpha-1"

    def test_snapshot_is_left_intact(self, coordinator, snapshot, tree_of):
        before = tree_of(snapshot.path)

        coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(snapshot.path) == before

    def test_runs_inside_guard(self, store, snapshot):
        entered = []

        @contextmanager
        def guard(category):
            entered.append(category)
            yield

        RestoreCoordinator(store, guard=guard).restore("SaveA", snapshot.timestamp)

        assert entered == ["SaveA"]

    def test_clears_degraded_flag(self, coordinator, store, snapshot):
        store.metadata.set_degraded("SaveA", True)

        coordinator.restore("SaveA", snapshot.timestamp)

        assert store.metadata.load("SaveA").degraded is False


class TestRestoreFailures:
    """Test that failed restores leave the live folder untouched."""

    def test_unknown_snapshot(self, coordinator, snapshot, save_root, tree_of):
        before = tree_of(save_root / "SaveA")

        with pytest.raises(NotFound):
            coordinator.restore("SaveA", "19990101_000000")

        assert tree_of(save_root / "SaveA") == before

    def test_unknown_category(self, coordinator):
        with pytest.raises(NotFound):
            coordinator.restore("SaveC", "20240115_093000")

    def test_missing_root(self, coordinator, snapshot, save_root):
        shutil.rmtree(save_root)

        with pytest.raises(SourceMissing):
            coordinator.restore("SaveA", snapshot.timestamp)

    def test_corrupted_snapshot_refused(self, coordinator, store, snapshot):
        store.metadata.mark_corrupted("SaveA", snapshot.timestamp)

        with pytest.raises(PartialFailure):
            coordinator.restore("SaveA", snapshot.timestamp)

    def test_staging_failure_keeps_live(self, coordinator, snapshot, save_root, make_tree, tree_of):
        live = save_root / "SaveA"
        make_tree(live, {"slot.dat": "alpha-2"})
        before = tree_of(live)

        with patch("reposaver.restore.shutil.copytree", side_effect=OSError("disk full")):
            with pytest.raises(ArchiveIOError):
                coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(live) == before
        assert hidden_entries(save_root) == []

    def test_locked_live_folder(self, coordinator, snapshot, save_root, make_tree, tree_of):
        live = save_root / "SaveA"
        make_tree(live, {"slot.dat": "alpha-2"})
        before = tree_of(live)

        with patch("reposaver.restore.os.rename", side_effect=PermissionError("in use")):
            with pytest.raises(SourceLocked):
                coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(live) == before
        assert hidden_entries(save_root) == []

    def test_failed_move_into_place_rolls_back(
        self, coordinator, snapshot, save_root, make_tree, tree_of
    ):
        live = save_root / "SaveA"
        make_tree(live, {"slot.dat": "alpha-2"})
        before = tree_of(live)
        real_rename = os.rename

        def rename(src, dst):
            if ".restore-" in str(src):
                raise PermissionError("in use")
            return real_rename(src, dst)

        with patch("reposaver.restore.os.rename", side_effect=rename):
            with pytest.raises(SourceLocked):
                coordinator.restore("SaveA", snapshot.timestamp)

        assert tree_of(live) == before
        assert hidden_entries(save_root) == []

    def test_failed_rollback_marks_degraded(self, coordinator, store, snapshot, save_root):
        real_rename = os.rename
        calls = []

        def rename(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                return real_rename(src, dst)
            raise PermissionError("in use")

        with patch("reposaver.restore.os.rename", side_effect=rename):
            with pytest.raises(PartialFailure):
                coordinator.restore("SaveA", snapshot.timestamp)

        assert store.metadata.load("SaveA").degraded is True
        assert not (save_root / "SaveA").exists()
