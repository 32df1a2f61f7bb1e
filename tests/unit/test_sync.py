"""Unit tests for FileSyncEngine."""

from __future__ import annotations

import json

import pytest

from berth.concurrency import BackgroundTasks
from berth.errors import ContainerUnavailableError, PathNotFoundError, ValidationError
from berth.runtime.base import EntryType, ManifestEntry
from berth.storage import DurableStorageAdapter
from berth.sync import FileSyncEngine, build_tree
from tests.fakes import FakeRuntime, FakeStore


@pytest.fixture
async def live(runtime: FakeRuntime) -> FakeRuntime:
    await runtime.create_user_container("u1")
    return runtime


class TestBuildTree:
    def test_nested(self):
        entries = [
            ManifestEntry("src", EntryType.DIRECTORY),
            ManifestEntry("src/app.js", EntryType.FILE),
            ManifestEntry("src/lib", EntryType.DIRECTORY),
            ManifestEntry("README.md", EntryType.FILE),
            ManifestEntry("deep/a/b.txt", EntryType.FILE),
        ]
        assert build_tree(entries) == {
            "README.md": None,
            "deep": {"a": {"b.txt": None}},
            "src": {"app.js": None, "lib": {}},
        }


class TestRestore:
    async def test_restores_files_and_empty_directories(
        self, sync: FileSyncEngine, storage: DurableStorageAdapter, live: FakeRuntime
    ):
        await storage.save_file("u1", "src/a.js", "A")
        await storage.save_file("u1", "b.txt", "B")
        await storage.create_empty_directory_marker("u1", "empty/dir")

        restored = await sync.restore_session("u1")

        assert restored == 2
        assert {p: c for p, (c, _) in live.fs["u1"].items()} == {"src/a.js": "A", "b.txt": "B"}
        assert "empty/dir" in live.dirs["u1"]

    async def test_storage_down_restores_nothing(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        store.down = True
        assert await sync.restore_session("u1") == 0
        assert live.fs["u1"] == {}


class TestApplyChange:
    async def test_normalizes_repairs_and_sanitizes(
        self, sync: FileSyncEngine, store: FakeStore, tasks: BackgroundTasks, live: FakeRuntime
    ):
        path = await sync.apply_change("u1", "/workspace/src//config.jso", '{"a":1}')

        assert path == "src/config.json"
        content, _ = live.fs["u1"]["src/config.json"]
        assert content == json.dumps({"a": 1}, indent=2)

        await tasks.drain("u1")
        assert store.files("u1") == {"src/config.json": content}

    async def test_storage_down_does_not_fail_the_edit(
        self, sync: FileSyncEngine, store: FakeStore, tasks: BackgroundTasks, live: FakeRuntime
    ):
        store.down = True
        await sync.apply_change("u1", "a.txt", "hello")
        await tasks.drain("u1")

        assert live.fs["u1"]["a.txt"][0] == "hello"
        assert store.files("u1") == {}

    async def test_container_failure_propagates(self, sync: FileSyncEngine, live: FakeRuntime, store: FakeStore):
        live.fail_writes = True
        with pytest.raises(ContainerUnavailableError):
            await sync.apply_change("u1", "a.txt", "x")
        assert store.put_calls == []

    async def test_empty_path_rejected(self, sync: FileSyncEngine, live: FakeRuntime):
        with pytest.raises(ValidationError):
            await sync.apply_change("u1", "/workspace", "x")

    async def test_reconciles_duplicates_after_write(self, sync: FileSyncEngine, live: FakeRuntime):
        live.put_raw("u1", "src//a.js", "from terminal", mtime=0.5)
        await sync.apply_change("u1", "src/a.js", "from editor")

        assert {p: c for p, (c, _) in live.fs["u1"].items()} == {"src/a.js": "from editor"}

    async def test_repeated_edit_under_another_spelling_keeps_one_entry(
        self, sync: FileSyncEngine, store: FakeStore, tasks: BackgroundTasks, live: FakeRuntime
    ):
        await sync.apply_change("u1", "a/b.txt", "first")
        live.put_raw("u1", "a//b.txt", "from terminal")

        assert await sync.apply_change("u1", "a//b.txt", "second") == "a/b.txt"

        files = [e.path for e in await live.list_files("u1") if not e.is_dir]
        assert files == ["a/b.txt"]
        assert live.fs["u1"]["a/b.txt"][0] == "second"

        await tasks.drain("u1")
        assert store.files("u1") == {"a/b.txt": "second"}

    async def test_latest_edit_lands_last(
        self, sync: FileSyncEngine, store: FakeStore, tasks: BackgroundTasks, live: FakeRuntime
    ):
        store.put_delay = 0.01
        for i in range(5):
            await sync.apply_change("u1", "a.txt", f"v{i}")
        await tasks.drain("u1")

        assert store.files("u1") == {"a.txt": "v4"}


class TestDirectoriesAndDeletes:
    async def test_create_directory_writes_marker(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        assert await sync.create_directory("u1", "./docs/") == "docs"
        assert "docs" in live.dirs["u1"]
        assert store.markers("u1") == ["docs"]

    async def test_create_directory_survives_storage_failure(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        store.down = True
        await sync.create_directory("u1", "docs")
        assert "docs" in live.dirs["u1"]

    async def test_delete_directory_removes_marker_and_descendants(
        self, sync: FileSyncEngine, storage: DurableStorageAdapter, store: FakeStore, live: FakeRuntime
    ):
        await sync.create_directory("u1", "proj/empty")
        await sync.apply_change("u1", "proj/src/a.js", "a")
        await sync.apply_change("u1", "keep.txt", "k")
        await sync.tasks.drain("u1")

        await sync.delete_path("u1", "proj", is_directory=True)

        assert set(live.fs["u1"]) == {"keep.txt"}
        assert not any(d.startswith("proj") for d in live.dirs["u1"])
        assert await storage.restore_all_user_files("u1") == {"keep.txt": "k"}
        assert await storage.list_directory_markers("u1") == []

    async def test_delete_detects_directory_without_type_hint(
        self, sync: FileSyncEngine, storage: DurableStorageAdapter, store: FakeStore, live: FakeRuntime
    ):
        await sync.create_directory("u1", "proj")
        await sync.apply_change("u1", "proj/a.txt", "a")
        await sync.tasks.drain("u1")

        await sync.delete_path("u1", "proj")

        assert live.fs["u1"] == {}
        assert store.files("u1") == {}
        assert store.markers("u1") == []
        assert await storage.restore_all_user_files("u1") == {}

    async def test_delete_waits_for_pending_save(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        store.put_delay = 0.02
        await sync.apply_change("u1", "a.txt", "x")
        await sync.delete_path("u1", "a.txt")

        await sync.tasks.drain("u1")
        assert store.files("u1") == {}

    async def test_delete_missing_path(self, sync: FileSyncEngine, live: FakeRuntime):
        with pytest.raises(PathNotFoundError):
            await sync.delete_path("u1", "ghost.txt")


class TestRenameAndRead:
    async def test_rename_moves_durable_copy(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        await sync.apply_change("u1", "old/a.txt", "A")
        await sync.apply_change("u1", "old/b/c.txt", "C")

        assert await sync.rename_path("u1", "old", "new") == ("old", "new")

        assert store.files("u1") == {"new/a.txt": "A", "new/b/c.txt": "C"}
        assert set(live.fs["u1"]) == {"new/a.txt", "new/b/c.txt"}

    async def test_read_prefers_container(self, sync: FileSyncEngine, storage: DurableStorageAdapter, live: FakeRuntime):
        await storage.save_file("u1", "a.txt", "durable")
        live.put_raw("u1", "a.txt", "live")
        assert await sync.read_file("u1", "a.txt") == "live"

    async def test_read_falls_back_to_durable(self, sync: FileSyncEngine, storage: DurableStorageAdapter, live: FakeRuntime):
        await storage.save_file("u1", "a.txt", "durable")
        assert await sync.read_file("u1", "a.txt") == "durable"

    async def test_read_missing_everywhere(self, sync: FileSyncEngine, live: FakeRuntime):
        with pytest.raises(PathNotFoundError):
            await sync.read_file("u1", "nope.txt")


class TestBackup:
    async def test_backup_all_saves_manifest_and_empty_dirs(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        live.put_raw("u1", "made/in/shell.sh", "echo hi")
        live.dirs["u1"].update({"made", "made/in", "tmp"})

        saved = await sync.backup_all("u1")

        assert saved == 1
        assert store.files("u1") == {"made/in/shell.sh": "echo hi"}
        assert store.markers("u1") == ["tmp"]

    async def test_backup_waits_for_background_saves(
        self, sync: FileSyncEngine, store: FakeStore, live: FakeRuntime
    ):
        store.put_delay = 0.02
        await sync.apply_change("u1", "a.txt", "edited")
        live.put_raw("u1", "a.txt", "final")

        await sync.backup_all("u1")

        assert store.files("u1") == {"a.txt": "final"}

    async def test_list_tree(self, sync: FileSyncEngine, live: FakeRuntime):
        await sync.apply_change("u1", "src/a.js", "x")
        await sync.create_directory("u1", "empty")
        assert await sync.list_tree("u1") == {"empty": {}, "src": {"a.js": None}}

    async def test_list_directory(self, sync: FileSyncEngine, live: FakeRuntime):
        await sync.apply_change("u1", "src/a.js", "x")
        await sync.create_directory("u1", "src/lib")
        entries = await sync.list_directory("u1", "src")
        assert [(e.path, e.is_dir) for e in entries] == [("src/lib", True), ("src/a.js", False)]


def test_engine_defaults_to_own_task_tracker(runtime: FakeRuntime, storage: DurableStorageAdapter):
    engine = FileSyncEngine(runtime, storage)
    assert isinstance(engine.tasks, BackgroundTasks)
