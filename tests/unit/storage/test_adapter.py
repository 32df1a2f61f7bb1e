"""Unit tests for DurableStorageAdapter.

Focus: failures never propagate, directory markers, tombstones for failed
deletes, and bounded bulk backup.
"""

from __future__ import annotations

import asyncio

from berth.storage import DurableStorageAdapter
from tests.fakes import FakeStore


class TestFiles:
    async def test_save_normalizes_key(self, storage: DurableStorageAdapter, store: FakeStore):
        assert await storage.save_file("u1", "/workspace/./src//a.js", "x")
        assert store.files("u1") == {"src/a.js": "x"}
        assert await storage.load_file("u1", "src/a.js") == "x"

    async def test_empty_path_is_rejected(self, storage: DurableStorageAdapter, store: FakeStore):
        assert not await storage.save_file("u1", "/workspace/", "x")
        assert store.put_calls == []

    async def test_failures_return_false_or_none(self, storage: DurableStorageAdapter, store: FakeStore):
        store.down = True

        assert await storage.save_file("u1", "a.txt", "x") is False
        assert await storage.load_file("u1", "a.txt") is None
        assert await storage.create_empty_directory_marker("u1", "d") is False
        assert await storage.restore_all_user_files("u1") == {}
        assert await storage.list_directory_markers("u1") == []
        assert await storage.is_healthy() is False

    async def test_missing_file_loads_none(self, storage: DurableStorageAdapter):
        assert await storage.load_file("u1", "nope.txt") is None


class TestDirectoryMarkers:
    async def test_marker_listed_until_file_saved_below(self, storage: DurableStorageAdapter, store: FakeStore):
        assert await storage.create_empty_directory_marker("u1", "a/b")
        assert await storage.create_empty_directory_marker("u1", "a")
        assert await storage.list_directory_markers("u1") == ["a", "a/b"]

        assert await storage.save_file("u1", "a/b/c.txt", "x")

        assert store.markers("u1") == []
        assert await storage.restore_all_user_files("u1") == {"a/b/c.txt": "x"}

    async def test_marker_cleanup_failure_still_reports_saved(self, storage: DurableStorageAdapter, store: FakeStore):
        await storage.create_empty_directory_marker("u1", "a")
        store.failing.add("delete_markers")

        assert await storage.save_file("u1", "a/c.txt", "x")
        assert store.files("u1") == {"a/c.txt": "x"}

    async def test_delete_directory_removes_marker_and_descendants(
        self, storage: DurableStorageAdapter, store: FakeStore
    ):
        await storage.create_empty_directory_marker("u1", "src/empty")
        await storage.save_file("u1", "src/a.js", "a")
        await storage.save_file("u1", "src/lib/b.js", "b")
        await storage.save_file("u1", "srcfile.js", "keep")

        assert await storage.delete_directory("u1", "src")

        assert await storage.restore_all_user_files("u1") == {"srcfile.js": "keep"}
        assert await storage.list_directory_markers("u1") == []


class TestTombstones:
    async def test_failed_delete_is_not_resurrected(self, storage: DurableStorageAdapter, store: FakeStore):
        await storage.save_file("u1", "a.txt", "x")
        store.failing.add("delete")

        assert await storage.delete_file("u1", "a.txt") is False
        assert [t.path for t in storage.tombstones("u1")] == ["a.txt"]

        # Still in the backend, hidden from restores
        assert "a.txt" in store.files("u1")
        assert await storage.restore_all_user_files("u1") == {}
        assert await storage.load_file("u1", "a.txt") is None

    async def test_restore_retries_tombstones(self, storage: DurableStorageAdapter, store: FakeStore):
        await storage.save_file("u1", "d/a.txt", "x")
        store.failing.add("delete_tree")
        assert await storage.delete_directory("u1", "d") is False

        store.failing.clear()
        assert await storage.restore_all_user_files("u1") == {}

        assert storage.tombstones("u1") == []
        assert store.files("u1") == {}

    async def test_newer_save_wins_over_tombstone(self, storage: DurableStorageAdapter, store: FakeStore):
        await storage.save_file("u1", "a.txt", "old")
        store.failing.add("delete")
        await storage.delete_file("u1", "a.txt")

        await asyncio.sleep(0.001)
        await storage.save_file("u1", "a.txt", "new")

        assert await storage.restore_all_user_files("u1") == {"a.txt": "new"}

    async def test_retry_keeps_file_saved_after_failed_delete(
        self, storage: DurableStorageAdapter, store: FakeStore
    ):
        await storage.save_file("u1", "a.txt", "old")
        store.failing.add("delete")
        assert await storage.delete_file("u1", "a.txt") is False

        store.failing.clear()
        await asyncio.sleep(0.001)
        assert await storage.save_file("u1", "a.txt", "new")

        assert await storage.restore_all_user_files("u1") == {"a.txt": "new"}
        assert store.files("u1") == {"a.txt": "new"}
        assert storage.tombstones("u1") == []

    async def test_retry_of_directory_delete_spares_newer_files(
        self, storage: DurableStorageAdapter, store: FakeStore
    ):
        await storage.save_file("u1", "d/a.txt", "a")
        await storage.save_file("u1", "d/b.txt", "b")
        store.failing.add("delete_tree")
        assert await storage.delete_directory("u1", "d") is False

        store.failing.clear()
        await asyncio.sleep(0.001)
        assert await storage.save_file("u1", "d/b.txt", "b2")

        assert await storage.restore_all_user_files("u1") == {"d/b.txt": "b2"}
        assert store.files("u1") == {"d/b.txt": "b2"}
        assert storage.tombstones("u1") == []

    async def test_retry_keeps_tombstone_while_store_fails(
        self, storage: DurableStorageAdapter, store: FakeStore
    ):
        await storage.save_file("u1", "a.txt", "x")
        store.failing.add("delete")
        await storage.delete_file("u1", "a.txt")

        assert await storage.restore_all_user_files("u1") == {}
        assert [t.path for t in storage.tombstones("u1")] == ["a.txt"]


class TestBulk:
    async def test_backup_counts_partial_success(self, storage: DurableStorageAdapter, store: FakeStore):
        files = {f"f{i}.txt": str(i) for i in range(10)}
        assert await storage.backup_all_user_files("u1", files) == 10

        store.down = True
        assert await storage.backup_all_user_files("u1", files) == 0

    async def test_backup_concurrency_is_bounded(self, store: FakeStore):
        storage = DurableStorageAdapter(store, max_concurrency=3)
        in_flight = 0
        peak = 0
        original_put = store.put

        async def tracking_put(user_id, record):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.01)
            try:
                await original_put(user_id, record)
            finally:
                in_flight -= 1

        store.put = tracking_put
        saved = await storage.backup_all_user_files("u1", {f"f{i}": "x" for i in range(12)})

        assert saved == 12
        assert peak <= 3

    async def test_backup_of_nothing(self, storage: DurableStorageAdapter):
        assert await storage.backup_all_user_files("u1", {}) == 0

    async def test_health(self, storage: DurableStorageAdapter, store: FakeStore):
        assert await storage.is_healthy()
        store.failing.add("ping")
        assert not await storage.is_healthy()
