"""FileSyncEngine - keeps a container filesystem and durable storage aligned.

The container is authoritative for the running session: writes hit it
first and its errors propagate. Durable storage follows, either in the
background (edits) or inline (directory operations, bulk backup), and its
failures are only logged.
"""

from __future__ import annotations

from typing import Any

import structlog

from berth.concurrency import BackgroundTasks, KeyedLocks
from berth.errors import PathNotFoundError, ValidationError, best_effort
from berth.runtime.base import ContainerRuntime, ManifestEntry
from berth.sanitizer import normalize_path, repair_extension, sanitize_content
from berth.storage.adapter import DurableStorageAdapter

logger = structlog.get_logger()


def build_tree(entries: list[ManifestEntry]) -> dict[str, Any]:
    """Nested tree of a manifest: directories map to dicts, files to None."""
    tree: dict[str, Any] = {}
    for entry in sorted(entries, key=lambda e: e.path):
        node = tree
        parts = [p for p in entry.path.split("/") if p]
        if not parts:
            continue
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        leaf = parts[-1]
        if entry.is_dir:
            if not isinstance(node.get(leaf), dict):
                node[leaf] = {}
        else:
            node.setdefault(leaf, None)
    return tree


def _under(path: str, root: str) -> bool:
    return path == root or path.startswith(root + "/")


def _empty_directories(entries: list[ManifestEntry]) -> list[str]:
    """Directories of a manifest that have no entries below them."""
    return [
        entry.path
        for entry in entries
        if entry.is_dir and not any(other.path.startswith(entry.path + "/") for other in entries)
    ]


class FileSyncEngine:
    """Coordinates a ContainerRuntime and a DurableStorageAdapter."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        storage: DurableStorageAdapter,
        tasks: BackgroundTasks | None = None,
    ) -> None:
        self._runtime = runtime
        self._storage = storage
        self._tasks = tasks or BackgroundTasks()
        self._save_locks = KeyedLocks()
        self._log = logger.bind(component="sync")

    @property
    def tasks(self) -> BackgroundTasks:
        return self._tasks

    def _require_path(self, raw_path: str) -> str:
        path = normalize_path(raw_path or "")
        if not path:
            raise ValidationError("Invalid path", path=raw_path)
        return path

    async def _save_in_order(self, user_id: str, path: str, content: str) -> bool:
        # Saves of one path start in spawn order, so the latest edit lands last
        async with self._save_locks.hold(f"{user_id}\0{path}"):
            saved = await self._storage.save_file(user_id, path, content)
        if not saved:
            self._log.warning("sync.durable_save_failed", user_id=user_id, path=path)
        return saved

    def _schedule_save(self, user_id: str, path: str, content: str) -> None:
        self._tasks.spawn(
            user_id,
            self._save_in_order(user_id, path, content),
            name=f"durable-save:{user_id}:{path}",
        )

    async def restore_session(self, user_id: str) -> int:
        """Write every durable file into the user's container.

        Returns:
            Number of files restored
        """
        files = await self._storage.restore_all_user_files(user_id)

        restored = 0
        for path, content in files.items():
            try:
                await self._runtime.write_file(user_id, path, content)
                restored += 1
            except Exception as e:
                self._log.warning(
                    "sync.restore_file_failed",
                    user_id=user_id,
                    path=path,
                    error=str(e),
                )

        markers = await self._storage.list_directory_markers(user_id)
        for path in markers:
            with best_effort("sync.restore_directory", user_id=user_id, path=path):
                await self._runtime.create_directory(user_id, path)

        self._log.info(
            "sync.restored",
            user_id=user_id,
            files=restored,
            failed=len(files) - restored,
            directories=len(markers),
        )
        return restored

    async def apply_change(self, user_id: str, raw_path: str, raw_content: str | bytes | None) -> str:
        """Sanitize and write an edit; the durable save runs in the background.

        Returns:
            The normalized path that was written
        """
        path = repair_extension(self._require_path(raw_path))
        content = sanitize_content(raw_content, path)

        await self._runtime.write_file(user_id, path, content)
        self._schedule_save(user_id, path, content)

        with best_effort("sync.reconcile", user_id=user_id):
            await self._runtime.reconcile_duplicates(user_id)
        return path

    async def create_directory(self, user_id: str, raw_path: str) -> str:
        path = self._require_path(raw_path)
        await self._runtime.create_directory(user_id, path)
        if not await self._storage.create_empty_directory_marker(user_id, path):
            self._log.warning("sync.marker_failed", user_id=user_id, path=path)
        return path

    async def delete_path(self, user_id: str, raw_path: str, is_directory: bool = False) -> str:
        path = self._require_path(raw_path)
        # The container knows the real type; the client's hint may be wrong
        is_directory = is_directory or await self._runtime.is_directory(user_id, path)
        await self._runtime.delete_path(user_id, path)

        # A pending save below the path would otherwise resurrect it
        await self._tasks.drain(user_id)
        if is_directory:
            deleted = await self._storage.delete_directory(user_id, path)
        else:
            deleted = await self._storage.delete_file(user_id, path)
        if not deleted:
            self._log.warning("sync.durable_delete_failed", user_id=user_id, path=path)
        return path

    async def rename_path(self, user_id: str, raw_old: str, raw_new: str) -> tuple[str, str]:
        old = self._require_path(raw_old)
        new = self._require_path(raw_new)
        if old == new:
            return old, new

        await self._runtime.rename_path(user_id, old, new)
        await self._tasks.drain(user_id)

        with best_effort("sync.durable_rename", user_id=user_id, old=old, new=new):
            entries = [e for e in await self._runtime.list_files(user_id) if _under(e.path, new)]
            for entry in entries:
                if not entry.is_dir:
                    content = await self._runtime.read_file(user_id, entry.path)
                    await self._storage.save_file(user_id, entry.path, content)
            for path in _empty_directories(entries):
                await self._storage.create_empty_directory_marker(user_id, path)

            if not await self._storage.delete_directory(user_id, old):
                self._log.warning("sync.durable_delete_failed", user_id=user_id, path=old)

        return old, new

    async def read_file(self, user_id: str, raw_path: str) -> str:
        path = self._require_path(raw_path)
        try:
            return await self._runtime.read_file(user_id, path)
        except PathNotFoundError:
            content = await self._storage.load_file(user_id, path)
            if content is None:
                raise
            self._log.info("sync.read_fallback", user_id=user_id, path=path)
            return content

    async def list_tree(self, user_id: str) -> dict[str, Any]:
        with best_effort("sync.reconcile", user_id=user_id):
            await self._runtime.reconcile_duplicates(user_id)
        return build_tree(await self._runtime.list_files(user_id))

    async def list_directory(self, user_id: str, raw_path: str = "") -> list[ManifestEntry]:
        path = normalize_path(raw_path or "")
        entries = await self._runtime.list_directory(user_id, path)
        return sorted(entries, key=lambda e: (not e.is_dir, e.path))

    async def backup_all(self, user_id: str) -> int:
        """Save the container's current files to durable storage.

        Pending background saves finish first so they cannot overwrite the
        final state.

        Returns:
            Number of files saved
        """
        await self._tasks.drain(user_id)

        with best_effort("sync.reconcile", user_id=user_id):
            await self._runtime.reconcile_duplicates(user_id)

        entries = await self._runtime.list_files(user_id)
        files: dict[str, str] = {}
        for entry in entries:
            if entry.is_dir:
                continue
            try:
                files[entry.path] = await self._runtime.read_file(user_id, entry.path)
            except Exception as e:
                self._log.warning("sync.backup_read_failed", user_id=user_id, path=entry.path, error=str(e))

        saved = await self._storage.backup_all_user_files(user_id, files)
        for path in _empty_directories(entries):
            await self._storage.create_empty_directory_marker(user_id, path)

        self._log.info("sync.backup_all", user_id=user_id, saved=saved, total=len(files))
        return saved
