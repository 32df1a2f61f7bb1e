"""DurableStorageAdapter - failure-tolerant facade over a DurableStore.

Every public method returns a success flag or an empty value instead of
raising. Failures are logged with structlog and the caller decides whether
the user needs to hear about it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime

import structlog

from berth.errors import best_effort
from berth.sanitizer import normalize_path
from berth.storage.base import DurableFileRecord, DurableStore, ancestors
from berth.utils.datetime import utcnow

logger = structlog.get_logger()


@dataclass
class Tombstone:
    """A durable delete that failed and must not be resurrected."""

    path: str
    recursive: bool
    created_at: datetime = field(default_factory=utcnow)

    def covers(self, path: str) -> bool:
        if path == self.path:
            return True
        return self.recursive and path.startswith(self.path + "/")

    def hides(self, record: DurableFileRecord) -> bool:
        return self.covers(record.path) and record.updated_at <= self.created_at


class DurableStorageAdapter:
    """Per-user durable file storage that never raises."""

    def __init__(
        self,
        store: DurableStore,
        *,
        max_concurrency: int = 8,
        health_timeout: float = 3.0,
    ) -> None:
        self._store = store
        self._max_concurrency = max(1, max_concurrency)
        self._health_timeout = health_timeout
        self._tombstones: dict[str, list[Tombstone]] = {}
        self._log = logger.bind(component="storage")

    @property
    def store(self) -> DurableStore:
        return self._store

    async def initialize(self) -> None:
        """Prepare the backend. Unlike everything else here, this raises."""
        await self._store.initialize()

    async def close(self) -> None:
        with best_effort("storage.close"):
            await self._store.close()

    def _key(self, user_id: str, path: str) -> str | None:
        key = normalize_path(path)
        if not key:
            self._log.warning("storage.invalid_path", user_id=user_id, path=path)
            return None
        return key

    # Tombstones

    def tombstones(self, user_id: str) -> list[Tombstone]:
        return list(self._tombstones.get(user_id, ()))

    def _add_tombstone(self, user_id: str, path: str, *, recursive: bool) -> None:
        self._tombstones.setdefault(user_id, []).append(Tombstone(path=path, recursive=recursive))
        self._log.warning("storage.tombstone.added", user_id=user_id, path=path, recursive=recursive)

    async def _retry_tombstones(self, user_id: str) -> None:
        """Re-run failed deletes against the records they still hide.

        Records written after a tombstone are newer than the delete and
        are left alone.
        """
        pending = self._tombstones.get(user_id)
        if not pending:
            return

        try:
            records = await self._store.list_records(user_id)
        except Exception as e:
            self._log.warning("storage.tombstone.retry_failed", user_id=user_id, error=str(e))
            return

        remaining: list[Tombstone] = []
        for tombstone in pending:
            stale = [r for r in records if tombstone.hides(r)]
            try:
                for record in stale:
                    if not record.is_directory_marker:
                        await self._store.delete(user_id, record.path)
                markers = [r.path for r in stale if r.is_directory_marker]
                if markers:
                    await self._store.delete_markers(user_id, markers)
            except Exception as e:
                self._log.warning(
                    "storage.tombstone.retry_failed",
                    user_id=user_id,
                    path=tombstone.path,
                    error=str(e),
                )
                remaining.append(tombstone)
            else:
                self._log.info(
                    "storage.tombstone.cleared",
                    user_id=user_id,
                    path=tombstone.path,
                    deleted=len(stale),
                )

        if remaining:
            self._tombstones[user_id] = remaining
        else:
            self._tombstones.pop(user_id, None)

    def _narrow_tombstones(self, user_id: str, key: str) -> None:
        # A successful save of exactly this path supersedes its failed delete
        pending = self._tombstones.get(user_id)
        if not pending:
            return
        kept = [t for t in pending if t.recursive or t.path != key]
        if kept:
            self._tombstones[user_id] = kept
        else:
            self._tombstones.pop(user_id, None)

    def _visible(self, user_id: str, records: list[DurableFileRecord]) -> list[DurableFileRecord]:
        tombstones = self._tombstones.get(user_id)
        if not tombstones:
            return records
        return [r for r in records if not any(t.hides(r) for t in tombstones)]

    # Files

    async def save_file(self, user_id: str, path: str, content: str) -> bool:
        """Upsert a file and drop directory markers above it."""
        key = self._key(user_id, path)
        if key is None:
            return False

        try:
            await self._store.put(user_id, DurableFileRecord(path=key, content=content))
        except Exception as e:
            self._log.warning("storage.save_failed", user_id=user_id, path=key, error=str(e))
            return False

        self._narrow_tombstones(user_id, key)
        parents = ancestors(key)
        if parents:
            with best_effort("storage.marker_cleanup", user_id=user_id, path=key):
                await self._store.delete_markers(user_id, parents)
        return True

    async def load_file(self, user_id: str, path: str) -> str | None:
        key = self._key(user_id, path)
        if key is None:
            return None

        try:
            record = await self._store.get(user_id, key)
        except Exception as e:
            self._log.warning("storage.load_failed", user_id=user_id, path=key, error=str(e))
            return None

        if record is None or not self._visible(user_id, [record]):
            return None
        return record.content

    async def create_empty_directory_marker(self, user_id: str, path: str) -> bool:
        key = self._key(user_id, path)
        if key is None:
            return False

        try:
            await self._store.put(
                user_id,
                DurableFileRecord(path=key, is_directory_marker=True),
            )
        except Exception as e:
            self._log.warning("storage.marker_failed", user_id=user_id, path=key, error=str(e))
            return False
        return True

    async def delete_file(self, user_id: str, path: str) -> bool:
        key = self._key(user_id, path)
        if key is None:
            return False

        try:
            await self._store.delete(user_id, key)
        except Exception as e:
            self._log.warning("storage.delete_failed", user_id=user_id, path=key, error=str(e))
            self._add_tombstone(user_id, key, recursive=False)
            return False
        return True

    async def delete_directory(self, user_id: str, path: str) -> bool:
        """Delete a directory marker and everything stored below it."""
        key = self._key(user_id, path)
        if key is None:
            return False

        try:
            count = await self._store.delete_tree(user_id, key)
        except Exception as e:
            self._log.warning("storage.delete_failed", user_id=user_id, path=key, error=str(e))
            self._add_tombstone(user_id, key, recursive=True)
            return False

        self._log.debug("storage.directory_deleted", user_id=user_id, path=key, count=count)
        return True

    # Bulk

    async def _records(self, user_id: str) -> list[DurableFileRecord] | None:
        await self._retry_tombstones(user_id)
        try:
            records = await self._store.list_records(user_id)
        except Exception as e:
            self._log.warning("storage.restore_failed", user_id=user_id, error=str(e))
            return None
        return self._visible(user_id, records)

    async def restore_all_user_files(self, user_id: str) -> dict[str, str]:
        """Every durable file of a user, keyed by normalized path."""
        records = await self._records(user_id)
        if records is None:
            return {}
        return {r.path: r.content for r in records if not r.is_directory_marker}

    async def list_directory_markers(self, user_id: str) -> list[str]:
        records = await self._records(user_id)
        if records is None:
            return []
        return sorted(r.path for r in records if r.is_directory_marker)

    async def backup_all_user_files(self, user_id: str, files: dict[str, str]) -> int:
        """Upsert many files with bounded concurrency.

        Returns:
            Number of files saved; failures are logged and skipped
        """
        if not files:
            return 0

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _save(path: str, content: str) -> bool:
            async with semaphore:
                return await self.save_file(user_id, path, content)

        results = await asyncio.gather(*(_save(p, c) for p, c in files.items()))
        saved = sum(1 for ok in results if ok)

        if saved < len(files):
            self._log.warning(
                "storage.backup_partial",
                user_id=user_id,
                saved=saved,
                total=len(files),
            )
        else:
            self._log.info("storage.backup_complete", user_id=user_id, saved=saved)
        return saved

    async def is_healthy(self) -> bool:
        try:
            async with asyncio.timeout(self._health_timeout):
                await self._store.ping()
        except Exception as e:
            self._log.warning("storage.health_failed", error=str(e))
            return False
        return True
