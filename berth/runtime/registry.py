"""Container registry - user id -> live ContainerRecord.

The only structure mutated by several concurrent session lifecycles. All
mutations for one user happen while holding that user's lock.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager

from berth.concurrency.locks import KeyedLocks
from berth.runtime.base import ContainerRecord


class ContainerRegistry:
    """Owned registry of live containers, keyed by user id."""

    def __init__(self) -> None:
        self._records: dict[str, ContainerRecord] = {}
        self._locks = KeyedLocks()

    @asynccontextmanager
    async def lock(self, user_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(user_id):
            yield

    def get(self, user_id: str) -> ContainerRecord | None:
        return self._records.get(user_id)

    def put(self, record: ContainerRecord) -> None:
        self._records[record.user_id] = record

    def pop(self, user_id: str) -> ContainerRecord | None:
        return self._records.pop(user_id, None)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._records

    def __iter__(self) -> Iterator[ContainerRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)
