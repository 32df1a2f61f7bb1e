"""DurableStore base class - raw per-user blob storage.

Backends store one record per normalized path and raise DurableStorageError
on any failure. Callers outside berth.storage never talk to a backend
directly; they go through DurableStorageAdapter, which never raises.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from berth.utils.datetime import utcnow


@dataclass
class DurableFileRecord:
    """A durable file, or an empty-directory marker."""

    path: str
    content: str = ""
    is_directory_marker: bool = False
    updated_at: datetime = field(default_factory=utcnow)


def ancestors(path: str) -> list[str]:
    """Proper ancestor directories of a normalized path, outermost first.

    >>> ancestors("a/b/c.txt")
    ['a', 'a/b']
    """
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


class DurableStore(ABC):
    """Abstract durable store for user files."""

    async def initialize(self) -> None:
        """Prepare the backend (create tables, check bucket)."""

    async def close(self) -> None:
        """Release backend resources."""

    @abstractmethod
    async def put(self, user_id: str, record: DurableFileRecord) -> None:
        """Create or overwrite a record."""
        ...

    @abstractmethod
    async def get(self, user_id: str, path: str) -> DurableFileRecord | None:
        """Get a file record (not a directory marker)."""
        ...

    @abstractmethod
    async def list_records(self, user_id: str) -> list[DurableFileRecord]:
        """All files and directory markers of a user."""
        ...

    @abstractmethod
    async def delete(self, user_id: str, path: str) -> None:
        """Delete one file record. Missing records are not an error."""
        ...

    @abstractmethod
    async def delete_markers(self, user_id: str, paths: Iterable[str]) -> None:
        """Delete directory markers. Missing markers are not an error."""
        ...

    @abstractmethod
    async def delete_tree(self, user_id: str, path: str) -> int:
        """Delete a directory marker and every record below it.

        Returns:
            Number of records deleted
        """
        ...

    @abstractmethod
    async def ping(self) -> None:
        """Raise DurableStorageError if the backend is unreachable."""
        ...
