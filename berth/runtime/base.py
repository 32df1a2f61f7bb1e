"""ContainerRuntime base class - exclusive control of per-user containers.

Runtime is responsible ONLY for container processes and their filesystem.
It does NOT handle:
- Path normalization of client input (see berth.sanitizer)
- Durable storage
- Session state

Paths passed to file operations are relative to the container workdir and
are used verbatim, so duplicates created outside the sync engine (e.g. from
the terminal) can still be addressed and reconciled.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

import structlog

from berth.errors import PathNotFoundError
from berth.sanitizer import normalize_path
from berth.utils.datetime import utcnow

logger = structlog.get_logger()


class ContainerStatus(str, Enum):
    """Container status from the runtime's perspective."""

    BUILDING = "building"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class EntryType(str, Enum):
    FILE = "f"
    DIRECTORY = "d"


@dataclass(frozen=True, slots=True)
class ManifestEntry:
    """One line of the container manifest: ``path|type``."""

    path: str
    type: EntryType
    mtime: float = 0.0

    @property
    def is_dir(self) -> bool:
        return self.type == EntryType.DIRECTORY

    def __str__(self) -> str:
        return f"{self.path}|{self.type.value}"


@dataclass
class ExecutionResult:
    """Result of a one-shot command."""

    success: bool
    output: str
    error: str | None = None
    exit_code: int | None = None


@dataclass
class ContainerRecord:
    """Live container owned by the runtime."""

    user_id: str
    name: str
    container_id: str | None = None
    status: ContainerStatus = ContainerStatus.BUILDING
    created_at: datetime = field(default_factory=utcnow)
    shell: "ShellChannel | None" = None


class ShellChannel(ABC):
    """Duplex byte stream to the interactive shell."""

    @abstractmethod
    async def read(self) -> bytes | None:
        """Next output chunk, ``None`` once the shell has exited."""
        ...

    @abstractmethod
    async def write(self, data: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


def parse_manifest(output: str, *, base: str = "") -> list[ManifestEntry]:
    """Parse ``find -printf '%P|%y|%T@\\n'`` output.

    Lines are split from the right so ``|`` inside names survives.
    Entries other than files and directories are skipped.
    """
    entries: list[ManifestEntry] = []
    for line in output.splitlines():
        if not line:
            continue
        parts = line.rsplit("|", 2)
        if len(parts) != 3:
            logger.warning("runtime.manifest.invalid_line", line=line)
            continue
        name, kind, mtime = parts
        if not name or kind not in ("f", "d"):
            continue
        try:
            ts = float(mtime)
        except ValueError:
            ts = 0.0
        path = f"{base}/{name}" if base else name
        entries.append(ManifestEntry(path=path, type=EntryType(kind), mtime=ts))
    return entries


class ContainerRuntime(ABC):
    """Abstract runtime for per-user containers."""

    # Lifecycle

    @abstractmethod
    async def build_base_image(self) -> bool:
        """Build the shared base image once.

        Returns:
            True if an image was built, False if it already existed
        """
        ...

    @abstractmethod
    async def create_user_container(self, user_id: str) -> ContainerRecord:
        """Start the user's container, replacing a stale one with the same name.

        Raises:
            ContainerProvisionError: Engine unreachable, timeout or resource failure
        """
        ...

    @abstractmethod
    async def stop_and_remove(self, user_id: str) -> None:
        """Best-effort teardown. Never raises."""
        ...

    @abstractmethod
    async def cleanup_orphans(self) -> int:
        """Force-remove every managed container. Returns the number removed."""
        ...

    async def close(self) -> None:
        """Release engine connections."""

    @abstractmethod
    def get_record(self, user_id: str) -> ContainerRecord | None:
        ...

    @abstractmethod
    async def is_healthy(self) -> bool:
        ...

    @abstractmethod
    async def inspect(self, user_id: str) -> dict[str, Any] | None:
        """Raw engine inspection of the user's container, ``None`` if absent."""
        ...

    # Streams and commands

    @abstractmethod
    async def get_shell_stream(self, user_id: str) -> ShellChannel | None:
        """Interactive shell of a running container, attached on first use."""
        ...

    @abstractmethod
    async def execute_command(self, user_id: str, command: str) -> AsyncIterator[bytes] | None:
        """Run a shell command, returning its combined output stream."""
        ...

    @abstractmethod
    async def run_command(self, user_id: str, argv: list[str]) -> ExecutionResult:
        """Run a command to completion (bounded by the command timeout)."""
        ...

    # Filesystem

    @abstractmethod
    async def write_file(self, user_id: str, path: str, content: str) -> None:
        ...

    @abstractmethod
    async def read_file(self, user_id: str, path: str) -> str:
        ...

    @abstractmethod
    async def list_files(self, user_id: str) -> list[ManifestEntry]:
        ...

    @abstractmethod
    async def list_directory(self, user_id: str, path: str) -> list[ManifestEntry]:
        ...

    @abstractmethod
    async def create_directory(self, user_id: str, path: str) -> None:
        ...

    @abstractmethod
    async def delete_path(self, user_id: str, path: str) -> None:
        ...

    @abstractmethod
    async def rename_path(self, user_id: str, old: str, new: str) -> None:
        ...

    async def is_directory(self, user_id: str, path: str) -> bool:
        try:
            await self.list_directory(user_id, path)
        except PathNotFoundError:
            return False
        return True

    async def reconcile_duplicates(self, user_id: str) -> int:
        """Merge file entries whose normalized paths collide.

        The most recently written entry wins and ends up at the normalized
        spelling; superseded raw entries are deleted.

        Returns:
            Number of superseded entries removed
        """
        entries = await self.list_files(user_id)

        groups: dict[str, list[ManifestEntry]] = {}
        for entry in entries:
            if entry.is_dir:
                continue
            key = normalize_path(entry.path)
            if not key:
                continue
            groups.setdefault(key, []).append(entry)

        removed = 0
        for key, group in groups.items():
            if len(group) == 1:
                continue

            # Newest first; ties prefer the already-normalized spelling
            group.sort(key=lambda e: (e.mtime, e.path == key), reverse=True)
            keep, stale = group[0], group[1:]

            for entry in stale:
                if entry.path == keep.path:
                    continue
                try:
                    await self.delete_path(user_id, entry.path)
                    removed += 1
                except PathNotFoundError:
                    pass

            if keep.path != key:
                await self.rename_path(user_id, keep.path, key)

            logger.info(
                "runtime.reconcile.merged",
                user_id=user_id,
                path=key,
                kept=keep.path,
                removed=[e.path for e in stale],
            )

        return removed
