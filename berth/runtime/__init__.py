"""Container runtimes."""

from berth.runtime.base import (
    ContainerRecord,
    ContainerRuntime,
    ContainerStatus,
    EntryType,
    ExecutionResult,
    ManifestEntry,
    ShellChannel,
    parse_manifest,
)
from berth.runtime.registry import ContainerRegistry

__all__ = [
    "ContainerRecord",
    "ContainerRegistry",
    "ContainerRuntime",
    "ContainerStatus",
    "EntryType",
    "ExecutionResult",
    "ManifestEntry",
    "ShellChannel",
    "parse_manifest",
]
