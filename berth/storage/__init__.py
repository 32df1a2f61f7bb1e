"""Durable storage for user files."""

from __future__ import annotations

from berth.config import StorageConfig
from berth.storage.adapter import DurableStorageAdapter, Tombstone
from berth.storage.base import DurableFileRecord, DurableStore


def build_store(config: StorageConfig) -> DurableStore:
    """Create the configured DurableStore backend."""
    if config.backend == "s3":
        from berth.storage.s3 import S3DurableStore

        return S3DurableStore(config.s3)

    from berth.storage.sql import SqlDurableStore

    return SqlDurableStore(config.database)


def build_adapter(config: StorageConfig) -> DurableStorageAdapter:
    return DurableStorageAdapter(
        build_store(config),
        max_concurrency=config.max_concurrency,
        health_timeout=config.health_timeout,
    )


__all__ = [
    "DurableFileRecord",
    "DurableStorageAdapter",
    "DurableStore",
    "Tombstone",
    "build_adapter",
    "build_store",
]
