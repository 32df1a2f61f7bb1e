"""Concurrency primitives."""

from berth.concurrency.locks import KeyedLocks
from berth.concurrency.tasks import BackgroundTasks

__all__ = ["BackgroundTasks", "KeyedLocks"]
