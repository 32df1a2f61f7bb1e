"""Tracked fire-and-forget background tasks.

Durable saves are spawned here so that:
- task references are kept until completion (no silent GC of pending saves)
- a teardown can wait for one user's pending work before its final backup
- shutdown can drain everything
"""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

import structlog

logger = structlog.get_logger()


class BackgroundTasks:
    """Background task set grouped by key (user id)."""

    def __init__(self) -> None:
        self._tasks: dict[str, set[asyncio.Task]] = {}
        self._log = logger.bind(service="background_tasks")

    def pending(self, key: str | None = None) -> int:
        if key is not None:
            return len(self._tasks.get(key, ()))
        return sum(len(tasks) for tasks in self._tasks.values())

    def spawn(self, key: str, coro: Coroutine[Any, Any, Any], *, name: str | None = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.setdefault(key, set()).add(task)
        task.add_done_callback(lambda t: self._on_done(key, t))
        return task

    def _on_done(self, key: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(key)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[key]

        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._log.error(
                "background_task.failed",
                key=key,
                task=task.get_name(),
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self, key: str | None = None) -> None:
        """Wait for pending tasks of ``key`` (or all keys) to finish."""
        while True:
            if key is not None:
                tasks = list(self._tasks.get(key, ()))
            else:
                tasks = [t for group in self._tasks.values() for t in group]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = [t for group in self._tasks.values() for t in group]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
