"""SessionManager - manages per-user session lifecycle.

Key responsibilities:
- At most one live session per user id; a reconnect supersedes the old one
- Startup: create container -> restore files -> attach shell -> ready
- Teardown: terminating -> wait for in-flight ops -> backup -> remove
- Route terminal I/O and file operations of ready sessions

Locking:
- Lifecycle (connect/disconnect/shutdown) is serialized per user by a
  KeyedLocks entry.
- File operations of one session are serialized by the session's op_lock.
  They never take the lifecycle lock, so a teardown can wait for them.
"""

from __future__ import annotations

import asyncio
import codecs
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

from berth.concurrency import KeyedLocks
from berth.errors import (
    BerthError,
    ContainerProvisionError,
    ContainerUnavailableError,
    SessionNotReadyError,
    SessionSupersededError,
    ValidationError,
    best_effort,
)
from berth.runtime.base import ContainerRuntime
from berth.sessions.client import ClientChannel, Notification
from berth.sessions.models import Session, SessionState
from berth.sync import FileSyncEngine

logger = structlog.get_logger()


def _join(parent: str, name: str) -> str:
    parent = (parent or "").strip().strip("/")
    name = (name or "").strip().strip("/")
    return f"{parent}/{name}" if parent else name


class SessionManager:
    """Manages session lifecycle."""

    def __init__(self, runtime: ContainerRuntime, sync: FileSyncEngine) -> None:
        self._runtime = runtime
        self._sync = sync
        self._sessions: dict[str, Session] = {}
        self._superseded: set[str] = set()
        self._locks = KeyedLocks()
        self._log = logger.bind(component="session_manager")

    def get(self, user_id: str) -> Session | None:
        return self._sessions.get(user_id)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __iter__(self) -> Iterator[Session]:
        return iter(list(self._sessions.values()))

    def __len__(self) -> int:
        return len(self._sessions)

    # Notifications

    async def _notify(self, session: Session, event: Notification, payload: Any = None) -> None:
        client = session.client
        if client is None:
            return
        with best_effort("session.notify", user_id=session.user_id, notify_event=event.value):
            await client.send(event.value, payload)

    async def _pump_shell(self, session: Session) -> None:
        """Forward shell output to the client until the shell exits."""
        shell = session.shell
        if shell is None:
            return

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await shell.read()
                if chunk is None:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self._notify(session, Notification.TERMINAL_DATA, text)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.warning("session.shell_pump_failed", user_id=session.user_id, error=str(e))
        self._log.info("session.shell_closed", user_id=session.user_id)

    # Lifecycle

    async def connect(self, user_id: str, client: ClientChannel) -> Session:
        """Create a ready session for ``user_id``, superseding any live one.

        Raises:
            ContainerProvisionError: Provisioning failed; nothing is left registered
        """
        async with self._locks.hold(user_id):
            previous = self._sessions.get(user_id)
            if previous is not None:
                self._log.info(
                    "session.supersede",
                    user_id=user_id,
                    old_connection=previous.connection_id,
                    new_connection=client.connection_id,
                )
                self._superseded.add(previous.connection_id)
                await self._release_client(previous)
                await self._teardown(previous)

            session = Session(user_id=user_id, connection_id=client.connection_id, client=client)
            self._sessions[user_id] = session
            self._log.info("session.connect", user_id=user_id, connection_id=client.connection_id)

            try:
                session.container = await self._runtime.create_user_container(user_id)
                restored = await self._sync.restore_session(user_id)
                session.shell = await self._runtime.get_shell_stream(user_id)
            except Exception as e:
                error = e if isinstance(e, BerthError) else ContainerProvisionError(str(e))
                self._log.error(
                    "session.provision_failed",
                    user_id=user_id,
                    error=error.message,
                    error_type=type(e).__name__,
                )
                session.transition(SessionState.TERMINATING)
                await self._runtime.stop_and_remove(user_id)
                session.transition(SessionState.CLOSED)
                self._sessions.pop(user_id, None)
                await self._notify(session, Notification.SESSION_ERROR, error.to_dict())
                if isinstance(e, ContainerProvisionError):
                    raise
                raise ContainerProvisionError(error.message, user_id=user_id) from e

            session.transition(SessionState.READY)
            if session.shell is not None:
                session.pump_task = asyncio.create_task(
                    self._pump_shell(session),
                    name=f"shell-pump:{user_id}",
                )
            self._log.info("session.ready", user_id=user_id, restored=restored)

        await self._notify(session, Notification.TERMINAL_READY)
        await self._notify(session, Notification.FILE_REFRESH)
        return session

    async def _release_client(self, session: Session) -> None:
        """Tell a superseded connection it lost the session, then close it."""
        error = SessionSupersededError("Session taken over by a newer connection", user_id=session.user_id)
        await self._notify(session, Notification.SESSION_ERROR, error.to_dict())
        client = session.client
        session.client = None
        if client is not None:
            with best_effort("session.close_superseded", user_id=session.user_id):
                await client.close()

    async def disconnect(self, user_id: str, connection_id: str) -> bool:
        """Tear down the user's session if ``connection_id`` still owns it.

        Returns:
            True if a session was torn down
        """
        async with self._locks.hold(user_id):
            self._superseded.discard(connection_id)
            session = self._sessions.get(user_id)
            if session is None or session.connection_id != connection_id:
                self._log.info(
                    "session.disconnect_ignored",
                    user_id=user_id,
                    connection_id=connection_id,
                )
                return False
            await self._teardown(session)
            return True

    async def _teardown(self, session: Session) -> None:
        """Back up and release a session. Caller holds the lifecycle lock."""
        user_id = session.user_id
        self._log.info("session.terminate", user_id=user_id, connection_id=session.connection_id)
        session.transition(SessionState.TERMINATING)

        # Queued operations were accepted while ready; let them finish first
        async with session.op_lock:
            pass

        if session.pump_task is not None:
            session.pump_task.cancel()
            await asyncio.gather(session.pump_task, return_exceptions=True)
            session.pump_task = None

        if session.container is not None:
            with best_effort("session.backup", user_id=user_id):
                saved = await self._sync.backup_all(user_id)
                self._log.info("session.backup_complete", user_id=user_id, saved=saved)

        await self._runtime.stop_and_remove(user_id)
        session.shell = None
        session.container = None
        session.transition(SessionState.CLOSED)
        if self._sessions.get(user_id) is session:
            del self._sessions[user_id]
        self._log.info("session.closed", user_id=user_id)

    async def shutdown(self) -> None:
        """Tear down every live session."""
        user_ids = list(self._sessions)
        self._log.info("session.shutdown", sessions=len(user_ids))

        async def _close(user_id: str) -> None:
            async with self._locks.hold(user_id):
                session = self._sessions.get(user_id)
                if session is not None:
                    await self._teardown(session)

        await asyncio.gather(*(_close(u) for u in user_ids), return_exceptions=True)
        await self._sync.tasks.drain()

    # Operations

    def _ready(self, user_id: str, connection_id: str | None = None) -> Session:
        """Ready session of ``user_id``, owned by ``connection_id`` when given."""
        if connection_id in self._superseded:
            raise SessionSupersededError(
                "Session taken over by a newer connection",
                user_id=user_id,
                connection_id=connection_id,
            )
        session = self._sessions.get(user_id)
        if session is None or not session.is_ready:
            raise SessionNotReadyError("Container not ready", user_id=user_id)
        if connection_id is not None and session.connection_id != connection_id:
            # A newer connection whose own session is still being provisioned
            raise SessionNotReadyError("Container not ready", user_id=user_id)
        return session

    @asynccontextmanager
    async def _operation(self, user_id: str, connection_id: str | None = None) -> AsyncIterator[Session]:
        session = self._ready(user_id, connection_id)
        async with session.op_lock:
            yield session

    async def change_file(
        self,
        user_id: str,
        path: str,
        content: str | bytes | None,
        *,
        connection_id: str | None = None,
    ) -> str:
        async with self._operation(user_id, connection_id) as session:
            final = await self._sync.apply_change(user_id, path, content)
        await self._notify(session, Notification.FILE_SAVED, {"path": final, "success": True})
        await self._notify(session, Notification.FILE_REFRESH)
        return final

    async def save_file(
        self,
        user_id: str,
        path: str,
        content: str | bytes | None,
        *,
        connection_id: str | None = None,
    ) -> str:
        """Explicit save: like change_file, then flush the container filesystem."""
        async with self._operation(user_id, connection_id) as session:
            final = await self._sync.apply_change(user_id, path, content)
            with best_effort("session.fs_sync", user_id=user_id):
                await self._runtime.run_command(user_id, ["sync"])
        await self._notify(session, Notification.FILE_SAVED, {"path": final, "success": True})
        await self._notify(session, Notification.FILE_REFRESH)
        return final

    async def create_entry(
        self,
        user_id: str,
        path: str,
        kind: str = "file",
        content: str = "",
        parent_path: str = "",
        *,
        connection_id: str | None = None,
    ) -> str:
        full = _join(parent_path, path)
        async with self._operation(user_id, connection_id) as session:
            if kind == "file":
                final = await self._sync.apply_change(user_id, full, content)
            elif kind == "directory":
                final = await self._sync.create_directory(user_id, full)
            else:
                raise ValidationError(f"Invalid type: {kind}", type=kind)
        await self._notify(session, Notification.FILE_REFRESH)
        return final

    async def delete_entry(
        self,
        user_id: str,
        path: str,
        kind: str = "file",
        *,
        connection_id: str | None = None,
    ) -> str:
        async with self._operation(user_id, connection_id) as session:
            final = await self._sync.delete_path(user_id, path, is_directory=kind == "directory")
        await self._notify(session, Notification.FILE_REFRESH)
        return final

    async def rename_entry(
        self,
        user_id: str,
        old_path: str,
        new_path: str,
        *,
        connection_id: str | None = None,
    ) -> tuple[str, str]:
        async with self._operation(user_id, connection_id) as session:
            result = await self._sync.rename_path(user_id, old_path, new_path)
        await self._notify(session, Notification.FILE_REFRESH)
        return result

    async def terminal_input(self, user_id: str, data: str, *, connection_id: str | None = None) -> None:
        session = self._ready(user_id, connection_id)
        if session.shell is None:
            raise ContainerUnavailableError("Shell not attached", user_id=user_id)
        await session.shell.write(data.encode("utf-8"))

    async def list_tree(self, user_id: str, *, connection_id: str | None = None) -> dict[str, Any]:
        async with self._operation(user_id, connection_id):
            return await self._sync.list_tree(user_id)

    async def get_file_content(self, user_id: str, path: str, *, connection_id: str | None = None) -> str:
        async with self._operation(user_id, connection_id):
            return await self._sync.read_file(user_id, path)

    async def list_directory(
        self,
        user_id: str,
        path: str = "",
        *,
        connection_id: str | None = None,
    ) -> list[dict[str, str]]:
        async with self._operation(user_id, connection_id):
            entries = await self._sync.list_directory(user_id, path)
        return [
            {
                "name": entry.path.rsplit("/", 1)[-1],
                "path": entry.path,
                "type": "directory" if entry.is_dir else "file",
            }
            for entry in entries
        ]
