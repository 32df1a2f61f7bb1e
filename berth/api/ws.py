"""WebSocket gateway.

Frames in both directions are JSON objects ``{"event": ..., "data": ...}``.
The token travels in the query string (``/ws?token=...``).

Provisioning runs in the background while the receive loop is already
live, so early file events get a ``file:error`` instead of hanging.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from berth.errors import (
    BerthError,
    InvalidCredential,
    SessionNotReadyError,
    SessionSupersededError,
    ValidationError,
)
from berth.sessions import Notification, SessionManager

logger = structlog.get_logger()

router = APIRouter()

NOT_READY_BANNER = "Container not ready yet, please wait...\r\n$ "


class WebSocketChannel:
    """ClientChannel over a FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self._websocket = websocket
        self._connection_id = uuid.uuid4().hex
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def connection_id(self) -> str:
        return self._connection_id

    async def send(self, event: str, payload: Any = None) -> None:
        async with self._send_lock:
            await self._websocket.send_json({"event": event, "data": payload})

    async def close(self, code: int = 1000) -> None:
        if self._closed:
            return
        self._closed = True
        await self._websocket.close(code=code)


def _fields(data: Any, *names: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise ValidationError("Event payload must be an object")
    return {name: data.get(name) for name in names}


class Gateway:
    """Routes client events of one connection to the SessionManager."""

    QUERIES = {"file:tree", "file:content", "file:directory"}

    def __init__(self, sessions: SessionManager, user_id: str, channel: WebSocketChannel) -> None:
        self._sessions = sessions
        self._user_id = user_id
        self._channel = channel
        self._connection_id = channel.connection_id
        self._log = logger.bind(component="gateway", user_id=user_id, connection_id=channel.connection_id)
        self._handlers = {
            "file:change": self.on_file_change,
            "file:save": self.on_file_save,
            "file:create": self.on_file_create,
            "file:delete": self.on_file_delete,
            "file:rename": self.on_file_rename,
            "terminal:data": self.on_terminal_data,
            "terminal:paste": self.on_terminal_data,
            "terminal:write": self.on_terminal_write,
            "file:tree": self.on_file_tree,
            "file:content": self.on_file_content,
            "file:directory": self.on_file_directory,
        }

    async def _send(self, event: str, payload: Any = None) -> None:
        try:
            await self._channel.send(event, payload)
        except Exception as e:
            self._log.debug("gateway.send_failed", send_event=event, error=str(e))

    async def dispatch(self, event: str, data: Any) -> None:
        handler = self._handlers.get(event)
        if handler is None:
            await self._send(Notification.FILE_ERROR.value, {"error": f"Unknown event: {event}"})
            return

        try:
            await handler(data)
        except BerthError as e:
            await self._report(event, data, e)
        except Exception as e:
            self._log.exception("gateway.handler_failed", client_event=event, error=str(e))
            await self._report(event, data, BerthError(str(e)))

    async def _report(self, event: str, data: Any, error: BerthError) -> None:
        path = data.get("path") if isinstance(data, dict) else None
        self._log.info("gateway.event_failed", client_event=event, code=error.code, error=error.message)

        if event in self.QUERIES:
            await self._send(f"{event}:result", {"path": path, "error": error.to_dict()})
        elif event == "file:save":
            await self._send(
                Notification.FILE_SAVED.value,
                {"path": path, "success": False, "error": error.message},
            )
        elif event.startswith("terminal:"):
            if isinstance(error, SessionNotReadyError) and not isinstance(error, SessionSupersededError):
                if event == "terminal:write":
                    await self._send(Notification.TERMINAL_DATA.value, NOT_READY_BANNER)
                return
            await self._send(Notification.SESSION_ERROR.value, error.to_dict())
        else:
            await self._send(
                Notification.FILE_ERROR.value,
                {"path": path, "error": error.message, "code": error.code},
            )

    # Handlers

    async def on_file_change(self, data: Any) -> None:
        f = _fields(data, "path", "content")
        await self._sessions.change_file(
            self._user_id, f["path"] or "", f["content"], connection_id=self._connection_id
        )

    async def on_file_save(self, data: Any) -> None:
        f = _fields(data, "path", "content")
        await self._sessions.save_file(
            self._user_id, f["path"] or "", f["content"], connection_id=self._connection_id
        )

    async def on_file_create(self, data: Any) -> None:
        f = _fields(data, "path", "type", "content", "parentPath")
        await self._sessions.create_entry(
            self._user_id,
            f["path"] or "",
            kind=f["type"] or "file",
            content=f["content"] or "",
            parent_path=f["parentPath"] or "",
            connection_id=self._connection_id,
        )

    async def on_file_delete(self, data: Any) -> None:
        f = _fields(data, "path", "type")
        await self._sessions.delete_entry(
            self._user_id, f["path"] or "", kind=f["type"] or "file", connection_id=self._connection_id
        )

    async def on_file_rename(self, data: Any) -> None:
        f = _fields(data, "oldPath", "newPath")
        await self._sessions.rename_entry(
            self._user_id, f["oldPath"] or "", f["newPath"] or "", connection_id=self._connection_id
        )

    async def on_terminal_data(self, data: Any) -> None:
        await self._sessions.terminal_input(self._user_id, str(data or ""), connection_id=self._connection_id)

    async def on_terminal_write(self, data: Any) -> None:
        await self._sessions.terminal_input(self._user_id, f"{data or ''}\n", connection_id=self._connection_id)

    async def on_file_tree(self, data: Any) -> None:
        tree = await self._sessions.list_tree(self._user_id, connection_id=self._connection_id)
        await self._send("file:tree:result", {"tree": tree})

    async def on_file_content(self, data: Any) -> None:
        path = _fields(data, "path")["path"] or ""
        content = await self._sessions.get_file_content(self._user_id, path, connection_id=self._connection_id)
        await self._send("file:content:result", {"path": path, "content": content})

    async def on_file_directory(self, data: Any) -> None:
        path = (data.get("path") if isinstance(data, dict) else None) or ""
        items = await self._sessions.list_directory(self._user_id, path, connection_id=self._connection_id)
        await self._send("file:directory:result", {"path": path, "items": items})


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: str | None = Query(None)) -> None:
    services = websocket.app.state.services
    await websocket.accept()
    channel = WebSocketChannel(websocket)

    if not token:
        await channel.send(Notification.AUTH_REQUIRED.value, "Authentication token required")
        await channel.close(code=1008)
        return

    try:
        user_id = services.verifier.verify(token)
    except InvalidCredential:
        await channel.send(Notification.AUTH_INVALID.value, "Invalid authentication token")
        await channel.close(code=1008)
        return

    log = logger.bind(user_id=user_id, connection_id=channel.connection_id)
    log.info("gateway.connected")

    async def _provision() -> None:
        try:
            await services.sessions.connect(user_id, channel)
        except BerthError as e:
            log.warning("gateway.provision_failed", error=e.message)

    provisioning = asyncio.create_task(_provision(), name=f"provision:{user_id}")
    gateway = Gateway(services.sessions, user_id, channel)
    pending: set[asyncio.Task] = set()

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await gateway.dispatch("", None)
                continue
            if not isinstance(message, dict):
                await gateway.dispatch("", None)
                continue

            # Handlers start in receipt order; the session op lock keeps that order
            task = asyncio.create_task(gateway.dispatch(str(message.get("event", "")), message.get("data")))
            pending.add(task)
            task.add_done_callback(pending.discard)
    except WebSocketDisconnect:
        log.info("gateway.disconnected")
    finally:
        # Runs to completion even if the endpoint task is cancelled
        await asyncio.shield(_release(services.sessions, user_id, channel, provisioning, pending))


async def _release(
    sessions: SessionManager,
    user_id: str,
    channel: WebSocketChannel,
    provisioning: asyncio.Task,
    pending: set[asyncio.Task],
) -> None:
    await asyncio.wait([provisioning])
    if pending:
        await asyncio.wait(list(pending))
    await sessions.disconnect(user_id, channel.connection_id)
