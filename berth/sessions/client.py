"""Client transport seam.

The session layer only needs to push named events to whoever is connected;
the WebSocket gateway in berth.api.ws is the shipped adapter.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Protocol, runtime_checkable


class Notification(str, Enum):
    """Server -> client event names."""

    TERMINAL_READY = "terminal:ready"
    TERMINAL_DATA = "terminal:data"
    AUTH_REQUIRED = "auth:required"
    AUTH_INVALID = "auth:invalid"
    FILE_ERROR = "file:error"
    FILE_SAVED = "file:saved"
    FILE_REFRESH = "file:refresh"
    SESSION_ERROR = "session:error"


@runtime_checkable
class ClientChannel(Protocol):
    """A connected client."""

    @property
    def connection_id(self) -> str: ...

    async def send(self, event: str, payload: Any = None) -> None:
        """Deliver one event. Raises if the connection is gone."""
        ...

    async def close(self) -> None: ...
