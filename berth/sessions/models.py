"""Session data model.

Session represents one user's live sandbox.
- 1 user id = at most 1 live Session = 1 container
- Keyed by the durable user id; the transport connection id is only an
  attribute and changes whenever the user reconnects
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from berth.errors import SessionStateError
from berth.runtime.base import ContainerRecord, ShellChannel
from berth.sessions.client import ClientChannel
from berth.utils.datetime import utcnow


class SessionState(str, Enum):
    """Session lifecycle state."""

    PROVISIONING = "provisioning"  # Container being created and restored
    READY = "ready"  # Accepting file and terminal operations
    TERMINATING = "terminating"  # Backup and teardown in progress
    CLOSED = "closed"  # Released


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.PROVISIONING: frozenset({SessionState.READY, SessionState.TERMINATING}),
    SessionState.READY: frozenset({SessionState.TERMINATING}),
    SessionState.TERMINATING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass(eq=False)
class Session:
    """Live session of one user."""

    user_id: str
    connection_id: str
    state: SessionState = SessionState.PROVISIONING
    container: ContainerRecord | None = None
    shell: ShellChannel | None = None
    client: ClientChannel | None = field(default=None, repr=False)
    created_at: datetime = field(default_factory=utcnow)
    ready_at: datetime | None = None

    # File operations of one session run one at a time, in receipt order
    op_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    pump_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def is_live(self) -> bool:
        """Check if session still owns (or is acquiring) a container."""
        return self.state in (SessionState.PROVISIONING, SessionState.READY)

    def transition(self, target: SessionState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise SessionStateError(
                f"Illegal session transition {self.state.value} -> {target.value}",
                user_id=self.user_id,
            )
        self.state = target
        if target == SessionState.READY:
            self.ready_at = utcnow()
