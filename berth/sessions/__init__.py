"""Per-user sessions."""

from berth.sessions.client import ClientChannel, Notification
from berth.sessions.manager import SessionManager
from berth.sessions.models import Session, SessionState

__all__ = [
    "ClientChannel",
    "Notification",
    "Session",
    "SessionManager",
    "SessionState",
]
