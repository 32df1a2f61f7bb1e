"""Berth error hierarchy.

Every error carries a stable ``code`` (sent to clients), a human readable
``message``, an HTTP-ish ``status_code`` and free-form ``details``.

Propagation policy:
- Container-facing errors are reported to the client that triggered them.
- DurableStorageError is caught and logged where it happens.
- Provisioning errors abort only that session's setup.
- ``best_effort`` marks operations whose failures must never propagate.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

logger = structlog.get_logger()


class BerthError(Exception):
    """Base class for all Berth errors."""

    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str = "", **details: Any) -> None:
        self.message = message or self.code
        self.details: dict[str, Any] = {k: v for k, v in details.items() if v is not None}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(BerthError):
    code = "validation_error"
    status_code = 400


class InvalidCredential(BerthError):
    """Credential rejected before any session exists."""

    code = "invalid_credential"
    status_code = 401


class InvalidToken(InvalidCredential):
    code = "invalid_token"


class ContainerProvisionError(BerthError):
    """Engine unreachable, resources exhausted or stale container unresolved."""

    code = "container_provision_failed"
    status_code = 503


class ContainerUnavailableError(BerthError):
    """No running container for the user, or the engine failed mid-operation."""

    code = "container_unavailable"
    status_code = 503


class PathNotFoundError(BerthError):
    code = "path_not_found"
    status_code = 404


class CommandTimeoutError(BerthError):
    code = "command_timeout"
    status_code = 504


class DurableStorageError(BerthError):
    """Raised by durable store backends; never crosses the adapter boundary."""

    code = "durable_storage_error"
    status_code = 502


class SessionNotReadyError(BerthError):
    """Operation arrived before the session reached ready."""

    code = "session_not_ready"
    status_code = 503


class SessionSupersededError(SessionNotReadyError):
    """The connection no longer owns the user's session."""

    code = "superseded"
    status_code = 409


class SessionStateError(BerthError):
    """Illegal session state transition."""

    code = "session_state_error"
    status_code = 409


@contextmanager
def best_effort(event: str, **context: Any) -> Iterator[None]:
    """Run a block whose failure is logged and swallowed.

    Usage:
        with best_effort("docker.remove_stale", name=name):
            await container.delete(force=True)
    """
    try:
        yield
    except Exception as e:
        logger.warning(f"{event}.failed", error=str(e), error_type=type(e).__name__, **context)
