from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..contracts.v1 import ErrorInfo


class TerminalError(Exception):
    """Base error for session and process operations."""

    code = "terminal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        if code:
            self.code = code
        self.message = message
        self.details = details or {}

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, details=dict(self.details))


class NoShellAvailable(TerminalError):
    code = "no_shell_available"


class SpawnExhausted(TerminalError):
    code = "spawn_exhausted"

    def __init__(self, tried: List[str], last_error: str):
        super().__init__(
            f"all shells failed to spawn ({', '.join(tried) or 'none'}): {last_error}",
            details={"tried": list(tried), "last_error": last_error},
        )
        self.tried = list(tried)
        self.last_error = last_error


class CircuitBreakerOpen(TerminalError):
    code = "circuit_breaker_open"

    def __init__(self, project_id: str, retry_after: float):
        super().__init__(
            f"session creation paused for project {project_id}; retry in {int(retry_after)}s",
            details={"project_id": project_id, "retry_after": round(float(retry_after), 3)},
        )
        self.retry_after = float(retry_after)


class CreationRateExceeded(TerminalError):
    code = "creation_rate_exceeded"

    def __init__(self, project_id: str, limit: int, window: float):
        super().__init__(
            f"too many sessions created for project {project_id} ({limit} per {int(window)}s)",
            details={"project_id": project_id, "limit": limit, "window_seconds": window},
        )


class CapacityExceeded(TerminalError):
    code = "capacity_exceeded"


class SuspensionExpired(TerminalError):
    code = "suspension_expired"


class SessionNotFound(TerminalError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"session not found: {session_id}", details={"session_id": session_id})


class InvalidTransition(TerminalError):
    code = "invalid_transition"

    def __init__(self, session_id: str, current: str, target: str):
        super().__init__(
            f"session {session_id} cannot move from {current} to {target}",
            details={"session_id": session_id, "from": current, "to": target},
        )
