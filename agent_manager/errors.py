"""
Error taxonomy for the agent manager.

Every failure raised by the session layer or the task store is one of the
classes below. The dashboard maps ``kind`` to an HTTP status code.
"""

from typing import Any, Optional

__all__ = [
    'AgentManagerError',
    'ResourceExhausted',
    'SpawnFailure',
    'StartupTimeout',
    'NotFound',
    'InvalidRequest',
    'StoreWriteFailure',
]


class AgentManagerError(Exception):
    """Base class for all agent manager errors."""

    kind = "error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": str(self)}


class ResourceExhausted(AgentManagerError):
    """Raised when no session port is free in the configured range."""

    kind = "resource_exhausted"

    def __init__(self, base_port: int, port_range: int):
        self.base_port = base_port
        self.port_range = port_range
        super().__init__(
            f"No available ports for new session in range "
            f"{base_port}-{base_port + port_range - 1}"
        )


class SpawnFailure(AgentManagerError):
    """Raised when the session subprocess could not be started."""

    kind = "spawn_failure"

    def __init__(self, reason: str, returncode: Optional[int] = None):
        self.reason = reason
        self.returncode = returncode
        super().__init__(f"Session failed to start: {reason}")


class StartupTimeout(AgentManagerError):
    """Raised when a session never became reachable within the retry budget."""

    kind = "startup_timeout"

    def __init__(self, session_id: str, port: int, attempts: int):
        self.session_id = session_id
        self.port = port
        self.attempts = attempts
        super().__init__(
            f"Session {session_id} did not become reachable on port {port} "
            f"after {attempts} attempts"
        )


class NotFound(AgentManagerError):
    """Raised for an unknown session id or task index."""

    kind = "not_found"


class InvalidRequest(AgentManagerError, ValueError):
    """Raised when a field or value in a request is malformed"""

    kind = "invalid_request"

    def __init__(self, field: str, reason: str, value: Any = None):
        self.field = field
        self.reason = reason
        self.value = value
        super().__init__(f"Invalid '{field}': {reason}")


class StoreWriteFailure(AgentManagerError):
    """Raised when the task store could not commit a write."""

    kind = "store_write_failure"
