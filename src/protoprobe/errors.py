# src/protoprobe/errors.py
"""Error taxonomy of the harness.

Step-level errors (prepare, execution, timeout, lost connection) are caught
by the runner and recorded as observations. Only configuration errors, which
are raised before any connection is attempted, are allowed to end the
process.
"""

from enum import Enum
from typing import Optional


class ProtoprobeError(Exception):
    """Base class for all harness errors."""

    kind: str = "error"

    def __init__(self, message: str, *, sqlstate: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sqlstate = sqlstate


class ConfigurationError(ProtoprobeError):
    """Invalid or missing configuration (unknown target kind, missing credentials)."""

    kind = "configuration"


class ScenarioDefinitionError(ConfigurationError):
    """A scenario is malformed and cannot be run against any backend."""

    kind = "scenario-definition"


class ConnectionErrorKind(str, Enum):
    UNREACHABLE = "unreachable"
    AUTH_FAILED = "auth-failed"
    UNSUPPORTED_TARGET = "unsupported-target"


class ConnectionError(ProtoprobeError):
    """The backend session could not be established or was lost."""

    kind = "connection"

    def __init__(self, message: str, error_kind: ConnectionErrorKind = ConnectionErrorKind.UNREACHABLE,
                 *, sqlstate: Optional[str] = None):
        super().__init__(message, sqlstate=sqlstate)
        self.error_kind = error_kind

    def __str__(self):
        return f"{self.error_kind.value}: {self.message}"


class PrepareError(ProtoprobeError):
    """The backend rejected a statement's text or parameter arity."""

    kind = "prepare"


class ExecutionError(ProtoprobeError):
    """Runtime error while executing a statement (constraint violation etc.)."""

    kind = "execution"


class TimeoutError(ProtoprobeError):
    """A backend call exceeded the configured per-call timeout."""

    kind = "timeout"


class UnsupportedStepError(ProtoprobeError):
    """The connected backend cannot perform the requested step."""

    kind = "unsupported"


def is_infrastructure_error(error: Exception) -> bool:
    """Connection and timeout failures are harness failures, not findings."""
    return isinstance(error, (ConnectionError, TimeoutError))
