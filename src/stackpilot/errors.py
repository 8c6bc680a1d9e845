"""Error taxonomy shared by the engine, orchestrator, tailer and facades.

Each exception class maps to exactly one ErrorKind so that failures raised at
submission time and failures reported through an outcome value read the same
way to the caller.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Classification of a failed operation."""

    CONFLICT = "conflict"  # Another operation is in flight for the same stack
    BACKEND_REJECTED = "backend_rejected"  # Template, quota or permission failure
    CONVERGENCE_FAILED = "convergence_failed"  # Stack reached a failed terminal state
    PRECONDITION = "precondition"  # Missing prerequisite, remediable by the caller
    TIMEOUT = "timeout"  # Local wait bound exceeded, backend still running
    UNREACHABLE = "unreachable"  # Transient errors exhausted the retry budget
    SKIPPED = "skipped"  # Never started because a prerequisite failed
    INTERNAL = "internal"  # A bug in stackpilot or a callback, not a backend failure


class StackpilotError(Exception):
    """Base class for all stackpilot errors."""

    kind: ErrorKind = ErrorKind.BACKEND_REJECTED


class ConflictError(StackpilotError):
    """Raised when an operation is already in flight for the same stack.

    Never retried automatically: the caller decides whether to wait.
    """

    kind = ErrorKind.CONFLICT


class BackendRejectedError(StackpilotError):
    """Raised when the backend refuses a request outright.

    The backend's message is surfaced verbatim.
    """

    kind = ErrorKind.BACKEND_REJECTED

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class ConvergenceFailedError(StackpilotError):
    """Raised when a stack reached a failed or rolled-back terminal state."""

    kind = ErrorKind.CONVERGENCE_FAILED

    def __init__(
        self,
        stack_name: str,
        reason: str,
        logical_id: str | None = None,
        rolled_back: bool = False,
    ) -> None:
        location = f" (resource {logical_id})" if logical_id else ""
        super().__init__(f"Stack {stack_name} failed{location}: {reason}")
        self.stack_name = stack_name
        self.reason = reason
        self.logical_id = logical_id
        self.rolled_back = rolled_back


class InternalError(StackpilotError):
    """Raised for an unexpected error inside stackpilot itself."""

    kind = ErrorKind.INTERNAL


class PreconditionError(StackpilotError):
    """Raised when a prerequisite is missing; the message says how to fix it."""

    kind = ErrorKind.PRECONDITION


class DegradedError(StackpilotError):
    """A partial failure that does not abort the overall operation.

    Reported to observers rather than raised to abort.
    """

    kind = ErrorKind.UNREACHABLE


class TransientBackendError(StackpilotError):
    """Raised by adapters for throttling, 5xx and transport failures."""

    kind = ErrorKind.UNREACHABLE


class StackNotFoundError(StackpilotError):
    """Raised when a stack expected to exist is absent."""

    kind = ErrorKind.PRECONDITION


class LogTailError(StackpilotError):
    """Raised when every log stream exhausted its retries."""

    kind = ErrorKind.UNREACHABLE


class StoreError(StackpilotError):
    """Raised when the configuration store cannot satisfy a request."""

    kind = ErrorKind.PRECONDITION
