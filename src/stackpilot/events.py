"""Typed resource events, terminal outcomes and the per-request event stream.

Backends report statuses in their own vocabulary. Two are understood:
- CloudFormation-like: CREATE_IN_PROGRESS, UPDATE_COMPLETE, ROLLBACK_COMPLETE, ...
- Azure Resource Manager provisioning states: Running, Succeeded, Failed, ...

Everything past this module sees only ResourceStatus and StackPhase.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Union

from .errors import (
    BackendRejectedError,
    ConflictError,
    ConvergenceFailedError,
    ErrorKind,
    InternalError,
    PreconditionError,
    StackpilotError,
    TransientBackendError,
)

if TYPE_CHECKING:
    from .stack import StackRequest

logger = logging.getLogger(__name__)


class ResourceStatus(str, Enum):
    """Status of one resource within a stack operation."""

    IN_PROGRESS = "InProgress"
    COMPLETE = "Complete"
    FAILED = "Failed"
    ROLLBACK_IN_PROGRESS = "RollbackInProgress"
    ROLLBACK_COMPLETE = "RollbackComplete"


class StackPhase(str, Enum):
    """Whole-stack phase derived from the backend's raw status."""

    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"
    DELETED = "deleted"

    @property
    def is_terminal(self) -> bool:
        return self != StackPhase.IN_PROGRESS


# ARM provisioning states
ARM_SUCCEEDED_STATES: frozenset[str] = frozenset({"SUCCEEDED"})
ARM_FAILED_STATES: frozenset[str] = frozenset({"FAILED", "CANCELED", "CANCELLED"})
ARM_DELETED_STATES: frozenset[str] = frozenset({"DELETED"})


def classify_stack_status(raw_status: str) -> StackPhase:
    """Map a raw whole-stack status to a StackPhase.

    Rollback is checked before completion: UPDATE_ROLLBACK_COMPLETE is a
    failure, not a success. Unknown statuses are treated as in progress; the
    local timeout bounds the wait.
    """
    status = raw_status.strip().upper()

    if status in ARM_SUCCEEDED_STATES:
        return StackPhase.COMPLETE
    if status in ARM_FAILED_STATES:
        return StackPhase.FAILED
    if status in ARM_DELETED_STATES or status == "DELETE_COMPLETE":
        return StackPhase.DELETED

    if "ROLLBACK" in status:
        if status.endswith("_COMPLETE"):
            return StackPhase.ROLLED_BACK
        if status.endswith("_FAILED"):
            return StackPhase.FAILED
        return StackPhase.IN_PROGRESS

    if status.endswith("_FAILED"):
        return StackPhase.FAILED
    if status.endswith("_COMPLETE"):
        return StackPhase.COMPLETE

    return StackPhase.IN_PROGRESS


def translate_resource_status(raw_status: str) -> ResourceStatus:
    """Map a raw per-resource status to a ResourceStatus."""
    status = raw_status.strip().upper()

    if "ROLLBACK" in status:
        if status.endswith("_FAILED"):
            return ResourceStatus.FAILED
        if status.endswith("_COMPLETE"):
            return ResourceStatus.ROLLBACK_COMPLETE
        return ResourceStatus.ROLLBACK_IN_PROGRESS

    if status in ARM_SUCCEEDED_STATES or status in ARM_DELETED_STATES:
        return ResourceStatus.COMPLETE
    if status in ARM_FAILED_STATES:
        return ResourceStatus.FAILED
    if status.endswith("_FAILED"):
        return ResourceStatus.FAILED
    if status.endswith("_COMPLETE") or status.endswith("_SKIPPED"):
        return ResourceStatus.COMPLETE

    return ResourceStatus.IN_PROGRESS


@dataclass(frozen=True)
class ResourceEvent:
    """A typed, time-stamped status change of one resource."""

    logical_id: str
    resource_type: str
    status: ResourceStatus
    reason: str
    timestamp: datetime
    event_id: str = ""

    @property
    def failed(self) -> bool:
        return self.status == ResourceStatus.FAILED

    def __str__(self) -> str:
        reason = f": {self.reason}" if self.reason else ""
        return f"{self.logical_id} ({self.resource_type}) {self.status.value}{reason}"


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class Success:
    """The stack reached its desired state."""

    outputs: Mapping[str, str] = field(default_factory=dict)
    changed: bool = True

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure:
    """The operation ended without reaching the desired state."""

    reason: str
    kind: ErrorKind = ErrorKind.CONVERGENCE_FAILED
    rolled_back: bool = False
    logical_id: str | None = None

    @property
    def ok(self) -> bool:
        return False

    def to_error(self, stack_name: str) -> StackpilotError:
        """Build the exception matching this failure's kind."""
        if self.kind == ErrorKind.CONVERGENCE_FAILED:
            return ConvergenceFailedError(
                stack_name, self.reason, logical_id=self.logical_id, rolled_back=self.rolled_back
            )
        if self.kind == ErrorKind.CONFLICT:
            return ConflictError(self.reason)
        if self.kind == ErrorKind.PRECONDITION:
            return PreconditionError(self.reason)
        if self.kind in (ErrorKind.UNREACHABLE, ErrorKind.TIMEOUT):
            return TransientBackendError(self.reason)
        if self.kind == ErrorKind.INTERNAL:
            return InternalError(self.reason)
        return BackendRejectedError(self.reason)

    @classmethod
    def from_error(cls, error: StackpilotError) -> Failure:
        if isinstance(error, ConvergenceFailedError):
            return cls(
                reason=error.reason,
                kind=error.kind,
                rolled_back=error.rolled_back,
                logical_id=error.logical_id,
            )
        return cls(reason=str(error), kind=error.kind)


ConvergenceOutcome = Union[Success, Failure]


# =============================================================================
# Event stream
# =============================================================================


class Convergence:
    """Handle on one in-flight stack operation.

    Exposes the ordered event stream and the single terminal outcome. The
    engine publishes into it; callers consume from it. Detaching (not
    iterating, or abandoning the outcome) never affects the backend.
    """

    def __init__(self, request: StackRequest | None, stack_name: str, action: str) -> None:
        self.request = request
        self.stack_name = stack_name
        self.action = action
        self._queue: asyncio.Queue[ResourceEvent | None] = asyncio.Queue()
        self._outcome: asyncio.Future[ConvergenceOutcome] = (
            asyncio.get_running_loop().create_future()
        )
        self._last_timestamp: datetime | None = None
        self._seen_ids: set[str] = set()
        self._latest: dict[str, ResourceEvent] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def done(self) -> bool:
        return self._outcome.done()

    @property
    def last_timestamp(self) -> datetime | None:
        return self._last_timestamp

    def resource_states(self) -> dict[str, ResourceEvent]:
        """Latest published event per logical id."""
        return dict(self._latest)

    def publish(self, event: ResourceEvent) -> bool:
        """Publish an event unless it was seen or would go back in time.

        Returns:
            True if the event was delivered to the stream.
        """
        if self.done:
            return False
        if event.event_id and event.event_id in self._seen_ids:
            return False
        if self._last_timestamp is not None and event.timestamp < self._last_timestamp:
            logger.debug(
                "Dropping out-of-order event for %s",
                event.logical_id,
                extra={"stack": self.stack_name, "event_id": event.event_id},
            )
            return False

        if event.event_id:
            self._seen_ids.add(event.event_id)
        self._last_timestamp = event.timestamp
        self._latest[event.logical_id] = event
        self._queue.put_nowait(event)
        return True

    def finish(self, outcome: ConvergenceOutcome) -> None:
        """Deliver the outcome and close the stream. Later calls are ignored."""
        if self._outcome.done():
            logger.debug("Outcome already delivered for %s", self.stack_name)
            return
        self._outcome.set_result(outcome)
        self._queue.put_nowait(None)

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    async def events(self) -> AsyncIterator[ResourceEvent]:
        """Iterate published events until the stream closes."""
        while True:
            event = await self._queue.get()
            if event is None:
                # Leave the sentinel for any later iterator
                self._queue.put_nowait(None)
                return
            yield event

    async def outcome(self) -> ConvergenceOutcome:
        """Wait for the terminal outcome."""
        return await asyncio.shield(self._outcome)
