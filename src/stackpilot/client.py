"""Provisioning client protocol: the engine's only view of a backend.

Calls are synchronous, mirroring the cloud SDKs they wrap; the engine runs
them in the default executor. Adapters translate SDK errors into the error
taxonomy at this boundary:
- TransientBackendError: throttling, 5xx, transport failures (retried)
- ConflictError: the backend reports an operation already in progress
- BackendRejectedError: anything else the backend refused
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .stack import StackRequest


@dataclass(frozen=True)
class RawStackEvent:
    """A backend event, before translation."""

    event_id: str
    logical_id: str
    resource_type: str
    status: str
    reason: str
    timestamp: datetime


@dataclass(frozen=True)
class StackDescription:
    """Current state of a backend stack.

    template is None when the backend cannot export it; callers then fall
    back to the fingerprint tag.
    """

    name: str
    status: str
    template: dict[str, Any] | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)
    last_updated: datetime | None = None
    status_reason: str = ""
    region: str | None = None


@runtime_checkable
class StackReader(Protocol):
    """Read-only stack queries."""

    def describe_stack(self, name: str) -> StackDescription | None:
        """Return the stack, or None if it does not exist."""
        ...

    def exists(self, name: str) -> bool: ...

    def get_outputs(self, name: str) -> dict[str, str]: ...

    def list_stacks(self, tags: Mapping[str, str]) -> list[StackDescription]:
        """Return stacks carrying every given tag."""
        ...


@runtime_checkable
class StackEventSource(Protocol):
    """Stack event history."""

    def describe_events(self, name: str, since: datetime | None) -> list[RawStackEvent]:
        """Return events at or after `since`, in any order."""
        ...


@runtime_checkable
class StackWriter(Protocol):
    """Stack mutations. Each call returns once the backend accepted it."""

    def create(self, request: StackRequest) -> None: ...

    def update(self, request: StackRequest) -> None: ...

    def delete(self, name: str) -> None: ...


@runtime_checkable
class ProvisioningClient(StackReader, StackEventSource, StackWriter, Protocol):
    """Everything the convergence engine needs from a backend."""
