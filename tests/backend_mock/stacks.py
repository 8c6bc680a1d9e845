"""In-memory stack backend with simulated event progression.

Each describe_stack call on an in-progress stack advances it by one step, so
a poll loop sees resources start and finish one at a time. Timestamps come
from a deterministic clock that advances one second per event.

Statuses use the CREATE_IN_PROGRESS / UPDATE_ROLLBACK_COMPLETE vocabulary so
rollback paths are exercised end to end.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from stackpilot.client import RawStackEvent, StackDescription
from stackpilot.errors import BackendRejectedError, ConflictError, TransientBackendError
from stackpilot.stack import StackRequest

EPOCH = datetime(2024, 1, 1, tzinfo=UTC)

BUCKET_TYPES = ("Microsoft.Storage/storageAccounts",)
BUCKET_NOT_EMPTY_REASON = "BucketNotEmpty: the storage account you tried to delete is not empty"


@dataclass
class MockResource:
    logical_id: str
    resource_type: str


@dataclass
class MockStack:
    """Backend state of one stack."""

    name: str
    region: str
    template: dict[str, Any]
    parameters: dict[str, Any]
    tags: dict[str, str]
    resources: list[MockResource]
    status: str
    last_updated: datetime
    outputs: dict[str, str] = field(default_factory=dict)
    events: list[RawStackEvent] = field(default_factory=list)
    # (logical_id, resource_type, status, reason) or ("", "", stack_status, reason)
    pending: list[tuple[str, str, str, str]] = field(default_factory=list)
    pending_outputs: dict[str, str] = field(default_factory=dict)
    status_reason: str = ""


def template_resources(template: Mapping[str, Any]) -> list[MockResource]:
    """Resources of a template, with readable logical ids.

    Mapping-style templates use their keys. ARM templates use a plain name,
    or the last segment of the type when the name is an expression.
    """
    raw = template.get("resources", [])
    if isinstance(raw, Mapping):
        return [
            MockResource(str(key), str((value or {}).get("type", "Custom::Resource")))
            for key, value in raw.items()
        ]

    resources: list[MockResource] = []
    seen: dict[str, int] = {}
    for item in raw:
        resource_type = str(item.get("type", "Custom::Resource"))
        name = item.get("name")
        if not isinstance(name, str) or name.startswith("["):
            name = resource_type.rsplit("/", 1)[-1]
        count = seen.get(name, 0)
        seen[name] = count + 1
        resources.append(MockResource(name if count == 0 else f"{name}{count}", resource_type))
    return resources


class MockStackBackend:
    """ProvisioningClient double.

    Failure injection:
        fail_resource(logical_id, reason): the next create/update fails there
        block_bucket_delete(stack_name): deleting the stack fails on its bucket
        fail_transient(count): the next `count` reads raise TransientBackendError
        reject_next(message): the next mutation raises BackendRejectedError
        pause(): in-progress stacks stop advancing until resume()
    """

    def __init__(
        self,
        *,
        export_templates: bool = True,
        outputs: Callable[[StackRequest], dict[str, str]] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._stacks: dict[str, MockStack] = {}
        self._clock = EPOCH
        self._ids = itertools.count(1)
        self._export_templates = export_templates
        self._outputs = outputs

        self._failures: dict[str, str] = {}
        self._blocked_buckets: set[str] = set()
        self._transient_failures = 0
        self._reject_message: str | None = None
        self._paused = False

        self.create_calls: list[str] = []
        self.update_calls: list[str] = []
        self.delete_calls: list[str] = []
        self.output_overrides: dict[str, dict[str, str]] = {}

    # -------------------------------------------------------------------------
    # Test controls
    # -------------------------------------------------------------------------

    def fail_resource(self, logical_id: str, reason: str) -> None:
        with self._lock:
            self._failures[logical_id] = reason

    def block_bucket_delete(self, stack_name: str) -> None:
        with self._lock:
            self._blocked_buckets.add(stack_name)

    def unblock_bucket_delete(self, stack_name: str) -> None:
        with self._lock:
            self._blocked_buckets.discard(stack_name)

    def fail_transient(self, count: int) -> None:
        with self._lock:
            self._transient_failures = count

    def reject_next(self, message: str) -> None:
        with self._lock:
            self._reject_message = message

    def pause(self) -> None:
        with self._lock:
            self._paused = True

    def resume(self) -> None:
        with self._lock:
            self._paused = False

    def set_outputs(self, stack_name: str, outputs: dict[str, str]) -> None:
        with self._lock:
            self.output_overrides[stack_name] = dict(outputs)

    def stack(self, name: str) -> MockStack | None:
        with self._lock:
            return self._stacks.get(name)

    def stack_names(self) -> list[str]:
        with self._lock:
            return sorted(self._stacks)

    def settle(self) -> None:
        """Run every pending step of every stack to completion."""
        with self._lock:
            for stack in self._stacks.values():
                while stack.pending:
                    self._advance(stack)

    # -------------------------------------------------------------------------
    # StackReader
    # -------------------------------------------------------------------------

    def describe_stack(self, name: str) -> StackDescription | None:
        with self._lock:
            self._maybe_fail_transient()
            stack = self._stacks.get(name)
            if stack is None:
                return None
            if stack.pending and not self._paused:
                self._advance(stack)
            return self._describe(stack)

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._stacks

    def get_outputs(self, name: str) -> dict[str, str]:
        with self._lock:
            stack = self._stacks.get(name)
            return dict(stack.outputs) if stack else {}

    def list_stacks(self, tags: Mapping[str, str]) -> list[StackDescription]:
        with self._lock:
            return [
                self._describe(stack)
                for _, stack in sorted(self._stacks.items())
                if all(stack.tags.get(key) == value for key, value in tags.items())
            ]

    # -------------------------------------------------------------------------
    # StackEventSource
    # -------------------------------------------------------------------------

    def describe_events(self, name: str, since: datetime | None) -> list[RawStackEvent]:
        with self._lock:
            self._maybe_fail_transient()
            stack = self._stacks.get(name)
            if stack is None:
                return []
            # Newest first, as real backends return them
            return [
                event
                for event in reversed(stack.events)
                if since is None or event.timestamp >= since
            ]

    # -------------------------------------------------------------------------
    # StackWriter
    # -------------------------------------------------------------------------

    def create(self, request: StackRequest) -> None:
        with self._lock:
            self._maybe_reject()
            name = request.stack_name
            existing = self._stacks.get(name)
            if existing is not None and existing.status != "DELETE_COMPLETE":
                raise ConflictError(f"Stack {name} already exists")
            self.create_calls.append(name)

            stack = MockStack(
                name=name,
                region=request.region,
                template=copy.deepcopy(dict(request.template)),
                parameters=request.parameters_dict(),
                tags=request.backend_tags(),
                resources=template_resources(request.template),
                status="CREATE_IN_PROGRESS",
                last_updated=self._tick(),
            )
            self._stacks[name] = stack
            self._plan_apply(stack, "CREATE", request)

    def update(self, request: StackRequest) -> None:
        with self._lock:
            self._maybe_reject()
            name = request.stack_name
            stack = self._stacks.get(name)
            if stack is None:
                raise BackendRejectedError(f"Stack {name} does not exist", code="NotFound")
            if stack.pending:
                raise ConflictError(f"Stack {name} is in {stack.status}")
            self.update_calls.append(name)

            stack.template = copy.deepcopy(dict(request.template))
            stack.parameters = request.parameters_dict()
            stack.tags = request.backend_tags()
            stack.resources = template_resources(request.template)
            stack.status = "UPDATE_IN_PROGRESS"
            stack.status_reason = ""
            stack.last_updated = self._tick()
            self._plan_apply(stack, "UPDATE", request)

    def delete(self, name: str) -> None:
        with self._lock:
            self._maybe_reject()
            stack = self._stacks.get(name)
            if stack is None:
                return
            if stack.pending:
                raise ConflictError(f"Stack {name} is in {stack.status}")
            self.delete_calls.append(name)

            stack.status = "DELETE_IN_PROGRESS"
            stack.status_reason = ""
            stack.last_updated = self._tick()
            blocked = name in self._blocked_buckets
            for resource in reversed(stack.resources):
                stack.pending.append(
                    (resource.logical_id, resource.resource_type, "DELETE_IN_PROGRESS", "")
                )
                if blocked and resource.resource_type in BUCKET_TYPES:
                    stack.pending.append(
                        (
                            resource.logical_id,
                            resource.resource_type,
                            "DELETE_FAILED",
                            BUCKET_NOT_EMPTY_REASON,
                        )
                    )
                    stack.pending.append(("", "", "DELETE_FAILED", "Resources failed to delete"))
                    return
                stack.pending.append(
                    (resource.logical_id, resource.resource_type, "DELETE_COMPLETE", "")
                )
            stack.pending.append(("", "", "DELETE_COMPLETE", ""))

    # -------------------------------------------------------------------------
    # Simulation
    # -------------------------------------------------------------------------

    def _plan_apply(self, stack: MockStack, verb: str, request: StackRequest) -> None:
        stack.pending.clear()
        stack.pending_outputs = self._outputs_for(request)
        completed: list[MockResource] = []

        for resource in stack.resources:
            stack.pending.append(
                (resource.logical_id, resource.resource_type, f"{verb}_IN_PROGRESS", "")
            )
            reason = self._failures.pop(resource.logical_id, None)
            if reason is not None:
                stack.pending.append(
                    (resource.logical_id, resource.resource_type, f"{verb}_FAILED", reason)
                )
                # Resources running alongside are cancelled after the root failure
                for other in stack.resources[len(completed) + 1 :]:
                    stack.pending.append(
                        (
                            other.logical_id,
                            other.resource_type,
                            f"{verb}_FAILED",
                            "Resource creation cancelled",
                        )
                    )
                rollback = "ROLLBACK" if verb == "CREATE" else "UPDATE_ROLLBACK"
                stack.pending.append(("", "", f"{rollback}_IN_PROGRESS", reason))
                for done in reversed(completed):
                    stack.pending.append(
                        (done.logical_id, done.resource_type, "DELETE_COMPLETE", "")
                    )
                stack.pending.append(("", "", f"{rollback}_COMPLETE", reason))
                stack.pending_outputs = dict(stack.outputs)
                return
            stack.pending.append(
                (resource.logical_id, resource.resource_type, f"{verb}_COMPLETE", "")
            )
            completed.append(resource)

        stack.pending.append(("", "", f"{verb}_COMPLETE", ""))

    def _advance(self, stack: MockStack) -> None:
        logical_id, resource_type, status, reason = stack.pending.pop(0)
        timestamp = self._tick()

        if not logical_id:
            stack.status = status
            stack.status_reason = reason
            if status.endswith("_COMPLETE") and "ROLLBACK" not in status:
                stack.outputs = (
                    {} if status == "DELETE_COMPLETE" else dict(stack.pending_outputs)
                )
            logical_id, resource_type = stack.name, "Stack"

        stack.events.append(
            RawStackEvent(
                event_id=f"{stack.name}-{next(self._ids)}",
                logical_id=logical_id,
                resource_type=resource_type,
                status=status,
                reason=reason,
                timestamp=timestamp,
            )
        )

    def _outputs_for(self, request: StackRequest) -> dict[str, str]:
        name = request.stack_name
        if name in self.output_overrides:
            return dict(self.output_overrides[name])
        if self._outputs is not None:
            return self._outputs(request)
        return {key: f"{name}/{key}" for key in request.template.get("outputs", {})}

    def _describe(self, stack: MockStack) -> StackDescription:
        return StackDescription(
            name=stack.name,
            status=stack.status,
            template=copy.deepcopy(stack.template) if self._export_templates else None,
            parameters=dict(stack.parameters),
            outputs=dict(stack.outputs),
            tags=dict(stack.tags),
            last_updated=stack.last_updated,
            status_reason=stack.status_reason,
            region=stack.region,
        )

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def _maybe_fail_transient(self) -> None:
        if self._transient_failures > 0:
            self._transient_failures -= 1
            raise TransientBackendError("Simulated throttling (HTTP 429)")

    def _maybe_reject(self) -> None:
        if self._reject_message is not None:
            message, self._reject_message = self._reject_message, None
            raise BackendRejectedError(message, code="InvalidTemplate")
