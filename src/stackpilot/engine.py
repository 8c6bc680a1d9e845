"""Convergence engine: drives stack operations from submission to a terminal state.

FLOW (converge):
1. Describe the stack for the request's key
2. Absent -> create; present and stable -> diff; in progress -> ConflictError
3. No diff -> Success(changed=False) without touching the backend
4. Submit, then poll events with backoff until the whole-stack status is terminal
5. Publish translated, deduplicated, time-ordered events; deliver the outcome once

KEY DESIGN DECISIONS:
1. Conflicts are detected against backend state, not a local lock. Other
   processes may be driving the same stack.
2. The root cause of a failure is the earliest-timestamped Failed resource
   event. Rollback events that follow only describe the cleanup.
3. The local timeout detaches the wait; the backend operation is never cancelled.
4. Failures after submission are outcome values. Only submission-time errors
   (conflict, rejection) are raised to the caller of converge().
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from .client import ProvisioningClient, RawStackEvent, StackDescription
from .config import EngineConfig
from .errors import (
    BackendRejectedError,
    ConflictError,
    ErrorKind,
    StackNotFoundError,
    StackpilotError,
    TransientBackendError,
)
from .events import (
    Convergence,
    ConvergenceOutcome,
    Failure,
    ResourceEvent,
    ResourceStatus,
    StackPhase,
    Success,
    classify_stack_status,
    translate_resource_status,
)
from .stack import StackKind, StackRequest, compute_changes, generate_stack_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_DELETE = "delete"
ACTION_NONE = "none"

# Resource types that hold objects and refuse deletion while non-empty
BUCKET_RESOURCE_TYPES: frozenset[str] = frozenset({
    "Microsoft.Storage/storageAccounts",
    "Microsoft.Storage/storageAccounts/blobServices/containers",
})

BUCKET_NOT_EMPTY_MARKERS: tuple[str, ...] = (
    "not empty",
    "bucketnotempty",
    "containernotempty",
    "must be empty",
)


def is_bucket_not_empty(event: ResourceEvent) -> bool:
    """Check whether a failed delete was blocked by a non-empty bucket."""
    if event.resource_type not in BUCKET_RESOURCE_TYPES:
        return False
    reason = event.reason.lower()
    return any(marker in reason for marker in BUCKET_NOT_EMPTY_MARKERS)


def find_root_cause(failed_events: list[ResourceEvent]) -> ResourceEvent | None:
    """Return the earliest Failed event; ties keep stream order."""
    if not failed_events:
        return None
    return min(failed_events, key=lambda event: event.timestamp)


class ConvergenceEngine:
    """Idempotent create/update/delete of stacks with an observable event stream.

    The engine holds no per-stack state between operations; the backend is
    the source of truth.
    """

    def __init__(self, client: ProvisioningClient, config: EngineConfig | None = None) -> None:
        self._client = client
        self._config = config or EngineConfig()

    @property
    def config(self) -> EngineConfig:
        return self._config

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def converge(self, request: StackRequest) -> Convergence:
        """Bring the stack for `request` to the requested state.

        Args:
            request: Desired stack state.

        Returns:
            A Convergence handle; its outcome is delivered exactly once.

        Raises:
            ConflictError: An operation is already in flight for this stack.
            BackendRejectedError: The backend refused the submission.
            TransientBackendError: The backend stayed unreachable during submission.
        """
        stack_name = request.stack_name
        description = await self._call_with_retry(self._client.describe_stack, stack_name)

        action = ACTION_CREATE
        if description is not None:
            phase = classify_stack_status(description.status)
            if phase == StackPhase.IN_PROGRESS:
                raise ConflictError(
                    f"Stack {stack_name} has an operation in progress ({description.status}); "
                    f"wait for it to finish before deploying {request.describe()}"
                )
            if phase in (StackPhase.FAILED, StackPhase.ROLLED_BACK):
                # Tags may already carry the new fingerprint; the resources do not
                logger.info(
                    "Stack left in a failed state, redeploying",
                    extra={"stack": stack_name, "status": description.status},
                )
                action = ACTION_UPDATE
            elif phase != StackPhase.DELETED:
                changes = compute_changes(
                    request, description.template, description.parameters, description.tags
                )
                if not changes:
                    logger.info(
                        "Stack already converged",
                        extra={"stack": stack_name, "kind": request.kind.value},
                    )
                    convergence = Convergence(request, stack_name, ACTION_NONE)
                    convergence.finish(Success(outputs=dict(description.outputs), changed=False))
                    return convergence
                logger.info(
                    "Stack drift detected",
                    extra={"stack": stack_name, "changes": changes[:20]},
                )
                action = ACTION_UPDATE

        previous = description if action == ACTION_UPDATE else None
        since, baseline = await self._baseline(stack_name, previous)

        submit = self._client.create if action == ACTION_CREATE else self._client.update
        await self._call_with_retry(submit, request)

        logger.info(
            "Stack operation submitted",
            extra={"stack": stack_name, "action": action, "kind": request.kind.value},
        )

        convergence = Convergence(request, stack_name, action)
        task = asyncio.create_task(self._watch(convergence, since, baseline))
        convergence.attach(task)
        return convergence

    async def delete(self, kind: StackKind, name: str, region: str) -> Convergence:
        """Delete the stack for (kind, name, region).

        An absent stack is already deleted: Success(changed=False).

        Raises:
            ConflictError: An operation is already in flight for this stack.
            BackendRejectedError: The backend refused the delete.
        """
        stack_name = generate_stack_name(kind, name, region)
        description = await self._call_with_retry(self._client.describe_stack, stack_name)

        if description is None or classify_stack_status(description.status) == StackPhase.DELETED:
            logger.info("Stack already absent", extra={"stack": stack_name})
            convergence = Convergence(None, stack_name, ACTION_NONE)
            convergence.finish(Success(outputs={}, changed=False))
            return convergence

        if classify_stack_status(description.status) == StackPhase.IN_PROGRESS:
            raise ConflictError(
                f"Stack {stack_name} has an operation in progress ({description.status}); "
                f"wait for it to finish before deleting"
            )

        since, baseline = await self._baseline(stack_name, description)
        await self._call_with_retry(self._client.delete, stack_name)

        logger.info("Stack delete submitted", extra={"stack": stack_name, "kind": kind.value})

        convergence = Convergence(None, stack_name, ACTION_DELETE)
        task = asyncio.create_task(self._watch(convergence, since, baseline))
        convergence.attach(task)
        return convergence

    async def converge_and_wait(
        self,
        request: StackRequest,
        on_event: Callable[[ResourceEvent], None] | None = None,
    ) -> ConvergenceOutcome:
        """Converge, drain the event stream and return the outcome."""
        convergence = await self.converge(request)
        return await self.wait(convergence, on_event)

    async def delete_and_wait(
        self,
        kind: StackKind,
        name: str,
        region: str,
        on_event: Callable[[ResourceEvent], None] | None = None,
    ) -> ConvergenceOutcome:
        """Delete, drain the event stream and return the outcome."""
        convergence = await self.delete(kind, name, region)
        return await self.wait(convergence, on_event)

    @staticmethod
    async def wait(
        convergence: Convergence,
        on_event: Callable[[ResourceEvent], None] | None = None,
    ) -> ConvergenceOutcome:
        callback_failed = False
        async for event in convergence.events():
            if on_event is None or callback_failed:
                continue
            try:
                on_event(event)
            except Exception:
                # Keep draining: the backend operation runs on regardless
                logger.exception(
                    "Event callback failed; further events are not forwarded",
                    extra={"stack": convergence.stack_name, "event_id": event.event_id},
                )
                callback_failed = True
        return await convergence.outcome()

    async def describe(self, kind: StackKind, name: str, region: str) -> StackDescription | None:
        """Describe the stack for a target, or None if absent."""
        stack_name = generate_stack_name(kind, name, region)
        return await self._call_with_retry(self._client.describe_stack, stack_name)

    async def outputs(self, kind: StackKind, name: str, region: str) -> dict[str, str]:
        """Return the outputs of a target's stack.

        Raises:
            StackNotFoundError: If the stack does not exist.
        """
        description = await self.describe(kind, name, region)
        if description is None:
            raise StackNotFoundError(
                f"No {kind.value} stack named '{name}' in {region}; deploy it first"
            )
        return dict(description.outputs)

    async def list_stacks(self, tags: dict[str, str]) -> list[StackDescription]:
        """List stacks carrying all the given tags."""
        return await self._call_with_retry(self._client.list_stacks, tags)

    # -------------------------------------------------------------------------
    # Watching
    # -------------------------------------------------------------------------

    async def _baseline(
        self, stack_name: str, description: StackDescription | None
    ) -> tuple[datetime | None, set[str]]:
        """Events already present before we mutate; never republished."""
        if description is None or description.last_updated is None:
            return None, set()
        since = description.last_updated
        previous = await self._call_with_retry(self._client.describe_events, stack_name, since)
        return since, {event.event_id for event in previous}

    async def _watch(
        self, convergence: Convergence, since: datetime | None, seen: set[str]
    ) -> None:
        """Poll until terminal and deliver the outcome. Never raises."""
        try:
            outcome = await self._poll_until_terminal(convergence, since, seen)
        except StackpilotError as e:
            logger.error(
                "Stack operation failed while polling",
                extra={"stack": convergence.stack_name, "error": str(e)},
            )
            outcome = Failure.from_error(e)
        except Exception as e:
            logger.exception(
                "Unexpected error while polling", extra={"stack": convergence.stack_name}
            )
            outcome = Failure(reason=f"Unexpected error: {e}", kind=ErrorKind.INTERNAL)

        if isinstance(outcome, Success):
            logger.info(
                "Stack operation succeeded",
                extra={"stack": convergence.stack_name, "action": convergence.action},
            )
        else:
            logger.warning(
                "Stack operation did not succeed",
                extra={
                    "stack": convergence.stack_name,
                    "action": convergence.action,
                    "kind": outcome.kind.value,
                    "reason": outcome.reason,
                },
            )
        convergence.finish(outcome)

    async def _poll_until_terminal(
        self, convergence: Convergence, since: datetime | None, seen: set[str]
    ) -> ConvergenceOutcome:
        loop = asyncio.get_event_loop()
        config = self._config
        stack_name = convergence.stack_name
        deadline = loop.time() + config.convergence_timeout_seconds
        interval = config.poll_interval_seconds
        consecutive_errors = 0
        failed_events: list[ResourceEvent] = []

        while True:
            try:
                raw_events = await self._call(self._client.describe_events, stack_name, since)
                description = await self._call(self._client.describe_stack, stack_name)
                consecutive_errors = 0
            except TransientBackendError as e:
                consecutive_errors += 1
                if consecutive_errors > config.max_poll_retries:
                    return Failure(
                        reason=(
                            f"Backend unreachable after {config.max_poll_retries} retries "
                            f"while watching {stack_name}: {e}"
                        ),
                        kind=ErrorKind.UNREACHABLE,
                    )
                wait_time = self._backoff(consecutive_errors)
                logger.warning(
                    "Transient error polling stack, retrying",
                    extra={
                        "stack": stack_name,
                        "attempt": consecutive_errors,
                        "max_attempts": config.max_poll_retries,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                if loop.time() + wait_time > deadline:
                    return self._timeout(stack_name)
                await asyncio.sleep(wait_time)
                continue

            published = self._publish(convergence, raw_events, seen, failed_events)
            if convergence.last_timestamp is not None:
                since = convergence.last_timestamp

            phase = (
                StackPhase.DELETED
                if description is None
                else classify_stack_status(description.status)
            )

            if self._is_terminal(convergence.action, phase):
                await self._final_drain(convergence, since, seen, failed_events)
                return self._outcome(convergence, phase, description, failed_events)

            remaining = deadline - loop.time()
            if remaining <= 0:
                return self._timeout(stack_name)

            if published:
                interval = config.poll_interval_seconds
            else:
                interval = min(
                    interval * config.poll_backoff_multiplier, config.poll_max_interval_seconds
                )
            await asyncio.sleep(min(interval, remaining))

    async def _final_drain(
        self,
        convergence: Convergence,
        since: datetime | None,
        seen: set[str],
        failed_events: list[ResourceEvent],
    ) -> None:
        """Collect events written together with the terminal status."""
        try:
            raw_events = await self._call(
                self._client.describe_events, convergence.stack_name, since
            )
        except TransientBackendError as e:
            logger.warning(
                "Final event fetch failed; stream may be incomplete",
                extra={"stack": convergence.stack_name, "error": str(e)},
            )
            return
        self._publish(convergence, raw_events, seen, failed_events)

    @staticmethod
    def _publish(
        convergence: Convergence,
        raw_events: list[RawStackEvent],
        seen: set[str],
        failed_events: list[ResourceEvent],
    ) -> int:
        """Translate, order and publish new events. Returns how many were published."""
        fresh = [raw for raw in raw_events if raw.event_id not in seen]
        fresh.sort(key=lambda raw: (raw.timestamp, raw.event_id))

        published = 0
        for raw in fresh:
            seen.add(raw.event_id)
            event = ResourceEvent(
                logical_id=raw.logical_id,
                resource_type=raw.resource_type,
                status=translate_resource_status(raw.status),
                reason=raw.reason,
                timestamp=raw.timestamp,
                event_id=raw.event_id,
            )
            if event.status == ResourceStatus.FAILED:
                failed_events.append(event)
            if convergence.publish(event):
                published += 1
        return published

    @staticmethod
    def _is_terminal(action: str, phase: StackPhase) -> bool:
        if action == ACTION_DELETE:
            # A stale COMPLETE status before the delete registers is not terminal
            return phase in (StackPhase.DELETED, StackPhase.FAILED, StackPhase.ROLLED_BACK)
        return phase.is_terminal

    def _outcome(
        self,
        convergence: Convergence,
        phase: StackPhase,
        description: StackDescription | None,
        failed_events: list[ResourceEvent],
    ) -> ConvergenceOutcome:
        stack_name = convergence.stack_name

        if convergence.action == ACTION_DELETE:
            if phase == StackPhase.DELETED:
                return Success(outputs={}, changed=True)
            blocking = [event for event in failed_events if is_bucket_not_empty(event)]
            if blocking:
                bucket = find_root_cause(blocking)
                assert bucket is not None
                return Failure(
                    reason=(
                        f"Bucket {bucket.logical_id} in stack {stack_name} is not empty: "
                        f"{bucket.reason}. Empty the bucket and retry the delete."
                    ),
                    kind=ErrorKind.PRECONDITION,
                    logical_id=bucket.logical_id,
                )
            return self._failure(stack_name, phase, description, failed_events)

        if phase == StackPhase.COMPLETE:
            outputs = dict(description.outputs) if description is not None else {}
            return Success(outputs=outputs, changed=True)

        if phase == StackPhase.DELETED:
            return Failure(
                reason=f"Stack {stack_name} was deleted before it converged",
                kind=ErrorKind.CONVERGENCE_FAILED,
            )

        return self._failure(stack_name, phase, description, failed_events)

    @staticmethod
    def _failure(
        stack_name: str,
        phase: StackPhase,
        description: StackDescription | None,
        failed_events: list[ResourceEvent],
    ) -> Failure:
        root = find_root_cause(failed_events)
        status_reason = description.status_reason if description is not None else ""
        status = description.status if description is not None else "unknown"

        if root is not None:
            reason = root.reason or status_reason or f"{root.logical_id} failed"
            logical_id: str | None = root.logical_id
        else:
            reason = status_reason or f"Stack {stack_name} ended in status {status}"
            logical_id = None

        return Failure(
            reason=reason,
            kind=ErrorKind.CONVERGENCE_FAILED,
            rolled_back=phase == StackPhase.ROLLED_BACK,
            logical_id=logical_id,
        )

    def _timeout(self, stack_name: str) -> Failure:
        return Failure(
            reason=(
                f"Timed out after {self._config.convergence_timeout_seconds}s waiting for "
                f"{stack_name}; the backend operation continues"
            ),
            kind=ErrorKind.TIMEOUT,
        )

    # -------------------------------------------------------------------------
    # Backend calls
    # -------------------------------------------------------------------------

    def _backoff(self, attempt: int) -> float:
        # Exponential backoff with jitter
        backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
        jitter = random.uniform(0, backoff * 0.2)
        return backoff + jitter

    async def _call(self, func: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def _call_with_retry(self, func: Callable[..., T], *args: Any) -> T:
        """Call a blocking client method, retrying transient errors.

        Raises:
            TransientBackendError: If every attempt failed transiently.
            BackendRejectedError: If the backend refused the call.
            ConflictError: If the backend reported a conflicting operation.
        """
        max_attempts = self._config.max_poll_retries + 1
        last_error: TransientBackendError | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                return await self._call(func, *args)
            except TransientBackendError as e:
                last_error = e
                if attempt < max_attempts:
                    wait_time = self._backoff(attempt)
                    logger.warning(
                        "Transient backend error, retrying",
                        extra={
                            "operation": getattr(func, "__name__", str(func)),
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)
            except BackendRejectedError as e:
                logger.error(
                    "Backend rejected request",
                    extra={
                        "operation": getattr(func, "__name__", str(func)),
                        "code": e.code,
                        "error": str(e),
                    },
                )
                raise

        assert last_error is not None, "Retry loop completed without setting last_error"
        raise last_error
