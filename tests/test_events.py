"""Tests for status translation, outcomes and the event stream."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from stackpilot.errors import (
    BackendRejectedError,
    ConflictError,
    ConvergenceFailedError,
    ErrorKind,
    InternalError,
    PreconditionError,
    TransientBackendError,
)
from stackpilot.events import (
    Convergence,
    Failure,
    ResourceEvent,
    ResourceStatus,
    StackPhase,
    Success,
    classify_stack_status,
    translate_resource_status,
)

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def event(logical_id: str, seconds: int, event_id: str = "", failed: bool = False) -> ResourceEvent:
    return ResourceEvent(
        logical_id=logical_id,
        resource_type="Custom::Thing",
        status=ResourceStatus.FAILED if failed else ResourceStatus.COMPLETE,
        reason="",
        timestamp=T0 + timedelta(seconds=seconds),
        event_id=event_id,
    )


class TestClassifyStackStatus:
    """Tests for whole-stack status classification."""

    @pytest.mark.parametrize(
        ("raw", "phase"),
        [
            ("CREATE_IN_PROGRESS", StackPhase.IN_PROGRESS),
            ("CREATE_COMPLETE", StackPhase.COMPLETE),
            ("UPDATE_COMPLETE", StackPhase.COMPLETE),
            ("ROLLBACK_IN_PROGRESS", StackPhase.IN_PROGRESS),
            ("ROLLBACK_COMPLETE", StackPhase.ROLLED_BACK),
            ("UPDATE_ROLLBACK_COMPLETE", StackPhase.ROLLED_BACK),
            ("UPDATE_ROLLBACK_FAILED", StackPhase.FAILED),
            ("DELETE_FAILED", StackPhase.FAILED),
            ("DELETE_COMPLETE", StackPhase.DELETED),
            ("Succeeded", StackPhase.COMPLETE),
            ("Failed", StackPhase.FAILED),
            ("Canceled", StackPhase.FAILED),
            ("Deleted", StackPhase.DELETED),
            ("Running", StackPhase.IN_PROGRESS),
            ("Deleting", StackPhase.IN_PROGRESS),
        ],
    )
    def test_classify(self, raw: str, phase: StackPhase) -> None:
        """Test both backend vocabularies map onto StackPhase."""
        assert classify_stack_status(raw) == phase

    def test_terminal_phases(self) -> None:
        """Test only in-progress is non-terminal."""
        assert not StackPhase.IN_PROGRESS.is_terminal
        assert StackPhase.ROLLED_BACK.is_terminal
        assert StackPhase.DELETED.is_terminal


class TestTranslateResourceStatus:
    """Tests for per-resource status translation."""

    @pytest.mark.parametrize(
        ("raw", "status"),
        [
            ("CREATE_IN_PROGRESS", ResourceStatus.IN_PROGRESS),
            ("CREATE_COMPLETE", ResourceStatus.COMPLETE),
            ("CREATE_FAILED", ResourceStatus.FAILED),
            ("DELETE_SKIPPED", ResourceStatus.COMPLETE),
            ("ROLLBACK_IN_PROGRESS", ResourceStatus.ROLLBACK_IN_PROGRESS),
            ("UPDATE_ROLLBACK_COMPLETE", ResourceStatus.ROLLBACK_COMPLETE),
            ("ROLLBACK_FAILED", ResourceStatus.FAILED),
            ("Succeeded", ResourceStatus.COMPLETE),
            ("Failed", ResourceStatus.FAILED),
            ("Accepted", ResourceStatus.IN_PROGRESS),
        ],
    )
    def test_translate(self, raw: str, status: ResourceStatus) -> None:
        """Test raw statuses map onto ResourceStatus."""
        assert translate_resource_status(raw) == status


class TestFailure:
    """Tests for Failure outcomes."""

    def test_convergence_failure_to_error(self) -> None:
        """Test a convergence failure keeps its resource and rollback flag."""
        failure = Failure(reason="Quota exceeded", rolled_back=True, logical_id="Cluster")
        error = failure.to_error("sp-env-shop-test-westeurope")

        assert isinstance(error, ConvergenceFailedError)
        assert error.rolled_back
        assert error.logical_id == "Cluster"
        assert "Quota exceeded" in str(error)

    @pytest.mark.parametrize(
        ("kind", "error_type"),
        [
            (ErrorKind.CONFLICT, ConflictError),
            (ErrorKind.PRECONDITION, PreconditionError),
            (ErrorKind.TIMEOUT, TransientBackendError),
            (ErrorKind.UNREACHABLE, TransientBackendError),
            (ErrorKind.BACKEND_REJECTED, BackendRejectedError),
            (ErrorKind.INTERNAL, InternalError),
        ],
    )
    def test_kind_to_error(self, kind: ErrorKind, error_type: type) -> None:
        """Test each failure kind raises the matching exception."""
        assert isinstance(Failure(reason="x", kind=kind).to_error("stack"), error_type)

    def test_from_error(self) -> None:
        """Test exceptions convert into failures of the same kind."""
        failure = Failure.from_error(ConflictError("busy"))
        assert failure.kind == ErrorKind.CONFLICT
        assert failure.reason == "busy"
        assert not failure.ok
        assert Success().ok


class TestConvergence:
    """Tests for the per-request event stream."""

    @pytest.mark.asyncio
    async def test_duplicate_ids_dropped(self) -> None:
        """Test an event id is delivered once."""
        convergence = Convergence(None, "stack", "create")
        assert convergence.publish(event("A", 1, "e1"))
        assert not convergence.publish(event("A", 1, "e1"))

    @pytest.mark.asyncio
    async def test_out_of_order_dropped(self) -> None:
        """Test timestamps never go backwards."""
        convergence = Convergence(None, "stack", "create")
        assert convergence.publish(event("A", 5, "e1"))
        assert not convergence.publish(event("B", 4, "e2"))
        assert convergence.publish(event("B", 5, "e3"))
        assert convergence.last_timestamp == T0 + timedelta(seconds=5)

    @pytest.mark.asyncio
    async def test_events_then_outcome(self) -> None:
        """Test the stream ends with the outcome."""
        convergence = Convergence(None, "stack", "create")
        convergence.publish(event("A", 1, "e1"))
        convergence.publish(event("B", 2, "e2"))
        convergence.finish(Success(outputs={"Id": "1"}))

        seen = [e.logical_id async for e in convergence.events()]
        outcome = await convergence.outcome()

        assert seen == ["A", "B"]
        assert isinstance(outcome, Success)
        assert outcome.outputs == {"Id": "1"}

    @pytest.mark.asyncio
    async def test_outcome_delivered_once(self) -> None:
        """Test later outcomes and events are ignored."""
        convergence = Convergence(None, "stack", "create")
        convergence.finish(Failure(reason="first"))
        convergence.finish(Success())

        assert not convergence.publish(event("A", 1, "e1"))
        outcome = await convergence.outcome()
        assert isinstance(outcome, Failure)
        assert outcome.reason == "first"

    @pytest.mark.asyncio
    async def test_second_iterator_terminates(self) -> None:
        """Test iterating a closed stream again ends immediately."""
        convergence = Convergence(None, "stack", "create")
        convergence.finish(Success())

        assert [e async for e in convergence.events()] == []
        assert await asyncio.wait_for(_drain(convergence), timeout=1) == []

    @pytest.mark.asyncio
    async def test_resource_states(self) -> None:
        """Test the latest event per resource is tracked."""
        convergence = Convergence(None, "stack", "create")
        convergence.publish(event("A", 1, "e1"))
        convergence.publish(event("A", 2, "e2", failed=True))

        assert convergence.resource_states()["A"].failed


async def _drain(convergence: Convergence) -> list[ResourceEvent]:
    return [e async for e in convergence.events()]
