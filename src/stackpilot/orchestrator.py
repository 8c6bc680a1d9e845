"""Dependency ordering and concurrent execution of multi-stack plans.

This module implements plan execution across the resource hierarchy:
1. Dependency graph construction from explicit and inferred prerequisites
2. Cycle and unknown-reference detection before anything runs
3. Concurrent execution of independent branches, bounded by a semaphore
4. Skipped propagation: dependents of a failed step never start

HIERARCHY:
application / app-regional -> environment -> service / pipeline / task

Deletes run the hierarchy in reverse: services go before their environment,
environments before the application.

EXAMPLE PLAN:
```
steps = [
    PlanStep("env-test", env_request),
    PlanStep("svc-api", svc_request, depends_on=("env-test",)),
]
result = await Orchestrator(engine).deploy(steps)
```
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .engine import ConvergenceEngine
from .errors import ErrorKind, StackpilotError
from .events import ConvergenceOutcome, Failure, ResourceEvent, Success
from .stack import APP_TAG, ENV_TAG, StackKind, StackRequest

logger = logging.getLogger(__name__)


class DependencyError(StackpilotError):
    """Raised when plan dependency validation fails."""

    kind = ErrorKind.PRECONDITION


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


class StepAction(str, Enum):
    """What a plan step does to its stack."""

    DEPLOY = "deploy"
    DELETE = "delete"


class StepStatus(str, Enum):
    """Final status of a plan step."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# Position in the hierarchy; lower ranks are prerequisites of higher ones
KIND_RANK: dict[StackKind, int] = {
    StackKind.APPLICATION: 0,
    StackKind.APP_REGIONAL: 1,
    StackKind.ENVIRONMENT: 2,
    StackKind.SERVICE: 3,
    StackKind.PIPELINE: 3,
    StackKind.TASK: 3,
}


@dataclass(frozen=True)
class PlanStep:
    """One stack operation in a plan."""

    step_id: str
    request: StackRequest
    depends_on: tuple[str, ...] = ()
    action: StepAction = StepAction.DEPLOY
    # (parameter, step_id, output): parameter takes the output of a prerequisite
    bindings: tuple[tuple[str, str, str], ...] = ()


@dataclass
class StepResult:
    """Outcome of one plan step."""

    step: PlanStep
    outcome: ConvergenceOutcome

    @property
    def status(self) -> StepStatus:
        if isinstance(self.outcome, Success):
            return StepStatus.SUCCEEDED
        if self.outcome.kind == ErrorKind.SKIPPED:
            return StepStatus.SKIPPED
        return StepStatus.FAILED


@dataclass
class PlanResult:
    """Outcomes of every step, in plan order."""

    results: list[StepResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(result.status == StepStatus.SUCCEEDED for result in self.results)

    def get(self, step_id: str) -> StepResult:
        for result in self.results:
            if result.step.step_id == step_id:
                return result
        raise KeyError(step_id)

    def with_status(self, status: StepStatus) -> list[StepResult]:
        return [result for result in self.results if result.status == status]


@dataclass
class PlanNode:
    """A node in the plan dependency graph."""

    step_id: str
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DependencyGraph:
    """Directed acyclic graph of plan steps."""

    nodes: dict[str, PlanNode] = field(default_factory=dict)
    order: list[str] = field(default_factory=list)

    def add_node(self, step_id: str, depends_on: list[str] | None = None) -> None:
        """Add a step to the graph.

        Raises:
            DependencyError: If the step id is already present.
        """
        if step_id in self.nodes:
            raise DependencyError(f"Duplicate step id '{step_id}'")
        self.nodes[step_id] = PlanNode(step_id=step_id, depends_on=list(depends_on or []))
        self.order.append(step_id)

    def validate(self) -> None:
        """Validate references and check for cycles.

        Raises:
            DependencyError: If a step references an unknown or its own step.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep == node.step_id:
                    raise DependencyError(f"Step '{dep}' cannot depend on itself")
                if dep not in self.nodes:
                    raise DependencyError(
                        f"Step '{node.step_id}' depends on unknown step '{dep}'"
                    )

        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {
            step_id: len(set(node.depends_on)) for step_id, node in self.nodes.items()
        }
        dependents = self._dependents()
        queue = [step_id for step_id, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if processed != len(self.nodes):
            cycle_nodes = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[str]:
        """Return step ids in dependency order, ties broken by plan order.

        Raises:
            DependencyError: If validation fails.
        """
        self.validate()

        position = {step_id: index for index, step_id in enumerate(self.order)}
        in_degree = {step_id: len(set(node.depends_on)) for step_id, node in self.nodes.items()}
        dependents = self._dependents()
        result: list[str] = []
        queue = [step_id for step_id, degree in in_degree.items() if degree == 0]

        while queue:
            queue.sort(key=position.__getitem__)
            current = queue.pop(0)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def get_ready_steps(self, satisfied: set[str]) -> list[str]:
        """Steps not yet satisfied whose prerequisites all are."""
        return [
            step_id
            for step_id in self.order
            if step_id not in satisfied
            and all(dep in satisfied for dep in self.nodes[step_id].depends_on)
        ]

    def _dependents(self) -> dict[str, list[str]]:
        dependents: dict[str, list[str]] = {step_id: [] for step_id in self.nodes}
        for node in self.nodes.values():
            for dep in set(node.depends_on):
                dependents[dep].append(node.step_id)
        return dependents


def _contains(ancestor: StackRequest, descendant: StackRequest) -> bool:
    """Whether `descendant` lives inside `ancestor`'s scope in the hierarchy."""
    ancestor_tags = ancestor.tags_dict()
    descendant_tags = descendant.tags_dict()

    app = ancestor_tags.get(APP_TAG)
    if app is None or descendant_tags.get(APP_TAG) != app:
        return False

    if ancestor.kind == StackKind.ENVIRONMENT:
        env = descendant_tags.get(ENV_TAG)
        # Pipelines span every environment of the application
        return env is None or env == ancestor_tags.get(ENV_TAG)

    if ancestor.kind == StackKind.APP_REGIONAL and descendant.kind == StackKind.APP_REGIONAL:
        return False

    return True


def infer_dependencies(steps: Sequence[PlanStep]) -> dict[str, list[str]]:
    """Infer prerequisites from the application hierarchy.

    Deploy steps depend on deploy steps of their ancestors; delete steps
    depend on delete steps of their descendants.

    Returns:
        step id -> inferred prerequisite step ids, in plan order.
    """
    inferred: dict[str, list[str]] = {step.step_id: [] for step in steps}

    for step in steps:
        rank = KIND_RANK[step.request.kind]
        for other in steps:
            if other.step_id == step.step_id or other.action != step.action:
                continue
            other_rank = KIND_RANK[other.request.kind]

            if step.action == StepAction.DEPLOY:
                if other_rank < rank and _contains(other.request, step.request):
                    inferred[step.step_id].append(other.step_id)
            elif other_rank > rank and _contains(step.request, other.request):
                inferred[step.step_id].append(other.step_id)

    return inferred


def build_graph(steps: Sequence[PlanStep], infer: bool = True) -> DependencyGraph:
    """Build and validate the dependency graph for a plan.

    Raises:
        DependencyError: On duplicate ids or unknown references.
        CyclicDependencyError: If the plan contains a cycle.
    """
    inferred = infer_dependencies(steps) if infer else {}
    graph = DependencyGraph()
    for step in steps:
        depends_on = list(step.depends_on)
        bound = [source for _, source, _ in step.bindings]
        for dep in [*bound, *inferred.get(step.step_id, [])]:
            if dep not in depends_on:
                depends_on.append(dep)
        graph.add_node(step.step_id, depends_on)
    graph.validate()
    return graph


def resolve_bindings(
    step: PlanStep, outcomes: Mapping[str, asyncio.Future[ConvergenceOutcome]]
) -> PlanStep:
    """Substitute bound parameters with outputs of succeeded prerequisites.

    Raises:
        KeyError: If a prerequisite did not produce the bound output.
    """
    if not step.bindings:
        return step

    overrides: dict[str, str] = {}
    for parameter, source, output in step.bindings:
        outcome = outcomes[source].result()
        outputs = outcome.outputs if isinstance(outcome, Success) else {}
        if output not in outputs:
            raise KeyError(
                f"Step '{source}' has no output '{output}' required by '{step.step_id}'"
            )
        overrides[parameter] = outputs[output]

    return dataclasses.replace(step, request=step.request.with_parameters(overrides))


class Orchestrator:
    """Runs plan steps through the convergence engine in dependency order."""

    def __init__(
        self,
        engine: ConvergenceEngine,
        on_event: Callable[[PlanStep, ResourceEvent], None] | None = None,
    ) -> None:
        self._engine = engine
        self._on_event = on_event

    async def deploy(self, steps: Sequence[PlanStep], infer: bool = True) -> PlanResult:
        """Execute a plan.

        Args:
            steps: Plan steps; the result preserves this order.
            infer: Add hierarchy-inferred dependencies to the explicit ones.

        Returns:
            PlanResult with one entry per step.

        Raises:
            DependencyError: If the plan is invalid. Nothing is started.
        """
        graph = build_graph(steps, infer=infer)
        by_id = {step.step_id: step for step in steps}
        loop = asyncio.get_event_loop()
        outcomes: dict[str, asyncio.Future[ConvergenceOutcome]] = {
            step.step_id: loop.create_future() for step in steps
        }
        semaphore = asyncio.Semaphore(self._engine.config.max_concurrent_operations)

        logger.info(
            "Executing plan",
            extra={"steps": len(steps), "order": graph.topological_sort()},
        )

        async def run_step(step: PlanStep) -> None:
            for dep in graph.nodes[step.step_id].depends_on:
                prerequisite = await outcomes[dep]
                if not prerequisite.ok:
                    logger.warning(
                        "Skipping step: prerequisite did not succeed",
                        extra={"step": step.step_id, "prerequisite": dep},
                    )
                    outcomes[step.step_id].set_result(
                        Failure(
                            reason=f"Skipped because prerequisite '{dep}' did not succeed",
                            kind=ErrorKind.SKIPPED,
                        )
                    )
                    return

            try:
                step = resolve_bindings(step, outcomes)
            except KeyError as e:
                outcomes[step.step_id].set_result(
                    Failure(reason=str(e.args[0]), kind=ErrorKind.PRECONDITION)
                )
                return

            async with semaphore:
                outcome = await self._execute(step)
            outcomes[step.step_id].set_result(outcome)

        await asyncio.gather(*(run_step(by_id[step_id]) for step_id in graph.order))

        result = PlanResult(
            results=[
                StepResult(step=step, outcome=outcomes[step.step_id].result()) for step in steps
            ]
        )
        logger.info(
            "Plan finished",
            extra={
                "success": result.success,
                "failed": [r.step.step_id for r in result.with_status(StepStatus.FAILED)],
                "skipped": [r.step.step_id for r in result.with_status(StepStatus.SKIPPED)],
            },
        )
        return result

    async def _execute(self, step: PlanStep) -> ConvergenceOutcome:
        request = step.request

        def forward(event: ResourceEvent) -> None:
            if self._on_event is not None:
                self._on_event(step, event)

        logger.info(
            "Starting step",
            extra={"step": step.step_id, "action": step.action.value, "stack": request.stack_name},
        )
        try:
            if step.action == StepAction.DELETE:
                return await self._engine.delete_and_wait(
                    request.kind, request.name, request.region, forward
                )
            return await self._engine.converge_and_wait(request, forward)
        except StackpilotError as e:
            logger.error(
                "Step submission failed",
                extra={"step": step.step_id, "kind": e.kind.value, "error": str(e)},
            )
            return Failure.from_error(e)
        except Exception as e:
            logger.exception("Unexpected error executing step", extra={"step": step.step_id})
            return Failure(reason=f"Unexpected error: {e}", kind=ErrorKind.INTERNAL)
