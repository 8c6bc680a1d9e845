"""Tests for plan dependency ordering and execution."""

from __future__ import annotations

import pytest

from backend_mock import MockStackBackend
from stackpilot.engine import ConvergenceEngine
from stackpilot.errors import ErrorKind
from stackpilot.events import Failure, ResourceEvent
from stackpilot.orchestrator import (
    CyclicDependencyError,
    DependencyError,
    DependencyGraph,
    Orchestrator,
    PlanResult,
    PlanStep,
    StepAction,
    StepStatus,
    build_graph,
    infer_dependencies,
)
from stackpilot.stack import APP_TAG, ENV_TAG, SERVICE_TAG, StackKind, StackRequest

REGION = "westeurope"


def make_request(
    kind: StackKind,
    name: str,
    tags: dict[str, str],
    resource: str,
    outputs: tuple[str, ...] = (),
    parameters: tuple[tuple[str, object], ...] = (),
) -> StackRequest:
    return StackRequest(
        kind=kind,
        name=name,
        region=REGION,
        template={
            "resources": {resource: {"type": "Custom::Thing"}},
            "outputs": {key: {} for key in outputs},
        },
        parameters=parameters,
        tags=tuple(sorted(tags.items())),
    )


def app_step(app: str = "shop") -> PlanStep:
    request = make_request(StackKind.APPLICATION, app, {APP_TAG: app}, f"{app}Identity")
    return PlanStep(f"app-{app}", request)


def env_step(app: str = "shop", env: str = "test", resource: str = "Cluster") -> PlanStep:
    request = make_request(
        StackKind.ENVIRONMENT,
        f"{app}-{env}",
        {APP_TAG: app, ENV_TAG: env},
        resource,
        outputs=("ClusterId",),
    )
    return PlanStep(f"env-{app}-{env}", request)


def svc_step(app: str = "shop", env: str = "test", bind: str | None = None) -> PlanStep:
    request = make_request(
        StackKind.SERVICE,
        f"{app}-{env}-api",
        {APP_TAG: app, ENV_TAG: env, SERVICE_TAG: "api"},
        "ContainerApp",
        parameters=(("clusterId", ""),),
    )
    bindings = (("clusterId", f"env-{app}-{env}", bind),) if bind else ()
    return PlanStep(f"svc-{app}-{env}-api", request, bindings=bindings)


def pipeline_step(app: str = "shop") -> PlanStep:
    request = make_request(StackKind.PIPELINE, f"{app}-release", {APP_TAG: app}, "Pipeline")
    return PlanStep(f"pipeline-{app}", request)


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_validate_no_cycle(self) -> None:
        """Test validation passes for an acyclic graph."""
        graph = DependencyGraph()
        graph.add_node("app", [])
        graph.add_node("env", ["app"])
        graph.add_node("svc", ["env", "app"])

        graph.validate()

    def test_validate_detects_cycle(self) -> None:
        """Test validation detects cycles."""
        graph = DependencyGraph()
        graph.add_node("a", ["b"])
        graph.add_node("b", ["c"])
        graph.add_node("c", ["a"])

        with pytest.raises(CyclicDependencyError, match="Circular dependency"):
            graph.validate()

    def test_unknown_reference(self) -> None:
        """Test references to missing steps are rejected."""
        graph = DependencyGraph()
        graph.add_node("svc", ["env"])

        with pytest.raises(DependencyError, match="unknown step 'env'"):
            graph.validate()

    def test_self_reference(self) -> None:
        """Test a step cannot depend on itself."""
        graph = DependencyGraph()
        graph.add_node("env", ["env"])

        with pytest.raises(DependencyError, match="itself"):
            graph.validate()

    def test_duplicate_step(self) -> None:
        """Test step ids are unique."""
        graph = DependencyGraph()
        graph.add_node("env")

        with pytest.raises(DependencyError, match="Duplicate"):
            graph.add_node("env")

    def test_topological_sort_keeps_plan_order(self) -> None:
        """Test independent steps keep their plan order."""
        graph = DependencyGraph()
        graph.add_node("svc-b", ["env"])
        graph.add_node("svc-a", ["env"])
        graph.add_node("env", [])

        assert graph.topological_sort() == ["env", "svc-b", "svc-a"]

    def test_get_ready_steps(self) -> None:
        """Test steps become ready once their prerequisites are satisfied."""
        graph = DependencyGraph()
        graph.add_node("app", [])
        graph.add_node("env", ["app"])
        graph.add_node("svc", ["env"])

        assert graph.get_ready_steps(set()) == ["app"]
        assert graph.get_ready_steps({"app"}) == ["env"]
        assert graph.get_ready_steps({"app", "env", "svc"}) == []


class TestInferDependencies:
    """Tests for hierarchy-inferred dependencies."""

    def test_deploy_follows_hierarchy(self) -> None:
        """Test children depend on their ancestors within one application."""
        steps = [app_step(), env_step(), svc_step(), pipeline_step(), env_step(app="blog")]
        inferred = infer_dependencies(steps)

        assert inferred["app-shop"] == []
        assert inferred["env-shop-test"] == ["app-shop"]
        assert inferred["svc-shop-test-api"] == ["app-shop", "env-shop-test"]
        assert inferred["pipeline-shop"] == ["app-shop", "env-shop-test"]
        assert inferred["env-blog-test"] == []

    def test_delete_reverses_hierarchy(self) -> None:
        """Test environments are deleted after their services."""
        env = env_step()
        svc = svc_step()
        steps = [
            PlanStep(env.step_id, env.request, action=StepAction.DELETE),
            PlanStep(svc.step_id, svc.request, action=StepAction.DELETE),
        ]
        inferred = infer_dependencies(steps)

        assert inferred["env-shop-test"] == ["svc-shop-test-api"]
        assert inferred["svc-shop-test-api"] == []

    def test_bindings_add_dependencies(self) -> None:
        """Test a bound output makes its source a prerequisite."""
        graph = build_graph([env_step(), svc_step(bind="ClusterId")], infer=False)
        assert graph.nodes["svc-shop-test-api"].depends_on == ["env-shop-test"]


class TestOrchestrator:
    """Tests for plan execution."""

    @pytest.mark.asyncio
    async def test_deploys_in_dependency_order(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test every step succeeds and prerequisites are created first."""
        steps = [svc_step(), env_step(), app_step()]
        result = await Orchestrator(engine).deploy(steps)

        assert result.success
        assert [r.step.step_id for r in result.results] == [s.step_id for s in steps]
        created = backend.create_calls
        app, env, svc = (s.request.stack_name for s in (steps[2], steps[1], steps[0]))
        assert created.index(app) < created.index(env) < created.index(svc)

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_only(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test dependents of a failed step never start; other branches finish."""
        backend.fail_resource("Cluster", "SubnetInUse")
        steps = [
            app_step(),
            env_step(),
            svc_step(),
            app_step(app="blog"),
            env_step(app="blog", resource="Network"),
        ]

        result = await Orchestrator(engine).deploy(steps)

        assert not result.success
        assert result.get("env-shop-test").status == StepStatus.FAILED
        assert result.get("svc-shop-test-api").status == StepStatus.SKIPPED
        assert result.get("env-blog-test").status == StepStatus.SUCCEEDED
        assert steps[2].request.stack_name not in backend.create_calls

        skipped = result.get("svc-shop-test-api").outcome
        assert isinstance(skipped, Failure)
        assert "env-shop-test" in skipped.reason

    @pytest.mark.asyncio
    async def test_bindings_resolved_from_outputs(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test a bound parameter takes its prerequisite's output."""
        env = env_step()
        svc = svc_step(bind="ClusterId")

        result = await Orchestrator(engine).deploy([env, svc], infer=False)

        assert result.success
        deployed = backend.stack(svc.request.stack_name)
        assert deployed.parameters["clusterId"] == f"{env.request.stack_name}/ClusterId"

    @pytest.mark.asyncio
    async def test_missing_bound_output(self, engine: ConvergenceEngine) -> None:
        """Test a binding to an absent output fails that step as a precondition."""
        result = await Orchestrator(engine).deploy(
            [env_step(), svc_step(bind="NoSuchOutput")], infer=False
        )

        outcome = result.get("svc-shop-test-api").outcome
        assert isinstance(outcome, Failure)
        assert outcome.kind == ErrorKind.PRECONDITION
        assert "NoSuchOutput" in outcome.reason

    @pytest.mark.asyncio
    async def test_cycle_starts_nothing(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test an invalid plan raises before any stack is touched."""
        env = env_step()
        svc = svc_step()
        steps = [
            PlanStep(env.step_id, env.request, depends_on=(svc.step_id,)),
            PlanStep(svc.step_id, svc.request, depends_on=(env.step_id,)),
        ]

        with pytest.raises(CyclicDependencyError):
            await Orchestrator(engine).deploy(steps, infer=False)
        assert backend.create_calls == []

    @pytest.mark.asyncio
    async def test_submission_error_becomes_outcome(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test a rejected submission is reported as that step's failure."""
        backend.reject_next("InvalidTemplate: bad expression")

        result = await Orchestrator(engine).deploy([app_step()])

        outcome = result.get("app-shop").outcome
        assert isinstance(outcome, Failure)
        assert outcome.kind == ErrorKind.BACKEND_REJECTED
        assert "bad expression" in outcome.reason

    @pytest.mark.asyncio
    async def test_events_forwarded_with_step(self, engine: ConvergenceEngine) -> None:
        """Test observers see which step each event belongs to."""
        seen: list[tuple[str, ResourceEvent]] = []
        orchestrator = Orchestrator(engine, lambda step, event: seen.append((step.step_id, event)))

        await orchestrator.deploy([app_step(), env_step()])

        assert {step_id for step_id, _ in seen} == {"app-shop", "env-shop-test"}

    @pytest.mark.asyncio
    async def test_raising_observer_does_not_fail_steps(self, engine: ConvergenceEngine) -> None:
        """Test an observer error neither fails a step nor skips its dependents."""

        def broken(step: PlanStep, event: ResourceEvent) -> None:
            raise TypeError("observer bug")

        result = await Orchestrator(engine, broken).deploy([app_step(), env_step()])

        assert result.success

    @pytest.mark.asyncio
    async def test_unexpected_error_is_internal(
        self,
        engine: ConvergenceEngine,
        backend: MockStackBackend,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Test a crash is reported as internal, not as a backend rejection."""

        def crash(name: str) -> None:
            raise KeyError(name)

        monkeypatch.setattr(backend, "describe_stack", crash)

        result = await Orchestrator(engine).deploy([app_step()])

        outcome = result.get("app-shop").outcome
        assert isinstance(outcome, Failure)
        assert outcome.kind == ErrorKind.INTERNAL
        assert "Unexpected error" in outcome.reason

    @pytest.mark.asyncio
    async def test_delete_plan_removes_children_first(
        self, engine: ConvergenceEngine, backend: MockStackBackend
    ) -> None:
        """Test delete plans run the hierarchy in reverse."""
        env = env_step()
        svc = svc_step()
        await Orchestrator(engine).deploy([env, svc])

        result = await Orchestrator(engine).deploy(
            [
                PlanStep(env.step_id, env.request, action=StepAction.DELETE),
                PlanStep(svc.step_id, svc.request, action=StepAction.DELETE),
            ]
        )

        assert result.success
        assert backend.delete_calls == [svc.request.stack_name, env.request.stack_name]


class TestPlanResult:
    """Tests for PlanResult lookups."""

    def test_get_unknown_step(self) -> None:
        """Test unknown step ids raise KeyError."""
        with pytest.raises(KeyError):
            PlanResult().get("missing")

    def test_empty_plan_succeeds(self) -> None:
        """Test an empty result counts as success."""
        assert PlanResult().success
