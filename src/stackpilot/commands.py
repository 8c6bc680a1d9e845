"""Action commands: the validate -> ask -> execute lifecycle behind the CLI.

Commands receive a CommandContext holding the engine's collaborators, so
tests run every command against in-memory backends and the CLI wires Azure
ones. A command never prints; it reports through `ctx.echo` and returns a
result for the caller to render.

FLOW:
1. validate(): cheap checks against the configuration store, no mutations
2. ask(): interactive confirmations; skipped answers default to "no"
3. execute(): the facade calls
4. recommended_actions(): follow-ups shown after success
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .client import ProvisioningClient
from .config import EngineConfig
from .deployers import (
    AppDeployer,
    DeployedStackLister,
    EnvironmentDeployer,
    PipelineDeployer,
    ServiceDeployer,
    TaskDeployer,
)
from .engine import ConvergenceEngine
from .errors import PreconditionError, StackpilotError
from .events import Failure, ResourceEvent, Success
from .interfaces import (
    BucketService,
    ConfigStore,
    ContainerRepository,
    ImageRemover,
    LogStore,
    PipelineService,
    SecretsStore,
    TaskBackend,
)
from .logs import LogTailer
from .models import (
    Application,
    CreateAppInput,
    CreateEnvironmentInput,
    CreatePipelineInput,
    CreateTaskResourcesInput,
    DeployServiceInput,
    Environment,
    PlanSpec,
    Service,
)
from .orchestrator import Orchestrator, PlanResult, PlanStep, StepStatus
from .plan_loader import build_plan
from .session import AzureSessionProvider, Session
from .tasks import TaskHandle, TaskRunner, TaskSpec

logger = logging.getLogger(__name__)

MEMORY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*(Gi|G|Mi|M)?$")


def memory_in_gb(value: str) -> float:
    """Parse "0.5Gi" / "512Mi" style sizes into gigabytes."""
    match = MEMORY_PATTERN.match(value.strip())
    if not match:
        raise PreconditionError(f"Invalid memory size '{value}'; use a form like 512Mi or 1Gi")
    amount, unit = float(match.group(1)), match.group(2) or "Gi"
    return amount / 1024 if unit in ("Mi", "M") else amount


def _format_event(event: ResourceEvent) -> str:
    reason = f" {event.reason}" if event.reason else ""
    return f"  {event.status.value:<18} {event.logical_id} ({event.resource_type}){reason}"


# =============================================================================
# Context
# =============================================================================


@dataclass
class CommandContext:
    """Everything commands need; built once per CLI invocation."""

    config: EngineConfig
    store: ConfigStore
    client: ProvisioningClient
    repository: ContainerRepository | None = None
    images: ImageRemover | None = None
    secrets: SecretsStore | None = None
    buckets: BucketService | None = None
    pipelines: PipelineService | None = None
    log_store: LogStore | None = None
    task_backend_factory: Callable[[str], TaskBackend] | None = None
    echo: Callable[[str], None] = print
    confirm: Callable[[str], bool] = lambda _message: False
    session: Session | None = None
    _engine: ConvergenceEngine | None = field(default=None, repr=False)

    @property
    def engine(self) -> ConvergenceEngine:
        if self._engine is None:
            self._engine = ConvergenceEngine(self.client, self.config)
        return self._engine

    def on_event(self, event: ResourceEvent) -> None:
        self.echo(_format_event(event))

    def on_plan_event(self, step: PlanStep, event: ResourceEvent) -> None:
        self.echo(f"{step.step_id}:{_format_event(event)}")

    def app_deployer(self) -> AppDeployer:
        return AppDeployer(self.engine, self.store)

    def env_deployer(self) -> EnvironmentDeployer:
        return EnvironmentDeployer(self.engine, self.store, self.buckets)

    def pipeline_deployer(self) -> PipelineDeployer:
        return PipelineDeployer(self.engine, self.app_deployer(), self.pipelines)

    def service_deployer(self) -> ServiceDeployer:
        if self.repository is None:
            raise PreconditionError(
                "No container registry configured; set STACKPILOT_REGISTRY or pass --registry"
            )
        return ServiceDeployer(
            self.engine,
            self.store,
            self.app_deployer(),
            self.repository,
            images=self.images,
            secrets=self.secrets,
        )

    def task_deployer(self) -> TaskDeployer:
        return TaskDeployer(self.engine, self.repository)

    def task_backend(self, region: str) -> TaskBackend:
        if self.task_backend_factory is None:
            raise PreconditionError("Task execution is not configured for this backend")
        return self.task_backend_factory(region)

    def close(self) -> None:
        if self.session is not None:
            self.session.close()

    @classmethod
    def for_azure(
        cls,
        config: EngineConfig,
        store: ConfigStore,
        profile: str | None = None,
        registry: str | None = None,
        **kwargs: Any,
    ) -> CommandContext:
        """Context backed by Azure Resource Manager and container instances."""
        # Imported here so in-memory contexts never load the Azure SDK
        from .arm_client import ArmProvisioningClient
        from .azure_tasks import ArmLogStore, ArmTaskBackend
        from .containers import RegistryRepository

        provider = AzureSessionProvider(config)
        session = provider.from_profile(profile) if profile else provider.default()
        repository = RegistryRepository(registry) if registry else None

        return cls(
            config=config,
            store=store,
            client=ArmProvisioningClient.from_session(session),
            repository=repository,
            images=repository,
            log_store=ArmLogStore.from_session(session),
            task_backend_factory=lambda region: ArmTaskBackend.from_session(session, region),
            session=session,
            **kwargs,
        )


# =============================================================================
# Base command
# =============================================================================


class ActionCommand(ABC):
    """A CLI action. Subclasses implement execute and usually validate."""

    def __init__(self, ctx: CommandContext) -> None:
        self.ctx = ctx
        self.cancelled = False

    async def validate(self) -> None:
        """Check inputs against the store. Raises PreconditionError or StoreError."""
        return None

    def ask(self) -> bool:
        """Interactive confirmation. False cancels the command."""
        return True

    @abstractmethod
    async def execute(self) -> Any: ...

    def recommended_actions(self) -> list[str]:
        return []

    async def run(self) -> Any:
        """validate, ask, execute. Returns None and sets `cancelled` when declined."""
        await self.validate()
        if not self.ask():
            self.cancelled = True
            logger.info("Command cancelled", extra={"command": type(self).__name__})
            return None
        return await self.execute()

    async def _blocking(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))


# =============================================================================
# Applications
# =============================================================================


class DeployAppCommand(ActionCommand):
    def __init__(self, ctx: CommandContext, app: CreateAppInput, region: str) -> None:
        super().__init__(ctx)
        self.app = app
        self.region = region

    async def execute(self) -> Application:
        self.ctx.echo(f"Deploying application {self.app.name} in {self.region}")
        return await self.ctx.app_deployer().deploy_app(self.app, self.region, self.ctx.on_event)

    def recommended_actions(self) -> list[str]:
        return [f"Create an environment: stackpilot env deploy -f env.yaml (app: {self.app.name})"]


# =============================================================================
# Environments
# =============================================================================


class DeployEnvironmentCommand(ActionCommand):
    def __init__(self, ctx: CommandContext, env: CreateEnvironmentInput) -> None:
        super().__init__(ctx)
        self.env = env
        self._app: Application | None = None

    async def validate(self) -> None:
        self._app = await self._blocking(self.ctx.store.get_application, self.env.app_name)

    async def execute(self) -> Environment:
        assert self._app is not None, "validate() must run before execute()"
        self.ctx.echo(f"Deploying environment {self.env.name} in {self.env.region}")
        await self.ctx.app_deployer().add_env_to_app(self._app, self.env.region, self.env.name)
        return await self.ctx.env_deployer().deploy_environment(self.env, self.ctx.on_event)

    def recommended_actions(self) -> list[str]:
        return [
            f"Deploy a service into it: stackpilot svc deploy -f svc.yaml "
            f"(app: {self.env.app_name}, env: {self.env.name})"
        ]


class DeleteEnvironmentCommand(ActionCommand):
    def __init__(
        self,
        ctx: CommandContext,
        app_name: str,
        env_name: str,
        skip_confirmation: bool = False,
        empty_buckets: bool = False,
    ) -> None:
        super().__init__(ctx)
        self.app_name = app_name
        self.env_name = env_name
        self.skip_confirmation = skip_confirmation
        self.empty_buckets = empty_buckets
        self._env: Environment | None = None

    async def validate(self) -> None:
        self._env = await self._blocking(
            self.ctx.store.get_environment, self.app_name, self.env_name
        )
        deployed = await DeployedStackLister(self.ctx.engine).list_deployed_services(
            self.app_name, self.env_name
        )
        if deployed:
            raise PreconditionError(
                f"Environment {self.env_name} still runs services {deployed}; "
                f"delete them first with `stackpilot svc delete`"
            )

    def ask(self) -> bool:
        if self.skip_confirmation:
            return True
        return self.ctx.confirm(
            f"Delete environment {self.env_name} of application {self.app_name}?"
        )

    async def execute(self) -> Environment:
        assert self._env is not None, "validate() must run before execute()"
        self.ctx.echo(f"Deleting environment {self.env_name}")
        await self.ctx.env_deployer().delete_environment(
            self.app_name,
            self.env_name,
            self._env.region,
            empty_buckets=self.empty_buckets,
            on_event=self.ctx.on_event,
        )
        return self._env


# =============================================================================
# Services
# =============================================================================


class DeployServiceCommand(ActionCommand):
    def __init__(self, ctx: CommandContext, svc: DeployServiceInput) -> None:
        super().__init__(ctx)
        self.svc = svc

    async def validate(self) -> None:
        env = await self._blocking(
            self.ctx.store.get_environment, self.svc.app_name, self.svc.env_name
        )
        if not env.cluster_id:
            raise PreconditionError(
                f"Environment {env.name} has no cluster; redeploy it with `stackpilot env deploy`"
            )
        if not self.svc.image.location and self.ctx.repository is None:
            raise PreconditionError(
                f"Service {self.svc.name} must be built but no container registry is configured"
            )

    async def execute(self) -> Success:
        self.ctx.echo(f"Deploying service {self.svc.name} to {self.svc.env_name}")
        return await self.ctx.service_deployer().deploy_service(self.svc, self.ctx.on_event)

    def recommended_actions(self) -> list[str]:
        return [f"Check where it runs: stackpilot info --app {self.svc.app_name}"]


class DeleteServiceCommand(ActionCommand):
    def __init__(
        self,
        ctx: CommandContext,
        app_name: str,
        svc_name: str,
        env_name: str | None = None,
        skip_confirmation: bool = False,
    ) -> None:
        super().__init__(ctx)
        self.app_name = app_name
        self.svc_name = svc_name
        self.env_name = env_name
        self.skip_confirmation = skip_confirmation

    async def validate(self) -> None:
        await self._blocking(self.ctx.store.get_service, self.app_name, self.svc_name)
        if self.env_name is not None:
            await self._blocking(self.ctx.store.get_environment, self.app_name, self.env_name)

    def ask(self) -> bool:
        if self.skip_confirmation:
            return True
        where = f"environment {self.env_name}" if self.env_name else "all environments"
        return self.ctx.confirm(f"Delete service {self.svc_name} from {where}?")

    async def execute(self) -> list[str]:
        env_names = [self.env_name] if self.env_name else None
        return await self.ctx.service_deployer().delete_service(
            self.app_name, self.svc_name, env_names, self.ctx.on_event
        )


# =============================================================================
# Pipelines
# =============================================================================


class DeployPipelineCommand(ActionCommand):
    def __init__(self, ctx: CommandContext, pipeline: CreatePipelineInput) -> None:
        super().__init__(ctx)
        self.pipeline = pipeline
        self._app: Application | None = None

    async def validate(self) -> None:
        self._app = await self._blocking(self.ctx.store.get_application, self.pipeline.app_name)
        known = {
            env.name
            for env in await self._blocking(
                self.ctx.store.list_environments, self.pipeline.app_name
            )
        }
        missing = [stage.env_name for stage in self.pipeline.stages if stage.env_name not in known]
        if missing:
            raise PreconditionError(
                f"Pipeline {self.pipeline.name} targets unknown environments {missing}; "
                f"deploy them first with `stackpilot env deploy`"
            )

    async def execute(self) -> Success:
        assert self._app is not None, "validate() must run before execute()"
        self.ctx.echo(f"Deploying pipeline {self.pipeline.name}")
        return await self.ctx.pipeline_deployer().deploy_pipeline(
            self.pipeline, self._app, self.ctx.on_event
        )


# =============================================================================
# Tasks
# =============================================================================


@dataclass(frozen=True)
class TaskRunResult:
    handles: list[TaskHandle]
    image_uri: str


class RunTaskCommand(ActionCommand):
    """Deploy task resources, launch the tasks and optionally follow their logs."""

    def __init__(
        self,
        ctx: CommandContext,
        task: CreateTaskResourcesInput,
        follow: bool = False,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        super().__init__(ctx)
        self.task = task
        self.follow = follow
        self.stop_event = stop_event or asyncio.Event()
        self._cluster: str | None = task.cluster

    async def validate(self) -> None:
        if bool(self.task.app_name) != bool(self.task.env_name):
            raise PreconditionError("Give both app and env to run a task in an environment")
        if self.task.app_name and self.task.env_name:
            if self.task.cluster:
                raise PreconditionError("Give either a cluster or an app and env, not both")
            env = await self._blocking(
                self.ctx.store.get_environment, self.task.app_name, self.task.env_name
            )
            if not env.cluster_id:
                raise PreconditionError(f"Environment {env.name} has no cluster")
            self._cluster = env.cluster_id
        if self.follow and self.ctx.log_store is None:
            raise PreconditionError("Following logs is not configured for this backend")

    async def execute(self) -> TaskRunResult:
        task = self.task
        resources = await self.ctx.task_deployer().deploy_task(
            task, self._cluster, self.ctx.on_event
        )

        runner = TaskRunner(self.ctx.task_backend(task.region))
        spec = TaskSpec(
            group_name=task.group_name,
            region=task.region,
            image_uri=resources.image_uri,
            count=task.count,
            cluster=self._cluster,
            cpu=task.cpu,
            memory_gb=memory_in_gb(task.memory),
            command=tuple(task.command),
            entrypoint=tuple(task.entrypoint),
            env_vars=dict(task.env_vars),
            subnets=tuple(task.subnets),
            log_group=resources.log_group,
        )
        handles = await runner.run(spec)
        self.ctx.echo(f"Launched {len(handles)} task(s) for {task.group_name}")

        if self.follow and self.ctx.log_store is not None:
            await self._follow(runner, handles, self.ctx.log_store)
        return TaskRunResult(handles=handles, image_uri=resources.image_uri)

    async def _follow(
        self, runner: TaskRunner, handles: list[TaskHandle], store: LogStore
    ) -> None:
        tailer = LogTailer.for_tasks(
            store,
            handles,
            config=self.ctx.config,
            tasks_stopped=lambda: runner.all_stopped(handles),
        )
        await tailer.check_log_group()
        await tailer.write_events_until_stopped(self.ctx.echo, self.stop_event)

        for stream, reason in sorted(tailer.degraded_streams.items()):
            self.ctx.echo(f"Stopped following {stream}: {reason}")

        if self.stop_event.is_set():
            # Interrupted by the user: the tasks must not outlive the session
            await runner.stop(handles, reason="Log tailing interrupted")

    def recommended_actions(self) -> list[str]:
        if self.follow:
            return []
        return ["Re-run with --follow to stream the task logs"]


# =============================================================================
# Plans
# =============================================================================


class DeployPlanCommand(ActionCommand):
    """Deploy every resource of a plan in dependency order."""

    def __init__(self, ctx: CommandContext, plan: PlanSpec, region: str) -> None:
        super().__init__(ctx)
        self.plan = plan
        self.region = region
        self._result: PlanResult | None = None

    async def execute(self) -> PlanResult:
        steps = build_plan(self.plan, self.region, templates_dir=self.ctx.config.templates_dir)
        self.ctx.echo(f"Deploying plan for {self.plan.app.name}: {len(steps)} stacks")
        result = await Orchestrator(self.ctx.engine, self.ctx.on_plan_event).deploy(steps)
        await self._record(result)
        self._result = result
        return result

    async def _record(self, result: PlanResult) -> None:
        """Write what succeeded to the configuration store."""
        store = self.ctx.store
        app = self.plan.app
        outcomes = {step.step.step_id: step.outcome for step in result.results}
        if not isinstance(outcomes.get("app"), Success):
            return
        await self._blocking(
            store.create_application,
            Application(
                name=app.name,
                account_id=app.account_id,
                domain=app.domain_name,
                tags=app.additional_tags,
            ),
        )

        for env in self.plan.environments:
            outcome = outcomes.get(f"env-{env.name}")
            if not isinstance(outcome, Success):
                continue
            outputs = outcome.outputs
            await self._blocking(
                store.create_environment,
                Environment(
                    app=app.name,
                    name=env.name,
                    region=env.region,
                    account_id=env.account_id,
                    prod=env.prod,
                    cluster_id=outputs.get("ClusterId"),
                    manager_role_id=outputs.get("EnvironmentManagerRoleId"),
                ),
            )

        for svc in self.plan.services:
            if isinstance(outcomes.get(f"svc-{svc.env_name}-{svc.name}"), Success):
                await self._blocking(store.create_service, Service(app=app.name, name=svc.name))

    def recommended_actions(self) -> list[str]:
        if self._result is None or self._result.success:
            return [f"Inspect the application: stackpilot info --app {self.plan.app.name}"]
        return ["Fix the failed steps and re-run the plan; converged stacks are left untouched"]


# =============================================================================
# Info
# =============================================================================


@dataclass
class AppInfo:
    app: Application
    environments: list[Environment] = field(default_factory=list)
    services: dict[str, list[str]] = field(default_factory=dict)


class InfoCommand(ActionCommand):
    """Describe applications, or one application and where its services run."""

    def __init__(self, ctx: CommandContext, app_name: str | None = None) -> None:
        super().__init__(ctx)
        self.app_name = app_name

    async def execute(self) -> list[AppInfo]:
        store = self.ctx.store
        if self.app_name:
            apps = [await self._blocking(store.get_application, self.app_name)]
        else:
            apps = await self._blocking(store.list_applications)

        lister = DeployedStackLister(self.ctx.engine)
        infos: list[AppInfo] = []
        for app in apps:
            environments = await self._blocking(store.list_environments, app.name)
            info = AppInfo(app=app, environments=environments)
            if self.app_name:
                for svc in await self._blocking(store.list_services, app.name):
                    info.services[svc.name] = await lister.list_environments_deployed_to(
                        app.name, svc.name
                    )
            infos.append(info)
        return infos


def outcome_summary(result: PlanResult) -> list[str]:
    """One line per plan step for display."""
    lines = []
    for step in result.results:
        line = f"{step.status.value:<10} {step.step.step_id}"
        if isinstance(step.outcome, Failure):
            line += f": {step.outcome.reason}"
        lines.append(line)
    return lines


def raise_for_plan(result: PlanResult) -> None:
    """Raise if any step did not succeed."""
    failed = [
        step.step.step_id for step in result.results if step.status != StepStatus.SUCCEEDED
    ]
    if failed:
        raise StackpilotError(f"Plan did not converge; failed or skipped steps: {failed}")
