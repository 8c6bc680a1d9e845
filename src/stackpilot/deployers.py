"""Resource lifecycle facades.

Each deployer composes the convergence engine with a stack descriptor and
the narrow collaborators it needs. Facades turn Failure outcomes into
exceptions from the error taxonomy; callers that want outcome values use
the engine or the orchestrator directly.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .client import StackDescription
from .engine import ConvergenceEngine
from .errors import PreconditionError, StackNotFoundError
from .events import (
    Convergence,
    ConvergenceOutcome,
    Failure,
    ResourceEvent,
    StackPhase,
    Success,
    classify_stack_status,
)
from .interfaces import (
    ApplicationStore,
    BucketService,
    ConfigStore,
    ContainerRepository,
    EnvironmentStore,
    ImageRemover,
    PipelineService,
    SecretsStore,
)
from .models import (
    Application,
    CreateAppInput,
    CreateEnvironmentInput,
    CreatePipelineInput,
    CreateTaskResourcesInput,
    DeployServiceInput,
    Environment,
    Service,
)
from .stack import (
    APP_TAG,
    ENV_TAG,
    FINGERPRINT_TAG,
    KIND_TAG,
    SERVICE_TAG,
    AppRegionalStack,
    AppStack,
    EnvironmentStack,
    PipelineStack,
    ServiceStack,
    StackKind,
    StackRequest,
    TaskStack,
)

logger = logging.getLogger(__name__)

EventCallback = Callable[[ResourceEvent], None]

# Environment outputs naming storage buckets end with this suffix
BUCKET_OUTPUT_SUFFIX = "BucketName"


def ensure_success(outcome: ConvergenceOutcome, stack_name: str) -> Success:
    """Return the Success, or raise the error matching the Failure."""
    if isinstance(outcome, Failure):
        raise outcome.to_error(stack_name)
    return outcome


def parameter_value(parameters: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read a parameter, unwrapping the {"value": ...} form backends report."""
    value = parameters.get(key, default)
    if isinstance(value, Mapping) and "value" in value:
        return value["value"]
    return value


async def _run_blocking(func: Callable[..., Any], *args: Any) -> Any:
    loop = asyncio.get_event_loop()
    return await loop.run_in_executor(None, functools.partial(func, *args))


def _app_input(app: Application) -> CreateAppInput:
    return CreateAppInput(
        name=app.name,
        account_id=app.account_id,
        domain_name=app.domain,
        additional_tags=app.tags,
    )


# =============================================================================
# Environments
# =============================================================================


class EnvironmentDeployer:
    """Deploys, inspects and deletes environment stacks."""

    def __init__(
        self,
        engine: ConvergenceEngine,
        store: EnvironmentStore,
        buckets: BucketService | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._buckets = buckets

    async def deploy_environment(
        self, env: CreateEnvironmentInput, on_event: EventCallback | None = None
    ) -> Environment:
        """Converge the environment stack and record it.

        Raises:
            StackpilotError: If the stack does not converge.
        """
        convergence = await self.stream_environment_creation(env)
        outcome = await self._engine.wait(convergence, on_event)
        success = ensure_success(outcome, convergence.stack_name)

        record = self._record(env.app_name, env.name, env.region, success.outputs, env)
        await _run_blocking(self._store.create_environment, record)
        logger.info(
            "Environment deployed",
            extra={"app": env.app_name, "env": env.name, "changed": success.changed},
        )
        return record

    async def stream_environment_creation(self, env: CreateEnvironmentInput) -> Convergence:
        """Start converging the environment; the caller consumes the stream."""
        descriptor = EnvironmentStack(env, templates_dir=self._engine.config.templates_dir)
        request = descriptor.to_request()
        return await self._engine.converge(request)

    async def get_environment(self, app_name: str, env_name: str, region: str) -> Environment:
        """Environment as deployed, built from its stack outputs.

        Raises:
            StackNotFoundError: If the environment stack does not exist.
        """
        name = f"{app_name}-{env_name}"
        outputs = await self._engine.outputs(StackKind.ENVIRONMENT, name, region)
        return self._record(app_name, env_name, region, outputs)

    async def delete_environment(
        self,
        app_name: str,
        env_name: str,
        region: str,
        empty_buckets: bool = False,
        on_event: EventCallback | None = None,
    ) -> None:
        """Delete the environment stack and its record.

        Non-empty environment buckets block the delete unless `empty_buckets`
        is set, in which case they are emptied first.

        Raises:
            PreconditionError: If a bucket is not empty.
            StackpilotError: If the delete does not complete.
        """
        name = f"{app_name}-{env_name}"
        description = await self._engine.describe(StackKind.ENVIRONMENT, name, region)

        if description is not None and self._buckets is not None:
            buckets = sorted(
                value
                for key, value in description.outputs.items()
                if key.endswith(BUCKET_OUTPUT_SUFFIX) and value
            )
            for bucket in buckets:
                is_empty = await _run_blocking(self._buckets.bucket_is_empty, bucket)
                if is_empty:
                    continue
                if not empty_buckets:
                    raise PreconditionError(
                        f"Bucket {bucket} in environment {env_name} is not empty. "
                        f"Empty it, or delete with empty_buckets to empty it first."
                    )
                logger.info("Emptying bucket", extra={"bucket": bucket, "env": env_name})
                await _run_blocking(self._buckets.empty_bucket, bucket)

        outcome = await self._engine.delete_and_wait(StackKind.ENVIRONMENT, name, region, on_event)
        if isinstance(outcome, Failure):
            raise outcome.to_error(name)

        await _run_blocking(self._store.delete_environment, app_name, env_name)
        logger.info("Environment deleted", extra={"app": app_name, "env": env_name})

    @staticmethod
    def _record(
        app_name: str,
        env_name: str,
        region: str,
        outputs: Mapping[str, str],
        env: CreateEnvironmentInput | None = None,
    ) -> Environment:
        return Environment(
            app=app_name,
            name=env_name,
            region=region,
            account_id=env.account_id if env is not None else "",
            prod=env.prod if env is not None else False,
            cluster_id=outputs.get("ClusterId"),
            manager_role_id=outputs.get("EnvironmentManagerRoleId"),
        )


# =============================================================================
# Applications
# =============================================================================


@dataclass(frozen=True)
class AppRegionalResources:
    """Application resources provisioned in one region."""

    region: str
    registry_uri: str = ""
    artifact_bucket: str = ""
    services: list[str] = field(default_factory=list)
    environments: list[str] = field(default_factory=list)
    pipeline_resources: bool = False


class AppDeployer:
    """Application-wide and per-region application stacks."""

    def __init__(self, engine: ConvergenceEngine, store: ApplicationStore) -> None:
        self._engine = engine
        self._store = store

    @property
    def _templates_dir(self) -> Path | None:
        return self._engine.config.templates_dir

    async def deploy_app(
        self, app: CreateAppInput, region: str, on_event: EventCallback | None = None
    ) -> Application:
        """Converge the application stack and its home-region stack."""
        request = AppStack(app, region, templates_dir=self._templates_dir).to_request()
        ensure_success(await self._engine.converge_and_wait(request, on_event), request.stack_name)

        record = Application(
            name=app.name,
            account_id=app.account_id,
            domain=app.domain_name,
            tags=app.additional_tags,
        )
        await self._converge_regional(record, region, on_event=on_event)
        await _run_blocking(self._store.create_application, record)
        logger.info("Application deployed", extra={"app": app.name, "region": region})
        return record

    async def add_service_to_app(
        self, app: Application, region: str, service_name: str
    ) -> AppRegionalResources:
        """Register a service so its image repository exists in `region`."""
        return await self._converge_regional(app, region, add_services=[service_name])

    async def remove_service_from_app(
        self, app: Application, region: str, service_name: str
    ) -> AppRegionalResources:
        return await self._converge_regional(app, region, remove_services=[service_name])

    async def add_env_to_app(
        self, app: Application, region: str, env_name: str
    ) -> AppRegionalResources:
        return await self._converge_regional(app, region, add_environments=[env_name])

    async def add_pipeline_resources(self, app: Application, region: str) -> AppRegionalResources:
        """Provision pipeline artifact storage in `region`."""
        return await self._converge_regional(app, region, pipeline_resources=True)

    async def delegate_dns_permissions(
        self, app: Application, region: str, account_id: str
    ) -> None:
        """Allow `account_id` to manage records in the application's DNS zone.

        Raises:
            StackNotFoundError: If the application stack does not exist.
        """
        description = await self._engine.describe(StackKind.APPLICATION, app.name, region)
        if description is None:
            raise StackNotFoundError(f"Application {app.name} is not deployed in {region}")

        current = parameter_value(description.parameters, "dnsDelegationAccounts", []) or []
        accounts = [*current, account_id]
        request = AppStack(
            _app_input(app), region, delegated_accounts=accounts, templates_dir=self._templates_dir
        ).to_request()
        ensure_success(await self._engine.converge_and_wait(request), request.stack_name)
        logger.info(
            "DNS permissions delegated", extra={"app": app.name, "account_id": account_id}
        )

    async def delete_app(
        self, app_name: str, home_region: str, on_event: EventCallback | None = None
    ) -> None:
        """Delete every regional stack, then the application stack and record."""
        for resources in await self.get_regional_app_resources(app_name):
            outcome = await self._engine.delete_and_wait(
                StackKind.APP_REGIONAL, app_name, resources.region, on_event
            )
            if isinstance(outcome, Failure):
                raise outcome.to_error(f"{app_name} ({resources.region})")

        outcome = await self._engine.delete_and_wait(
            StackKind.APPLICATION, app_name, home_region, on_event
        )
        if isinstance(outcome, Failure):
            raise outcome.to_error(app_name)

        await _run_blocking(self._store.delete_application, app_name)
        logger.info("Application deleted", extra={"app": app_name})

    async def get_app_resources_by_region(
        self, app_name: str, region: str
    ) -> AppRegionalResources | None:
        description = await self._engine.describe(StackKind.APP_REGIONAL, app_name, region)
        if description is None or classify_stack_status(description.status) == StackPhase.DELETED:
            return None
        return self._resources(region, description.parameters, description.outputs)

    async def get_regional_app_resources(self, app_name: str) -> list[AppRegionalResources]:
        """Regional resources in every region the application reaches."""
        stacks = await self._engine.list_stacks(
            {APP_TAG: app_name, KIND_TAG: StackKind.APP_REGIONAL.value}
        )
        resources = [
            self._resources(stack.region or "", stack.parameters, stack.outputs)
            for stack in stacks
            if classify_stack_status(stack.status) != StackPhase.DELETED
        ]
        return sorted(resources, key=lambda r: r.region)

    async def _converge_regional(
        self,
        app: Application,
        region: str,
        add_services: Iterable[str] = (),
        remove_services: Iterable[str] = (),
        add_environments: Iterable[str] = (),
        pipeline_resources: bool = False,
        on_event: EventCallback | None = None,
    ) -> AppRegionalResources:
        current = await self.get_app_resources_by_region(app.name, region)
        services = set(current.services if current else [])
        environments = set(current.environments if current else [])
        services |= set(add_services)
        services -= set(remove_services)
        environments |= set(add_environments)
        pipeline = pipeline_resources or (current.pipeline_resources if current else False)

        descriptor = AppRegionalStack(
            app,
            region,
            services=services,
            environments=environments,
            pipeline_resources=pipeline,
            templates_dir=self._templates_dir,
        )
        request = descriptor.to_request()
        success = ensure_success(
            await self._engine.converge_and_wait(request, on_event), request.stack_name
        )
        return AppRegionalResources(
            region=region,
            registry_uri=success.outputs.get("RegistryUri", ""),
            artifact_bucket=success.outputs.get("ArtifactBucketName", ""),
            services=descriptor.services,
            environments=descriptor.environments,
            pipeline_resources=pipeline,
        )

    @staticmethod
    def _resources(
        region: str, parameters: Mapping[str, Any], outputs: Mapping[str, str]
    ) -> AppRegionalResources:
        pipeline = parameter_value(parameters, "pipelineResources", False)
        if isinstance(pipeline, str):
            pipeline = pipeline.lower() == "true"
        return AppRegionalResources(
            region=region,
            registry_uri=outputs.get("RegistryUri", ""),
            artifact_bucket=outputs.get("ArtifactBucketName", ""),
            services=sorted(parameter_value(parameters, "services", []) or []),
            environments=sorted(parameter_value(parameters, "environments", []) or []),
            pipeline_resources=bool(pipeline),
        )


# =============================================================================
# Pipelines
# =============================================================================


@dataclass(frozen=True)
class PipelineState:
    """What the backend knows about a pipeline; drives create-vs-update."""

    exists: bool
    stages: list[str] = field(default_factory=list)
    resource_version: str = ""


class PipelineDeployer:
    """Creates, updates and deletes pipeline stacks."""

    def __init__(
        self,
        engine: ConvergenceEngine,
        app_deployer: AppDeployer,
        pipelines: PipelineService | None = None,
    ) -> None:
        self._engine = engine
        self._app_deployer = app_deployer
        self._pipelines = pipelines

    async def deploy_pipeline(
        self,
        pipeline: CreatePipelineInput,
        app: Application,
        on_event: EventCallback | None = None,
    ) -> Success:
        """Create the pipeline, or update it when it exists.

        An unchanged pipeline is not touched: the update short-circuits in
        the engine with Success(changed=False).
        """
        state = await self.pipeline_state(pipeline)
        if state.exists:
            logger.info(
                "Pipeline exists, updating",
                extra={"pipeline": pipeline.name, "stages": state.stages},
            )
            return await self.update_pipeline(pipeline, on_event)

        regions = [pipeline.region, *pipeline.stage_regions]
        await self.add_pipeline_resources_to_app(app, regions)
        return await self.create_pipeline(pipeline, on_event)

    async def create_pipeline(
        self, pipeline: CreatePipelineInput, on_event: EventCallback | None = None
    ) -> Success:
        request = self._request(pipeline)
        outcome = await self._engine.converge_and_wait(request, on_event)
        success = ensure_success(outcome, request.stack_name)
        logger.info("Pipeline created", extra={"pipeline": pipeline.name})
        return success

    async def update_pipeline(
        self, pipeline: CreatePipelineInput, on_event: EventCallback | None = None
    ) -> Success:
        request = self._request(pipeline)
        outcome = await self._engine.converge_and_wait(request, on_event)
        success = ensure_success(outcome, request.stack_name)
        logger.info(
            "Pipeline updated", extra={"pipeline": pipeline.name, "changed": success.changed}
        )
        return success

    def _request(self, pipeline: CreatePipelineInput) -> StackRequest:
        return PipelineStack(pipeline, templates_dir=self._engine.config.templates_dir).to_request()

    async def pipeline_exists(self, app_name: str, name: str, region: str) -> bool:
        stack = f"{app_name}-{name}"
        description = await self._engine.describe(StackKind.PIPELINE, stack, region)
        return description is not None and (
            classify_stack_status(description.status) != StackPhase.DELETED
        )

    async def pipeline_state(self, pipeline: CreatePipelineInput) -> PipelineState:
        description = await self._engine.describe(
            StackKind.PIPELINE, f"{pipeline.app_name}-{pipeline.name}", pipeline.region
        )
        if description is None or classify_stack_status(description.status) == StackPhase.DELETED:
            return PipelineState(exists=False)

        stages = [
            stage.get("environment", "")
            for stage in parameter_value(description.parameters, "stages", []) or []
            if isinstance(stage, Mapping)
        ]
        version = description.tags.get(FINGERPRINT_TAG, "")

        if self._pipelines is not None:
            record = await _run_blocking(
                self._pipelines.get_pipeline, description.outputs.get("PipelineName", "")
            )
            if record is not None:
                stages = list(record.stages) or stages
                version = record.version or version

        return PipelineState(exists=True, stages=stages, resource_version=version)

    async def delete_pipeline(
        self, app_name: str, name: str, region: str, on_event: EventCallback | None = None
    ) -> None:
        stack = f"{app_name}-{name}"
        outcome = await self._engine.delete_and_wait(StackKind.PIPELINE, stack, region, on_event)
        if isinstance(outcome, Failure):
            raise outcome.to_error(stack)
        logger.info("Pipeline deleted", extra={"pipeline": name})

    async def add_pipeline_resources_to_app(
        self, app: Application, regions: Iterable[str]
    ) -> list[AppRegionalResources]:
        """Provision artifact storage in every region the pipeline touches."""
        resources = []
        for region in dict.fromkeys(regions):
            resources.append(await self._app_deployer.add_pipeline_resources(app, region))
        return resources


# =============================================================================
# Services
# =============================================================================


class ServiceDeployer:
    """Builds, deploys and removes services across environments."""

    def __init__(
        self,
        engine: ConvergenceEngine,
        store: ConfigStore,
        app_deployer: AppDeployer,
        repository: ContainerRepository,
        images: ImageRemover | None = None,
        secrets: SecretsStore | None = None,
    ) -> None:
        self._engine = engine
        self._store = store
        self._app_deployer = app_deployer
        self._repository = repository
        self._images = images
        self._secrets = secrets

    async def deploy_service(
        self, svc: DeployServiceInput, on_event: EventCallback | None = None
    ) -> Success:
        """Push the image and converge the service stack in its environment.

        Raises:
            StoreError: If the application or environment is unknown.
            PreconditionError: If the environment has no cluster, or secrets
                are given without a secrets store.
        """
        app = await _run_blocking(self._store.get_application, svc.app_name)
        env = await _run_blocking(self._store.get_environment, svc.app_name, svc.env_name)
        if not env.cluster_id:
            raise PreconditionError(
                f"Environment {env.name} has no cluster; redeploy it with `stackpilot env deploy`"
            )

        await self._app_deployer.add_service_to_app(app, env.region, svc.name)

        repository_name = f"{svc.app_name}/{svc.name}"
        if svc.image.location:
            image_uri = svc.image.location
        else:
            image_uri = await _run_blocking(
                self._repository.build_and_push, repository_name, svc.image
            )

        if svc.secrets:
            references = await self._store_secrets(svc)
            svc = svc.model_copy(update={"variables": {**svc.variables, **references}})

        request = ServiceStack(
            svc,
            env.region,
            image_uri,
            env.cluster_id,
            templates_dir=self._engine.config.templates_dir,
        ).to_request()
        success = ensure_success(
            await self._engine.converge_and_wait(request, on_event), request.stack_name
        )

        await _run_blocking(self._store.create_service, Service(app=svc.app_name, name=svc.name))
        logger.info(
            "Service deployed",
            extra={"app": svc.app_name, "env": svc.env_name, "service": svc.name},
        )
        return success

    async def delete_service(
        self,
        app_name: str,
        svc_name: str,
        env_names: Iterable[str] | None = None,
        on_event: EventCallback | None = None,
    ) -> list[str]:
        """Delete the service from some or all environments.

        When removed from every environment, its images and its record on
        the application are removed too.

        Returns:
            Environments the service was deleted from.
        """
        envs = await _run_blocking(self._store.list_environments, app_name)
        targets = set(env_names) if env_names is not None else {env.name for env in envs}
        deleted: list[str] = []

        for env in envs:
            if env.name not in targets:
                continue
            stack = f"{app_name}-{env.name}-{svc_name}"
            outcome = await self._engine.delete_and_wait(
                StackKind.SERVICE, stack, env.region, on_event
            )
            if isinstance(outcome, Failure):
                raise outcome.to_error(stack)
            deleted.append(env.name)

        if env_names is None:
            if self._images is not None:
                await _run_blocking(self._images.clear_repository, f"{app_name}/{svc_name}")
            app = await _run_blocking(self._store.get_application, app_name)
            for region in sorted({env.region for env in envs}):
                await self._app_deployer.remove_service_from_app(app, region, svc_name)
            await _run_blocking(self._store.delete_service, app_name, svc_name)

        logger.info(
            "Service deleted", extra={"app": app_name, "service": svc_name, "envs": deleted}
        )
        return deleted

    async def _store_secrets(self, svc: DeployServiceInput) -> dict[str, str]:
        if self._secrets is None:
            raise PreconditionError(
                f"Service {svc.name} declares secrets but no secrets store is configured"
            )
        references: dict[str, str] = {}
        tags = {APP_TAG: svc.app_name, ENV_TAG: svc.env_name, SERVICE_TAG: svc.name}
        for key in sorted(svc.secrets):
            secret_id = await _run_blocking(
                self._secrets.create_secret,
                f"{svc.app_name}-{svc.env_name}-{svc.name}-{key}".lower(),
                svc.secrets[key],
                tags,
            )
            references[key] = f"secretref:{secret_id}"
        return references


# =============================================================================
# Tasks
# =============================================================================


@dataclass(frozen=True)
class TaskResources:
    image_uri: str
    log_group: str
    outputs: dict[str, str] = field(default_factory=dict)


class TaskDeployer:
    """Deploys the resource stack backing a one-off task group."""

    def __init__(
        self, engine: ConvergenceEngine, repository: ContainerRepository | None = None
    ) -> None:
        self._engine = engine
        self._repository = repository

    async def deploy_task(
        self,
        task: CreateTaskResourcesInput,
        cluster_id: str | None = None,
        on_event: EventCallback | None = None,
    ) -> TaskResources:
        """Push the task image and converge the task resource stack.

        Raises:
            PreconditionError: If the image must be built but no repository is configured.
        """
        if task.image.location:
            image_uri = task.image.location
        elif self._repository is not None:
            image_uri = await _run_blocking(
                self._repository.build_and_push, task.group_name, task.image
            )
        else:
            raise PreconditionError(
                f"Task {task.group_name} needs image.location when no repository is configured"
            )

        request = TaskStack(
            task, image_uri, cluster_id, templates_dir=self._engine.config.templates_dir
        ).to_request()
        success = ensure_success(
            await self._engine.converge_and_wait(request, on_event), request.stack_name
        )
        outputs = dict(success.outputs)
        return TaskResources(
            image_uri=image_uri,
            log_group=outputs.get("LogGroupName", task.group_name),
            outputs=outputs,
        )


# =============================================================================
# Listing
# =============================================================================


class DeployedStackLister:
    """Answers "where is this deployed" from backend tags."""

    def __init__(self, engine: ConvergenceEngine) -> None:
        self._engine = engine

    async def list_environments_deployed_to(self, app_name: str, svc_name: str) -> list[str]:
        stacks = await self._service_stacks({APP_TAG: app_name, SERVICE_TAG: svc_name})
        return sorted({stack.tags[ENV_TAG] for stack in stacks if ENV_TAG in stack.tags})

    async def list_deployed_services(self, app_name: str, env_name: str) -> list[str]:
        stacks = await self._service_stacks({APP_TAG: app_name, ENV_TAG: env_name})
        return sorted({stack.tags[SERVICE_TAG] for stack in stacks if SERVICE_TAG in stack.tags})

    async def is_service_deployed(self, app_name: str, env_name: str, svc_name: str) -> bool:
        return svc_name in await self.list_deployed_services(app_name, env_name)

    async def _service_stacks(self, tags: dict[str, str]) -> list[StackDescription]:
        stacks = await self._engine.list_stacks({**tags, KIND_TAG: StackKind.SERVICE.value})
        return [
            stack
            for stack in stacks
            if classify_stack_status(stack.status) != StackPhase.DELETED
        ]
