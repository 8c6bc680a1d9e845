"""Stack descriptors: desired resource topology as template + parameters.

A descriptor turns a validated deployment input into an immutable
StackRequest. Nothing here talks to a backend.

KEY DESIGN DECISIONS:
1. One stack per (kind, name, region): the stack name is derived
   deterministically so that every process addressing the same target
   addresses the same backend stack
2. Parameters are ordered pairs so serialization is reproducible
3. A fingerprint of template + parameters + tags is stamped as a tag, which
   lets backends that cannot export templates still answer "has this changed"
"""

from __future__ import annotations

import copy
import dataclasses
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from .config import MAX_STACK_NAME_LENGTH, MAX_TEMPLATE_FILE_SIZE_BYTES
from .models import (
    Application,
    CreateAppInput,
    CreateEnvironmentInput,
    CreatePipelineInput,
    CreateTaskResourcesInput,
    DeployServiceInput,
)

logger = logging.getLogger(__name__)

PACKAGED_TEMPLATES_DIR = Path(__file__).parent / "templates"

STACK_NAME_PREFIX = "sp"

# Tags stamped on every stack; used for listing and ownership checks
MANAGED_TAG = "stackpilot-managed"
KIND_TAG = "stackpilot-kind"
APP_TAG = "stackpilot-application"
ENV_TAG = "stackpilot-environment"
SERVICE_TAG = "stackpilot-service"
PIPELINE_TAG = "stackpilot-pipeline"
TASK_TAG = "stackpilot-task"
FINGERPRINT_TAG = "stackpilot-fingerprint"

ARM_PARAMETERS_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentParameters.json#"
)


class StackKind(str, Enum):
    """Kinds of stacks in the application hierarchy."""

    APPLICATION = "application"
    APP_REGIONAL = "app-regional"
    ENVIRONMENT = "environment"
    SERVICE = "service"
    PIPELINE = "pipeline"
    TASK = "task"


KIND_ABBREVIATIONS: dict[StackKind, str] = {
    StackKind.APPLICATION: "app",
    StackKind.APP_REGIONAL: "appreg",
    StackKind.ENVIRONMENT: "env",
    StackKind.SERVICE: "svc",
    StackKind.PIPELINE: "pipe",
    StackKind.TASK: "task",
}


class TemplateError(Exception):
    """Raised when a stack template cannot be loaded."""

    pass


def generate_stack_name(kind: StackKind, name: str, region: str) -> str:
    """Generate the deterministic backend name for a (kind, name, region) target.

    Format: sp-{kind}-{name}-{region}, hashed down when too long.

    The name must be:
    - Deterministic (same inputs = same name)
    - Unique per (kind, name, region)
    - Lowercase alphanumerics and hyphens
    - At most MAX_STACK_NAME_LENGTH characters
    """
    raw = f"{STACK_NAME_PREFIX}-{KIND_ABBREVIATIONS[kind]}-{name}-{region}"
    stack_name = "".join(c if c.isalnum() or c == "-" else "-" for c in raw.lower())

    if len(stack_name) > MAX_STACK_NAME_LENGTH:
        digest = hashlib.sha256(f"{kind.value}:{name}:{region}".encode()).hexdigest()[:8]
        stack_name = stack_name[: MAX_STACK_NAME_LENGTH - 9].rstrip("-") + "-" + digest

    return stack_name


def canonical_json(value: Any) -> str:
    """Serialize with sorted keys and no whitespace for stable comparisons."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def normalize_value(value: Any) -> str:
    """Normalize a parameter value for comparison.

    Backends hand parameters back in their own types: "true" vs True,
    "2" vs 2, or wrapped as {"value": ...}. These are semantically equal.
    """
    if isinstance(value, Mapping) and set(value.keys()) <= {"value", "type"} and "value" in value:
        value = value["value"]
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, str):
        lowered = value.strip()
        if lowered.lower() in ("true", "false"):
            return lowered.lower()
        return lowered
    if isinstance(value, int | float):
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return canonical_json(value)


@dataclass(frozen=True)
class StackRequest:
    """A desired stack state. Immutable once built.

    The template is deep-copied on construction; treat it as read-only.
    """

    kind: StackKind
    name: str
    region: str
    template: Mapping[str, Any]
    parameters: tuple[tuple[str, Any], ...] = ()
    tags: tuple[tuple[str, str], ...] = ()

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("StackRequest name cannot be empty")
        if not self.region:
            raise ValueError("StackRequest region cannot be empty")

        keys = [key for key, _ in self.parameters]
        if len(keys) != len(set(keys)):
            raise ValueError(f"Duplicate parameter keys in request for {self.name}: {keys}")

        object.__setattr__(self, "template", copy.deepcopy(dict(self.template)))
        object.__setattr__(self, "parameters", tuple((k, v) for k, v in self.parameters))
        object.__setattr__(self, "tags", tuple((k, str(v)) for k, v in self.tags))

    def __hash__(self) -> int:
        return hash((self.key, self.fingerprint()))

    @property
    def key(self) -> tuple[StackKind, str, str]:
        """The identity of the target: one in-flight operation per key."""
        return (self.kind, self.name, self.region)

    @property
    def stack_name(self) -> str:
        """Backend stack name for this target."""
        return generate_stack_name(self.kind, self.name, self.region)

    def parameters_dict(self) -> dict[str, Any]:
        return dict(self.parameters)

    def tags_dict(self) -> dict[str, str]:
        return dict(self.tags)

    def fingerprint(self) -> str:
        """Stable hash of the desired state (template, parameters, tags)."""
        payload = {
            "template": self.template,
            "parameters": {key: normalize_value(value) for key, value in self.parameters},
            "tags": dict(self.tags),
        }
        return hashlib.sha256(canonical_json(payload).encode()).hexdigest()

    def with_parameters(self, overrides: Mapping[str, Any]) -> StackRequest:
        """Copy of this request with some parameter values replaced."""
        unknown = set(overrides) - {key for key, _ in self.parameters}
        if unknown:
            raise ValueError(f"Unknown parameters for {self.name}: {sorted(unknown)}")
        parameters = tuple((key, overrides.get(key, value)) for key, value in self.parameters)
        return dataclasses.replace(self, parameters=parameters)

    def backend_tags(self) -> dict[str, str]:
        """Tags to stamp on the backend stack, including ownership markers."""
        tags = dict(self.tags)
        tags[MANAGED_TAG] = "true"
        tags[KIND_TAG] = self.kind.value
        tags[FINGERPRINT_TAG] = self.fingerprint()[:16]
        return tags

    def describe(self) -> str:
        """Human-readable target description for logs and errors."""
        return f"{self.kind.value} '{self.name}' in {self.region}"


def compute_changes(
    request: StackRequest,
    template: Mapping[str, Any] | None,
    parameters: Mapping[str, Any],
    tags: Mapping[str, str],
) -> list[str]:
    """Compare the current stack state with a request.

    Only parameters and tags named by the request are compared: backends
    report defaulted parameters and add their own tags, which are not drift.

    Args:
        request: Desired state.
        template: Current template, or None when the backend cannot export it.
            The fingerprint tag then stands in for the template.
        parameters: Current parameters.
        tags: Current stack tags.

    Returns:
        Sorted list of changed paths; empty when converged.
    """
    changes: list[str] = []

    if template is None:
        if tags.get(FINGERPRINT_TAG) != request.fingerprint()[:16]:
            changes.append("fingerprint")
    elif canonical_json(template) != canonical_json(request.template):
        changes.append("template")

    for key, value in request.parameters:
        if key not in parameters or normalize_value(parameters[key]) != normalize_value(value):
            changes.append(f"parameters.{key}")

    for key, value in request.tags:
        if tags.get(key) != value:
            changes.append(f"tags.{key}")

    return sorted(changes)


def load_template(kind: StackKind, templates_dir: Path | None = None) -> dict[str, Any]:
    """Load the ARM template JSON for a stack kind.

    Args:
        kind: Stack kind; maps to {kind}.json.
        templates_dir: Override directory; defaults to the packaged templates.

    Returns:
        Parsed template as a dictionary.

    Raises:
        TemplateError: If the template cannot be loaded.
    """
    directory = templates_dir or PACKAGED_TEMPLATES_DIR
    template_path = directory / f"{kind.value}.json"

    if not template_path.exists():
        raise TemplateError(f"Template file not found: {template_path}")

    try:
        file_size = template_path.stat().st_size
    except OSError as e:
        raise TemplateError(f"Failed to stat template file {template_path}: {e}") from e

    if file_size > MAX_TEMPLATE_FILE_SIZE_BYTES:
        raise TemplateError(
            f"Template file exceeds maximum size of "
            f"{MAX_TEMPLATE_FILE_SIZE_BYTES} bytes: {template_path}"
        )

    try:
        template = json.loads(template_path.read_text(encoding="utf-8"))
    except OSError as e:
        raise TemplateError(f"Failed to read template file {template_path}: {e}") from e
    except json.JSONDecodeError as e:
        raise TemplateError(f"Invalid JSON in {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise TemplateError(f"Template must be a JSON object: {template_path}")

    logger.debug("Loaded template '%s' from %s", kind.value, template_path)
    return template


def _env_pairs(variables: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"name": key, "value": variables[key]} for key in sorted(variables)]


# =============================================================================
# Descriptors
# =============================================================================


class StackDescriptor(ABC):
    """Serializes one target's desired topology.

    Subclasses provide the target identity and parameters; the template
    comes from the packaged (or overridden) templates directory.
    """

    kind: StackKind

    def __init__(self, templates_dir: Path | None = None) -> None:
        self._templates_dir = templates_dir

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def region(self) -> str: ...

    @abstractmethod
    def parameters(self) -> list[tuple[str, Any]]: ...

    def tags(self) -> dict[str, str]:
        return {}

    def template(self) -> dict[str, Any]:
        return load_template(self.kind, self._templates_dir)

    def serialized_parameters(self) -> str:
        """Parameters in ARM deployment-parameters file format."""
        document = {
            "$schema": ARM_PARAMETERS_SCHEMA,
            "contentVersion": "1.0.0.0",
            "parameters": {key: {"value": value} for key, value in self.parameters()},
        }
        return json.dumps(document, indent=2)

    def to_request(self) -> StackRequest:
        tags = self.tags()
        return StackRequest(
            kind=self.kind,
            name=self.name,
            region=self.region,
            template=self.template(),
            parameters=tuple(self.parameters()),
            tags=tuple(sorted(tags.items())),
        )


class AppStack(StackDescriptor):
    """Application-wide resources: admin identity and optional DNS zone."""

    kind = StackKind.APPLICATION

    def __init__(
        self,
        app: CreateAppInput,
        region: str,
        delegated_accounts: Iterable[str] = (),
        templates_dir: Path | None = None,
    ) -> None:
        super().__init__(templates_dir)
        self._app = app
        self._region = region
        accounts = [app.account_id] if app.account_id else []
        for account in delegated_accounts:
            if account and account not in accounts:
                accounts.append(account)
        self._accounts = accounts

    @property
    def name(self) -> str:
        return self._app.name

    @property
    def region(self) -> str:
        return self._region

    def parameters(self) -> list[tuple[str, Any]]:
        return [
            ("appName", self._app.name),
            ("domainName", self._app.domain_name or ""),
            ("dnsDelegationAccounts", list(self._accounts)),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        return {**self._app.additional_tags, APP_TAG: self._app.name}


class AppRegionalStack(StackDescriptor):
    """Per-region application resources: registry and pipeline artifact storage."""

    kind = StackKind.APP_REGIONAL

    def __init__(
        self,
        app: Application,
        region: str,
        services: Iterable[str] = (),
        environments: Iterable[str] = (),
        pipeline_resources: bool = False,
        templates_dir: Path | None = None,
    ) -> None:
        super().__init__(templates_dir)
        self._app = app
        self._region = region
        self._services = sorted(set(services))
        self._environments = sorted(set(environments))
        self._pipeline_resources = pipeline_resources

    @property
    def name(self) -> str:
        return self._app.name

    @property
    def region(self) -> str:
        return self._region

    @property
    def services(self) -> list[str]:
        return list(self._services)

    @property
    def environments(self) -> list[str]:
        return list(self._environments)

    @property
    def pipeline_resources(self) -> bool:
        return self._pipeline_resources

    def parameters(self) -> list[tuple[str, Any]]:
        return [
            ("appName", self._app.name),
            ("services", list(self._services)),
            ("environments", list(self._environments)),
            ("pipelineResources", self._pipeline_resources),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        return {**self._app.tags, APP_TAG: self._app.name}


class EnvironmentStack(StackDescriptor):
    """Environment network, cluster, log workspace, storage and manager identity."""

    kind = StackKind.ENVIRONMENT

    def __init__(self, env: CreateEnvironmentInput, templates_dir: Path | None = None) -> None:
        super().__init__(templates_dir)
        self._env = env

    @property
    def name(self) -> str:
        return f"{self._env.app_name}-{self._env.name}"

    @property
    def region(self) -> str:
        return self._env.region

    def parameters(self) -> list[tuple[str, Any]]:
        return [
            ("appName", self._env.app_name),
            ("environmentName", self._env.name),
            ("vnetCidr", self._env.vpc.cidr),
            ("publicSubnetCidrs", list(self._env.vpc.public_subnet_cidrs)),
            ("privateSubnetCidrs", list(self._env.vpc.private_subnet_cidrs)),
            ("prod", self._env.prod),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        return {
            **self._env.additional_tags,
            APP_TAG: self._env.app_name,
            ENV_TAG: self._env.name,
        }


class ServiceStack(StackDescriptor):
    """A long-running containerized service inside an environment's cluster."""

    kind = StackKind.SERVICE

    def __init__(
        self,
        svc: DeployServiceInput,
        region: str,
        image_uri: str,
        cluster_id: str,
        templates_dir: Path | None = None,
    ) -> None:
        super().__init__(templates_dir)
        self._svc = svc
        self._region = region
        self._image_uri = image_uri
        self._cluster_id = cluster_id

    @property
    def name(self) -> str:
        return f"{self._svc.app_name}-{self._svc.env_name}-{self._svc.name}"

    @property
    def region(self) -> str:
        return self._region

    def parameters(self) -> list[tuple[str, Any]]:
        return [
            ("appName", self._svc.app_name),
            ("environmentName", self._svc.env_name),
            ("serviceName", self._svc.name),
            ("clusterId", self._cluster_id),
            ("imageUri", self._image_uri),
            ("containerPort", self._svc.port),
            ("cpu", str(self._svc.cpu)),
            ("memory", self._svc.memory),
            ("desiredCount", self._svc.count),
            ("variables", _env_pairs(self._svc.variables)),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        return {
            APP_TAG: self._svc.app_name,
            ENV_TAG: self._svc.env_name,
            SERVICE_TAG: self._svc.name,
        }


class PipelineStack(StackDescriptor):
    """A release pipeline deploying to an ordered list of environments."""

    kind = StackKind.PIPELINE

    def __init__(self, pipeline: CreatePipelineInput, templates_dir: Path | None = None) -> None:
        super().__init__(templates_dir)
        self._pipeline = pipeline

    @property
    def name(self) -> str:
        return f"{self._pipeline.app_name}-{self._pipeline.name}"

    @property
    def region(self) -> str:
        return self._pipeline.region

    @property
    def stages(self) -> list[str]:
        return [stage.env_name for stage in self._pipeline.stages]

    def parameters(self) -> list[tuple[str, Any]]:
        source = self._pipeline.source
        return [
            ("appName", self._pipeline.app_name),
            ("pipelineName", self._pipeline.name),
            ("sourceProvider", source.provider),
            ("repositoryUrl", source.repository_url),
            ("branch", source.branch),
            ("connectionName", source.connection_name or ""),
            (
                "stages",
                [
                    {
                        "environment": stage.env_name,
                        "region": stage.region,
                        "requiresApproval": stage.requires_approval,
                        "testCommands": list(stage.test_commands),
                    }
                    for stage in self._pipeline.stages
                ],
            ),
            (
                "artifactBuckets",
                [
                    {"region": bucket.region, "bucketName": bucket.bucket_name}
                    for bucket in self._pipeline.artifact_buckets
                ],
            ),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        return {
            **self._pipeline.additional_tags,
            APP_TAG: self._pipeline.app_name,
            PIPELINE_TAG: self._pipeline.name,
        }


class TaskStack(StackDescriptor):
    """Resources backing a one-off task group: job definition and log workspace."""

    kind = StackKind.TASK

    def __init__(
        self,
        task: CreateTaskResourcesInput,
        image_uri: str,
        cluster_id: str | None = None,
        templates_dir: Path | None = None,
    ) -> None:
        super().__init__(templates_dir)
        self._task = task
        self._image_uri = image_uri
        self._cluster_id = cluster_id

    @property
    def name(self) -> str:
        return self._task.group_name

    @property
    def region(self) -> str:
        return self._task.region

    def parameters(self) -> list[tuple[str, Any]]:
        return [
            ("taskName", self._task.group_name),
            ("clusterId", self._cluster_id or ""),
            ("imageUri", self._image_uri),
            ("cpu", str(self._task.cpu)),
            ("memory", self._task.memory),
            ("command", list(self._task.command)),
            ("entrypoint", list(self._task.entrypoint)),
            ("variables", _env_pairs(self._task.env_vars)),
            ("tags", self.tags()),
        ]

    def tags(self) -> dict[str, str]:
        tags = {TASK_TAG: self._task.group_name}
        if self._task.app_name:
            tags[APP_TAG] = self._task.app_name
        if self._task.env_name:
            tags[ENV_TAG] = self._task.env_name
        return tags
