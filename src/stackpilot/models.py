"""Pydantic models for deployment inputs and configuration store records.

These models provide:
1. Type-safe YAML parsing of environment, service, pipeline and task inputs
2. Validation at the boundary (fail fast, fail loudly)
3. Records persisted by the configuration store
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

NameStr = Annotated[str, Field(min_length=1, max_length=30, pattern=r"^[a-z][a-z0-9-]*$")]


# =============================================================================
# Configuration Store Records
# =============================================================================


class Application(BaseModel):
    """An application: the root of the resource hierarchy."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: NameStr
    account_id: str = Field("", alias="accountId")
    domain: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)


class Environment(BaseModel):
    """A deployed environment of an application in one region."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app: NameStr
    name: NameStr
    region: str
    account_id: str = Field("", alias="accountId")
    prod: bool = False
    cluster_id: str | None = Field(None, alias="clusterId")
    manager_role_id: str | None = Field(None, alias="managerRoleId")


class Service(BaseModel):
    """A long-running containerized service of an application."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app: NameStr
    name: NameStr
    type: str = "Load Balanced Web Service"


# =============================================================================
# Application Inputs
# =============================================================================


class CreateAppInput(BaseModel):
    """Input for provisioning the application-level stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: NameStr
    account_id: str = Field("", alias="accountId")
    domain_name: str | None = Field(None, alias="domainName")
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="tags")


# =============================================================================
# Environment Inputs
# =============================================================================


class VpcConfig(BaseModel):
    """Network settings for an environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    cidr: str = "10.0.0.0/16"
    public_subnet_cidrs: list[str] = Field(
        default_factory=lambda: ["10.0.0.0/24", "10.0.1.0/24"], alias="publicSubnetCidrs"
    )
    private_subnet_cidrs: list[str] = Field(
        default_factory=lambda: ["10.0.2.0/24", "10.0.3.0/24"], alias="privateSubnetCidrs"
    )

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError("cidr must be in CIDR notation (e.g., 10.0.0.0/16)")
        return v


class CreateEnvironmentInput(BaseModel):
    """Input for deploying an environment stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app_name: NameStr = Field(alias="app")
    name: NameStr
    region: str
    account_id: str = Field("", alias="accountId")
    prod: bool = False
    vpc: VpcConfig = Field(default_factory=VpcConfig)
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="tags")


# =============================================================================
# Service Inputs
# =============================================================================


class ImageConfig(BaseModel):
    """Container image source: either a build context or a prebuilt location."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    build_context: str | None = Field(None, alias="build")
    dockerfile: str = "Dockerfile"
    location: str | None = None
    tag: str = "latest"

    @field_validator("location")
    @classmethod
    def validate_location(cls, v: str | None) -> str | None:
        if v is not None and not v.strip():
            raise ValueError("location cannot be blank")
        return v


class DeployServiceInput(BaseModel):
    """Input for deploying a service into an environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app_name: NameStr = Field(alias="app")
    env_name: NameStr = Field(alias="env")
    name: NameStr
    image: ImageConfig = Field(default_factory=ImageConfig)
    port: Annotated[int, Field(ge=1, le=65535)] = 80
    cpu: float = 0.5
    memory: str = "1Gi"
    count: Annotated[int, Field(ge=0, le=300)] = 1
    variables: dict[str, str] = Field(default_factory=dict)
    secrets: dict[str, str] = Field(default_factory=dict)


class DeleteServiceInput(BaseModel):
    """Input for deleting a service from one environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app_name: NameStr = Field(alias="app")
    env_name: NameStr = Field(alias="env")
    name: NameStr
    region: str


# =============================================================================
# Pipeline Inputs
# =============================================================================


class PipelineSource(BaseModel):
    """Source repository that triggers the pipeline."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    provider: str = "GitHub"
    repository_url: str = Field(alias="repository")
    branch: str = "main"
    connection_name: str | None = Field(None, alias="connectionName")

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        valid_providers = {"GitHub", "AzureRepos", "Bitbucket"}
        if v not in valid_providers:
            raise ValueError(f"provider must be one of {valid_providers}")
        return v


class PipelineStage(BaseModel):
    """A deployment stage targeting one environment."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    env_name: NameStr = Field(alias="env")
    region: str
    requires_approval: bool = Field(False, alias="requiresApproval")
    test_commands: list[str] = Field(default_factory=list, alias="testCommands")


class ArtifactBucket(BaseModel):
    """Regional artifact storage provisioned on the application."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    region: str
    bucket_name: str = Field(alias="bucketName")
    key_id: str | None = Field(None, alias="keyId")


class CreatePipelineInput(BaseModel):
    """Input for creating or updating a pipeline stack."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app_name: NameStr = Field(alias="app")
    name: NameStr
    region: str
    source: PipelineSource
    stages: list[PipelineStage] = Field(default_factory=list)
    artifact_buckets: list[ArtifactBucket] = Field(default_factory=list, alias="artifactBuckets")
    additional_tags: dict[str, str] = Field(default_factory=dict, alias="tags")

    @field_validator("stages")
    @classmethod
    def validate_unique_stages(cls, v: list[PipelineStage]) -> list[PipelineStage]:
        names = [stage.env_name for stage in v]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"stages must target distinct environments, duplicated: {duplicates}")
        return v

    @property
    def stage_regions(self) -> list[str]:
        """Distinct stage regions in declaration order."""
        seen: list[str] = []
        for stage in self.stages:
            if stage.region not in seen:
                seen.append(stage.region)
        return seen


# =============================================================================
# Task Inputs
# =============================================================================


class CreateTaskResourcesInput(BaseModel):
    """Input for the one-off task resource stack and its launch."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    group_name: NameStr = Field(alias="name")
    region: str
    image: ImageConfig = Field(default_factory=ImageConfig)
    cpu: float = 0.25
    memory: str = "0.5Gi"
    count: Annotated[int, Field(ge=1, le=10)] = 1
    command: list[str] = Field(default_factory=list)
    entrypoint: list[str] = Field(default_factory=list)
    env_vars: dict[str, str] = Field(default_factory=dict, alias="variables")
    secrets: dict[str, str] = Field(default_factory=dict)
    app_name: str | None = Field(None, alias="app")
    env_name: str | None = Field(None, alias="env")
    cluster: str | None = None
    subnets: list[str] = Field(default_factory=list)


# =============================================================================
# Deployment Plan
# =============================================================================


class PlanSpec(BaseModel):
    """A multi-resource deployment plan for one application."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    app: CreateAppInput
    environments: list[CreateEnvironmentInput] = Field(default_factory=list)
    services: list[DeployServiceInput] = Field(default_factory=list)
    pipelines: list[CreatePipelineInput] = Field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        """Short summary used in log records."""
        return {
            "app": self.app.name,
            "environments": [env.name for env in self.environments],
            "services": [f"{svc.env_name}/{svc.name}" for svc in self.services],
            "pipelines": [pipeline.name for pipeline in self.pipelines],
        }


# Registry mapping input kinds (the `kind` of a YAML document) to models
INPUT_REGISTRY: dict[str, type[BaseModel]] = {
    "Application": CreateAppInput,
    "Environment": CreateEnvironmentInput,
    "Service": DeployServiceInput,
    "Pipeline": CreatePipelineInput,
    "Task": CreateTaskResourcesInput,
    "Plan": PlanSpec,
}


def get_input_class(kind: str) -> type[BaseModel]:
    """Get the input model for a document kind.

    Raises:
        ValueError: If kind is not recognized.
    """
    input_class = INPUT_REGISTRY.get(kind)
    if input_class is None:
        valid_kinds = list(INPUT_REGISTRY.keys())
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {valid_kinds}")
    return input_class
