"""Narrow protocols for the collaborators the core depends on.

Each protocol names only the calls a component makes, so a facade can be
composed from exactly the capabilities it needs and test doubles stay small.
All methods are synchronous; async callers run them in the default executor.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .logs import LogEventsOutput
    from .models import Application, Environment, ImageConfig, Service
    from .tasks import TaskHandle, TaskSpec, TaskStatus


# =============================================================================
# Configuration store
# =============================================================================


@runtime_checkable
class ApplicationStore(Protocol):
    def create_application(self, app: Application) -> None: ...

    def get_application(self, name: str) -> Application: ...

    def list_applications(self) -> list[Application]: ...

    def delete_application(self, name: str) -> None: ...


@runtime_checkable
class EnvironmentStore(Protocol):
    def create_environment(self, env: Environment) -> None: ...

    def get_environment(self, app_name: str, env_name: str) -> Environment: ...

    def list_environments(self, app_name: str) -> list[Environment]: ...

    def delete_environment(self, app_name: str, env_name: str) -> None: ...


@runtime_checkable
class ServiceStore(Protocol):
    def create_service(self, svc: Service) -> None: ...

    def get_service(self, app_name: str, svc_name: str) -> Service: ...

    def list_services(self, app_name: str) -> list[Service]: ...

    def delete_service(self, app_name: str, svc_name: str) -> None: ...


@runtime_checkable
class ConfigStore(ApplicationStore, EnvironmentStore, ServiceStore, Protocol):
    """Records of what has been created, independent of backend state."""


# =============================================================================
# Images and secrets
# =============================================================================


@runtime_checkable
class ContainerRepository(Protocol):
    def uri(self, name: str) -> str:
        """Registry URI of the repository for `name`."""
        ...

    def build_and_push(self, name: str, image: ImageConfig) -> str:
        """Build (or retag) and push an image; returns the pushed reference."""
        ...


@runtime_checkable
class ImageRemover(Protocol):
    def clear_repository(self, name: str) -> None:
        """Delete every image in the repository for `name`."""
        ...


@runtime_checkable
class SecretsStore(Protocol):
    def create_secret(self, name: str, value: str, tags: Mapping[str, str] | None = None) -> str:
        """Store a secret; returns its identifier."""
        ...

    def delete_secret(self, name: str) -> None: ...


# =============================================================================
# Logs, buckets, pipelines, tasks
# =============================================================================


@runtime_checkable
class LogStore(Protocol):
    def task_log_events(
        self,
        group_name: str,
        stream_last_event_time: Mapping[str, int],
        *,
        limit: int | None = None,
    ) -> LogEventsOutput:
        """Return events at or after each stream's timestamp (epoch ms)."""
        ...

    def log_group_exists(self, group_name: str) -> bool: ...


@runtime_checkable
class BucketService(Protocol):
    def bucket_is_empty(self, bucket: str) -> bool: ...

    def empty_bucket(self, bucket: str) -> None: ...


@dataclass(frozen=True)
class PipelineRecord:
    """A pipeline as reported by the pipeline service."""

    name: str
    stages: list[str] = field(default_factory=list)
    version: str = ""
    tags: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class PipelineService(Protocol):
    def get_pipeline(self, name: str) -> PipelineRecord | None: ...

    def list_pipeline_names_by_tags(self, tags: Mapping[str, str]) -> list[str]: ...


@runtime_checkable
class TaskBackend(Protocol):
    def has_default_cluster(self) -> bool: ...

    def run_tasks(self, spec: TaskSpec) -> list[TaskHandle]: ...

    def describe_tasks(self, cluster_id: str, task_ids: list[str]) -> list[TaskStatus]: ...

    def stop_tasks(self, cluster_id: str, task_ids: list[str], reason: str) -> None: ...


# =============================================================================
# Sessions
# =============================================================================


@runtime_checkable
class SessionProvider(Protocol):
    def default(self) -> Any: ...

    def default_with_region(self, region: str) -> Any: ...

    def from_role(self, role_id: str, region: str) -> Any: ...

    def from_static_creds(self, tenant_id: str, client_id: str, client_secret: str) -> Any: ...

    def from_profile(self, name: str) -> Any: ...

    def names(self) -> list[str]: ...
