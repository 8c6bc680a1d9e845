"""One-off tasks as Azure container groups, and their container logs.

A task is a container group with restart policy Never. The "cluster" a task
runs in is a resource group: either named directly, taken from an
environment's cluster resource id, or the per-region default group.

Each container group is its own log stream. The container logs API returns
the whole log on every call, so lines are numbered to build stable event ids
and filtered by the caller's per-stream timestamp.
"""

from __future__ import annotations

import logging
import re
import uuid
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from azure.core import PipelineClient
from azure.core.exceptions import ResourceNotFoundError
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    RetryPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .arm_client import translate_errors
from .logs import LogEvent, LogEventsOutput
from .session import Session
from .tasks import TaskHandle, TaskSpec, TaskStatus

logger = logging.getLogger(__name__)

ARM_ENDPOINT = "https://management.azure.com"
ARM_SCOPE = "https://management.azure.com/.default"
CONTAINER_GROUP_API_VERSION = "2023-05-01"
CONTAINER_GROUP_TYPE = "Microsoft.ContainerInstance/containerGroups"
CONTAINER_NAME = "main"
DEFAULT_TASK_GROUP_PREFIX = "stackpilot-tasks"

# Container group names: 1-63 characters
MAX_CONTAINER_GROUP_NAME_LENGTH = 63

LOG_LINE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(\.\d+)?Z?\s?(.*)$")


def arm_pipeline(credential: Any) -> PipelineClient:
    """HTTP pipeline for ARM endpoints the resource SDK does not cover."""
    return PipelineClient(
        base_url=ARM_ENDPOINT,
        policies=[
            HeadersPolicy({"Accept": "application/json"}),
            RetryPolicy(),
            BearerTokenCredentialPolicy(credential, ARM_SCOPE),
        ],
    )


def default_task_resource_group(region: str) -> str:
    return f"{DEFAULT_TASK_GROUP_PREFIX}-{region}"


def resource_group_of(cluster: str) -> str:
    """Resource group for a cluster given as a name or an ARM resource id."""
    parts = cluster.strip("/").split("/")
    lowered = [part.lower() for part in parts]
    if "resourcegroups" in lowered:
        index = lowered.index("resourcegroups")
        if index + 1 < len(parts):
            return parts[index + 1]
    return cluster


def parse_log_content(stream_id: str, content: str) -> list[LogEvent]:
    """Parse timestamped container log output into events.

    Lines without a timestamp (wrapped output) inherit the previous line's.
    """
    events: list[LogEvent] = []
    last_ts = 0
    for index, line in enumerate(content.splitlines()):
        match = LOG_LINE_PATTERN.match(line)
        if match:
            base, fraction, message = match.groups()
            stamp = datetime.strptime(base, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=UTC)
            millis = int((fraction or ".0")[1:4].ljust(3, "0"))
            last_ts = int(stamp.timestamp()) * 1000 + millis
        else:
            message = line
        events.append(
            LogEvent(
                stream_id=stream_id,
                timestamp=last_ts,
                message=message,
                event_id=f"{stream_id}:{index}",
            )
        )
    return events


class ArmTaskBackend:
    """TaskBackend running container groups."""

    def __init__(
        self,
        client: ResourceManagementClient,
        pipeline: PipelineClient,
        subscription_id: str,
        region: str,
    ) -> None:
        self._client = client
        self._pipeline = pipeline
        self._subscription_id = subscription_id
        self._region = region

    @classmethod
    def from_session(cls, session: Session, region: str) -> ArmTaskBackend:
        if not session.subscription_id:
            raise ValueError("Session has no subscription")
        client = ResourceManagementClient(
            credential=session.credential, subscription_id=session.subscription_id
        )
        return cls(client, arm_pipeline(session.credential), session.subscription_id, region)

    def has_default_cluster(self) -> bool:
        group = default_task_resource_group(self._region)
        with translate_errors("Check", group):
            return bool(self._client.resource_groups.check_existence(group))

    def run_tasks(self, spec: TaskSpec) -> list[TaskHandle]:
        group = (
            resource_group_of(spec.cluster)
            if spec.cluster
            else default_task_resource_group(spec.region)
        )
        handles: list[TaskHandle] = []
        for _ in range(spec.count):
            name = f"t{uuid.uuid4().hex[:8]}-{spec.group_name}"[:MAX_CONTAINER_GROUP_NAME_LENGTH]
            resource_id = (
                f"/subscriptions/{self._subscription_id}/resourceGroups/{group}"
                f"/providers/{CONTAINER_GROUP_TYPE}/{name}"
            )
            with translate_errors("Run task", name):
                self._client.resources.begin_create_or_update_by_id(
                    resource_id,
                    CONTAINER_GROUP_API_VERSION,
                    GenericResource(location=spec.region, properties=self._properties(spec)),
                    polling=False,
                )
            handles.append(
                TaskHandle(
                    task_id=resource_id,
                    cluster_id=group,
                    log_group=group,
                    log_stream=resource_id,
                    launched_at=datetime.now(UTC),
                )
            )
        return handles

    def describe_tasks(self, cluster_id: str, task_ids: list[str]) -> list[TaskStatus]:
        statuses: list[TaskStatus] = []
        for task_id in task_ids:
            with translate_errors("Describe task", task_id):
                try:
                    resource = self._client.resources.get_by_id(
                        task_id, CONTAINER_GROUP_API_VERSION
                    )
                except ResourceNotFoundError:
                    statuses.append(TaskStatus(task_id, "DEPROVISIONED", "Container group deleted"))
                    continue
            statuses.append(self._status(task_id, resource.properties or {}))
        return statuses

    def stop_tasks(self, cluster_id: str, task_ids: list[str], reason: str) -> None:
        for task_id in task_ids:
            request = HttpRequest(
                "POST", f"{task_id}/stop", params={"api-version": CONTAINER_GROUP_API_VERSION}
            )
            with translate_errors("Stop task", task_id):
                response = self._pipeline.send_request(request)
                if response.status_code != 404:
                    response.raise_for_status()
            logger.info("Stopped task", extra={"task_id": task_id, "reason": reason})

    @staticmethod
    def _properties(spec: TaskSpec) -> dict[str, Any]:
        container: dict[str, Any] = {
            "image": spec.image_uri,
            "resources": {"requests": {"cpu": spec.cpu, "memoryInGB": spec.memory_gb}},
            "environmentVariables": [
                {"name": key, "value": spec.env_vars[key]} for key in sorted(spec.env_vars)
            ],
        }
        # Container instances have no separate entrypoint; the command replaces it
        command = list(spec.entrypoint) + list(spec.command)
        if command:
            container["command"] = command

        properties: dict[str, Any] = {
            "containers": [{"name": CONTAINER_NAME, "properties": container}],
            "osType": "Linux",
            "restartPolicy": "Never",
        }
        if spec.subnets:
            properties["subnetIds"] = [{"id": subnet} for subnet in spec.subnets]
        return properties

    @staticmethod
    def _status(task_id: str, properties: Mapping[str, Any]) -> TaskStatus:
        view = properties.get("instanceView") or {}
        state = view.get("state") or properties.get("provisioningState") or "Pending"

        exit_code: int | None = None
        detail = ""
        for container in properties.get("containers") or []:
            current = ((container.get("properties") or {}).get("instanceView") or {}).get(
                "currentState"
            ) or {}
            if current.get("exitCode") is not None:
                exit_code = int(current["exitCode"])
            detail = current.get("detailStatus") or detail
        return TaskStatus(task_id, str(state).upper(), detail, exit_code)


class ArmLogStore:
    """LogStore over the container logs API. Groups are resource groups."""

    def __init__(self, client: ResourceManagementClient, pipeline: PipelineClient) -> None:
        self._client = client
        self._pipeline = pipeline

    @classmethod
    def from_session(cls, session: Session) -> ArmLogStore:
        if not session.subscription_id:
            raise ValueError("Session has no subscription")
        client = ResourceManagementClient(
            credential=session.credential, subscription_id=session.subscription_id
        )
        return cls(client, arm_pipeline(session.credential))

    def log_group_exists(self, group_name: str) -> bool:
        with translate_errors("Check", group_name):
            return bool(self._client.resource_groups.check_existence(group_name))

    def task_log_events(
        self,
        group_name: str,
        stream_last_event_time: Mapping[str, int],
        *,
        limit: int | None = None,
    ) -> LogEventsOutput:
        events: list[LogEvent] = []
        last_times: dict[str, int] = {}

        for stream_id, since in stream_last_event_time.items():
            request = HttpRequest(
                "GET",
                f"{stream_id}/containers/{CONTAINER_NAME}/logs",
                params={"api-version": CONTAINER_GROUP_API_VERSION, "timestamps": "true"},
            )
            with translate_errors("Read logs", stream_id):
                response = self._pipeline.send_request(request)
                if response.status_code == 404:
                    # Not started yet, or already removed
                    last_times[stream_id] = since
                    continue
                response.raise_for_status()
                content = (response.json() or {}).get("content") or ""

            fresh = [
                event
                for event in parse_log_content(stream_id, content)
                if event.timestamp >= since
            ]
            if limit is not None:
                fresh = fresh[:limit]
            events.extend(fresh)
            last_times[stream_id] = max((event.timestamp for event in fresh), default=since)

        return LogEventsOutput(events=events, stream_last_event_time=last_times)
