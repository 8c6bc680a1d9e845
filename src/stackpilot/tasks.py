"""One-off task launching, stopping and status checks."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from .errors import PreconditionError

if TYPE_CHECKING:
    from .interfaces import TaskBackend

logger = logging.getLogger(__name__)

# Terminal task states across backends
STOPPED_STATES: frozenset[str] = frozenset({
    "STOPPED",
    "SUCCEEDED",
    "FAILED",
    "TERMINATED",
    "DEPROVISIONED",
})

NO_DEFAULT_CLUSTER_REMEDIATION = (
    "No default cluster in region {region}. Run the task in an environment with "
    "--app and --env, name a cluster with --cluster, or create a default cluster first."
)


@dataclass(frozen=True)
class TaskSpec:
    """What to launch."""

    group_name: str
    region: str
    image_uri: str
    count: int = 1
    cluster: str | None = None
    cpu: float = 0.25
    memory_gb: float = 0.5
    command: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()
    env_vars: dict[str, str] = field(default_factory=dict)
    subnets: tuple[str, ...] = ()
    log_group: str | None = None


@dataclass(frozen=True)
class TaskHandle:
    """A launched task. Owned by the runner until stopped or confirmed terminated."""

    task_id: str
    cluster_id: str
    log_group: str
    log_stream: str
    launched_at: datetime


@dataclass(frozen=True)
class TaskStatus:
    task_id: str
    last_status: str
    stopped_reason: str = ""
    exit_code: int | None = None

    @property
    def stopped(self) -> bool:
        return self.last_status.upper() in STOPPED_STATES


class TaskRunner:
    """Launches tasks on a backend after checking execution preconditions."""

    def __init__(self, backend: TaskBackend) -> None:
        self._backend = backend

    async def run(self, spec: TaskSpec) -> list[TaskHandle]:
        """Launch `spec.count` copies of a task.

        Raises:
            PreconditionError: If no cluster is named and the backend has no default.
        """
        if spec.cluster is None:
            has_default = await self._call(self._backend.has_default_cluster)
            if not has_default:
                raise PreconditionError(NO_DEFAULT_CLUSTER_REMEDIATION.format(region=spec.region))

        handles = await self._call(self._backend.run_tasks, spec)
        logger.info(
            "Tasks launched",
            extra={
                "group": spec.group_name,
                "count": len(handles),
                "task_ids": [handle.task_id for handle in handles],
            },
        )
        return handles

    async def stop(self, handles: Sequence[TaskHandle], reason: str = "Stopped by user") -> None:
        for cluster_id, task_ids in self._by_cluster(handles).items():
            await self._call(self._backend.stop_tasks, cluster_id, task_ids, reason)
        logger.info("Tasks stopped", extra={"count": len(handles)})

    async def statuses(self, handles: Sequence[TaskHandle]) -> list[TaskStatus]:
        statuses: list[TaskStatus] = []
        for cluster_id, task_ids in self._by_cluster(handles).items():
            statuses.extend(await self._call(self._backend.describe_tasks, cluster_id, task_ids))
        return statuses

    async def all_stopped(self, handles: Sequence[TaskHandle]) -> bool:
        """True once every task reached a terminal state."""
        statuses = await self.statuses(handles)
        known = {status.task_id: status for status in statuses}
        return all(
            handle.task_id in known and known[handle.task_id].stopped for handle in handles
        )

    @staticmethod
    def _by_cluster(handles: Sequence[TaskHandle]) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = defaultdict(list)
        for handle in handles:
            grouped[handle.cluster_id].append(handle.task_id)
        return dict(grouped)

    async def _call(self, func: Any, *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))
