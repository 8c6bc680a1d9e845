"""Multi-stream log tailing with per-stream cursors.

Each stream is fetched from its cursor's timestamp (inclusive), so events
sharing the boundary timestamp are fetched again and filtered by key. Merged
output is chronological; equal timestamps go to the lexicographically
smaller stream id first.

A stream whose fetches keep failing is marked degraded and dropped from
polling; the others continue. When every stream is degraded the tail fails.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import EngineConfig
from .errors import DegradedError, LogTailError, PreconditionError, StackpilotError

if TYPE_CHECKING:
    from .interfaces import LogStore
    from .tasks import TaskHandle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LogEvent:
    """One log line from one stream. Timestamps are epoch milliseconds."""

    stream_id: str
    timestamp: int
    message: str
    event_id: str = ""

    @property
    def key(self) -> str:
        return self.event_id or f"{self.timestamp}:{self.message}"

    def human_string(self) -> str:
        # Streams are named prefix/container/task-id; the task id is enough
        short = self.stream_id.rsplit("/", 1)[-1][:8]
        return f"{short} {self.message.rstrip()}"


@dataclass(frozen=True)
class LogEventsOutput:
    """Result of one log store fetch."""

    events: list[LogEvent] = field(default_factory=list)
    stream_last_event_time: dict[str, int] = field(default_factory=dict)


@dataclass
class LogCursor:
    """Read position in one stream. Only ever moves forward."""

    stream_id: str
    last_event_timestamp: int = 0
    _boundary_keys: set[str] = field(default_factory=set, repr=False)

    def accept(self, events: Sequence[LogEvent]) -> list[LogEvent]:
        """Filter already-delivered events and advance past the rest.

        Returns:
            New events in timestamp order.
        """
        fresh: list[LogEvent] = []
        for event in sorted(events, key=lambda e: e.timestamp):
            if event.timestamp < self.last_event_timestamp:
                continue
            if event.timestamp == self.last_event_timestamp and event.key in self._boundary_keys:
                continue
            if event.timestamp > self.last_event_timestamp:
                self.last_event_timestamp = event.timestamp
                self._boundary_keys = set()
            self._boundary_keys.add(event.key)
            fresh.append(event)
        return fresh


def merge_events(batches: Sequence[Sequence[LogEvent]]) -> list[LogEvent]:
    """Merge per-stream batches chronologically, ties by stream id."""
    merged = [event for batch in batches for event in batch]
    merged.sort(key=lambda e: (e.timestamp, e.stream_id))
    return merged


class LogTailer:
    """Tails the log streams of a set of tasks.

    Cursors belong to this tailer; create one tailer per session.
    """

    def __init__(
        self,
        store: LogStore,
        group_name: str,
        stream_ids: Sequence[str],
        config: EngineConfig | None = None,
        start_time: int = 0,
        tasks_stopped: Callable[[], Awaitable[bool]] | None = None,
    ) -> None:
        if not stream_ids:
            raise ValueError("LogTailer needs at least one stream")
        self._store = store
        self._group_name = group_name
        self._config = config or EngineConfig()
        self._cursors = {
            stream_id: LogCursor(stream_id, last_event_timestamp=start_time)
            for stream_id in sorted(set(stream_ids))
        }
        self._degraded: dict[str, str] = {}
        self._tasks_stopped = tasks_stopped

    @classmethod
    def for_tasks(
        cls,
        store: LogStore,
        handles: Sequence[TaskHandle],
        config: EngineConfig | None = None,
        tasks_stopped: Callable[[], Awaitable[bool]] | None = None,
    ) -> LogTailer:
        """Tail the streams of launched tasks, starting at the earliest launch."""
        if not handles:
            raise ValueError("No tasks to tail")
        start = min(int(handle.launched_at.timestamp() * 1000) for handle in handles)
        return cls(
            store,
            handles[0].log_group,
            [handle.log_stream for handle in handles],
            config=config,
            start_time=start,
            tasks_stopped=tasks_stopped,
        )

    @property
    def group_name(self) -> str:
        return self._group_name

    @property
    def cursors(self) -> dict[str, LogCursor]:
        return dict(self._cursors)

    @property
    def degraded_streams(self) -> dict[str, str]:
        """Stream id -> last error, for streams no longer polled."""
        return dict(self._degraded)

    async def check_log_group(self) -> None:
        """Raises PreconditionError if the log group does not exist."""
        exists = await self._call(self._store.log_group_exists, self._group_name)
        if not exists:
            raise PreconditionError(
                f"Log group {self._group_name} does not exist; "
                f"deploy the task resources before tailing their logs"
            )

    async def tail_once(self) -> list[LogEvent]:
        """Fetch every healthy stream once and return new events in merged order.

        Raises:
            LogTailError: If every stream is degraded.
        """
        active = [
            cursor
            for stream_id, cursor in self._cursors.items()
            if stream_id not in self._degraded
        ]
        if not active:
            raise LogTailError(f"All log streams in {self._group_name} are degraded")

        batches = await asyncio.gather(*(self._fetch(cursor) for cursor in active))

        if len(self._degraded) == len(self._cursors):
            reasons = "; ".join(
                f"{stream}: {error}" for stream, error in sorted(self._degraded.items())
            )
            raise LogTailError(f"All log streams in {self._group_name} are degraded: {reasons}")
        return merge_events(batches)

    async def write_events_until_stopped(
        self, writer: Callable[[str], None], stop_event: asyncio.Event
    ) -> None:
        """Write log lines until stopped.

        Returns when `stop_event` is set, or when every task stopped and a
        poll after that returned nothing.

        Raises:
            LogTailError: If every stream is degraded.
        """
        interval = self._config.log_poll_interval_seconds

        while True:
            stopped = self._tasks_stopped is not None and await self._tasks_stopped()

            events = await self.tail_once()
            for event in events:
                writer(event.human_string())

            if stop_event.is_set():
                logger.debug("Log tail stopped by caller", extra={"group": self._group_name})
                return
            if stopped and not events:
                logger.debug("Tasks stopped and logs drained", extra={"group": self._group_name})
                return

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except TimeoutError:
                pass

    async def _fetch(self, cursor: LogCursor) -> list[LogEvent]:
        max_attempts = self._config.log_max_retries + 1

        for attempt in range(1, max_attempts + 1):
            try:
                output = await self._call(
                    self._store.task_log_events,
                    self._group_name,
                    {cursor.stream_id: cursor.last_event_timestamp},
                )
                events = [event for event in output.events if event.stream_id == cursor.stream_id]
                return cursor.accept(events)
            except StackpilotError as e:
                if attempt < max_attempts:
                    backoff = self._config.retry_backoff_base_seconds * (2 ** (attempt - 1))
                    wait_time = backoff + random.uniform(0, backoff * 0.2)
                    logger.warning(
                        "Log fetch failed, retrying",
                        extra={
                            "stream": cursor.stream_id,
                            "attempt": attempt,
                            "max_attempts": max_attempts,
                            "wait_seconds": wait_time,
                            "error": str(e),
                        },
                    )
                    await asyncio.sleep(wait_time)
                    continue

                degraded = DegradedError(f"Log stream {cursor.stream_id} degraded: {e}")
                logger.warning(
                    str(degraded),
                    extra={"group": self._group_name, "stream": cursor.stream_id},
                )
                self._degraded[cursor.stream_id] = str(e)

        return []

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))
