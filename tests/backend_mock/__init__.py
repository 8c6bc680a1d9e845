"""In-memory backend for engine, orchestrator and facade tests.

Key Features:
- Stack lifecycle simulation advancing one event per status poll
- Failure, rollback and non-empty bucket injection
- Transient error and rejection injection
- Deterministic timestamps
- Log store, task backend, repository, bucket, secrets and pipeline doubles

Usage:
    from backend_mock import MockStackBackend

    backend = MockStackBackend()
    engine = ConvergenceEngine(backend, config)
    outcome = await engine.converge_and_wait(request)
    assert backend.create_calls == [request.stack_name]
"""

from .collaborators import (
    MockBucketService,
    MockLogStore,
    MockPipelineService,
    MockRepository,
    MockSecretsStore,
    MockTaskBackend,
)
from .stacks import BUCKET_NOT_EMPTY_REASON, MockStack, MockStackBackend, template_resources

__all__ = [
    "BUCKET_NOT_EMPTY_REASON",
    "MockBucketService",
    "MockLogStore",
    "MockPipelineService",
    "MockRepository",
    "MockSecretsStore",
    "MockStack",
    "MockStackBackend",
    "MockTaskBackend",
    "template_resources",
]
