"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for backend_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from backend_mock import MockStackBackend  # noqa: E402
from stackpilot.config import EngineConfig  # noqa: E402
from stackpilot.engine import ConvergenceEngine  # noqa: E402
from stackpilot.store import LocalConfigStore  # noqa: E402


@pytest.fixture
def fast_config(tmp_path: Path) -> EngineConfig:
    """Engine configuration that never sleeps."""
    return EngineConfig(
        poll_interval_seconds=0,
        poll_max_interval_seconds=0,
        retry_backoff_base_seconds=0,
        log_poll_interval_seconds=0,
        convergence_timeout_seconds=30,
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def backend() -> MockStackBackend:
    return MockStackBackend()


@pytest.fixture
def engine(backend: MockStackBackend, fast_config: EngineConfig) -> ConvergenceEngine:
    return ConvergenceEngine(backend, fast_config)


@pytest.fixture
def store(fast_config: EngineConfig) -> LocalConfigStore:
    return LocalConfigStore(fast_config.state_dir)
