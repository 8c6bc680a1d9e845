"""Tests for the click CLI wired to in-memory backends."""

from __future__ import annotations

from pathlib import Path

import click
import pytest
import yaml
from click.testing import CliRunner

from backend_mock import MockLogStore, MockRepository, MockStackBackend, MockTaskBackend
from stackpilot.cli import CliState, cli
from stackpilot.commands import CommandContext
from stackpilot.config import ConfigurationError, EngineConfig
from stackpilot.models import Application, Environment
from stackpilot.store import LocalConfigStore


@pytest.fixture(autouse=True)
def keep_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Leave the test runner's logging handlers in place."""
    monkeypatch.setattr("stackpilot.cli.setup_logging", lambda **_kwargs: None)


@pytest.fixture
def answers() -> list[bool]:
    return []


@pytest.fixture
def state(
    fast_config: EngineConfig,
    store: LocalConfigStore,
    backend: MockStackBackend,
    answers: list[bool],
) -> CliState:
    def factory(_state: CliState) -> CommandContext:
        return CommandContext(
            config=fast_config,
            store=store,
            client=backend,
            repository=MockRepository(),
            log_store=MockLogStore(),
            task_backend_factory=lambda _region: MockTaskBackend(),
            echo=click.echo,
            confirm=lambda _message: answers.pop(0) if answers else False,
        )

    return CliState(factory=factory)


def write_yaml(path: Path, data: object) -> str:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return str(path)


class TestCli:
    """Tests for the stackpilot command line."""

    def test_version(self) -> None:
        """Test the version option."""
        result = CliRunner().invoke(cli, ["--version"], obj=CliState())

        assert result.exit_code == 0
        assert "stackpilot, version 0.1.0" in result.output

    def test_info_empty(self, state: CliState) -> None:
        """Test info without any application."""
        result = CliRunner().invoke(cli, ["info"], obj=state)

        assert result.exit_code == 0
        assert "No applications found" in result.output

    def test_app_and_env_deploy(self, state: CliState, tmp_path: Path) -> None:
        """Test deploying an application and an environment from files."""
        app_file = write_yaml(tmp_path / "app.yaml", {"kind": "Application", "name": "shop"})
        env_file = write_yaml(
            tmp_path / "env.yaml",
            {"kind": "Environment", "app": "shop", "name": "test", "region": "westeurope"},
        )
        runner = CliRunner()

        app_result = runner.invoke(
            cli, ["app", "deploy", "-f", app_file, "--region", "westeurope"], obj=state
        )
        env_result = runner.invoke(cli, ["env", "deploy", "-f", env_file], obj=state)
        info_result = runner.invoke(cli, ["info", "--app", "shop"], obj=state)

        assert app_result.exit_code == 0, app_result.output
        assert "✓ Application shop deployed" in app_result.output
        assert "Recommended: Create an environment" in app_result.output
        assert env_result.exit_code == 0, env_result.output
        assert "cluster: sp-env-shop-test-westeurope/ClusterId" in env_result.output
        assert "env test: westeurope" in info_result.output

    def test_invalid_input_file(self, state: CliState, tmp_path: Path) -> None:
        """Test validation errors are reported without a traceback."""
        env_file = write_yaml(tmp_path / "env.yaml", {"kind": "Environment", "name": "test"})

        result = CliRunner().invoke(cli, ["env", "deploy", "-f", env_file], obj=state)

        assert result.exit_code == 1
        assert "Validation failed" in result.output
        assert "Traceback" not in result.output

    def test_error_kind_in_message(self, state: CliState) -> None:
        """Test stackpilot errors carry their kind to the user."""
        result = CliRunner().invoke(
            cli, ["svc", "delete", "--app", "shop", "--name", "api", "--yes"], obj=state
        )

        assert result.exit_code == 1
        assert "[precondition] Couldn't find service api" in result.output

    def test_delete_declined(
        self, state: CliState, store: LocalConfigStore, answers: list[bool]
    ) -> None:
        """Test a declined confirmation cancels the delete."""
        store.create_application(Application(name="shop"))
        store.create_environment(Environment(app="shop", name="test", region="westeurope"))
        answers.append(False)

        result = CliRunner().invoke(
            cli, ["env", "delete", "--app", "shop", "--name", "test"], obj=state
        )

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert store.get_environment("shop", "test").name == "test"

    def test_plan_deploy(self, state: CliState, tmp_path: Path) -> None:
        """Test a plan deploys and reports every step."""
        plan_file = write_yaml(
            tmp_path / "plan.yaml",
            {
                "kind": "Plan",
                "app": {"name": "shop"},
                "environments": [{"app": "shop", "name": "test", "region": "westeurope"}],
            },
        )

        result = CliRunner().invoke(
            cli, ["plan", "deploy", plan_file, "--region", "westeurope"], obj=state
        )

        assert result.exit_code == 0, result.output
        assert "succeeded  env-test" in result.output
        assert "env-test:  Complete" in result.output
        assert "✓ Plan for shop converged" in result.output

    def test_failed_plan_exits_nonzero(
        self, state: CliState, backend: MockStackBackend, tmp_path: Path
    ) -> None:
        """Test a plan with a failed step exits with an error."""
        plan_file = write_yaml(tmp_path / "plan.yaml", {"kind": "Plan", "app": {"name": "shop"}})
        backend.reject_next("InvalidTemplate")

        result = CliRunner().invoke(
            cli, ["plan", "deploy", plan_file, "--region", "westeurope"], obj=state
        )

        assert result.exit_code == 1
        assert "Plan did not converge" in result.output

    def test_configuration_error(self) -> None:
        """Test a configuration error becomes a CLI error."""

        def factory(_state: CliState) -> CommandContext:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is not a GUID")

        result = CliRunner().invoke(cli, ["info"], obj=CliState(factory=factory))

        assert result.exit_code == 1
        assert "AZURE_SUBSCRIPTION_ID is not a GUID" in result.output

    def test_task_run(self, state: CliState, tmp_path: Path) -> None:
        """Test running a task prints the launched task ids."""
        task_file = write_yaml(
            tmp_path / "task.yaml",
            {
                "kind": "Task",
                "name": "migrate",
                "region": "westeurope",
                "image": {"location": "registry.test/migrate:1"},
                "count": 2,
            },
        )

        result = CliRunner().invoke(cli, ["task", "run", "-f", task_file], obj=state)

        assert result.exit_code == 0, result.output
        assert "task: task-0001" in result.output
        assert "task: task-0002" in result.output
