"""Local configuration store backed by YAML files.

Layout under the state directory:
    applications/{app}/application.yaml
    applications/{app}/environments/{env}.yaml
    applications/{app}/services/{svc}.yaml

The store records what was created; the backend remains the source of truth
for what is deployed.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .errors import StoreError
from .models import Application, Environment, Service

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class LocalConfigStore:
    """File-per-record store of applications, environments and services."""

    def __init__(self, state_dir: Path) -> None:
        self._root = state_dir / "applications"

    # Applications

    def create_application(self, app: Application) -> None:
        self._write(self._app_dir(app.name) / "application.yaml", app)
        logger.info("Stored application", extra={"app": app.name})

    def get_application(self, name: str) -> Application:
        path = self._app_dir(name) / "application.yaml"
        if not path.exists():
            raise StoreError(
                f"Couldn't find application {name}; run `stackpilot app deploy` first"
            )
        return self._read(path, Application)

    def list_applications(self) -> list[Application]:
        if not self._root.exists():
            return []
        return [
            self._read(path, Application)
            for path in sorted(self._root.glob("*/application.yaml"))
        ]

    def delete_application(self, name: str) -> None:
        app_dir = self._app_dir(name)
        if app_dir.exists():
            shutil.rmtree(app_dir)
            logger.info("Deleted application record", extra={"app": name})

    # Environments

    def create_environment(self, env: Environment) -> None:
        self.get_application(env.app)
        self._write(self._app_dir(env.app) / "environments" / f"{env.name}.yaml", env)
        logger.info("Stored environment", extra={"app": env.app, "env": env.name})

    def get_environment(self, app_name: str, env_name: str) -> Environment:
        path = self._app_dir(app_name) / "environments" / f"{env_name}.yaml"
        if not path.exists():
            raise StoreError(
                f"Couldn't find environment {env_name} in application {app_name}; "
                f"run `stackpilot env deploy` first"
            )
        return self._read(path, Environment)

    def list_environments(self, app_name: str) -> list[Environment]:
        return self._list(self._app_dir(app_name) / "environments", Environment)

    def delete_environment(self, app_name: str, env_name: str) -> None:
        path = self._app_dir(app_name) / "environments" / f"{env_name}.yaml"
        path.unlink(missing_ok=True)

    # Services

    def create_service(self, svc: Service) -> None:
        self.get_application(svc.app)
        self._write(self._app_dir(svc.app) / "services" / f"{svc.name}.yaml", svc)
        logger.info("Stored service", extra={"app": svc.app, "service": svc.name})

    def get_service(self, app_name: str, svc_name: str) -> Service:
        path = self._app_dir(app_name) / "services" / f"{svc_name}.yaml"
        if not path.exists():
            raise StoreError(f"Couldn't find service {svc_name} in application {app_name}")
        return self._read(path, Service)

    def list_services(self, app_name: str) -> list[Service]:
        return self._list(self._app_dir(app_name) / "services", Service)

    def delete_service(self, app_name: str, svc_name: str) -> None:
        path = self._app_dir(app_name) / "services" / f"{svc_name}.yaml"
        path.unlink(missing_ok=True)

    # Helpers

    def _app_dir(self, name: str) -> Path:
        # Names are validated by the models; refuse anything that escapes the root
        if not name or "/" in name or name.startswith("."):
            raise StoreError(f"Invalid record name: {name!r}")
        return self._root / name

    def _list(self, directory: Path, model: type[M]) -> list[M]:
        if not directory.exists():
            return []
        return [self._read(path, model) for path in sorted(directory.glob("*.yaml"))]

    @staticmethod
    def _write(path: Path, record: BaseModel) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(
                yaml.safe_dump(record.model_dump(by_alias=True, mode="json"), sort_keys=True),
                encoding="utf-8",
            )
        except OSError as e:
            raise StoreError(f"Failed to write {path}: {e}") from e

    @staticmethod
    def _read(path: Path, model: type[M]) -> M:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StoreError(f"Failed to read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise StoreError(f"Invalid YAML in {path}: {e}") from e

        try:
            return model.model_validate(data or {})
        except ValidationError as e:
            raise StoreError(f"Corrupt record {path}: {e}") from e
