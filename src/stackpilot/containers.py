"""Container image build and push through the docker and az CLIs.

Images are tagged {registry}/{app}/{service}:{tag}. Registry login is
delegated to `az acr login`, so the same identity that deploys stacks
pushes images.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path

from .errors import BackendRejectedError, PreconditionError
from .models import ImageConfig

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 300
BUILD_TIMEOUT_SECONDS = 1800

ACR_SUFFIX = ".azurecr.io"


def run_command(
    cmd: list[str],
    *,
    cwd: Path | None = None,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
    capture: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Run a command, raising on failure.

    Args:
        cmd: Command and arguments.
        cwd: Working directory.
        timeout: Command timeout in seconds.
        capture: Whether to capture output instead of streaming.

    Raises:
        PreconditionError: If the command is not installed.
        BackendRejectedError: If it fails or times out.
    """
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            env=os.environ.copy(),
            timeout=timeout,
            capture_output=capture,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise BackendRejectedError(f"Command timed out after {timeout}s: {' '.join(cmd)}") from e
    except FileNotFoundError as e:
        raise PreconditionError(f"Command not found: {cmd[0]}") from e

    if result.returncode != 0:
        detail = (result.stderr or "").strip() if capture else ""
        raise BackendRejectedError(
            f"{' '.join(cmd[:3])} failed with exit code {result.returncode}"
            + (f": {detail}" if detail else "")
        )
    return result


class RegistryRepository:
    """ContainerRepository and ImageRemover for an Azure Container Registry."""

    def __init__(self, registry: str, base_dir: Path | None = None) -> None:
        """
        Args:
            registry: Registry name ("myreg") or login server ("myreg.azurecr.io").
            base_dir: Directory build contexts are relative to.
        """
        if not registry:
            raise PreconditionError(
                "No container registry configured; set STACKPILOT_REGISTRY or pass --registry"
            )
        self._server = registry if "." in registry else f"{registry}{ACR_SUFFIX}"
        self._registry_name = self._server.split(".", 1)[0]
        self._base_dir = base_dir or Path.cwd()

    @property
    def server(self) -> str:
        return self._server

    def uri(self, name: str) -> str:
        return f"{self._server}/{name}"

    def build_and_push(self, name: str, image: ImageConfig) -> str:
        """Build the image from its context and push it.

        Raises:
            PreconditionError: If the image has no build context, or docker is missing.
            BackendRejectedError: If the build or push fails.
        """
        if not image.build_context:
            raise PreconditionError(
                f"Image for {name} needs either 'build' (a Dockerfile context) or 'location'"
            )
        self._check_docker()

        context = (self._base_dir / image.build_context).resolve()
        if not context.is_dir():
            raise PreconditionError(f"Build context not found: {context}")

        tagged = f"{self.uri(name)}:{image.tag}"
        logger.info("Building image", extra={"image": tagged, "context": str(context)})
        run_command(
            ["docker", "build", "-t", tagged, "-f", str(context / image.dockerfile), str(context)],
            cwd=context,
            timeout=BUILD_TIMEOUT_SECONDS,
            capture=False,
        )

        self._login()
        logger.info("Pushing image", extra={"image": tagged})
        run_command(["docker", "push", tagged], timeout=BUILD_TIMEOUT_SECONDS, capture=False)
        return tagged

    def clear_repository(self, name: str) -> None:
        """Delete every image in a repository; a missing repository is fine."""
        self._check_az_cli()
        try:
            run_command(
                [
                    "az", "acr", "repository", "delete",
                    "--name", self._registry_name,
                    "--repository", name,
                    "--yes",
                ]
            )
        except BackendRejectedError as e:
            if "not found" not in str(e).lower():
                raise
            logger.info("Repository already empty", extra={"repository": name})
            return
        logger.info("Cleared repository", extra={"repository": name})

    def _login(self) -> None:
        self._check_az_cli()
        run_command(["az", "acr", "login", "--name", self._registry_name])

    @staticmethod
    def _check_docker() -> None:
        if not shutil.which("docker"):
            raise PreconditionError("Docker not found. Install Docker to build images.")

    @staticmethod
    def _check_az_cli() -> None:
        if not shutil.which("az"):
            raise PreconditionError(
                "Azure CLI (az) not found. Install from https://aka.ms/installazurecli"
            )
