"""Input and plan file loading with validation.

All file operations enforce size limits. Documents are either flat
(`kind: Environment` next to the fields) or wrapped Kubernetes-style
(`apiVersion`, `kind`, `spec`).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_PLAN_FILE_SIZE_BYTES
from .errors import ErrorKind, StackpilotError
from .models import Application, PlanSpec, get_input_class
from .orchestrator import PlanStep
from .stack import (
    AppRegionalStack,
    AppStack,
    EnvironmentStack,
    PipelineStack,
    ServiceStack,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class PlanLoadError(StackpilotError):
    """Raised when an input or plan file cannot be loaded or fails validation."""

    kind = ErrorKind.PRECONDITION


def load_input(path: Path, expected_kind: str) -> BaseModel:
    """Load and validate an input document.

    Args:
        path: YAML file.
        expected_kind: Document kind (e.g. "Environment"); a `kind` in the
            file must match it.

    Returns:
        Validated input model instance.

    Raises:
        PlanLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise PlanLoadError(f"Input file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise PlanLoadError(f"Failed to stat input file {path}: {e}") from e

    if file_size > MAX_PLAN_FILE_SIZE_BYTES:
        raise PlanLoadError(
            f"Input file exceeds maximum size of {MAX_PLAN_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise PlanLoadError(f"Failed to read input file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise PlanLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise PlanLoadError(f"Input file must contain a YAML mapping: {path}")

    declared_kind = raw_data.get("kind", expected_kind)
    if declared_kind != expected_kind:
        raise PlanLoadError(f"Expected a {expected_kind} document in {path}, found {declared_kind}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        data = raw_data.get("spec", {})
        if not isinstance(data, dict):
            raise PlanLoadError(f"Spec section must be a mapping: {path}")
    else:
        data = {key: value for key, value in raw_data.items() if key != "kind"}

    try:
        input_class = get_input_class(expected_kind)
    except ValueError as e:
        raise PlanLoadError(str(e)) from e

    try:
        document = input_class.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise PlanLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded %s input from %s", expected_kind, path)
    return document


def load_typed(path: Path, expected_kind: str, model: type[M]) -> M:
    """load_input, narrowed to the model the caller expects."""
    document = load_input(path, expected_kind)
    if not isinstance(document, model):
        raise PlanLoadError(f"{path} did not load as {model.__name__}")
    return document


def load_plan(path: Path) -> PlanSpec:
    return load_typed(path, "Plan", PlanSpec)


def build_plan(
    plan: PlanSpec,
    region: str,
    image_uris: Mapping[str, str] | None = None,
    templates_dir: Path | None = None,
) -> list[PlanStep]:
    """Turn a plan document into ordered plan steps.

    Services take their cluster id from their environment step's ClusterId
    output, so they can be planned before the environment exists.

    Args:
        plan: Validated plan.
        region: Region of the application-wide stack.
        image_uris: Service name -> image reference, for services without
            an image location.
        templates_dir: Override for the packaged templates.

    Raises:
        PlanLoadError: If a service names an unknown environment or has no image.
    """
    image_uris = image_uris or {}
    app = plan.app
    app_record = Application(
        name=app.name, account_id=app.account_id, domain=app.domain_name, tags=app.additional_tags
    )
    envs = {env.name: env for env in plan.environments}

    steps: list[PlanStep] = [
        PlanStep("app", AppStack(app, region, templates_dir=templates_dir).to_request())
    ]

    regions: list[str] = []
    for env in plan.environments:
        if env.region not in regions:
            regions.append(env.region)
    for pipeline in plan.pipelines:
        if pipeline.region not in regions:
            regions.append(pipeline.region)

    for app_region in regions:
        regional = AppRegionalStack(
            app_record,
            app_region,
            services=[svc.name for svc in plan.services],
            environments=[env.name for env in plan.environments if env.region == app_region],
            pipeline_resources=bool(plan.pipelines),
            templates_dir=templates_dir,
        )
        steps.append(PlanStep(f"app-regional-{app_region}", regional.to_request()))

    for env in plan.environments:
        env_request = EnvironmentStack(env, templates_dir=templates_dir).to_request()
        steps.append(PlanStep(f"env-{env.name}", env_request))

    for svc in plan.services:
        env = envs.get(svc.env_name)
        if env is None:
            raise PlanLoadError(
                f"Service {svc.name} targets environment {svc.env_name}, which is not in the plan"
            )
        image_uri = svc.image.location or image_uris.get(svc.name)
        if not image_uri:
            raise PlanLoadError(
                f"Service {svc.name} needs image.location in a plan, or a built image"
            )
        descriptor = ServiceStack(
            svc, env.region, image_uri, cluster_id="", templates_dir=templates_dir
        )
        env_step = f"env-{env.name}"
        steps.append(
            PlanStep(
                f"svc-{env.name}-{svc.name}",
                descriptor.to_request(),
                bindings=(("clusterId", env_step, "ClusterId"),),
            )
        )

    for pipeline in plan.pipelines:
        steps.append(
            PlanStep(
                f"pipeline-{pipeline.name}",
                PipelineStack(pipeline, templates_dir=templates_dir).to_request(),
            )
        )

    logger.info("Built plan", extra={"plan": plan.summary(), "steps": len(steps)})
    return steps
