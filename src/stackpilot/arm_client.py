"""Azure Resource Manager provisioning client.

A stack is a resource group plus one incremental deployment of the same name
inside it. The resource group carries the ownership and kind tags. The
deployment carries the fingerprint tag, template parameters and outputs.
Deployment operations are the per-resource events.

KEY DESIGN DECISIONS:
1. Deployments are submitted without waiting on the SDK poller; the engine
   polls status and operations itself.
2. ARM cannot hand back the exact template it deployed, so descriptions
   carry template=None. Drift compares the reported parameters and the
   fingerprint of the last deployment ARM accepted. A rejected PUT leaves
   the previous deployment and its fingerprint in place.
3. Deleting a stack deletes its resource group. The delete poller is kept so
   a failed group deletion surfaces as DELETE_FAILED instead of hanging.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.core.polling import LROPoller
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    ResourceGroup,
)

from .client import RawStackEvent, StackDescription
from .errors import (
    BackendRejectedError,
    ConflictError,
    PreconditionError,
    TransientBackendError,
)
from .session import Session
from .stack import FINGERPRINT_TAG, MANAGED_TAG, StackRequest, normalize_value

logger = logging.getLogger(__name__)

# ARM error codes that mean another operation owns the target
CONFLICT_ERROR_CODES: frozenset[str] = frozenset({
    "DeploymentActive",
    "ResourceGroupBeingDeleted",
    "AnotherOperationInProgress",
    "Conflict",
})

RESOURCE_GROUP_DELETING = "Deleting"
DELETE_FAILED_STATUS = "DELETE_FAILED"
MISSING_DEPLOYMENT_STATUS = "Failed"


@contextmanager
def translate_errors(operation: str, target: str) -> Iterator[None]:
    """Translate Azure SDK errors into the stackpilot error taxonomy.

    Raises:
        TransientBackendError: Throttling, 5xx and transport failures.
        ConflictError: 409 or a conflict error code.
        BackendRejectedError: Any other HTTP or SDK error.
    """
    try:
        yield
    except (ServiceRequestError, ServiceResponseError) as e:
        raise TransientBackendError(f"{operation} {target}: transport error: {e}") from e
    except HttpResponseError as e:
        status = e.status_code or 0
        code = e.error.code if e.error is not None else None
        message = e.message or str(e)
        if status == 409 or code in CONFLICT_ERROR_CODES:
            raise ConflictError(f"{operation} {target}: {message}") from e
        if status == 429 or status >= 500:
            raise TransientBackendError(f"{operation} {target}: HTTP {status}: {message}") from e
        raise BackendRejectedError(f"{operation} {target}: {message}", code=code) from e
    except AzureError as e:
        raise BackendRejectedError(f"{operation} {target}: {e}") from e


def _error_message(error: Any) -> str:
    """Innermost message of an ARM ErrorResponse; details carry the real cause."""
    if error is None:
        return ""
    details = getattr(error, "details", None) or []
    for detail in details:
        nested = _error_message(detail)
        if nested:
            return nested
    message = getattr(error, "message", None) or ""
    code = getattr(error, "code", None)
    return f"{code}: {message}" if code and message else message


class ArmProvisioningClient:
    """ProvisioningClient backed by resource groups and deployments."""

    def __init__(self, client: ResourceManagementClient) -> None:
        self._client = client
        self._delete_pollers: dict[str, LROPoller[None]] = {}

    @classmethod
    def from_session(cls, session: Session) -> ArmProvisioningClient:
        """Build a client for the session's subscription.

        Raises:
            PreconditionError: If the session has no subscription.
        """
        if not session.subscription_id:
            raise PreconditionError(
                "No subscription configured; set AZURE_SUBSCRIPTION_ID or add "
                "subscriptionId to the profile"
            )
        return cls(
            ResourceManagementClient(
                credential=session.credential,
                subscription_id=session.subscription_id,
            )
        )

    # -------------------------------------------------------------------------
    # StackReader
    # -------------------------------------------------------------------------

    def describe_stack(self, name: str) -> StackDescription | None:
        with translate_errors("Describe", name):
            try:
                group = self._client.resource_groups.get(name)
            except ResourceNotFoundError:
                return self._deleted_or_absent(name)

        tags = {key: value for key, value in (group.tags or {}).items() if key != FINGERPRINT_TAG}
        group_state = getattr(group.properties, "provisioning_state", None) or ""

        failed_delete = self._failed_delete(name)
        if failed_delete is not None:
            return StackDescription(
                name=name,
                status=DELETE_FAILED_STATUS,
                tags=tags,
                status_reason=failed_delete,
                region=group.location,
            )

        if group_state == RESOURCE_GROUP_DELETING:
            return StackDescription(
                name=name, status=group_state, tags=tags, region=group.location
            )

        with translate_errors("Describe deployment", name):
            try:
                deployment = self._client.deployments.get(name, name)
            except ResourceNotFoundError:
                # Group created, deployment never accepted: redeploy over it
                return StackDescription(
                    name=name,
                    status=MISSING_DEPLOYMENT_STATUS,
                    tags=tags,
                    status_reason="Resource group exists without a deployment",
                    region=group.location,
                )

        fingerprint = (deployment.tags or {}).get(FINGERPRINT_TAG)
        if fingerprint:
            tags[FINGERPRINT_TAG] = fingerprint

        properties = deployment.properties
        parameters = {
            key: value.get("value") if isinstance(value, Mapping) else value
            for key, value in (properties.parameters or {}).items()
        }
        outputs = {
            key: normalize_value(value) for key, value in (properties.outputs or {}).items()
        }
        return StackDescription(
            name=name,
            status=properties.provisioning_state or "",
            template=None,
            parameters=parameters,
            outputs=outputs,
            tags=tags,
            last_updated=properties.timestamp,
            status_reason=_error_message(properties.error),
            region=group.location,
        )

    def exists(self, name: str) -> bool:
        with translate_errors("Check", name):
            return bool(self._client.resource_groups.check_existence(name))

    def get_outputs(self, name: str) -> dict[str, str]:
        description = self.describe_stack(name)
        return dict(description.outputs) if description is not None else {}

    def list_stacks(self, tags: Mapping[str, str]) -> list[StackDescription]:
        wanted = {MANAGED_TAG: "true", **tags}
        # ARM filters on a single tag; the rest are matched here
        tag_name, tag_value = next(iter(sorted(tags.items())), (MANAGED_TAG, "true"))
        query = f"tagName eq '{tag_name}' and tagValue eq '{tag_value}'"

        with translate_errors("List", "stacks"):
            groups = list(self._client.resource_groups.list(filter=query))

        stacks: list[StackDescription] = []
        for group in groups:
            group_tags = group.tags or {}
            if any(group_tags.get(key) != value for key, value in wanted.items()):
                continue
            description = self.describe_stack(group.name)
            if description is not None:
                stacks.append(description)
        logger.debug("Listed stacks", extra={"tags": dict(tags), "count": len(stacks)})
        return stacks

    # -------------------------------------------------------------------------
    # StackEventSource
    # -------------------------------------------------------------------------

    def describe_events(self, name: str, since: datetime | None) -> list[RawStackEvent]:
        with translate_errors("List operations", name):
            try:
                operations = list(self._client.deployment_operations.list(name, name))
            except ResourceNotFoundError:
                return []

        events: list[RawStackEvent] = []
        for operation in operations:
            properties = operation.properties
            if properties is None or properties.timestamp is None:
                continue
            if since is not None and properties.timestamp < since:
                continue
            target = properties.target_resource
            state = properties.provisioning_state or ""
            status_message = properties.status_message
            reason = _error_message(getattr(status_message, "error", None))
            if not reason and status_message is not None:
                reason = str(getattr(status_message, "status", "") or "")
            events.append(
                RawStackEvent(
                    event_id=f"{operation.operation_id}:{state}",
                    logical_id=(
                        getattr(target, "resource_name", None)
                        or getattr(target, "symbolic_name", None)
                        or operation.operation_id
                    ),
                    resource_type=getattr(target, "resource_type", None) or "",
                    status=state,
                    reason=reason,
                    timestamp=properties.timestamp,
                )
            )
        return events

    # -------------------------------------------------------------------------
    # StackWriter
    # -------------------------------------------------------------------------

    def create(self, request: StackRequest) -> None:
        self._submit(request)

    def update(self, request: StackRequest) -> None:
        self._submit(request)

    def delete(self, name: str) -> None:
        with translate_errors("Delete", name):
            try:
                self._delete_pollers[name] = self._client.resource_groups.begin_delete(name)
            except ResourceNotFoundError:
                logger.info("Resource group already gone", extra={"stack": name})

    def _submit(self, request: StackRequest) -> None:
        name = request.stack_name
        tags = request.backend_tags()
        self._delete_pollers.pop(name, None)

        # The fingerprint is only stamped by a deployment ARM accepts
        group_tags = {key: value for key, value in tags.items() if key != FINGERPRINT_TAG}
        with translate_errors("Deploy", name):
            self._client.resource_groups.create_or_update(
                name, ResourceGroup(location=request.region, tags=group_tags)
            )
            deployment = Deployment(
                properties=DeploymentProperties(
                    template=dict(request.template),
                    parameters={key: {"value": value} for key, value in request.parameters},
                    mode=DeploymentMode.INCREMENTAL,
                ),
                tags=tags,
            )
            self._client.deployments.begin_create_or_update(
                name, name, deployment, polling=False
            )

        logger.debug(
            "Deployment accepted",
            extra={"stack": name, "region": request.region, "kind": request.kind.value},
        )

    # -------------------------------------------------------------------------
    # Delete tracking
    # -------------------------------------------------------------------------

    def _failed_delete(self, name: str) -> str | None:
        poller = self._delete_pollers.get(name)
        if poller is None or not poller.done():
            return None
        try:
            poller.result()
        except HttpResponseError as e:
            return _error_message(e.error) or e.message or str(e)
        return None

    def _deleted_or_absent(self, name: str) -> StackDescription | None:
        if self._delete_pollers.pop(name, None) is not None:
            return StackDescription(name=name, status="Deleted")
        return None
