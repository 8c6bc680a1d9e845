"""Explicit credential sessions.

A Session bundles a credential with the subscription and region it is used
for. Sessions are created by a provider and closed by their owner; nothing
is cached in module globals.

Credential sources:
- default: DefaultAzureCredential (environment, workload identity, CLI, ...)
- from_role: a user-assigned managed identity, such as an environment's
  manager identity
- from_static_creds: a service principal secret, for CI systems without
  federated identity
- from_profile: named entries in {state_dir}/profiles.yaml
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    DefaultAzureCredential,
    ManagedIdentityCredential,
)

from .config import EngineConfig
from .errors import PreconditionError

logger = logging.getLogger(__name__)

PROFILES_FILE_NAME = "profiles.yaml"


def _mask(value: str) -> str:
    return value[:8] + "..." if len(value) > 8 else value


@dataclass
class Session:
    """A credential scoped to a subscription and region."""

    credential: Any
    name: str
    subscription_id: str | None = None
    region: str | None = None

    def with_region(self, region: str) -> Session:
        """Same credential, different region. Closing either closes both."""
        return replace(self, region=region)

    def close(self) -> None:
        close = getattr(self.credential, "close", None)
        if close is not None:
            close()
            logger.debug("Closed session", extra={"session": self.name})

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class AzureSessionProvider:
    """Creates sessions from the configured credential sources."""

    def __init__(self, config: EngineConfig) -> None:
        self._config = config
        self._profiles_path = config.state_dir / PROFILES_FILE_NAME

    def default(self) -> Session:
        logger.info("Using default credential chain")
        return Session(
            credential=DefaultAzureCredential(),
            name="default",
            subscription_id=self._config.subscription_id,
            region=self._config.location,
        )

    def default_with_region(self, region: str) -> Session:
        return self.default().with_region(region)

    def from_role(self, role_id: str, region: str) -> Session:
        """Session for a user-assigned managed identity.

        Args:
            role_id: Client id of the identity.
            region: Region the session operates in.
        """
        logger.info("Using user-assigned managed identity", extra={"client_id": _mask(role_id)})
        return Session(
            credential=ManagedIdentityCredential(client_id=role_id),
            name=f"role:{_mask(role_id)}",
            subscription_id=self._config.subscription_id,
            region=region,
        )

    def from_static_creds(self, tenant_id: str, client_id: str, client_secret: str) -> Session:
        if not (tenant_id and client_id and client_secret):
            raise PreconditionError("tenant id, client id and client secret are all required")
        logger.info(
            "Using service principal credential",
            extra={"tenant_id": _mask(tenant_id), "client_id": _mask(client_id)},
        )
        return Session(
            credential=ClientSecretCredential(tenant_id, client_id, client_secret),
            name=f"static:{_mask(client_id)}",
            subscription_id=self._config.subscription_id,
            region=self._config.location,
        )

    def from_profile(self, name: str) -> Session:
        """Session for a named profile.

        Profile keys: subscriptionId, region, and either identityClientId
        (managed identity) or tenantId (Azure CLI login for that tenant).

        Raises:
            PreconditionError: If the profile does not exist.
        """
        profiles = self._load_profiles()
        profile = profiles.get(name)
        if profile is None:
            raise PreconditionError(
                f"Profile {name} not found in {self._profiles_path}; "
                f"available profiles: {sorted(profiles)}"
            )

        identity = profile.get("identityClientId")
        tenant = profile.get("tenantId")
        if identity:
            credential: Any = ManagedIdentityCredential(client_id=identity)
        elif tenant:
            credential = AzureCliCredential(tenant_id=tenant)
        else:
            credential = DefaultAzureCredential()

        logger.info("Using profile", extra={"profile": name})
        return Session(
            credential=credential,
            name=f"profile:{name}",
            subscription_id=profile.get("subscriptionId") or self._config.subscription_id,
            region=profile.get("region") or self._config.location,
        )

    def names(self) -> list[str]:
        """Names of the configured profiles."""
        return sorted(self._load_profiles())

    def _load_profiles(self) -> dict[str, dict[str, str]]:
        path: Path = self._profiles_path
        if not path.exists():
            return {}
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise PreconditionError(f"Failed to read profiles from {path}: {e}") from e

        profiles = data.get("profiles", {}) if isinstance(data, dict) else {}
        if not isinstance(profiles, dict):
            raise PreconditionError(f"'profiles' must be a mapping in {path}")
        return {str(key): dict(value or {}) for key, value in profiles.items()}
