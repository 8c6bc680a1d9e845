"""Tests for credential sessions."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
import yaml
from azure.identity import AzureCliCredential, ManagedIdentityCredential

from stackpilot.config import EngineConfig
from stackpilot.errors import PreconditionError
from stackpilot.session import AzureSessionProvider, Session


def write_profiles(config: EngineConfig, profiles: dict[str, dict[str, str]]) -> Path:
    config.state_dir.mkdir(parents=True, exist_ok=True)
    path = config.state_dir / "profiles.yaml"
    path.write_text(yaml.safe_dump({"profiles": profiles}), encoding="utf-8")
    return path


class TestSession:
    """Tests for Session."""

    def test_with_region(self) -> None:
        """Test that with_region keeps the credential and changes only the region."""
        credential = MagicMock()
        session = Session(credential, "default", subscription_id="sub", region="westeurope")

        regional = session.with_region("northeurope")

        assert regional.credential is credential
        assert regional.region == "northeurope"
        assert regional.subscription_id == "sub"
        assert session.region == "westeurope"

    def test_context_manager_closes(self) -> None:
        """Test that leaving the context closes the credential."""
        credential = MagicMock()

        with Session(credential, "default"):
            pass

        credential.close.assert_called_once_with()

    def test_close_without_close_method(self) -> None:
        """Test that credentials without close() are tolerated."""
        Session(object(), "default").close()


class TestAzureSessionProvider:
    """Tests for AzureSessionProvider."""

    def test_profile_with_tenant(self, fast_config: EngineConfig) -> None:
        """Test a tenant profile uses the Azure CLI login for that tenant."""
        write_profiles(
            fast_config,
            {"dev": {"tenantId": "tenant-1", "subscriptionId": "sub-1", "region": "westus"}},
        )

        session = AzureSessionProvider(fast_config).from_profile("dev")

        assert isinstance(session.credential, AzureCliCredential)
        assert session.name == "profile:dev"
        assert session.subscription_id == "sub-1"
        assert session.region == "westus"

    def test_profile_with_identity(self, fast_config: EngineConfig) -> None:
        """Test an identity profile uses a user-assigned managed identity."""
        write_profiles(fast_config, {"ci": {"identityClientId": "client-1"}})

        session = AzureSessionProvider(fast_config).from_profile("ci")

        assert isinstance(session.credential, ManagedIdentityCredential)
        assert session.region == fast_config.location

    def test_missing_profile(self, fast_config: EngineConfig) -> None:
        """Test that an unknown profile lists the available ones."""
        write_profiles(fast_config, {"dev": {"tenantId": "t"}})

        with pytest.raises(PreconditionError) as exc_info:
            AzureSessionProvider(fast_config).from_profile("prod")

        assert "Profile prod not found" in str(exc_info.value)
        assert "['dev']" in str(exc_info.value)

    def test_names(self, fast_config: EngineConfig) -> None:
        """Test profile names are sorted, and empty without a profiles file."""
        provider = AzureSessionProvider(fast_config)
        assert provider.names() == []

        write_profiles(fast_config, {"b": {}, "a": {}})

        assert provider.names() == ["a", "b"]

    def test_profiles_not_a_mapping(self, fast_config: EngineConfig) -> None:
        """Test that a malformed profiles section is reported."""
        fast_config.state_dir.mkdir(parents=True, exist_ok=True)
        (fast_config.state_dir / "profiles.yaml").write_text("profiles: [a, b]\n")

        with pytest.raises(PreconditionError, match="'profiles' must be a mapping"):
            AzureSessionProvider(fast_config).names()

    @pytest.mark.parametrize(
        ("tenant_id", "client_id", "client_secret"),
        [("", "c", "s"), ("t", "", "s"), ("t", "c", "")],
    )
    def test_static_creds_require_all_values(
        self, fast_config: EngineConfig, tenant_id: str, client_id: str, client_secret: str
    ) -> None:
        """Test that a service principal needs tenant, client id and secret."""
        with pytest.raises(PreconditionError, match="all required"):
            AzureSessionProvider(fast_config).from_static_creds(
                tenant_id, client_id, client_secret
            )

    def test_static_creds_mask_client_id(self, fast_config: EngineConfig) -> None:
        """Test that the session name does not expose the full client id."""
        session = AzureSessionProvider(fast_config).from_static_creds(
            "tenant-id-1234", "0123456789abcdef", "secret"
        )

        assert session.name == "static:01234567..."
