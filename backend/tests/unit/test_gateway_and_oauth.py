"""Tests for single-call provider operations, the OAuth bootstrap and the adapter registry."""

from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import START, FakeAdapter, make_oauth_params
from integrations.credentials import IntegrationType
from integrations.domain import ConnectionStatus, DriverHOS, DutyStatus, Load, Owner, OwnerType, ProviderType
from integrations.errors import AuthenticationError, ConflictError, ProviderUnavailableError, ValidationError
from integrations.oauth import generate_state
from integrations.registry import AdapterRegistry, build_default_registry


class TestProviderGateway:
    """Test ELD reads and TMS writes through a connection."""

    def test_driver_id_is_mapped_to_provider_id(self, services, eld_adapter, clock):
        connection = services.manager.create(
            make_oauth_params(clock, settings={"driver_mapping": {"drv-1": 4411}})
        )

        hos = services.gateway.get_driver_hos(connection.connection_id, "drv-1")

        assert hos.driver_id == "4411"
        assert ("get_driver_hos", "4411") in eld_adapter.calls

    def test_unmapped_driver_id_passes_through(self, services, oauth_connection, eld_adapter):
        services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-9")
        assert ("get_driver_hos", "drv-9") in eld_adapter.calls

    def test_token_is_refreshed_before_call(self, services, oauth_connection, eld_adapter, clock):
        clock.advance(minutes=58)

        services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-1")

        assert eld_adapter.seen_tokens == ["refreshed-token"]

    def test_transient_failure_is_retried(self, services, oauth_connection, eld_adapter, ticker):
        hos = DriverHOS(driver_id="drv-1", duty_status=DutyStatus.ON_DUTY)
        with patch.object(
            eld_adapter, "get_driver_hos", side_effect=[ProviderUnavailableError("502"), hos]
        ):
            assert services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-1") == hos
        assert len(ticker.sleeps) == 1

    def test_retries_exhausted(self, services, oauth_connection, eld_adapter, ticker):
        with patch.object(eld_adapter, "get_driver_hos", side_effect=ProviderUnavailableError("502")):
            with pytest.raises(ProviderUnavailableError):
                services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-1")
        assert len(ticker.sleeps) == eld_adapter.retry_attempts - 1

    def test_unsupported_operation_is_not_retried(self, services, oauth_connection, ticker):
        with pytest.raises(ValidationError, match="does not provide driver locations"):
            services.gateway.get_driver_location(oauth_connection.connection_id, "drv-1")
        assert ticker.sleeps == []

    def test_inverted_log_range_rejected(self, services, oauth_connection):
        with pytest.raises(ValidationError, match="start must be before end"):
            services.gateway.get_driver_hos_logs(oauth_connection.connection_id, "drv-1", START, START)

    def test_inactive_connection_rejected(self, services, oauth_connection, eld_adapter):
        services.manager.mark_expired(oauth_connection.connection_id, "expired")

        with pytest.raises(ValidationError, match="EXPIRED"):
            services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-1")
        assert not any(c[0] == "get_driver_hos" for c in eld_adapter.calls)

    def test_rejected_token_updates_connection(self, services, oauth_connection, eld_adapter):
        with patch.object(
            eld_adapter,
            "get_driver_hos",
            side_effect=AuthenticationError("token revoked", revoked=True),
        ):
            with pytest.raises(AuthenticationError):
                services.gateway.get_driver_hos(oauth_connection.connection_id, "drv-1")

        assert services.manager.get(oauth_connection.connection_id).status == ConnectionStatus.REVOKED

    def test_push_load(self, services, api_key_connection, tms_adapter):
        load = Load(load_id="L-1", pickup_at=START + timedelta(days=1))

        assert services.gateway.push_load(api_key_connection.connection_id, load)
        assert ("push_load", "L-1") in tms_adapter.calls


class TestOAuthBootstrap:
    """Test the authorization-code flow."""

    def test_authorization_url(self, services):
        url = services.oauth.get_authorization_url(
            "driver-1", "samsara", "https://app.example.com/callback", "state-123"
        )
        assert "state=state-123" in url
        assert "redirect_uri=https://app.example.com/callback" in url

    @pytest.mark.parametrize("redirect_uri,state", [("", "s"), ("https://app.example.com/cb", "")])
    def test_redirect_and_state_required(self, services, redirect_uri, state):
        with pytest.raises(ValidationError, match="required"):
            services.oauth.get_authorization_url("driver-1", "samsara", redirect_uri, state)

    def test_provider_without_oauth(self, services, tms_adapter):
        tms_adapter.supported_integration_types = frozenset({IntegrationType.API_KEY})

        with pytest.raises(ValidationError, match="does not use OAuth"):
            services.oauth.get_authorization_url("driver-1", "mcleod", "https://app.example.com/cb", "s")

    def test_unknown_provider(self, services):
        with pytest.raises(ValidationError, match="Unknown provider type"):
            services.oauth.get_authorization_url("driver-1", "geotab", "https://app.example.com/cb", "s")

    def test_code_exchange_creates_driver_connection(self, services, eld_adapter, clock):
        connection = services.oauth.exchange_code_for_tokens(
            "driver-7", "samsara", "abc", "https://app.example.com/cb", settings={"timezone": "UTC"}
        )

        assert ("authenticate", "abc") in eld_adapter.calls
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.owner.owner_type == OwnerType.DRIVER
        assert connection.owner.owner_id == "driver-7"
        assert connection.settings == {"timezone": "UTC"}
        assert connection.oauth_credential.access_token == "access-abc"
        assert connection.token_expires_at == clock() + timedelta(hours=1)

    def test_empty_code_rejected(self, services, eld_adapter):
        with pytest.raises(ValidationError, match="code is required"):
            services.oauth.exchange_code_for_tokens("driver-7", "samsara", "", "https://app.example.com/cb")
        assert eld_adapter.calls == []

    def test_second_exchange_conflicts(self, services):
        services.oauth.exchange_code_for_tokens("driver-7", "samsara", "one", "https://app.example.com/cb")

        with pytest.raises(ConflictError):
            services.oauth.exchange_code_for_tokens("driver-7", "samsara", "two", "https://app.example.com/cb")

    def test_rejected_code_creates_nothing(self, services, eld_adapter):
        with patch.object(eld_adapter, "authenticate", side_effect=AuthenticationError("invalid_grant")):
            with pytest.raises(AuthenticationError):
                services.oauth.exchange_code_for_tokens("driver-7", "samsara", "bad", "https://app.example.com/cb")

        assert services.manager.get_by_owner(Owner(OwnerType.DRIVER, "driver-7")) == []

    def test_generated_state_is_unguessable(self):
        first, second = generate_state(), generate_state()
        assert first != second
        assert len(first) >= 43


class TestAdapterRegistry:
    """Test provider lookup."""

    def test_duplicate_registration_rejected(self, clock):
        registry = AdapterRegistry()
        registry.register(FakeAdapter(ProviderType.SAMSARA, clock))

        with pytest.raises(ValueError, match="already registered"):
            registry.register(FakeAdapter(ProviderType.SAMSARA, clock))

    def test_lookup(self, registry, eld_adapter):
        assert registry.get("samsara") is eld_adapter
        assert registry.get(ProviderType.SAMSARA) is eld_adapter
        assert registry.is_registered("mcleod")
        assert not registry.is_registered("omnitracs")
        assert not registry.is_registered("geotab")

    def test_unregistered_provider_lists_available(self, registry):
        with pytest.raises(ValidationError, match="Available: mcleod, samsara"):
            registry.get(ProviderType.OMNITRACS)

    def test_default_registry_has_every_provider(self, settings):
        registry = build_default_registry(settings)
        try:
            assert registry.list_available() == sorted(p.value for p in ProviderType)
            assert registry.get("tmw").supports(IntegrationType.API_KEY)
        finally:
            registry.close()
