"""Tests for the request/response schemas."""

from datetime import timedelta

import pytest

from conftest import START, make_api_key_params
from integrations.credentials import ApiKeyCredential, IntegrationType
from integrations.domain import (
    EntityResult,
    EntityResultStatus,
    EntityType,
    LoadStatus,
    OwnerType,
    SyncOperation,
    SyncStatus,
)
from integrations.errors import ValidationError
from schemas import (
    ConnectionCreate,
    ConnectionRead,
    ConnectionUpdate,
    LoadIn,
    SyncOperationRead,
    SyncRequestIn,
    parse,
)


def connection_body(**overrides):
    body = {
        "owner_type": "carrier",
        "owner_id": " carrier-1 ",
        "provider_type": "mcleod",
        "integration_type": "api_key",
        "credentials": {"key": "key-1", "secret": "secret-1"},
        "settings": {"company_code": "ACME", "sync_entities": "loads, drivers", "custom": 1},
    }
    body.update(overrides)
    return body


class TestParse:
    """Test conversion of pydantic errors into ValidationError."""

    def test_error_names_the_field(self):
        with pytest.raises(ValidationError, match="Invalid ConnectionCreate: provider_type"):
            parse(ConnectionCreate, connection_body(provider_type="geotab"))

    def test_valid_input(self):
        create = parse(ConnectionCreate, connection_body())
        assert create.owner_id == "carrier-1"


class TestConnectionCreate:
    """Test connection creation input."""

    def test_to_params(self):
        params = parse(ConnectionCreate, connection_body()).to_params()

        assert params.owner.owner_type == OwnerType.CARRIER
        assert params.credentials == ApiKeyCredential(key="key-1", secret="secret-1")
        assert params.settings == {
            "company_code": "ACME",
            "sync_entities": ["loads", "drivers"],
            "auto_sync_enabled": False,
            "custom": 1,
        }

    def test_blank_owner_rejected(self):
        with pytest.raises(ValidationError, match="owner_id"):
            parse(ConnectionCreate, connection_body(owner_id="   "))

    def test_credential_shape_checked(self):
        create = parse(ConnectionCreate, connection_body(credentials={"access_token": "x"}))
        with pytest.raises(ValidationError, match="Unexpected fields for api_key credentials"):
            create.to_params()

    def test_unknown_entity_type_rejected(self):
        with pytest.raises(ValidationError, match="sync_entities"):
            parse(ConnectionCreate, connection_body(settings={"sync_entities": "loads,trailers"}))

    def test_sync_frequency_bounds(self):
        with pytest.raises(ValidationError, match="sync_frequency_minutes"):
            parse(ConnectionCreate, connection_body(settings={"sync_frequency_minutes": 0}))

    def test_credentials_not_in_repr(self):
        assert "secret-1" not in repr(parse(ConnectionCreate, connection_body()))


class TestConnectionUpdate:
    """Test partial updates."""

    def test_empty_update_rejected(self):
        with pytest.raises(ValidationError, match="Provide credentials and/or settings"):
            parse(ConnectionUpdate, {})

    def test_only_given_settings_are_sent(self):
        update = parse(ConnectionUpdate, {"settings": {"sync_frequency_minutes": 30}})

        params = update.to_params(IntegrationType.API_KEY)

        assert params.settings == {"sync_frequency_minutes": 30}
        assert params.credentials is None

    def test_credentials_built_for_integration_type(self):
        update = parse(ConnectionUpdate, {"credentials": {"key": "key-2"}})
        assert update.to_params(IntegrationType.API_KEY).credentials == ApiKeyCredential(key="key-2")


class TestConnectionRead:
    """Test connection output."""

    def test_webhook_secret_is_hidden(self, services):
        connection = services.manager.create(
            make_api_key_params(settings={"webhook_secret": "hook-secret", "company_code": "ACME"})
        )

        read = ConnectionRead.from_domain(connection)
        dumped = read.model_dump_json()

        assert "hook-secret" not in dumped
        assert "key-1" not in dumped
        assert read.settings == {"company_code": "ACME", "webhook_secret_configured": True}
        assert read.status.value == "ACTIVE"


class TestSyncSchemas:
    """Test sync request input and operation output."""

    def test_window_must_be_ordered(self):
        with pytest.raises(ValidationError, match="start_date must be before end_date"):
            parse(SyncRequestIn, {"start_date": START.isoformat(), "end_date": START.isoformat()})

    def test_to_request(self):
        body = parse(SyncRequestIn, {"entity_types": ["drivers"], "force": True})

        request = body.to_request("conn-1")

        assert request.entity_types == (EntityType.DRIVERS,)
        assert request.force is True
        assert parse(SyncRequestIn, {}).to_request("conn-1").entity_types is None

    def test_operation_read(self):
        operation = SyncOperation(
            sync_id="sync-1",
            connection_id="conn-1",
            entity_types=(EntityType.LOADS, EntityType.DRIVERS),
            status=SyncStatus.PARTIAL_FAILURE,
            entity_results={
                EntityType.LOADS: EntityResult(EntityResultStatus.SUCCESS, 4),
                EntityType.DRIVERS: EntityResult(EntityResultStatus.FAILED, 0, "boom"),
            },
            error_message="drivers: boom",
            started_at=START,
            completed_at=START + timedelta(seconds=5),
        )

        read = SyncOperationRead.from_domain(operation)

        assert read.entity_results["loads"].count_processed == 4
        assert read.entity_results["drivers"].error == "boom"
        assert read.model_dump(mode="json")["status"] == "PARTIAL_FAILURE"


class TestLoadIn:
    """Test load input for TMS pushes."""

    def test_extra_fields_become_attributes(self):
        load = parse(LoadIn, {"load_id": "L-1", "status": "ASSIGNED", "commodity": "steel"}).to_domain()

        assert load.status == LoadStatus.ASSIGNED
        assert load.attributes == {"commodity": "steel"}

    def test_pickup_after_delivery_rejected(self):
        with pytest.raises(ValidationError, match="pickup_at must not be after delivery_at"):
            parse(LoadIn, {
                "load_id": "L-1",
                "pickup_at": (START + timedelta(days=2)).isoformat(),
                "delivery_at": START.isoformat(),
            })

    def test_negative_weight_rejected(self):
        with pytest.raises(ValidationError, match="weight_lbs"):
            parse(LoadIn, {"load_id": "L-1", "weight_lbs": -1})
