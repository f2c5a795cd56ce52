"""Tests for the SQLAlchemy repositories and the encrypted credential vault (SQLite)."""

import json
import uuid
from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from conftest import START, make_api_key_params, make_oauth_params
from infrastructure.encryption import CredentialEncryption
from infrastructure.repositories import (
    EncryptedCredentialVault,
    SqlAlchemyConnectionRepository,
    SqlAlchemySyncOperationRepository,
)
from integrations.container import build_integration_services
from integrations.credentials import ApiKeyCredential, IntegrationType, OAuthCredential
from integrations.domain import (
    Connection,
    ConnectionStatus,
    EntityResult,
    EntityResultStatus,
    EntityType,
    Owner,
    OwnerType,
    ProviderType,
    SyncOperation,
    SyncRequest,
    SyncStatus,
    SyncWindow,
)
from integrations.errors import ConflictError, NotFoundError
from integrations.ports import SyncPage, SyncRecord
from models import Base
from models.integration_credential import IntegrationCredential

KEY = "test-credential-key-32-chars-long-000"


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autocommit=False, autoflush=False)
    engine.dispose()


def new_connection(**overrides) -> Connection:
    values = dict(
        connection_id=str(uuid.uuid4()),
        owner=Owner(OwnerType.CARRIER, "carrier-1"),
        provider_type=ProviderType.MCLEOD,
        integration_type=IntegrationType.API_KEY,
        status=ConnectionStatus.ACTIVE,
        created_at=START,
        updated_at=START,
        settings={"company_code": "ACME"},
        provider_account_id="ACME",
    )
    values.update(overrides)
    return Connection(**values)


def new_operation(connection_id: str, status=SyncStatus.IN_PROGRESS, **overrides) -> SyncOperation:
    values = dict(
        sync_id=str(uuid.uuid4()),
        connection_id=connection_id,
        entity_types=(EntityType.LOADS, EntityType.DRIVERS),
        status=status,
        window=SyncWindow(start=START - timedelta(days=7)),
        started_at=START,
    )
    values.update(overrides)
    return SyncOperation(**values)


class TestSqlAlchemyConnectionRepository:
    """Test connection persistence and compare-and-set writes."""

    def test_put_and_get(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        connection = new_connection(token_expires_at=START + timedelta(hours=1))

        repo.put(connection)
        stored = repo.get(connection.connection_id)

        assert stored == connection
        assert stored.created_at.tzinfo is not None
        assert stored.credentials is None

    def test_duplicate_insert_conflicts(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        connection = new_connection()
        repo.put(connection)

        with pytest.raises(ConflictError):
            repo.put(connection)

    def test_compare_and_set(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        connection = new_connection()
        repo.put(connection)

        moved = replace(connection, status=ConnectionStatus.ERROR, updated_at=START + timedelta(seconds=1))
        repo.put(moved, expected_updated_at=START)
        assert repo.get(connection.connection_id).status == ConnectionStatus.ERROR

        stale = replace(connection, status=ConnectionStatus.REVOKED, updated_at=START + timedelta(seconds=2))
        with pytest.raises(ConflictError):
            repo.put(stale, expected_updated_at=START)

    def test_update_of_missing_row(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        with pytest.raises(NotFoundError):
            repo.put(new_connection(), expected_updated_at=START)

    def test_queries(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        active = new_connection(token_expires_at=START + timedelta(minutes=2))
        revoked = new_connection(status=ConnectionStatus.REVOKED, created_at=START + timedelta(seconds=1))
        other_owner = new_connection(owner=Owner(OwnerType.SHIPPER, "shipper-1"), provider_account_id="OTHER")
        for connection in (active, revoked, other_owner):
            repo.put(connection)

        owned = repo.find_by_owner(Owner(OwnerType.CARRIER, "carrier-1"), ProviderType.MCLEOD)
        assert [c.connection_id for c in owned] == [active.connection_id, revoked.connection_id]
        by_account = repo.find_by_provider_account(ProviderType.MCLEOD, "ACME")
        assert {c.connection_id for c in by_account} == {active.connection_id, revoked.connection_id}
        assert [c.connection_id for c in repo.list_by_status(ConnectionStatus.REVOKED)] == [revoked.connection_id]
        assert [c.connection_id for c in repo.list_expiring(START + timedelta(minutes=5))] == [active.connection_id]

    def test_delete(self, session_factory):
        repo = SqlAlchemyConnectionRepository(session_factory)
        connection = new_connection()
        repo.put(connection)

        assert repo.delete(connection.connection_id)
        assert repo.get(connection.connection_id) is None
        assert not repo.delete(connection.connection_id)


class TestSqlAlchemySyncOperationRepository:
    """Test sync operation persistence and the single-active rule."""

    def test_round_trip(self, session_factory):
        repo = SqlAlchemySyncOperationRepository(session_factory)
        operation = new_operation(
            str(uuid.uuid4()),
            status=SyncStatus.PARTIAL_FAILURE,
            entity_results={
                EntityType.LOADS: EntityResult(EntityResultStatus.SUCCESS, 3),
                EntityType.DRIVERS: EntityResult(EntityResultStatus.FAILED, 0, "boom"),
            },
            error_message="drivers: boom",
            completed_at=START + timedelta(minutes=1),
        )

        repo.put(operation)

        assert repo.get(operation.sync_id) == operation

    def test_second_active_operation_conflicts(self, session_factory):
        repo = SqlAlchemySyncOperationRepository(session_factory)
        connection_id = str(uuid.uuid4())
        first = new_operation(connection_id)
        repo.put(first)

        with pytest.raises(ConflictError):
            repo.put(new_operation(connection_id))

        assert repo.find_active(connection_id).sync_id == first.sync_id

    def test_terminal_operation_is_immutable(self, session_factory):
        repo = SqlAlchemySyncOperationRepository(session_factory)
        operation = new_operation(str(uuid.uuid4()))
        repo.put(operation)
        repo.put(replace(operation, status=SyncStatus.SUCCESS, completed_at=START))

        with pytest.raises(ConflictError):
            repo.put(replace(operation, status=SyncStatus.FAILED))
        assert repo.find_active(operation.connection_id) is None

    def test_finished_operation_frees_the_connection(self, session_factory):
        repo = SqlAlchemySyncOperationRepository(session_factory)
        connection_id = str(uuid.uuid4())
        first = new_operation(connection_id)
        repo.put(first)
        repo.put(replace(first, status=SyncStatus.FAILED, completed_at=START))

        second = new_operation(connection_id, started_at=START + timedelta(minutes=5))
        repo.put(second)

        history = repo.list_for_connection(connection_id)
        assert [op.sync_id for op in history] == [second.sync_id, first.sync_id]


class TestEncryptedCredentialVault:
    """Test credential encryption at rest."""

    def test_write_read_delete(self, session_factory):
        cid = str(uuid.uuid4())
        SqlAlchemyConnectionRepository(session_factory).put(new_connection(connection_id=cid))
        vault = EncryptedCredentialVault(session_factory, CredentialEncryption(KEY))
        credential = ApiKeyCredential(key="key-1", secret="secret-1")

        vault.write(cid, credential)

        assert vault.read(cid) == credential
        vault.delete(cid)
        assert vault.read(cid) is None

    def test_secret_is_not_stored_in_plaintext(self, session_factory):
        cid = str(uuid.uuid4())
        vault = EncryptedCredentialVault(session_factory, CredentialEncryption(KEY))
        vault.write(cid, OAuthCredential(access_token="plain-access-token", expires_at=START))

        session = session_factory()
        try:
            row = session.get(IntegrationCredential, cid)
            assert "plain-access-token" not in row.ciphertext_json
            assert json.loads(row.ciphertext_json)["ctx"] == f"integration_connection:{cid}"
        finally:
            session.close()

    def test_overwrite(self, session_factory):
        cid = str(uuid.uuid4())
        vault = EncryptedCredentialVault(session_factory, CredentialEncryption(KEY))
        vault.write(cid, ApiKeyCredential(key="old"))
        vault.write(cid, ApiKeyCredential(key="new"))
        assert vault.read(cid).key == "new"

    def test_wrong_key_cannot_decrypt(self, session_factory):
        cid = str(uuid.uuid4())
        EncryptedCredentialVault(session_factory, CredentialEncryption(KEY)).write(cid, ApiKeyCredential(key="k"))

        other = EncryptedCredentialVault(session_factory, CredentialEncryption("another-key-that-is-32-chars-long!!"))
        with pytest.raises(ValueError, match="Decryption failed"):
            other.read(cid)


class TestDatabaseBackedServices:
    """Run the lifecycle against the SQLAlchemy storage."""

    @pytest.fixture
    def db_services(self, settings, registry, publisher, clock, ticker, session_factory):
        services = build_integration_services(
            settings,
            session_factory=session_factory,
            registry=registry,
            publisher=publisher,
            clock=clock,
            sleep=ticker.sleep,
            monotonic=ticker,
        )
        yield services
        services.close()

    def test_create_sync_and_revoke(self, db_services, tms_adapter, clock):
        connection = db_services.manager.create(make_api_key_params())
        tms_adapter.pages[EntityType.LOADS] = [
            SyncPage(records=[SyncRecord("L1", {"id": "L1"}, START - timedelta(hours=1))])
        ]

        operation = db_services.orchestrator.request_sync(
            SyncRequest(connection.connection_id, (EntityType.LOADS,))
        )

        assert operation.status == SyncStatus.SUCCESS
        assert db_services.sync_repository.get(operation.sync_id).status == SyncStatus.SUCCESS
        assert db_services.manager.get(connection.connection_id).last_sync_at == clock()

        db_services.manager.revoke(connection.connection_id)
        stored = db_services.manager.get(connection.connection_id)
        assert stored.status == ConnectionStatus.REVOKED
        assert stored.credentials is None

    def test_token_refresh_is_persisted_encrypted(self, db_services, clock):
        connection = db_services.manager.create(make_oauth_params(clock))
        clock.advance(minutes=58)

        db_services.manager.token_guard.ensure_fresh(db_services.manager.get(connection.connection_id))

        stored = db_services.manager.get(connection.connection_id)
        assert stored.oauth_credential.access_token == "refreshed-token"
        assert stored.token_expires_at == clock() + timedelta(hours=1)

    def test_delete_removes_rows(self, db_services):
        connection = db_services.manager.create(make_api_key_params())

        db_services.manager.delete(connection.connection_id)

        assert db_services.repository.get(connection.connection_id) is None
        assert db_services.vault.read(connection.connection_id) is None
