"""Tests for structured logging, correlation ids and metrics."""

import json
import logging

from prometheus_client import REGISTRY

from conftest import make_api_key_params
from integrations.domain import SyncRequest
from observability import correlation_scope, get_correlation_id, redact
from observability.logging_config import CorrelationIDFilter, JSONFormatter


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("integrations.test", logging.INFO, __file__, 10, "refreshed %s", ("token",), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestRedact:
    def test_nested_secrets_are_masked(self):
        payload = {
            "access_token": "abc",
            "data": {"Password": "pw", "items": [{"api_key": "k", "name": "x"}]},
            "refresh_token": None,
        }

        assert redact(payload) == {
            "access_token": "***",
            "data": {"Password": "***", "items": [{"api_key": "***", "name": "x"}]},
            "refresh_token": None,
        }


class TestJSONFormatter:
    """Test JSON log lines."""

    def test_context_fields_are_copied_and_redacted(self):
        record = make_record(connection_id="conn-1", payload={"secret": "s", "id": 1})
        with correlation_scope("corr-1"):
            CorrelationIDFilter().filter(record)

        line = json.loads(JSONFormatter().format(record))

        assert line["message"] == "refreshed token"
        assert line["correlation_id"] == "corr-1"
        assert line["connection_id"] == "conn-1"
        assert line["payload"] == {"secret": "***", "id": 1}

    def test_missing_correlation_id(self):
        line = json.loads(JSONFormatter().format(make_record()))
        assert line["correlation_id"] == "no-correlation-id"


class TestCorrelationScope:
    def test_scope_is_restored(self):
        with correlation_scope("outer"):
            with correlation_scope() as inner:
                assert get_correlation_id() == inner != "outer"
            assert get_correlation_id() == "outer"
        assert get_correlation_id() == "no-correlation-id"

    def test_sync_logs_carry_sync_id(self, services):
        connection = services.manager.create(make_api_key_params())
        seen = []

        class Capture(logging.Handler):
            def emit(self, record):
                seen.append(get_correlation_id())

        handler = Capture()
        logger = logging.getLogger("integrations.sync_orchestrator")
        logger.addHandler(handler)
        previous = logger.level
        logger.setLevel(logging.DEBUG)
        try:
            operation = services.orchestrator.request_sync(SyncRequest(connection.connection_id))
        finally:
            logger.removeHandler(handler)
            logger.setLevel(previous)

        assert operation.sync_id in seen


class TestMetrics:
    def test_sync_outcome_is_counted(self, services):
        labels = {"provider": "mcleod", "status": "SUCCESS"}
        before = REGISTRY.get_sample_value("integration_sync_operations_total", labels) or 0.0
        connection = services.manager.create(make_api_key_params())

        services.orchestrator.request_sync(SyncRequest(connection.connection_id))

        assert REGISTRY.get_sample_value("integration_sync_operations_total", labels) == before + 1
