"""
Unit tests for structured logging and telemetry spans.
"""

import json
import logging
from unittest.mock import MagicMock, patch

from middleware.request_id import device_id_var, request_id_var
from telemetry.service import JSONFormatter, TelemetryService


def make_record(message="Telemetry persisted", extra_data=None):
    record = logging.LogRecord(
        name="ingestion.service",
        level=logging.INFO,
        pathname=__file__,
        lineno=42,
        msg=message,
        args=(),
        exc_info=None,
    )
    if extra_data is not None:
        record.extra_data = extra_data
    return record


class TestJSONFormatter:

    def test_includes_correlation_ids(self):
        request_token = request_id_var.set("req-1")
        device_token = device_id_var.set("collar-001")
        try:
            data = json.loads(JSONFormatter().format(make_record()))
        finally:
            device_id_var.reset(device_token)
            request_id_var.reset(request_token)

        assert data["message"] == "Telemetry persisted"
        assert data["level"] == "INFO"
        assert data["request_id"] == "req-1"
        assert data["device_id"] == "collar-001"
        assert data["timestamp"].endswith("Z")

    def test_device_id_omitted_outside_device_requests(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert "device_id" not in data
        assert data["request_id"] == ""

    def test_extra_data_merged(self):
        data = json.loads(JSONFormatter().format(make_record(extra_data={"failed_steps": ["location_insert"]})))

        assert data["failed_steps"] == ["location_insert"]


class TestTelemetryService:

    def test_without_endpoint_spans_are_no_ops(self, test_settings):
        telemetry = TelemetryService(test_settings)

        assert telemetry.tracer is None
        with telemetry.create_external_service_span("elasticsearch", "search", {"db.index": "locations"}) as span:
            span.set_attribute("db.rows", 0)

    def test_ingest_outcome_level_follows_failures(self, test_settings):
        telemetry = TelemetryService(test_settings)

        with patch.object(telemetry, "_logger", MagicMock()) as logger:
            telemetry.log_ingest_outcome("collar-001", {"status_upsert": "succeeded"}, 12.345)
            telemetry.log_ingest_outcome(
                "collar-001",
                {"status_upsert": "succeeded", "location_insert": "failed"},
                8.0,
            )

        levels = [c.args[0] for c in logger.log.call_args_list]
        assert levels == [logging.INFO, logging.WARNING]
        extra = logger.log.call_args_list[1].kwargs["extra"]["extra_data"]
        assert extra["failed_steps"] == ["location_insert"]

        metric = logger.debug.call_args_list[-1].kwargs["extra"]["extra_data"]
        assert metric["metric_name"] == "telemetry.persist.duration_ms"
        assert metric["tags"] == {"outcome": "partial"}
