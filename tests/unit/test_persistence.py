"""
Unit tests for the persistence orchestrator and the telemetry pipeline.

Covers step ordering, conditional steps, partial-failure isolation and the
request checks that run before anything is written.
"""

from unittest.mock import MagicMock

import pytest

from errors.codes import ErrorCode
from errors.exceptions import AppException
from ingestion.normalizer import normalize
from ingestion.service import (
    PersistenceOrchestrator,
    Step,
    StepStatus,
    TelemetryIngestionService,
    scratch_daily_id,
)
from ingestion.signature import SignatureVerifier, compute_signature
from services.store import Index


@pytest.fixture
def orchestrator(memory_store):
    return PersistenceOrchestrator(memory_store, telemetry=MagicMock())


def with_scratch(payload):
    payload["scratch"] = {"detected": True, "today_count": 7, "frequency": 4.5, "intensity": 0.8, "confidence": 0.9}
    return payload


def with_anomaly(payload, anomaly_type="low_activity"):
    payload["health"] = {"anomaly": True, "anomaly_type": anomaly_type, "deviation": -38.5}
    return payload


class TestPersistenceOrchestrator:

    @pytest.mark.asyncio
    async def test_status_and_location_written(self, orchestrator, memory_store, nested_payload, fixed_now):
        result = await orchestrator.persist(normalize(nested_payload), fixed_now)

        assert result.ok is True
        assert result.outcome(Step.STATUS_UPSERT).status == StepStatus.SUCCEEDED
        assert result.outcome(Step.LOCATION_INSERT).status == StepStatus.SUCCEEDED

        status = memory_store.indices[Index.DEVICE_STATUS]["collar-001"]
        assert status["latitude"] == 51.5074
        assert status["payload_shape"] == "nested"
        assert status["last_seen_at"] == "2026-10-18T09:30:00.000Z"

        locations = memory_store.records(Index.LOCATIONS)
        assert len(locations) == 1
        assert locations[0]["recorded_at"] == "2026-10-18T09:30:00.000Z"
        assert locations[0]["satellites"] == 9

    @pytest.mark.asyncio
    async def test_every_step_is_listed_in_order(self, orchestrator, nested_payload, fixed_now):
        result = await orchestrator.persist(normalize(nested_payload), fixed_now)

        assert [s.step for s in result.steps] == list(Step)
        assert result.outcome(Step.SCRATCH_EVENT_INSERT).status == StepStatus.SKIPPED
        assert result.outcome(Step.SCRATCH_EVENT_INSERT).reason == "scratch not detected"
        assert result.outcome(Step.ANOMALY_INSERT).status == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_no_location_without_valid_fix(self, orchestrator, memory_store, nested_payload, fixed_now):
        nested_payload["gps"]["valid"] = False
        result = await orchestrator.persist(normalize(nested_payload), fixed_now)

        assert result.outcome(Step.LOCATION_INSERT).status == StepStatus.SKIPPED
        assert memory_store.records(Index.LOCATIONS) == []

    @pytest.mark.asyncio
    async def test_scratch_event_and_daily_aggregate(self, orchestrator, memory_store, nested_payload, fixed_now):
        await orchestrator.persist(normalize(with_scratch(nested_payload)), fixed_now)

        events = memory_store.records(Index.SCRATCH_EVENTS)
        assert len(events) == 1
        assert events[0]["frequency_hz"] == 4.5
        assert events[0]["intensity"] == 0.8
        assert events[0]["latitude"] == 51.5074

        daily = memory_store.indices[Index.SCRATCH_DAILY]["collar-001:2026-10-18"]
        assert daily["total_count"] == 7
        assert daily["max_frequency"] == 4.5
        assert daily["date"] == "2026-10-18"

    @pytest.mark.asyncio
    async def test_daily_upsert_runs_after_event_insert_fails(self, orchestrator, memory_store, nested_payload, fixed_now):
        memory_store.fail_on.add(("insert", Index.SCRATCH_EVENTS))
        result = await orchestrator.persist(normalize(with_scratch(nested_payload)), fixed_now)

        assert result.ok is False
        assert result.outcome(Step.SCRATCH_EVENT_INSERT).status == StepStatus.FAILED
        assert result.outcome(Step.SCRATCH_DAILY_UPSERT).status == StepStatus.SUCCEEDED
        assert scratch_daily_id("collar-001", fixed_now) in memory_store.indices[Index.SCRATCH_DAILY]

    @pytest.mark.asyncio
    async def test_location_failure_does_not_stop_other_steps(self, orchestrator, memory_store, nested_payload, fixed_now):
        memory_store.fail_on.add(("insert", Index.LOCATIONS))
        payload = with_anomaly(with_scratch(nested_payload))
        result = await orchestrator.persist(normalize(payload), fixed_now)

        assert result.failed_steps == [Step.LOCATION_INSERT]
        assert "collar-001" in memory_store.indices[Index.DEVICE_STATUS]
        assert len(memory_store.records(Index.SCRATCH_EVENTS)) == 1
        assert len(memory_store.records(Index.ANOMALY_LOG)) == 1

    @pytest.mark.asyncio
    async def test_status_failure_does_not_stop_location(self, orchestrator, memory_store, nested_payload, fixed_now):
        memory_store.fail_on.add(("upsert", Index.DEVICE_STATUS))
        result = await orchestrator.persist(normalize(nested_payload), fixed_now)

        assert result.outcome(Step.STATUS_UPSERT).status == StepStatus.FAILED
        assert result.outcome(Step.STATUS_UPSERT).error
        assert len(memory_store.records(Index.LOCATIONS)) == 1

    @pytest.mark.asyncio
    async def test_anomaly_logged_once_per_day(self, orchestrator, memory_store, nested_payload, fixed_now):
        status = normalize(with_anomaly(nested_payload))

        first = await orchestrator.persist(status, fixed_now)
        second = await orchestrator.persist(status, fixed_now)

        assert first.outcome(Step.ANOMALY_INSERT).status == StepStatus.SUCCEEDED
        assert second.outcome(Step.ANOMALY_INSERT).status == StepStatus.SKIPPED
        assert second.outcome(Step.ANOMALY_INSERT).reason == "already logged today"

        entries = memory_store.records(Index.ANOMALY_LOG)
        assert len(entries) == 1
        assert entries[0]["deviation_percent"] == -38.5

    @pytest.mark.asyncio
    async def test_failed_anomaly_check_skips_insert(self, orchestrator, memory_store, nested_payload, fixed_now):
        memory_store.fail_on.add(("find", Index.ANOMALY_LOG))
        result = await orchestrator.persist(normalize(with_anomaly(nested_payload)), fixed_now)

        assert result.outcome(Step.ANOMALY_CHECK).status == StepStatus.FAILED
        assert result.outcome(Step.ANOMALY_INSERT).status == StepStatus.SKIPPED
        assert result.outcome(Step.ANOMALY_INSERT).reason == "anomaly check failed"
        assert memory_store.records(Index.ANOMALY_LOG) == []

    @pytest.mark.asyncio
    async def test_outcome_is_logged(self, memory_store, nested_payload, fixed_now):
        telemetry = MagicMock()
        orchestrator = PersistenceOrchestrator(memory_store, telemetry=telemetry)

        await orchestrator.persist(normalize(nested_payload), fixed_now)

        telemetry.log_ingest_outcome.assert_called_once()
        device_id, steps, _ = telemetry.log_ingest_outcome.call_args.args
        assert device_id == "collar-001"
        assert steps["status_upsert"] == "succeeded"


class TestTelemetryIngestionService:

    def make_service(self, store, key=None):
        orchestrator = PersistenceOrchestrator(store, telemetry=MagicMock()) if store is not None else None
        return TelemetryIngestionService(SignatureVerifier(key), orchestrator)

    @pytest.mark.asyncio
    async def test_accepts_report(self, memory_store, nested_payload):
        response = await self.make_service(memory_store).ingest(nested_payload)

        assert response["status"] == "ok"
        assert response["device_id"] == "collar-001"
        assert response["timestamp"].endswith("Z")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [[1, 2], "text", 42, None])
    async def test_non_object_body_rejected(self, memory_store, body):
        with pytest.raises(AppException) as exc_info:
            await self.make_service(memory_store).ingest(body)

        assert exc_info.value.error_code == ErrorCode.INVALID_REQUEST
        assert memory_store.calls == []

    @pytest.mark.asyncio
    async def test_missing_device_id_checked_before_signature(self, memory_store):
        with pytest.raises(AppException) as exc_info:
            await self.make_service(memory_store, key="secret").ingest({"signature": 1})

        assert exc_info.value.error_code == ErrorCode.VALIDATION_ERROR

    @pytest.mark.asyncio
    async def test_bad_signature_rejected_without_writes(self, memory_store, nested_payload):
        nested_payload["signature"] = 1
        with pytest.raises(AppException) as exc_info:
            await self.make_service(memory_store, key="secret").ingest(nested_payload)

        assert exc_info.value.status_code == 401
        assert memory_store.calls == []

    @pytest.mark.asyncio
    async def test_signed_report_accepted(self, memory_store, nested_payload):
        nested_payload["signature"] = compute_signature(nested_payload, "secret")
        response = await self.make_service(memory_store, key="secret").ingest(nested_payload)

        assert response["status"] == "ok"

    @pytest.mark.asyncio
    async def test_signature_checked_before_store_configuration(self, nested_payload):
        nested_payload["signature"] = 1
        with pytest.raises(AppException) as exc_info:
            await self.make_service(None, key="secret").ingest(nested_payload)

        assert exc_info.value.error_code == ErrorCode.INVALID_SIGNATURE

    @pytest.mark.asyncio
    async def test_no_store_configured(self, nested_payload):
        with pytest.raises(AppException) as exc_info:
            await self.make_service(None).ingest(nested_payload)

        assert exc_info.value.error_code == ErrorCode.STORE_NOT_CONFIGURED
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_secondary_failure_still_ok(self, memory_store, nested_payload):
        memory_store.fail_on.add(("insert", Index.LOCATIONS))
        response = await self.make_service(memory_store).ingest(nested_payload)

        assert response["status"] == "ok"
        assert "collar-001" in memory_store.indices[Index.DEVICE_STATUS]
