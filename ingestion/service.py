"""
Telemetry ingestion pipeline for collar reports.

A report is checked in a fixed order: body shape, device id, signature,
store availability. It is then normalized and handed to the
PersistenceOrchestrator, which fans it out into the record store:

1. ``status_upsert``: latest snapshot, keyed by device id
2. ``location_insert``: only for a valid GPS fix
3. ``scratch_event_insert`` and ``scratch_daily_upsert``: when the scratch
   detector fired
4. ``anomaly_check`` and ``anomaly_insert``: when a health anomaly was
   flagged and none of that type is logged yet today

Every step is isolated. A failed step is logged and recorded in the
PersistResult but never stops the steps after it, and never changes the
response the collar gets.
"""

import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from errors.exceptions import invalid_request, invalid_signature, store_not_configured
from ingestion.anticheat import cheat_summary, FLAG_VEHICLE
from ingestion.dedup import AnomalyDeduplicator
from ingestion.normalizer import CanonicalStatus, extract_device_id, normalize
from ingestion.signature import SignatureVerifier
from ingestion.timeutil import to_iso, utc_date, utc_now
from middleware.request_id import bind_device_id
from services.store import Index, RecordStore
from telemetry.service import TelemetryService, get_telemetry_service

logger = logging.getLogger(__name__)


class Step(str, Enum):
    STATUS_UPSERT = "status_upsert"
    LOCATION_INSERT = "location_insert"
    SCRATCH_EVENT_INSERT = "scratch_event_insert"
    SCRATCH_DAILY_UPSERT = "scratch_daily_upsert"
    ANOMALY_CHECK = "anomaly_check"
    ANOMALY_INSERT = "anomaly_insert"


class StepStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class StepOutcome(BaseModel):
    """
    Outcome of one persistence step.

    Attributes:
        step: Step name
        status: succeeded, skipped or failed
        reason: Why the step was skipped
        error: Error text for a failed step
    """

    step: Step
    status: StepStatus
    reason: Optional[str] = None
    error: Optional[str] = None


class PersistResult(BaseModel):
    """Per-step outcomes of persisting one report, in execution order."""

    device_id: str
    steps: List[StepOutcome] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(s.status != StepStatus.FAILED for s in self.steps)

    @property
    def failed_steps(self) -> List[Step]:
        return [s.step for s in self.steps if s.status == StepStatus.FAILED]

    def outcome(self, step: Step) -> Optional[StepOutcome]:
        for s in self.steps:
            if s.step == step:
                return s
        return None

    def summary(self) -> Dict[str, str]:
        return {s.step.value: s.status.value for s in self.steps}


def status_document(status: CanonicalStatus, now: datetime) -> Dict[str, Any]:
    """DeviceStatus record for a normalized report."""
    document = status.model_dump(mode="json")
    document["walk_cheat_summary"] = cheat_summary(status.walk_cheat_flags)
    document["walk_vehicle_detected"] = bool(status.walk_cheat_flags & FLAG_VEHICLE)
    document["last_seen_at"] = to_iso(now)
    document["updated_at"] = to_iso(now)
    return document


def location_document(status: CanonicalStatus, now: datetime) -> Dict[str, Any]:
    return {
        "device_id": status.device_id,
        "latitude": status.latitude,
        "longitude": status.longitude,
        "altitude": status.altitude,
        "speed": status.speed,
        "hdop": status.hdop,
        "satellites": status.satellites,
        "activity_class": status.activity_class,
        "is_home": status.is_home,
        "is_escaped": status.is_escaped,
        "recorded_at": to_iso(now),
    }


def scratch_event_document(status: CanonicalStatus, now: datetime) -> Dict[str, Any]:
    document = {
        "device_id": status.device_id,
        "frequency_hz": status.scratch_frequency,
        "intensity": status.scratch_intensity,
        "confidence": status.scratch_confidence,
        "detected_at": to_iso(now),
    }
    if status.latitude is not None and status.longitude is not None:
        document["latitude"] = status.latitude
        document["longitude"] = status.longitude
    return document


def scratch_daily_id(device_id: str, now: datetime) -> str:
    return f"{device_id}:{utc_date(now).isoformat()}"


def scratch_daily_document(status: CanonicalStatus, now: datetime) -> Dict[str, Any]:
    # The collar keeps the running daily count; the gateway stores it as reported
    return {
        "device_id": status.device_id,
        "date": utc_date(now).isoformat(),
        "total_count": status.today_scratch_count,
        "max_frequency": status.scratch_frequency,
        "updated_at": to_iso(now),
    }


def anomaly_document(status: CanonicalStatus, now: datetime) -> Dict[str, Any]:
    return {
        "device_id": status.device_id,
        "anomaly_type": status.anomaly_type,
        "deviation_percent": status.activity_deviation,
        "detected_at": to_iso(now),
    }


class PersistenceOrchestrator:
    """
    Writes one normalized report into the record store step by step.

    Attributes:
        store: Record store the records are written to
        deduplicator: Decides whether an anomaly is logged
        telemetry: Telemetry service for the per-report outcome log
    """

    def __init__(
        self,
        store: RecordStore,
        deduplicator: Optional[AnomalyDeduplicator] = None,
        telemetry: Optional[TelemetryService] = None,
    ):
        self.store = store
        self.deduplicator = deduplicator or AnomalyDeduplicator(store)
        self.telemetry = telemetry or get_telemetry_service()

    async def _attempt(
        self,
        result: PersistResult,
        step: Step,
        action: Callable[[], Awaitable[Any]],
    ) -> Optional[Any]:
        """Run one step, recording success or failure. Returns the action's result."""
        try:
            value = await action()
        except Exception as e:
            logger.error(
                f"Persistence step {step.value} failed: {e}",
                extra={"extra_data": {"step": step.value, "error": str(e)}}
            )
            result.steps.append(StepOutcome(step=step, status=StepStatus.FAILED, error=str(e)))
            return None
        result.steps.append(StepOutcome(step=step, status=StepStatus.SUCCEEDED))
        return value

    @staticmethod
    def _skip(result: PersistResult, step: Step, reason: str) -> None:
        result.steps.append(StepOutcome(step=step, status=StepStatus.SKIPPED, reason=reason))

    async def persist(self, status: CanonicalStatus, now: datetime) -> PersistResult:
        """
        Persist a normalized report.

        Args:
            status: Normalized report
            now: Receive time, used for every timestamp written

        Returns:
            PersistResult listing every step in order
        """
        started = time.perf_counter()
        device_id = status.device_id
        result = PersistResult(device_id=device_id)

        await self._attempt(result, Step.STATUS_UPSERT, lambda: self.store.upsert(
            Index.DEVICE_STATUS, device_id, status_document(status, now)
        ))

        if status.has_valid_fix:
            await self._attempt(result, Step.LOCATION_INSERT, lambda: self.store.insert(
                Index.LOCATIONS, location_document(status, now)
            ))
        else:
            self._skip(result, Step.LOCATION_INSERT, "no valid GPS fix")

        if status.scratch_detected:
            await self._attempt(result, Step.SCRATCH_EVENT_INSERT, lambda: self.store.insert(
                Index.SCRATCH_EVENTS, scratch_event_document(status, now)
            ))
            await self._attempt(result, Step.SCRATCH_DAILY_UPSERT, lambda: self.store.upsert(
                Index.SCRATCH_DAILY, scratch_daily_id(device_id, now), scratch_daily_document(status, now)
            ))
        else:
            self._skip(result, Step.SCRATCH_EVENT_INSERT, "scratch not detected")
            self._skip(result, Step.SCRATCH_DAILY_UPSERT, "scratch not detected")

        await self._persist_anomaly(result, status, now)

        if self.telemetry:
            self.telemetry.log_ingest_outcome(
                device_id, result.summary(), (time.perf_counter() - started) * 1000
            )
        return result

    async def _persist_anomaly(
        self, result: PersistResult, status: CanonicalStatus, now: datetime
    ) -> None:
        if not status.anomaly_detected:
            self._skip(result, Step.ANOMALY_CHECK, "no anomaly reported")
            self._skip(result, Step.ANOMALY_INSERT, "no anomaly reported")
            return

        should_record = await self._attempt(result, Step.ANOMALY_CHECK, lambda: self.deduplicator.should_record(
            status.device_id, status.anomaly_type, now
        ))
        if result.outcome(Step.ANOMALY_CHECK).status == StepStatus.FAILED:
            self._skip(result, Step.ANOMALY_INSERT, "anomaly check failed")
            return
        if not should_record:
            self._skip(result, Step.ANOMALY_INSERT, "already logged today")
            return

        await self._attempt(result, Step.ANOMALY_INSERT, lambda: self.store.insert(
            Index.ANOMALY_LOG, anomaly_document(status, now)
        ))


class TelemetryIngestionService:
    """
    Entry point for POST /telemetry.

    Attributes:
        verifier: Signature verifier for the configured key
        orchestrator: Persistence orchestrator, or None when no store is configured
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        orchestrator: Optional[PersistenceOrchestrator],
        clock: Callable[[], datetime] = utc_now,
    ):
        self.verifier = verifier
        self.orchestrator = orchestrator
        self._clock = clock

    async def ingest(self, raw: Any) -> Dict[str, Any]:
        """
        Validate, authenticate and persist one collar report.

        Args:
            raw: Decoded JSON request body

        Returns:
            ``{"status": "ok", "device_id": ..., "timestamp": ...}``

        Raises:
            AppException: INVALID_REQUEST / VALIDATION_ERROR (400),
                INVALID_SIGNATURE (401) or STORE_NOT_CONFIGURED (500)
        """
        if not isinstance(raw, dict):
            raise invalid_request(
                message="Telemetry body must be a JSON object",
                details={"received_type": type(raw).__name__}
            )

        device_id = extract_device_id(raw)
        bind_device_id(device_id)

        if not self.verifier.verify(raw):
            raise invalid_signature(details={"device_id": device_id})

        if self.orchestrator is None:
            raise store_not_configured()

        status = normalize(raw)
        now = self._clock()
        await self.orchestrator.persist(status, now)

        return {
            "status": "ok",
            "device_id": device_id,
            "timestamp": to_iso(self._clock()),
        }
