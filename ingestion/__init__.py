"""
Telemetry ingestion for collar reports.

This package provides:
- Signature verification of collar reports (djb2 keyed checksum)
- Payload normalization for the nested and flat firmware shapes
- Walk grading and anti-cheat metrics
- Anomaly deduplication and the multi-record persistence sequence
- Walk session start/end
"""

from ingestion.anticheat import WalkCounters, WalkGrade, grade_letter, grade_walk
from ingestion.dedup import AnomalyDeduplicator
from ingestion.normalizer import CanonicalStatus, PayloadShape, normalize
from ingestion.service import (
    PersistenceOrchestrator,
    PersistResult,
    Step,
    StepOutcome,
    StepStatus,
    TelemetryIngestionService,
)
from ingestion.signature import SignatureVerifier, verify_signature
from ingestion.walks import WalkSessionService

__all__ = [
    "AnomalyDeduplicator",
    "CanonicalStatus",
    "PayloadShape",
    "PersistenceOrchestrator",
    "PersistResult",
    "SignatureVerifier",
    "Step",
    "StepOutcome",
    "StepStatus",
    "TelemetryIngestionService",
    "WalkCounters",
    "WalkGrade",
    "WalkSessionService",
    "grade_letter",
    "grade_walk",
    "normalize",
    "verify_signature",
]
