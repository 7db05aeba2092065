"""
Shared pytest fixtures and configuration for all tests.
"""
import copy
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple
from unittest.mock import MagicMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import settings, Verbosity, Phase

from config.settings import Settings
from errors.exceptions import store_unavailable
from services.store import Range, RecordStore

# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,  # Print failing examples for debugging
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,  # Reproducible results in CI
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],  # Skip shrinking for speed
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

# Load profile from environment variable HYPOTHESIS_PROFILE, default to "default"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


FIXED_NOW = datetime(2026, 10, 18, 9, 30, 0, tzinfo=timezone.utc)


class InMemoryRecordStore(RecordStore):
    """
    Dict-backed RecordStore for tests.

    ``fail_on`` holds ``(operation, index)`` pairs that raise
    STORE_UNAVAILABLE; ``calls`` records every operation in order.
    """

    WRITE_OPERATIONS = ("upsert", "insert", "update")

    def __init__(self):
        self.indices: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.fail_on: Set[Tuple[str, str]] = set()
        self.calls: List[Tuple[str, str]] = []
        self.healthy = True
        self.closed = False

    def _record(self, operation: str, index: str) -> None:
        self.calls.append((operation, index))
        if (operation, index) in self.fail_on:
            raise store_unavailable(details={"operation": operation, "index": index})

    @property
    def writes(self) -> List[Tuple[str, str]]:
        return [c for c in self.calls if c[0] in self.WRITE_OPERATIONS]

    def records(self, index: str) -> List[Dict[str, Any]]:
        return [
            {**doc, "id": doc_id}
            for doc_id, doc in self.indices.get(index, {}).items()
        ]

    def seed(self, index: str, document: Dict[str, Any], doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        self.indices.setdefault(index, {})[doc_id] = copy.deepcopy(document)
        return doc_id

    async def upsert(self, index, doc_id, document):
        self._record("upsert", index)
        self.indices.setdefault(index, {})[doc_id] = copy.deepcopy(document)

    async def insert(self, index, document):
        self._record("insert", index)
        return self.seed(index, document)

    async def get(self, index, doc_id):
        self._record("get", index)
        doc = self.indices.get(index, {}).get(doc_id)
        return {**copy.deepcopy(doc), "id": doc_id} if doc is not None else None

    async def update(self, index, doc_id, fields):
        self._record("update", index)
        if doc_id not in self.indices.get(index, {}):
            raise store_unavailable(details={"operation": "update", "index": index})
        self.indices[index][doc_id].update(copy.deepcopy(fields))

    async def find(self, index, *, match=None, ranges=None, sort_by=None, descending=True, limit=100):
        self._record("find", index)
        results = []
        for doc in self.records(index):
            if not self._matches(doc, match or {}, ranges or {}):
                continue
            results.append(copy.deepcopy(doc))
        if sort_by:
            results.sort(key=lambda d: d.get(sort_by) or "", reverse=descending)
        return results[:limit]

    @staticmethod
    def _matches(doc: Dict[str, Any], match: Dict[str, Any], ranges: Dict[str, Range]) -> bool:
        for field, value in match.items():
            if doc.get(field) != value:
                return False
        for field, bounds in ranges.items():
            current = doc.get(field)
            if current is None:
                return False
            if bounds.gte is not None and current < bounds.gte:
                return False
            if bounds.lt is not None and current >= bounds.lt:
                return False
        return True

    async def health_check(self):
        return self.healthy

    async def close(self):
        self.closed = True


@pytest.fixture
def memory_store() -> InMemoryRecordStore:
    """Empty in-memory record store."""
    return InMemoryRecordStore()


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def test_settings() -> Settings:
    """Development settings with no store, no signing key and no rate limits."""
    return Settings(
        environment="development",
        elastic_endpoint=None,
        signing_key=None,
        rate_limit_enabled=False,
        log_level="WARNING",
    )


@pytest.fixture
def mock_es_client() -> MagicMock:
    """Mock synchronous Elasticsearch client for store adapter tests."""
    mock = MagicMock()
    mock.index.return_value = {"_id": "generated-id", "result": "created"}
    mock.get.return_value = {"_id": "doc-1", "_source": {"device_id": "collar-1"}}
    mock.update.return_value = {"result": "updated"}
    mock.search.return_value = {"hits": {"hits": [], "total": {"value": 0}}}
    mock.ping.return_value = True
    return mock


@pytest.fixture
def nested_payload() -> Dict[str, Any]:
    """Firmware v6 report with every group populated."""
    return {
        "device_id": "collar-001",
        "gps": {
            "lat": 51.5074,
            "lon": -0.1278,
            "alt": 35.2,
            "speed": 1.4,
            "hdop": 0.9,
            "satellites": 9,
            "valid": True,
        },
        "accel": {"x": 0.01, "y": -0.02, "z": 0.98, "magnitude": 0.98, "variance": 0.04},
        "activity": {"class": 2, "name": "walking", "session_steps": 1200, "today_steps": 8400},
        "location": {"is_home": False, "is_escaped": False, "distance_home": 420.5},
        "battery": {"voltage": 3.92, "percent": 81},
        "network": {"signal": -71, "operator": "Vodafone"},
        "sleep": {"active": False, "quality": None, "respiratory_rate": None, "restless_count": 0},
        "walk": {
            "active": True,
            "duration": 1260,
            "distance": 1350.0,
            "stops": 1,
            "carried_seconds": 0,
            "vehicle_seconds": 0,
            "actual_walk_seconds": 1200,
            "cheat_flags": 0,
        },
        "scratch": {"detected": False, "today_count": 3, "frequency": None, "confidence": None},
        "health": {"anomaly": False, "anomaly_type": None, "deviation": None},
        "boot_count": 12,
        "firmware": "6.0.2",
    }
