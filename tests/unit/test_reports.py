"""
Unit tests for the device report queries and walker stats.
"""

import pytest

from errors.codes import ErrorCode
from errors.exceptions import AppException
from reports.service import DeviceReportService, walker_stats_aggregations
from services.store import Index


@pytest.fixture
def reports(memory_store, fixed_now):
    return DeviceReportService(memory_store, clock=lambda: fixed_now)


def ended_walk(device_id="collar-1", started_at="2026-10-17T08:00:00.000Z", **fields):
    walk = {
        "device_id": device_id,
        "state": "ended",
        "started_at": started_at,
        "duration_seconds": 1800,
        "distance_meters": 2000.0,
        "grade": "A",
        "grade_score": 100,
        "carried_percent": 0.0,
        "actual_walk_percent": 100.0,
        "cheat_flags": 0,
    }
    walk.update(fields)
    return walk


class TestStatusAndHistory:

    @pytest.mark.asyncio
    async def test_status_found(self, reports, memory_store):
        memory_store.seed(Index.DEVICE_STATUS, {"device_id": "collar-1", "battery_percent": 80}, doc_id="collar-1")

        status = await reports.get_status("collar-1")

        assert status["battery_percent"] == 80
        assert status["id"] == "collar-1"

    @pytest.mark.asyncio
    async def test_unknown_device_status_is_404(self, reports):
        with pytest.raises(AppException) as exc_info:
            await reports.get_status("ghost")

        assert exc_info.value.error_code == ErrorCode.RESOURCE_NOT_FOUND

    @pytest.mark.asyncio
    async def test_locations_filtered_by_window_newest_first(self, reports, memory_store):
        for recorded_at in ("2026-10-18T09:00:00.000Z", "2026-10-18T08:00:00.000Z", "2026-10-16T09:00:00.000Z"):
            memory_store.seed(Index.LOCATIONS, {"device_id": "collar-1", "recorded_at": recorded_at})
        memory_store.seed(Index.LOCATIONS, {"device_id": "collar-2", "recorded_at": "2026-10-18T09:10:00.000Z"})

        result = await reports.get_locations("collar-1", hours=24)

        assert result["count"] == 2
        assert [loc["recorded_at"] for loc in result["locations"]] == [
            "2026-10-18T09:00:00.000Z",
            "2026-10-18T08:00:00.000Z",
        ]

    @pytest.mark.asyncio
    async def test_location_limit_capped(self, reports, memory_store):
        for minute in range(5):
            memory_store.seed(Index.LOCATIONS, {"device_id": "c", "recorded_at": f"2026-10-18T09:0{minute}:00.000Z"})

        assert (await reports.get_locations("c", limit=2))["count"] == 2

    @pytest.mark.asyncio
    async def test_sleep_summary(self, reports, memory_store):
        memory_store.seed(Index.SLEEP_SESSIONS, {"device_id": "collar-1", "started_at": "2026-10-17T22:00:00.000Z", "quality_score": 80, "duration_minutes": 420})
        memory_store.seed(Index.SLEEP_SESSIONS, {"device_id": "collar-1", "started_at": "2026-10-16T22:00:00.000Z", "quality_score": 75, "duration_minutes": 391})

        result = await reports.get_sleep("collar-1", days=7)

        assert result["summary"] == {"total_sessions": 2, "avg_quality": 77.5, "avg_duration": 406}

    @pytest.mark.asyncio
    async def test_empty_sleep_summary(self, reports):
        result = await reports.get_sleep("collar-1")
        assert result["summary"] == {"total_sessions": 0, "avg_quality": 0.0, "avg_duration": 0}

    @pytest.mark.asyncio
    async def test_scratch_summary(self, reports, memory_store):
        memory_store.seed(Index.SCRATCH_DAILY, {"device_id": "collar-1", "date": "2026-10-18", "total_count": 4})
        memory_store.seed(Index.SCRATCH_DAILY, {"device_id": "collar-1", "date": "2026-10-17", "total_count": 3})
        memory_store.seed(Index.SCRATCH_DAILY, {"device_id": "collar-1", "date": "2026-10-01", "total_count": 50})

        result = await reports.get_scratches("collar-1", days=7)

        assert [d["date"] for d in result["daily"]] == ["2026-10-18", "2026-10-17"]
        assert result["summary"] == {"total": 7, "avg_per_day": 3.5}

    @pytest.mark.asyncio
    async def test_walk_summary(self, reports, memory_store):
        memory_store.seed(Index.WALK_SESSIONS, ended_walk(duration_seconds=1800, distance_meters=1234.0))
        memory_store.seed(Index.WALK_SESSIONS, ended_walk(started_at="2026-10-16T08:00:00.000Z", duration_seconds=600, distance_meters=500.0))

        result = await reports.get_walks("collar-1", days=30)

        assert result["summary"] == {"total_walks": 2, "total_distance_km": 1.73, "avg_duration_min": 20}

    @pytest.mark.asyncio
    async def test_history_store_failure_propagates(self, reports, memory_store):
        memory_store.fail_on.add(("find", Index.WALK_SESSIONS))

        with pytest.raises(AppException) as exc_info:
            await reports.get_walks("collar-1")

        assert exc_info.value.error_code == ErrorCode.STORE_UNAVAILABLE


class TestWalkerStats:

    @pytest.mark.asyncio
    async def test_client_fallback_when_store_cannot_aggregate(self, reports, memory_store):
        memory_store.seed(Index.WALK_SESSIONS, ended_walk(grade="A", grade_score=95, carried_percent=10.0, actual_walk_percent=90.0, cheat_flags=0b0001))
        memory_store.seed(Index.WALK_SESSIONS, ended_walk(grade="C", grade_score=55, carried_percent=0.0, actual_walk_percent=60.0, cheat_flags=0b0110))
        memory_store.seed(Index.WALK_SESSIONS, {"device_id": "collar-1", "state": "open", "started_at": "2026-10-18T09:00:00.000Z"})

        stats = await reports.get_walker_stats("collar-1", days=30)

        assert stats["source"] == "client"
        assert stats["days"] == 30
        assert stats["total_walks"] == 2
        assert stats["grades"] == {"A": 1, "B": 0, "C": 1, "F": 0}
        assert stats["avg_grade_score"] == 75.0
        assert stats["avg_carried_percent"] == 5.0
        assert stats["avg_actual_walk_percent"] == 75.0
        assert stats["incidents"] == {"carried": 1, "vehicle": 1, "excessive_stops": 1, "leash_only": 0}

    @pytest.mark.asyncio
    async def test_server_aggregation_used_when_available(self, reports, memory_store):
        async def aggregate(index, *, aggregations, match=None, ranges=None):
            assert match == {"device_id": "collar-1", "state": "ended"}
            assert set(aggregations) == set(walker_stats_aggregations())
            return {
                "total_walks": {"value": 3},
                "grades": {"buckets": [{"key": "A", "doc_count": 2}, {"key": "F", "doc_count": 1}]},
                "avg_grade_score": {"value": 71.66666},
                "avg_carried_percent": {"value": 12.04},
                "avg_actual_walk_percent": {"value": None},
                "carried": {"doc_count": 1},
                "vehicle": {"doc_count": 0},
                "excessive_stops": {"doc_count": 2},
                "leash_only": {"doc_count": 0},
            }

        memory_store.aggregate = aggregate

        stats = await reports.get_walker_stats("collar-1")

        assert stats["source"] == "server"
        assert stats["total_walks"] == 3
        assert stats["grades"] == {"A": 2, "B": 0, "C": 0, "F": 1}
        assert stats["avg_grade_score"] == 71.7
        assert stats["avg_carried_percent"] == 12.0
        assert stats["avg_actual_walk_percent"] == 0
        assert stats["incidents"]["excessive_stops"] == 2

    @pytest.mark.asyncio
    async def test_failed_server_aggregation_falls_back(self, reports, memory_store):
        async def aggregate(index, **kwargs):
            raise RuntimeError("aggregation timed out")

        memory_store.aggregate = aggregate
        memory_store.seed(Index.WALK_SESSIONS, ended_walk())

        stats = await reports.get_walker_stats("collar-1")

        assert stats["source"] == "client"
        assert stats["total_walks"] == 1
