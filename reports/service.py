"""
Read-side queries for the collar app.

These are pass-through lookups against the record store with small inline
roll-ups. Store failures surface as STORE_UNAVAILABLE; an unknown device is
only an error for the status lookup, every history query simply comes back
empty.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from errors.exceptions import resource_not_found
from ingestion.anticheat import (
    FLAG_CARRIED,
    FLAG_EXCESSIVE_STOPS,
    FLAG_LEASH_ONLY,
    FLAG_VEHICLE,
    round_half_up,
)
from ingestion.timeutil import to_iso, utc_date, utc_now
from ingestion.walks import STATE_ENDED
from services.store import AggregationUnsupported, Index, Range, RecordStore

logger = logging.getLogger(__name__)

MAX_LOCATIONS = 1000
MAX_HISTORY_RECORDS = 1000
GRADES = ("A", "B", "C", "F")

INCIDENT_FLAGS = (
    ("carried", "carried_detected", FLAG_CARRIED),
    ("vehicle", "vehicle_detected", FLAG_VEHICLE),
    ("excessive_stops", "excessive_stops_detected", FLAG_EXCESSIVE_STOPS),
    ("leash_only", "leash_only_detected", FLAG_LEASH_ONLY),
)


def _average(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def walker_stats_aggregations() -> Dict[str, Any]:
    """Elasticsearch aggregations computing walker stats over ended walks."""
    aggregations: Dict[str, Any] = {
        "total_walks": {"value_count": {"field": "grade"}},
        "grades": {"terms": {"field": "grade", "size": len(GRADES)}},
        "avg_grade_score": {"avg": {"field": "grade_score"}},
        "avg_carried_percent": {"avg": {"field": "carried_percent"}},
        "avg_actual_walk_percent": {"avg": {"field": "actual_walk_percent"}},
    }
    for name, field, _ in INCIDENT_FLAGS:
        aggregations[name] = {"filter": {"term": {field: True}}}
    return aggregations


class DeviceReportService:
    """
    Device history and roll-up queries.

    Attributes:
        store: Record store to read from
    """

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def _since(self, **delta: float) -> str:
        return to_iso(self._clock() - timedelta(**delta))

    async def get_status(self, device_id: str) -> Dict[str, Any]:
        """
        Latest DeviceStatus record.

        Raises:
            AppException: RESOURCE_NOT_FOUND if the device has never reported
        """
        status = await self.store.get(Index.DEVICE_STATUS, device_id)
        if status is None:
            raise resource_not_found(
                message="Device not found",
                details={"device_id": device_id}
            )
        return status

    async def get_locations(self, device_id: str, hours: int = 24, limit: int = 500) -> Dict[str, Any]:
        locations = await self.store.find(
            Index.LOCATIONS,
            match={"device_id": device_id},
            ranges={"recorded_at": Range(gte=self._since(hours=hours))},
            sort_by="recorded_at",
            limit=min(limit, MAX_LOCATIONS),
        )
        return {"device_id": device_id, "count": len(locations), "locations": locations}

    async def get_sleep(self, device_id: str, days: int = 7) -> Dict[str, Any]:
        sessions = await self.store.find(
            Index.SLEEP_SESSIONS,
            match={"device_id": device_id},
            ranges={"started_at": Range(gte=self._since(days=days))},
            sort_by="started_at",
            limit=MAX_HISTORY_RECORDS,
        )
        return {
            "device_id": device_id,
            "sessions": sessions,
            "summary": {
                "total_sessions": len(sessions),
                "avg_quality": round_half_up(_average([s.get("quality_score") or 0 for s in sessions]), 1),
                "avg_duration": round_half_up(_average([s.get("duration_minutes") or 0 for s in sessions])),
            },
        }

    async def get_scratches(self, device_id: str, days: int = 7) -> Dict[str, Any]:
        since_date = utc_date(self._clock() - timedelta(days=days)).isoformat()
        daily = await self.store.find(
            Index.SCRATCH_DAILY,
            match={"device_id": device_id},
            ranges={"date": Range(gte=since_date)},
            sort_by="date",
            limit=MAX_HISTORY_RECORDS,
        )
        total = sum(d.get("total_count") or 0 for d in daily)
        return {
            "device_id": device_id,
            "daily": daily,
            "summary": {
                "total": total,
                "avg_per_day": round_half_up(total / len(daily), 1) if daily else 0,
            },
        }

    async def _recent_walks(self, device_id: str, days: int, ended_only: bool = False) -> List[Dict[str, Any]]:
        match: Dict[str, Any] = {"device_id": device_id}
        if ended_only:
            match["state"] = STATE_ENDED
        return await self.store.find(
            Index.WALK_SESSIONS,
            match=match,
            ranges={"started_at": Range(gte=self._since(days=days))},
            sort_by="started_at",
            limit=MAX_HISTORY_RECORDS,
        )

    async def get_walks(self, device_id: str, days: int = 30) -> Dict[str, Any]:
        walks = await self._recent_walks(device_id, days)
        total_distance = sum(w.get("distance_meters") or 0 for w in walks)
        avg_duration_seconds = _average([w.get("duration_seconds") or 0 for w in walks])
        return {
            "device_id": device_id,
            "walks": walks,
            "summary": {
                "total_walks": len(walks),
                "total_distance_km": round_half_up(total_distance / 1000, 2),
                "avg_duration_min": round_half_up(avg_duration_seconds / 60),
            },
        }

    async def get_walker_stats(self, device_id: str, days: int = 30) -> Dict[str, Any]:
        """
        Anti-cheat statistics over the ended walks of the last ``days`` days.

        Aggregates in the store when it supports it (``source: "server"``),
        otherwise fetches the walks and aggregates them here
        (``source: "client"``).
        """
        stats = await self._server_walker_stats(device_id, days)
        if stats is None:
            walks = await self._recent_walks(device_id, days, ended_only=True)
            stats = self._client_walker_stats(walks)
        return {"device_id": device_id, "days": days, **stats}

    async def _server_walker_stats(self, device_id: str, days: int) -> Optional[Dict[str, Any]]:
        try:
            result = await self.store.aggregate(
                Index.WALK_SESSIONS,
                aggregations=walker_stats_aggregations(),
                match={"device_id": device_id, "state": STATE_ENDED},
                ranges={"started_at": Range(gte=self._since(days=days))},
            )
        except AggregationUnsupported:
            return None
        except Exception as e:
            logger.warning(
                f"Server-side walker stats failed, aggregating locally: {e}",
                extra={"extra_data": {"error": str(e)}}
            )
            return None

        grades = {grade: 0 for grade in GRADES}
        for bucket in result["grades"]["buckets"]:
            if bucket["key"] in grades:
                grades[bucket["key"]] = bucket["doc_count"]

        return {
            "source": "server",
            "total_walks": int(result["total_walks"]["value"] or 0),
            "grades": grades,
            "avg_grade_score": round_half_up(result["avg_grade_score"]["value"] or 0, 1),
            "avg_carried_percent": round_half_up(result["avg_carried_percent"]["value"] or 0, 1),
            "avg_actual_walk_percent": round_half_up(result["avg_actual_walk_percent"]["value"] or 0, 1),
            "incidents": {name: result[name]["doc_count"] for name, _, _ in INCIDENT_FLAGS},
        }

    @staticmethod
    def _client_walker_stats(walks: List[Dict[str, Any]]) -> Dict[str, Any]:
        grades = {grade: 0 for grade in GRADES}
        incidents = {name: 0 for name, _, _ in INCIDENT_FLAGS}

        for walk in walks:
            if walk.get("grade") in grades:
                grades[walk["grade"]] += 1
            flags = walk.get("cheat_flags") or 0
            for name, _, bit in INCIDENT_FLAGS:
                if flags & bit:
                    incidents[name] += 1

        return {
            "source": "client",
            "total_walks": len(walks),
            "grades": grades,
            "avg_grade_score": round_half_up(_average([w.get("grade_score") or 0 for w in walks]), 1),
            "avg_carried_percent": round_half_up(_average([w.get("carried_percent") or 0 for w in walks]), 1),
            "avg_actual_walk_percent": round_half_up(_average([w.get("actual_walk_percent") or 0 for w in walks]), 1),
            "incidents": incidents,
        }
