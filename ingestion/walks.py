"""
Walk session lifecycle.

A walk session is ``open`` from the app's start call until its end call
grades it and marks it ``ended``. The collar accumulates the walk counters
itself and reports them with every telemetry post, so grading reads them
from the device's latest status rather than from the session.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from errors.exceptions import resource_not_found, walk_already_ended
from ingestion.anticheat import WalkCounters, WalkGrade, grade_walk, round_half_up
from ingestion.timeutil import to_iso, utc_now
from services.store import Index, RecordStore

logger = logging.getLogger(__name__)

STATE_OPEN = "open"
STATE_ENDED = "ended"


def _number(status: Optional[Dict[str, Any]], field: str, default: Any = 0) -> Any:
    if not status:
        return default
    value = status.get(field)
    return default if value is None else value


def counters_from_status(status: Optional[Dict[str, Any]]) -> WalkCounters:
    """Walk counters from a DeviceStatus record; a missing record reads as zeros."""
    return WalkCounters(
        duration_seconds=int(_number(status, "walk_duration")),
        distance_meters=float(_number(status, "walk_distance")),
        stops=int(_number(status, "walk_stops")),
        carried_seconds=int(_number(status, "walk_carried_seconds")),
        vehicle_seconds=int(_number(status, "walk_vehicle_seconds")),
        actual_walk_seconds=int(_number(status, "walk_actual_seconds")),
        cheat_flags=int(_number(status, "walk_cheat_flags")),
    )


def finalized_fields(
    counters: WalkCounters,
    grade: WalkGrade,
    status: Optional[Dict[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    """Fields written when a walk is ended."""
    return {
        "state": STATE_ENDED,
        "ended_at": to_iso(now),
        "end_lat": _number(status, "latitude", None),
        "end_lon": _number(status, "longitude", None),
        "duration_seconds": counters.duration_seconds,
        "distance_meters": counters.distance_meters,
        "stop_count": counters.stops,
        "grade": grade.grade,
        "grade_score": grade.score,
        "carried_seconds": counters.carried_seconds,
        "vehicle_seconds": counters.vehicle_seconds,
        "actual_walk_seconds": counters.actual_walk_seconds,
        "carried_percent": grade.carried_percent,
        "vehicle_percent": grade.vehicle_percent,
        "actual_walk_percent": grade.actual_walk_percent,
        "cheat_flags": grade.cheat_flags,
        "cheat_summary": grade.cheat_summary,
        "vehicle_detected": grade.vehicle_detected,
        "carried_detected": grade.carried_detected,
        "excessive_stops_detected": grade.excessive_stops_detected,
        "leash_only_detected": grade.leash_only_detected,
    }


class WalkSessionService:
    """
    Starts and ends walk sessions for a collar.

    Attributes:
        store: Record store holding device status and walk sessions
    """

    def __init__(self, store: RecordStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    async def _last_known_status(self, device_id: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.get(Index.DEVICE_STATUS, device_id)
        except Exception as e:
            logger.warning(
                f"Could not read device status for walk start: {e}",
                extra={"extra_data": {"error": str(e)}}
            )
            return None

    async def start_walk(self, device_id: str) -> Dict[str, Any]:
        """
        Open a walk session at the device's last known position.

        Returns:
            ``{"status": "ok", "walk_id": ..., "started_at": ...}``
        """
        status = await self._last_known_status(device_id)
        started_at = to_iso(self._clock())

        walk_id = await self.store.insert(Index.WALK_SESSIONS, {
            "device_id": device_id,
            "state": STATE_OPEN,
            "started_at": started_at,
            "start_lat": _number(status, "latitude", None),
            "start_lon": _number(status, "longitude", None),
        })

        logger.info(
            f"Walk {walk_id} started",
            extra={"extra_data": {"walk_id": walk_id}}
        )
        return {"status": "ok", "walk_id": walk_id, "started_at": started_at}

    async def end_walk(self, device_id: str, walk_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Grade and close a walk session.

        Without a walk id a session is synthesized from the device's
        counters, starting ``walk_duration`` seconds ago.

        Args:
            device_id: Collar id from the route
            walk_id: Session returned by start_walk, if any

        Returns:
            Grade summary plus the finalized session under ``walk``

        Raises:
            AppException: RESOURCE_NOT_FOUND if the session does not exist or
                belongs to another device; WALK_ALREADY_ENDED if it was
                already ended. Nothing is written in either case.
        """
        walk = None
        if walk_id:
            walk = await self.store.get(Index.WALK_SESSIONS, walk_id)
            if walk is None or walk.get("device_id") != device_id:
                raise resource_not_found(
                    message="Walk session not found",
                    details={"walk_id": walk_id}
                )
            if walk.get("state") == STATE_ENDED:
                raise walk_already_ended(
                    details={"walk_id": walk_id, "ended_at": walk.get("ended_at")}
                )

        status = await self.store.get(Index.DEVICE_STATUS, device_id)
        counters = counters_from_status(status)
        grade = grade_walk(counters)
        now = self._clock()
        fields = finalized_fields(counters, grade, status, now)

        if walk is not None:
            await self.store.update(Index.WALK_SESSIONS, walk_id, fields)
            session = {**walk, **fields}
        else:
            session = {
                "device_id": device_id,
                "started_at": to_iso(now - timedelta(seconds=counters.duration_seconds)),
                "start_lat": None,
                "start_lon": None,
                **fields,
            }
            walk_id = await self.store.insert(Index.WALK_SESSIONS, session)
            session["id"] = walk_id

        logger.info(
            f"Walk {walk_id} ended with grade {grade.grade}",
            extra={"extra_data": {
                "walk_id": walk_id,
                "grade": grade.grade,
                "grade_score": grade.score,
                "cheat_flags": grade.cheat_flags,
            }}
        )

        return {
            "status": "ok",
            "walk_id": walk_id,
            "grade": grade.grade,
            "grade_score": grade.score,
            "duration_minutes": round_half_up(counters.duration_seconds / 60),
            "distance_meters": round_half_up(counters.distance_meters),
            "carried_percent": grade.carried_percent,
            "actual_walk_percent": grade.actual_walk_percent,
            "cheat_summary": grade.cheat_summary,
            "walk": session,
        }
