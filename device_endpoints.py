"""
Device read and walk endpoints used by the collar companion app.

All routes live under ``/device/{device_id}``; the request id middleware
binds the device id into the logging context from the path.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from dependencies import get_report_service, get_walk_service
from ingestion.walks import WalkSessionService
from middleware.rate_limiter import api_rate_limit, limiter, rate_limiting_disabled
from reports.service import MAX_LOCATIONS, DeviceReportService

router = APIRouter(prefix="/device/{device_id}", tags=["device"])


class WalkEndRequest(BaseModel):
    walk_id: Optional[str] = None


@router.get("/status")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_device_status(
    request: Request,
    device_id: str,
    reports: DeviceReportService = Depends(get_report_service),
):
    """Latest status snapshot of a collar; 404 if it never reported."""
    return await reports.get_status(device_id)


@router.get("/locations")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_device_locations(
    request: Request,
    device_id: str,
    hours: int = Query(24, ge=1, le=720),
    limit: int = Query(500, ge=1),
    reports: DeviceReportService = Depends(get_report_service),
):
    """Location history for the last ``hours`` hours, newest first. ``limit`` is capped at 1000."""
    return await reports.get_locations(device_id, hours=hours, limit=min(limit, MAX_LOCATIONS))


@router.get("/sleep")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_device_sleep(
    request: Request,
    device_id: str,
    days: int = Query(7, ge=1, le=365),
    reports: DeviceReportService = Depends(get_report_service),
):
    return await reports.get_sleep(device_id, days=days)


@router.get("/scratches")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_device_scratches(
    request: Request,
    device_id: str,
    days: int = Query(7, ge=1, le=365),
    reports: DeviceReportService = Depends(get_report_service),
):
    return await reports.get_scratches(device_id, days=days)


@router.get("/walks")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_device_walks(
    request: Request,
    device_id: str,
    days: int = Query(30, ge=1, le=365),
    reports: DeviceReportService = Depends(get_report_service),
):
    return await reports.get_walks(device_id, days=days)


@router.get("/walker-stats")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def get_walker_stats(
    request: Request,
    device_id: str,
    days: int = Query(30, ge=1, le=365),
    reports: DeviceReportService = Depends(get_report_service),
):
    """Grade distribution and anti-cheat incident counts over ended walks."""
    return await reports.get_walker_stats(device_id, days=days)


@router.post("/walk/start")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def start_walk(
    request: Request,
    device_id: str,
    walks: WalkSessionService = Depends(get_walk_service),
):
    return await walks.start_walk(device_id)


@router.post("/walk/end")
@limiter.limit(api_rate_limit, exempt_when=rate_limiting_disabled)
async def end_walk(
    request: Request,
    device_id: str,
    body: Optional[WalkEndRequest] = None,
    walks: WalkSessionService = Depends(get_walk_service),
):
    """
    Grade and close a walk.

    Without a ``walk_id`` the walk is synthesized from the collar's
    counters. 404 for an unknown walk, 409 if it was already ended.
    """
    walk_id = body.walk_id if body else None
    return await walks.end_walk(device_id, walk_id)
