"""
Service wiring for the collar gateway.

The application lifespan builds one GatewayServices container around the
record store and stores it on ``app.state.services``; route handlers get
their service through the FastAPI dependencies below.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request

from config.settings import Settings
from errors.exceptions import store_not_configured
from health.service import HealthCheckService
from ingestion.dedup import AnomalyDeduplicator
from ingestion.service import PersistenceOrchestrator, TelemetryIngestionService
from ingestion.signature import SignatureVerifier
from ingestion.walks import WalkSessionService
from reports.service import DeviceReportService
from services.store import RecordStore
from telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


@dataclass
class GatewayServices:
    """
    Everything a request handler may need.

    The store-backed services are None when no record store is configured;
    their dependencies raise STORE_NOT_CONFIGURED in that case.
    """
    settings: Settings
    store: Optional[RecordStore]
    verifier: SignatureVerifier
    ingestion: TelemetryIngestionService
    health: HealthCheckService
    walks: Optional[WalkSessionService] = None
    reports: Optional[DeviceReportService] = None


def build_services(
    settings: Settings,
    store: Optional[RecordStore],
    telemetry: Optional[TelemetryService] = None,
) -> GatewayServices:
    verifier = SignatureVerifier(settings.signing_key)

    orchestrator = None
    walks = None
    reports = None
    if store is not None:
        orchestrator = PersistenceOrchestrator(
            store=store,
            deduplicator=AnomalyDeduplicator(store),
            telemetry=telemetry,
        )
        walks = WalkSessionService(store)
        reports = DeviceReportService(store)
    else:
        logger.warning("No record store configured - telemetry will be rejected with 500")

    return GatewayServices(
        settings=settings,
        store=store,
        verifier=verifier,
        ingestion=TelemetryIngestionService(verifier, orchestrator),
        health=HealthCheckService(
            store=store,
            verifier=verifier,
            service_name=settings.service_name,
            version=settings.service_version,
        ),
        walks=walks,
        reports=reports,
    )


def get_services(request: Request) -> GatewayServices:
    return request.app.state.services


def get_walk_service(services: GatewayServices = Depends(get_services)) -> WalkSessionService:
    if services.walks is None:
        raise store_not_configured()
    return services.walks


def get_report_service(services: GatewayServices = Depends(get_services)) -> DeviceReportService:
    if services.reports is None:
        raise store_not_configured()
    return services.reports
