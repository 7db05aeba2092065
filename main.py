from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from typing import Optional
from contextlib import asynccontextmanager
import logging

from config.settings import Settings, get_settings, validate_startup
from dependencies import GatewayServices, build_services, get_services
from device_endpoints import router as device_router
from errors.handlers import register_exception_handlers
from errors.exceptions import invalid_request
from middleware.request_id import RequestIDMiddleware
from middleware.rate_limiter import (
    limiter,
    rate_limiting_disabled,
    setup_rate_limiting,
    telemetry_rate_limit,
)
from services.elasticsearch_store import ElasticsearchRecordStore
from services.store import RecordStore
from telemetry.service import initialize_telemetry

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def root(services: GatewayServices = Depends(get_services)):
    """Service index"""
    return {
        "service": services.settings.service_name,
        "version": services.settings.service_version,
        "endpoints": {
            "health": "GET /health",
            "ready": "GET /health/ready",
            "live": "GET /health/live",
            "telemetry": "POST /telemetry",
            "deviceStatus": "GET /device/:deviceId/status",
            "locations": "GET /device/:deviceId/locations",
            "sleepHistory": "GET /device/:deviceId/sleep",
            "scratchHistory": "GET /device/:deviceId/scratches",
            "walkHistory": "GET /device/:deviceId/walks",
            "walkerStats": "GET /device/:deviceId/walker-stats",
            "startWalk": "POST /device/:deviceId/walk/start",
            "endWalk": "POST /device/:deviceId/walk/end",
        },
    }


# =============================================================================
# Telemetry
# =============================================================================


@router.post("/telemetry")
@limiter.limit(telemetry_rate_limit, exempt_when=rate_limiting_disabled)
async def ingest_telemetry(request: Request, services: GatewayServices = Depends(get_services)):
    """
    Receive one collar report.

    The body is read as raw JSON rather than a pydantic model: collar
    firmware reports in more than one shape, and the signature covers the
    body exactly as sent.

    Returns:
        ``{"status": "ok", "device_id": ..., "timestamp": ...}`` once the
        report passed validation and signature checks, even if some
        secondary records could not be written.
    """
    try:
        payload = await request.json()
    except ValueError:
        raise invalid_request(message="Telemetry body must be valid JSON")

    return await services.ingestion.ingest(payload)


# =============================================================================
# Health Check Endpoints
# =============================================================================


@router.get("/health")
async def health_basic(services: GatewayServices = Depends(get_services)):
    """
    Basic health check endpoint.

    Reports whether a record store and a signing key are configured without
    contacting the store.
    """
    return await services.health.check_health()


@router.get("/health/ready")
async def health_ready(services: GatewayServices = Depends(get_services)):
    """
    Readiness check endpoint with record store verification.

    Returns:
        JSONResponse: Health status with dependency details
        - 200 OK: Record store reachable
        - 503 Service Unavailable: Record store missing or unreachable
    """
    health_status = await services.health.check_readiness()
    response_data = {
        "service": services.settings.service_name,
        "version": services.settings.service_version,
        **health_status.to_dict(),
    }

    if not health_status.healthy:
        response_data["failure_reasons"] = [
            {
                "dependency": dep.name,
                "error": dep.error
            }
            for dep in health_status.dependencies if not dep.healthy
        ]
        return JSONResponse(
            status_code=503,
            content=response_data
        )

    return response_data


@router.get("/health/live")
async def health_live(services: GatewayServices = Depends(get_services)):
    """
    Liveness check endpoint.

    Returns 200 OK if the process is running, regardless of dependency status.
    """
    result = await services.health.check_liveness()
    return {
        "status": result["status"],
        "service": services.settings.service_name,
        "version": services.settings.service_version,
        "timestamp": result["timestamp"]
    }


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[RecordStore] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
        store: Record store to use instead of building one from settings.
            An injected store is not closed at shutdown.
    """
    settings = settings or get_settings()
    telemetry_service = initialize_telemetry(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan context manager for startup and shutdown events."""
        logger.info(f"🚀 Starting {settings.service_name} v{settings.service_version}...")

        owned_store = None
        active_store = store
        if active_store is None:
            validate_startup(settings)
            if settings.store_configured:
                owned_store = ElasticsearchRecordStore.from_settings(settings, telemetry_service)
                owned_store.setup_indices()
                active_store = owned_store

        app.state.services = build_services(settings, active_store, telemetry_service)
        logger.info(
            "✅ Gateway ready",
            extra={"extra_data": {
                "store": "configured" if active_store is not None else "missing",
                "signature": "configured" if settings.signature_enabled else "disabled",
            }}
        )

        yield

        if owned_store is not None:
            await owned_store.close()
        logger.info(f"👋 Shutting down {settings.service_name}...")

    app = FastAPI(title=settings.service_name, version=settings.service_version, lifespan=lifespan)

    register_exception_handlers(app)

    # Only configured origins, no wildcards
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Accept",
            "Content-Type",
            "X-Request-ID",
        ],
        expose_headers=["X-Request-ID"],
        max_age=600,
    )

    # Added after CORS so it runs for all requests
    app.add_middleware(RequestIDMiddleware)

    setup_rate_limiting(
        app,
        telemetry_per_minute=settings.rate_limit_telemetry_per_minute,
        api_per_minute=settings.rate_limit_requests_per_minute,
        enabled=settings.rate_limit_enabled,
    )

    app.include_router(router)
    app.include_router(device_router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port, log_level="info")
