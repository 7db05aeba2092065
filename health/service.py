"""
Health check service for the collar gateway.

``/health`` reports configuration visibility (is a store configured, are
signatures verified) without touching the store. ``/health/ready`` pings
the record store with a timeout and reports its response time together
with the state of the store's circuit breaker.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Any

from ingestion.signature import SignatureVerifier
from ingestion.timeutil import to_iso, utc_now
from services.store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class DependencyHealth:
    """
    Health status of a single dependency.

    Attributes:
        name: The name of the dependency (e.g., "record_store")
        healthy: Whether the dependency is healthy and responding
        response_time_ms: The time taken to check the dependency in milliseconds
        error: Optional error message if the dependency check failed
        details: Optional extra state, such as the circuit breaker snapshot
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        if self.details is not None:
            result["details"] = self.details
        return result


@dataclass
class HealthStatus:
    """
    Overall readiness of the gateway.

    Attributes:
        status: "healthy" or "unhealthy"
        timestamp: When the health check was performed
        dependencies: List of individual dependency health statuses
    """
    status: str
    timestamp: datetime
    dependencies: list[DependencyHealth] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.status == "healthy"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "status": self.status,
            "timestamp": to_iso(self.timestamp),
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


class HealthCheckService:
    """
    Service for checking the health of the gateway and its record store.

    Attributes:
        store: The record store, or None when ELASTIC_ENDPOINT is not set
        verifier: Signature verifier, used to report whether signatures are checked
        service_name: Name reported by /health
        version: Version reported by /health
        check_timeout: Timeout in seconds for the store ping (default: 5.0)
    """

    def __init__(
        self,
        store: Optional[RecordStore],
        verifier: SignatureVerifier,
        service_name: str,
        version: str,
        check_timeout: float = 5.0
    ):
        self.store = store
        self.verifier = verifier
        self.service_name = service_name
        self.version = version
        self.check_timeout = check_timeout

    async def check_health(self) -> dict[str, Any]:
        """
        Basic health check with configuration visibility.

        Returns:
            dict: status, service, version, timestamp, and whether the store
            and signature verification are configured
        """
        return {
            "status": "ok",
            "service": self.service_name,
            "version": self.version,
            "timestamp": to_iso(utc_now()),
            "store": "configured" if self.store is not None else "missing",
            "signature": "configured" if self.verifier.enabled else "disabled",
        }

    async def check_liveness(self) -> dict[str, Any]:
        """
        Simple liveness check - process is running.

        Returns:
            dict: A simple status response with "alive" status and timestamp
        """
        return {
            "status": "alive",
            "timestamp": to_iso(utc_now())
        }

    async def check_readiness(self) -> HealthStatus:
        """
        Check that the record store answers within the timeout.

        Returns:
            HealthStatus: "healthy" when the store answers, else "unhealthy"
        """
        dependency = await self._check_store()
        return HealthStatus(
            status="healthy" if dependency.healthy else "unhealthy",
            timestamp=utc_now(),
            dependencies=[dependency]
        )

    def _breaker_details(self) -> Optional[dict[str, Any]]:
        breaker = getattr(self.store, "circuit_breaker", None)
        if breaker is None:
            return None
        return {"circuit_breaker": breaker.snapshot()}

    async def _check_store(self) -> DependencyHealth:
        if self.store is None:
            return DependencyHealth(
                name="record_store",
                healthy=False,
                response_time_ms=0.0,
                error="Record store is not configured"
            )

        start_time = time.perf_counter()

        try:
            result = await asyncio.wait_for(
                self.store.health_check(),
                timeout=self.check_timeout
            )
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Record store health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(
                name="record_store",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg,
                details=self._breaker_details()
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"Record store health check failed: {str(e)}"
            logger.error(error_msg)
            return DependencyHealth(
                name="record_store",
                healthy=False,
                response_time_ms=elapsed_ms,
                error=error_msg,
                details=self._breaker_details()
            )

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if result:
            logger.debug(f"Record store health check passed in {elapsed_ms:.2f}ms")
            return DependencyHealth(
                name="record_store",
                healthy=True,
                response_time_ms=elapsed_ms,
                details=self._breaker_details()
            )

        logger.warning(f"Record store ping returned False after {elapsed_ms:.2f}ms")
        return DependencyHealth(
            name="record_store",
            healthy=False,
            response_time_ms=elapsed_ms,
            error="Record store ping returned False",
            details=self._breaker_details()
        )
