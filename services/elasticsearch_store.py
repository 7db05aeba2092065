"""
Elasticsearch-backed record store for the collar gateway.

Each logical record type lives in its own index. Every call goes through a
circuit breaker and, when tracing is on, an OpenTelemetry client span.
Failures surface as STORE_UNAVAILABLE AppExceptions; a missing document is
not a failure and comes back as None.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from elasticsearch import Elasticsearch, NotFoundError

from errors.exceptions import store_unavailable
from resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitOpenException
from services.store import Index, Range, RecordStore
from telemetry.service import TelemetryService

logger = logging.getLogger(__name__)


def _status_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "payload_shape": {"type": "keyword"},
                "latitude": {"type": "double"},
                "longitude": {"type": "double"},
                "altitude": {"type": "float"},
                "speed": {"type": "float"},
                "hdop": {"type": "float"},
                "satellites": {"type": "integer"},
                "gps_valid": {"type": "boolean"},
                "activity_class": {"type": "integer"},
                "activity_name": {"type": "keyword"},
                "session_steps": {"type": "integer"},
                "today_steps": {"type": "integer"},
                "is_home": {"type": "boolean"},
                "is_escaped": {"type": "boolean"},
                "distance_from_home": {"type": "float"},
                "battery_voltage": {"type": "float"},
                "battery_percent": {"type": "float"},
                "signal_strength": {"type": "integer"},
                "network_operator": {"type": "keyword"},
                "sleep_active": {"type": "boolean"},
                "walk_active": {"type": "boolean"},
                "walk_duration": {"type": "integer"},
                "walk_distance": {"type": "float"},
                "walk_stops": {"type": "integer"},
                "walk_cheat_flags": {"type": "integer"},
                "scratch_detected": {"type": "boolean"},
                "today_scratch_count": {"type": "integer"},
                "anomaly_detected": {"type": "boolean"},
                "anomaly_type": {"type": "keyword"},
                "firmware_version": {"type": "keyword"},
                "last_seen_at": {"type": "date"},
                "updated_at": {"type": "date"},
            }
        }
    }


def _locations_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "latitude": {"type": "double"},
                "longitude": {"type": "double"},
                "altitude": {"type": "float"},
                "speed": {"type": "float"},
                "hdop": {"type": "float"},
                "satellites": {"type": "integer"},
                "activity_class": {"type": "integer"},
                "is_home": {"type": "boolean"},
                "is_escaped": {"type": "boolean"},
                "recorded_at": {"type": "date"},
            }
        }
    }


def _scratch_events_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "frequency_hz": {"type": "float"},
                "intensity": {"type": "float"},
                "confidence": {"type": "float"},
                "latitude": {"type": "double"},
                "longitude": {"type": "double"},
                "detected_at": {"type": "date"},
            }
        }
    }


def _scratch_daily_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "date": {"type": "date", "format": "yyyy-MM-dd"},
                "total_count": {"type": "integer"},
                "max_frequency": {"type": "float"},
                "updated_at": {"type": "date"},
            }
        }
    }


def _anomaly_log_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "anomaly_type": {"type": "keyword"},
                "deviation_percent": {"type": "float"},
                "detected_at": {"type": "date"},
            }
        }
    }


def _walk_sessions_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "state": {"type": "keyword"},
                "started_at": {"type": "date"},
                "ended_at": {"type": "date"},
                "start_lat": {"type": "double"},
                "start_lon": {"type": "double"},
                "end_lat": {"type": "double"},
                "end_lon": {"type": "double"},
                "duration_seconds": {"type": "integer"},
                "distance_meters": {"type": "float"},
                "stop_count": {"type": "integer"},
                "grade": {"type": "keyword"},
                "grade_score": {"type": "integer"},
                "carried_seconds": {"type": "integer"},
                "vehicle_seconds": {"type": "integer"},
                "actual_walk_seconds": {"type": "integer"},
                "carried_percent": {"type": "float"},
                "vehicle_percent": {"type": "float"},
                "actual_walk_percent": {"type": "float"},
                "cheat_flags": {"type": "integer"},
                "cheat_summary": {"type": "text"},
                "vehicle_detected": {"type": "boolean"},
                "carried_detected": {"type": "boolean"},
                "excessive_stops_detected": {"type": "boolean"},
                "leash_only_detected": {"type": "boolean"},
            }
        }
    }


def _sleep_sessions_mapping() -> Dict[str, Any]:
    return {
        "mappings": {
            "properties": {
                "device_id": {"type": "keyword"},
                "started_at": {"type": "date"},
                "ended_at": {"type": "date"},
                "duration_minutes": {"type": "integer"},
                "quality_score": {"type": "float"},
                "respiratory_rate": {"type": "float"},
                "restless_count": {"type": "integer"},
            }
        }
    }


INDEX_MAPPINGS: Dict[str, Callable[[], Dict[str, Any]]] = {
    Index.DEVICE_STATUS: _status_mapping,
    Index.LOCATIONS: _locations_mapping,
    Index.SCRATCH_EVENTS: _scratch_events_mapping,
    Index.SCRATCH_DAILY: _scratch_daily_mapping,
    Index.ANOMALY_LOG: _anomaly_log_mapping,
    Index.WALK_SESSIONS: _walk_sessions_mapping,
    Index.SLEEP_SESSIONS: _sleep_sessions_mapping,
}


def build_query(
    match: Optional[Dict[str, Any]] = None,
    ranges: Optional[Dict[str, Range]] = None,
) -> Dict[str, Any]:
    """
    Translate exact-match and range filters into a bool filter query.

    A None match value becomes ``must_not: exists`` so that "no anomaly
    type" only matches records without one.
    """
    filters: List[Dict[str, Any]] = []
    must_not: List[Dict[str, Any]] = []

    for field, value in (match or {}).items():
        if value is None:
            must_not.append({"exists": {"field": field}})
        else:
            filters.append({"term": {field: value}})

    for field, bounds in (ranges or {}).items():
        clause = {}
        if bounds.gte is not None:
            clause["gte"] = bounds.gte
        if bounds.lt is not None:
            clause["lt"] = bounds.lt
        if clause:
            filters.append({"range": {field: clause}})

    query: Dict[str, Any] = {"bool": {"filter": filters}}
    if must_not:
        query["bool"]["must_not"] = must_not
    return query


class ElasticsearchRecordStore(RecordStore):
    """
    RecordStore implementation on top of the synchronous Elasticsearch client.

    Attributes:
        client: The Elasticsearch client
        index_prefix: Prefix prepended to every logical index name
    """

    def __init__(
        self,
        client: Elasticsearch,
        index_prefix: str = "",
        telemetry: Optional[TelemetryService] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client
        self.index_prefix = index_prefix
        self.telemetry = telemetry
        self._circuit_breaker = circuit_breaker or CircuitBreaker(
            name="record_store",
            config=CircuitBreakerConfig(failure_threshold=3),
        )

    @classmethod
    def from_settings(
        cls, settings: Any, telemetry: Optional[TelemetryService] = None
    ) -> "ElasticsearchRecordStore":
        """Build a client from ELASTIC_* settings; the endpoint must be set."""
        client_kwargs: Dict[str, Any] = {
            "request_timeout": settings.elastic_request_timeout,
        }
        if settings.elastic_api_key:
            client_kwargs["api_key"] = settings.elastic_api_key

        client = Elasticsearch(settings.elastic_endpoint, **client_kwargs)
        logger.info(
            "Elasticsearch record store client created",
            extra={"extra_data": {"index_prefix": settings.elastic_index_prefix}}
        )
        return cls(client, index_prefix=settings.elastic_index_prefix, telemetry=telemetry)

    @property
    def circuit_breaker(self) -> CircuitBreaker:
        return self._circuit_breaker

    def index_name(self, index: str) -> str:
        return f"{self.index_prefix}{index}"

    def setup_indices(self) -> None:
        """Create any missing index with its mapping. Failures are logged only."""
        for index, mapping in INDEX_MAPPINGS.items():
            name = self.index_name(index)
            try:
                if not self.client.indices.exists(index=name):
                    self.client.indices.create(index=name, mappings=mapping()["mappings"])
                    logger.info(f"✅ Created index: {name}")
                else:
                    logger.info(f"📋 Index already exists: {name}")
            except Exception as e:
                logger.error(f"❌ Failed to create index {name}: {e}")

    async def _run(self, operation: str, index: str, func: Callable[[], Any]) -> Any:
        """Run one client call under the circuit breaker and a client span."""
        async def _call():
            if self.telemetry is None:
                return func()
            with self.telemetry.create_external_service_span(
                "elasticsearch", operation, {"db.index": index}
            ):
                return func()

        try:
            return await self._circuit_breaker.execute(_call)
        except CircuitOpenException as e:
            raise store_unavailable(
                message=f"Record store temporarily unavailable. Circuit breaker '{e.circuit_name}' is open.",
                details={
                    "circuit_name": e.circuit_name,
                    "retry_in_seconds": int(e.retry_in_seconds) if e.retry_in_seconds else None,
                    "operation": operation,
                }
            ) from e
        except Exception as e:
            logger.error(f"Elasticsearch {operation}({index}) failed: {e}")
            raise store_unavailable(
                message=f"Record store operation failed: {operation}",
                details={"operation": operation, "index": index}
            ) from e

    async def upsert(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        name = self.index_name(index)
        await self._run("upsert", name, lambda: self.client.index(
            index=name, id=doc_id, document=document, refresh=True
        ))

    async def insert(self, index: str, document: Dict[str, Any]) -> str:
        name = self.index_name(index)
        response = await self._run("insert", name, lambda: self.client.index(
            index=name, document=document, refresh=True
        ))
        return response["_id"]

    async def get(self, index: str, doc_id: str) -> Optional[Dict[str, Any]]:
        name = self.index_name(index)

        def _do_get():
            try:
                response = self.client.get(index=name, id=doc_id)
            except NotFoundError:
                return None
            return {**response["_source"], "id": response["_id"]}

        return await self._run("get", name, _do_get)

    async def update(self, index: str, doc_id: str, fields: Dict[str, Any]) -> None:
        name = self.index_name(index)
        await self._run("update", name, lambda: self.client.update(
            index=name, id=doc_id, doc=fields, refresh=True
        ))

    async def find(
        self,
        index: str,
        *,
        match: Optional[Dict[str, Any]] = None,
        ranges: Optional[Dict[str, Range]] = None,
        sort_by: Optional[str] = None,
        descending: bool = True,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        name = self.index_name(index)
        search_kwargs: Dict[str, Any] = {
            "index": name,
            "query": build_query(match, ranges),
            "size": limit,
        }
        if sort_by:
            search_kwargs["sort"] = [{sort_by: {"order": "desc" if descending else "asc"}}]

        response = await self._run("search", name, lambda: self.client.search(**search_kwargs))
        return [
            {**hit["_source"], "id": hit["_id"]}
            for hit in response["hits"]["hits"]
        ]

    async def aggregate(
        self,
        index: str,
        *,
        aggregations: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
        ranges: Optional[Dict[str, Range]] = None,
    ) -> Dict[str, Any]:
        name = self.index_name(index)
        response = await self._run("aggregate", name, lambda: self.client.search(
            index=name,
            query=build_query(match, ranges),
            size=0,
            aggs=aggregations,
        ))
        return response["aggregations"]

    async def health_check(self) -> bool:
        loop = asyncio.get_running_loop()
        try:
            return bool(await loop.run_in_executor(None, self.client.ping))
        except Exception as e:
            logger.warning(f"Elasticsearch ping failed: {e}")
            return False

    async def close(self) -> None:
        self.client.close()
