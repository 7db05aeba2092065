"""
Record store abstraction.

The gateway only needs a keyed record store: upsert by id, append with a
generated id, fetch by id, partial update, and filtered lookups. Keeping
the interface this narrow lets the ingestion pipeline run against
Elasticsearch in production and an in-memory store in tests.

Every returned record carries its store id under ``"id"``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class Index:
    """Logical index names; implementations may add a prefix."""
    DEVICE_STATUS = "device_status"
    LOCATIONS = "locations"
    SCRATCH_EVENTS = "scratch_events"
    SCRATCH_DAILY = "scratch_daily"
    ANOMALY_LOG = "anomaly_log"
    WALK_SESSIONS = "walk_sessions"
    SLEEP_SESSIONS = "sleep_sessions"

    ALL = (
        DEVICE_STATUS,
        LOCATIONS,
        SCRATCH_EVENTS,
        SCRATCH_DAILY,
        ANOMALY_LOG,
        WALK_SESSIONS,
        SLEEP_SESSIONS,
    )


@dataclass(frozen=True)
class Range:
    """Half-open range filter on a timestamp or date field: gte <= v < lt."""
    gte: Optional[str] = None
    lt: Optional[str] = None


class AggregationUnsupported(Exception):
    """Raised by stores that cannot aggregate server-side."""


class RecordStore(ABC):
    """
    Abstract base class for record store implementations.

    All methods are async. Operational failures surface as AppException
    with the STORE_UNAVAILABLE code.
    """

    @abstractmethod
    async def upsert(self, index: str, doc_id: str, document: Dict[str, Any]) -> None:
        """
        Create or replace the record with the given id.

        Args:
            index: Logical index name
            doc_id: Caller-chosen record id (device id, device/date pair)
            document: Full record body
        """

    @abstractmethod
    async def insert(self, index: str, document: Dict[str, Any]) -> str:
        """
        Append a record under a store-generated id.

        Returns:
            The generated record id.
        """

    @abstractmethod
    async def get(self, index: str, doc_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch one record by id.

        Returns:
            The record with its ``id``, or None if it does not exist.
        """

    @abstractmethod
    async def update(self, index: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """
        Merge ``fields`` into an existing record.

        Updating a missing record is an operational error.
        """

    @abstractmethod
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
        """
        Find records by exact field values and ranges.

        Args:
            index: Logical index name
            match: Field -> value that must match exactly; a None value
                matches records where the field is missing or null
            ranges: Field -> Range bounds
            sort_by: Field to order by
            descending: Sort direction
            limit: Maximum number of records returned
        """

    async def aggregate(
        self,
        index: str,
        *,
        aggregations: Dict[str, Any],
        match: Optional[Dict[str, Any]] = None,
        ranges: Optional[Dict[str, Range]] = None,
    ) -> Dict[str, Any]:
        """
        Run server-side aggregations over the matching records.

        Raises:
            AggregationUnsupported: If the store cannot aggregate; callers
                fall back to aggregating fetched records themselves.
        """
        raise AggregationUnsupported(type(self).__name__)

    @abstractmethod
    async def health_check(self) -> bool:
        """
        Check connectivity to the store.

        Returns:
            True if the store answers, False otherwise. Never raises.
        """

    async def close(self) -> None:
        """Release client resources at shutdown."""
