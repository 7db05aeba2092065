"""
Anomaly alert deduplication.

A collar keeps flagging a health anomaly for as long as the condition
lasts, so the anomaly log keeps at most one entry per device and anomaly
type per UTC calendar day. The check is a read followed by a separate
write; two concurrent reports can both pass it.
"""

import logging
from datetime import datetime
from typing import Optional

from ingestion.timeutil import utc_day_bounds
from services.store import Index, Range, RecordStore

logger = logging.getLogger(__name__)


class AnomalyDeduplicator:
    """
    Decides whether an anomaly should be written to the anomaly log.

    Store errors propagate to the caller, which treats a failed check as
    "do not record".
    """

    def __init__(self, store: RecordStore):
        self.store = store

    async def should_record(
        self,
        device_id: str,
        anomaly_type: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Check for an existing entry today.

        Args:
            device_id: Collar id
            anomaly_type: Anomaly type; None only matches entries without a type
            now: Time of the report; selects the UTC day

        Returns:
            True if no entry exists for this device, type and UTC day
        """
        day_start, day_end = utc_day_bounds(now)
        existing = await self.store.find(
            Index.ANOMALY_LOG,
            match={"device_id": device_id, "anomaly_type": anomaly_type},
            ranges={"detected_at": Range(gte=day_start, lt=day_end)},
            limit=1,
        )
        if existing:
            logger.debug(
                "Anomaly already logged today",
                extra={"extra_data": {"anomaly_type": anomaly_type, "day": day_start[:10]}}
            )
            return False
        return True
