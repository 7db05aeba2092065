"""
Read-side device reports: status, history and walk roll-ups.
"""

from reports.service import DeviceReportService, walker_stats_aggregations

__all__ = [
    "DeviceReportService",
    "walker_stats_aggregations",
]
