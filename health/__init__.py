"""
Health check module for the collar gateway.

This module provides health check services reporting configuration
visibility and record store connectivity.
"""

from health.service import (
    HealthCheckService,
    HealthStatus,
    DependencyHealth,
)

__all__ = [
    "HealthCheckService",
    "HealthStatus",
    "DependencyHealth",
]
