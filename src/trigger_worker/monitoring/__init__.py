"""
Monitoring Layer - Health checks and operator alerting.

This module provides:
    - HealthChecker: Ledger, scheduler and guard health with timeouts
    - HealthStatus: Health status enum (HEALTHY, DEGRADED, UNHEALTHY, WARNING)
    - ComponentHealth: Health check result for a single component
    - AggregateHealth: Overall worker health aggregation
    - get_worker_status: Version/health/timestamp summary
    - AlertManager: Telegram notifications with deduplication

Alert Deduplication:
    - Same alert won't fire repeatedly within cooldown window
    - Different alert types are tracked separately
"""

from .health_checker import (
    AggregateHealth,
    ComponentHealth,
    HealthChecker,
    HealthStatus,
    get_worker_status,
)
from .alerting import AlertManager

__all__ = [
    # Health checking
    "HealthChecker",
    "HealthStatus",
    "ComponentHealth",
    "AggregateHealth",
    "get_worker_status",
    # Alerting
    "AlertManager",
]
