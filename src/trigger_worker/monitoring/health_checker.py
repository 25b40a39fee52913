"""
Health Checker for worker health monitoring.

Monitors ledger reachability, scheduler liveness and the in-flight guard.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from trigger_worker import __version__

if TYPE_CHECKING:
    from trigger_worker.core import InFlightRegistry, MonitorScheduler
    from trigger_worker.ledger import LedgerClient

logger = logging.getLogger(__name__)


class HealthStatus(Enum):
    """Health status levels."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    """Health check result for a single component."""

    component: str
    status: HealthStatus
    message: str
    latency_ms: Optional[float] = None


@dataclass
class AggregateHealth:
    """Overall worker health."""

    status: HealthStatus
    components: List[ComponentHealth] = field(default_factory=list)
    checked_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def get_worker_status(health: Optional[AggregateHealth] = None) -> Dict[str, Any]:
    """Version, health flag and timestamp for status endpoints and logs."""
    return {
        "version": __version__,
        "is_healthy": health is None or health.status != HealthStatus.UNHEALTHY,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class HealthChecker:
    """
    Checks health of worker components.

    Monitors:
    - Ledger RPC reachability (block number ping)
    - Scheduler running, not halted, cycles not stale
    - Guard entries held for unusually long

    Usage:
        checker = HealthChecker(ledger, scheduler, guard)
        overall = await checker.check_all()
    """

    def __init__(
        self,
        ledger: Optional["LedgerClient"] = None,
        scheduler: Optional["MonitorScheduler"] = None,
        guard: Optional["InFlightRegistry"] = None,
        cycle_staleness_threshold: float = 180.0,
        intent_age_threshold: float = 7200.0,
    ) -> None:
        """
        Initialize the health checker.

        Args:
            ledger: Ledger client to ping (the raw client, not the retrying one)
            scheduler: Scheduler to inspect
            guard: In-flight registry to inspect
            cycle_staleness_threshold: Seconds without a completed cycle to consider stale
            intent_age_threshold: Seconds a guard entry may be held before warning
        """
        self._ledger = ledger
        self._scheduler = scheduler
        self._guard = guard
        self._cycle_staleness_threshold = cycle_staleness_threshold
        self._intent_age_threshold = intent_age_threshold

    async def check_ledger(self) -> ComponentHealth:
        """Ping the RPC endpoint."""
        if self._ledger is None:
            return ComponentHealth(
                component="ledger",
                status=HealthStatus.UNHEALTHY,
                message="No ledger client configured",
            )

        start_time = time.time()
        try:
            block = await self._ledger.ping()
        except Exception as e:
            latency_ms = (time.time() - start_time) * 1000
            logger.error(f"Ledger health check failed: {e}")
            return ComponentHealth(
                component="ledger",
                status=HealthStatus.UNHEALTHY,
                message=f"Ledger error: {str(e)}",
                latency_ms=latency_ms,
            )

        return ComponentHealth(
            component="ledger",
            status=HealthStatus.HEALTHY,
            message=f"Ledger reachable at block {block}",
            latency_ms=(time.time() - start_time) * 1000,
        )

    async def check_scheduler(self) -> ComponentHealth:
        if self._scheduler is None:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.WARNING,
                message="No scheduler configured",
            )

        if not self._scheduler.is_running:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.UNHEALTHY,
                message="Scheduler is not running",
            )

        if self._scheduler.is_halted:
            return ComponentHealth(
                component="scheduler",
                status=HealthStatus.UNHEALTHY,
                message=f"Cycling halted: {self._scheduler.stats.last_error}",
            )

        last_cycle = self._scheduler.stats.last_cycle_at
        if last_cycle is not None:
            age_seconds = (datetime.now(timezone.utc) - last_cycle).total_seconds()
            if age_seconds > self._cycle_staleness_threshold:
                return ComponentHealth(
                    component="scheduler",
                    status=HealthStatus.DEGRADED,
                    message=f"Last cycle completed {age_seconds:.0f}s ago",
                )

        return ComponentHealth(
            component="scheduler",
            status=HealthStatus.HEALTHY,
            message=f"{self._scheduler.stats.cycles_run} cycles run",
        )

    async def check_guard(self) -> ComponentHealth:
        if self._guard is None:
            return ComponentHealth(
                component="guard",
                status=HealthStatus.HEALTHY,
                message="No guard to inspect",
            )

        now = time.time()
        old = [i.trigger_id for i in self._guard if i.age(now) > self._intent_age_threshold]
        if old:
            return ComponentHealth(
                component="guard",
                status=HealthStatus.WARNING,
                message=f"Triggers guarded for over {self._intent_age_threshold:.0f}s: {old}",
            )

        return ComponentHealth(
            component="guard",
            status=HealthStatus.HEALTHY,
            message=f"{len(self._guard)} triggers in flight",
        )

    async def check_all(self, timeout: float = 5.0) -> AggregateHealth:
        """
        Check all components with timeout.

        Args:
            timeout: Maximum time for all checks in seconds
        """
        components = []

        checks = [
            ("ledger", self.check_ledger),
            ("scheduler", self.check_scheduler),
            ("guard", self.check_guard),
        ]

        for name, check_func in checks:
            try:
                result = await asyncio.wait_for(
                    check_func(),
                    timeout=timeout / len(checks),
                )
                components.append(result)
            except asyncio.TimeoutError:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check timed out",
                ))
            except Exception as e:
                components.append(ComponentHealth(
                    component=name,
                    status=HealthStatus.UNHEALTHY,
                    message=f"{name} check failed: {str(e)}",
                ))

        return AggregateHealth(
            status=self._calculate_overall_status(components),
            components=components,
        )

    def _calculate_overall_status(
        self,
        components: List[ComponentHealth],
    ) -> HealthStatus:
        statuses = [c.status for c in components]

        if HealthStatus.UNHEALTHY in statuses:
            return HealthStatus.UNHEALTHY

        if HealthStatus.DEGRADED in statuses or HealthStatus.WARNING in statuses:
            return HealthStatus.DEGRADED

        return HealthStatus.HEALTHY
