"""
MonitoringCycle - One full pass: scan + prices, then coordinate.

The registry scan and the oracle read are independent and run
concurrently; both are joined before any trigger is evaluated.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict

from .concurrency import gather_or_cancel
from .coordinator import CoordinatorReport, ExecutionCoordinator
from .oracle import OracleReader, OracleSnapshot
from .scanner import RegistryScanner, RegistrySnapshot

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    """Summary of one monitoring cycle."""

    registry: RegistrySnapshot
    prices: OracleSnapshot
    coordination: CoordinatorReport
    started_at: float
    duration_seconds: float = 0.0
    guarded: int = 0

    @property
    def active_count(self) -> int:
        return len(self.registry.triggers)

    def summary(self) -> Dict[str, int]:
        return self.coordination.summary()


class MonitoringCycle:
    """
    Runs one monitoring cycle. Holds no state of its own beyond its
    collaborators; the guard lives in the coordinator.

    Usage:
        cycle = MonitoringCycle(scanner, oracle, coordinator)
        report = await cycle.run_once()
    """

    def __init__(
        self,
        scanner: RegistryScanner,
        oracle: OracleReader,
        coordinator: ExecutionCoordinator,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._scanner = scanner
        self._oracle = oracle
        self._coordinator = coordinator
        self._clock = clock

    @property
    def coordinator(self) -> ExecutionCoordinator:
        return self._coordinator

    @property
    def oracle(self) -> OracleReader:
        return self._oracle

    async def run_once(self) -> CycleReport:
        """
        Raises:
            TransportDegradedError: From any remote call; the cycle is abandoned
        """
        started = self._clock()

        # An escalation in either read cancels the other
        registry, prices = await gather_or_cancel(
            self._scanner.scan(),
            self._oracle.read_prices(),
        )

        if prices.is_degraded and registry.triggers:
            logger.warning("No prices available this cycle; no trigger can start")

        coordination = await self._coordinator.process(registry, prices)

        report = CycleReport(
            registry=registry,
            prices=prices,
            coordination=coordination,
            started_at=started,
            duration_seconds=self._clock() - started,
            guarded=len(self._coordinator.guard),
        )

        if registry.triggers:
            logger.info(
                f"Cycle: {report.active_count} active triggers, "
                f"{len(prices.prices)}/{len(self._oracle.feeds)} prices, "
                f"guarded={report.guarded}, actions={report.summary()}, "
                f"took {report.duration_seconds:.2f}s"
            )
        else:
            logger.debug("Cycle: no active triggers")

        return report
