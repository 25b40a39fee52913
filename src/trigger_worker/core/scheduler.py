"""
MonitorScheduler - Fixed-period ticks with fail-stop recovery.

Each tick starts one monitoring cycle. Cycles never overlap: a tick that
fires while the previous cycle is still running is skipped.

When a cycle escalates TransportDegradedError the scheduler halts: no new
cycles, only a lightweight recovery probe at a fixed interval. Once the
probe succeeds the resilience layer is reset and cycling resumes.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Awaitable, Callable, List, Optional

from trigger_worker.ledger import TransportDegradedError

from .cycle import CycleReport, MonitoringCycle

if TYPE_CHECKING:
    from trigger_worker.monitoring import AlertManager

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Configuration for the monitor scheduler."""

    cycle_interval_seconds: float = 30
    recovery_probe_interval_seconds: float = 15
    # Log latest prices this often (0 disables)
    market_status_interval_seconds: float = 120


@dataclass
class SchedulerStats:
    """Runtime statistics for the scheduler."""

    cycles_run: int = 0
    cycles_failed: int = 0
    ticks_skipped: int = 0
    halts: int = 0
    recoveries: int = 0
    probes: int = 0
    last_cycle_at: Optional[datetime] = None
    last_error: Optional[str] = None


class MonitorScheduler:
    """
    Drives MonitoringCycle on a fixed period.

    Usage:
        scheduler = MonitorScheduler(
            cycle=cycle,
            probe=resilient_ledger.probe,
            reset=resilient_ledger.layer.reset,
            config=SchedulerConfig(cycle_interval_seconds=30),
        )
        await scheduler.start()
        # ... worker runs ...
        await scheduler.stop()
    """

    def __init__(
        self,
        cycle: MonitoringCycle,
        probe: Callable[[], Awaitable[bool]],
        reset: Optional[Callable[[], None]] = None,
        config: Optional[SchedulerConfig] = None,
        alert_manager: Optional["AlertManager"] = None,
    ) -> None:
        """
        Initialize the scheduler.

        Args:
            cycle: The monitoring cycle to run each tick
            probe: Recovery probe; returns True when the ledger is reachable
            reset: Called after recovery to reset retry state
            config: Intervals
            alert_manager: Optional operator alerts on halt/recovery
        """
        self._cycle = cycle
        self._probe = probe
        self._reset = reset
        self._config = config or SchedulerConfig()
        self._alert_manager = alert_manager

        self._running = False
        self._halted = False
        self._halted_since: Optional[float] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()
        self._last_report: Optional[CycleReport] = None
        self._last_market_status = 0.0
        self._stats = SchedulerStats()

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_halted(self) -> bool:
        """True while waiting for the recovery probe to succeed."""
        return self._halted

    @property
    def halted_since(self) -> Optional[float]:
        return self._halted_since

    @property
    def is_cycle_running(self) -> bool:
        return self._cycle_task is not None and not self._cycle_task.done()

    @property
    def stats(self) -> SchedulerStats:
        return self._stats

    @property
    def last_report(self) -> Optional[CycleReport]:
        return self._last_report

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    async def start(self) -> None:
        """Start ticking. The first cycle runs immediately."""
        if self._running:
            logger.warning("MonitorScheduler already running")
            return

        self._running = True
        self._wake.clear()
        self._loop_task = asyncio.create_task(self._tick_loop(), name="monitor_scheduler")
        logger.info(
            f"Started monitor scheduler (cycle={self._config.cycle_interval_seconds}s, "
            f"probe={self._config.recovery_probe_interval_seconds}s)"
        )

    async def stop(self) -> None:
        """Stop ticking, cancel any running cycle and clear the guard."""
        if not self._running:
            return

        logger.info("Stopping monitor scheduler...")
        self._running = False
        self._wake.set()

        tasks: List[asyncio.Task] = [
            t for t in (self._cycle_task, self._loop_task) if t is not None and not t.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._loop_task = None
        self._cycle_task = None

        # The ledger keeps authoritative status; the guard is rebuilt on start
        self._cycle.coordinator.guard.clear()
        logger.info("Monitor scheduler stopped")

    async def tick(self) -> Optional[CycleReport]:
        """
        One scheduler step, awaited to completion.

        While halted this is a recovery probe, otherwise a monitoring cycle
        (skipped if one is already running).
        """
        if self._halted:
            await self._probe_recovery()
            return None

        task = self.fire_tick()
        if task is None:
            return None
        return await task

    def fire_tick(self) -> Optional[asyncio.Task]:
        """Launch a cycle unless one is still running."""
        if self.is_cycle_running:
            self._stats.ticks_skipped += 1
            logger.warning("Previous cycle still running, skipping tick")
            return None

        self._cycle_task = asyncio.create_task(self._run_cycle(), name="monitoring_cycle")
        return self._cycle_task

    async def _tick_loop(self) -> None:
        while self._running:
            try:
                if self._halted:
                    if await self._probe_recovery():
                        continue  # Resume cycling right away
                    interval = self._config.recovery_probe_interval_seconds
                else:
                    self.fire_tick()
                    interval = self._config.cycle_interval_seconds

                await self._wait(interval)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                await asyncio.sleep(5)

    async def _wait(self, timeout: float) -> None:
        """Sleep until the next tick, a halt, or stop()."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run_cycle(self) -> Optional[CycleReport]:
        try:
            report = await self._cycle.run_once()
        except TransportDegradedError as e:
            await self._enter_halt(e)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._stats.cycles_failed += 1
            self._stats.last_error = str(e)
            logger.exception(f"Monitoring cycle failed: {e}")
            return None

        self._stats.cycles_run += 1
        self._stats.last_cycle_at = datetime.now(timezone.utc)
        self._last_report = report
        self._log_market_status(report)
        return report

    async def _enter_halt(self, error: TransportDegradedError) -> None:
        self._halted = True
        self._halted_since = time.time()
        self._stats.halts += 1
        self._stats.last_error = str(error)
        logger.error(f"Ledger unreachable, halting cycles until recovery: {error}")

        if self._alert_manager:
            await asyncio.to_thread(self._alert_manager.alert_worker_halted, str(error))

        # Start probing without waiting out the cycle interval
        self._wake.set()

    async def _probe_recovery(self) -> bool:
        self._stats.probes += 1
        if not await self._probe():
            logger.warning(f"Recovery probe failed (attempt {self._stats.probes}), still halted")
            return False

        downtime = time.time() - (self._halted_since or time.time())
        self._halted = False
        self._halted_since = None
        self._stats.recoveries += 1
        if self._reset:
            self._reset()
        logger.info(f"Ledger reachable again after {downtime:.0f}s, resuming cycles")

        if self._alert_manager:
            await asyncio.to_thread(self._alert_manager.alert_worker_recovered, downtime)
        return True

    def _log_market_status(self, report: CycleReport) -> None:
        interval = self._config.market_status_interval_seconds
        if interval <= 0:
            return
        now = time.time()
        if now - self._last_market_status < interval:
            return
        self._last_market_status = now

        oracle = self._cycle.oracle
        parts = [
            f"{oracle.symbol_for(index)}={price}"
            for index, price in sorted(report.prices.prices.items())
        ]
        logger.info(f"Market update: {', '.join(parts) if parts else 'no prices'}")
