"""
Core Layer - Trigger monitoring and execution orchestration.

This module provides:
    - OracleReader: Fresh per-cycle prices with per-feed failure isolation
    - MonitoredFeed: A (symbol, feed index) pair
    - RegistryScanner: Best-effort enumeration of Pending/Executing triggers
    - should_execute / evaluate: Pure threshold condition checks
    - InFlightRegistry: Re-entrancy guard of in-flight intents, keyed by id
    - SettlementProbe: Pluggable "has the trade settled?" check
    - ExecutionCoordinator: Per-trigger state machine driver
    - MonitoringCycle: One scan + price read + coordination pass
    - MonitorScheduler: Fixed-period ticks, fail-stop and recovery probing

Data Flow:
    1. Scheduler tick starts a MonitoringCycle
    2. RegistryScanner and OracleReader run concurrently
    3. ExecutionCoordinator reconciles the guard with ledger status
    4. Each trigger (ascending id) gets at most one transition
    5. TransportDegradedError anywhere halts the scheduler until recovery
"""

from .conditions import ConditionCheck, distance_to_target, evaluate, should_execute
from .coordinator import (
    CoordinatorConfig,
    CoordinatorReport,
    CoordinatorStats,
    ExecutionCoordinator,
    TriggerAction,
    TIMEOUT_REASON,
)
from .cycle import CycleReport, MonitoringCycle
from .in_flight import InFlightIntent, InFlightRegistry, IntentKind
from .oracle import MonitoredFeed, OracleReader, OracleSnapshot
from .scanner import RegistryScanner, RegistrySnapshot
from .scheduler import MonitorScheduler, SchedulerConfig, SchedulerStats
from .settlement import BalanceSettlementProbe, SettlementProbe

__all__ = [
    # Conditions
    "ConditionCheck",
    "distance_to_target",
    "evaluate",
    "should_execute",
    # Coordinator
    "CoordinatorConfig",
    "CoordinatorReport",
    "CoordinatorStats",
    "ExecutionCoordinator",
    "TriggerAction",
    "TIMEOUT_REASON",
    # Cycle
    "CycleReport",
    "MonitoringCycle",
    # Guard
    "InFlightIntent",
    "InFlightRegistry",
    "IntentKind",
    # Oracle
    "MonitoredFeed",
    "OracleReader",
    "OracleSnapshot",
    # Scanner
    "RegistryScanner",
    "RegistrySnapshot",
    # Scheduler
    "MonitorScheduler",
    "SchedulerConfig",
    "SchedulerStats",
    # Settlement
    "BalanceSettlementProbe",
    "SettlementProbe",
]
