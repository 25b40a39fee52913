"""
Shared test fixtures for integration tests.

This file provides fixtures that span multiple components,
unlike component-specific fixtures in src/trigger_worker/{component}/tests/conftest.py

The FakeLedger below is an in-memory registry that enforces the same
status machine as the contract, so full cycles can run end to end.
"""

import pytest
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple
from unittest.mock import AsyncMock

from trigger_worker.core import (
    BalanceSettlementProbe,
    CoordinatorConfig,
    ExecutionCoordinator,
    InFlightRegistry,
    MonitoredFeed,
    MonitoringCycle,
    MonitorScheduler,
    OracleReader,
    RegistryScanner,
    SchedulerConfig,
)
from trigger_worker.ledger import (
    Direction,
    LedgerCallError,
    LedgerTransportError,
    ResilienceLayer,
    ResilientLedgerClient,
    RetryPolicy,
    TransitionResult,
    Trigger,
    TriggerStatus,
)


T0 = 1_700_000_000.0


class FakeClock:
    """Settable wall clock."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLedger:
    """
    In-memory trigger registry.

    Transitions are validated against current status like the contract
    does: an invalid transition is REJECTED, never applied.
    """

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.triggers: Dict[int, Trigger] = {}
        self.prices: Dict[int, Decimal] = {}
        self.balances: Dict[str, int] = {}
        self.failing_feeds: Set[int] = set()
        self.transitions: List[Tuple[str, int]] = []
        self.outage_calls = 0  # Fail this many upcoming calls
        self.down = False  # Fail every call
        self.calls = 0

    # -- test helpers ---------------------------------------------------------

    def add_trigger(
        self,
        threshold: str = "100",
        direction: Direction = Direction.ABOVE,
        watch_index: int = 3,
        status: TriggerStatus = TriggerStatus.PENDING,
        expires_at: Optional[int] = None,
        execution_started_at: Optional[int] = None,
        target_asset: Optional[str] = None,
    ) -> Trigger:
        trigger_id = len(self.triggers) + 1
        trigger = Trigger(
            id=trigger_id,
            owner="0x" + "44" * 20,
            watch_index=watch_index,
            target_asset=target_asset or f"asset-{trigger_id}",
            input_amount=1_000_000,
            max_slippage=50,
            threshold_price=Decimal(threshold),
            direction=direction,
            status=status,
            created_at=int(self.clock()),
            expires_at=expires_at,
            execution_started_at=execution_started_at,
        )
        self.triggers[trigger_id] = trigger
        return trigger

    def set_price(self, feed_index: int, price) -> None:
        self.prices[feed_index] = Decimal(str(price))

    def cancel(self, trigger_id: int) -> None:
        self._set(trigger_id, status=TriggerStatus.CANCELLED)

    def status(self, trigger_id: int) -> TriggerStatus:
        return self.triggers[trigger_id].status

    def count(self, kind: str, trigger_id: Optional[int] = None) -> int:
        return sum(
            1 for k, i in self.transitions
            if k == kind and (trigger_id is None or i == trigger_id)
        )

    def _set(self, trigger_id: int, **changes) -> None:
        self.triggers[trigger_id] = replace(self.triggers[trigger_id], **changes)

    def _enter(self) -> None:
        self.calls += 1
        if self.down:
            raise LedgerTransportError("connection refused")
        if self.outage_calls > 0:
            self.outage_calls -= 1
            raise LedgerTransportError("connection reset")

    # -- LedgerClient ---------------------------------------------------------

    async def get_trigger_count(self) -> int:
        self._enter()
        return len(self.triggers) + 1

    async def get_trigger(self, trigger_id: int) -> Trigger:
        self._enter()
        if trigger_id not in self.triggers:
            raise LedgerCallError(f"no trigger {trigger_id}")
        return self.triggers[trigger_id]

    async def get_price(self, feed_index: int) -> Decimal:
        self._enter()
        if feed_index in self.failing_feeds or feed_index not in self.prices:
            raise LedgerCallError(f"no price for feed {feed_index}")
        return self.prices[feed_index]

    async def get_settlement_balance(self, asset: str, holder: Optional[str] = None) -> int:
        self._enter()
        return self.balances.get(asset, 0)

    async def start_execution(self, trigger_id: int) -> TransitionResult:
        self._enter()
        self.transitions.append(("start", trigger_id))
        if self.status(trigger_id) != TriggerStatus.PENDING:
            return TransitionResult.reject("not pending")
        self._set(
            trigger_id,
            status=TriggerStatus.EXECUTING,
            execution_started_at=int(self.clock()),
        )
        return TransitionResult.accept(f"0x{len(self.transitions):064x}")

    async def complete_execution(self, trigger_id: int, output_amount: int) -> TransitionResult:
        self._enter()
        self.transitions.append(("complete", trigger_id))
        if self.status(trigger_id) != TriggerStatus.EXECUTING:
            return TransitionResult.reject("not executing")
        self._set(trigger_id, status=TriggerStatus.COMPLETED, output_amount=output_amount)
        return TransitionResult.accept(f"0x{len(self.transitions):064x}")

    async def mark_failed(self, trigger_id: int, reason: str) -> TransitionResult:
        self._enter()
        self.transitions.append(("fail", trigger_id))
        if self.status(trigger_id) != TriggerStatus.EXECUTING:
            return TransitionResult.reject("not executing")
        self._set(trigger_id, status=TriggerStatus.FAILED)
        return TransitionResult.accept(f"0x{len(self.transitions):064x}")

    async def ping(self) -> int:
        self._enter()
        return 1_000 + len(self.transitions)


@dataclass
class WorkerStack:
    """Everything a running worker wires together, minus the network."""

    ledger: FakeLedger
    client: ResilientLedgerClient
    layer: ResilienceLayer
    coordinator: ExecutionCoordinator
    cycle: MonitoringCycle
    scheduler: MonitorScheduler
    clock: FakeClock

    @property
    def guard(self) -> InFlightRegistry:
        return self.coordinator.guard


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_ledger(clock):
    return FakeLedger(clock)


@pytest.fixture
def stack(fake_ledger, clock):
    """Worker components around a FakeLedger, 3 attempts, no retry delay."""
    layer = ResilienceLayer(RetryPolicy(max_retries=3, retry_delay_seconds=2), sleep=AsyncMock())
    client = ResilientLedgerClient(fake_ledger, layer)
    feeds = MonitoredFeed.parse_list("BTC:3,ETH:4,HYPE:150")

    coordinator = ExecutionCoordinator(
        ledger=client,
        settlement_probe=BalanceSettlementProbe(client),
        config=CoordinatorConfig(execution_timeout_seconds=3600, stale_intent_seconds=300),
        clock=clock,
    )
    cycle = MonitoringCycle(
        scanner=RegistryScanner(client),
        oracle=OracleReader(client, feeds),
        coordinator=coordinator,
        clock=clock,
    )
    scheduler = MonitorScheduler(
        cycle=cycle,
        probe=client.probe,
        reset=layer.reset,
        config=SchedulerConfig(market_status_interval_seconds=0),
    )
    return WorkerStack(
        ledger=fake_ledger,
        client=client,
        layer=layer,
        coordinator=coordinator,
        cycle=cycle,
        scheduler=scheduler,
        clock=clock,
    )
