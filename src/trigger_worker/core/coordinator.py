"""
ExecutionCoordinator - Drives triggers through execution.

Per trigger, once per cycle:
    Pending + condition met + not guarded  -> start-execution
    Pending + condition not met            -> nothing
    Executing + past timeout               -> mark-failed("timeout")
    Executing + settlement observed        -> complete-execution(output)
    Executing + not settled yet            -> poll again next cycle

Guard rules (InFlightRegistry):
    - Acquired before start-execution is submitted.
    - Released on a confirmed terminal transition, on a rejected start,
      or when the ledger shows the trigger terminal (e.g. cancelled by
      its owner).
    - An UNKNOWN outcome keeps the guard and its intent. The same
      transition is not resubmitted until the intent is older than
      stale_intent_seconds and the trigger is re-evaluated.
    - Executing triggers not in the guard (after a restart) are adopted.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, Optional

from trigger_worker.ledger import (
    LedgerClient,
    LedgerError,
    TransitionResult,
    Trigger,
    TriggerStatus,
)

from .conditions import distance_to_target, evaluate
from .in_flight import InFlightIntent, InFlightRegistry, IntentKind
from .oracle import OracleSnapshot
from .scanner import RegistrySnapshot
from .settlement import SettlementProbe

if TYPE_CHECKING:
    from trigger_worker.monitoring import AlertManager

logger = logging.getLogger(__name__)

TIMEOUT_REASON = "timeout"


class TriggerAction(Enum):
    """What the coordinator did with one trigger this cycle."""

    WAITING = "waiting"  # Pending, condition not met / no price / expired
    IN_FLIGHT = "in_flight"  # Pending but guarded
    STARTED = "started"
    START_REJECTED = "start_rejected"
    POLLING = "polling"  # Executing, not settled yet
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    TRANSITION_REJECTED = "transition_rejected"  # complete/fail declined
    UNKNOWN = "unknown"  # submitted, outcome unconfirmed
    RELEASED = "released"  # guard dropped, trigger terminal on ledger
    ERROR = "error"


@dataclass
class CoordinatorConfig:
    """Configuration for the execution coordinator."""

    execution_timeout_seconds: float = 3600  # 1 hour
    # An intent whose transition has not shown on the ledger after this
    # long is treated as lost and the trigger is re-evaluated
    stale_intent_seconds: float = 300


@dataclass
class CoordinatorStats:
    """Runtime counters."""

    triggers_evaluated: int = 0
    starts_attempted: int = 0
    starts_accepted: int = 0
    starts_rejected: int = 0
    completions: int = 0
    timeouts: int = 0
    transitions_rejected: int = 0
    unknown_outcomes: int = 0
    guards_released: int = 0
    adopted: int = 0
    errors: int = 0


@dataclass
class CoordinatorReport:
    """Per-trigger actions taken in one pass."""

    actions: Dict[int, TriggerAction] = field(default_factory=dict)

    def count(self, action: TriggerAction) -> int:
        return sum(1 for a in self.actions.values() if a == action)

    def summary(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for action in self.actions.values():
            counts[action.value] = counts.get(action.value, 0) + 1
        return counts


class ExecutionCoordinator:
    """
    State machine driver for triggers.

    The guard is the only mutable state carried across cycles. Everything
    else is re-read from the ledger every cycle.

    Usage:
        coordinator = ExecutionCoordinator(
            ledger=ledger,
            settlement_probe=BalanceSettlementProbe(ledger),
            config=CoordinatorConfig(execution_timeout_seconds=3600),
        )
        report = await coordinator.process(registry_snapshot, oracle_snapshot)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        settlement_probe: SettlementProbe,
        config: Optional[CoordinatorConfig] = None,
        guard: Optional[InFlightRegistry] = None,
        clock: Callable[[], float] = time.time,
        alert_manager: Optional["AlertManager"] = None,
    ) -> None:
        """
        Initialize the coordinator.

        Args:
            ledger: Ledger client (normally the resilient wrapper)
            settlement_probe: Decides when an Executing trigger has settled
            config: Timeouts
            guard: In-flight registry (a fresh one if not given)
            clock: Wall-clock source, unix seconds
            alert_manager: Optional operator alerts on completion/failure
        """
        self._ledger = ledger
        self._probe = settlement_probe
        self._config = config or CoordinatorConfig()
        self._guard = guard if guard is not None else InFlightRegistry()
        self._clock = clock
        self._alert_manager = alert_manager
        self._stats = CoordinatorStats()

    @property
    def guard(self) -> InFlightRegistry:
        return self._guard

    @property
    def stats(self) -> CoordinatorStats:
        return self._stats

    @property
    def config(self) -> CoordinatorConfig:
        return self._config

    async def process(
        self,
        registry: RegistrySnapshot,
        prices: OracleSnapshot,
    ) -> CoordinatorReport:
        """
        Run one pass over a cycle's snapshots.

        Triggers are handled in ascending id order. A LedgerError for one
        trigger is logged and does not affect the others.

        Raises:
            TransportDegradedError: Propagated to the scheduler
        """
        now = self._clock()
        report = CoordinatorReport()

        for trigger_id in self._reconcile(registry):
            report.actions[trigger_id] = TriggerAction.RELEASED

        for trigger in sorted(registry.triggers, key=lambda t: t.id):
            self._stats.triggers_evaluated += 1
            try:
                action = await self.process_trigger(
                    trigger, prices.get(trigger.watch_index), now
                )
            except LedgerError as e:
                self._stats.errors += 1
                logger.error(f"Error processing trigger {trigger.id}: {e}")
                action = TriggerAction.ERROR
            report.actions[trigger.id] = action

        return report

    async def process_trigger(
        self,
        trigger: Trigger,
        current_price: Optional[Decimal],
        now: Optional[float] = None,
    ) -> TriggerAction:
        """Advance a single trigger by at most one transition."""
        now = self._clock() if now is None else now

        if trigger.status == TriggerStatus.PENDING:
            return await self._handle_pending(trigger, current_price, now)
        if trigger.status == TriggerStatus.EXECUTING:
            return await self._handle_executing(trigger, now)

        # Terminal snapshot passed in directly
        if self._release(trigger.id) is not None:
            self._stats.guards_released += 1
            return TriggerAction.RELEASED
        return TriggerAction.WAITING

    def _reconcile(self, registry: RegistrySnapshot) -> list:
        """Drop guard entries for triggers now terminal on the ledger."""
        released = []
        for trigger_id in self._guard.ids():
            status = registry.inactive.get(trigger_id)
            if status is None:
                # Active, or not read this cycle: keep
                continue
            self._release(trigger_id)
            self._stats.guards_released += 1
            released.append(trigger_id)
            logger.info(f"Trigger {trigger_id} is {status.name} on ledger, guard released")
        return released

    # =========================================================================
    # Pending
    # =========================================================================

    async def _handle_pending(
        self,
        trigger: Trigger,
        current_price: Optional[Decimal],
        now: float,
    ) -> TriggerAction:
        intent = self._guard.get(trigger.id)
        if intent is not None:
            if intent.age(now) <= self._config.stale_intent_seconds:
                logger.debug(f"Trigger {trigger.id} already in flight ({intent.kind.value})")
                return TriggerAction.IN_FLIGHT
            logger.warning(
                f"Trigger {trigger.id} still Pending {intent.age(now):.0f}s after "
                f"{intent.kind.value} intent, re-evaluating"
            )
            self._release(trigger.id)
            self._stats.guards_released += 1

        check = evaluate(trigger, current_price, now)
        if not check.should_execute:
            if check.current_price is not None and not trigger.is_expired(now):
                arrow = "^" if trigger.is_above else "v"
                diff = distance_to_target(trigger, check.current_price)
                logger.info(
                    f"Trigger #{trigger.id}: feed {trigger.watch_index} "
                    f"{arrow}{trigger.threshold_price} (current: {check.current_price}, "
                    f"needs {'+' if trigger.is_above else '-'}{diff})"
                )
            else:
                logger.debug(f"Trigger #{trigger.id}: {check.reason}")
            return TriggerAction.WAITING

        # Baseline for settlement is taken before anything is sent
        await self._probe.begin(trigger)
        if not self._guard.acquire(trigger.id, IntentKind.START, now):
            return TriggerAction.IN_FLIGHT

        logger.info(
            f"Trigger {trigger.id} conditions met: price {check.current_price} "
            f"{'>=' if trigger.is_above else '<='} {trigger.threshold_price}, starting execution"
        )
        self._stats.starts_attempted += 1

        try:
            result = await self._ledger.start_execution(trigger.id)
        except LedgerError as e:
            # Held until the intent goes stale
            self._stats.errors += 1
            logger.error(f"start_execution({trigger.id}) failed, keeping guard: {e}")
            return TriggerAction.ERROR

        if result.accepted:
            self._guard.mark(trigger.id, IntentKind.START, result.tx_hash)
            self._stats.starts_accepted += 1
            logger.info(f"Trigger {trigger.id} execution started (tx {result.tx_hash})")
            return TriggerAction.STARTED

        if result.rejected:
            self._release(trigger.id)
            self._stats.starts_rejected += 1
            logger.warning(
                f"Trigger {trigger.id} start rejected: {result.reason}; will re-evaluate next cycle"
            )
            return TriggerAction.START_REJECTED

        self._stats.unknown_outcomes += 1
        logger.warning(
            f"Trigger {trigger.id} start outcome unknown ({result.reason}), keeping guard"
        )
        return TriggerAction.UNKNOWN

    # =========================================================================
    # Executing
    # =========================================================================

    async def _handle_executing(self, trigger: Trigger, now: float) -> TriggerAction:
        intent = self._guard.get(trigger.id)
        if intent is None:
            self._guard.acquire(trigger.id, IntentKind.ADOPTED, now)
            self._stats.adopted += 1
            logger.info(f"Adopted executing trigger {trigger.id} into guard")
        elif intent.kind in (IntentKind.COMPLETE, IntentKind.FAIL):
            if intent.age(now) <= self._config.stale_intent_seconds:
                logger.debug(
                    f"Trigger {trigger.id} {intent.kind.value} outstanding, not resubmitting"
                )
                return TriggerAction.IN_FLIGHT
            logger.warning(
                f"Trigger {trigger.id} still Executing {intent.age(now):.0f}s after "
                f"{intent.kind.value} intent, re-evaluating"
            )
            self._guard.mark(trigger.id, IntentKind.ADOPTED, now=now)

        started_at = trigger.execution_started_at
        if started_at is None:
            logger.warning(f"Trigger {trigger.id} is Executing with no start time, not timing out")
        elif now - started_at > self._config.execution_timeout_seconds:
            logger.warning(
                f"Trigger {trigger.id} execution timed out after {now - started_at:.0f}s"
            )
            return await self._fail(trigger, TIMEOUT_REASON, now)

        output_amount = await self._probe.check(trigger)
        if output_amount is None:
            logger.debug(f"Trigger {trigger.id} not settled yet")
            return TriggerAction.POLLING

        return await self._complete(trigger, output_amount, now)

    async def _complete(self, trigger: Trigger, output_amount: int, now: float) -> TriggerAction:
        previous = self._guard.get(trigger.id)
        result = await self._submit(
            trigger.id,
            IntentKind.COMPLETE,
            now,
            self._ledger.complete_execution(trigger.id, output_amount),
        )

        if result.accepted:
            self._release(trigger.id)
            self._stats.completions += 1
            logger.info(
                f"Trigger {trigger.id} completed, output {output_amount} (tx {result.tx_hash})"
            )
            if self._alert_manager:
                await asyncio.to_thread(
                    self._alert_manager.alert_trigger_completed,
                    trigger.id,
                    output_amount,
                    result.tx_hash,
                )
            return TriggerAction.COMPLETED

        return await self._handle_unaccepted(trigger.id, "complete_execution", result, previous)

    async def _fail(self, trigger: Trigger, reason: str, now: float) -> TriggerAction:
        previous = self._guard.get(trigger.id)
        result = await self._submit(
            trigger.id,
            IntentKind.FAIL,
            now,
            self._ledger.mark_failed(trigger.id, reason),
        )

        if result.accepted:
            self._release(trigger.id)
            self._stats.timeouts += 1
            logger.info(f"Trigger {trigger.id} marked failed: {reason} (tx {result.tx_hash})")
            if self._alert_manager:
                await asyncio.to_thread(self._alert_manager.alert_trigger_failed, trigger.id, reason)
            return TriggerAction.TIMED_OUT

        return await self._handle_unaccepted(trigger.id, "mark_failed", result, previous)

    async def _submit(
        self,
        trigger_id: int,
        kind: IntentKind,
        now: float,
        call: Awaitable[TransitionResult],
    ) -> TransitionResult:
        """
        Record the intent, then await the transition.

        The client only raises when nothing reached the node, so the
        previous intent is restored on an error.
        """
        previous = self._guard.get(trigger_id)
        self._guard.mark(trigger_id, kind, now=now)
        try:
            return await call
        except Exception:
            if previous is not None:
                self._guard.mark(trigger_id, previous.kind, now=previous.since)
            raise

    async def _handle_unaccepted(
        self,
        trigger_id: int,
        operation: str,
        result: TransitionResult,
        previous: Optional[InFlightIntent],
    ) -> TriggerAction:
        if not result.rejected:
            self._stats.unknown_outcomes += 1
            logger.warning(
                f"{operation}({trigger_id}) outcome unknown ({result.reason}), keeping guard"
            )
            return TriggerAction.UNKNOWN

        self._stats.transitions_rejected += 1
        logger.warning(f"{operation}({trigger_id}) rejected: {result.reason}")

        # Nothing is outstanding any more
        if previous is not None:
            self._guard.mark(trigger_id, previous.kind, now=previous.since)

        # Only drop the guard if the ledger says we can no longer act on it
        try:
            current = await self._ledger.get_trigger(trigger_id)
        except LedgerError as e:
            logger.warning(f"Could not re-read trigger {trigger_id} after rejection: {e}")
            return TriggerAction.TRANSITION_REJECTED

        if current.status.is_terminal:
            self._release(trigger_id)
            self._stats.guards_released += 1
            logger.info(f"Trigger {trigger_id} is {current.status.name}, guard released")
            return TriggerAction.RELEASED

        return TriggerAction.TRANSITION_REJECTED

    def _release(self, trigger_id: int) -> Optional[InFlightIntent]:
        """Drop the guard entry and whatever the probe kept for the trigger."""
        self._probe.forget(trigger_id)
        return self._guard.release(trigger_id)
