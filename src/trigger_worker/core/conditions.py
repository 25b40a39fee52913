"""
Trigger condition evaluation.

Pure functions: no I/O, no cached state. The caller supplies a price read
during the current cycle.

Boundary is inclusive in both directions:
    ABOVE: price >= threshold
    BELOW: price <= threshold
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from trigger_worker.ledger import Direction, Trigger


@dataclass(frozen=True)
class ConditionCheck:
    """Result of evaluating one trigger against the current price."""

    should_execute: bool
    current_price: Optional[Decimal]
    reason: str


def should_execute(trigger: Trigger, current_price: Optional[Decimal]) -> bool:
    """
    Whether the trigger's threshold condition holds at this price.

    An absent price never satisfies the condition.
    """
    if current_price is None:
        return False

    if trigger.direction == Direction.ABOVE:
        return current_price >= trigger.threshold_price
    return current_price <= trigger.threshold_price


def evaluate(
    trigger: Trigger,
    current_price: Optional[Decimal],
    now: Optional[float] = None,
) -> ConditionCheck:
    """
    Full pre-start check: price availability, expiry, then the threshold.

    Args:
        trigger: Trigger snapshot from this cycle
        current_price: Fresh price for trigger.watch_index, or None
        now: Unix time (defaults to time.time())
    """
    if current_price is None:
        return ConditionCheck(False, None, "Could not fetch price")

    now = time.time() if now is None else now
    if trigger.is_expired(now):
        return ConditionCheck(False, current_price, "Trigger expired")

    if not should_execute(trigger, current_price):
        verb = "reached" if trigger.is_above else "dropped to"
        return ConditionCheck(
            False,
            current_price,
            f"Price {current_price} has not {verb} {trigger.threshold_price}",
        )

    return ConditionCheck(True, current_price, "Ready to execute")


def distance_to_target(trigger: Trigger, current_price: Decimal) -> Decimal:
    """How far the price still has to move; <= 0 once satisfied."""
    if trigger.is_above:
        return trigger.threshold_price - current_price
    return current_price - trigger.threshold_price
