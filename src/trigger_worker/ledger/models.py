"""
Data models for the on-chain trigger registry.

These are read-through snapshots of ledger state. The ledger owns every
trigger's status; the worker only ever proposes transitions and observes
the result on a later read.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional, Sequence


class TriggerStatus(Enum):
    """Trigger status as stored by the registry contract (uint8)."""

    PENDING = 0
    EXECUTING = 1
    COMPLETED = 2
    FAILED = 3
    CANCELLED = 4
    EXPIRED = 5

    @property
    def is_active(self) -> bool:
        """Pending or Executing - the only statuses the worker acts on."""
        return self in (TriggerStatus.PENDING, TriggerStatus.EXECUTING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active


class Direction(Enum):
    """Which side of the threshold satisfies the trigger."""

    ABOVE = "above"
    BELOW = "below"


class TransitionOutcome(Enum):
    """
    Result of a state-transition submission.

    ACCEPTED: mined and succeeded.
    REJECTED: the ledger declined it (pre-flight revert or reverted receipt).
    UNKNOWN: submitted but the outcome could not be confirmed.
    """

    ACCEPTED = "accepted"
    REJECTED = "rejected"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a start/complete/fail call."""

    outcome: TransitionOutcome
    tx_hash: Optional[str] = None
    reason: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.outcome == TransitionOutcome.ACCEPTED

    @property
    def rejected(self) -> bool:
        return self.outcome == TransitionOutcome.REJECTED

    @classmethod
    def accept(cls, tx_hash: Optional[str] = None) -> "TransitionResult":
        return cls(TransitionOutcome.ACCEPTED, tx_hash=tx_hash)

    @classmethod
    def reject(cls, reason: str, tx_hash: Optional[str] = None) -> "TransitionResult":
        return cls(TransitionOutcome.REJECTED, tx_hash=tx_hash, reason=reason)

    @classmethod
    def unknown(cls, reason: str, tx_hash: Optional[str] = None) -> "TransitionResult":
        return cls(TransitionOutcome.UNKNOWN, tx_hash=tx_hash, reason=reason)


def from_fixed_point(value: int, decimals: int) -> Decimal:
    """Convert a ledger fixed-point integer to a Decimal."""
    return Decimal(int(value)).scaleb(-decimals)


@dataclass(frozen=True)
class Trigger:
    """
    Snapshot of one trigger as read from the registry.

    Prices are converted from fixed-point at read time. Timestamps are unix
    seconds; 0 means "not set" on the contract and is mapped to None.
    """

    id: int
    owner: str
    watch_index: int
    target_asset: str
    input_amount: int
    max_slippage: int
    threshold_price: Decimal
    direction: Direction
    status: TriggerStatus
    created_at: Optional[int] = None
    expires_at: Optional[int] = None
    execution_started_at: Optional[int] = None
    output_amount: int = 0

    @property
    def is_above(self) -> bool:
        return self.direction == Direction.ABOVE

    def is_expired(self, now: float) -> bool:
        """Whether the trigger's expiry (if any) has passed."""
        return self.expires_at is not None and now > self.expires_at

    @classmethod
    def from_contract(cls, raw: Sequence[Any], price_decimals: int = 6) -> "Trigger":
        """
        Build a Trigger from the tuple returned by ``getTrigger``.

        Field order matches TRIGGER_STRUCT in ledger.client:
            (id, owner, watchIndex, targetAsset, inputAmount, maxSlippage,
             thresholdPrice, isAbove, status, createdAt, expiresAt,
             executionStartedAt, outputAmount)

        Raises:
            ValueError: If the tuple is malformed or the status is unknown
        """
        if len(raw) != 13:
            raise ValueError(f"Unexpected trigger tuple length: {len(raw)}")

        (
            trigger_id,
            owner,
            watch_index,
            target_asset,
            input_amount,
            max_slippage,
            threshold_price,
            is_above,
            status,
            created_at,
            expires_at,
            execution_started_at,
            output_amount,
        ) = raw

        return cls(
            id=int(trigger_id),
            owner=str(owner),
            watch_index=int(watch_index),
            target_asset=str(target_asset),
            input_amount=int(input_amount),
            max_slippage=int(max_slippage),
            threshold_price=from_fixed_point(threshold_price, price_decimals),
            direction=Direction.ABOVE if is_above else Direction.BELOW,
            status=TriggerStatus(int(status)),
            created_at=int(created_at) or None,
            expires_at=int(expires_at) or None,
            execution_started_at=int(execution_started_at) or None,
            output_amount=int(output_amount),
        )
