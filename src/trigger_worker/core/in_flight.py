"""
In-flight intents registry (the worker's re-entrancy guard).

Tracks which triggers have a transition outstanding or an execution the
worker is following. Keyed by trigger id, so an id can be held at most
once. The registry is process-local and advisory: it starts empty on
restart and is rebuilt from ledger status (Executing triggers are
re-adopted), because the ledger's own status is the durable guard.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, Iterator, List, Optional


class IntentKind(Enum):
    """What the worker is doing with a guarded trigger."""

    START = "start"  # start-execution attempted or accepted
    ADOPTED = "adopted"  # found Executing on the ledger, not started by us this run
    COMPLETE = "complete"  # complete-execution attempted
    FAIL = "fail"  # mark-failed attempted


@dataclass(frozen=True)
class InFlightIntent:
    """A single guard entry."""

    trigger_id: int
    kind: IntentKind
    since: float
    tx_hash: Optional[str] = None

    def age(self, now: float) -> float:
        return now - self.since


class InFlightRegistry:
    """
    Guard set with explicit intents.

    Only the ExecutionCoordinator mutates it. acquire() is the single
    entry point for adding an id and refuses an id already held.

    Usage:
        registry = InFlightRegistry()
        if registry.acquire(trigger_id, IntentKind.START):
            result = await ledger.start_execution(trigger_id)
            if result.rejected:
                registry.release(trigger_id)
    """

    def __init__(self) -> None:
        self._intents: Dict[int, InFlightIntent] = {}

    def __contains__(self, trigger_id: object) -> bool:
        return trigger_id in self._intents

    def __len__(self) -> int:
        return len(self._intents)

    def __iter__(self) -> Iterator[InFlightIntent]:
        return iter(list(self._intents.values()))

    def acquire(
        self,
        trigger_id: int,
        kind: IntentKind,
        now: Optional[float] = None,
    ) -> bool:
        """
        Guard a trigger.

        Returns:
            True if the id was free and is now held, False if already held
        """
        if trigger_id in self._intents:
            return False
        self._intents[trigger_id] = InFlightIntent(
            trigger_id=trigger_id,
            kind=kind,
            since=time.time() if now is None else now,
        )
        return True

    def mark(
        self,
        trigger_id: int,
        kind: IntentKind,
        tx_hash: Optional[str] = None,
        now: Optional[float] = None,
    ) -> None:
        """
        Change the intent of a held id.

        The timestamp is kept unless ``now`` is given, so an intent's age
        can be measured from its latest submission.

        Raises:
            KeyError: If the id is not held
        """
        intent = self._intents[trigger_id]
        self._intents[trigger_id] = replace(
            intent,
            kind=kind,
            tx_hash=tx_hash or intent.tx_hash,
            since=intent.since if now is None else now,
        )

    def release(self, trigger_id: int) -> Optional[InFlightIntent]:
        """Drop a guard entry. Releasing an unheld id is a no-op."""
        return self._intents.pop(trigger_id, None)

    def get(self, trigger_id: int) -> Optional[InFlightIntent]:
        return self._intents.get(trigger_id)

    def ids(self) -> List[int]:
        """Guarded ids in ascending order."""
        return sorted(self._intents)

    def clear(self) -> None:
        self._intents.clear()
