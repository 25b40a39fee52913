"""
RegistryScanner - Enumerates actionable triggers.

Reads the registry counter, then every id in 1..counter-1. The result is
a best-effort snapshot: an id that fails to read is logged and skipped
for this cycle and picked up again on the next one. The ledger remains
the durable source of truth.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from trigger_worker.ledger import LedgerClient, LedgerError, Trigger, TriggerStatus

from .concurrency import gather_or_cancel

logger = logging.getLogger(__name__)


@dataclass
class RegistrySnapshot:
    """What one scan observed."""

    triggers: List[Trigger] = field(default_factory=list)  # Pending/Executing, by id
    inactive: Dict[int, TriggerStatus] = field(default_factory=dict)
    failed_ids: List[int] = field(default_factory=list)
    next_id: int = 0

    def status_of(self, trigger_id: int) -> Optional[TriggerStatus]:
        """Observed status, or None if the id was not read this cycle."""
        for trigger in self.triggers:
            if trigger.id == trigger_id:
                return trigger.status
        return self.inactive.get(trigger_id)


class RegistryScanner:
    """
    Scans the registry id space.

    Per-id LedgerErrors are isolated. A TransportDegradedError (from the
    resilient client) propagates: if the endpoint is gone the whole cycle
    must stop.

    Usage:
        scanner = RegistryScanner(ledger)
        snapshot = await scanner.scan()
        for trigger in snapshot.triggers:
            ...
    """

    def __init__(self, ledger: LedgerClient, max_concurrent_reads: int = 8) -> None:
        self._ledger = ledger
        self._semaphore = asyncio.Semaphore(max_concurrent_reads)

    async def active_triggers(self) -> List[Trigger]:
        """Pending and Executing triggers in ascending id order."""
        return (await self.scan()).triggers

    async def scan(self) -> RegistrySnapshot:
        next_id = await self._ledger.get_trigger_count()
        snapshot = RegistrySnapshot(next_id=next_id)

        ids = list(range(1, next_id))
        if not ids:
            return snapshot

        results = await gather_or_cancel(*(self._read_one(i) for i in ids))

        for trigger_id, result in zip(ids, results):
            if isinstance(result, Trigger):
                if result.status.is_active:
                    snapshot.triggers.append(result)
                else:
                    snapshot.inactive[trigger_id] = result.status
            else:
                snapshot.failed_ids.append(trigger_id)

        if snapshot.failed_ids:
            logger.warning(
                f"Registry scan: {len(snapshot.failed_ids)} of {len(ids)} reads failed "
                f"(ids {snapshot.failed_ids[:10]}{'...' if len(snapshot.failed_ids) > 10 else ''})"
            )

        logger.debug(
            f"Registry scan: {len(snapshot.triggers)} active of {len(ids)} triggers"
        )
        return snapshot

    async def _read_one(self, trigger_id: int) -> Union[Trigger, LedgerError]:
        async with self._semaphore:
            try:
                return await self._ledger.get_trigger(trigger_id)
            except LedgerError as e:
                logger.warning(f"Failed to read trigger {trigger_id}: {e}")
                return e
