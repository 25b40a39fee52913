"""
Settlement probes - detecting that a downstream trade has settled.

The trade itself happens off-ledger and is only observed through its
effect. A probe answers one question per Executing trigger per cycle:
"has it settled, and for how much?" Probes are pluggable; the default
watches the balance of the trigger's target asset.
"""
from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol, runtime_checkable

from trigger_worker.ledger import LedgerClient, Trigger

logger = logging.getLogger(__name__)


@runtime_checkable
class SettlementProbe(Protocol):
    """Decides whether an Executing trigger's trade has settled."""

    async def begin(self, trigger: Trigger) -> None:
        """Called before start-execution is submitted for the trigger."""
        ...

    async def check(self, trigger: Trigger) -> Optional[int]:
        """
        Returns:
            Output amount if settled, None if funds are not there yet
        """
        ...

    def forget(self, trigger_id: int) -> None:
        """Drop any state kept for a trigger the worker no longer follows."""
        ...


class BalanceSettlementProbe:
    """
    Settled when the holder's target-asset balance has grown by more than
    a minimum since the trigger was started.

    The balance is snapshotted in begin(), before the start is submitted,
    and the gain over that baseline is reported as the output amount. A
    gain credited to one trigger is added to the baselines of the other
    triggers on the same asset, so it is never reported twice.

    Triggers first seen Executing (adopted after a restart) have no
    baseline. Their baseline is the balance at first sight, so proceeds
    that landed before it are not counted and the trigger can time out.

    Usage:
        probe = BalanceSettlementProbe(ledger, holder="0xExecutor")
        await probe.begin(trigger)
        await ledger.start_execution(trigger.id)
        ...
        output = await probe.check(trigger)
        if output is not None:
            await ledger.complete_execution(trigger.id, output)
    """

    def __init__(
        self,
        ledger: LedgerClient,
        holder: Optional[str] = None,
        min_settled_amount: int = 0,
    ) -> None:
        """
        Args:
            ledger: Ledger client for balance reads
            holder: Address receiving trade proceeds (None = signer address)
            min_settled_amount: Gain over baseline must be strictly above this
        """
        self._ledger = ledger
        self._holder = holder
        self._min_settled_amount = min_settled_amount
        self._baselines: Dict[int, int] = {}
        self._assets: Dict[int, str] = {}
        self._claimed: Dict[int, int] = {}

    def baseline(self, trigger_id: int) -> Optional[int]:
        return self._baselines.get(trigger_id)

    async def begin(self, trigger: Trigger) -> None:
        balance = await self._balance(trigger)
        self._claimed.pop(trigger.id, None)
        self._baselines[trigger.id] = balance
        self._assets[trigger.id] = trigger.target_asset
        logger.debug(f"Trigger {trigger.id}: settlement baseline {balance}")

    async def check(self, trigger: Trigger) -> Optional[int]:
        # Same answer for a resubmitted completion
        if trigger.id in self._claimed:
            return self._claimed[trigger.id]

        balance = await self._balance(trigger)
        baseline = self._baselines.get(trigger.id)
        if baseline is None:
            self._baselines[trigger.id] = balance
            self._assets[trigger.id] = trigger.target_asset
            logger.info(
                f"Trigger {trigger.id}: no settlement baseline, counting from balance {balance}"
            )
            return None

        gained = balance - baseline
        if gained <= self._min_settled_amount:
            return None

        self._claim(trigger, gained)
        logger.debug(f"Trigger {trigger.id}: settled {gained} (balance {balance}, baseline {baseline})")
        return gained

    def forget(self, trigger_id: int) -> None:
        self._baselines.pop(trigger_id, None)
        self._assets.pop(trigger_id, None)
        self._claimed.pop(trigger_id, None)

    def _claim(self, trigger: Trigger, amount: int) -> None:
        self._claimed[trigger.id] = amount
        for other_id, asset in self._assets.items():
            if other_id == trigger.id or other_id in self._claimed:
                continue
            if asset == trigger.target_asset:
                self._baselines[other_id] += amount

    async def _balance(self, trigger: Trigger) -> int:
        return await self._ledger.get_settlement_balance(trigger.target_asset, self._holder)
