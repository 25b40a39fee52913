"""
Tests for the registry scanner.
"""
import asyncio
import pytest

from trigger_worker.core import RegistryScanner
from trigger_worker.ledger import (
    LedgerCallError,
    TransportDegradedError,
    TriggerStatus,
)


@pytest.fixture
def ledger_with(mock_ledger):
    """Configure mock_ledger with a registry of {id: Trigger | Exception}."""

    def _configure(entries):
        mock_ledger.get_trigger_count.return_value = max(entries, default=0) + 1

        async def get_trigger(trigger_id):
            entry = entries[trigger_id]
            if isinstance(entry, Exception):
                raise entry
            return entry

        mock_ledger.get_trigger.side_effect = get_trigger
        return mock_ledger

    return _configure


class TestScan:
    """Tests for enumerating triggers."""

    @pytest.mark.asyncio
    async def test_empty_registry(self, mock_ledger):
        """Counter of 1 means no triggers have been created."""
        mock_ledger.get_trigger_count.return_value = 1

        snapshot = await RegistryScanner(mock_ledger).scan()

        assert snapshot.triggers == []
        mock_ledger.get_trigger.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reads_ids_one_to_count_minus_one(self, ledger_with, make_trigger):
        ledger = ledger_with({i: make_trigger(trigger_id=i) for i in (1, 2, 3)})

        snapshot = await RegistryScanner(ledger).scan()

        assert snapshot.next_id == 4
        assert [t.id for t in snapshot.triggers] == [1, 2, 3]
        assert sorted(c.args[0] for c in ledger.get_trigger.await_args_list) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_separates_active_from_terminal(self, ledger_with, make_trigger):
        ledger = ledger_with({
            1: make_trigger(trigger_id=1, status=TriggerStatus.COMPLETED),
            2: make_trigger(trigger_id=2, status=TriggerStatus.PENDING),
            3: make_trigger(trigger_id=3, status=TriggerStatus.EXECUTING),
            4: make_trigger(trigger_id=4, status=TriggerStatus.CANCELLED),
        })

        snapshot = await RegistryScanner(ledger).scan()

        assert [t.id for t in snapshot.triggers] == [2, 3]
        assert snapshot.inactive == {
            1: TriggerStatus.COMPLETED,
            4: TriggerStatus.CANCELLED,
        }
        assert snapshot.status_of(3) == TriggerStatus.EXECUTING
        assert snapshot.status_of(4) == TriggerStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_failed_read_skipped(self, ledger_with, make_trigger):
        """A failed id is skipped this cycle, the rest still scanned."""
        ledger = ledger_with({
            1: make_trigger(trigger_id=1),
            2: LedgerCallError("bad data"),
            3: make_trigger(trigger_id=3),
        })

        snapshot = await RegistryScanner(ledger).scan()

        assert [t.id for t in snapshot.triggers] == [1, 3]
        assert snapshot.failed_ids == [2]
        assert snapshot.status_of(2) is None

    @pytest.mark.asyncio
    async def test_degraded_transport_propagates(self, ledger_with, make_trigger):
        ledger = ledger_with({
            1: make_trigger(trigger_id=1),
            2: TransportDegradedError("get_trigger(2)", 3),
        })

        with pytest.raises(TransportDegradedError):
            await RegistryScanner(ledger).scan()

    @pytest.mark.asyncio
    async def test_escalation_cancels_pending_reads(self, mock_ledger):
        """Reads still in progress do not outlive an escalated scan."""
        mock_ledger.get_trigger_count.return_value = 4
        cancelled = []

        async def get_trigger(trigger_id):
            if trigger_id == 1:
                await asyncio.sleep(0)
                raise TransportDegradedError("get_trigger(1)", 3)
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                cancelled.append(trigger_id)
                raise

        mock_ledger.get_trigger.side_effect = get_trigger

        with pytest.raises(TransportDegradedError):
            await RegistryScanner(mock_ledger).scan()

        assert sorted(cancelled) == [2, 3]

    @pytest.mark.asyncio
    async def test_counter_failure_propagates(self, mock_ledger):
        mock_ledger.get_trigger_count.side_effect = LedgerCallError("revert")

        with pytest.raises(LedgerCallError):
            await RegistryScanner(mock_ledger).scan()

    @pytest.mark.asyncio
    async def test_active_triggers(self, ledger_with, make_trigger):
        ledger = ledger_with({
            1: make_trigger(trigger_id=1, status=TriggerStatus.FAILED),
            2: make_trigger(trigger_id=2),
        })

        triggers = await RegistryScanner(ledger).active_triggers()

        assert [t.id for t in triggers] == [2]
