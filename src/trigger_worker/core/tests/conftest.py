"""
Core layer test fixtures.

Core tests verify orchestration logic, so the ledger is an AsyncMock
and time is a fixed clock.
"""
import pytest
from decimal import Decimal
from unittest.mock import MagicMock, AsyncMock

from trigger_worker.core import (
    CoordinatorConfig,
    ExecutionCoordinator,
    InFlightRegistry,
    MonitoredFeed,
    OracleSnapshot,
    RegistrySnapshot,
)
from trigger_worker.ledger import (
    Direction,
    TransitionResult,
    Trigger,
    TriggerStatus,
)


NOW = 1_700_000_000.0


# =============================================================================
# Trigger Fixtures
# =============================================================================


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_trigger():
    """Factory for Trigger snapshots."""

    def _make(
        trigger_id=1,
        watch_index=3,
        threshold="100",
        direction=Direction.ABOVE,
        status=TriggerStatus.PENDING,
        expires_at=None,
        execution_started_at=None,
        target_asset="0x" + "33" * 20,
    ):
        return Trigger(
            id=trigger_id,
            owner="0x" + "44" * 20,
            watch_index=watch_index,
            target_asset=target_asset,
            input_amount=1_000_000,
            max_slippage=50,
            threshold_price=Decimal(threshold),
            direction=direction,
            status=status,
            created_at=int(NOW) - 3600,
            expires_at=expires_at,
            execution_started_at=execution_started_at,
        )

    return _make


@pytest.fixture
def registry():
    """Factory for RegistrySnapshot."""

    def _make(triggers=(), inactive=None, failed_ids=()):
        return RegistrySnapshot(
            triggers=list(triggers),
            inactive=dict(inactive or {}),
            failed_ids=list(failed_ids),
            next_id=1 + len(triggers) + len(inactive or {}) + len(failed_ids),
        )

    return _make


@pytest.fixture
def prices():
    """Factory for OracleSnapshot from {feed_index: price}."""

    def _make(values=None, failed=()):
        return OracleSnapshot(
            prices={k: Decimal(str(v)) for k, v in (values or {}).items()},
            failed=list(failed),
            fetched_at=NOW,
        )

    return _make


@pytest.fixture
def feeds():
    return MonitoredFeed.parse_list("BTC:3,ETH:4,HYPE:150")


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def mock_ledger():
    """LedgerClient mock where every transition is accepted."""
    ledger = MagicMock()
    ledger.get_trigger_count = AsyncMock(return_value=1)
    ledger.get_trigger = AsyncMock()
    ledger.get_price = AsyncMock(return_value=Decimal("100"))
    ledger.get_settlement_balance = AsyncMock(return_value=0)
    ledger.start_execution = AsyncMock(return_value=TransitionResult.accept("0xstart"))
    ledger.complete_execution = AsyncMock(return_value=TransitionResult.accept("0xdone"))
    ledger.mark_failed = AsyncMock(return_value=TransitionResult.accept("0xfail"))
    ledger.ping = AsyncMock(return_value=12345)
    return ledger


@pytest.fixture
def mock_probe():
    """Settlement probe that reports 'not settled' by default."""
    probe = MagicMock()
    probe.begin = AsyncMock()
    probe.check = AsyncMock(return_value=None)
    return probe


@pytest.fixture
def clock():
    """Mutable fixed clock; set clock.now to move time."""
    c = MagicMock()
    c.now = NOW
    c.side_effect = lambda: c.now
    return c


@pytest.fixture
def coordinator(mock_ledger, mock_probe, clock):
    return ExecutionCoordinator(
        ledger=mock_ledger,
        settlement_probe=mock_probe,
        config=CoordinatorConfig(execution_timeout_seconds=3600, stale_intent_seconds=300),
        guard=InFlightRegistry(),
        clock=clock,
    )
