"""
Monitoring layer test fixtures.

Tests health checks and alerting.
"""
import pytest
from datetime import datetime, timezone, timedelta
from unittest.mock import MagicMock, AsyncMock

from trigger_worker.core import InFlightRegistry
from trigger_worker.monitoring import AlertManager, HealthChecker


# =============================================================================
# Mock Component Fixtures
# =============================================================================


@pytest.fixture
def mock_ledger_healthy():
    ledger = MagicMock()
    ledger.ping = AsyncMock(return_value=12345)
    return ledger


@pytest.fixture
def mock_ledger_down():
    from trigger_worker.ledger import LedgerTransportError

    ledger = MagicMock()
    ledger.ping = AsyncMock(side_effect=LedgerTransportError("connection refused"))
    return ledger


@pytest.fixture
def mock_scheduler():
    """Running scheduler with a recent cycle."""
    scheduler = MagicMock()
    scheduler.is_running = True
    scheduler.is_halted = False
    scheduler.stats.cycles_run = 10
    scheduler.stats.last_cycle_at = datetime.now(timezone.utc) - timedelta(seconds=5)
    scheduler.stats.last_error = None
    return scheduler


@pytest.fixture
def guard():
    return InFlightRegistry()


@pytest.fixture
def health_checker(mock_ledger_healthy, mock_scheduler, guard):
    return HealthChecker(
        ledger=mock_ledger_healthy,
        scheduler=mock_scheduler,
        guard=guard,
        cycle_staleness_threshold=180,
        intent_age_threshold=7200,
    )


# =============================================================================
# Alerting Fixtures
# =============================================================================


@pytest.fixture
def mock_telegram_api():
    """Mock Telegram API."""
    api = MagicMock()
    api.send_message = MagicMock(return_value={"ok": True})
    return api


@pytest.fixture
def alert_manager(mock_telegram_api):
    """Alert manager with mocked Telegram."""
    return AlertManager(
        telegram_bot_token="test_token",
        telegram_chat_id="test_chat",
        _telegram_api=mock_telegram_api,
    )
