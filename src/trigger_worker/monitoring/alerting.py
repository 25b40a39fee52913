"""
Alert Manager for Telegram notifications.

Sends operator alerts with deduplication to prevent spam during outages.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)


@dataclass
class AlertRecord:
    """Tracks when an alert was last sent."""

    key: str
    last_sent: float  # Unix timestamp
    count: int = 1


class AlertManager:
    """
    Manages alerts with deduplication.

    Sends alerts via Telegram and prevents duplicate alerts
    within a cooldown window.

    Usage:
        manager = AlertManager(
            telegram_bot_token="...",
            telegram_chat_id="...",
        )

        manager.alert_worker_halted("get_trigger_count failed after 3 attempts")
        manager.alert_trigger_completed(7, 1_000_000, "0xabc")
    """

    DEFAULT_COOLDOWN = 300  # 5 minutes

    def __init__(
        self,
        telegram_bot_token: Optional[str] = None,
        telegram_chat_id: Optional[str] = None,
        default_cooldown: int = DEFAULT_COOLDOWN,
        _telegram_api: Optional[Any] = None,  # For testing
    ) -> None:
        """
        Initialize the alert manager.

        Args:
            telegram_bot_token: Bot token from @BotFather
            telegram_chat_id: Chat ID to send messages to
            default_cooldown: Default cooldown between duplicate alerts
            _telegram_api: Injected API client for testing
        """
        self._bot_token = telegram_bot_token
        self._chat_id = telegram_chat_id
        self._default_cooldown = default_cooldown
        self._telegram_api = _telegram_api

        self._sent_alerts: Dict[str, AlertRecord] = {}

    @property
    def is_configured(self) -> bool:
        return self._telegram_api is not None or bool(self._bot_token and self._chat_id)

    def send_alert(
        self,
        title: str,
        message: str,
        dedup_key: Optional[str] = None,
        cooldown_seconds: Optional[int] = None,
        priority: str = "normal",
    ) -> bool:
        """
        Send an alert via Telegram.

        Args:
            title: Alert title
            message: Alert message body
            dedup_key: Key for deduplication (None to skip dedup)
            cooldown_seconds: Cooldown for this specific alert
            priority: Priority level ("low", "normal", "high", "critical")

        Returns:
            True if alert was sent, False if deduplicated or failed
        """
        if dedup_key:
            cooldown = cooldown_seconds or self._default_cooldown
            if not self._should_send(dedup_key, cooldown):
                logger.debug(f"Deduplicated alert: {dedup_key}")
                return False

        formatted = self._format_message(title, message, priority)
        success = self._send_telegram(formatted)

        if dedup_key and success:
            self._record_sent(dedup_key)

        return success

    def alert_worker_halted(self, error: str) -> bool:
        """Ledger unreachable; cycling stopped until the probe succeeds."""
        message = f"""
Cycling halted, probing for recovery.
Error: {error}
Time: {datetime.now(timezone.utc).isoformat()}
"""
        return self.send_alert(
            title="🔴 Worker Halted",
            message=message,
            dedup_key="worker_halted",
            cooldown_seconds=900,
            priority="critical",
        )

    def alert_worker_recovered(self, downtime_seconds: float) -> bool:
        message = f"""
Ledger reachable again, cycling resumed.
Downtime: {downtime_seconds:.0f}s
"""
        return self.send_alert(
            title="🟢 Worker Recovered",
            message=message,
            dedup_key="worker_recovered",
            cooldown_seconds=60,
            priority="normal",
        )

    def alert_trigger_completed(
        self,
        trigger_id: int,
        output_amount: int,
        tx_hash: Optional[str] = None,
    ) -> bool:
        message = f"""
Trigger: #{trigger_id}
Output: {output_amount}
"""
        if tx_hash:
            message += f"Tx: {tx_hash}"

        return self.send_alert(
            title="✅ Trigger Completed",
            message=message,
            dedup_key=f"completed_{trigger_id}",
            cooldown_seconds=3600,
            priority="normal",
        )

    def alert_trigger_failed(self, trigger_id: int, reason: str) -> bool:
        message = f"""
Trigger: #{trigger_id}
Reason: {reason}
"""
        return self.send_alert(
            title="❌ Trigger Failed",
            message=message,
            dedup_key=f"failed_{trigger_id}",
            cooldown_seconds=3600,
            priority="high",
        )

    def alert_health_issue(
        self,
        component: str,
        status: str,
        message: str,
    ) -> bool:
        """
        Send a health issue alert.

        Args:
            component: Component name (ledger, scheduler, ...)
            status: Health status (UNHEALTHY, DEGRADED, etc.)
            message: Description of the issue

        Returns:
            True if sent
        """
        emoji = "🔴" if status.upper() == "UNHEALTHY" else "🟡"
        title = f"{emoji} Health Issue: {component}"

        formatted_message = f"""
Component: {component}
Status: {status}
Details: {message}
Time: {datetime.now(timezone.utc).isoformat()}
"""

        return self.send_alert(
            title=title,
            message=formatted_message,
            dedup_key=f"health_{component}_{status}",
            cooldown_seconds=300,
            priority="high" if status.upper() == "UNHEALTHY" else "normal",
        )

    def _should_send(self, key: str, cooldown: int) -> bool:
        """Check if alert should be sent based on cooldown."""
        if key not in self._sent_alerts:
            return True

        record = self._sent_alerts[key]
        return (time.time() - record.last_sent) >= cooldown

    def _record_sent(self, key: str) -> None:
        now = time.time()

        if key in self._sent_alerts:
            self._sent_alerts[key].last_sent = now
            self._sent_alerts[key].count += 1
        else:
            self._sent_alerts[key] = AlertRecord(key=key, last_sent=now)

    def _format_message(self, title: str, message: str, priority: str) -> str:
        """Format alert message for Telegram."""
        priority_markers = {
            "critical": "🚨🚨🚨",
            "high": "⚠️",
            "normal": "",
            "low": "ℹ️",
        }

        marker = priority_markers.get(priority, "")
        header = f"{marker} *{title}*" if marker else f"*{title}*"

        return f"{header}\n\n{message.strip()}"

    def _send_telegram(self, text: str) -> bool:
        """Send message via Telegram API."""
        if self._telegram_api:
            try:
                self._telegram_api.send_message(
                    chat_id=self._chat_id,
                    text=text,
                    parse_mode="Markdown",
                )
                return True
            except Exception as e:
                logger.error(f"Telegram API error: {e}")
                return False

        if not self._bot_token or not self._chat_id:
            logger.debug("Telegram credentials not configured")
            return False

        url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
        payload = {
            "chat_id": self._chat_id,
            "text": text,
            "parse_mode": "Markdown",
        }

        try:
            response = requests.post(url, json=payload, timeout=10)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

        logger.info(f"Sent Telegram alert: {text[:50]}...")
        return True

    def clear_dedup_cache(self) -> None:
        self._sent_alerts.clear()

    def get_alert_stats(self) -> Dict[str, int]:
        return {
            "unique_alerts": len(self._sent_alerts),
            "total_sent": sum(r.count for r in self._sent_alerts.values()),
        }
