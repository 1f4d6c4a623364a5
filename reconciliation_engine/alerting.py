"""
Reconciliation Engine - Alerting.

============================================================
PURPOSE
============================================================
Sends alerts for reconciliation events via Telegram.

ALERT TYPES:
- High discrepancy count in a cycle
- Critical order state mismatches
- Cycle failures

SAFETY REQUIREMENTS:
- Rate limiting to prevent spam
- Alert failures never affect reconciliation

============================================================
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

import aiohttp

from .config import AlertingConfig
from .observers import ReconciliationObserver
from .types import Discrepancy, ReconciliationRunResult, Severity, utc_now


logger = logging.getLogger(__name__)


# ============================================================
# ALERT TYPES
# ============================================================

class AlertSeverity(Enum):
    """Alert severity levels."""

    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


_SEVERITY_VALUE = {
    AlertSeverity.INFO: 0,
    AlertSeverity.WARNING: 1,
    AlertSeverity.ERROR: 2,
    AlertSeverity.CRITICAL: 3,
}


class AlertType(Enum):
    """Types of alerts."""

    HIGH_DISCREPANCY_COUNT = "HIGH_DISCREPANCY_COUNT"
    """Cycle found more discrepancies than the threshold."""

    RECONCILIATION_MISMATCH = "RECONCILIATION_MISMATCH"
    """Critical order state mismatch detected."""

    CYCLE_ERROR = "CYCLE_ERROR"
    """Reconciliation cycle failed."""


@dataclass
class Alert:
    """An alert to be sent."""

    alert_type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utc_now)
    order_id: Optional[int] = None
    trading_mode: Optional[str] = None


# ============================================================
# TELEGRAM ALERTER
# ============================================================

class TelegramAlerter:
    """
    Sends alerts via Telegram.

    Features:
    - Rate limiting
    - Severity filtering
    - Alert history
    """

    def __init__(self, config: AlertingConfig):
        """
        Initialize Telegram alerter.

        Args:
            config: Alerting configuration
        """
        self._config = config
        self._min_severity = AlertSeverity(config.min_severity.upper())

        self._bot_token = os.environ.get(config.telegram_bot_token_env, "")
        self._chat_id = os.environ.get(config.telegram_chat_id_env, "")

        self._last_alert_time: Optional[datetime] = None
        self._alerts_this_minute: List[datetime] = []

        self._session: Optional[aiohttp.ClientSession] = None

        self._history: List[Alert] = []
        self._max_history = 100

    @property
    def is_configured(self) -> bool:
        """Check if Telegram is configured."""
        return bool(self._bot_token and self._chat_id)

    async def send_alert(self, alert: Alert) -> bool:
        """
        Send an alert.

        Args:
            alert: Alert to send

        Returns:
            Whether alert was sent
        """
        if not self._config.enabled:
            return False

        if _SEVERITY_VALUE[alert.severity] < _SEVERITY_VALUE[self._min_severity]:
            return False

        self._history.append(alert)
        if len(self._history) > self._max_history:
            self._history.pop(0)

        if not self._can_send():
            logger.warning(f"Alert rate limited: {alert.message}")
            return False

        return await self._send_telegram(alert)

    async def _send_telegram(self, alert: Alert) -> bool:
        """Send alert via Telegram API."""
        if not self.is_configured:
            logger.debug(f"Telegram not configured, logging alert: {alert.message}")
            return False

        message = self._format_message(alert)

        try:
            if self._session is None:
                self._session = aiohttp.ClientSession()

            url = f"https://api.telegram.org/bot{self._bot_token}/sendMessage"
            payload = {
                "chat_id": self._chat_id,
                "text": message,
                "parse_mode": "HTML",
            }

            async with self._session.post(url, json=payload) as response:
                if response.status == 200:
                    self._record_sent()
                    logger.info(f"Alert sent: {alert.alert_type.value}")
                    return True
                body = await response.text()
                logger.error(f"Telegram API error {response.status}: {body}")
                return False

        except Exception as e:
            logger.error(f"Failed to send Telegram alert: {e}")
            return False

    def _format_message(self, alert: Alert) -> str:
        """Format alert message for Telegram."""
        lines = [
            f"<b>{alert.alert_type.value}</b>",
            f"<b>Severity:</b> {alert.severity.value}",
            f"<b>Time:</b> {alert.timestamp.strftime('%Y-%m-%d %H:%M:%S')} UTC",
            "",
            alert.message,
        ]

        if alert.trading_mode:
            lines.append(f"\n<b>Mode:</b> {alert.trading_mode}")

        if alert.order_id is not None:
            lines.append(f"<b>Order:</b> <code>{alert.order_id}</code>")

        if alert.details:
            lines.append("\n<b>Details:</b>")
            for key, value in alert.details.items():
                lines.append(f"  - {key}: {value}")

        return "\n".join(lines)

    def _can_send(self) -> bool:
        """Check if we can send an alert (rate limiting)."""
        now = utc_now()

        if self._last_alert_time:
            elapsed = (now - self._last_alert_time).total_seconds()
            if elapsed < self._config.min_interval_seconds:
                return False

        minute_ago = now - timedelta(minutes=1)
        self._alerts_this_minute = [
            t for t in self._alerts_this_minute if t > minute_ago
        ]

        return len(self._alerts_this_minute) < self._config.max_alerts_per_minute

    def _record_sent(self) -> None:
        now = utc_now()
        self._last_alert_time = now
        self._alerts_this_minute.append(now)

    def get_history(self, limit: int = 10) -> List[Alert]:
        """Get alert history."""
        return self._history[-limit:]

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None


# ============================================================
# ALERT HELPER FUNCTIONS
# ============================================================

def create_high_discrepancy_alert(result: ReconciliationRunResult, threshold: int) -> Alert:
    """Create a high discrepancy count alert."""
    return Alert(
        alert_type=AlertType.HIGH_DISCREPANCY_COUNT,
        severity=AlertSeverity.ERROR,
        message=(
            f"Reconciliation found {result.total_discrepancies} discrepancies "
            f"(threshold {threshold})"
        ),
        details={
            "run_id": result.run_id,
            "resolved": result.total_resolved,
            "modes": ", ".join(
                f"{mode}={r.discrepancies}" for mode, r in result.modes.items()
            ),
        },
    )


def create_reconciliation_alert(trading_mode: str, discrepancy: Discrepancy) -> Alert:
    """Create a critical order state mismatch alert."""
    return Alert(
        alert_type=AlertType.RECONCILIATION_MISMATCH,
        severity=AlertSeverity.CRITICAL,
        message=f"Critical order state mismatch: {', '.join(discrepancy.fields)}",
        order_id=discrepancy.order_id,
        trading_mode=trading_mode,
        details={
            "account_id": discrepancy.account_id,
            "exchange_order_id": discrepancy.exchange_order_id,
        },
    )


def create_cycle_error_alert(error: Exception) -> Alert:
    """Create a cycle failure alert."""
    return Alert(
        alert_type=AlertType.CYCLE_ERROR,
        severity=AlertSeverity.CRITICAL,
        message=f"Reconciliation cycle failed: {error}",
        details={"error_type": type(error).__name__},
    )


# ============================================================
# ALERTING OBSERVER
# ============================================================

class AlertingObserver(ReconciliationObserver):
    """Turns reconciliation events into Telegram alerts."""

    def __init__(self, alerter: TelegramAlerter, config: AlertingConfig):
        self._alerter = alerter
        self._config = config

    async def on_high_discrepancy_alert(
        self,
        result: ReconciliationRunResult,
        threshold: int,
    ) -> None:
        await self._alerter.send_alert(create_high_discrepancy_alert(result, threshold))

    async def on_discrepancy_detected(
        self,
        trading_mode: str,
        discrepancy: Discrepancy,
    ) -> None:
        if self._config.alert_on_critical_discrepancy and discrepancy.severity == Severity.CRITICAL:
            await self._alerter.send_alert(create_reconciliation_alert(trading_mode, discrepancy))

    async def on_cycle_error(self, error: Exception) -> None:
        if self._config.alert_on_cycle_error:
            await self._alerter.send_alert(create_cycle_error_alert(error))

    async def on_service_stopped(self) -> None:
        await self._alerter.close()
