"""
Reconciliation Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the Order State Reconciliation Engine.

CRITICAL CONSTRAINTS:
- One reconciliation cycle at a time
- Bounded remote calls (timeouts)
- Retries only on read-only remote fetches

============================================================
"""

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from dotenv import load_dotenv

from .types import TradingMode


# ============================================================
# RETRY CONFIGURATION
# ============================================================

@dataclass
class RetryConfig:
    """
    Retry configuration for remote status fetches.

    SAFETY: Corrective writes are never retried in-cycle.
    """

    max_attempts: int = 3
    """Total attempts per remote fetch (1 = no retry)."""

    initial_delay_seconds: float = 0.5
    """Delay before the first retry."""

    max_delay_seconds: float = 5.0
    """Maximum delay between retries."""

    backoff_multiplier: float = 2.0
    """Exponential backoff multiplier."""

    retry_on_timeout: bool = True
    """Whether to retry a timed out fetch."""

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_delay_seconds * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_seconds)


# ============================================================
# TIMEOUT CONFIGURATION
# ============================================================

@dataclass
class TimeoutConfig:
    """Timeout configuration."""

    remote_fetch_timeout_seconds: float = 5.0
    """Bound on a single remote order status fetch."""

    adapter_creation_timeout_seconds: float = 10.0
    """Bound on building an exchange adapter."""


# ============================================================
# DETECTION CONFIGURATION
# ============================================================

@dataclass
class DetectionConfig:
    """Thresholds used by the discrepancy detector."""

    quantity_epsilon: Decimal = Decimal("0.00001")
    """Absolute filled-quantity tolerance."""

    quantity_high_severity_ratio: Decimal = Decimal("0.01")
    """Filled difference above this share of local filled is HIGH."""

    price_tolerance_ratio: Decimal = Decimal("0.001")
    """Average price deviation tolerated (0.1%)."""

    price_high_severity_ratio: Decimal = Decimal("0.01")
    """Average price deviation above this is HIGH (1%)."""


# ============================================================
# SCHEDULER CONFIGURATION
# ============================================================

@dataclass
class SchedulerConfig:
    """Reconciliation cadence and batching."""

    reconciliation_interval_seconds: float = 300.0
    """Interval between scheduled cycles."""

    batch_size: int = 100
    """Maximum orders fetched per account per cycle."""

    alert_threshold: int = 10
    """Alert when a cycle finds more discrepancies than this."""

    max_concurrent_accounts: int = 1
    """Accounts reconciled in parallel per trading mode (1 = sequential)."""

    trading_modes: List[str] = field(default_factory=lambda: [m.value for m in TradingMode])
    """Trading modes visited each cycle."""


# ============================================================
# ALERTING CONFIGURATION
# ============================================================

@dataclass
class AlertingConfig:
    """Telegram alerting for reconciliation events."""

    enabled: bool = True
    """Whether alerting is enabled."""

    telegram_bot_token_env: str = "TELEGRAM_BOT_TOKEN"
    """Environment variable for Telegram bot token."""

    telegram_chat_id_env: str = "TELEGRAM_CHAT_ID"
    """Environment variable for Telegram chat ID."""

    min_interval_seconds: float = 5.0
    """Minimum interval between alerts."""

    max_alerts_per_minute: int = 10
    """Maximum alerts per minute."""

    min_severity: str = "WARNING"
    """Minimum alert severity sent (INFO, WARNING, ERROR, CRITICAL)."""

    alert_on_critical_discrepancy: bool = True
    """Alert on each CRITICAL discrepancy."""

    alert_on_cycle_error: bool = True
    """Alert on cycle-level failures."""


# ============================================================
# DATABASE CONFIGURATION
# ============================================================

@dataclass
class DatabaseConfig:
    """One database per trading mode."""

    urls: Dict[str, str] = field(default_factory=dict)
    """Trading mode -> SQLAlchemy async URL."""

    pool_size: int = 5
    """Connection pool size (ignored by SQLite)."""

    max_overflow: int = 10
    """Connections above pool size."""

    echo: bool = False
    """Echo SQL statements."""

    create_schema: bool = False
    """Create tables on initialize (local and test databases)."""

    def url_for(self, trading_mode: str) -> Optional[str]:
        return self.urls.get(trading_mode)


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class ReconciliationServiceConfig:
    """Master configuration for the reconciliation service."""

    retry: RetryConfig = field(default_factory=RetryConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    alerting: AlertingConfig = field(default_factory=AlertingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)

    def summary(self) -> Dict[str, object]:
        """Public view used by get_metrics()."""
        return {
            "reconciliationIntervalSeconds": self.scheduler.reconciliation_interval_seconds,
            "batchSize": self.scheduler.batch_size,
            "alertThreshold": self.scheduler.alert_threshold,
            "maxConcurrentAccounts": self.scheduler.max_concurrent_accounts,
            "tradingModes": list(self.scheduler.trading_modes),
            "retryAttempts": self.retry.max_attempts,
            "remoteFetchTimeoutSeconds": self.timeout.remote_fetch_timeout_seconds,
        }

    @classmethod
    def for_testing(cls) -> "ReconciliationServiceConfig":
        """Fast cadence, single fetch attempt, in-memory SQLite."""
        return cls(
            retry=RetryConfig(max_attempts=1, initial_delay_seconds=0.0),
            timeout=TimeoutConfig(remote_fetch_timeout_seconds=1.0),
            scheduler=SchedulerConfig(reconciliation_interval_seconds=0.05),
            alerting=AlertingConfig(enabled=False),
            database=DatabaseConfig(
                urls={
                    "paper": "sqlite+aiosqlite:///:memory:",
                    "live": "sqlite+aiosqlite:///:memory:",
                },
                create_schema=True,
            ),
        )

    @classmethod
    def for_production(cls) -> "ReconciliationServiceConfig":
        """Production defaults; database URLs come from the environment."""
        config = cls.from_env()
        config.alerting.enabled = True
        config.database.create_schema = False
        return config

    @classmethod
    def from_env(cls) -> "ReconciliationServiceConfig":
        """
        Build configuration from environment variables.

        Reads a ``.env`` file when present.
        """
        load_dotenv()

        config = cls()
        scheduler = config.scheduler
        scheduler.reconciliation_interval_seconds = float(os.environ.get(
            "RECONCILIATION_INTERVAL_SECONDS", scheduler.reconciliation_interval_seconds
        ))
        scheduler.batch_size = int(os.environ.get(
            "RECONCILIATION_BATCH_SIZE", scheduler.batch_size
        ))
        scheduler.alert_threshold = int(os.environ.get(
            "RECONCILIATION_ALERT_THRESHOLD", scheduler.alert_threshold
        ))
        scheduler.max_concurrent_accounts = int(os.environ.get(
            "RECONCILIATION_MAX_CONCURRENT_ACCOUNTS", scheduler.max_concurrent_accounts
        ))
        modes = os.environ.get("RECONCILIATION_TRADING_MODES")
        if modes:
            scheduler.trading_modes = [m.strip() for m in modes.split(",") if m.strip()]

        config.retry.max_attempts = int(os.environ.get(
            "RECONCILIATION_RETRY_ATTEMPTS", config.retry.max_attempts
        ))
        config.timeout.remote_fetch_timeout_seconds = float(os.environ.get(
            "RECONCILIATION_FETCH_TIMEOUT_SECONDS", config.timeout.remote_fetch_timeout_seconds
        ))

        for mode in scheduler.trading_modes:
            url = os.environ.get(f"{mode.upper()}_DATABASE_URL")
            if url:
                config.database.urls[mode] = url

        return config
