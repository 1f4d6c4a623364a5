"""
Reconciliation Engine Package.

============================================================
PURPOSE
============================================================
Keeps the local order and fill ledger consistent with the
authoritative state held by remote trading venues.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for order state."
    "Every local correction is audited."

AUTHORITY BOUNDARIES:
    CAN:
        - Read remote order state
        - Correct local order status and fill quantities
        - Record synthetic trades for missing fills
        - Write audit and reconciliation log entries

    MUST NOT:
        - Submit, cancel or route orders
        - Change remote state

============================================================
MODULES
============================================================
- types: Order snapshots, discrepancies, results
- config: Service configuration
- errors: Error taxonomy and codes
- detector: Discrepancy detection
- resolver: Corrective actions
- reconciler: Account and trading-mode reconciliation
- orchestrator: Reconciliation cycles
- service: Lifecycle, scheduling, operator entry points
- observers: Typed event notifications
- metrics: Cycle counters
- alerting: Telegram alerts
- adapters: Venue adapter interface and factory
- persistence: Persistence interface
- models / database / repository: SQLAlchemy persistence

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    TradingMode,
    OrderStatus,
    Severity,
    MismatchField,
    ReconciliationLogStatus,
    ServiceState,
    # Dataclasses
    AccountRecord,
    LocalOrder,
    RemoteOrderSnapshot,
    FieldMismatch,
    Discrepancy,
    SyntheticTrade,
    AuditEvent,
    ReconciliationLogEntry,
    ResolutionOutcome,
    AccountReconciliationResult,
    TradingModeResult,
    ReconciliationRunResult,
    ManualReconciliationResult,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    RetryConfig,
    TimeoutConfig,
    DetectionConfig,
    SchedulerConfig,
    AlertingConfig,
    DatabaseConfig,
    ReconciliationServiceConfig,
)

# ============================================================
# ERRORS
# ============================================================
from .errors import (
    ErrorCategory,
    ErrorSeverity,
    ErrorCodeInfo,
    ERROR_CODES,
    get_error_info,
    is_retryable,
    ReconciliationEngineError,
    AdapterUnavailableError,
    RemoteFetchError,
    ResolutionError,
    StaleOrderError,
    PersistenceError,
    CycleError,
    ManualReconciliationError,
)

# ============================================================
# COMPONENTS
# ============================================================
from .detector import DiscrepancyDetector
from .resolver import DiscrepancyResolver, synthetic_trade_id
from .reconciler import AccountReconciler, OrderLockRegistry, TradingModeReconciler
from .orchestrator import ReconciliationOrchestrator
from .metrics import ReconciliationMetrics
from .observers import ObserverRegistry, ReconciliationObserver
from .alerting import Alert, AlertingObserver, AlertSeverity, AlertType, TelegramAlerter
from .service import OrderReconciliationService, create_service

# ============================================================
# ADAPTERS
# ============================================================
from .adapters import (
    AdapterConfig,
    AdapterFactory,
    ExchangeAdapter,
    MockExchangeAdapter,
    normalize_status,
)

# ============================================================
# PERSISTENCE
# ============================================================
from .persistence import ReconciliationPersistence
from .database import TradingModeDatabase
from .repository import SqlAlchemyReconciliationRepository


__version__ = "1.0.0"


__all__ = [
    # Types
    "TradingMode",
    "OrderStatus",
    "Severity",
    "MismatchField",
    "ReconciliationLogStatus",
    "ServiceState",
    "AccountRecord",
    "LocalOrder",
    "RemoteOrderSnapshot",
    "FieldMismatch",
    "Discrepancy",
    "SyntheticTrade",
    "AuditEvent",
    "ReconciliationLogEntry",
    "ResolutionOutcome",
    "AccountReconciliationResult",
    "TradingModeResult",
    "ReconciliationRunResult",
    "ManualReconciliationResult",
    # Config
    "RetryConfig",
    "TimeoutConfig",
    "DetectionConfig",
    "SchedulerConfig",
    "AlertingConfig",
    "DatabaseConfig",
    "ReconciliationServiceConfig",
    # Errors
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorCodeInfo",
    "ERROR_CODES",
    "get_error_info",
    "is_retryable",
    "ReconciliationEngineError",
    "AdapterUnavailableError",
    "RemoteFetchError",
    "ResolutionError",
    "StaleOrderError",
    "PersistenceError",
    "CycleError",
    "ManualReconciliationError",
    # Components
    "DiscrepancyDetector",
    "DiscrepancyResolver",
    "synthetic_trade_id",
    "AccountReconciler",
    "OrderLockRegistry",
    "TradingModeReconciler",
    "ReconciliationOrchestrator",
    "ReconciliationMetrics",
    "ObserverRegistry",
    "ReconciliationObserver",
    "Alert",
    "AlertingObserver",
    "AlertSeverity",
    "AlertType",
    "TelegramAlerter",
    "OrderReconciliationService",
    "create_service",
    # Adapters
    "AdapterConfig",
    "AdapterFactory",
    "ExchangeAdapter",
    "MockExchangeAdapter",
    "normalize_status",
    # Persistence
    "ReconciliationPersistence",
    "TradingModeDatabase",
    "SqlAlchemyReconciliationRepository",
]
