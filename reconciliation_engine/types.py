"""
Reconciliation Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the Order State Reconciliation Engine.

CRITICAL PRINCIPLE:
    "The exchange is authoritative for order state."
    "Every local correction is audited."

============================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# ============================================================
# ENUMS
# ============================================================

class TradingMode(Enum):
    """Isolated partition of accounts and orders."""

    PAPER = "paper"
    """Simulated trading."""

    LIVE = "live"
    """Real funds."""


class OrderStatus(Enum):
    """
    Local order status vocabulary.

    The reconciler only selects OPEN and PARTIALLY_FILLED orders.
    """

    PENDING = "pending"
    OPEN = "open"
    PARTIALLY_FILLED = "partially_filled"
    FILLED = "filled"
    CANCELLED = "cancelled"
    REJECTED = "rejected"

    @classmethod
    def reconcilable(cls) -> List["OrderStatus"]:
        """Statuses eligible for reconciliation."""
        return [cls.OPEN, cls.PARTIALLY_FILLED]


class Severity(Enum):
    """Discrepancy severity, ranked LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def highest(cls, severities: List["Severity"]) -> "Severity":
        """Highest severity of a list, LOW when empty."""
        if not severities:
            return cls.LOW
        return max(severities, key=lambda s: s.rank)


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class MismatchField(Enum):
    """Field in which local and remote state diverge."""

    STATUS = "status"
    FILLED_QUANTITY = "filled_quantity"
    AVG_FILL_PRICE = "avg_fill_price"
    MISSING_FILLS = "missing_fills"


class ReconciliationLogStatus(Enum):
    """Lifecycle of a reconciliation log entry."""

    DISCREPANCY = "discrepancy"
    RESOLVED = "resolved"


class ServiceState(Enum):
    """Scheduler lifecycle state."""

    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


# ============================================================
# LOCAL STATE
# ============================================================

@dataclass
class AccountRecord:
    """Trading account within one trading mode."""

    id: int
    """Account identifier."""

    exchange: str
    """Venue identifier used to build an adapter."""

    name: str = ""
    """Display name."""

    credentials: Any = None
    """Venue credentials, as stored (JSON text) or already decoded."""

    status: str = "active"
    """Account status."""


@dataclass
class LocalOrder:
    """
    Order as the platform believes it to be.

    Mutated only by the execution path and the resolver.
    """

    id: int
    account_id: int
    symbol: str
    side: str
    quantity: Decimal
    status: OrderStatus = OrderStatus.OPEN
    exchange_order_id: Optional[str] = None
    filled_quantity: Decimal = Decimal("0")
    remaining_quantity: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    price: Optional[Decimal] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def apply_fill_quantity(
        self,
        filled: Decimal,
        closed_status: Optional["OrderStatus"] = None,
    ) -> None:
        """
        Set filled quantity and derive remaining quantity and status.

        Args:
            filled: New filled quantity
            closed_status: CANCELLED/REJECTED reported by the venue; kept
                instead of PARTIALLY_FILLED/OPEN when quantity remains
        """
        remaining = self.quantity - filled
        self.filled_quantity = filled
        self.remaining_quantity = max(Decimal("0"), remaining)
        if remaining <= 0:
            self.status = OrderStatus.FILLED
        elif closed_status in (OrderStatus.CANCELLED, OrderStatus.REJECTED):
            self.status = closed_status
        elif filled <= 0:
            self.status = OrderStatus.OPEN
        else:
            self.status = OrderStatus.PARTIALLY_FILLED


# ============================================================
# REMOTE STATE
# ============================================================

@dataclass
class RemoteOrderSnapshot:
    """
    Order state reported by the venue.

    Transient; exists only for the duration of one comparison.
    """

    status: OrderStatus
    """Normalized remote status."""

    filled_quantity: Decimal = Decimal("0")
    """Remote filled quantity."""

    avg_fill_price: Optional[Decimal] = None
    """Remote average fill price."""

    raw: Dict[str, Any] = field(default_factory=dict)
    """Raw venue payload."""


# ============================================================
# DISCREPANCIES
# ============================================================

@dataclass
class FieldMismatch:
    """One diverging field."""

    field: MismatchField
    local: Any
    remote: Any
    severity: Severity
    difference: Optional[Decimal] = None
    missing_quantity: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "field": self.field.value,
            "local": _jsonable(self.local),
            "exchange": _jsonable(self.remote),
            "severity": self.severity.value,
        }
        if self.difference is not None:
            data["difference"] = str(self.difference)
        if self.missing_quantity is not None:
            data["missing_quantity"] = str(self.missing_quantity)
        return data


@dataclass
class Discrepancy:
    """
    Divergence between one local order and its remote snapshot.

    Not persisted on its own; serialized into a reconciliation log entry.
    """

    order_id: int
    account_id: int
    exchange_order_id: Optional[str]
    mismatches: List[FieldMismatch]
    severity: Severity
    detected_at: datetime = field(default_factory=utc_now)
    type: str = "order_state_mismatch"
    log_id: Optional[int] = None
    """Reconciliation log entry id once persisted."""

    def get(self, mismatch_field: MismatchField) -> Optional[FieldMismatch]:
        """Mismatch entry for a field, if any."""
        for mismatch in self.mismatches:
            if mismatch.field == mismatch_field:
                return mismatch
        return None

    @property
    def fields(self) -> List[str]:
        return [m.field.value for m in self.mismatches]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "orderId": self.order_id,
            "accountId": self.account_id,
            "exchangeOrderId": self.exchange_order_id,
            "discrepancies": [m.to_dict() for m in self.mismatches],
            "severity": self.severity.value,
            "detectedAt": self.detected_at.isoformat(),
        }


# ============================================================
# PERSISTED RECORDS
# ============================================================

@dataclass
class SyntheticTrade:
    """Trade manufactured to represent a fill missing from the ledger."""

    account_id: int
    order_id: int
    exchange_trade_id: str
    """Deterministic idempotency key."""

    symbol: str
    side: str
    quantity: Decimal
    price: Decimal
    fee: Decimal = Decimal("0")
    fee_currency: str = "USD"
    pnl: Decimal = Decimal("0")
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AuditEvent:
    """Append-only audit record."""

    event_type: str
    account_id: Optional[int]
    description: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[int] = None


@dataclass
class ReconciliationLogEntry:
    """Persisted reconciliation log row."""

    id: int
    account_id: int
    type: str
    reference_id: str
    status: ReconciliationLogStatus
    discrepancy_details: Dict[str, Any] = field(default_factory=dict)
    resolution_action: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    account_name: Optional[str] = None
    symbol: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "type": self.type,
            "reference_id": self.reference_id,
            "status": self.status.value,
            "discrepancy_details": self.discrepancy_details,
            "resolution_action": self.resolution_action,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "account_name": self.account_name,
            "symbol": self.symbol,
        }


# ============================================================
# RESULTS
# ============================================================

@dataclass
class ResolutionOutcome:
    """Outcome of resolving one discrepancy."""

    resolved: bool
    """At least one corrective branch succeeded."""

    applied: List[str] = field(default_factory=list)
    """Fields corrected."""

    flagged: List[str] = field(default_factory=list)
    """Fields surfaced for review without a corrective write."""

    failed: Dict[str, str] = field(default_factory=dict)
    """Field -> failure message."""

    synthetic_trade_id: Optional[str] = None
    """Idempotency key of the synthetic trade, if any."""


@dataclass
class AccountReconciliationResult:
    """Result of reconciling one account."""

    account_id: int
    orders_checked: int = 0
    discrepancies: int = 0
    resolved: int = 0
    adapter_unavailable: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "accountId": self.account_id,
            "ordersChecked": self.orders_checked,
            "discrepancies": self.discrepancies,
            "resolved": self.resolved,
            "adapterUnavailable": self.adapter_unavailable,
            "errors": list(self.errors),
        }


@dataclass
class TradingModeResult:
    """Aggregate over all active accounts of one trading mode."""

    trading_mode: str
    accounts_processed: int = 0
    orders_checked: int = 0
    discrepancies: int = 0
    resolved: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    accounts: List[AccountReconciliationResult] = field(default_factory=list)

    def add(self, account_result: AccountReconciliationResult) -> None:
        self.accounts_processed += 1
        self.orders_checked += account_result.orders_checked
        self.discrepancies += account_result.discrepancies
        self.resolved += account_result.resolved
        self.accounts.append(account_result)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tradingMode": self.trading_mode,
            "accountsProcessed": self.accounts_processed,
            "ordersChecked": self.orders_checked,
            "discrepancies": self.discrepancies,
            "resolved": self.resolved,
            "errors": list(self.errors),
            "accounts": [a.to_dict() for a in self.accounts],
        }


@dataclass
class ReconciliationRunResult:
    """One orchestrator cycle across every trading mode."""

    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: float = 0.0
    modes: Dict[str, TradingModeResult] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def total_discrepancies(self) -> int:
        return sum(r.discrepancies for r in self.modes.values())

    @property
    def total_resolved(self) -> int:
        return sum(r.resolved for r in self.modes.values())

    @property
    def total_orders_checked(self) -> int:
        return sum(r.orders_checked for r in self.modes.values())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.run_id,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "durationMs": self.duration_ms,
            "discrepancies": self.total_discrepancies,
            "resolved": self.total_resolved,
            "results": {mode: r.to_dict() for mode, r in self.modes.items()},
            "errors": list(self.errors),
        }


@dataclass
class ManualReconciliationResult:
    """Result of operator-triggered single-order reconciliation."""

    discrepancy: Optional[Discrepancy]
    resolved: bool
    outcome: Optional[ResolutionOutcome] = None


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    return value
