"""
Reconciliation Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Error classification for reconciliation failures.

ISOLATION SCOPES (narrowest first):
1. Order   - remote fetch or resolution failure
2. Account - adapter unavailable, account-level failure
3. Trading mode
4. Cycle   - unexpected orchestrator failure

Only manual reconciliation surfaces failures to the caller.

============================================================
"""

from enum import Enum
from typing import Optional, Dict, Any
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    ADAPTER = "ADAPTER"
    """Venue adapter could not be built."""

    REMOTE = "REMOTE"
    """Remote state could not be fetched."""

    RESOLUTION = "RESOLUTION"
    """Corrective write failed."""

    PERSISTENCE = "PERSISTENCE"
    """Database operation failed."""

    CYCLE = "CYCLE"
    """Unexpected orchestrator failure."""

    MANUAL = "MANUAL"
    """Operator-triggered reconciliation failed."""


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    is_retryable: bool
    description: str
    recommended_action: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    "REC_ADAPTER_UNAVAILABLE": ErrorCodeInfo(
        code="REC_ADAPTER_UNAVAILABLE",
        category=ErrorCategory.ADAPTER,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Exchange adapter could not be created for account",
        recommended_action="Check account exchange and credentials",
    ),
    "REC_REMOTE_FETCH_FAILED": ErrorCodeInfo(
        code="REC_REMOTE_FETCH_FAILED",
        category=ErrorCategory.REMOTE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Remote order status could not be fetched",
        recommended_action="Order will be retried next cycle",
    ),
    "REC_REMOTE_TIMEOUT": ErrorCodeInfo(
        code="REC_REMOTE_TIMEOUT",
        category=ErrorCategory.REMOTE,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Remote order status fetch timed out",
        recommended_action="Order will be retried next cycle",
    ),
    "REC_RESOLUTION_FAILED": ErrorCodeInfo(
        code="REC_RESOLUTION_FAILED",
        category=ErrorCategory.RESOLUTION,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Corrective write failed",
        recommended_action="Discrepancy stays open and is retried on next detection",
    ),
    "REC_STALE_ORDER": ErrorCodeInfo(
        code="REC_STALE_ORDER",
        category=ErrorCategory.RESOLUTION,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="Order changed concurrently during resolution",
        recommended_action="Discrepancy is re-evaluated on next cycle",
    ),
    "REC_PERSISTENCE_FAILED": ErrorCodeInfo(
        code="REC_PERSISTENCE_FAILED",
        category=ErrorCategory.PERSISTENCE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Database operation failed",
        recommended_action="Check database connectivity",
    ),
    "REC_CYCLE_FAILED": ErrorCodeInfo(
        code="REC_CYCLE_FAILED",
        category=ErrorCategory.CYCLE,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Reconciliation cycle failed",
        recommended_action="Investigate error logs; scheduler stays armed",
    ),
    "REC_SERVICE_STOPPING": ErrorCodeInfo(
        code="REC_SERVICE_STOPPING",
        category=ErrorCategory.CYCLE,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Cycle requested while the service is stopping",
        recommended_action="Wait for stop() to return before triggering a cycle",
    ),
    "REC_MANUAL_FAILED": ErrorCodeInfo(
        code="REC_MANUAL_FAILED",
        category=ErrorCategory.MANUAL,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description="Manual reconciliation failed",
        recommended_action="Review failure and retry",
    ),
    "REC_NOT_FOUND": ErrorCodeInfo(
        code="REC_NOT_FOUND",
        category=ErrorCategory.MANUAL,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Requested order or discrepancy does not exist",
        recommended_action="Verify identifier and trading mode",
    ),
}


def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error info for a code.

    Args:
        code: Error code

    Returns:
        ErrorCodeInfo or default unknown error
    """
    return ERROR_CODES.get(code, ErrorCodeInfo(
        code=code,
        category=ErrorCategory.CYCLE,
        severity=ErrorSeverity.ERROR,
        is_retryable=False,
        description=f"Unknown error: {code}",
        recommended_action="Investigate error",
    ))


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


# ============================================================
# EXCEPTIONS
# ============================================================

class ReconciliationEngineError(Exception):
    """Base exception for the reconciliation engine."""

    default_code = "REC_CYCLE_FAILED"

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.code = code or self.default_code
        self.details = details

    @property
    def info(self) -> ErrorCodeInfo:
        return get_error_info(self.code)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "error": str(self), **self.details}


class AdapterUnavailableError(ReconciliationEngineError):
    """No venue adapter for an account."""

    default_code = "REC_ADAPTER_UNAVAILABLE"


class RemoteFetchError(ReconciliationEngineError):
    """Remote order status fetch failed or timed out."""

    default_code = "REC_REMOTE_FETCH_FAILED"


class ResolutionError(ReconciliationEngineError):
    """A corrective write failed."""

    default_code = "REC_RESOLUTION_FAILED"


class StaleOrderError(ResolutionError):
    """Order row changed underneath the resolver."""

    default_code = "REC_STALE_ORDER"


class PersistenceError(ReconciliationEngineError):
    """Database operation failed."""

    default_code = "REC_PERSISTENCE_FAILED"


class CycleError(ReconciliationEngineError):
    """Unexpected exception escaped a reconciliation cycle."""

    default_code = "REC_CYCLE_FAILED"


class ManualReconciliationError(ReconciliationEngineError):
    """Operator-triggered reconciliation failed."""

    default_code = "REC_MANUAL_FAILED"
