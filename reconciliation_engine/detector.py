"""
Reconciliation Engine - Discrepancy Detector.

============================================================
PURPOSE
============================================================
Compares one local order against one remote snapshot.

RULES (each contributes independently):
1. Status mismatch
2. Filled quantity mismatch (beyond epsilon)
3. Average fill price mismatch (beyond 0.1%)
4. Missing fills (remote filled > local filled)

Pure: no I/O, no mutation.

============================================================
"""

from decimal import Decimal
from typing import FrozenSet, List, Optional, Tuple

from .config import DetectionConfig
from .types import (
    Discrepancy,
    FieldMismatch,
    LocalOrder,
    MismatchField,
    OrderStatus,
    RemoteOrderSnapshot,
    Severity,
)


# Transitions that mean the venue killed an order we believe is live.
CRITICAL_STATUS_TRANSITIONS: FrozenSet[Tuple[OrderStatus, OrderStatus]] = frozenset({
    (OrderStatus.OPEN, OrderStatus.CANCELLED),
    (OrderStatus.OPEN, OrderStatus.REJECTED),
    (OrderStatus.PARTIALLY_FILLED, OrderStatus.CANCELLED),
})


class DiscrepancyDetector:
    """Detects divergence between local and remote order state."""

    def __init__(self, config: Optional[DetectionConfig] = None):
        self._config = config or DetectionConfig()

    def detect(
        self,
        local: LocalOrder,
        remote: RemoteOrderSnapshot,
    ) -> Optional[Discrepancy]:
        """
        Compare local and remote state.

        Args:
            local: Local order record
            remote: Remote order snapshot

        Returns:
            Discrepancy, or None when the two agree
        """
        mismatches: List[FieldMismatch] = []

        if local.status != remote.status:
            mismatches.append(FieldMismatch(
                field=MismatchField.STATUS,
                local=local.status,
                remote=remote.status,
                severity=self.status_severity(local.status, remote.status),
            ))

        local_filled = _decimal(local.filled_quantity)
        remote_filled = _decimal(remote.filled_quantity)
        filled_difference = abs(local_filled - remote_filled)

        if filled_difference > self._config.quantity_epsilon:
            high = filled_difference > local_filled * self._config.quantity_high_severity_ratio
            mismatches.append(FieldMismatch(
                field=MismatchField.FILLED_QUANTITY,
                local=local_filled,
                remote=remote_filled,
                difference=filled_difference,
                severity=Severity.HIGH if high else Severity.MEDIUM,
            ))

        if remote_filled > 0 and local.avg_fill_price and remote.avg_fill_price:
            local_price = _decimal(local.avg_fill_price)
            remote_price = _decimal(remote.avg_fill_price)
            price_difference = abs(local_price - remote_price)

            if price_difference > local_price * self._config.price_tolerance_ratio:
                high = price_difference > local_price * self._config.price_high_severity_ratio
                mismatches.append(FieldMismatch(
                    field=MismatchField.AVG_FILL_PRICE,
                    local=local_price,
                    remote=remote_price,
                    difference=price_difference,
                    severity=Severity.HIGH if high else Severity.MEDIUM,
                ))

        if remote_filled > local_filled:
            mismatches.append(FieldMismatch(
                field=MismatchField.MISSING_FILLS,
                local=local_filled,
                remote=remote_filled,
                missing_quantity=remote_filled - local_filled,
                severity=Severity.HIGH,
            ))

        if not mismatches:
            return None

        return Discrepancy(
            order_id=local.id,
            account_id=local.account_id,
            exchange_order_id=local.exchange_order_id,
            mismatches=mismatches,
            severity=Severity.highest([m.severity for m in mismatches]),
        )

    @staticmethod
    def status_severity(local: OrderStatus, remote: OrderStatus) -> Severity:
        """Severity of a status divergence."""
        if (local, remote) in CRITICAL_STATUS_TRANSITIONS:
            return Severity.CRITICAL
        return Severity.MEDIUM


def _decimal(value) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
