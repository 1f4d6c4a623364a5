"""
Reconciliation Engine - Metrics.

============================================================
PURPOSE
============================================================
In-memory counters for reconciliation cycles.

METRICS TRACKED:
- Cycles run, discrepancies found and resolved, errors
- Last reconciliation time
- Moving average cycle duration
- Discrepancies by severity and by field

============================================================
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from .types import Discrepancy


logger = logging.getLogger(__name__)


@dataclass
class LatencyStats:
    """Cycle duration statistics."""

    count: int = 0
    total_ms: float = 0.0
    min_ms: float = float("inf")
    max_ms: float = 0.0

    @property
    def avg_ms(self) -> float:
        return self.total_ms / self.count if self.count > 0 else 0.0

    def record(self, latency_ms: float) -> None:
        self.count += 1
        self.total_ms += latency_ms
        self.min_ms = min(self.min_ms, latency_ms)
        self.max_ms = max(self.max_ms, latency_ms)


@dataclass
class ReconciliationMetrics:
    """Counters updated by the orchestrator and account reconcilers."""

    total_reconciliations: int = 0
    discrepancies_found: int = 0
    discrepancies_resolved: int = 0
    reconciliation_errors: int = 0
    last_reconciliation: Optional[datetime] = None
    average_reconciliation_time_ms: float = 0.0
    """Running mean over completed cycles."""

    by_severity: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    by_field: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    durations: LatencyStats = field(default_factory=LatencyStats)

    def record_cycle(
        self,
        completed_at: datetime,
        duration_ms: float,
        discrepancies: int,
        resolved: int,
    ) -> None:
        """Record a completed cycle."""
        self.total_reconciliations += 1
        self.discrepancies_found += discrepancies
        self.discrepancies_resolved += resolved
        self.last_reconciliation = completed_at
        self.durations.record(duration_ms)

        n = self.total_reconciliations
        self.average_reconciliation_time_ms = (
            self.average_reconciliation_time_ms * (n - 1) + duration_ms
        ) / n

    def record_discrepancy(self, discrepancy: Discrepancy) -> None:
        self.by_severity[discrepancy.severity.value] += 1
        for name in discrepancy.fields:
            self.by_field[name] += 1

    def record_failed_cycle(self, completed_at: datetime) -> None:
        """A failed cycle still moves last_reconciliation."""
        self.reconciliation_errors += 1
        self.last_reconciliation = completed_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalReconciliations": self.total_reconciliations,
            "discrepanciesFound": self.discrepancies_found,
            "discrepanciesResolved": self.discrepancies_resolved,
            "reconciliationErrors": self.reconciliation_errors,
            "lastReconciliation": (
                self.last_reconciliation.isoformat() if self.last_reconciliation else None
            ),
            "averageReconciliationTime": round(self.average_reconciliation_time_ms, 3),
            "maxReconciliationTime": round(self.durations.max_ms, 3),
            "bySeverity": dict(self.by_severity),
            "byField": dict(self.by_field),
        }
