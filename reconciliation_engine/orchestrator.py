"""
Reconciliation Engine - Orchestrator.

============================================================
PURPOSE
============================================================
Runs one reconciliation cycle over every configured trading mode.

RESPONSIBILITIES:
- Reconcile each trading mode, isolating failures per mode
- Update cycle metrics
- Emit high_discrepancy_alert and cycle_completed
- Emit cycle_error and re-raise on unexpected failure

============================================================
"""

import logging
import time
import uuid

from .config import ReconciliationServiceConfig
from .errors import CycleError, ReconciliationEngineError
from .metrics import ReconciliationMetrics
from .observers import ObserverRegistry
from .reconciler import TradingModeReconciler
from .types import ReconciliationRunResult, TradingModeResult, utc_now


logger = logging.getLogger(__name__)


class ReconciliationOrchestrator:
    """Executes reconciliation cycles. Serialization is the caller's job."""

    def __init__(
        self,
        trading_mode_reconciler: TradingModeReconciler,
        metrics: ReconciliationMetrics,
        observers: ObserverRegistry,
        config: ReconciliationServiceConfig,
    ):
        self._trading_mode_reconciler = trading_mode_reconciler
        self._metrics = metrics
        self._observers = observers
        self._config = config

    async def run_cycle(self) -> ReconciliationRunResult:
        """
        Reconcile every trading mode once.

        Returns:
            ReconciliationRunResult

        Raises:
            CycleError: Unexpected cycle-level failure, after cycle_error
        """
        result = ReconciliationRunResult(
            run_id=uuid.uuid4().hex[:12],
            started_at=utc_now(),
        )
        start = time.monotonic()
        logger.info(f"Starting order reconciliation cycle {result.run_id}")

        try:
            for trading_mode in self._config.scheduler.trading_modes:
                try:
                    result.modes[trading_mode] = await self._trading_mode_reconciler.reconcile(
                        trading_mode
                    )
                except Exception as e:
                    code = e.code if isinstance(e, ReconciliationEngineError) else "REC_CYCLE_FAILED"
                    entry = {"tradingMode": trading_mode, "code": code, "error": str(e)}
                    logger.error(f"Failed to reconcile trading mode {trading_mode}: {e}")
                    result.errors.append(entry)
                    result.modes[trading_mode] = TradingModeResult(
                        trading_mode=trading_mode,
                        errors=[entry],
                    )

            result.completed_at = utc_now()
            result.duration_ms = (time.monotonic() - start) * 1000

            self._metrics.record_cycle(
                completed_at=result.completed_at,
                duration_ms=result.duration_ms,
                discrepancies=result.total_discrepancies,
                resolved=result.total_resolved,
            )

            logger.info(
                f"Order reconciliation cycle {result.run_id} completed in "
                f"{result.duration_ms:.1f}ms: discrepancies={result.total_discrepancies} "
                f"resolved={result.total_resolved}"
            )

            threshold = self._config.scheduler.alert_threshold
            if result.total_discrepancies > threshold:
                logger.warning(
                    f"High discrepancy count: {result.total_discrepancies} > {threshold}"
                )
                await self._observers.high_discrepancy_alert(result, threshold)

            await self._observers.cycle_completed(result)
            return result

        except Exception as e:
            logger.error(f"Order reconciliation cycle {result.run_id} failed: {e}", exc_info=True)
            self._metrics.record_failed_cycle(utc_now())
            await self._observers.cycle_error(e)
            if isinstance(e, ReconciliationEngineError):
                raise
            raise CycleError(f"Reconciliation cycle {result.run_id} failed: {e}") from e
