"""
Reconciliation Engine - Observers.

============================================================
PURPOSE
============================================================
Typed notification interface for reconciliation events.

EVENTS:
- service_started / service_stopped
- cycle_completed
- discrepancy_detected / discrepancy_resolved
- high_discrepancy_alert
- cycle_error

A failing observer is logged and never breaks reconciliation.

============================================================
"""

import logging
from typing import Awaitable, Callable, List

from .types import Discrepancy, ReconciliationRunResult, ResolutionOutcome


logger = logging.getLogger(__name__)


# ============================================================
# OBSERVER INTERFACE
# ============================================================

class ReconciliationObserver:
    """
    Base observer. Override the events of interest.

    All hooks are coroutines; defaults do nothing.
    """

    async def on_service_started(self) -> None:
        pass

    async def on_service_stopped(self) -> None:
        pass

    async def on_cycle_completed(self, result: ReconciliationRunResult) -> None:
        pass

    async def on_discrepancy_detected(
        self,
        trading_mode: str,
        discrepancy: Discrepancy,
    ) -> None:
        pass

    async def on_discrepancy_resolved(
        self,
        trading_mode: str,
        discrepancy: Discrepancy,
        outcome: ResolutionOutcome,
    ) -> None:
        pass

    async def on_high_discrepancy_alert(
        self,
        result: ReconciliationRunResult,
        threshold: int,
    ) -> None:
        """Cycle found more discrepancies than the threshold."""
        pass

    async def on_cycle_error(self, error: Exception) -> None:
        pass


# ============================================================
# OBSERVER REGISTRY
# ============================================================

class ObserverRegistry:
    """Fan-out of events to subscribed observers."""

    def __init__(self):
        self._observers: List[ReconciliationObserver] = []

    def subscribe(self, observer: ReconciliationObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: ReconciliationObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def __len__(self) -> int:
        return len(self._observers)

    async def _dispatch(
        self,
        event: str,
        call: Callable[[ReconciliationObserver], Awaitable[None]],
    ) -> None:
        for observer in list(self._observers):
            try:
                await call(observer)
            except Exception as e:
                logger.error(
                    f"Observer {type(observer).__name__} failed on {event}: {e}",
                    exc_info=True,
                )

    async def service_started(self) -> None:
        await self._dispatch("service_started", lambda o: o.on_service_started())

    async def service_stopped(self) -> None:
        await self._dispatch("service_stopped", lambda o: o.on_service_stopped())

    async def cycle_completed(self, result: ReconciliationRunResult) -> None:
        await self._dispatch("cycle_completed", lambda o: o.on_cycle_completed(result))

    async def discrepancy_detected(self, trading_mode: str, discrepancy: Discrepancy) -> None:
        await self._dispatch(
            "discrepancy_detected",
            lambda o: o.on_discrepancy_detected(trading_mode, discrepancy),
        )

    async def discrepancy_resolved(
        self,
        trading_mode: str,
        discrepancy: Discrepancy,
        outcome: ResolutionOutcome,
    ) -> None:
        await self._dispatch(
            "discrepancy_resolved",
            lambda o: o.on_discrepancy_resolved(trading_mode, discrepancy, outcome),
        )

    async def high_discrepancy_alert(self, result: ReconciliationRunResult, threshold: int) -> None:
        await self._dispatch(
            "high_discrepancy_alert",
            lambda o: o.on_high_discrepancy_alert(result, threshold),
        )

    async def cycle_error(self, error: Exception) -> None:
        await self._dispatch("cycle_error", lambda o: o.on_cycle_error(error))
