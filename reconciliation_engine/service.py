"""
Reconciliation Engine - Service.

============================================================
PURPOSE
============================================================
Lifecycle, scheduling and operator entry points for order
state reconciliation.

LIFECYCLE:
    stopped -> running -> stopping -> stopped

GUARANTEES:
- At most one reconciliation cycle in flight
- A scheduled tick is skipped while a cycle runs
- stop() waits for the in-flight cycle and starts no new one
- Scheduled cycle failures never stop the scheduler

============================================================
USAGE
============================================================
```python
service = create_service(ReconciliationServiceConfig.from_env(), adapter_factory)
await service.start()
...
await service.stop()
```

============================================================
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from .adapters.factory import AdapterFactory
from .alerting import AlertingObserver, TelegramAlerter
from .config import ReconciliationServiceConfig
from .database import TradingModeDatabase
from .detector import DiscrepancyDetector
from .errors import (
    AdapterUnavailableError,
    CycleError,
    ManualReconciliationError,
    ReconciliationEngineError,
)
from .metrics import ReconciliationMetrics
from .observers import ObserverRegistry, ReconciliationObserver
from .orchestrator import ReconciliationOrchestrator
from .persistence import ReconciliationPersistence
from .reconciler import AccountReconciler, OrderLockRegistry, TradingModeReconciler
from .repository import SqlAlchemyReconciliationRepository
from .resolver import DiscrepancyResolver
from .types import (
    AuditEvent,
    ManualReconciliationResult,
    ReconciliationLogEntry,
    ReconciliationLogStatus,
    ReconciliationRunResult,
    ServiceState,
)


logger = logging.getLogger(__name__)


class OrderReconciliationService:
    """
    Order state reconciliation service.

    Collaborators are injected; nothing is global.
    """

    def __init__(
        self,
        persistence: ReconciliationPersistence,
        adapter_factory: AdapterFactory,
        config: Optional[ReconciliationServiceConfig] = None,
        observers: Optional[List[ReconciliationObserver]] = None,
    ):
        """
        Initialize service.

        Args:
            persistence: Per-trading-mode persistence
            adapter_factory: Builds venue adapters for accounts
            config: Service configuration
            observers: Initial observers
        """
        self._config = config or ReconciliationServiceConfig()
        self._persistence = persistence
        self._adapter_factory = adapter_factory

        self._metrics = ReconciliationMetrics()
        self._observers = ObserverRegistry()
        self._locks = OrderLockRegistry()

        self._detector = DiscrepancyDetector(self._config.detection)
        self._resolver = DiscrepancyResolver(persistence)
        self._account_reconciler = AccountReconciler(
            persistence=persistence,
            adapter_factory=adapter_factory,
            detector=self._detector,
            resolver=self._resolver,
            observers=self._observers,
            metrics=self._metrics,
            locks=self._locks,
            config=self._config,
        )
        self._trading_mode_reconciler = TradingModeReconciler(
            persistence, self._account_reconciler, self._config
        )
        self._orchestrator = ReconciliationOrchestrator(
            self._trading_mode_reconciler, self._metrics, self._observers, self._config
        )

        self._state = ServiceState.STOPPED
        self._cycle_lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self._drain_task: Optional[asyncio.Task] = None
        self._cycle_tasks: Set[asyncio.Task] = set()

        if self._config.alerting.enabled:
            self._observers.subscribe(AlertingObserver(
                TelegramAlerter(self._config.alerting), self._config.alerting
            ))

        for observer in observers or []:
            self._observers.subscribe(observer)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def metrics(self) -> ReconciliationMetrics:
        return self._metrics

    @property
    def cycle_in_flight(self) -> bool:
        return self._cycle_lock.locked()

    # --------------------------------------------------------
    # OBSERVERS
    # --------------------------------------------------------

    def subscribe(self, observer: ReconciliationObserver) -> None:
        self._observers.subscribe(observer)

    def unsubscribe(self, observer: ReconciliationObserver) -> None:
        self._observers.unsubscribe(observer)

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def start(self) -> None:
        """Initialize persistence and arm the scheduler. Idempotent."""
        if self._state != ServiceState.STOPPED:
            logger.warning(f"Order reconciliation service already {self._state.value}")
            return

        await self._persistence.initialize()

        self._state = ServiceState.RUNNING
        self._timer_task = asyncio.create_task(self._timer_loop())

        logger.info(
            f"Order reconciliation service started: "
            f"interval={self._config.scheduler.reconciliation_interval_seconds}s "
            f"batch_size={self._config.scheduler.batch_size}"
        )
        await self._observers.service_started()

    async def stop(self) -> None:
        """
        Disarm the scheduler and wait for in-flight cycles.

        Concurrent callers all wait for the same drain.
        """
        if self._state == ServiceState.RUNNING:
            self._state = ServiceState.STOPPING
            self._drain_task = asyncio.create_task(self._drain())

        if self._drain_task is not None:
            await asyncio.shield(self._drain_task)

    async def close(self) -> None:
        """Stop and release persistence."""
        await self.stop()
        await self._persistence.close()

    async def _drain(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            try:
                await self._timer_task
            except asyncio.CancelledError:
                pass
            self._timer_task = None

        while self._cycle_tasks:
            logger.info(f"Waiting for {len(self._cycle_tasks)} in-flight reconciliation cycle(s)")
            await asyncio.gather(*list(self._cycle_tasks), return_exceptions=True)

        self._state = ServiceState.STOPPED
        self._drain_task = None
        logger.info("Order reconciliation service stopped")
        await self._observers.service_stopped()

    async def _timer_loop(self) -> None:
        interval = self._config.scheduler.reconciliation_interval_seconds
        while self._state == ServiceState.RUNNING:
            await asyncio.sleep(interval)
            if self._state != ServiceState.RUNNING:
                break
            if self.cycle_in_flight or self._cycle_tasks:
                logger.warning("Reconciliation cycle still running, skipping scheduled tick")
                continue
            self._spawn_cycle()

    def _spawn_cycle(self) -> asyncio.Task:
        task = asyncio.create_task(self._run_locked_cycle())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._on_cycle_done)
        return task

    def _on_cycle_done(self, task: asyncio.Task) -> None:
        self._cycle_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            # Already counted and broadcast by the orchestrator.
            logger.error(f"Reconciliation job failed: {error}")

    async def _run_locked_cycle(self) -> ReconciliationRunResult:
        async with self._cycle_lock:
            return await self._orchestrator.run_cycle()

    # --------------------------------------------------------
    # OPERATIONS
    # --------------------------------------------------------

    async def run_reconciliation(self) -> ReconciliationRunResult:
        """
        Run a reconciliation cycle now.

        Waits for an in-flight cycle first. Cancelling the caller does
        not abort the cycle. Persistence is initialized on first use when
        the service was never started.

        Raises:
            CycleError: Service is stopping (REC_SERVICE_STOPPING)
            Exception: Cycle-level failure
        """
        await self._persistence.initialize()

        if self._state == ServiceState.STOPPING:
            raise CycleError(
                "Order reconciliation service is stopping, cycle not started",
                code="REC_SERVICE_STOPPING",
            )

        task = self._spawn_cycle()
        return await asyncio.shield(task)

    async def reconcile_order_manually(
        self,
        trading_mode: str,
        order_id: int,
    ) -> ManualReconciliationResult:
        """
        Reconcile a single order on operator request.

        Args:
            trading_mode: Trading mode
            order_id: Local order id

        Returns:
            ManualReconciliationResult

        Raises:
            ManualReconciliationError: Any failure, including unknown order
        """
        try:
            await self._persistence.initialize()
            order = await self._persistence.get_order(trading_mode, order_id)
            if order is None:
                raise ManualReconciliationError(
                    f"Order {order_id} not found",
                    code="REC_NOT_FOUND",
                    order_id=order_id,
                    trading_mode=trading_mode,
                )

            if not order.exchange_order_id:
                logger.info(f"Order {order_id} has no exchange order id, nothing to reconcile")
                return ManualReconciliationResult(discrepancy=None, resolved=False)

            account = await self._persistence.get_order_account(trading_mode, order_id)
            if account is None:
                raise ManualReconciliationError(
                    f"Account for order {order_id} not found",
                    code="REC_NOT_FOUND",
                    order_id=order_id,
                )

            adapter = await self._account_reconciler.create_adapter(account)
            try:
                discrepancy, outcome = await self._account_reconciler.reconcile_order(
                    trading_mode, adapter, order
                )
            finally:
                try:
                    await adapter.disconnect()
                except Exception as e:
                    logger.warning(f"Adapter disconnect failed for account {account.id}: {e}")

        except ManualReconciliationError:
            raise
        except AdapterUnavailableError as e:
            logger.error(f"Manual order reconciliation failed for {trading_mode} order {order_id}: {e}")
            raise ManualReconciliationError(
                str(e), code=e.code, order_id=order_id, trading_mode=trading_mode
            ) from e
        except Exception as e:
            logger.error(f"Manual order reconciliation failed for {trading_mode} order {order_id}: {e}")
            code = e.code if isinstance(e, ReconciliationEngineError) else None
            raise ManualReconciliationError(
                f"Manual reconciliation of order {order_id} failed: {e}",
                code=code,
                order_id=order_id,
                trading_mode=trading_mode,
            ) from e

        if discrepancy is None:
            return ManualReconciliationResult(discrepancy=None, resolved=False)

        return ManualReconciliationResult(
            discrepancy=discrepancy,
            resolved=outcome.resolved,
            outcome=outcome,
        )

    async def resolve_discrepancy_manually(
        self,
        trading_mode: str,
        log_id: int,
        resolution_action: str,
        user_id: Optional[int] = None,
    ) -> ReconciliationLogEntry:
        """
        Mark a reconciliation log entry resolved on operator request.

        Raises:
            ManualReconciliationError: Entry missing or already resolved
        """
        entry = await self._persistence.get_reconciliation_log(trading_mode, log_id)
        if entry is None:
            raise ManualReconciliationError(
                f"Reconciliation log {log_id} not found",
                code="REC_NOT_FOUND",
                log_id=log_id,
            )
        if entry.status == ReconciliationLogStatus.RESOLVED:
            raise ManualReconciliationError(
                f"Reconciliation log {log_id} already resolved",
                log_id=log_id,
            )

        if not await self._persistence.resolve_reconciliation_log(
            trading_mode, log_id, resolution_action
        ):
            raise ManualReconciliationError(
                f"Reconciliation log {log_id} already resolved",
                log_id=log_id,
            )

        await self._persistence.append_audit_event(trading_mode, AuditEvent(
            event_type="discrepancy_manually_resolved",
            account_id=entry.account_id,
            user_id=user_id,
            description=f"Discrepancy {log_id} manually resolved",
            metadata={
                "logId": log_id,
                "referenceId": entry.reference_id,
                "resolutionAction": resolution_action,
            },
        ))
        logger.info(f"Discrepancy {log_id} ({trading_mode}) manually resolved by user {user_id}")

        return await self._persistence.get_reconciliation_log(trading_mode, log_id)

    # --------------------------------------------------------
    # QUERIES
    # --------------------------------------------------------

    async def get_reconciliation_history(
        self,
        trading_mode: str,
        limit: int = 100,
    ) -> List[ReconciliationLogEntry]:
        """Recent reconciliation log entries, most recent first."""
        return await self._persistence.get_reconciliation_history(trading_mode, limit)

    async def list_discrepancies(
        self,
        trading_mode: str,
        status: str = "discrepancy",
        limit: int = 50,
    ) -> List[ReconciliationLogEntry]:
        return await self._persistence.list_discrepancies(trading_mode, status, limit)

    def get_metrics(self) -> Dict[str, Any]:
        return {
            **self._metrics.to_dict(),
            "isRunning": self.is_running,
            "activeJobs": len(self._cycle_tasks),
            "config": self._config.summary(),
        }

    def get_status(self) -> Dict[str, Any]:
        return {
            "service": "order_reconciliation",
            "state": self._state.value,
            "isRunning": self.is_running,
            "cycleInFlight": self.cycle_in_flight,
            "metrics": self.get_metrics(),
        }


def create_service(
    config: Optional[ReconciliationServiceConfig] = None,
    adapter_factory: Optional[AdapterFactory] = None,
    observers: Optional[List[ReconciliationObserver]] = None,
) -> OrderReconciliationService:
    """
    Build a service backed by SQLAlchemy persistence.

    Args:
        config: Service configuration (defaults from environment)
        adapter_factory: Venue adapter factory
        observers: Initial observers
    """
    config = config or ReconciliationServiceConfig.from_env()
    adapter_factory = adapter_factory or AdapterFactory(
        connect_timeout_seconds=config.timeout.adapter_creation_timeout_seconds
    )
    repository = SqlAlchemyReconciliationRepository(TradingModeDatabase(config.database))
    return OrderReconciliationService(repository, adapter_factory, config, observers)
