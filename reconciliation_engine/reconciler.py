"""
Reconciliation Engine - Account and Trading-Mode Reconcilers.

============================================================
PURPOSE
============================================================
Walks accounts and their open orders, comparing each order with
the venue and resolving divergence.

FLOW PER ORDER:
1. Fetch remote snapshot (bounded, retried)
2. Detect discrepancy
3. Persist reconciliation log entry
4. Notify discrepancy_detected
5. Resolve, notify discrepancy_resolved on success

ISOLATION:
- A failing order never stops its account batch
- A failing account never stops its trading mode
- Work on one order id is serialized across all paths

============================================================
"""

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Tuple

from .adapters.base import ExchangeAdapter
from .adapters.factory import AdapterFactory
from .config import ReconciliationServiceConfig
from .detector import DiscrepancyDetector
from .errors import (
    AdapterUnavailableError,
    ReconciliationEngineError,
    RemoteFetchError,
)
from .metrics import ReconciliationMetrics
from .observers import ObserverRegistry
from .persistence import ReconciliationPersistence
from .resolver import DiscrepancyResolver
from .types import (
    AccountReconciliationResult,
    AccountRecord,
    Discrepancy,
    LocalOrder,
    RemoteOrderSnapshot,
    ResolutionOutcome,
    TradingModeResult,
)


logger = logging.getLogger(__name__)


# ============================================================
# ORDER LOCKS
# ============================================================

class OrderLockRegistry:
    """
    One asyncio lock per (trading mode, order id).

    Locks are dropped once nobody holds or waits for them.
    """

    def __init__(self):
        self._locks: Dict[Tuple[str, int], asyncio.Lock] = {}
        self._users: Dict[Tuple[str, int], int] = defaultdict(int)

    @asynccontextmanager
    async def lock(self, trading_mode: str, order_id: int) -> AsyncIterator[None]:
        key = (trading_mode, order_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_locked(self, trading_mode: str, order_id: int) -> bool:
        lock = self._locks.get((trading_mode, order_id))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def _error_entry(error: Exception, **ids) -> Dict[str, object]:
    code = error.code if isinstance(error, ReconciliationEngineError) else "REC_CYCLE_FAILED"
    return {**ids, "code": code, "error": str(error)}


# ============================================================
# ACCOUNT RECONCILER
# ============================================================

class AccountReconciler:
    """Reconciles the open orders of one account."""

    def __init__(
        self,
        persistence: ReconciliationPersistence,
        adapter_factory: AdapterFactory,
        detector: DiscrepancyDetector,
        resolver: DiscrepancyResolver,
        observers: ObserverRegistry,
        metrics: ReconciliationMetrics,
        locks: OrderLockRegistry,
        config: ReconciliationServiceConfig,
    ):
        self._persistence = persistence
        self._adapter_factory = adapter_factory
        self._detector = detector
        self._resolver = resolver
        self._observers = observers
        self._metrics = metrics
        self._locks = locks
        self._config = config

    async def create_adapter(self, account: AccountRecord) -> ExchangeAdapter:
        """
        Build the venue adapter for an account.

        Raises:
            AdapterUnavailableError: No adapter could be built
        """
        return await self._adapter_factory.create(account.exchange, account.credentials)

    async def reconcile(
        self,
        trading_mode: str,
        account: AccountRecord,
    ) -> AccountReconciliationResult:
        """
        Reconcile up to batch_size open orders of an account.

        Args:
            trading_mode: Trading mode
            account: Account record

        Returns:
            AccountReconciliationResult
        """
        result = AccountReconciliationResult(account_id=account.id)

        orders = await self._persistence.list_open_orders(
            trading_mode, account.id, self._config.scheduler.batch_size
        )
        if not orders:
            return result

        try:
            adapter = await self.create_adapter(account)
        except AdapterUnavailableError as e:
            logger.warning(
                f"Could not create exchange adapter for account {account.id} "
                f"({account.exchange}), skipping: {e}"
            )
            result.adapter_unavailable = True
            return result

        try:
            for order in orders:
                if not order.exchange_order_id:
                    continue

                result.orders_checked += 1
                try:
                    discrepancy, outcome = await self.reconcile_order(trading_mode, adapter, order)
                except Exception as e:
                    logger.error(
                        f"Failed to reconcile order {order.id} "
                        f"(account {account.id}, {trading_mode}): {e}"
                    )
                    result.errors.append(_error_entry(e, orderId=order.id))
                    continue

                if discrepancy is not None:
                    result.discrepancies += 1
                    if outcome is not None and outcome.resolved:
                        result.resolved += 1
        finally:
            try:
                await adapter.disconnect()
            except Exception as e:
                logger.warning(f"Adapter disconnect failed for account {account.id}: {e}")

        return result

    async def reconcile_order(
        self,
        trading_mode: str,
        adapter: ExchangeAdapter,
        order: LocalOrder,
    ) -> Tuple[Optional[Discrepancy], Optional[ResolutionOutcome]]:
        """
        Compare one order with the venue and resolve any divergence.

        Holds the order lock for the whole comparison and resolution.

        Returns:
            (discrepancy, outcome); (None, None) when states agree
        """
        if not order.exchange_order_id:
            return None, None

        async with self._locks.lock(trading_mode, order.id):
            current = await self._persistence.get_order(trading_mode, order.id)
            if current is None or not current.exchange_order_id:
                return None, None

            remote = await self.fetch_remote(adapter, current.exchange_order_id)

            discrepancy = self._detector.detect(current, remote)
            if discrepancy is None:
                return None, None

            self._metrics.record_discrepancy(discrepancy)
            discrepancy.log_id = await self._persistence.write_reconciliation_log(
                trading_mode, current.account_id, discrepancy
            )

            logger.warning(
                f"Order discrepancy detected: {trading_mode} order {current.id} "
                f"({current.exchange_order_id}) fields={discrepancy.fields} "
                f"severity={discrepancy.severity.value}"
            )
            await self._observers.discrepancy_detected(trading_mode, discrepancy)

            outcome = await self._resolver.resolve(trading_mode, discrepancy)
            if outcome.resolved:
                await self._observers.discrepancy_resolved(trading_mode, discrepancy, outcome)

            return discrepancy, outcome

    async def fetch_remote(
        self,
        adapter: ExchangeAdapter,
        exchange_order_id: str,
    ) -> RemoteOrderSnapshot:
        """
        Fetch remote order state with timeout and retry.

        Raises:
            RemoteFetchError: All attempts failed or timed out
        """
        retry = self._config.retry
        timeout = self._config.timeout.remote_fetch_timeout_seconds
        last_error: Optional[RemoteFetchError] = None

        for attempt in range(1, max(1, retry.max_attempts) + 1):
            try:
                return await asyncio.wait_for(
                    adapter.get_order_status(exchange_order_id),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                last_error = RemoteFetchError(
                    f"Timed out after {timeout}s fetching order {exchange_order_id}",
                    code="REC_REMOTE_TIMEOUT",
                    exchange_order_id=exchange_order_id,
                )
                if not retry.retry_on_timeout:
                    break
            except RemoteFetchError as e:
                last_error = e
            except Exception as e:
                last_error = RemoteFetchError(
                    f"Failed to fetch order {exchange_order_id}: {e}",
                    exchange_order_id=exchange_order_id,
                )

            if attempt < retry.max_attempts:
                delay = retry.delay_for(attempt)
                logger.debug(
                    f"Retrying fetch of {exchange_order_id} in {delay}s "
                    f"(attempt {attempt}/{retry.max_attempts}): {last_error}"
                )
                await asyncio.sleep(delay)

        raise last_error


# ============================================================
# TRADING-MODE RECONCILER
# ============================================================

class TradingModeReconciler:
    """Reconciles every active account of one trading mode."""

    def __init__(
        self,
        persistence: ReconciliationPersistence,
        account_reconciler: AccountReconciler,
        config: ReconciliationServiceConfig,
    ):
        self._persistence = persistence
        self._account_reconciler = account_reconciler
        self._config = config

    async def reconcile(self, trading_mode: str) -> TradingModeResult:
        """
        Reconcile all active accounts.

        Accounts run through a bounded worker pool; 1 worker is sequential.
        """
        result = TradingModeResult(trading_mode=trading_mode)
        accounts = await self._persistence.list_active_accounts(trading_mode)

        workers = max(1, self._config.scheduler.max_concurrent_accounts)
        semaphore = asyncio.Semaphore(workers)

        async def run(account: AccountRecord):
            async with semaphore:
                try:
                    return await self._account_reconciler.reconcile(trading_mode, account)
                except Exception as e:
                    return e

        if workers == 1:
            outcomes = [await run(account) for account in accounts]
        else:
            outcomes = await asyncio.gather(*(run(account) for account in accounts))

        for account, outcome in zip(accounts, outcomes):
            if isinstance(outcome, Exception):
                logger.error(
                    f"Failed to reconcile account {account.id} ({trading_mode}): {outcome}"
                )
                result.errors.append(_error_entry(outcome, accountId=account.id))
            else:
                result.add(outcome)

        logger.info(
            f"Trading mode {trading_mode} reconciled: accounts={result.accounts_processed} "
            f"orders={result.orders_checked} discrepancies={result.discrepancies} "
            f"resolved={result.resolved}"
        )
        return result
