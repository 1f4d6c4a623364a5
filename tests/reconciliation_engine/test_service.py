"""
Reconciliation Service Tests.

============================================================
PURPOSE
============================================================
Lifecycle, cycles, alerting thresholds and operator entry points.

TEST CATEGORIES:
- Cycle results and alert threshold
- Fault isolation across trading modes
- Scheduler lifecycle and graceful drain
- Manual reconciliation and manual resolution
- Metrics and history

============================================================
"""

import asyncio
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from reconciliation_engine.database import TradingModeDatabase
from reconciliation_engine.errors import CycleError, ManualReconciliationError
from reconciliation_engine.observers import ReconciliationObserver
from reconciliation_engine.repository import SqlAlchemyReconciliationRepository
from reconciliation_engine.service import OrderReconciliationService
from reconciliation_engine.types import (
    OrderStatus,
    ReconciliationLogStatus,
    ServiceState,
)


@pytest_asyncio.fixture
async def service(repository, adapter_factory, config, recorder):
    svc = OrderReconciliationService(repository, adapter_factory, config, observers=[recorder])
    yield svc
    await svc.stop()


async def seed_cancelled_orders(seed, venue, count, mode="paper"):
    account_id = await seed.account(mode=mode)
    for i in range(count):
        exchange_order_id = f"{mode}-EX-{i}"
        await seed.order(account_id, mode=mode, exchange_order_id=exchange_order_id)
        venue.set_order(exchange_order_id, "CANCELED")
    return account_id


async def wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


# ============================================================
# CYCLES
# ============================================================

class TestRunReconciliation:

    @pytest.mark.asyncio
    async def test_cycle_totals(self, service, seed, venue, recorder):
        await seed_cancelled_orders(seed, venue, 2, mode="paper")
        await seed_cancelled_orders(seed, venue, 1, mode="live")

        result = await service.run_reconciliation()

        assert result.total_discrepancies == 3
        assert result.total_resolved == 3
        assert result.modes["paper"].accounts_processed == 1
        assert result.modes["live"].discrepancies == 1
        assert result.completed_at is not None
        assert "cycle_completed" in recorder.names()

        metrics = service.get_metrics()
        assert metrics["totalReconciliations"] == 1
        assert metrics["discrepanciesFound"] == 3
        assert metrics["discrepanciesResolved"] == 3
        assert metrics["bySeverity"] == {"critical": 3}
        assert metrics["lastReconciliation"] is not None

    @pytest.mark.asyncio
    async def test_alert_above_threshold(self, service, seed, venue, recorder):
        """11 discrepancies with threshold 10 raise the alert."""
        await seed_cancelled_orders(seed, venue, 11)

        await service.run_reconciliation()

        alerts = [e for e in recorder.events if e[0] == "high_discrepancy_alert"]
        assert len(alerts) == 1
        assert alerts[0][1].total_discrepancies == 11
        assert alerts[0][2] == 10

    @pytest.mark.asyncio
    async def test_no_alert_below_threshold(self, service, seed, venue, recorder):
        """9 discrepancies with threshold 10 stay quiet."""
        await seed_cancelled_orders(seed, venue, 9)

        await service.run_reconciliation()

        assert "high_discrepancy_alert" not in recorder.names()

    @pytest.mark.asyncio
    async def test_idempotent_second_cycle(self, service, seed, venue):
        account_id = await seed.account()
        await seed.order(account_id, exchange_order_id="EX-1", filled="5", status="partially_filled")
        venue.set_order("EX-1", "PARTIALLY_FILLED", filled_quantity=Decimal("7"))

        first = await service.run_reconciliation()
        second = await service.run_reconciliation()

        assert first.total_discrepancies == 1
        assert second.total_discrepancies == 0
        assert len(await seed.trades()) == 1


# ============================================================
# FAULT ISOLATION
# ============================================================

class TestFaultIsolation:

    @pytest.mark.asyncio
    async def test_failing_mode_does_not_block_others(self, service, seed, venue, config):
        config.scheduler.trading_modes = ["staging", "paper"]
        await seed_cancelled_orders(seed, venue, 1)

        result = await service.run_reconciliation()

        assert result.modes["paper"].resolved == 1
        assert result.errors[0]["tradingMode"] == "staging"
        assert result.errors[0]["code"] == "REC_PERSISTENCE_FAILED"

    @pytest.mark.asyncio
    async def test_failing_observer_is_contained(self, service, seed, venue):
        class Broken(ReconciliationObserver):
            async def on_discrepancy_detected(self, trading_mode, discrepancy):
                raise RuntimeError("observer bug")

        service.subscribe(Broken())
        await seed_cancelled_orders(seed, venue, 1)

        result = await service.run_reconciliation()

        assert result.total_resolved == 1

    @pytest.mark.asyncio
    async def test_cycle_error_counted_and_raised(self, service, recorder):
        service.metrics.record_cycle = MagicMock(side_effect=RuntimeError("metrics broke"))

        with pytest.raises(CycleError):
            await service.run_reconciliation()

        assert service.metrics.reconciliation_errors == 1
        assert service.metrics.last_reconciliation is not None
        assert service.metrics.total_reconciliations == 0
        assert "cycle_error" in recorder.names()


# ============================================================
# LIFECYCLE
# ============================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, service, recorder):
        await service.start()
        await service.start()

        assert service.state == ServiceState.RUNNING
        assert recorder.names().count("service_started") == 1

        await service.stop()
        assert service.state == ServiceState.STOPPED
        assert recorder.names().count("service_stopped") == 1

    @pytest.mark.asyncio
    async def test_scheduled_cycles_run(self, service):
        await service.start()

        await wait_for(lambda: service.metrics.total_reconciliations >= 2)

        await service.stop()
        assert not service.is_running

    @pytest.mark.asyncio
    async def test_stop_drains_in_flight_cycle(self, service, seed, venue):
        """stop() waits for the running cycle and ticks are skipped meanwhile."""
        await seed_cancelled_orders(seed, venue, 1)
        venue.set_fetch_delay(0.3)

        await service.start()
        await wait_for(lambda: service.cycle_in_flight)
        await service.stop()

        assert service.metrics.total_reconciliations == 1
        assert service.metrics.discrepancies_resolved == 1
        assert not service.cycle_in_flight
        assert service.get_metrics()["activeJobs"] == 0

        await asyncio.sleep(0.2)
        assert service.metrics.total_reconciliations == 1

    @pytest.mark.asyncio
    async def test_concurrent_stop_waits_for_drain(self, service, seed, venue, recorder):
        await seed_cancelled_orders(seed, venue, 1)
        venue.set_fetch_delay(0.3)

        await service.start()
        await wait_for(lambda: service.cycle_in_flight)
        first_stop = asyncio.create_task(service.stop())
        await asyncio.sleep(0.01)
        assert service.state == ServiceState.STOPPING

        await service.stop()

        assert service.state == ServiceState.STOPPED
        assert not service.cycle_in_flight
        assert service.metrics.total_reconciliations == 1
        await first_stop
        assert recorder.names().count("service_stopped") == 1

    @pytest.mark.asyncio
    async def test_manual_run_during_drain_is_refused(self, service, seed, venue):
        await seed_cancelled_orders(seed, venue, 1)
        venue.set_fetch_delay(0.3)

        await service.start()
        await wait_for(lambda: service.cycle_in_flight)
        stop_task = asyncio.create_task(service.stop())
        await asyncio.sleep(0.01)

        with pytest.raises(CycleError) as exc_info:
            await service.run_reconciliation()
        assert exc_info.value.code == "REC_SERVICE_STOPPING"

        await stop_task
        assert service.state == ServiceState.STOPPED
        assert not service.cycle_in_flight
        assert service.metrics.total_reconciliations == 1

    @pytest.mark.asyncio
    async def test_manual_run_before_drain_is_waited_for(self, service, seed, venue):
        await seed_cancelled_orders(seed, venue, 1)
        venue.set_fetch_delay(0.2)

        await service.start()
        manual = asyncio.create_task(service.run_reconciliation())
        await wait_for(lambda: service.cycle_in_flight)
        await service.stop()

        assert not service.cycle_in_flight
        assert service.metrics.total_reconciliations == 1
        assert (await manual).total_resolved == 1

    @pytest.mark.asyncio
    async def test_run_without_start_initializes_persistence(self, config, adapter_factory):
        repository = SqlAlchemyReconciliationRepository(TradingModeDatabase(config.database))
        service = OrderReconciliationService(repository, adapter_factory, config)

        result = await service.run_reconciliation()

        assert result.errors == []
        assert service.state == ServiceState.STOPPED
        await service.close()

    @pytest.mark.asyncio
    async def test_scheduler_survives_cycle_errors(self, service):
        service.metrics.record_cycle = MagicMock(side_effect=RuntimeError("metrics broke"))

        await service.start()
        await wait_for(lambda: service.metrics.reconciliation_errors >= 2)

        assert service.is_running
        await service.stop()


# ============================================================
# MANUAL OPERATIONS
# ============================================================

class TestManualReconciliation:

    @pytest.mark.asyncio
    async def test_reconcile_single_order(self, service, repository, seed, venue):
        account_id = await seed.account()
        order_id = await seed.order(account_id, exchange_order_id="EX-1")
        venue.set_order("EX-1", "REJECTED")

        result = await service.reconcile_order_manually("paper", order_id)

        assert result.resolved
        assert result.discrepancy.fields == ["status"]
        order = await repository.get_order("paper", order_id)
        assert order.status == OrderStatus.REJECTED

    @pytest.mark.asyncio
    async def test_order_in_sync(self, service, seed, venue):
        account_id = await seed.account()
        order_id = await seed.order(account_id, exchange_order_id="EX-1")
        venue.set_order("EX-1", "NEW")

        result = await service.reconcile_order_manually("paper", order_id)

        assert result.discrepancy is None
        assert not result.resolved

    @pytest.mark.asyncio
    async def test_unknown_order(self, service):
        with pytest.raises(ManualReconciliationError) as exc_info:
            await service.reconcile_order_manually("paper", 404)

        assert exc_info.value.code == "REC_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_adapter_unavailable_raises(self, service, seed):
        account_id = await seed.account(exchange="nowhere")
        order_id = await seed.order(account_id)

        with pytest.raises(ManualReconciliationError) as exc_info:
            await service.reconcile_order_manually("paper", order_id)

        assert exc_info.value.code == "REC_ADAPTER_UNAVAILABLE"

    @pytest.mark.asyncio
    async def test_remote_failure_raises(self, service, seed, venue):
        account_id = await seed.account()
        order_id = await seed.order(account_id, exchange_order_id="EX-missing")

        with pytest.raises(ManualReconciliationError) as exc_info:
            await service.reconcile_order_manually("paper", order_id)

        assert exc_info.value.code == "REC_REMOTE_FETCH_FAILED"


class TestManualResolution:

    async def _open_price_discrepancy(self, service, seed, venue):
        account_id = await seed.account(name="Desk")
        await seed.order(
            account_id,
            exchange_order_id="EX-1",
            filled="5",
            status="partially_filled",
            avg_fill_price="100",
        )
        venue.set_order("EX-1", "PARTIALLY_FILLED", filled_quantity=Decimal("5"), average_price=Decimal("110"))
        await service.run_reconciliation()
        entries = await service.list_discrepancies("paper")
        assert len(entries) == 1
        return entries[0]

    @pytest.mark.asyncio
    async def test_resolve_open_discrepancy(self, service, seed, venue):
        entry = await self._open_price_discrepancy(service, seed, venue)
        assert entry.account_name == "Desk"
        assert entry.symbol == "BTCUSDT"

        resolved = await service.resolve_discrepancy_manually(
            "paper", entry.id, "Price confirmed with venue", user_id=9
        )

        assert resolved.status == ReconciliationLogStatus.RESOLVED
        assert resolved.resolution_action == "Price confirmed with venue"
        assert await service.list_discrepancies("paper") == []
        events = await seed.audit_events(event_type="discrepancy_manually_resolved")
        assert len(events) == 1
        assert events[0].user_id == 9

    @pytest.mark.asyncio
    async def test_later_fix_leaves_earlier_entry_open(self, service, seed, venue):
        entry = await self._open_price_discrepancy(service, seed, venue)
        venue.set_order("EX-1", "CANCELED", filled_quantity=Decimal("5"), average_price=Decimal("110"))

        result = await service.run_reconciliation()
        assert result.total_resolved == 1

        still_open = await service.list_discrepancies("paper")
        assert [e.id for e in still_open] == [entry.id]
        resolved = await service.list_discrepancies("paper", status="resolved")
        assert len(resolved) == 1
        assert resolved[0].id != entry.id
        assert resolved[0].resolution_action.startswith("Auto-reconciled")

    @pytest.mark.asyncio
    async def test_already_resolved(self, service, seed, venue):
        entry = await self._open_price_discrepancy(service, seed, venue)
        await service.resolve_discrepancy_manually("paper", entry.id, "done")

        with pytest.raises(ManualReconciliationError):
            await service.resolve_discrepancy_manually("paper", entry.id, "again")

    @pytest.mark.asyncio
    async def test_unknown_log_entry(self, service):
        with pytest.raises(ManualReconciliationError) as exc_info:
            await service.resolve_discrepancy_manually("paper", 999, "n/a")

        assert exc_info.value.code == "REC_NOT_FOUND"


# ============================================================
# QUERIES
# ============================================================

class TestQueries:

    @pytest.mark.asyncio
    async def test_history(self, service, seed, venue):
        await seed_cancelled_orders(seed, venue, 2)
        await service.run_reconciliation()

        history = await service.get_reconciliation_history("paper", limit=1)

        assert len(history) == 1
        assert history[0].status == ReconciliationLogStatus.RESOLVED
        assert history[0].discrepancy_details["type"] == "order_state_mismatch"

    def test_status(self, service):
        status = service.get_status()

        assert status["service"] == "order_reconciliation"
        assert status["state"] == "stopped"
        assert status["metrics"]["config"]["alertThreshold"] == 10
