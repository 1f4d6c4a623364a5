"""
Discrepancy Resolver Tests.

============================================================
PURPOSE
============================================================
Corrective branches, audit trail and idempotence, against an
in-memory SQLite ledger.

============================================================
"""

from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from reconciliation_engine.detector import DiscrepancyDetector
from reconciliation_engine.errors import StaleOrderError
from reconciliation_engine.resolver import DiscrepancyResolver, synthetic_trade_id
from reconciliation_engine.types import (
    Discrepancy,
    FieldMismatch,
    LocalOrder,
    MismatchField,
    OrderStatus,
    RemoteOrderSnapshot,
    Severity,
)


async def detect_and_log(repository, order_id, remote, mode="paper"):
    order = await repository.get_order(mode, order_id)
    discrepancy = DiscrepancyDetector().detect(order, remote)
    discrepancy.log_id = await repository.write_reconciliation_log(
        mode, order.account_id, discrepancy
    )
    return discrepancy


@pytest.fixture
def resolver(repository):
    return DiscrepancyResolver(repository)


# ============================================================
# IDEMPOTENCY KEY
# ============================================================

class TestSyntheticTradeId:

    def test_deterministic(self):
        a = synthetic_trade_id(42, "EX-42", Decimal("5"), Decimal("7"))
        b = synthetic_trade_id(42, "EX-42", Decimal("5.00000000"), Decimal("7.0"))

        assert a == b
        assert a.startswith("RECONCILED_42_")
        assert len(a.split("_")[-1]) == 16

    def test_distinct_per_discrepancy(self):
        a = synthetic_trade_id(42, "EX-42", Decimal("5"), Decimal("7"))
        b = synthetic_trade_id(42, "EX-42", Decimal("7"), Decimal("9"))

        assert a != b


# ============================================================
# CORRECTIVE BRANCHES
# ============================================================

class TestResolveBranches:
    """Each mismatched field gets its corrective action."""

    @pytest.mark.asyncio
    async def test_missing_fill_recovery(self, repository, resolver, seed):
        """5 -> 7 of 10: trade of 2, filled 7, remaining 3."""
        account_id = await seed.account()
        order_id = await seed.order(account_id, filled="5", status="partially_filled")
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.PARTIALLY_FILLED,
            filled_quantity=Decimal("7"),
        ))

        outcome = await resolver.resolve("paper", discrepancy)

        assert outcome.resolved
        assert outcome.applied == ["filled_quantity", "missing_fills"]
        assert outcome.failed == {}

        order = await repository.get_order("paper", order_id)
        assert order.filled_quantity == Decimal("7")
        assert order.remaining_quantity == Decimal("3")
        assert order.status == OrderStatus.PARTIALLY_FILLED

        trades = await seed.trades(order_id=order_id)
        assert len(trades) == 1
        assert trades[0].quantity == Decimal("2")
        assert trades[0].price == Decimal("100")
        assert trades[0].fee == Decimal("0")
        assert trades[0].exchange_trade_id == outcome.synthetic_trade_id

        recovered = await seed.audit_events(event_type="missing_fill_recovered")
        assert len(recovered) == 1
        assert len(await seed.audit_events(event_type="order_quantity_reconciled")) == 1

        logs = await seed.logs()
        assert [log.status for log in logs] == ["resolved"]
        assert logs[0].resolution_action.startswith("Auto-reconciled")
        assert logs[0].resolved_at is not None

    @pytest.mark.asyncio
    async def test_fill_completion(self, repository, resolver, seed):
        """8 -> 10 of 10 ends filled with nothing remaining."""
        account_id = await seed.account()
        order_id = await seed.order(account_id, filled="8", status="partially_filled")
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.FILLED,
            filled_quantity=Decimal("10"),
        ))

        outcome = await resolver.resolve("paper", discrepancy)

        assert outcome.resolved
        order = await repository.get_order("paper", order_id)
        assert order.status == OrderStatus.FILLED
        assert order.filled_quantity == Decimal("10")
        assert order.remaining_quantity == Decimal("0")
        assert order.filled_quantity + order.remaining_quantity == order.quantity

    @pytest.mark.asyncio
    async def test_status_overwrite(self, repository, resolver, seed):
        """open -> cancelled is applied and audited."""
        account_id = await seed.account()
        order_id = await seed.order(account_id)
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.CANCELLED,
        ))

        outcome = await resolver.resolve("paper", discrepancy)

        assert outcome.applied == ["status"]
        order = await repository.get_order("paper", order_id)
        assert order.status == OrderStatus.CANCELLED

        events = await seed.audit_events(event_type="order_status_reconciled")
        assert len(events) == 1
        assert events[0].description == "Order status updated from open to cancelled"

    @pytest.mark.asyncio
    async def test_cancelled_with_fills_stays_cancelled(self, repository, resolver, seed):
        """Venue-cancelled order keeps its status after the fill correction."""
        account_id = await seed.account()
        order_id = await seed.order(account_id)
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.CANCELLED,
            filled_quantity=Decimal("3"),
        ))

        await resolver.resolve("paper", discrepancy)

        order = await repository.get_order("paper", order_id)
        assert order.status == OrderStatus.CANCELLED
        assert order.filled_quantity == Decimal("3")
        assert order.remaining_quantity == Decimal("7")

    @pytest.mark.asyncio
    async def test_price_only_is_flagged_not_resolved(self, repository, resolver, seed):
        """Price divergence is audited but leaves the log open."""
        account_id = await seed.account()
        order_id = await seed.order(
            account_id, filled="5", status="partially_filled", avg_fill_price="100"
        )
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.PARTIALLY_FILLED,
            filled_quantity=Decimal("5"),
            avg_fill_price=Decimal("105"),
        ))

        outcome = await resolver.resolve("paper", discrepancy)

        assert not outcome.resolved
        assert outcome.flagged == ["avg_fill_price"]
        assert len(await seed.audit_events(event_type="order_price_discrepancy_flagged")) == 1
        order = await repository.get_order("paper", order_id)
        assert order.avg_fill_price == Decimal("100")
        assert [log.status for log in await seed.logs()] == ["discrepancy"]

    @pytest.mark.asyncio
    async def test_missing_order(self, resolver):
        """Unknown order yields an unresolved outcome."""
        discrepancy = Discrepancy(
            order_id=999,
            account_id=1,
            exchange_order_id="EX-999",
            mismatches=[],
            severity=Severity.LOW,
        )

        outcome = await resolver.resolve("paper", discrepancy)

        assert not outcome.resolved
        assert "order" in outcome.failed


# ============================================================
# IDEMPOTENCE
# ============================================================

class TestIdempotence:

    @pytest.mark.asyncio
    async def test_same_discrepancy_twice_inserts_one_trade(self, repository, resolver, seed):
        """Replaying a discrepancy never duplicates the synthetic trade."""
        account_id = await seed.account()
        order_id = await seed.order(account_id, filled="5", status="partially_filled")
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.PARTIALLY_FILLED,
            filled_quantity=Decimal("7"),
        ))

        first = await resolver.resolve("paper", discrepancy)
        second = await resolver.resolve("paper", discrepancy)

        assert first.synthetic_trade_id == second.synthetic_trade_id
        assert len(await seed.trades(order_id=order_id)) == 1
        order = await repository.get_order("paper", order_id)
        assert order.filled_quantity == Decimal("7")

    @pytest.mark.asyncio
    async def test_resolved_state_has_no_discrepancy(self, repository, resolver, seed):
        """After resolution the same remote state compares clean."""
        account_id = await seed.account()
        order_id = await seed.order(account_id, filled="5", status="partially_filled")
        remote = RemoteOrderSnapshot(
            status=OrderStatus.PARTIALLY_FILLED,
            filled_quantity=Decimal("7"),
        )
        await resolver.resolve("paper", await detect_and_log(repository, order_id, remote))

        order = await repository.get_order("paper", order_id)
        assert DiscrepancyDetector().detect(order, remote) is None


# ============================================================
# FAILURE ISOLATION
# ============================================================

class TestBranchFailures:
    """A failing branch does not stop the others."""

    def _order(self) -> LocalOrder:
        return LocalOrder(
            id=1,
            account_id=1,
            symbol="BTCUSDT",
            side="buy",
            quantity=Decimal("10"),
            status=OrderStatus.OPEN,
            exchange_order_id="EX-1",
        )

    @pytest.mark.asyncio
    async def test_stale_order_fails_branch(self):
        persistence = AsyncMock()
        persistence.get_order.return_value = self._order()
        persistence.update_order.side_effect = StaleOrderError("changed", order_id=1)
        persistence.get_trade_by_exchange_id.return_value = None
        persistence.insert_trade.return_value = True

        discrepancy = Discrepancy(
            order_id=1,
            account_id=1,
            exchange_order_id="EX-1",
            mismatches=[
                FieldMismatch(
                    field=MismatchField.STATUS,
                    local=OrderStatus.OPEN,
                    remote=OrderStatus.CANCELLED,
                    severity=Severity.CRITICAL,
                ),
                FieldMismatch(
                    field=MismatchField.AVG_FILL_PRICE,
                    local=Decimal("100"),
                    remote=Decimal("110"),
                    difference=Decimal("10"),
                    severity=Severity.HIGH,
                ),
            ],
            severity=Severity.CRITICAL,
        )

        outcome = await DiscrepancyResolver(persistence).resolve("paper", discrepancy)

        assert not outcome.resolved
        assert "status" in outcome.failed
        assert outcome.flagged == ["avg_fill_price"]
        persistence.resolve_reconciliation_log.assert_not_awaited()
        event_types = [c.args[1].event_type for c in persistence.append_audit_event.await_args_list]
        assert event_types == ["order_price_discrepancy_flagged"]

    @pytest.mark.asyncio
    async def test_concurrent_write_detected(self, repository, resolver, seed):
        """A write after the resolver's read makes its update stale."""
        account_id = await seed.account()
        order_id = await seed.order(account_id)
        discrepancy = await detect_and_log(repository, order_id, RemoteOrderSnapshot(
            status=OrderStatus.CANCELLED,
        ))

        original_get = repository.get_order

        async def get_then_race(mode, oid):
            order = await original_get(mode, oid)
            await repository.update_order(mode, oid, {"status": OrderStatus.FILLED})
            return order

        repository.get_order = get_then_race

        outcome = await resolver.resolve("paper", discrepancy)

        assert not outcome.resolved
        assert "status" in outcome.failed
        repository.get_order = original_get
        order = await repository.get_order("paper", order_id)
        assert order.status == OrderStatus.FILLED
