"""
Shared fixtures for reconciliation engine tests.

In-memory SQLite databases (one per trading mode) seeded through
the ORM models, plus a mock venue registered with an adapter factory.
"""

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy import select

from reconciliation_engine.adapters import AdapterFactory, MockExchangeAdapter
from reconciliation_engine.config import ReconciliationServiceConfig
from reconciliation_engine.database import TradingModeDatabase
from reconciliation_engine.models import (
    AccountModel,
    AuditLogModel,
    OrderModel,
    ReconciliationLogModel,
    TradeModel,
)
from reconciliation_engine.observers import ReconciliationObserver
from reconciliation_engine.repository import SqlAlchemyReconciliationRepository


class Seeder:
    """Writes and reads raw rows for test setup and assertions."""

    def __init__(self, database: TradingModeDatabase):
        self._db = database

    async def account(
        self,
        mode: str = "paper",
        exchange: str = "mock",
        status: str = "active",
        name: str = "Main",
        credentials: Optional[Dict[str, Any]] = None,
    ) -> int:
        async with self._db.session(mode) as session:
            async with session.begin():
                model = AccountModel(
                    name=name,
                    type=mode,
                    exchange=exchange,
                    status=status,
                    credentials=json.dumps(credentials or {"api_key": "test-key-123456"}),
                )
                session.add(model)
                await session.flush()
                return model.id

    async def order(
        self,
        account_id: int,
        mode: str = "paper",
        exchange_order_id: Optional[str] = "EX-1",
        quantity: str = "10",
        filled: str = "0",
        status: str = "open",
        price: Optional[str] = "100",
        avg_fill_price: Optional[str] = None,
        symbol: str = "BTCUSDT",
        side: str = "buy",
    ) -> int:
        quantity_d = Decimal(quantity)
        filled_d = Decimal(filled)
        async with self._db.session(mode) as session:
            async with session.begin():
                model = OrderModel(
                    account_id=account_id,
                    exchange_order_id=exchange_order_id,
                    symbol=symbol,
                    side=side,
                    quantity=quantity_d,
                    price=Decimal(price) if price is not None else None,
                    status=status,
                    filled_quantity=filled_d,
                    remaining_quantity=quantity_d - filled_d,
                    avg_fill_price=Decimal(avg_fill_price) if avg_fill_price else None,
                )
                session.add(model)
                await session.flush()
                return model.id

    async def _all(self, mode: str, model, *criteria) -> List[Any]:
        async with self._db.session(mode) as session:
            result = await session.execute(select(model).where(*criteria).order_by(model.id))
            return list(result.scalars())

    async def trades(self, mode: str = "paper", order_id: Optional[int] = None) -> List[TradeModel]:
        criteria = [TradeModel.order_id == order_id] if order_id is not None else []
        return await self._all(mode, TradeModel, *criteria)

    async def audit_events(self, mode: str = "paper", event_type: Optional[str] = None) -> List[AuditLogModel]:
        criteria = [AuditLogModel.event_type == event_type] if event_type else []
        return await self._all(mode, AuditLogModel, *criteria)

    async def logs(self, mode: str = "paper") -> List[ReconciliationLogModel]:
        return await self._all(mode, ReconciliationLogModel)

    async def order_row(self, order_id: int, mode: str = "paper") -> OrderModel:
        rows = await self._all(mode, OrderModel, OrderModel.id == order_id)
        return rows[0]


class RecordingObserver(ReconciliationObserver):
    """Records every event it receives."""

    def __init__(self):
        self.events: List[tuple] = []

    def names(self) -> List[str]:
        return [e[0] for e in self.events]

    async def on_service_started(self):
        self.events.append(("service_started",))

    async def on_service_stopped(self):
        self.events.append(("service_stopped",))

    async def on_cycle_completed(self, result):
        self.events.append(("cycle_completed", result))

    async def on_discrepancy_detected(self, trading_mode, discrepancy):
        self.events.append(("discrepancy_detected", trading_mode, discrepancy))

    async def on_discrepancy_resolved(self, trading_mode, discrepancy, outcome):
        self.events.append(("discrepancy_resolved", trading_mode, discrepancy, outcome))

    async def on_high_discrepancy_alert(self, result, threshold):
        self.events.append(("high_discrepancy_alert", result, threshold))

    async def on_cycle_error(self, error):
        self.events.append(("cycle_error", error))


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def config():
    return ReconciliationServiceConfig.for_testing()


@pytest_asyncio.fixture
async def database(config):
    db = TradingModeDatabase(config.database)
    await db.initialize()
    yield db
    await db.close()


@pytest.fixture
def repository(database):
    return SqlAlchemyReconciliationRepository(database)


@pytest.fixture
def seed(database):
    return Seeder(database)


@pytest.fixture
def venue():
    """Mock venue shared by every account."""
    return MockExchangeAdapter()


@pytest.fixture
def adapter_factory(venue):
    factory = AdapterFactory(connect_timeout_seconds=1.0)
    factory.register("mock", lambda adapter_config: venue)
    return factory


@pytest.fixture
def recorder():
    return RecordingObserver()
