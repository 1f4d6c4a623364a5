"""
Reconciliation Engine - Repository.

============================================================
PURPOSE
============================================================
SQLAlchemy implementation of ReconciliationPersistence.

RESPONSIBILITIES:
- Load accounts and open orders
- Conditional order updates (optimistic concurrency)
- Idempotent synthetic trade inserts
- Audit events and reconciliation log entries

CRITICAL REQUIREMENTS:
- Each write is its own transaction
- Order updates never overwrite a concurrent write
- Complete audit trail

============================================================
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import String, cast, desc, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .database import TradingModeDatabase
from .errors import PersistenceError, StaleOrderError
from .models import (
    AccountModel,
    AuditLogModel,
    OrderModel,
    ReconciliationLogModel,
    TradeModel,
)
from .persistence import RECONCILABLE_STATUSES, ReconciliationPersistence
from .types import (
    AccountRecord,
    AuditEvent,
    Discrepancy,
    LocalOrder,
    OrderStatus,
    ReconciliationLogEntry,
    ReconciliationLogStatus,
    SyntheticTrade,
    utc_now,
)


logger = logging.getLogger(__name__)


# ============================================================
# RECONCILIATION REPOSITORY
# ============================================================

class SqlAlchemyReconciliationRepository(ReconciliationPersistence):
    """
    Repository for reconciliation persistence.

    One database per trading mode, accessed through TradingModeDatabase.
    """

    def __init__(self, database: TradingModeDatabase):
        """
        Initialize repository.

        Args:
            database: Trading mode database manager
        """
        self._db = database

    async def initialize(self) -> None:
        await self._db.initialize()

    async def close(self) -> None:
        await self._db.close()

    # --------------------------------------------------------
    # ACCOUNT OPERATIONS
    # --------------------------------------------------------

    async def list_active_accounts(self, trading_mode: str) -> List[AccountRecord]:
        async with self._db.session(trading_mode) as session:
            result = await session.execute(
                select(AccountModel)
                .where(AccountModel.status == "active")
                .order_by(AccountModel.id)
            )
            return [self._model_to_account(m) for m in result.scalars()]

    async def get_order_account(
        self,
        trading_mode: str,
        order_id: int,
    ) -> Optional[AccountRecord]:
        async with self._db.session(trading_mode) as session:
            result = await session.execute(
                select(AccountModel)
                .join(OrderModel, OrderModel.account_id == AccountModel.id)
                .where(OrderModel.id == order_id)
            )
            model = result.scalar_one_or_none()
            return self._model_to_account(model) if model else None

    # --------------------------------------------------------
    # ORDER OPERATIONS
    # --------------------------------------------------------

    async def list_open_orders(
        self,
        trading_mode: str,
        account_id: int,
        limit: int,
    ) -> List[LocalOrder]:
        async with self._db.session(trading_mode) as session:
            result = await session.execute(
                select(OrderModel)
                .where(
                    OrderModel.account_id == account_id,
                    OrderModel.status.in_(RECONCILABLE_STATUSES),
                )
                .order_by(OrderModel.id)
                .limit(limit)
            )
            return [self._model_to_order(m) for m in result.scalars()]

    async def get_order(self, trading_mode: str, order_id: int) -> Optional[LocalOrder]:
        async with self._db.session(trading_mode) as session:
            model = await session.get(OrderModel, order_id)
            return self._model_to_order(model) if model else None

    async def update_order(
        self,
        trading_mode: str,
        order_id: int,
        fields: Dict[str, Any],
        expected_updated_at: Optional[datetime] = None,
    ) -> datetime:
        values = {
            key: (value.value if isinstance(value, OrderStatus) else value)
            for key, value in fields.items()
        }
        updated_at = utc_now()
        values["updated_at"] = updated_at

        stmt = update(OrderModel).where(OrderModel.id == order_id)
        if expected_updated_at is not None:
            stmt = stmt.where(OrderModel.updated_at == expected_updated_at)
        stmt = stmt.values(**values).execution_options(synchronize_session=False)

        try:
            async with self._db.session(trading_mode) as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to update order {order_id}: {e}",
                order_id=order_id,
            ) from e

        if result.rowcount == 0:
            raise StaleOrderError(
                f"Order {order_id} changed concurrently or no longer exists",
                order_id=order_id,
            )

        return updated_at

    def _model_to_order(self, model: OrderModel) -> LocalOrder:
        return LocalOrder(
            id=model.id,
            account_id=model.account_id,
            exchange_order_id=model.exchange_order_id,
            symbol=model.symbol,
            side=model.side,
            quantity=model.quantity,
            status=OrderStatus(model.status),
            filled_quantity=model.filled_quantity,
            remaining_quantity=model.remaining_quantity,
            avg_fill_price=model.avg_fill_price,
            price=model.price,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _model_to_account(self, model: AccountModel) -> AccountRecord:
        return AccountRecord(
            id=model.id,
            name=model.name,
            exchange=model.exchange,
            credentials=model.credentials,
            status=model.status,
        )

    # --------------------------------------------------------
    # TRADE OPERATIONS
    # --------------------------------------------------------

    async def get_trade_by_exchange_id(
        self,
        trading_mode: str,
        exchange_trade_id: str,
    ) -> Optional[Dict[str, Any]]:
        async with self._db.session(trading_mode) as session:
            result = await session.execute(
                select(TradeModel).where(TradeModel.exchange_trade_id == exchange_trade_id)
            )
            model = result.scalar_one_or_none()
            if model is None:
                return None
            return {
                "id": model.id,
                "order_id": model.order_id,
                "exchange_trade_id": model.exchange_trade_id,
                "symbol": model.symbol,
                "side": model.side,
                "quantity": model.quantity,
                "price": model.price,
                "metadata": json.loads(model.metadata_json or "{}"),
            }

    async def insert_trade(self, trading_mode: str, trade: SyntheticTrade) -> bool:
        if await self.get_trade_by_exchange_id(trading_mode, trade.exchange_trade_id):
            return False

        model = TradeModel(
            account_id=trade.account_id,
            order_id=trade.order_id,
            exchange_trade_id=trade.exchange_trade_id,
            symbol=trade.symbol,
            side=trade.side,
            quantity=trade.quantity,
            price=trade.price,
            fee=trade.fee,
            fee_currency=trade.fee_currency,
            pnl=trade.pnl,
            metadata_json=json.dumps(trade.metadata, default=str),
        )

        try:
            async with self._db.session(trading_mode) as session:
                async with session.begin():
                    session.add(model)
        except IntegrityError:
            # Lost the race against another insert of the same key.
            logger.info(f"Trade {trade.exchange_trade_id} already recorded")
            return False
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to insert trade {trade.exchange_trade_id}: {e}",
                order_id=trade.order_id,
            ) from e

        return True

    # --------------------------------------------------------
    # AUDIT OPERATIONS
    # --------------------------------------------------------

    async def append_audit_event(self, trading_mode: str, event: AuditEvent) -> None:
        model = AuditLogModel(
            event_type=event.event_type,
            account_id=event.account_id,
            user_id=event.user_id,
            description=event.description,
            metadata_json=json.dumps(event.metadata, default=str),
        )
        try:
            async with self._db.session(trading_mode) as session:
                async with session.begin():
                    session.add(model)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to log audit event {event.event_type}: {e}") from e

        logger.info(f"Audit event logged: {trading_mode} {event.event_type}")

    async def list_audit_events(
        self,
        trading_mode: str,
        event_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Recent audit events, most recent first."""
        query = select(AuditLogModel)
        if event_type:
            query = query.where(AuditLogModel.event_type == event_type)
        query = query.order_by(desc(AuditLogModel.id)).limit(limit)

        async with self._db.session(trading_mode) as session:
            result = await session.execute(query)
            return [
                {
                    "id": m.id,
                    "event_type": m.event_type,
                    "account_id": m.account_id,
                    "user_id": m.user_id,
                    "description": m.description,
                    "metadata": json.loads(m.metadata_json or "{}"),
                    "created_at": m.created_at,
                }
                for m in result.scalars()
            ]

    # --------------------------------------------------------
    # RECONCILIATION LOG OPERATIONS
    # --------------------------------------------------------

    async def write_reconciliation_log(
        self,
        trading_mode: str,
        account_id: int,
        discrepancy: Discrepancy,
    ) -> int:
        now = utc_now()
        model = ReconciliationLogModel(
            account_id=account_id,
            type="order",
            reference_id=str(discrepancy.order_id),
            status=ReconciliationLogStatus.DISCREPANCY.value,
            discrepancy_details=json.dumps(discrepancy.to_dict()),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._db.session(trading_mode) as session:
                async with session.begin():
                    session.add(model)
                    await session.flush()
                    log_id = model.id
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to log discrepancy for order {discrepancy.order_id}: {e}",
                order_id=discrepancy.order_id,
            ) from e
        return log_id

    async def get_reconciliation_log(
        self,
        trading_mode: str,
        log_id: int,
    ) -> Optional[ReconciliationLogEntry]:
        async with self._db.session(trading_mode) as session:
            model = await session.get(ReconciliationLogModel, log_id)
            return self._model_to_log(model) if model else None

    async def resolve_reconciliation_log(
        self,
        trading_mode: str,
        log_id: int,
        resolution_action: str,
    ) -> bool:
        now = utc_now()
        stmt = (
            update(ReconciliationLogModel)
            .where(
                ReconciliationLogModel.id == log_id,
                ReconciliationLogModel.status == ReconciliationLogStatus.DISCREPANCY.value,
            )
            .values(
                status=ReconciliationLogStatus.RESOLVED.value,
                resolution_action=resolution_action,
                resolved_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            async with self._db.session(trading_mode) as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to resolve reconciliation log {log_id}: {e}",
                log_id=log_id,
            ) from e
        return result.rowcount == 1

    async def get_reconciliation_history(
        self,
        trading_mode: str,
        limit: int = 100,
    ) -> List[ReconciliationLogEntry]:
        async with self._db.session(trading_mode) as session:
            result = await session.execute(
                select(ReconciliationLogModel)
                .order_by(desc(ReconciliationLogModel.created_at), desc(ReconciliationLogModel.id))
                .limit(limit)
            )
            return [self._model_to_log(m) for m in result.scalars()]

    async def list_discrepancies(
        self,
        trading_mode: str,
        status: str = "discrepancy",
        limit: int = 50,
    ) -> List[ReconciliationLogEntry]:
        query = (
            select(ReconciliationLogModel, AccountModel.name, OrderModel.symbol)
            .join(AccountModel, ReconciliationLogModel.account_id == AccountModel.id)
            .outerjoin(
                OrderModel,
                ReconciliationLogModel.reference_id == cast(OrderModel.id, String),
            )
            .where(ReconciliationLogModel.status == status)
            .order_by(desc(ReconciliationLogModel.created_at), desc(ReconciliationLogModel.id))
            .limit(limit)
        )
        async with self._db.session(trading_mode) as session:
            result = await session.execute(query)
            entries = []
            for model, account_name, symbol in result.all():
                entry = self._model_to_log(model)
                entry.account_name = account_name
                entry.symbol = symbol
                entries.append(entry)
            return entries

    def _model_to_log(self, model: ReconciliationLogModel) -> ReconciliationLogEntry:
        return ReconciliationLogEntry(
            id=model.id,
            account_id=model.account_id,
            type=model.type,
            reference_id=model.reference_id,
            status=ReconciliationLogStatus(model.status),
            discrepancy_details=json.loads(model.discrepancy_details or "{}"),
            resolution_action=model.resolution_action,
            created_at=model.created_at,
            updated_at=model.updated_at,
            resolved_at=model.resolved_at,
        )
