"""
Reconciliation Engine - Persistence Interface.

============================================================
PURPOSE
============================================================
Abstract contract for the per-trading-mode persistence layer.

Every method takes the trading mode first; each mode has its
own database.

WRITE RULES:
- Order updates are conditional on the last-seen updated_at
- Trades are unique on exchange_trade_id
- Audit and reconciliation logs are append-only

============================================================
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional

from .types import (
    AccountRecord,
    AuditEvent,
    Discrepancy,
    LocalOrder,
    OrderStatus,
    ReconciliationLogEntry,
    SyntheticTrade,
)


class ReconciliationPersistence(ABC):
    """Persistence operations used by the reconciliation engine."""

    async def initialize(self) -> None:
        """Open connections."""

    async def close(self) -> None:
        """Release connections."""

    # --------------------------------------------------------
    # ACCOUNTS / ORDERS
    # --------------------------------------------------------

    @abstractmethod
    async def list_active_accounts(self, trading_mode: str) -> List[AccountRecord]:
        """Accounts with status 'active'."""

    @abstractmethod
    async def list_open_orders(
        self,
        trading_mode: str,
        account_id: int,
        limit: int,
    ) -> List[LocalOrder]:
        """Open and partially filled orders for an account."""

    @abstractmethod
    async def get_order(self, trading_mode: str, order_id: int) -> Optional[LocalOrder]:
        """Order by id."""

    @abstractmethod
    async def get_order_account(
        self,
        trading_mode: str,
        order_id: int,
    ) -> Optional[AccountRecord]:
        """Account owning an order."""

    @abstractmethod
    async def update_order(
        self,
        trading_mode: str,
        order_id: int,
        fields: Dict[str, Any],
        expected_updated_at: Optional[datetime] = None,
    ) -> datetime:
        """
        Update order columns.

        Args:
            trading_mode: Trading mode
            order_id: Order id
            fields: Column values
            expected_updated_at: Guard value; update only applies when
                the row still carries this timestamp

        Returns:
            New updated_at value

        Raises:
            StaleOrderError: Row changed since it was read
        """

    # --------------------------------------------------------
    # TRADES
    # --------------------------------------------------------

    @abstractmethod
    async def get_trade_by_exchange_id(
        self,
        trading_mode: str,
        exchange_trade_id: str,
    ) -> Optional[Dict[str, Any]]:
        """Trade with the given exchange trade id."""

    @abstractmethod
    async def insert_trade(self, trading_mode: str, trade: SyntheticTrade) -> bool:
        """
        Insert a trade.

        Returns:
            False when a trade with the same exchange_trade_id exists
        """

    # --------------------------------------------------------
    # AUDIT
    # --------------------------------------------------------

    @abstractmethod
    async def append_audit_event(self, trading_mode: str, event: AuditEvent) -> None:
        """Append an audit record."""

    # --------------------------------------------------------
    # RECONCILIATION LOG
    # --------------------------------------------------------

    @abstractmethod
    async def write_reconciliation_log(
        self,
        trading_mode: str,
        account_id: int,
        discrepancy: Discrepancy,
    ) -> int:
        """Persist a detected discrepancy; returns the log entry id."""

    @abstractmethod
    async def get_reconciliation_log(
        self,
        trading_mode: str,
        log_id: int,
    ) -> Optional[ReconciliationLogEntry]:
        """Log entry by id."""

    @abstractmethod
    async def resolve_reconciliation_log(
        self,
        trading_mode: str,
        log_id: int,
        resolution_action: str,
    ) -> bool:
        """
        Move one entry from 'discrepancy' to 'resolved'.

        Returns:
            False when the entry was missing or already resolved
        """

    @abstractmethod
    async def get_reconciliation_history(
        self,
        trading_mode: str,
        limit: int = 100,
    ) -> List[ReconciliationLogEntry]:
        """Recent entries, most recent first."""

    @abstractmethod
    async def list_discrepancies(
        self,
        trading_mode: str,
        status: str = "discrepancy",
        limit: int = 50,
    ) -> List[ReconciliationLogEntry]:
        """Entries in a status with account name and order symbol."""


RECONCILABLE_STATUSES = [s.value for s in OrderStatus.reconcilable()]
