"""
Reconciliation Engine - ORM Models.

============================================================
PURPOSE
============================================================
SQLAlchemy ORM models for one trading-mode database.

TABLES:
- accounts: Trading accounts
- orders: Local order ledger
- trades: Fills, including synthetic reconciliation trades
- audit_logs: Append-only audit trail
- reconciliation_logs: Detected discrepancies and resolution

AUDIT REQUIREMENTS:
- Every correction writes an audit row
- Every discrepancy writes a reconciliation log row
- Synthetic trades are unique on exchange_trade_id

============================================================
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .types import utc_now


# ============================================================
# BASE
# ============================================================

class Base(DeclarativeBase):
    """Declarative base for trading-mode tables."""

    type_annotation_map = {
        datetime: DateTime(timezone=True),
    }


class TimestampMixin:
    """
    created_at / updated_at columns.

    Python-side defaults keep the stored precision identical to the
    values used by conditional updates.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utc_now,
    )


# ============================================================
# ACCOUNT MODEL
# ============================================================

class AccountModel(TimestampMixin, Base):
    """Trading account."""

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="paper")
    exchange: Mapped[str] = mapped_column(String(32), nullable=False)
    credentials: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active", index=True)
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text)

    __table_args__ = (
        Index("ix_accounts_type_exchange", "type", "exchange"),
    )


# ============================================================
# ORDER MODEL
# ============================================================

class OrderModel(TimestampMixin, Base):
    """Local order record."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    exchange_order_id: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="limit")
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8))
    stop_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    filled_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False, default=Decimal("0"))
    remaining_quantity: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    avg_fill_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8))
    fee: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    fee_currency: Mapped[str] = mapped_column(String(10), default="USD")
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text)

    __table_args__ = (
        Index("ix_orders_account_status", "account_id", "status"),
        Index("ix_orders_symbol_created", "symbol", "created_at"),
    )


# ============================================================
# TRADE MODEL
# ============================================================

class TradeModel(TimestampMixin, Base):
    """Executed fill."""

    __tablename__ = "trades"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False
    )
    exchange_trade_id: Mapped[Optional[str]] = mapped_column(String(128), unique=True)
    symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    fee: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    fee_currency: Mapped[str] = mapped_column(String(10), default="USD")
    pnl: Mapped[Decimal] = mapped_column(Numeric(20, 8), default=Decimal("0"))
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text)

    __table_args__ = (
        Index("ix_trades_account_created", "account_id", "created_at"),
        Index("ix_trades_order", "order_id"),
    )


# ============================================================
# AUDIT LOG MODEL
# ============================================================

class AuditLogModel(TimestampMixin, Base):
    """Append-only audit record."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id", ondelete="SET NULL")
    )
    user_id: Mapped[Optional[int]] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(String(512), nullable=False)
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text)

    __table_args__ = (
        Index("ix_audit_logs_account_created", "account_id", "created_at"),
        Index("ix_audit_logs_event_created", "event_type", "created_at"),
    )


# ============================================================
# RECONCILIATION LOG MODEL
# ============================================================

class ReconciliationLogModel(TimestampMixin, Base):
    """Discrepancy detected for one subject and its resolution."""

    __tablename__ = "reconciliation_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(16), nullable=False, default="order")
    reference_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    discrepancy_details: Mapped[Optional[str]] = mapped_column(Text)
    expected_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8))
    actual_value: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 8))
    resolution_action: Mapped[Optional[str]] = mapped_column(Text)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_reconciliation_logs_account_type_status", "account_id", "type", "status"),
        Index("ix_reconciliation_logs_status_created", "status", "created_at"),
        Index("ix_reconciliation_logs_reference", "reference_id", "type", "status"),
    )
