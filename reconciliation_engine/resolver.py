"""
Reconciliation Engine - Discrepancy Resolver.

============================================================
PURPOSE
============================================================
Applies corrective actions for a detected discrepancy.

BRANCHES (one per mismatched field):
- status          -> overwrite local status
- filled_quantity -> set filled, derive remaining and status
- avg_fill_price  -> flag for review, no write
- missing_fills   -> insert synthetic trade, then set filled

SAFETY:
- Every branch writes exactly one audit event
- A failing branch never aborts the others
- Order writes are conditional on the last-seen updated_at
- Synthetic trades carry a deterministic idempotency key
- Only the log entry of this detection is resolved

============================================================
"""

import hashlib
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from .errors import ReconciliationEngineError
from .persistence import ReconciliationPersistence
from .types import (
    AuditEvent,
    Discrepancy,
    FieldMismatch,
    LocalOrder,
    MismatchField,
    OrderStatus,
    ResolutionOutcome,
    SyntheticTrade,
)


logger = logging.getLogger(__name__)


SYNTHETIC_TRADE_PREFIX = "RECONCILED"


def _canonical(value: Any) -> str:
    if value is None:
        return ""
    return format(Decimal(str(value)).normalize(), "f")


def synthetic_trade_id(
    order_id: int,
    exchange_order_id: Optional[str],
    local_filled: Decimal,
    remote_filled: Decimal,
) -> str:
    """
    Deterministic key for the synthetic trade of one missing fill.

    The same discrepancy always yields the same key.
    """
    material = "|".join([
        str(order_id),
        exchange_order_id or "",
        _canonical(local_filled),
        _canonical(remote_filled),
    ])
    digest = hashlib.sha256(material.encode("utf-8")).hexdigest()[:16]
    return f"{SYNTHETIC_TRADE_PREFIX}_{order_id}_{digest}"


# ============================================================
# DISCREPANCY RESOLVER
# ============================================================

class DiscrepancyResolver:
    """
    Resolves discrepancies against local persistence.

    The caller serializes work on one order id.
    """

    def __init__(self, persistence: ReconciliationPersistence):
        self._persistence = persistence

    async def resolve(self, trading_mode: str, discrepancy: Discrepancy) -> ResolutionOutcome:
        """
        Apply corrective actions for every mismatched field.

        Args:
            trading_mode: Trading mode
            discrepancy: Detected discrepancy

        Returns:
            ResolutionOutcome; resolved when any corrective branch succeeded
        """
        order = await self._persistence.get_order(trading_mode, discrepancy.order_id)
        if order is None:
            logger.error(f"Local order {discrepancy.order_id} not found for resolution")
            return ResolutionOutcome(resolved=False, failed={"order": "not found"})

        outcome = ResolutionOutcome(resolved=False)

        for mismatch in discrepancy.mismatches:
            name = mismatch.field.value
            try:
                if mismatch.field == MismatchField.STATUS:
                    await self._resolve_status(trading_mode, order, mismatch)
                    outcome.applied.append(name)
                elif mismatch.field == MismatchField.FILLED_QUANTITY:
                    await self._resolve_filled_quantity(trading_mode, order, mismatch, discrepancy)
                    outcome.applied.append(name)
                elif mismatch.field == MismatchField.AVG_FILL_PRICE:
                    await self._flag_price(trading_mode, order, mismatch)
                    outcome.flagged.append(name)
                elif mismatch.field == MismatchField.MISSING_FILLS:
                    trade_id = await self._resolve_missing_fills(
                        trading_mode, order, mismatch, discrepancy
                    )
                    outcome.synthetic_trade_id = trade_id
                    outcome.applied.append(name)
            except Exception as e:
                outcome.failed[name] = str(e)
                code = e.code if isinstance(e, ReconciliationEngineError) else "REC_RESOLUTION_FAILED"
                logger.error(
                    f"Failed to resolve {name} for order {order.id} ({trading_mode}): [{code}] {e}"
                )

        outcome.resolved = bool(outcome.applied)

        if outcome.resolved and discrepancy.log_id is not None:
            action = f"Auto-reconciled: {', '.join(outcome.applied)}"
            try:
                if not await self._persistence.resolve_reconciliation_log(
                    trading_mode, discrepancy.log_id, action
                ):
                    logger.info(f"Reconciliation log {discrepancy.log_id} already resolved")
            except Exception as e:
                outcome.failed["reconciliation_log"] = str(e)
                logger.error(f"Failed to close reconciliation log {discrepancy.log_id}: {e}")

        if outcome.resolved:
            logger.info(
                f"Discrepancy resolved: {trading_mode} order {order.id} "
                f"applied={outcome.applied} flagged={outcome.flagged}"
            )

        return outcome

    # --------------------------------------------------------
    # BRANCHES
    # --------------------------------------------------------

    async def _write_order(
        self,
        trading_mode: str,
        order: LocalOrder,
        fields: Dict[str, Any],
    ) -> None:
        order.updated_at = await self._persistence.update_order(
            trading_mode,
            order.id,
            fields,
            expected_updated_at=order.updated_at,
        )

    async def _resolve_status(
        self,
        trading_mode: str,
        order: LocalOrder,
        mismatch: FieldMismatch,
    ) -> None:
        previous = order.status
        new_status: OrderStatus = mismatch.remote

        await self._write_order(trading_mode, order, {"status": new_status})
        order.status = new_status

        await self._persistence.append_audit_event(trading_mode, AuditEvent(
            event_type="order_status_reconciled",
            account_id=order.account_id,
            description=f"Order status updated from {previous.value} to {new_status.value}",
            metadata={
                "orderId": order.id,
                "exchangeOrderId": order.exchange_order_id,
                "previousStatus": previous.value,
                "newStatus": new_status.value,
                "reason": "reconciliation",
            },
        ))

    async def _apply_filled(
        self,
        trading_mode: str,
        order: LocalOrder,
        filled: Decimal,
        discrepancy: Discrepancy,
    ) -> None:
        status_mismatch = discrepancy.get(MismatchField.STATUS)
        closed_status = status_mismatch.remote if status_mismatch else order.status

        updated = LocalOrder(
            id=order.id,
            account_id=order.account_id,
            symbol=order.symbol,
            side=order.side,
            quantity=order.quantity,
            status=order.status,
        )
        updated.apply_fill_quantity(filled, closed_status=closed_status)

        await self._write_order(trading_mode, order, {
            "filled_quantity": updated.filled_quantity,
            "remaining_quantity": updated.remaining_quantity,
            "status": updated.status,
        })
        order.filled_quantity = updated.filled_quantity
        order.remaining_quantity = updated.remaining_quantity
        order.status = updated.status

    async def _resolve_filled_quantity(
        self,
        trading_mode: str,
        order: LocalOrder,
        mismatch: FieldMismatch,
        discrepancy: Discrepancy,
    ) -> None:
        await self._apply_filled(trading_mode, order, mismatch.remote, discrepancy)

        await self._persistence.append_audit_event(trading_mode, AuditEvent(
            event_type="order_quantity_reconciled",
            account_id=order.account_id,
            description=(
                f"Order filled quantity adjusted from {mismatch.local} to {mismatch.remote}"
            ),
            metadata={
                "orderId": order.id,
                "exchangeOrderId": order.exchange_order_id,
                "previousQuantity": str(mismatch.local),
                "newQuantity": str(mismatch.remote),
                "difference": str(mismatch.difference),
                "newStatus": order.status.value,
                "reason": "reconciliation",
            },
        ))

    async def _flag_price(
        self,
        trading_mode: str,
        order: LocalOrder,
        mismatch: FieldMismatch,
    ) -> None:
        await self._persistence.append_audit_event(trading_mode, AuditEvent(
            event_type="order_price_discrepancy_flagged",
            account_id=order.account_id,
            description=(
                f"Average fill price differs: local {mismatch.local}, exchange {mismatch.remote}"
            ),
            metadata={
                "orderId": order.id,
                "exchangeOrderId": order.exchange_order_id,
                "localPrice": str(mismatch.local),
                "exchangePrice": str(mismatch.remote),
                "difference": str(mismatch.difference),
                "severity": mismatch.severity.value,
                "reason": "reconciliation",
            },
        ))

    async def _resolve_missing_fills(
        self,
        trading_mode: str,
        order: LocalOrder,
        mismatch: FieldMismatch,
        discrepancy: Discrepancy,
    ) -> str:
        missing_quantity: Decimal = mismatch.missing_quantity
        estimated_price = order.price or order.avg_fill_price or Decimal("0")
        trade_id = synthetic_trade_id(
            order.id, order.exchange_order_id, mismatch.local, mismatch.remote
        )

        inserted = await self._persistence.insert_trade(trading_mode, SyntheticTrade(
            account_id=order.account_id,
            order_id=order.id,
            exchange_trade_id=trade_id,
            symbol=order.symbol,
            side=order.side,
            quantity=missing_quantity,
            price=estimated_price,
            metadata={
                "reconciled": True,
                "reason": "missing_fill_recovery",
                "original_discrepancy": mismatch.to_dict(),
            },
        ))
        if not inserted:
            logger.info(f"Synthetic trade {trade_id} already exists, skipping insert")

        await self._apply_filled(trading_mode, order, mismatch.remote, discrepancy)

        await self._persistence.append_audit_event(trading_mode, AuditEvent(
            event_type="missing_fill_recovered",
            account_id=order.account_id,
            description=f"Missing fill recovered for order {order.id}",
            metadata={
                "orderId": order.id,
                "exchangeOrderId": order.exchange_order_id,
                "missingQuantity": str(missing_quantity),
                "estimatedPrice": str(estimated_price),
                "syntheticTradeId": trade_id,
                "tradeInserted": inserted,
                "reason": "reconciliation",
            },
        ))

        return trade_id
