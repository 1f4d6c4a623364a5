"""
Reconciliation Engine - Exchange Adapter Interface.

============================================================
PURPOSE
============================================================
Abstract interface to a remote trading venue.

The engine only reads remote order state. Order submission,
routing and connection protocols belong to the execution layer.

============================================================
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict

from ..types import OrderStatus, RemoteOrderSnapshot


logger = logging.getLogger(__name__)


# ============================================================
# STATUS NORMALIZATION
# ============================================================

_STATUS_MAPPING: Dict[str, OrderStatus] = {
    "NEW": OrderStatus.OPEN,
    "OPEN": OrderStatus.OPEN,
    "LIVE": OrderStatus.OPEN,
    "PENDING": OrderStatus.OPEN,
    "PARTIALLY_FILLED": OrderStatus.PARTIALLY_FILLED,
    "PARTIAL": OrderStatus.PARTIALLY_FILLED,
    "FILLED": OrderStatus.FILLED,
    "CLOSED": OrderStatus.FILLED,
    "CANCELED": OrderStatus.CANCELLED,
    "CANCELLED": OrderStatus.CANCELLED,
    "EXPIRED": OrderStatus.CANCELLED,
    "REJECTED": OrderStatus.REJECTED,
}


def normalize_status(status: str) -> OrderStatus:
    """
    Map a venue status string to the local status vocabulary.

    Args:
        status: Venue status string (any case)

    Returns:
        OrderStatus

    Raises:
        ValueError: Unknown status
    """
    normalized = _STATUS_MAPPING.get(str(status).strip().upper())
    if normalized is None:
        raise ValueError(f"Unknown venue order status: {status!r}")
    return normalized


# ============================================================
# EXCHANGE ADAPTER INTERFACE
# ============================================================

class ExchangeAdapter(ABC):
    """
    Abstract interface for exchange adapters.

    Implementations:
    - MockExchangeAdapter: For testing
    """

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Get exchange identifier."""
        pass

    @property
    def is_connected(self) -> bool:
        return True

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Connect to the venue. Stateless adapters need nothing."""

    async def disconnect(self) -> None:
        """Release venue resources."""

    # --------------------------------------------------------
    # ORDER STATE
    # --------------------------------------------------------

    @abstractmethod
    async def get_order_status(self, exchange_order_id: str) -> RemoteOrderSnapshot:
        """
        Fetch the venue's view of an order.

        Args:
            exchange_order_id: Venue order id

        Returns:
            RemoteOrderSnapshot with normalized status

        Raises:
            RemoteFetchError: Venue call failed
        """
        pass
