"""
Reconciliation Engine - Mock Exchange Adapter.

============================================================
PURPOSE
============================================================
In-memory venue for tests and local runs.

FEATURES:
- Configurable latency
- Configurable error injection
- Scripted remote order state
- Call tracking

============================================================
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from ..errors import RemoteFetchError
from ..types import RemoteOrderSnapshot
from .base import ExchangeAdapter, normalize_status
from .factory import AdapterConfig


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    min_latency_ms: float = 0.0
    """Minimum simulated latency."""

    max_latency_ms: float = 0.0
    """Maximum simulated latency."""

    network_error_probability: float = 0.0
    """Probability of a failed fetch."""


# ============================================================
# MOCK ORDER
# ============================================================

@dataclass
class MockOrder:
    """Venue-side order state."""

    exchange_order_id: str
    status: str = "NEW"
    filled_quantity: Decimal = Decimal("0")
    average_price: Optional[Decimal] = None


# ============================================================
# MOCK EXCHANGE ADAPTER
# ============================================================

class MockExchangeAdapter(ExchangeAdapter):
    """
    Mock exchange adapter for testing.

    Orders are scripted with set_order(); unknown orders fail the
    fetch the way a venue "order not found" does.
    """

    def __init__(self, config: Optional[MockConfig] = None):
        self._config = config or MockConfig()
        self._connected = False
        self._orders: Dict[str, MockOrder] = {}
        self._queued_errors: List[Exception] = []
        self._fetch_delay_seconds = 0.0
        self.fetch_calls: List[str] = []

    @classmethod
    def from_config(cls, config: AdapterConfig) -> "MockExchangeAdapter":
        """Creator usable with AdapterFactory.register."""
        return cls(MockConfig(**config.options.get("mock", {})))

    @property
    def exchange_id(self) -> str:
        return "mock"

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        await self._simulate_latency()
        self._connected = True
        logger.info("MockExchangeAdapter connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("MockExchangeAdapter disconnected")

    # --------------------------------------------------------
    # SCRIPTING
    # --------------------------------------------------------

    def set_order(
        self,
        exchange_order_id: str,
        status: str,
        filled_quantity: Decimal = Decimal("0"),
        average_price: Optional[Decimal] = None,
    ) -> None:
        """Set the venue state of an order."""
        self._orders[exchange_order_id] = MockOrder(
            exchange_order_id=exchange_order_id,
            status=status,
            filled_quantity=Decimal(str(filled_quantity)),
            average_price=Decimal(str(average_price)) if average_price is not None else None,
        )

    def remove_order(self, exchange_order_id: str) -> None:
        self._orders.pop(exchange_order_id, None)

    def fail_next(self, error: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next fetches raise."""
        for _ in range(times):
            self._queued_errors.append(error or RemoteFetchError("Injected error"))

    def set_fetch_delay(self, seconds: float) -> None:
        """Delay every fetch, for timeout tests."""
        self._fetch_delay_seconds = seconds

    # --------------------------------------------------------
    # ORDER STATE
    # --------------------------------------------------------

    async def get_order_status(self, exchange_order_id: str) -> RemoteOrderSnapshot:
        self.fetch_calls.append(exchange_order_id)
        await self._simulate_latency()

        if self._fetch_delay_seconds:
            await asyncio.sleep(self._fetch_delay_seconds)

        if self._queued_errors:
            raise self._queued_errors.pop(0)

        if random.random() < self._config.network_error_probability:
            raise RemoteFetchError("Simulated network error", exchange_order_id=exchange_order_id)

        order = self._orders.get(exchange_order_id)
        if order is None:
            raise RemoteFetchError(
                f"Order {exchange_order_id} not found",
                exchange_order_id=exchange_order_id,
            )

        return RemoteOrderSnapshot(
            status=normalize_status(order.status),
            filled_quantity=order.filled_quantity,
            avg_fill_price=order.average_price,
            raw={
                "orderId": order.exchange_order_id,
                "status": order.status,
                "executedQty": str(order.filled_quantity),
                "avgPrice": str(order.average_price) if order.average_price is not None else None,
            },
        )

    async def _simulate_latency(self) -> None:
        if self._config.max_latency_ms <= 0:
            return
        latency = random.uniform(self._config.min_latency_ms, self._config.max_latency_ms)
        await asyncio.sleep(latency / 1000)
