"""
Reconciliation Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Read-only access to remote venue order state.

- ExchangeAdapter: Abstract interface
- AdapterFactory: Builds adapters from account credentials
- MockExchangeAdapter: For testing

============================================================
"""

from .base import ExchangeAdapter, normalize_status
from .factory import AdapterConfig, AdapterFactory, mask_value
from .mock import MockConfig, MockExchangeAdapter, MockOrder


__all__ = [
    "ExchangeAdapter",
    "normalize_status",
    "AdapterConfig",
    "AdapterFactory",
    "mask_value",
    "MockConfig",
    "MockExchangeAdapter",
    "MockOrder",
]
