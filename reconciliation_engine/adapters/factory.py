"""
Reconciliation Engine - Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Builds an exchange adapter for an account.

FEATURES:
- Registry of adapter creators per exchange
- Credential decoding (JSON text or dict)
- Bounded adapter connection
- Credentials masked in logs

============================================================
USAGE
============================================================
```python
factory = AdapterFactory()
factory.register("mock", creator=lambda config: MockExchangeAdapter())

adapter = await factory.create("mock", account.credentials)
```

============================================================
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import AdapterUnavailableError
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


def mask_value(value: Optional[str], show_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only first few chars.

    Args:
        value: Value to mask
        show_chars: Number of chars to show at start

    Returns:
        Masked value
    """
    if not value or len(value) <= show_chars:
        return "***"
    return f"{value[:show_chars]}...***"


# ============================================================
# ADAPTER CONFIGURATION
# ============================================================

@dataclass
class AdapterConfig:
    """
    Configuration for an exchange adapter.

    Built from the credentials stored on an account.
    """

    exchange_id: str
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    passphrase: Optional[str] = None
    testnet: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_credentials(cls, exchange_id: str, credentials: Any) -> "AdapterConfig":
        """
        Build config from stored account credentials.

        Args:
            exchange_id: Exchange identifier
            credentials: JSON text, dict, or None

        Raises:
            ValueError: Credentials are not a JSON object
        """
        if credentials is None or credentials == "":
            data: Dict[str, Any] = {}
        elif isinstance(credentials, dict):
            data = dict(credentials)
        else:
            data = json.loads(credentials)
            if not isinstance(data, dict):
                raise ValueError("Credentials must be a JSON object")

        return cls(
            exchange_id=exchange_id,
            api_key=data.pop("api_key", None) or data.pop("apiKey", None),
            api_secret=data.pop("api_secret", None) or data.pop("apiSecret", None),
            passphrase=data.pop("passphrase", None),
            testnet=bool(data.pop("testnet", False)),
            options=data,
        )

    def masked(self) -> Dict[str, Any]:
        """Loggable view of the config."""
        return {
            "exchange_id": self.exchange_id,
            "api_key": mask_value(self.api_key),
            "testnet": self.testnet,
        }


AdapterCreator = Callable[[AdapterConfig], ExchangeAdapter]


# ============================================================
# ADAPTER FACTORY
# ============================================================

class AdapterFactory:
    """
    Factory for creating exchange adapters.

    Instances hold their own registry; nothing is shared globally.
    """

    def __init__(self, connect_timeout_seconds: float = 10.0):
        """
        Initialize factory.

        Args:
            connect_timeout_seconds: Bound on adapter connection
        """
        self._creators: Dict[str, AdapterCreator] = {}
        self._connect_timeout_seconds = connect_timeout_seconds

    def register(self, exchange_id: str, creator: AdapterCreator) -> None:
        """
        Register an adapter creator.

        Args:
            exchange_id: Exchange identifier
            creator: Callable building an adapter from AdapterConfig
        """
        self._creators[exchange_id.lower()] = creator

    def unregister(self, exchange_id: str) -> None:
        """Unregister an adapter."""
        self._creators.pop(exchange_id.lower(), None)

    def list_supported(self) -> List[str]:
        return sorted(self._creators)

    def is_supported(self, exchange_id: str) -> bool:
        return (exchange_id or "").lower() in self._creators

    async def create(self, exchange_id: str, credentials: Any = None) -> ExchangeAdapter:
        """
        Create and connect an exchange adapter.

        Args:
            exchange_id: Exchange identifier
            credentials: Stored account credentials

        Returns:
            Connected ExchangeAdapter

        Raises:
            AdapterUnavailableError: Unsupported exchange, bad credentials,
                or connection failure
        """
        key = (exchange_id or "").lower()
        creator = self._creators.get(key)
        if creator is None:
            raise AdapterUnavailableError(
                f"Unsupported exchange: {exchange_id}",
                exchange=exchange_id,
            )

        try:
            config = AdapterConfig.from_credentials(key, credentials)
        except (ValueError, TypeError) as e:
            raise AdapterUnavailableError(
                f"Invalid credentials for {exchange_id}: {e}",
                exchange=exchange_id,
            ) from e

        try:
            adapter = creator(config)
            if not adapter.is_connected:
                await asyncio.wait_for(adapter.connect(), timeout=self._connect_timeout_seconds)
        except asyncio.TimeoutError as e:
            raise AdapterUnavailableError(
                f"Timed out connecting to {exchange_id}",
                exchange=exchange_id,
            ) from e
        except Exception as e:
            raise AdapterUnavailableError(
                f"Failed to create adapter for {exchange_id}: {e}",
                exchange=exchange_id,
            ) from e

        logger.debug(f"Adapter created: {config.masked()}")
        return adapter
