"""
Exchange Adapter Factory.

============================================================
PURPOSE
============================================================
Factory for creating read-only exchange adapter instances.

FEATURES:
- Centralized adapter creation
- Configuration injection (explicit, env or account config)
- Adapter registry for extension

============================================================
USAGE
============================================================
```python
# Create adapter by exchange ID (credentials from env)
adapter = AdapterFactory.create("bybit", testnet=True)

# Create from an account
adapter = AdapterFactory.create_for_account(account_config)
```

============================================================
"""

import os
import logging
from enum import Enum
from typing import Dict, Any, Optional, List, Type, Callable
from dataclasses import dataclass, field

from ..config import AccountConfig
from .base import ExchangeAdapter


logger = logging.getLogger(__name__)


# ============================================================
# EXCHANGE IDENTIFIERS
# ============================================================

class ExchangeId(Enum):
    """Supported exchange identifiers."""

    BYBIT = "bybit"
    BLOFIN = "blofin"
    TOOBIT = "toobit"
    MOCK = "mock"


# ============================================================
# ADAPTER CONFIGURATION
# ============================================================

@dataclass
class AdapterConfig:
    """
    Configuration for exchange adapter.

    Common configuration shared across adapters.
    """

    # Credentials (can be None to use env vars)
    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    # Exchange-specific
    passphrase: Optional[str] = None  # BloFin

    # Environment
    testnet: bool = False

    # Connection
    timeout_seconds: float = 30.0

    # Exchange-specific options
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_env(cls, exchange_id: str, testnet: bool = False) -> "AdapterConfig":
        """
        Create config from environment variables.

        Args:
            exchange_id: Exchange identifier
            testnet: Use testnet

        Returns:
            AdapterConfig
        """
        exchange_id = exchange_id.upper()

        return cls(
            api_key=os.environ.get(f"{exchange_id}_API_KEY"),
            api_secret=os.environ.get(f"{exchange_id}_API_SECRET"),
            passphrase=os.environ.get(f"{exchange_id}_PASSPHRASE"),
            testnet=testnet,
        )

    @classmethod
    def from_account(cls, account: AccountConfig) -> "AdapterConfig":
        """Create config from an account's credentials."""
        return cls(
            api_key=account.api_key,
            api_secret=account.api_secret,
            passphrase=account.passphrase,
            testnet=account.testnet,
            timeout_seconds=account.timeout_seconds,
        )


# ============================================================
# ADAPTER FACTORY
# ============================================================

class AdapterFactory:
    """
    Factory for creating exchange adapters.

    Provides centralized adapter creation with configuration
    injection and extension support.
    """

    # Registry of adapter classes
    _registry: Dict[str, Type[ExchangeAdapter]] = {}

    # Custom creation functions
    _creators: Dict[str, Callable[[AdapterConfig], ExchangeAdapter]] = {}

    @classmethod
    def register(
        cls,
        exchange_id: str,
        adapter_class: Type[ExchangeAdapter] = None,
        creator: Callable[[AdapterConfig], ExchangeAdapter] = None,
    ) -> None:
        """
        Register an adapter class or creation function.

        Args:
            exchange_id: Exchange identifier
            adapter_class: Adapter class (constructed from config kwargs)
            creator: Function building an adapter from AdapterConfig
        """
        exchange_id = exchange_id.lower()
        if creator is not None:
            cls._creators[exchange_id] = creator
        elif adapter_class is not None:
            cls._registry[exchange_id] = adapter_class
        else:
            raise ValueError("Either adapter_class or creator is required")
        logger.info(f"Registered adapter for {exchange_id}")

    @classmethod
    def unregister(cls, exchange_id: str) -> None:
        """Unregister an adapter."""
        exchange_id = exchange_id.lower()
        cls._registry.pop(exchange_id, None)
        cls._creators.pop(exchange_id, None)

    @classmethod
    def create(
        cls,
        exchange_id: str,
        config: AdapterConfig = None,
        **kwargs,
    ) -> ExchangeAdapter:
        """
        Create an exchange adapter.

        Args:
            exchange_id: Exchange identifier
            config: Adapter configuration
            **kwargs: Additional arguments passed to adapter

        Returns:
            ExchangeAdapter instance

        Raises:
            ValueError: If exchange not supported
        """
        exchange_id = exchange_id.lower()

        if config is None:
            config = AdapterConfig.from_env(
                exchange_id,
                testnet=kwargs.pop("testnet", False),
            )

        for key, value in kwargs.items():
            if hasattr(config, key):
                setattr(config, key, value)
            else:
                config.options[key] = value

        if exchange_id in cls._creators:
            return cls._creators[exchange_id](config)

        if exchange_id in cls._registry:
            return cls._registry[exchange_id](**cls._config_to_kwargs(exchange_id, config))

        return cls._create_default(exchange_id, config)

    @classmethod
    def create_for_account(cls, account: AccountConfig, **kwargs) -> ExchangeAdapter:
        """Create the adapter serving one account."""
        return cls.create(
            account.exchange_id,
            config=AdapterConfig.from_account(account),
            **kwargs,
        )

    @classmethod
    def _create_default(
        cls,
        exchange_id: str,
        config: AdapterConfig,
    ) -> ExchangeAdapter:
        """Create adapter using default imports."""
        kwargs = cls._config_to_kwargs(exchange_id, config)

        if exchange_id == "bybit":
            from .bybit import BybitAdapter
            return BybitAdapter(**kwargs)

        elif exchange_id == "blofin":
            from .blofin import BloFinAdapter
            return BloFinAdapter(**kwargs)

        elif exchange_id == "toobit":
            from .toobit import ToobitAdapter
            return ToobitAdapter(**kwargs)

        elif exchange_id == "mock":
            from .mock import MockExchangeAdapter
            return MockExchangeAdapter(config=config.options.get("config"))

        else:
            raise ValueError(f"Unsupported exchange: {exchange_id}")

    @classmethod
    def _config_to_kwargs(
        cls,
        exchange_id: str,
        config: AdapterConfig,
    ) -> Dict[str, Any]:
        """Convert config to adapter kwargs."""
        kwargs = {}

        if config.api_key:
            kwargs["api_key"] = config.api_key
        if config.api_secret:
            kwargs["api_secret"] = config.api_secret
        if config.timeout_seconds:
            kwargs["timeout_seconds"] = config.timeout_seconds
        kwargs["testnet"] = config.testnet

        if exchange_id == "blofin" and config.passphrase:
            kwargs["passphrase"] = config.passphrase

        kwargs.update(config.options)
        return kwargs

    @classmethod
    def list_supported(cls) -> List[str]:
        """List supported exchanges."""
        builtin = [e.value for e in ExchangeId]
        registered = list(cls._registry.keys()) + list(cls._creators.keys())
        return sorted(set(builtin + registered))


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================

def create_adapter(
    exchange_id: str,
    testnet: bool = False,
    **kwargs,
) -> ExchangeAdapter:
    """
    Create exchange adapter.

    Convenience wrapper for AdapterFactory.create().

    Args:
        exchange_id: Exchange identifier (bybit, blofin, toobit, mock)
        testnet: Use testnet
        **kwargs: Additional arguments

    Returns:
        ExchangeAdapter instance
    """
    return AdapterFactory.create(exchange_id, testnet=testnet, **kwargs)
