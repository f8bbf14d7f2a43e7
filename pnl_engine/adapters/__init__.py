"""
P&L Engine - Adapters Package.

============================================================
PURPOSE
============================================================
Read-only exchange adapter implementations.

AVAILABLE ADAPTERS:
- BybitAdapter: Bybit V5 Unified API
- BloFinAdapter: BloFin perpetual swaps
- ToobitAdapter: Toobit spot
- MockExchangeAdapter: For testing

UTILITIES:
- AdapterFactory: Factory for creating adapters
- AdapterMetrics: Metrics collection
- AdapterLogger: Secure logging

ERROR HANDLING:
- ExchangeError: Unified error representation
- ErrorCategory: Standardized error categories
- Error mapping functions per exchange

============================================================
"""

# Base types
from .base import (
    ExchangeAdapter,
    RestExchangeAdapter,
)

# Adapters
from .bybit import BybitAdapter
from .blofin import BloFinAdapter
from .toobit import ToobitAdapter
from .mock import MockExchangeAdapter, MockConfig

# Factory
from .factory import (
    AdapterFactory,
    AdapterConfig,
    ExchangeId,
    create_adapter,
)

# Errors
from .errors import (
    ExchangeError,
    ExchangeException,
    ErrorCategory,
    RetryEligibility,
    map_exchange_error,
    map_bybit_error,
    map_blofin_error,
    map_toobit_error,
    create_network_error,
    create_timeout_error,
)

# Metrics
from .metrics import AdapterMetrics, MetricType

# Logging
from .logging_utils import AdapterLogger, mask_headers, mask_params


__all__ = [
    # Base
    "ExchangeAdapter",
    "RestExchangeAdapter",
    # Adapters
    "BybitAdapter",
    "BloFinAdapter",
    "ToobitAdapter",
    "MockExchangeAdapter",
    "MockConfig",
    # Factory
    "AdapterFactory",
    "AdapterConfig",
    "ExchangeId",
    "create_adapter",
    # Errors
    "ExchangeError",
    "ExchangeException",
    "ErrorCategory",
    "RetryEligibility",
    "map_exchange_error",
    "map_bybit_error",
    "map_blofin_error",
    "map_toobit_error",
    "create_network_error",
    "create_timeout_error",
    # Metrics
    "AdapterMetrics",
    "MetricType",
    # Logging
    "AdapterLogger",
    "mask_headers",
    "mask_params",
]
