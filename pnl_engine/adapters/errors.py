"""
Exchange Adapter - Error Handling and Mapping.

============================================================
PURPOSE
============================================================
Standardized error handling for read-only exchange adapters:
- Unified error taxonomy across exchanges
- Exchange-specific error code mapping
- Retry eligibility classification

============================================================
ERROR CATEGORIES
============================================================
1. NETWORK         - Connection issues
2. TIMEOUT         - Request exceeded client timeout
3. RATE_LIMIT      - Too many requests
4. AUTHENTICATION  - Invalid key or signature
5. PERMISSION      - Key lacks read permission
6. INVALID_REQUEST - Bad parameters, unknown symbol
7. EXCHANGE_ERROR  - Exchange internal errors
8. UNKNOWN         - Unclassified errors

============================================================
"""

import logging
from enum import Enum
from typing import Optional, Dict, Any, Tuple
from dataclasses import dataclass


logger = logging.getLogger(__name__)


# ============================================================
# ERROR TAXONOMY
# ============================================================

class ErrorCategory(Enum):
    """Standardized error categories."""

    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    RATE_LIMIT = "RATE_LIMIT"
    AUTHENTICATION = "AUTHENTICATION"
    PERMISSION = "PERMISSION"
    INVALID_REQUEST = "INVALID_REQUEST"
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    EXCHANGE_ERROR = "EXCHANGE_ERROR"
    UNKNOWN = "UNKNOWN"


class RetryEligibility(Enum):
    """Whether error is eligible for retry."""

    RETRY = "RETRY"           # Safe to retry
    NO_RETRY = "NO_RETRY"     # Should not retry
    BACKOFF = "BACKOFF"       # Retry after waiting


# ============================================================
# EXCHANGE ERROR
# ============================================================

@dataclass
class ExchangeError:
    """
    Standardized exchange error.

    Provides unified error representation across exchanges.
    """

    # Core fields
    category: ErrorCategory
    code: str               # Normalized error code
    message: str            # Human-readable message

    # Retry info
    retry_eligible: RetryEligibility

    # Original error info
    exchange_code: Optional[str] = None
    exchange_message: Optional[str] = None
    http_status: Optional[int] = None

    # Context
    exchange_id: Optional[str] = None
    operation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "category": self.category.value,
            "code": self.code,
            "message": self.message,
            "retry_eligible": self.retry_eligible.value,
            "exchange_code": self.exchange_code,
            "exchange_message": self.exchange_message,
            "http_status": self.http_status,
            "exchange_id": self.exchange_id,
            "operation": self.operation,
        }

    def is_retryable(self) -> bool:
        """Check if error is retryable."""
        return self.retry_eligible in (RetryEligibility.RETRY, RetryEligibility.BACKOFF)

    def __str__(self) -> str:
        return f"[{self.category.value}] {self.code}: {self.message}"


class ExchangeException(Exception):
    """Exception wrapper for ExchangeError."""

    def __init__(self, error: ExchangeError):
        self.error = error
        super().__init__(str(error))


def _classify_http_status(http_status: Optional[int]) -> Tuple[ErrorCategory, RetryEligibility]:
    if http_status == 429:
        return ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF
    if http_status in (401, 403):
        return ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY
    if http_status and http_status >= 500:
        return ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY
    return ErrorCategory.UNKNOWN, RetryEligibility.NO_RETRY


# ============================================================
# BYBIT ERROR MAPPING
# ============================================================

BYBIT_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    # Request validation
    10001: (ErrorCategory.INVALID_REQUEST, RetryEligibility.NO_RETRY),
    10002: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),  # recv_window / clock skew

    # Authentication
    10003: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    10004: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    10005: (ErrorCategory.PERMISSION, RetryEligibility.NO_RETRY),
    10010: (ErrorCategory.PERMISSION, RetryEligibility.NO_RETRY),  # IP not whitelisted
    33004: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),  # API key expired

    # Rate limiting
    10006: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    10018: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),

    # Symbol
    10029: (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),

    # Exchange internal
    10000: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    10016: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
}


def map_bybit_error(
    code: int,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """
    Map Bybit error to unified format.

    Args:
        code: Bybit retCode
        message: Bybit retMsg
        http_status: HTTP status code

    Returns:
        Unified ExchangeError
    """
    if code in BYBIT_ERROR_MAP:
        category, retry = BYBIT_ERROR_MAP[code]
    else:
        category, retry = _classify_http_status(http_status)

    return ExchangeError(
        category=category,
        code=f"BYBIT_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="bybit",
    )


# ============================================================
# BLOFIN ERROR MAPPING
# ============================================================

# BloFin codes are not stable across API versions; classify on message text
BLOFIN_MESSAGE_MAP = [
    ("invalid api key", ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    ("invalid signature", ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    ("invalid sign", ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    ("passphrase", ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    ("permission", ErrorCategory.PERMISSION, RetryEligibility.NO_RETRY),
    ("rate limit", ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    ("too many requests", ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    ("instrument", ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
    ("timestamp", ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
]


def map_blofin_error(
    code: str,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """
    Map BloFin error to unified format.

    Args:
        code: BloFin code field
        message: BloFin msg field
        http_status: HTTP status code

    Returns:
        Unified ExchangeError
    """
    category, retry = _classify_http_status(http_status)
    lowered = (message or "").lower()
    for needle, mapped_category, mapped_retry in BLOFIN_MESSAGE_MAP:
        if needle in lowered:
            category, retry = mapped_category, mapped_retry
            break

    return ExchangeError(
        category=category,
        code=f"BLOFIN_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="blofin",
    )


# ============================================================
# TOOBIT ERROR MAPPING
# ============================================================

TOOBIT_ERROR_MAP: Dict[int, Tuple[ErrorCategory, RetryEligibility]] = {
    -1000: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1001: (ErrorCategory.EXCHANGE_ERROR, RetryEligibility.RETRY),
    -1002: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -1003: (ErrorCategory.RATE_LIMIT, RetryEligibility.BACKOFF),
    -1021: (ErrorCategory.TIMEOUT, RetryEligibility.RETRY),
    -1022: (ErrorCategory.AUTHENTICATION, RetryEligibility.NO_RETRY),
    -1100: (ErrorCategory.INVALID_REQUEST, RetryEligibility.NO_RETRY),
    -1121: (ErrorCategory.SYMBOL_NOT_FOUND, RetryEligibility.NO_RETRY),
}


def map_toobit_error(
    code: int,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """Map Toobit error to unified format."""
    if code in TOOBIT_ERROR_MAP:
        category, retry = TOOBIT_ERROR_MAP[code]
    else:
        category, retry = _classify_http_status(http_status)

    return ExchangeError(
        category=category,
        code=f"TOOBIT_{code}",
        message=message,
        retry_eligible=retry,
        exchange_code=str(code),
        exchange_message=message,
        http_status=http_status,
        exchange_id="toobit",
    )


# ============================================================
# ERROR MAPPER FACTORY
# ============================================================

def map_exchange_error(
    exchange_id: str,
    code: Any,
    message: str,
    http_status: int = None,
) -> ExchangeError:
    """
    Map exchange error to unified format.

    Factory function that routes to exchange-specific mapper.

    Args:
        exchange_id: Exchange identifier
        code: Exchange error code
        message: Error message
        http_status: HTTP status code

    Returns:
        Unified ExchangeError
    """
    exchange_id = exchange_id.lower()

    if exchange_id == "bybit":
        return map_bybit_error(int(code), message, http_status)
    elif exchange_id == "blofin":
        return map_blofin_error(str(code), message, http_status)
    elif exchange_id == "toobit":
        return map_toobit_error(int(code), message, http_status)
    else:
        category, retry = _classify_http_status(http_status)
        return ExchangeError(
            category=category,
            code=f"{exchange_id.upper()}_{code}",
            message=message,
            retry_eligible=retry,
            exchange_code=str(code),
            exchange_message=message,
            http_status=http_status,
            exchange_id=exchange_id,
        )


# ============================================================
# NETWORK ERROR HELPERS
# ============================================================

def create_network_error(
    exchange_id: str,
    message: str,
    operation: str = None,
) -> ExchangeError:
    """Create network error."""
    return ExchangeError(
        category=ErrorCategory.NETWORK,
        code=f"{exchange_id.upper()}_NETWORK_ERROR",
        message=message,
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )


def create_timeout_error(
    exchange_id: str,
    timeout_ms: int,
    operation: str = None,
) -> ExchangeError:
    """Create timeout error."""
    return ExchangeError(
        category=ErrorCategory.TIMEOUT,
        code=f"{exchange_id.upper()}_TIMEOUT",
        message=f"Request timed out after {timeout_ms}ms",
        retry_eligible=RetryEligibility.RETRY,
        exchange_id=exchange_id,
        operation=operation,
    )
