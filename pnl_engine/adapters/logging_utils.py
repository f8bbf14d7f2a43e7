"""
Exchange Adapter - Secure Logging Utilities.

============================================================
PURPOSE
============================================================
Secure logging for exchange adapter requests:
- Credential masking (API keys, signatures, passphrases)
- Request/response sanitization
- Structured JSON entries for debugging

============================================================
SECURITY REQUIREMENTS
============================================================
1. NEVER log raw API keys, secrets or passphrases
2. Mask sensitive headers of every supported exchange
3. Log a hash of request bodies, never the body itself

============================================================
"""

import logging
import re
import json
import hashlib
from datetime import datetime
from typing import Any, Dict, Optional
from dataclasses import dataclass, asdict


logger = logging.getLogger(__name__)


# ============================================================
# SENSITIVE DATA PATTERNS
# ============================================================

# Header names that should be masked
SENSITIVE_HEADERS = {
    "authorization",
    "x-bapi-api-key",
    "x-bapi-sign",
    "access-key",
    "access-sign",
    "access-passphrase",
    "x-bb-apikey",
    "x-bb-sign",
    "api-key",
    "secret",
    "signature",
}

# Parameter names that should be masked
SENSITIVE_PARAMS = {
    "apikey",
    "api_key",
    "secret",
    "secret_key",
    "password",
    "passphrase",
    "signature",
    "sign",
    "token",
}

# Regex patterns for sensitive data
SENSITIVE_PATTERNS = [
    (re.compile(r'[a-f0-9]{64}', re.IGNORECASE), "***HMAC***"),  # hex signatures
    (re.compile(r'[A-Za-z0-9]{32,}'), "***KEY***"),  # API keys (32+ chars)
]


# ============================================================
# MASKING FUNCTIONS
# ============================================================

def mask_value(value: str, show_chars: int = 4) -> str:
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


def mask_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Mask sensitive headers."""
    if not headers:
        return {}

    masked = {}
    for key, value in headers.items():
        if key.lower() in SENSITIVE_HEADERS:
            masked[key] = mask_value(str(value))
        else:
            masked[key] = value
    return masked


def mask_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """
    Mask sensitive parameters.

    Args:
        params: Request parameters

    Returns:
        Parameters with sensitive values masked
    """
    if not params:
        return {}

    masked = {}
    for key, value in params.items():
        if key.lower() in SENSITIVE_PARAMS:
            masked[key] = mask_value(str(value)) if value else value
        elif isinstance(value, dict):
            masked[key] = mask_params(value)
        elif isinstance(value, str):
            masked_value = value
            for pattern, replacement in SENSITIVE_PATTERNS:
                masked_value = pattern.sub(replacement, masked_value)
            masked[key] = masked_value
        else:
            masked[key] = value
    return masked


def mask_url(url: str) -> str:
    """Mask sensitive query parameters in a URL."""
    if not url:
        return url

    for param in SENSITIVE_PARAMS:
        pattern = re.compile(f'({param}=)([^&]+)', re.IGNORECASE)
        url = pattern.sub(lambda m: f'{m.group(1)}***', url)

    return url


# ============================================================
# LOG ENTRY STRUCTURES
# ============================================================

@dataclass
class RequestLogEntry:
    """Structured log entry for requests."""

    timestamp: str
    exchange_id: str
    operation: str
    method: str
    endpoint: str
    request_id: str

    # Request details (masked)
    headers: Dict[str, str] = None
    params: Dict[str, Any] = None
    body_hash: str = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class ResponseLogEntry:
    """Structured log entry for responses."""

    timestamp: str
    exchange_id: str
    operation: str
    request_id: str

    status_code: int
    latency_ms: float
    success: bool

    error_code: str = None
    error_message: str = None
    record_count: int = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


# ============================================================
# ADAPTER LOGGER
# ============================================================

class AdapterLogger:
    """
    Secure logger for exchange adapter operations.

    Provides structured logging with automatic credential masking.
    """

    def __init__(self, exchange_id: str, logger_name: str = None):
        """
        Initialize adapter logger.

        Args:
            exchange_id: Exchange identifier
            logger_name: Logger name (default: pnl_engine.adapters.<exchange>)
        """
        self._exchange_id = exchange_id
        self._logger = logging.getLogger(
            logger_name or f"pnl_engine.adapters.{exchange_id}"
        )
        self._request_counter = 0

    def _generate_request_id(self) -> str:
        self._request_counter += 1
        return f"{self._exchange_id}-{self._request_counter}"

    def _hash_body(self, body: Any) -> Optional[str]:
        if not body:
            return None
        if isinstance(body, (dict, list)):
            body_str = json.dumps(body, sort_keys=True, default=str)
        else:
            body_str = str(body)
        return hashlib.sha256(body_str.encode()).hexdigest()[:16]

    def log_request(
        self,
        operation: str,
        method: str,
        endpoint: str,
        headers: Dict[str, str] = None,
        params: Dict[str, Any] = None,
        body: Any = None,
    ) -> str:
        """
        Log outgoing request.

        Returns:
            Request ID for correlation
        """
        request_id = self._generate_request_id()

        entry = RequestLogEntry(
            timestamp=datetime.utcnow().isoformat(),
            exchange_id=self._exchange_id,
            operation=operation,
            method=method,
            endpoint=mask_url(endpoint),
            request_id=request_id,
            headers=mask_headers(headers) if headers else None,
            params=mask_params(params) if params else None,
            body_hash=self._hash_body(body),
        )

        self._logger.debug(f"REQUEST: {entry.to_json()}")
        return request_id

    def log_response(
        self,
        operation: str,
        request_id: str,
        status_code: int,
        latency_ms: float,
        success: bool,
        error_code: str = None,
        error_message: str = None,
        record_count: int = None,
    ) -> None:
        """Log incoming response."""
        entry = ResponseLogEntry(
            timestamp=datetime.utcnow().isoformat(),
            exchange_id=self._exchange_id,
            operation=operation,
            request_id=request_id,
            status_code=status_code,
            latency_ms=round(latency_ms, 2),
            success=success,
            error_code=error_code,
            error_message=error_message[:200] if error_message else None,
            record_count=record_count,
        )

        if success:
            self._logger.debug(f"RESPONSE: {entry.to_json()}")
        else:
            self._logger.warning(f"RESPONSE_ERROR: {entry.to_json()}")

    def info(self, message: str) -> None:
        self._logger.info(f"[{self._exchange_id}] {message}")

    def warning(self, message: str) -> None:
        self._logger.warning(f"[{self._exchange_id}] {message}")

    def error(self, message: str, exc_info: bool = False) -> None:
        self._logger.error(f"[{self._exchange_id}] {message}", exc_info=exc_info)

    def debug(self, message: str) -> None:
        self._logger.debug(f"[{self._exchange_id}] {message}")
