"""
P&L Engine - Exchange Adapter Base.

============================================================
PURPOSE
============================================================
Abstract interface for read-only exchange connectivity.

DESIGN PRINCIPLES:
- Exchange-agnostic interface
- Returned fill and funding payloads are raw and untrusted;
  they are validated by the vendor's RawFillMapper
- Fully testable with the mock adapter

============================================================
"""

import time
import asyncio
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple, Callable

import aiohttp

from ..normalizer import RawFillMapper, get_fill_mapper
from ..types import AccountBalance, PositionInfo, ReportedClosedPnL
from .errors import (
    ExchangeException,
    map_exchange_error,
    create_network_error,
    create_timeout_error,
)
from .metrics import AdapterMetrics, MetricType
from .logging_utils import AdapterLogger


logger = logging.getLogger(__name__)


DAY_MS = 24 * 60 * 60 * 1000


def safe_int(value: Any, default: int = 0) -> int:
    """Parse an int from an exchange value, falling back to default."""
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def cut_at_time_boundary(
    records: List[Dict[str, Any]],
    page_size: int,
    time_of: Callable[[Dict[str, Any]], int],
) -> List[Dict[str, Any]]:
    """
    Cut a time-sorted list to one page without splitting a millisecond.

    The page holds the first page_size records plus every further record
    sharing the last one's timestamp, so a "last time + 1 ms" cursor
    skips nothing.
    """
    if len(records) <= page_size:
        return list(records)

    boundary = time_of(records[page_size - 1])
    cut = page_size
    while cut < len(records) and time_of(records[cut]) == boundary:
        cut += 1
    return records[:cut]


# ============================================================
# EXCHANGE ADAPTER INTERFACE
# ============================================================

class ExchangeAdapter(ABC):
    """
    Read-only exchange connectivity.

    One instance serves one account. Instances are not shared between
    accounts.
    """

    _fill_mapper: Optional[RawFillMapper] = None

    max_page_size: Optional[int] = None
    """Largest fill page the exchange returns per call (None = unbounded)."""

    @property
    @abstractmethod
    def exchange_id(self) -> str:
        """Exchange identifier."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if connected."""
        pass

    @property
    def fill_mapper(self) -> RawFillMapper:
        """Mapper for this exchange's fill and funding payloads."""
        if self._fill_mapper is None:
            self._fill_mapper = get_fill_mapper(self.exchange_id)
        return self._fill_mapper

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    @abstractmethod
    async def connect(self) -> None:
        """Open the HTTP session."""
        pass

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the HTTP session."""
        pass

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()

    # --------------------------------------------------------
    # HISTORY
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_fills(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        """
        Fetch one page of fills, oldest first.

        Args:
            cursor: Earliest execution time (ms) to return, None for the
                exchange's default history start
            page_size: Requested page size

        Returns:
            Raw fill payloads
        """
        pass

    @abstractmethod
    async def fetch_funding_history(self, symbol: str, lookback: int) -> List[Dict[str, Any]]:
        """
        Fetch the most recent funding records for a symbol.

        Returns:
            Raw funding payloads (at most lookback)
        """
        pass

    async def fetch_closed_pnl(self, start_ms: Optional[int] = None) -> Optional[List[ReportedClosedPnL]]:
        """
        Closed P&L as computed by the exchange itself.

        Returns:
            Closed P&L rows, or None when the exchange does not report them
        """
        return None

    # --------------------------------------------------------
    # ACCOUNT STATE
    # --------------------------------------------------------

    @abstractmethod
    async def fetch_open_positions(self) -> List[PositionInfo]:
        """Get all open positions reported by the exchange."""
        pass

    @abstractmethod
    async def fetch_balances(self) -> List[AccountBalance]:
        """Get per-coin balances."""
        pass

    @abstractmethod
    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        """Get last traded price, None if the symbol is unknown."""
        pass

    def valuation_symbol(self, asset: str, quote: str = "USDT") -> str:
        """Ticker symbol used to value a coin."""
        return f"{asset}{quote}"


# ============================================================
# REST ADAPTER
# ============================================================

class RestExchangeAdapter(ExchangeAdapter):
    """
    Shared aiohttp plumbing for REST adapters.

    Subclasses provide request signing (_prepare_request) and response
    envelope handling (_unwrap_response).
    """

    def __init__(
        self,
        exchange_id: str,
        base_url: str,
        timeout_seconds: float = 30.0,
    ):
        self._exchange_id = exchange_id
        self._base_url = base_url
        self._timeout = timeout_seconds

        # Session
        self._session: Optional[aiohttp.ClientSession] = None
        self._connected = False

        # Metrics and logging
        self._metrics = AdapterMetrics(exchange_id)
        self._logger = AdapterLogger(exchange_id)

    # --------------------------------------------------------
    # PROPERTIES
    # --------------------------------------------------------

    @property
    def exchange_id(self) -> str:
        return self._exchange_id

    @property
    def is_connected(self) -> bool:
        return self._connected and self._session is not None

    @property
    def metrics(self) -> AdapterMetrics:
        return self._metrics

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Create the HTTP session."""
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self._timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        self._connected = True
        self._logger.info(f"Session opened ({self._base_url})")

    async def disconnect(self) -> None:
        """Close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None
        self._connected = False
        self._logger.info("Session closed")

    # --------------------------------------------------------
    # REQUEST HANDLING
    # --------------------------------------------------------

    @abstractmethod
    def _prepare_request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any],
        signed: bool,
    ) -> Tuple[str, Dict[str, str]]:
        """
        Build the request path (with query string) and headers.

        Returns:
            (path_with_query, headers)
        """
        pass

    @abstractmethod
    def _unwrap_response(self, data: Any, http_status: int) -> Any:
        """
        Check the exchange envelope and return the payload.

        Raises:
            ExchangeException: If the exchange reported an error
        """
        pass

    def _now_ms(self) -> int:
        return int(time.time() * 1000)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any] = None,
        signed: bool = True,
    ) -> Any:
        """
        Make a request to the exchange.

        Args:
            method: HTTP method
            endpoint: API endpoint
            params: Query parameters
            signed: Whether to add authentication headers

        Returns:
            Unwrapped response payload

        Raises:
            ExchangeException: On network, timeout or exchange errors
        """
        if not self._session:
            raise ExchangeException(
                create_network_error(self._exchange_id, "Not connected", endpoint)
            )

        params = {k: v for k, v in (params or {}).items() if v is not None}
        path, headers = self._prepare_request(method, endpoint, params, signed)
        url = f"{self._base_url}{path}"
        operation = endpoint.split("/")[-1]

        request_id = self._logger.log_request(
            operation=operation,
            method=method,
            endpoint=endpoint,
            headers=headers,
            params=params,
        )

        start_time = time.time()

        try:
            async with self._session.request(method, url, headers=headers) as resp:
                return await self._handle_response(resp, request_id, endpoint, start_time)
        except aiohttp.ClientError as e:
            latency_ms = (time.time() - start_time) * 1000
            self._metrics.record_request(
                endpoint=endpoint,
                latency_ms=latency_ms,
                success=False,
                error_code="NETWORK_ERROR",
            )
            raise ExchangeException(
                create_network_error(self._exchange_id, str(e), endpoint)
            )
        except asyncio.TimeoutError:
            latency_ms = (time.time() - start_time) * 1000
            self._metrics.record_request(
                endpoint=endpoint,
                latency_ms=latency_ms,
                success=False,
                error_code="TIMEOUT",
            )
            raise ExchangeException(
                create_timeout_error(self._exchange_id, int(self._timeout * 1000), endpoint)
            )

    async def _handle_response(
        self,
        response: aiohttp.ClientResponse,
        request_id: str,
        endpoint: str,
        start_time: float,
    ) -> Any:
        """Parse, check and record one response."""
        latency_ms = (time.time() - start_time) * 1000
        operation = endpoint.split("/")[-1]

        try:
            data = await response.json(content_type=None)
        except ValueError:
            text = await response.text()
            error = map_exchange_error(
                self._exchange_id, response.status, text[:200], response.status
            )
            self._record_failure(endpoint, operation, request_id, response.status, latency_ms, error)
            raise ExchangeException(error)

        try:
            payload = self._unwrap_response(data, response.status)
        except ExchangeException as e:
            self._record_failure(endpoint, operation, request_id, response.status, latency_ms, e.error)
            raise

        self._metrics.record_request(
            endpoint=endpoint,
            latency_ms=latency_ms,
            success=True,
            status_code=response.status,
        )
        self._logger.log_response(
            operation=operation,
            request_id=request_id,
            status_code=response.status,
            latency_ms=latency_ms,
            success=True,
            record_count=len(payload) if isinstance(payload, list) else None,
        )
        return payload

    def _record_failure(self, endpoint, operation, request_id, status, latency_ms, error) -> None:
        self._metrics.record_request(
            endpoint=endpoint,
            latency_ms=latency_ms,
            success=False,
            status_code=status,
            error_code=error.code,
        )
        self._logger.log_response(
            operation=operation,
            request_id=request_id,
            status_code=status,
            latency_ms=latency_ms,
            success=False,
            error_code=error.code,
            error_message=error.message,
        )

    # --------------------------------------------------------
    # WINDOWED FILL HISTORY
    # --------------------------------------------------------

    history_days: int = 90
    """Default history start when no cursor is given."""

    fill_window_ms: int = 7 * DAY_MS
    """Largest time range one history query may span."""

    async def _fetch_fill_window(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        """Fetch every fill executed in [start_ms, end_ms]."""
        raise NotImplementedError

    def _fill_time(self, raw: Dict[str, Any]) -> int:
        """Execution time of a raw fill, 0 if absent."""
        raise NotImplementedError

    def _fill_id(self, raw: Dict[str, Any]) -> str:
        return ""

    async def _fetch_fills_windowed(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        """
        Walk time windows forward from cursor until a page is filled.

        The page is never cut between fills sharing the boundary
        timestamp, so "last time + 1 ms" cursors skip nothing.
        """
        now = self._now_ms()
        start = cursor if cursor is not None else now - self.history_days * DAY_MS
        collected: List[Dict[str, Any]] = []

        while start <= now and len(collected) < page_size:
            end = min(start + self.fill_window_ms - 1, now)
            collected.extend(await self._fetch_fill_window(start, end))
            start = end + 1

        collected.sort(key=lambda r: (self._fill_time(r), self._fill_id(r)))
        page = cut_at_time_boundary(collected, page_size, self._fill_time)

        self._metrics.record_records(MetricType.FILLS_FETCHED, len(page))
        return page
