"""
Toobit Exchange Adapter.

============================================================
PURPOSE
============================================================
Read-only adapter for the Toobit spot REST API.

EXCHANGE SPECIFICS:
- Binance-style signing (HMAC-SHA256 signature query parameter)
- Symbol format: BTCUSDT
- Spot only: no open positions, no funding

============================================================
"""

import os
import hmac
import hashlib
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urlencode

from ..types import AccountBalance, PositionInfo, ZERO, to_decimal
from .base import RestExchangeAdapter, cut_at_time_boundary, safe_int
from .errors import ExchangeException, map_toobit_error
from .metrics import MetricType


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

TOOBIT_REST_URL = "https://api.toobit.com"
TOOBIT_TESTNET_URL = "https://testnet-api.toobit.com"

TOOBIT_TRADES_LIMIT = 1000


# ============================================================
# TOOBIT ADAPTER
# ============================================================

class ToobitAdapter(RestExchangeAdapter):
    """
    Toobit spot adapter (read-only).

    Account trades are capped at 1000 per request.
    """

    max_page_size = TOOBIT_TRADES_LIMIT

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        testnet: bool = False,
        recv_window: int = 5000,
        timeout_seconds: float = 30.0,
    ):
        super().__init__(
            exchange_id="toobit",
            base_url=TOOBIT_TESTNET_URL if testnet else TOOBIT_REST_URL,
            timeout_seconds=timeout_seconds,
        )
        self._api_key = api_key or os.environ.get("TOOBIT_API_KEY", "")
        self._api_secret = api_secret or os.environ.get("TOOBIT_API_SECRET", "")
        self._testnet = testnet
        self._recv_window = recv_window

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _prepare_request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any],
        signed: bool,
    ) -> Tuple[str, Dict[str, str]]:
        headers = {}
        if signed:
            params = dict(params)
            params["timestamp"] = self._now_ms()
            params["recvWindow"] = self._recv_window
            query_string = urlencode(params)
            params["signature"] = hmac.new(
                self._api_secret.encode(),
                query_string.encode(),
                hashlib.sha256,
            ).hexdigest()
            headers["X-BB-APIKEY"] = self._api_key

        query = urlencode(params)
        return (f"{endpoint}?{query}" if query else endpoint), headers

    def _unwrap_response(self, data: Any, http_status: int) -> Any:
        # Errors come back as {"code": <negative int>, "msg": ...}
        if isinstance(data, dict) and "code" in data and safe_int(data.get("code")) not in (0, 200):
            code = safe_int(data.get("code"), -1)
            raise ExchangeException(
                map_toobit_error(code, data.get("msg", ""), http_status)
            )
        if http_status >= 400:
            raise ExchangeException(
                map_toobit_error(-1, f"HTTP {http_status}", http_status)
            )
        return data

    # --------------------------------------------------------
    # FILLS
    # --------------------------------------------------------

    def _fill_time(self, raw: Dict[str, Any]) -> int:
        return safe_int(raw.get("time"))

    def _fill_id(self, raw: Dict[str, Any]) -> str:
        return str(raw.get("id", ""))

    async def fetch_fills(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        """
        Account trades from cursor onwards, oldest first.

        A full page is completed with every trade sharing its last
        millisecond before being returned.
        """
        limit = min(page_size, TOOBIT_TRADES_LIMIT)
        fills = list(await self._request("GET", "/api/v1/account/trades", {
            "startTime": cursor,
            "limit": limit,
        }) or [])

        if len(fills) >= limit:
            boundary = max(self._fill_time(r) for r in fills)
            same_ms = list(await self._request("GET", "/api/v1/account/trades", {
                "startTime": boundary,
                "endTime": boundary,
                "limit": TOOBIT_TRADES_LIMIT,
            }) or [])
            if len(same_ms) >= TOOBIT_TRADES_LIMIT:
                logger.warning(
                    f"[toobit] {len(same_ms)} trades share timestamp {boundary}, "
                    f"some may be missing"
                )
            known = {self._fill_id(r) for r in fills}
            fills.extend(r for r in same_ms if self._fill_id(r) not in known)

        fills.sort(key=lambda r: (self._fill_time(r), self._fill_id(r)))
        page = cut_at_time_boundary(fills, limit, self._fill_time)
        self._metrics.record_records(MetricType.FILLS_FETCHED, len(page))
        return page

    async def fetch_funding_history(self, symbol: str, lookback: int) -> List[Dict[str, Any]]:
        return []

    # --------------------------------------------------------
    # ACCOUNT STATE
    # --------------------------------------------------------

    async def fetch_open_positions(self) -> List[PositionInfo]:
        return []

    async def fetch_balances(self) -> List[AccountBalance]:
        data = await self._request("GET", "/api/v1/account", {})
        balances = []
        for item in data.get("balances") or []:
            free = to_decimal(item.get("free"), ZERO)
            locked = to_decimal(item.get("locked"), ZERO)
            if free + locked == ZERO:
                continue
            balances.append(AccountBalance(
                asset=item.get("asset", ""),
                free=free,
                locked=locked,
                account_type="SPOT",
            ))
        return balances

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        data = await self._request("GET", "/quote/v1/ticker/price", {
            "symbol": symbol,
        }, signed=False)
        if isinstance(data, list):
            data = data[0] if data else {}
        return to_decimal(data.get("price"))
