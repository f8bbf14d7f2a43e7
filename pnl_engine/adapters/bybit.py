"""
Bybit Exchange Adapter.

============================================================
PURPOSE
============================================================
Read-only adapter for the Bybit V5 Unified API.

EXCHANGE SPECIFICS:
- HMAC-SHA256 signing
- Symbol format: BTCUSDT (linear perpetual)
- Execution history limited to 7-day query windows
- Funding settlements come from the transaction log
- positionIdx 1/2 identify hedge-mode long/short positions
- Closed P&L (net of fees) is reported per closing order

============================================================
API DOCUMENTATION
============================================================
https://bybit-exchange.github.io/docs/v5/intro

============================================================
"""

import os
import hmac
import hashlib
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urlencode

from ..types import AccountBalance, PositionInfo, PositionSide, ReportedClosedPnL, ZERO, to_decimal
from .base import DAY_MS, RestExchangeAdapter, safe_int
from .errors import ExchangeException, map_bybit_error
from .metrics import MetricType


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BYBIT_REST_URL = "https://api.bybit.com"
BYBIT_TESTNET_URL = "https://api-testnet.bybit.com"

# Categories
BYBIT_CAT_LINEAR = "linear"      # USDT perpetual
BYBIT_CAT_INVERSE = "inverse"    # Inverse perpetual

# Position index
BYBIT_POS_ONE_WAY = 0
BYBIT_POS_HEDGE_BUY = 1
BYBIT_POS_HEDGE_SELL = 2

# Page limits
BYBIT_EXECUTION_LIMIT = 100
BYBIT_TRANSACTION_LOG_LIMIT = 50
BYBIT_POSITION_LIMIT = 200
BYBIT_CLOSED_PNL_LIMIT = 100
BYBIT_MAX_CURSOR_PAGES = 50


# ============================================================
# BYBIT ADAPTER
# ============================================================

class BybitAdapter(RestExchangeAdapter):
    """
    Bybit V5 Unified API adapter (read-only).

    Features:
    - Linear (USDT) perpetual fills, funding and positions
    - Unified account wallet balance
    - One-way and hedge mode positions
    """

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        testnet: bool = False,
        category: str = BYBIT_CAT_LINEAR,
        settle_coin: str = "USDT",
        recv_window: int = 5000,
        timeout_seconds: float = 30.0,
    ):
        """
        Initialize Bybit adapter.

        Args:
            api_key: Bybit API key (or from BYBIT_API_KEY env)
            api_secret: Bybit API secret (or from BYBIT_API_SECRET env)
            testnet: Use testnet
            category: Product category (linear, inverse)
            settle_coin: Settlement coin for position queries
            recv_window: Request validity window in ms
            timeout_seconds: Request timeout
        """
        super().__init__(
            exchange_id="bybit",
            base_url=BYBIT_TESTNET_URL if testnet else BYBIT_REST_URL,
            timeout_seconds=timeout_seconds,
        )
        self._api_key = api_key or os.environ.get("BYBIT_API_KEY", "")
        self._api_secret = api_secret or os.environ.get("BYBIT_API_SECRET", "")

        self._testnet = testnet
        self._category = category
        self._settle_coin = settle_coin
        self._recv_window = recv_window

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _sign_request(self, timestamp: str, params: str) -> str:
        """
        Create request signature.

        Bybit V5 signature: HMAC-SHA256(timestamp + api_key + recv_window + params)
        """
        param_str = f"{timestamp}{self._api_key}{self._recv_window}{params}"
        return hmac.new(
            self._api_secret.encode(),
            param_str.encode(),
            hashlib.sha256,
        ).hexdigest()

    def _prepare_request(
        self,
        method: str,
        endpoint: str,
        params: Dict[str, Any],
        signed: bool,
    ) -> Tuple[str, Dict[str, str]]:
        query = urlencode(params)
        path = f"{endpoint}?{query}" if query else endpoint
        headers = {"Content-Type": "application/json"}

        if signed:
            timestamp = str(self._now_ms())
            headers.update({
                "X-BAPI-API-KEY": self._api_key,
                "X-BAPI-TIMESTAMP": timestamp,
                "X-BAPI-SIGN": self._sign_request(timestamp, query),
                "X-BAPI-RECV-WINDOW": str(self._recv_window),
            })
        return path, headers

    def _unwrap_response(self, data: Any, http_status: int) -> Any:
        if not isinstance(data, dict):
            raise ExchangeException(
                map_bybit_error(-1, f"Unexpected response: {str(data)[:100]}", http_status)
            )

        # Bybit returns retCode 0 for success
        ret_code = safe_int(data.get("retCode", 0), -1)
        if ret_code != 0:
            raise ExchangeException(
                map_bybit_error(ret_code, data.get("retMsg", ""), http_status)
            )
        return data.get("result") or {}

    # --------------------------------------------------------
    # FILLS
    # --------------------------------------------------------

    async def fetch_fills(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        return await self._fetch_fills_windowed(cursor, page_size)

    def _fill_time(self, raw: Dict[str, Any]) -> int:
        return safe_int(raw.get("execTime"))

    def _fill_id(self, raw: Dict[str, Any]) -> str:
        return str(raw.get("execId") or "")

    async def _fetch_fill_window(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        """Fetch every execution in one 7-day window, following nextPageCursor."""
        records: List[Dict[str, Any]] = []
        page_cursor = None

        for _ in range(BYBIT_MAX_CURSOR_PAGES):
            result = await self._request("GET", "/v5/execution/list", {
                "category": self._category,
                "startTime": start_ms,
                "endTime": end_ms,
                "limit": BYBIT_EXECUTION_LIMIT,
                "cursor": page_cursor,
            })
            page = result.get("list") or []
            records.extend(r for r in page if r.get("execType") != "Funding")

            page_cursor = result.get("nextPageCursor") or None
            if not page_cursor or not page:
                break
        else:
            self._logger.warning(
                f"Execution window {start_ms}-{end_ms} exceeded {BYBIT_MAX_CURSOR_PAGES} pages"
            )

        return records

    # --------------------------------------------------------
    # FUNDING
    # --------------------------------------------------------

    async def fetch_funding_history(self, symbol: str, lookback: int) -> List[Dict[str, Any]]:
        """Funding settlements from the unified transaction log."""
        records: List[Dict[str, Any]] = []
        page_cursor = None
        base_coin = symbol[:-len(self._settle_coin)] if symbol.endswith(self._settle_coin) else None
        max_pages = max(1, -(-lookback // BYBIT_TRANSACTION_LOG_LIMIT)) * 4

        for _ in range(max_pages):
            result = await self._request("GET", "/v5/account/transaction-log", {
                "accountType": "UNIFIED",
                "category": self._category,
                "type": "SETTLEMENT",
                "baseCoin": base_coin,
                "limit": BYBIT_TRANSACTION_LOG_LIMIT,
                "cursor": page_cursor,
            })
            page = result.get("list") or []
            records.extend(r for r in page if r.get("symbol") == symbol)

            page_cursor = result.get("nextPageCursor") or None
            if len(records) >= lookback or not page_cursor or not page:
                break

        records = records[:lookback]
        self._metrics.record_records(MetricType.FUNDING_RECORDS_FETCHED, len(records))
        return records

    # --------------------------------------------------------
    # CLOSED P&L
    # --------------------------------------------------------

    async def fetch_closed_pnl(self, start_ms: Optional[int] = None) -> Optional[List[ReportedClosedPnL]]:
        """Closed P&L rows from /v5/position/closed-pnl, walked in 7-day windows."""
        now = self._now_ms()
        start = start_ms if start_ms is not None else now - self.history_days * DAY_MS
        rows: List[ReportedClosedPnL] = []

        while start <= now:
            end = min(start + self.fill_window_ms - 1, now)
            page_cursor = None
            for _ in range(BYBIT_MAX_CURSOR_PAGES):
                result = await self._request("GET", "/v5/position/closed-pnl", {
                    "category": self._category,
                    "startTime": start,
                    "endTime": end,
                    "limit": BYBIT_CLOSED_PNL_LIMIT,
                    "cursor": page_cursor,
                })
                page = result.get("list") or []
                rows.extend(self._parse_closed_pnl(r) for r in page)

                page_cursor = result.get("nextPageCursor") or None
                if not page_cursor or not page:
                    break
            start = end + 1

        rows.sort(key=lambda r: (r.closed_time_ms, r.order_id))
        return rows

    def _parse_closed_pnl(self, row: Dict[str, Any]) -> ReportedClosedPnL:
        return ReportedClosedPnL(
            symbol=row.get("symbol", ""),
            closed_pnl=to_decimal(row.get("closedPnl"), ZERO),
            closed_quantity=to_decimal(row.get("closedSize"), ZERO),
            closed_time_ms=safe_int(row.get("updatedTime") or row.get("createdTime")),
            order_id=str(row.get("orderId") or ""),
        )

    # --------------------------------------------------------
    # ACCOUNT STATE
    # --------------------------------------------------------

    async def fetch_open_positions(self) -> List[PositionInfo]:
        positions: List[PositionInfo] = []
        page_cursor = None

        for _ in range(BYBIT_MAX_CURSOR_PAGES):
            result = await self._request("GET", "/v5/position/list", {
                "category": self._category,
                "settleCoin": self._settle_coin,
                "limit": BYBIT_POSITION_LIMIT,
                "cursor": page_cursor,
            })
            for pos in result.get("list") or []:
                info = self._parse_position(pos)
                if info is not None:
                    positions.append(info)

            page_cursor = result.get("nextPageCursor") or None
            if not page_cursor:
                break

        self._metrics.record_records(MetricType.POSITIONS_FETCHED, len(positions))
        return positions

    def _parse_position(self, pos: Dict[str, Any]) -> Optional[PositionInfo]:
        size = to_decimal(pos.get("size"), ZERO)
        if size <= ZERO:
            return None

        position_idx = safe_int(pos.get("positionIdx"), BYBIT_POS_ONE_WAY)
        if position_idx == BYBIT_POS_HEDGE_BUY:
            side = PositionSide.LONG
        elif position_idx == BYBIT_POS_HEDGE_SELL:
            side = PositionSide.SHORT
        else:
            side = PositionSide.BOTH
            if pos.get("side") == "Sell":
                size = -size

        return PositionInfo(
            symbol=pos.get("symbol", ""),
            side=side,
            quantity=size,
            entry_price=to_decimal(pos.get("avgPrice"), ZERO),
            mark_price=to_decimal(pos.get("markPrice"), ZERO),
            unrealized_pnl=to_decimal(pos.get("unrealisedPnl"), ZERO),
            leverage=to_decimal(pos.get("leverage"), Decimal("1")),
            liquidation_price=to_decimal(pos.get("liqPrice")),
            created_time=safe_int(pos.get("createdTime")) or None,
        )

    async def fetch_balances(self) -> List[AccountBalance]:
        result = await self._request("GET", "/v5/account/wallet-balance", {
            "accountType": "UNIFIED",
        })
        accounts = result.get("list") or []
        if not accounts:
            return []

        balances = []
        for coin in accounts[0].get("coin") or []:
            wallet = to_decimal(coin.get("walletBalance"), ZERO)
            locked = to_decimal(coin.get("locked"), ZERO)
            if wallet == ZERO:
                continue
            balances.append(AccountBalance(
                asset=coin.get("coin", ""),
                free=wallet - locked,
                locked=locked,
                usd_value=to_decimal(coin.get("usdValue"), ZERO),
                account_type="UNIFIED",
            ))
        return balances

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        result = await self._request("GET", "/v5/market/tickers", {
            "category": self._category,
            "symbol": symbol,
        }, signed=False)
        tickers = result.get("list") or []
        if not tickers:
            return None
        return to_decimal(tickers[0].get("lastPrice"))
