"""
BloFin Exchange Adapter.

============================================================
PURPOSE
============================================================
Read-only adapter for the BloFin REST API.

EXCHANGE SPECIFICS:
- HMAC-SHA256 signing with nonce and passphrase
- Symbol format: BTC-USDT (instId)
- Fill history is returned newest first and paged by tradeId
- Funding fees are account bills (billType 1)
- Balances are split between funding and futures wallets
- Hedge mode reports positionSide long/short, one-way reports net

============================================================
API DOCUMENTATION
============================================================
https://docs.blofin.com/index.html

============================================================
"""

import os
import hmac
import uuid
import base64
import hashlib
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple
from urllib.parse import urlencode

from ..types import AccountBalance, PositionInfo, PositionSide, ZERO, to_decimal
from .base import RestExchangeAdapter, safe_int
from .errors import ExchangeException, map_blofin_error
from .metrics import MetricType


logger = logging.getLogger(__name__)


# ============================================================
# CONSTANTS
# ============================================================

BLOFIN_REST_URL = "https://openapi.blofin.com"
BLOFIN_DEMO_URL = "https://demo-trading-openapi.blofin.com"

BLOFIN_INST_TYPE = "SWAP"
BLOFIN_BILL_FUNDING_FEE = "1"
BLOFIN_PAGE_LIMIT = 100
BLOFIN_MAX_CURSOR_PAGES = 50

# Wallets read for balances
BLOFIN_ACCOUNT_TYPES = ("funding", "futures")


# ============================================================
# BLOFIN ADAPTER
# ============================================================

class BloFinAdapter(RestExchangeAdapter):
    """
    BloFin perpetual swap adapter (read-only).
    """

    def __init__(
        self,
        api_key: str = None,
        api_secret: str = None,
        passphrase: str = None,
        testnet: bool = False,
        timeout_seconds: float = 30.0,
    ):
        """
        Initialize BloFin adapter.

        Args:
            api_key: BloFin API key (or from BLOFIN_API_KEY env)
            api_secret: BloFin API secret (or from BLOFIN_API_SECRET env)
            passphrase: Access passphrase (or from BLOFIN_PASSPHRASE env)
            testnet: Use demo trading environment
            timeout_seconds: Request timeout
        """
        super().__init__(
            exchange_id="blofin",
            base_url=BLOFIN_DEMO_URL if testnet else BLOFIN_REST_URL,
            timeout_seconds=timeout_seconds,
        )
        self._api_key = api_key or os.environ.get("BLOFIN_API_KEY", "")
        self._api_secret = api_secret or os.environ.get("BLOFIN_API_SECRET", "")
        self._passphrase = passphrase or os.environ.get("BLOFIN_PASSPHRASE", "")
        self._testnet = testnet

    # --------------------------------------------------------
    # SIGNING
    # --------------------------------------------------------

    def _sign_request(self, path: str, method: str, timestamp: str, nonce: str, body: str = "") -> str:
        """
        Create request signature.

        BloFin signature: base64(hex(HMAC-SHA256(path + method + timestamp + nonce + body)))
        """
        prehash = f"{path}{method}{timestamp}{nonce}{body}"
        digest = hmac.new(
            self._api_secret.encode(),
            prehash.encode(),
            hashlib.sha256,
        ).hexdigest()
        return base64.b64encode(digest.encode()).decode()

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
            nonce = uuid.uuid4().hex
            headers.update({
                "ACCESS-KEY": self._api_key,
                "ACCESS-SIGN": self._sign_request(path, method, timestamp, nonce),
                "ACCESS-TIMESTAMP": timestamp,
                "ACCESS-NONCE": nonce,
                "ACCESS-PASSPHRASE": self._passphrase,
            })
        return path, headers

    def _unwrap_response(self, data: Any, http_status: int) -> Any:
        if not isinstance(data, dict):
            raise ExchangeException(
                map_blofin_error("-1", f"Unexpected response: {str(data)[:100]}", http_status)
            )

        code = str(data.get("code", "0"))
        if code != "0":
            raise ExchangeException(
                map_blofin_error(code, data.get("msg", ""), http_status)
            )
        return data.get("data") or []

    # --------------------------------------------------------
    # FILLS
    # --------------------------------------------------------

    async def fetch_fills(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        return await self._fetch_fills_windowed(cursor, page_size)

    def _fill_time(self, raw: Dict[str, Any]) -> int:
        return safe_int(raw.get("ts"))

    def _fill_id(self, raw: Dict[str, Any]) -> str:
        return str(raw.get("tradeId") or "")

    async def _fetch_fill_window(self, start_ms: int, end_ms: int) -> List[Dict[str, Any]]:
        """Fetch every fill in [start_ms, end_ms], paging backwards by tradeId."""
        records: List[Dict[str, Any]] = []
        after = None

        for _ in range(BLOFIN_MAX_CURSOR_PAGES):
            page = await self._request("GET", "/api/v1/trade/fills-history", {
                "instType": BLOFIN_INST_TYPE,
                "begin": start_ms,
                "end": end_ms,
                "after": after,
                "limit": BLOFIN_PAGE_LIMIT,
            })
            records.extend(page)

            if len(page) < BLOFIN_PAGE_LIMIT:
                break
            after = page[-1].get("tradeId")
            if not after:
                break
        else:
            self._logger.warning(
                f"Fill window {start_ms}-{end_ms} exceeded {BLOFIN_MAX_CURSOR_PAGES} pages"
            )

        return records

    # --------------------------------------------------------
    # FUNDING
    # --------------------------------------------------------

    async def fetch_funding_history(self, symbol: str, lookback: int) -> List[Dict[str, Any]]:
        """Funding fee bills for one instrument (billPnl: negative = paid)."""
        records = await self._request("GET", "/api/v1/account/bills", {
            "instType": BLOFIN_INST_TYPE,
            "billType": BLOFIN_BILL_FUNDING_FEE,
            "instId": symbol,
            "limit": min(lookback, BLOFIN_PAGE_LIMIT),
        })
        records = records[:lookback]
        self._metrics.record_records(MetricType.FUNDING_RECORDS_FETCHED, len(records))
        return records

    # --------------------------------------------------------
    # ACCOUNT STATE
    # --------------------------------------------------------

    async def fetch_open_positions(self) -> List[PositionInfo]:
        data = await self._request("GET", "/api/v1/account/positions", {
            "instType": BLOFIN_INST_TYPE,
        })

        positions = []
        for pos in data:
            size = to_decimal(pos.get("positions"), ZERO)
            if size == ZERO:
                continue

            position_side = str(pos.get("positionSide", "net")).lower()
            if position_side == "long":
                side = PositionSide.LONG
            elif position_side == "short":
                side = PositionSide.SHORT
            else:
                side = PositionSide.BOTH

            positions.append(PositionInfo(
                symbol=pos.get("instId", ""),
                side=side,
                quantity=size if side == PositionSide.BOTH else abs(size),
                entry_price=to_decimal(pos.get("averagePrice"), ZERO),
                mark_price=to_decimal(pos.get("markPrice"), ZERO),
                unrealized_pnl=to_decimal(pos.get("unrealizedPnl"), ZERO),
                leverage=to_decimal(pos.get("leverage"), Decimal("1")),
                liquidation_price=to_decimal(pos.get("liquidationPrice")),
                created_time=safe_int(pos.get("createTime")) or None,
            ))

        self._metrics.record_records(MetricType.POSITIONS_FETCHED, len(positions))
        return positions

    async def fetch_balances(self) -> List[AccountBalance]:
        """Balances of the funding and futures wallets."""
        balances = []
        for account_type in BLOFIN_ACCOUNT_TYPES:
            data = await self._request("GET", "/api/v1/asset/balances", {
                "accountType": account_type,
            })
            for item in data:
                total = to_decimal(item.get("balance"), ZERO)
                if total == ZERO:
                    continue
                free = to_decimal(item.get("available"), total)
                balances.append(AccountBalance(
                    asset=item.get("currency", ""),
                    free=free,
                    locked=total - free,
                    account_type=account_type,
                ))
        return balances

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        data = await self._request("GET", "/api/v1/market/tickers", {
            "instId": symbol,
        }, signed=False)
        if not data:
            return None
        return to_decimal(data[0].get("last"))

    def valuation_symbol(self, asset: str, quote: str = "USDT") -> str:
        return f"{asset}-{quote}"
