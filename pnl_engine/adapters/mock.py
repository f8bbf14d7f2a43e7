"""
P&L Engine - Mock Exchange Adapter.

============================================================
PURPOSE
============================================================
Mock adapter for testing ingestion, funding and aggregation.

FEATURES:
- Configurable latency
- Per-operation error injection
- In-memory fills, funding, positions, balances and prices
- Optional exchange-side closed P&L
- Call log for asserting request sequences

Fills and funding records use the generic payload shape
(symbol, side, amount, price, fee.cost, timestamp, id, order).

============================================================
"""

import asyncio
import random
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple

from ..normalizer import normalize_timestamp_ms
from ..types import AccountBalance, PositionInfo, PositionSide, ReportedClosedPnL, ZERO
from .base import ExchangeAdapter, cut_at_time_boundary
from .errors import ExchangeError, ExchangeException, create_network_error


logger = logging.getLogger(__name__)


# ============================================================
# MOCK CONFIGURATION
# ============================================================

@dataclass
class MockConfig:
    """Configuration for mock adapter."""

    exchange_id: str = "mock"
    """Identifier reported by the adapter."""

    # Latency simulation
    min_latency_ms: float = 0.0
    """Minimum simulated latency."""

    max_latency_ms: float = 0.0
    """Maximum simulated latency."""

    # Initial state
    initial_balance: Decimal = Decimal("1500.0")
    """Initial USDT balance."""

    history_start_ms: Optional[int] = None
    """Earliest fill returned when no cursor is given (None = all)."""

    max_page_size: Optional[int] = None
    """Largest fill page returned per call (None = unbounded)."""


def _fill_time(raw: Dict[str, Any]) -> int:
    try:
        return normalize_timestamp_ms(raw.get("timestamp")) or 0
    except ValueError:
        return 0


# ============================================================
# MOCK EXCHANGE ADAPTER
# ============================================================

class MockExchangeAdapter(ExchangeAdapter):
    """
    Mock exchange adapter for testing.

    Simulates exchange behavior including:
    - Cursor-paged fill history
    - Per-symbol funding history
    - Hedge and one-way positions
    - Error injection
    """

    def __init__(self, config: Optional[MockConfig] = None):
        """
        Initialize mock adapter.

        Args:
            config: Mock configuration
        """
        self._config = config or MockConfig()
        self._connected = False
        self.max_page_size = self._config.max_page_size

        # State
        self._fills: List[Dict[str, Any]] = []
        self._funding: Dict[str, List[Dict[str, Any]]] = {}
        self._positions: Dict[Tuple[str, PositionSide], PositionInfo] = {}
        self._balances: Dict[str, AccountBalance] = {}
        self._prices: Dict[str, Decimal] = {}
        self._closed_pnl: Optional[List[ReportedClosedPnL]] = None

        # Error injection: operation -> [error, remaining count]
        self._errors: Dict[str, List[Any]] = {}

        self.call_log: List[Tuple[str, Dict[str, Any]]] = []

        self._init_state()

    def _init_state(self) -> None:
        """Initialize mock state."""
        self._balances["USDT"] = AccountBalance(
            asset="USDT",
            free=self._config.initial_balance,
            locked=ZERO,
        )

    @property
    def exchange_id(self) -> str:
        return self._config.exchange_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> None:
        """Connect to mock exchange."""
        await self._enter("connect")
        self._connected = True
        logger.info("MockExchangeAdapter connected")

    async def disconnect(self) -> None:
        """Disconnect from mock exchange."""
        self._connected = False
        logger.info("MockExchangeAdapter disconnected")

    # --------------------------------------------------------
    # HISTORY
    # --------------------------------------------------------

    async def fetch_fills(self, cursor: Optional[int], page_size: int) -> List[Dict[str, Any]]:
        await self._enter("fetch_fills", cursor=cursor, page_size=page_size)

        if self.max_page_size is not None:
            page_size = min(page_size, self.max_page_size)
        start = cursor if cursor is not None else self._config.history_start_ms
        fills = [
            f for f in self._fills
            if start is None or _fill_time(f) >= start
        ]
        fills.sort(key=lambda f: (_fill_time(f), str(f.get("id") or "")))
        return [dict(f) for f in cut_at_time_boundary(fills, page_size, _fill_time)]

    async def fetch_funding_history(self, symbol: str, lookback: int) -> List[Dict[str, Any]]:
        await self._enter("fetch_funding_history", symbol=symbol, lookback=lookback)

        records = sorted(
            self._funding.get(symbol, []),
            key=lambda r: _fill_time(r),
            reverse=True,
        )
        return [dict(r) for r in records[:lookback]]

    async def fetch_closed_pnl(self, start_ms: Optional[int] = None) -> Optional[List[ReportedClosedPnL]]:
        await self._enter("fetch_closed_pnl", start_ms=start_ms)
        if self._closed_pnl is None:
            return None
        return [
            r for r in self._closed_pnl
            if start_ms is None or r.closed_time_ms >= start_ms
        ]

    # --------------------------------------------------------
    # ACCOUNT STATE
    # --------------------------------------------------------

    async def fetch_open_positions(self) -> List[PositionInfo]:
        await self._enter("fetch_open_positions")
        return list(self._positions.values())

    async def fetch_balances(self) -> List[AccountBalance]:
        await self._enter("fetch_balances")
        return [b for b in self._balances.values() if b.total != ZERO]

    async def get_current_price(self, symbol: str) -> Optional[Decimal]:
        await self._enter("get_current_price", symbol=symbol)
        return self._prices.get(symbol)

    # --------------------------------------------------------
    # TEST HELPERS
    # --------------------------------------------------------

    def add_fills(self, fills: List[Dict[str, Any]]) -> None:
        """Append raw fills to the history."""
        self._fills.extend(fills)

    def set_funding(self, symbol: str, records: List[Dict[str, Any]]) -> None:
        """Replace the funding history of a symbol."""
        self._funding[symbol] = list(records)

    def set_position(
        self,
        symbol: str,
        quantity: Decimal,
        entry_price: Decimal = ZERO,
        side: Optional[PositionSide] = None,
        mark_price: Decimal = ZERO,
        unrealized_pnl: Decimal = ZERO,
    ) -> None:
        """
        Set position for testing.

        Without an explicit side the position is hedge-mode LONG for a
        positive quantity and SHORT for a negative one.
        """
        if side is None:
            side = PositionSide.LONG if quantity > 0 else PositionSide.SHORT
            quantity = abs(quantity)

        self._positions[(symbol, side)] = PositionInfo(
            symbol=symbol,
            side=side,
            quantity=quantity,
            entry_price=entry_price,
            mark_price=mark_price,
            unrealized_pnl=unrealized_pnl,
        )

    def set_closed_pnl(self, rows: List[ReportedClosedPnL]) -> None:
        """Make the mock report exchange-side closed P&L."""
        self._closed_pnl = list(rows)

    def set_balance(self, asset: str, free: Decimal, locked: Decimal = ZERO) -> None:
        """Set balance for testing."""
        self._balances[asset] = AccountBalance(
            asset=asset,
            free=free,
            locked=locked,
        )

    def set_price(self, symbol: str, price: Decimal) -> None:
        """Set ticker price for testing."""
        self._prices[symbol] = price

    def inject_error(
        self,
        operation: str,
        error: Optional[ExchangeError] = None,
        count: int = 1,
    ) -> None:
        """
        Make the next `count` calls of an operation fail.

        Args:
            operation: Adapter method name (e.g. "fetch_fills")
            error: Error to raise (default: network error)
            count: Number of failing calls, -1 for every call
        """
        error = error or create_network_error(self.exchange_id, "Injected failure", operation)
        self._errors[operation] = [error, count]

    def calls(self, operation: str) -> List[Dict[str, Any]]:
        """Arguments of every recorded call of an operation."""
        return [args for op, args in self.call_log if op == operation]

    def reset(self) -> None:
        """Reset mock state."""
        self._fills.clear()
        self._funding.clear()
        self._positions.clear()
        self._balances.clear()
        self._prices.clear()
        self._closed_pnl = None
        self._errors.clear()
        self.call_log.clear()
        self._init_state()

    # --------------------------------------------------------
    # INTERNAL
    # --------------------------------------------------------

    async def _enter(self, operation: str, **kwargs) -> None:
        """Record the call, simulate latency and raise injected errors."""
        self.call_log.append((operation, kwargs))
        await self._simulate_latency()

        injected = self._errors.get(operation)
        if injected is None:
            return

        error, remaining = injected
        if remaining == 0:
            return
        if remaining > 0:
            injected[1] = remaining - 1
        raise ExchangeException(error)

    async def _simulate_latency(self) -> None:
        """Simulate network latency."""
        if self._config.max_latency_ms <= 0:
            return
        latency_ms = random.uniform(
            self._config.min_latency_ms,
            self._config.max_latency_ms,
        )
        await asyncio.sleep(latency_ms / 1000)
