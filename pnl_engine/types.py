"""
P&L Engine - Types.

============================================================
PURPOSE
============================================================
All type definitions for the realized-P&L reconciliation engine.

CRITICAL PRINCIPLE:
    "Inventory never goes negative."
    "Matched quantity never exceeds available inventory."

All money and quantity values are Decimal. Exchange values are
converted through str, never from float directly.

============================================================
"""

from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field
from enum import Enum
from decimal import Decimal, InvalidOperation


ZERO = Decimal("0")


def to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    """
    Convert an exchange value to Decimal.

    Args:
        value: Raw value (str, int, float, Decimal or None)
        default: Returned when value is None or empty

    Returns:
        Decimal value or default

    Raises:
        InvalidOperation: If value cannot be parsed
    """
    if value is None:
        return default
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidOperation(f"Boolean is not a number: {value!r}")
    text = str(value).strip()
    if text == "":
        return default
    result = Decimal(text)
    if not result.is_finite():
        raise InvalidOperation(f"Non-finite number: {value!r}")
    return result


# ============================================================
# SIDES
# ============================================================

class TradeSide(Enum):
    """Side of an executed fill."""

    BUY = "buy"
    SELL = "sell"


class BookSide(Enum):
    """Independent inventory book (hedge mode)."""

    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def close_side(self) -> str:
        """Order side that closes this book."""
        return "Sell" if self == BookSide.LONG else "Buy"


class PositionSide(Enum):
    """Exchange-reported position side."""

    LONG = "LONG"
    SHORT = "SHORT"
    BOTH = "BOTH"  # One-way mode


# ============================================================
# TRADES
# ============================================================

@dataclass(frozen=True)
class CanonicalTrade:
    """
    Exchange-independent trade fill.

    Created by the normalizer, consumed once by the matcher.
    """

    symbol: str
    """Instrument symbol as reported by the exchange."""

    side: TradeSide
    """Fill side."""

    quantity: Decimal
    """Filled quantity (> 0)."""

    price: Decimal
    """Fill price (> 0)."""

    fee: Decimal
    """Fee cost in settlement currency (negative for maker rebates)."""

    execution_time_ms: int
    """Execution time, epoch milliseconds."""

    execution_id: str
    """Unique fill identifier."""

    order_id: str = ""
    """Parent order identifier."""

    raw_payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)
    """Untouched exchange payload (position side, reduce-only, ...)."""

    time_degraded: bool = False
    """Execution time was missing and ingestion time was used."""

    exchange_id: str = ""
    """Source exchange."""

    def __post_init__(self):
        if not self.symbol:
            raise MalformedTradeError("Trade symbol is empty", execution_id=self.execution_id)
        if self.quantity <= ZERO:
            raise MalformedTradeError(
                f"Trade quantity must be positive: {self.quantity}",
                execution_id=self.execution_id,
            )
        if self.price <= ZERO:
            raise MalformedTradeError(
                f"Trade price must be positive: {self.price}",
                execution_id=self.execution_id,
            )

    @property
    def sort_key(self) -> Tuple[int, str]:
        """Deterministic processing order."""
        return (self.execution_time_ms, self.execution_id)

    @property
    def notional(self) -> Decimal:
        """Quantity times price."""
        return self.quantity * self.price

    def to_dict(self) -> Dict[str, Any]:
        """Trade row for display (raw payload omitted)."""
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "quantity": str(self.quantity),
            "price": str(self.price),
            "fee": str(self.fee),
            "execution_time": self.execution_time_ms,
            "execution_id": self.execution_id,
            "order_id": self.order_id,
            "time_degraded": self.time_degraded,
        }


# ============================================================
# INVENTORY
# ============================================================

@dataclass
class InventoryLot:
    """
    Open exposure of one (symbol, book side).

    Owned and mutated only by the position matcher for the duration of
    a single matching pass.
    """

    symbol: str
    """Instrument symbol."""

    book_side: BookSide
    """Book this lot belongs to."""

    remaining_quantity: Decimal = ZERO
    """Unmatched quantity."""

    weighted_average_cost: Decimal = ZERO
    """Volume-weighted price of unmatched entries."""

    open_timestamp: Optional[int] = None
    """Time of the oldest unmatched entry (ms)."""

    entry_fees: Decimal = ZERO
    """Entry fees not yet attributed to a closure."""

    trade_ids: List[str] = field(default_factory=list)
    """Ids of the trades that built the lot, in order."""

    @property
    def key(self) -> Tuple[str, BookSide]:
        return (self.symbol, self.book_side)

    @property
    def is_open(self) -> bool:
        return self.remaining_quantity > ZERO

    def add(self, quantity: Decimal, price: Decimal, fee: Decimal, timestamp: int, trade_id: str) -> None:
        """Add entry quantity, updating the weighted-average cost."""
        if quantity <= ZERO:
            raise InventoryInvariantViolation(
                f"Cannot add non-positive quantity {quantity} to {self.symbol} {self.book_side.value}",
                lot_state=self.snapshot(),
            )

        old_qty = self.remaining_quantity
        new_qty = old_qty + quantity
        self.weighted_average_cost = (
            self.weighted_average_cost * old_qty + quantity * price
        ) / new_qty
        self.remaining_quantity = new_qty
        self.entry_fees += fee
        if old_qty == ZERO:
            self.open_timestamp = timestamp
        self.trade_ids.append(trade_id)

    def reduce(self, quantity: Decimal) -> Decimal:
        """
        Remove matched quantity from the lot.

        Args:
            quantity: Quantity being closed

        Returns:
            Entry fees attributable to the closed quantity

        Raises:
            InventoryInvariantViolation: If quantity exceeds inventory
        """
        if quantity <= ZERO or quantity > self.remaining_quantity:
            raise InventoryInvariantViolation(
                f"Cannot close {quantity} of {self.symbol} {self.book_side.value} "
                f"with {self.remaining_quantity} remaining",
                lot_state=self.snapshot(),
            )

        if quantity == self.remaining_quantity:
            fee_share = self.entry_fees
            self.reset()
        else:
            fee_share = self.entry_fees * quantity / self.remaining_quantity
            self.entry_fees -= fee_share
            self.remaining_quantity -= quantity

        if self.remaining_quantity < ZERO:
            raise InventoryInvariantViolation(
                f"Negative inventory for {self.symbol} {self.book_side.value}",
                lot_state=self.snapshot(),
            )
        return fee_share

    def reset(self) -> None:
        """Empty the lot."""
        self.remaining_quantity = ZERO
        self.weighted_average_cost = ZERO
        self.open_timestamp = None
        self.entry_fees = ZERO
        self.trade_ids = []

    def snapshot(self) -> Dict[str, Any]:
        """Lot state for logging."""
        return {
            "symbol": self.symbol,
            "book_side": self.book_side.value,
            "remaining_quantity": str(self.remaining_quantity),
            "weighted_average_cost": str(self.weighted_average_cost),
            "open_timestamp": self.open_timestamp,
            "entry_fees": str(self.entry_fees),
            "trade_ids": list(self.trade_ids),
        }


# ============================================================
# OUTPUT RECORDS
# ============================================================

@dataclass(frozen=True)
class ClosedPosition:
    """
    Realized closure of a chunk of inventory.

    Immutable once emitted by the matcher.
    """

    symbol: str
    book_side: BookSide
    matched_quantity: Decimal
    average_entry_price: Decimal
    average_exit_price: Decimal
    entry_value: Decimal
    exit_value: Decimal
    realized_pnl: Decimal
    """P&L net of fees, before funding."""

    final_realized_pnl: Decimal
    """P&L including the funding adjustment."""

    open_timestamp: int
    close_timestamp: int
    contributing_trade_ids: Tuple[str, ...] = ()
    fees: Decimal = ZERO
    """Entry and exit fees attributed to this closure."""

    funding_adjustment: Optional[Decimal] = None
    """Funding share, None when no funding was attributed."""

    @property
    def close_side(self) -> str:
        return self.book_side.close_side

    def to_dict(self) -> Dict[str, Any]:
        """Closed-P&L row for display."""
        return {
            "symbol": self.symbol,
            "position_side": self.book_side.value,
            "side": self.close_side,
            "closed_size": str(self.matched_quantity),
            "avg_entry_price": str(self.average_entry_price),
            "avg_exit_price": str(self.average_exit_price),
            "cum_entry_value": str(self.entry_value),
            "cum_exit_value": str(self.exit_value),
            "fees": str(self.fees),
            "realized_pnl": str(self.realized_pnl),
            "funding_adjustment": (
                str(self.funding_adjustment) if self.funding_adjustment is not None else None
            ),
            "closed_pnl": str(self.final_realized_pnl),
            "created_time": self.open_timestamp,
            "updated_time": self.close_timestamp,
            "trade_ids": list(self.contributing_trade_ids),
        }


@dataclass(frozen=True)
class FundingRecord:
    """Single funding payment (negative = paid)."""

    symbol: str
    amount: Decimal
    timestamp: int = 0


@dataclass(frozen=True)
class ReconciliationDelta:
    """Computed vs exchange-reported open quantity."""

    symbol: str
    book_side: BookSide
    computed_remaining_quantity: Decimal
    reported_remaining_quantity: Decimal
    within_tolerance: bool = True
    """Whether the discrepancy is inside the configured tolerance."""

    @property
    def discrepancy(self) -> Decimal:
        """Computed minus reported."""
        return self.computed_remaining_quantity - self.reported_remaining_quantity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "book_side": self.book_side.value,
            "computed_remaining_quantity": str(self.computed_remaining_quantity),
            "reported_remaining_quantity": str(self.reported_remaining_quantity),
            "discrepancy": str(self.discrepancy),
            "within_tolerance": self.within_tolerance,
        }


@dataclass(frozen=True)
class ReportedClosedPnL:
    """Closed P&L row as reported by the exchange."""

    symbol: str
    closed_pnl: Decimal
    """Exchange's realized P&L for the close, net of fees, excluding funding."""

    closed_quantity: Decimal = ZERO
    closed_time_ms: int = 0
    order_id: str = ""


@dataclass(frozen=True)
class RealizedPnLDelta:
    """Computed vs exchange-reported realized P&L for one symbol."""

    symbol: str
    computed_pnl: Decimal
    reported_pnl: Decimal
    computed_closures: int = 0
    reported_closures: int = 0
    within_tolerance: bool = True

    @property
    def discrepancy(self) -> Decimal:
        """Computed minus reported."""
        return self.computed_pnl - self.reported_pnl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "computed_pnl": str(self.computed_pnl),
            "reported_pnl": str(self.reported_pnl),
            "discrepancy": str(self.discrepancy),
            "computed_closures": self.computed_closures,
            "reported_closures": self.reported_closures,
            "within_tolerance": self.within_tolerance,
        }


# ============================================================
# EXCHANGE STATE
# ============================================================

@dataclass
class AccountBalance:
    """Balance of one coin."""

    asset: str = ""
    """Asset symbol (e.g., USDT)."""

    free: Decimal = ZERO
    """Free (available) balance."""

    locked: Decimal = ZERO
    """Locked balance."""

    usd_value: Decimal = ZERO
    """Valuation in USD."""

    account_type: str = ""
    """Wallet the balance belongs to (funding, swap, unified...)."""

    @property
    def total(self) -> Decimal:
        """Get total balance."""
        return self.free + self.locked

    def to_dict(self) -> Dict[str, Any]:
        return {
            "coin": self.asset,
            "free": str(self.free),
            "locked": str(self.locked),
            "wallet_balance": str(self.total),
            "usd_value": str(self.usd_value),
            "account_type": self.account_type,
        }


@dataclass
class BalanceSummary:
    """Account-wide balance totals."""

    total_equity: Decimal = ZERO
    """Wallet balance plus unrealized P&L."""

    total_wallet_balance: Decimal = ZERO
    total_available_balance: Decimal = ZERO
    total_unrealized_pnl: Decimal = ZERO
    coins: List[AccountBalance] = field(default_factory=list)
    exchange_id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_equity": str(self.total_equity),
            "total_wallet_balance": str(self.total_wallet_balance),
            "total_available_balance": str(self.total_available_balance),
            "total_perp_upl": str(self.total_unrealized_pnl),
            "coin": [c.to_dict() for c in self.coins],
            "exchange": self.exchange_id,
        }


@dataclass
class PositionInfo:
    """Exchange-reported open position."""

    symbol: str = ""
    """Trading symbol."""

    side: PositionSide = PositionSide.BOTH
    """Position side."""

    quantity: Decimal = ZERO
    """Position size (signed in one-way mode: negative for short)."""

    entry_price: Decimal = ZERO
    """Average entry price."""

    mark_price: Decimal = ZERO
    """Current mark price."""

    unrealized_pnl: Decimal = ZERO
    """Unrealized PnL."""

    leverage: Decimal = Decimal("1")
    """Position leverage."""

    liquidation_price: Optional[Decimal] = None
    """Estimated liquidation price."""

    created_time: Optional[int] = None
    """Position open time (ms), when the exchange reports it."""

    @property
    def book_side(self) -> BookSide:
        """Book this position maps to."""
        if self.side == PositionSide.LONG:
            return BookSide.LONG
        if self.side == PositionSide.SHORT:
            return BookSide.SHORT
        return BookSide.SHORT if self.quantity < ZERO else BookSide.LONG

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "size": str(abs(self.quantity)),
            "entry_price": str(self.entry_price),
            "mark_price": str(self.mark_price),
            "position_value": str(abs(self.quantity) * self.mark_price),
            "unrealised_pnl": str(self.unrealized_pnl),
            "leverage": str(self.leverage),
            "liq_price": str(self.liquidation_price) if self.liquidation_price is not None else None,
            "created_time": self.created_time,
        }


# ============================================================
# EXCEPTIONS
# ============================================================

class PnLEngineError(Exception):
    """Base exception for the P&L engine."""
    pass


class MalformedTradeError(PnLEngineError):
    """A single exchange record could not be normalized."""

    def __init__(
        self,
        message: str,
        execution_id: Optional[str] = None,
        exchange_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.execution_id = execution_id
        self.exchange_id = exchange_id


class IngestionPartialFailure(PnLEngineError):
    """Pagination aborted before the trade history was exhausted."""

    def __init__(self, message: str, collected: int = 0, cause: Optional[Exception] = None):
        super().__init__(message)
        self.collected = collected
        self.cause = cause


class InventoryInvariantViolation(PnLEngineError):
    """Matching logic produced an impossible inventory state."""

    def __init__(self, message: str, lot_state: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.lot_state = lot_state or {}


class FundingFetchFailure(PnLEngineError):
    """Funding history for one symbol could not be fetched."""

    def __init__(self, symbol: str, message: str):
        super().__init__(f"Funding fetch failed for {symbol}: {message}")
        self.symbol = symbol


class SessionError(PnLEngineError):
    """Account session used outside its lifecycle."""
    pass
