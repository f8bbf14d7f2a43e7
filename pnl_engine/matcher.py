"""
P&L Engine - Position Matcher.

============================================================
PURPOSE
============================================================
Turns an account's trade history into closed positions using
FIFO matching against weighted-average inventory.

HEDGE MODE:
Each symbol has two independent books, LONG and SHORT.
- Buy: closes SHORT first, leftover opens/extends LONG
- Sell: closes LONG first, leftover opens/extends SHORT

REALIZED P&L (per closed chunk):
- LONG:  (exit - avg_entry) * qty - fees
- SHORT: (avg_entry - exit) * qty - fees

Fees of a closure = closing trade's fee share (by quantity)
plus the lot's entry fees, pro-rata to the closed share.

FUNDING:
Net funding per symbol is spread over that symbol's closures
by matched quantity. The last closure takes the remainder.
Funding of a symbol without closures is carried forward.

============================================================
"""

import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple, Iterable

from .types import (
    BookSide,
    CanonicalTrade,
    ClosedPosition,
    InventoryLot,
    InventoryInvariantViolation,
    TradeSide,
    ZERO,
)


logger = logging.getLogger(__name__)


LotKey = Tuple[str, BookSide]


# ============================================================
# RESULT
# ============================================================

@dataclass
class MatchResult:
    """Output of one matching pass."""

    closed_positions: List[ClosedPosition] = field(default_factory=list)
    """Closures in the order they happened."""

    open_lots: Dict[LotKey, InventoryLot] = field(default_factory=dict)
    """Inventory left open, keyed by (symbol, book side)."""

    unattributed_funding: Dict[str, Decimal] = field(default_factory=dict)
    """Funding of symbols that have no closures yet."""

    trade_count: int = 0

    @property
    def total_realized_pnl(self) -> Decimal:
        return sum((c.final_realized_pnl for c in self.closed_positions), ZERO)

    def realized_pnl_by_symbol(self) -> Dict[str, Decimal]:
        totals: Dict[str, Decimal] = {}
        for closed in self.closed_positions:
            totals[closed.symbol] = totals.get(closed.symbol, ZERO) + closed.final_realized_pnl
        return totals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trade_count": self.trade_count,
            "closed_positions": [c.to_dict() for c in self.closed_positions],
            "open_lots": [lot.snapshot() for lot in self.open_lots.values()],
            "unattributed_funding": {s: str(a) for s, a in self.unattributed_funding.items()},
            "total_realized_pnl": str(self.total_realized_pnl),
        }


# ============================================================
# MATCHER
# ============================================================

class PositionMatcher:
    """
    Deterministic hedge-mode FIFO matcher.

    Stateless between calls: every match() builds fresh lots.
    """

    def match(
        self,
        trades: Iterable[CanonicalTrade],
        funding: Optional[Dict[str, Decimal]] = None,
    ) -> MatchResult:
        """
        Match trades into closed positions.

        Args:
            trades: Canonical trades in any order
            funding: Net funding per symbol

        Returns:
            MatchResult

        Raises:
            InventoryInvariantViolation: If inventory would go negative
        """
        ordered = sorted(trades, key=lambda t: t.sort_key)
        lots: Dict[LotKey, InventoryLot] = {}
        closed: List[ClosedPosition] = []

        try:
            for trade in ordered:
                closed.extend(self._apply(trade, lots))
        except InventoryInvariantViolation as e:
            logger.critical(f"Inventory invariant violated: {e} | lot state: {e.lot_state}")
            raise

        closed, unattributed = self._attribute_funding(closed, funding or {})

        result = MatchResult(
            closed_positions=closed,
            open_lots={key: lot for key, lot in lots.items() if lot.is_open},
            unattributed_funding=unattributed,
            trade_count=len(ordered),
        )
        logger.debug(
            f"Matched {result.trade_count} trades into {len(closed)} closures, "
            f"{len(result.open_lots)} open lots"
        )
        return result

    def _lot(self, lots: Dict[LotKey, InventoryLot], symbol: str, book_side: BookSide) -> InventoryLot:
        key = (symbol, book_side)
        if key not in lots:
            lots[key] = InventoryLot(symbol=symbol, book_side=book_side)
        return lots[key]

    def _apply(self, trade: CanonicalTrade, lots: Dict[LotKey, InventoryLot]) -> List[ClosedPosition]:
        """Apply one trade: close the opposite book, then open with the rest."""
        if trade.side == TradeSide.BUY:
            close_book, open_book = BookSide.SHORT, BookSide.LONG
        else:
            close_book, open_book = BookSide.LONG, BookSide.SHORT

        close_lot = self._lot(lots, trade.symbol, close_book)
        remaining = trade.quantity
        open_fee = trade.fee
        closures = []

        if close_lot.is_open:
            closed_qty = min(remaining, close_lot.remaining_quantity)
            exit_fee = trade.fee * closed_qty / trade.quantity
            closures.append(self._close(close_lot, trade, closed_qty, exit_fee))
            remaining -= closed_qty
            open_fee = trade.fee - exit_fee

        if remaining > ZERO:
            open_lot = self._lot(lots, trade.symbol, open_book)
            open_lot.add(
                remaining,
                trade.price,
                open_fee,
                trade.execution_time_ms,
                trade.execution_id,
            )

        return closures

    def _close(
        self,
        lot: InventoryLot,
        trade: CanonicalTrade,
        quantity: Decimal,
        exit_fee: Decimal,
    ) -> ClosedPosition:
        avg_entry = lot.weighted_average_cost
        open_timestamp = lot.open_timestamp
        trade_ids = tuple(lot.trade_ids) + (trade.execution_id,)

        entry_fee = lot.reduce(quantity)
        fees = entry_fee + exit_fee

        entry_value = avg_entry * quantity
        exit_value = trade.price * quantity
        if lot.book_side == BookSide.LONG:
            gross = exit_value - entry_value
        else:
            gross = entry_value - exit_value
        realized = gross - fees

        return ClosedPosition(
            symbol=trade.symbol,
            book_side=lot.book_side,
            matched_quantity=quantity,
            average_entry_price=avg_entry,
            average_exit_price=trade.price,
            entry_value=entry_value,
            exit_value=exit_value,
            realized_pnl=realized,
            final_realized_pnl=realized,
            open_timestamp=open_timestamp if open_timestamp is not None else trade.execution_time_ms,
            close_timestamp=trade.execution_time_ms,
            contributing_trade_ids=trade_ids,
            fees=fees,
        )

    def _attribute_funding(
        self,
        closed: List[ClosedPosition],
        funding: Dict[str, Decimal],
    ) -> Tuple[List[ClosedPosition], Dict[str, Decimal]]:
        """Spread net funding over each symbol's closures by matched quantity."""
        by_symbol: Dict[str, List[int]] = {}
        for index, position in enumerate(closed):
            by_symbol.setdefault(position.symbol, []).append(index)

        unattributed: Dict[str, Decimal] = {}
        for symbol in sorted(funding):
            amount = funding[symbol]
            if amount == ZERO:
                continue

            indexes = by_symbol.get(symbol)
            if not indexes:
                unattributed[symbol] = amount
                logger.info(f"No closures for {symbol}, carrying forward funding {amount}")
                continue

            total_qty = sum((closed[i].matched_quantity for i in indexes), ZERO)
            allocated = ZERO
            for n, i in enumerate(indexes):
                if n == len(indexes) - 1:
                    share = amount - allocated
                else:
                    share = amount * closed[i].matched_quantity / total_qty
                    allocated += share
                closed[i] = replace(
                    closed[i],
                    funding_adjustment=share,
                    final_realized_pnl=closed[i].realized_pnl + share,
                )

        return closed, unattributed


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================

def match_trades(
    trades: Iterable[CanonicalTrade],
    funding: Optional[Dict[str, Decimal]] = None,
) -> List[ClosedPosition]:
    """Closed positions for a trade history."""
    return PositionMatcher().match(trades, funding).closed_positions
