"""
P&L Engine - Reconciliation Reporter.

============================================================
PURPOSE
============================================================
Compares the open inventory computed by the matcher with the
positions the exchange reports.

- Keyed by (symbol, book side)
- One-way (BOTH) positions: positive -> LONG, negative -> SHORT
- A key missing on one side counts as zero there
- Purely informational: computed state is never modified

Realized P&L is also compared per symbol with the closed P&L the
exchange reports, where the exchange provides it.

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, List, Tuple, Iterable, Mapping, Union

from .config import ReconciliationConfig
from .types import (
    BookSide,
    ClosedPosition,
    InventoryLot,
    PositionInfo,
    RealizedPnLDelta,
    ReconciliationDelta,
    ReportedClosedPnL,
    ZERO,
)


logger = logging.getLogger(__name__)


LotKey = Tuple[str, BookSide]


class ReconciliationReporter:
    """
    Computed vs reported open quantity, per (symbol, book side).
    """

    def __init__(self, config: Optional[ReconciliationConfig] = None):
        self._config = config or ReconciliationConfig()
        self._run_counter = 0

    def reconcile(
        self,
        computed_open_lots: Union[Mapping[LotKey, InventoryLot], Iterable[InventoryLot]],
        reported_positions: Iterable[PositionInfo],
    ) -> List[ReconciliationDelta]:
        """
        Build one delta per key present on either side.

        Args:
            computed_open_lots: Open lots from the matcher
            reported_positions: Positions from the exchange

        Returns:
            Deltas ordered by (symbol, book side)
        """
        self._run_counter += 1
        run_id = f"REC_{self._run_counter:06d}"

        lots = computed_open_lots.values() if isinstance(computed_open_lots, Mapping) else computed_open_lots

        computed: Dict[LotKey, Decimal] = {}
        for lot in lots:
            computed[lot.key] = computed.get(lot.key, ZERO) + lot.remaining_quantity

        reported: Dict[LotKey, Decimal] = {}
        for position in reported_positions:
            key = (position.symbol, position.book_side)
            reported[key] = reported.get(key, ZERO) + abs(position.quantity)

        deltas = []
        for key in sorted(set(computed) | set(reported), key=lambda k: (k[0], k[1].value)):
            local = computed.get(key, ZERO)
            exchange = reported.get(key, ZERO)
            deltas.append(ReconciliationDelta(
                symbol=key[0],
                book_side=key[1],
                computed_remaining_quantity=local,
                reported_remaining_quantity=exchange,
                within_tolerance=not self._quantity_differs(local, exchange),
            ))

        mismatches = [d for d in deltas if not d.within_tolerance]
        for delta in mismatches:
            logger.warning(
                f"Reconciliation {run_id}: {delta.symbol} {delta.book_side.value} "
                f"computed={delta.computed_remaining_quantity} "
                f"reported={delta.reported_remaining_quantity} "
                f"discrepancy={delta.discrepancy}"
            )
        logger.info(
            f"Reconciliation {run_id} complete: "
            f"keys={len(deltas)}, mismatches={len(mismatches)}"
        )
        return deltas

    def compare_realized_pnl(
        self,
        closed_positions: Iterable[ClosedPosition],
        reported_closed_pnl: Iterable[ReportedClosedPnL],
        since_ms: Optional[int] = None,
    ) -> List[RealizedPnLDelta]:
        """
        Compare computed realized P&L with the exchange's closed P&L.

        Both sides are summed per symbol. Computed P&L is taken before
        funding, the way exchanges report closed P&L.

        Args:
            closed_positions: Closures from the matcher
            reported_closed_pnl: Closed P&L rows from the exchange
            since_ms: Ignore closes before this time on both sides

        Returns:
            Deltas ordered by symbol
        """
        self._run_counter += 1
        run_id = f"PNL_{self._run_counter:06d}"

        computed: Dict[str, List[Decimal]] = {}
        for closure in closed_positions:
            if since_ms is not None and closure.close_timestamp < since_ms:
                continue
            computed.setdefault(closure.symbol, []).append(closure.realized_pnl)

        reported: Dict[str, List[Decimal]] = {}
        for row in reported_closed_pnl:
            if since_ms is not None and row.closed_time_ms < since_ms:
                continue
            reported.setdefault(row.symbol, []).append(row.closed_pnl)

        deltas = []
        for symbol in sorted(set(computed) | set(reported)):
            local = sum(computed.get(symbol, []), ZERO)
            exchange = sum(reported.get(symbol, []), ZERO)
            deltas.append(RealizedPnLDelta(
                symbol=symbol,
                computed_pnl=local,
                reported_pnl=exchange,
                computed_closures=len(computed.get(symbol, [])),
                reported_closures=len(reported.get(symbol, [])),
                within_tolerance=abs(local - exchange) <= self._config.pnl_tolerance,
            ))

        mismatches = [d for d in deltas if not d.within_tolerance]
        for delta in mismatches:
            logger.warning(
                f"P&L comparison {run_id}: {delta.symbol} "
                f"computed={delta.computed_pnl} ({delta.computed_closures} closures) "
                f"reported={delta.reported_pnl} ({delta.reported_closures} closures) "
                f"discrepancy={delta.discrepancy}"
            )
        logger.info(
            f"P&L comparison {run_id} complete: "
            f"symbols={len(deltas)}, mismatches={len(mismatches)}"
        )
        return deltas

    def _quantity_differs(self, local: Decimal, exchange: Decimal) -> bool:
        """Check if quantities differ beyond tolerance."""
        if local == exchange:
            return False

        tolerance_pct = self._config.quantity_tolerance_pct
        if local == 0:
            return exchange > 0

        diff_pct = abs(local - exchange) / local * 100
        return diff_pct > tolerance_pct


def reconcile(
    computed_open_lots: Union[Mapping[LotKey, InventoryLot], Iterable[InventoryLot]],
    reported_positions: Iterable[PositionInfo],
) -> List[ReconciliationDelta]:
    """Reconciliation deltas with the default tolerance."""
    return ReconciliationReporter().reconcile(computed_open_lots, reported_positions)
