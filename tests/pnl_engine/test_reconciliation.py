"""
Reconciliation Reporter Tests.

============================================================
PURPOSE
============================================================
Tests for computed vs exchange-reported open quantity.

TEST CATEGORIES:
- Keying by (symbol, book side)
- One-way position mapping
- Tolerance
- Ordering and immutability
- Realized P&L vs exchange closed P&L

============================================================
"""

import pytest
from decimal import Decimal

from pnl_engine.config import ReconciliationConfig
from pnl_engine.reconciliation import ReconciliationReporter, reconcile
from pnl_engine.types import (
    BookSide,
    ClosedPosition,
    InventoryLot,
    PositionInfo,
    PositionSide,
    ReportedClosedPnL,
)


def lot(symbol, side, quantity, avg="100"):
    return InventoryLot(
        symbol=symbol,
        book_side=side,
        remaining_quantity=Decimal(quantity),
        weighted_average_cost=Decimal(avg),
        open_timestamp=1700000000000,
    )


def position(symbol, side, quantity):
    return PositionInfo(symbol=symbol, side=side, quantity=Decimal(quantity))


def closure(symbol, pnl, close_ts):
    return ClosedPosition(
        symbol=symbol,
        book_side=BookSide.LONG,
        matched_quantity=Decimal("1"),
        average_entry_price=Decimal("100"),
        average_exit_price=Decimal("100"),
        entry_value=Decimal("100"),
        exit_value=Decimal("100"),
        realized_pnl=Decimal(pnl),
        final_realized_pnl=Decimal(pnl),
        open_timestamp=close_ts - 500,
        close_timestamp=close_ts,
    )


def reported(symbol, pnl, closed_ts):
    return ReportedClosedPnL(symbol=symbol, closed_pnl=Decimal(pnl), closed_time_ms=closed_ts)


@pytest.fixture
def reporter():
    """Create reporter with default tolerance."""
    return ReconciliationReporter()


# ============================================================
# KEYING TESTS
# ============================================================

class TestKeying:
    """Tests for per-key deltas."""

    def test_matching_hedge_positions(self, reporter):
        """Test LONG and SHORT books are reconciled independently."""
        lots = [
            lot("BTCUSDT", BookSide.LONG, "1.5"),
            lot("BTCUSDT", BookSide.SHORT, "0.5"),
        ]
        positions = [
            position("BTCUSDT", PositionSide.LONG, "1.5"),
            position("BTCUSDT", PositionSide.SHORT, "0.5"),
        ]

        deltas = reporter.reconcile(lots, positions)

        assert len(deltas) == 2
        assert all(d.within_tolerance for d in deltas)
        assert all(d.discrepancy == Decimal("0") for d in deltas)

    def test_one_way_positive_is_long(self, reporter):
        """Test a positive BOTH position maps to the LONG book."""
        deltas = reporter.reconcile(
            [lot("ETHUSDT", BookSide.LONG, "2")],
            [position("ETHUSDT", PositionSide.BOTH, "2")],
        )

        assert len(deltas) == 1
        assert deltas[0].book_side == BookSide.LONG
        assert deltas[0].within_tolerance is True

    def test_one_way_negative_is_short(self, reporter):
        """Test a negative BOTH position maps to SHORT with abs quantity."""
        deltas = reporter.reconcile(
            [lot("ETHUSDT", BookSide.SHORT, "3")],
            [position("ETHUSDT", PositionSide.BOTH, "-3")],
        )

        assert deltas[0].book_side == BookSide.SHORT
        assert deltas[0].reported_remaining_quantity == Decimal("3")
        assert deltas[0].within_tolerance is True

    def test_reported_only_key(self, reporter):
        """Test a position unknown to the matcher is computed as zero."""
        deltas = reporter.reconcile([], [position("SOLUSDT", PositionSide.LONG, "10")])

        assert deltas[0].computed_remaining_quantity == Decimal("0")
        assert deltas[0].reported_remaining_quantity == Decimal("10")
        assert deltas[0].discrepancy == Decimal("-10")
        assert deltas[0].within_tolerance is False

    def test_computed_only_key(self, reporter):
        """Test a lot the exchange does not report is reported as zero."""
        deltas = reporter.reconcile([lot("SOLUSDT", BookSide.SHORT, "4")], [])

        assert deltas[0].reported_remaining_quantity == Decimal("0")
        assert deltas[0].discrepancy == Decimal("4")
        assert deltas[0].within_tolerance is False

    def test_multiple_entries_summed(self, reporter):
        """Test entries sharing a key are summed."""
        deltas = reporter.reconcile(
            [lot("BTCUSDT", BookSide.LONG, "1")],
            [
                position("BTCUSDT", PositionSide.LONG, "0.4"),
                position("BTCUSDT", PositionSide.BOTH, "0.6"),
            ],
        )

        assert len(deltas) == 1
        assert deltas[0].reported_remaining_quantity == Decimal("1.0")
        assert deltas[0].within_tolerance is True

    def test_accepts_lot_mapping(self, reporter):
        """Test the matcher's open-lot mapping is accepted directly."""
        long_lot = lot("BTCUSDT", BookSide.LONG, "1")

        deltas = reporter.reconcile(
            {long_lot.key: long_lot},
            [position("BTCUSDT", PositionSide.LONG, "1")],
        )

        assert deltas[0].within_tolerance is True


# ============================================================
# TOLERANCE TESTS
# ============================================================

class TestTolerance:
    """Tests for the quantity tolerance."""

    def test_within_default_tolerance(self, reporter):
        """Test a 0.05% difference is within the 0.1% default."""
        deltas = reporter.reconcile(
            [lot("BTCUSDT", BookSide.LONG, "100")],
            [position("BTCUSDT", PositionSide.LONG, "100.05")],
        )

        assert deltas[0].within_tolerance is True
        assert deltas[0].discrepancy == Decimal("-0.05")

    def test_outside_default_tolerance(self, reporter):
        """Test a 1% difference is flagged."""
        deltas = reporter.reconcile(
            [lot("BTCUSDT", BookSide.LONG, "100")],
            [position("BTCUSDT", PositionSide.LONG, "101")],
        )

        assert deltas[0].within_tolerance is False

    def test_custom_tolerance(self):
        """Test a wider configured tolerance."""
        reporter = ReconciliationReporter(ReconciliationConfig(quantity_tolerance_pct=Decimal("2")))

        deltas = reporter.reconcile(
            [lot("BTCUSDT", BookSide.LONG, "100")],
            [position("BTCUSDT", PositionSide.LONG, "101")],
        )

        assert deltas[0].within_tolerance is True

    def test_mismatch_logged(self, reporter, caplog):
        """Test mismatches are logged as warnings."""
        reporter.reconcile([lot("BTCUSDT", BookSide.LONG, "1")], [])

        assert "BTCUSDT LONG" in caplog.text
        assert "discrepancy=1" in caplog.text


# ============================================================
# ORDERING AND IMMUTABILITY TESTS
# ============================================================

class TestOrdering:
    """Tests for delta ordering and input immutability."""

    def test_sorted_by_symbol_then_side(self, reporter):
        """Test deltas are ordered by (symbol, book side)."""
        lots = [
            lot("ETHUSDT", BookSide.SHORT, "1"),
            lot("BTCUSDT", BookSide.SHORT, "1"),
            lot("ETHUSDT", BookSide.LONG, "1"),
        ]

        deltas = reporter.reconcile(lots, [position("ADAUSDT", PositionSide.LONG, "5")])

        assert [(d.symbol, d.book_side) for d in deltas] == [
            ("ADAUSDT", BookSide.LONG),
            ("BTCUSDT", BookSide.SHORT),
            ("ETHUSDT", BookSide.LONG),
            ("ETHUSDT", BookSide.SHORT),
        ]

    def test_lots_not_modified(self, reporter):
        """Test reconciliation leaves computed lots untouched."""
        long_lot = lot("BTCUSDT", BookSide.LONG, "2", avg="150")
        before = long_lot.snapshot()

        reporter.reconcile([long_lot], [position("BTCUSDT", PositionSide.LONG, "5")])

        assert long_lot.snapshot() == before

    def test_to_dict(self, reporter):
        """Test delta serialization."""
        deltas = reporter.reconcile([lot("BTCUSDT", BookSide.LONG, "2")], [])

        data = deltas[0].to_dict()

        assert data["book_side"] == "LONG"
        assert data["computed_remaining_quantity"] == "2"
        assert data["within_tolerance"] is False


# ============================================================
# REALIZED P&L COMPARISON TESTS
# ============================================================

class TestRealizedPnLComparison:
    """Tests for computed vs exchange-reported closed P&L."""

    def test_matching_symbol(self, reporter):
        """Test closures and reported rows are summed per symbol."""
        deltas = reporter.compare_realized_pnl(
            [closure("BTCUSDT", "9.8", 2000), closure("BTCUSDT", "-1.8", 4000)],
            [reported("BTCUSDT", "10", 2000), reported("BTCUSDT", "-2", 4000)],
        )

        assert len(deltas) == 1
        delta = deltas[0]
        assert delta.computed_pnl == Decimal("8.0")
        assert delta.reported_pnl == Decimal("8")
        assert delta.computed_closures == 2
        assert delta.reported_closures == 2
        assert delta.within_tolerance is True

    def test_tolerance_is_absolute(self, reporter):
        """Test a one-cent gap is tolerated and a larger one is not."""
        deltas = reporter.compare_realized_pnl(
            [closure("BTCUSDT", "10.00", 1000), closure("ETHUSDT", "5.00", 1000)],
            [reported("BTCUSDT", "10.01", 1000), reported("ETHUSDT", "5.02", 1000)],
        )

        assert [d.symbol for d in deltas] == ["BTCUSDT", "ETHUSDT"]
        assert deltas[0].within_tolerance is True
        assert deltas[1].within_tolerance is False
        assert deltas[1].discrepancy == Decimal("-0.02")

    def test_symbol_on_one_side(self, reporter):
        """Test a symbol only one side knows about compares against zero."""
        deltas = reporter.compare_realized_pnl(
            [closure("BTCUSDT", "3", 1000)],
            [reported("SOLUSDT", "4", 1000)],
        )

        by_symbol = {d.symbol: d for d in deltas}
        assert by_symbol["BTCUSDT"].reported_pnl == Decimal("0")
        assert by_symbol["BTCUSDT"].reported_closures == 0
        assert by_symbol["SOLUSDT"].computed_pnl == Decimal("0")
        assert not any(d.within_tolerance for d in deltas)

    def test_since_filters_both_sides(self, reporter):
        """Test closes before since_ms are ignored on both sides."""
        deltas = reporter.compare_realized_pnl(
            [closure("BTCUSDT", "100", 1000), closure("BTCUSDT", "2", 5000)],
            [reported("BTCUSDT", "2", 5000)],
            since_ms=3000,
        )

        assert len(deltas) == 1
        assert deltas[0].computed_pnl == Decimal("2")
        assert deltas[0].within_tolerance is True

    def test_mismatch_logged(self, reporter, caplog):
        """Test a P&L mismatch is logged at warning."""
        with caplog.at_level("WARNING"):
            reporter.compare_realized_pnl(
                [closure("BTCUSDT", "1", 1000)],
                [reported("BTCUSDT", "2", 1000)],
            )

        assert "BTCUSDT" in caplog.text
        assert "discrepancy=-1" in caplog.text

    def test_to_dict(self, reporter):
        """Test comparison rows serialize decimals as strings."""
        deltas = reporter.compare_realized_pnl(
            [closure("BTCUSDT", "1.5", 1000)],
            [reported("BTCUSDT", "1.5", 1000)],
        )

        row = deltas[0].to_dict()
        assert row["computed_pnl"] == "1.5"
        assert row["reported_pnl"] == "1.5"
        assert row["within_tolerance"] is True


class TestReconcileFunction:
    """Tests for the reconcile convenience function."""

    def test_reconcile(self):
        """Test the module-level function."""
        deltas = reconcile([], [])

        assert deltas == []


# ============================================================
# RUN TESTS
# ============================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
