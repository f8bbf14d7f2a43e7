"""
P&L Engine Package.

============================================================
PURPOSE
============================================================
Realized-P&L reconciliation across crypto exchange accounts.

CRITICAL PRINCIPLE:
    "The engine is READ-ONLY with respect to exchange state."

INVARIANTS:
    - Inventory never goes negative
    - Matched quantity never exceeds available inventory
    - FIFO ordering by (execution time, execution id)

============================================================
MODULES
============================================================
- types: Canonical trades, lots, closures, errors
- config: Engine and account configuration
- normalizer: Per-exchange fill mappers
- ingestion: Cursor-paginated fill history
- funding: Per-symbol funding collection
- matcher: Hedge-mode FIFO position matcher
- reconciliation: Computed vs reported positions
- aggregation: Account sessions and concurrent fan-out
- adapters: Exchange adapters (Bybit, BloFin, Toobit, Mock)

============================================================
"""

# ============================================================
# TYPES
# ============================================================
from .types import (
    # Enums
    TradeSide,
    BookSide,
    PositionSide,
    # Records
    CanonicalTrade,
    InventoryLot,
    ClosedPosition,
    FundingRecord,
    ReconciliationDelta,
    ReportedClosedPnL,
    RealizedPnLDelta,
    AccountBalance,
    BalanceSummary,
    PositionInfo,
    # Helpers
    to_decimal,
    # Exceptions
    PnLEngineError,
    MalformedTradeError,
    IngestionPartialFailure,
    InventoryInvariantViolation,
    FundingFetchFailure,
    SessionError,
)

# ============================================================
# CONFIGURATION
# ============================================================
from .config import (
    IngestionConfig,
    FundingConfig,
    ReconciliationConfig,
    AggregationConfig,
    AccountConfig,
    PnLEngineConfig,
)

# ============================================================
# PIPELINE
# ============================================================
from .normalizer import (
    RawFillMapper,
    NormalizationResult,
    get_fill_mapper,
    register_fill_mapper,
    normalize_fills,
)
from .ingestion import (
    IngestionStatus,
    IngestionResult,
    TradeIngestionPipeline,
    fetch_all_trades,
)
from .funding import FundingFeeCollector, collect_funding
from .matcher import MatchResult, PositionMatcher, match_trades
from .reconciliation import ReconciliationReporter, reconcile
from .aggregation import (
    AccountSession,
    SessionPool,
    AccountDataBundle,
    AccountPipeline,
    AggregationFacade,
    summarize_balances,
)


__version__ = "0.1.0"


__all__ = [
    # Types
    "TradeSide",
    "BookSide",
    "PositionSide",
    "CanonicalTrade",
    "InventoryLot",
    "ClosedPosition",
    "FundingRecord",
    "ReconciliationDelta",
    "ReportedClosedPnL",
    "RealizedPnLDelta",
    "AccountBalance",
    "BalanceSummary",
    "PositionInfo",
    "to_decimal",
    "PnLEngineError",
    "MalformedTradeError",
    "IngestionPartialFailure",
    "InventoryInvariantViolation",
    "FundingFetchFailure",
    "SessionError",
    # Config
    "IngestionConfig",
    "FundingConfig",
    "ReconciliationConfig",
    "AggregationConfig",
    "AccountConfig",
    "PnLEngineConfig",
    # Pipeline
    "RawFillMapper",
    "NormalizationResult",
    "get_fill_mapper",
    "register_fill_mapper",
    "normalize_fills",
    "IngestionStatus",
    "IngestionResult",
    "TradeIngestionPipeline",
    "fetch_all_trades",
    "FundingFeeCollector",
    "collect_funding",
    "MatchResult",
    "PositionMatcher",
    "match_trades",
    "ReconciliationReporter",
    "reconcile",
    "AccountSession",
    "SessionPool",
    "AccountDataBundle",
    "AccountPipeline",
    "AggregationFacade",
    "summarize_balances",
]
