"""
P&L Engine - Configuration.

============================================================
PURPOSE
============================================================
All configuration for the P&L reconciliation engine.

CRITICAL CONSTRAINTS:
- Bounded pagination (hard cap)
- Single retry per page, no blind retry loops
- Deterministic matching

============================================================
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional
from decimal import Decimal

from dotenv import load_dotenv


# ============================================================
# INGESTION CONFIGURATION
# ============================================================

@dataclass
class IngestionConfig:
    """
    Trade ingestion configuration.

    SAFETY: Pagination always stops at hard_cap.
    """

    page_size: int = 100
    """Records requested per page."""

    hard_cap: int = 5000
    """Maximum records accumulated before pagination stops."""

    page_retries: int = 1
    """Retries for a failed page fetch."""

    retry_delay_seconds: float = 0.5
    """Delay before retrying a failed page."""


# ============================================================
# FUNDING CONFIGURATION
# ============================================================

@dataclass
class FundingConfig:
    """Funding fee collection configuration."""

    enabled: bool = True
    """Whether funding is collected and attributed."""

    lookback: int = 100
    """Most recent funding records fetched per symbol."""


# ============================================================
# RECONCILIATION CONFIGURATION
# ============================================================

@dataclass
class ReconciliationConfig:
    """
    Reconciliation configuration.
    """

    enabled: bool = True
    """Whether computed inventory is compared to exchange positions."""

    quantity_tolerance_pct: Decimal = Decimal("0.1")
    """Tolerance for quantity mismatch (percentage)."""

    compare_realized_pnl: bool = True
    """Whether computed realized P&L is compared to the exchange's closed P&L."""

    pnl_tolerance: Decimal = Decimal("0.01")
    """Absolute tolerance for realized P&L mismatch (settlement currency)."""


# ============================================================
# AGGREGATION CONFIGURATION
# ============================================================

@dataclass
class AggregationConfig:
    """Account fan-out configuration."""

    include_history: bool = True
    """Fetch trade history and compute closed positions (False = balances and positions only)."""

    stablecoins: List[str] = field(default_factory=lambda: [
        "USDT",
        "USDC",
        "USD",
        "BUSD",
    ])
    """Coins valued 1:1 in USD."""

    quote_asset: str = "USDT"
    """Quote used for ticker valuation of other coins."""

    recent_trades: int = 1000
    """Most recent trades kept in the account bundle."""


# ============================================================
# ACCOUNT CONFIGURATION
# ============================================================

@dataclass
class AccountConfig:
    """
    One exchange account.

    Credentials may be None to fall back to the adapter's own
    environment variables.
    """

    account_id: str
    """Unique account identifier."""

    exchange_id: str
    """Exchange identifier (bybit, blofin, toobit, mock)."""

    name: str = ""
    """Display name."""

    api_key: Optional[str] = None
    api_secret: Optional[str] = None

    passphrase: Optional[str] = None
    """Access passphrase (BloFin)."""

    testnet: bool = False
    """Use exchange testnet."""

    timeout_seconds: float = 30.0
    """HTTP request timeout."""

    @property
    def display_name(self) -> str:
        return self.name or self.account_id

    @property
    def credential_fingerprint(self) -> tuple:
        """Values that require a new session when changed."""
        return (
            self.exchange_id,
            self.api_key,
            self.api_secret,
            self.passphrase,
            self.testnet,
        )

    @classmethod
    def from_env(
        cls,
        account_id: str,
        exchange_id: str,
        name: str = "",
    ) -> "AccountConfig":
        """
        Create account config from environment variables.

        Loads a .env file if present, then reads
        {ACCOUNT}_API_KEY, {ACCOUNT}_API_SECRET, {ACCOUNT}_PASSPHRASE
        and {ACCOUNT}_TESTNET.

        Args:
            account_id: Account identifier (env prefix)
            exchange_id: Exchange identifier
            name: Display name

        Returns:
            AccountConfig
        """
        load_dotenv()
        prefix = account_id.upper().replace("-", "_")

        return cls(
            account_id=account_id,
            exchange_id=exchange_id.lower(),
            name=name,
            api_key=os.environ.get(f"{prefix}_API_KEY"),
            api_secret=os.environ.get(f"{prefix}_API_SECRET"),
            passphrase=os.environ.get(f"{prefix}_PASSPHRASE"),
            testnet=os.environ.get(f"{prefix}_TESTNET", "false").lower() in ("1", "true", "yes"),
        )


# ============================================================
# MASTER CONFIGURATION
# ============================================================

@dataclass
class PnLEngineConfig:
    """
    Master configuration for the P&L engine.
    """

    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    """Ingestion configuration."""

    funding: FundingConfig = field(default_factory=FundingConfig)
    """Funding configuration."""

    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    """Reconciliation configuration."""

    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    """Aggregation configuration."""

    @classmethod
    def for_testing(cls) -> "PnLEngineConfig":
        """Get configuration for testing."""
        return cls(
            ingestion=IngestionConfig(page_size=10, hard_cap=100, retry_delay_seconds=0.0),
            funding=FundingConfig(lookback=10),
        )

    @classmethod
    def for_production(cls) -> "PnLEngineConfig":
        """Get configuration for production."""
        return cls(
            ingestion=IngestionConfig(page_size=100, hard_cap=5000, page_retries=1),
            funding=FundingConfig(enabled=True, lookback=100),
            reconciliation=ReconciliationConfig(enabled=True),
        )
