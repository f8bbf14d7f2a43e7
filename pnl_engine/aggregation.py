"""
P&L Engine - Aggregation Facade.

============================================================
PURPOSE
============================================================
Runs the per-account pipeline for many accounts concurrently
and returns one data bundle per account for the dashboard.

PER ACCOUNT (sequential):
    positions -> balances -> ingestion -> funding
              -> matching -> reconciliation

ACROSS ACCOUNTS:
- Concurrent fan-out with asyncio.gather
- No shared mutable state between accounts
- One account failing never affects another
- Only a balance failure fails an account; other stage failures
  keep what succeeded and mark the bundle partial

SESSIONS:
- One AccountSession owns one adapter for one account
- Sessions are reused sequentially, never shared
- Changed credentials rebuild the session

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Callable, Iterable

from .adapters.base import ExchangeAdapter
from .adapters.errors import ExchangeException
from .adapters.factory import AdapterFactory
from .config import AccountConfig, AggregationConfig, PnLEngineConfig
from .funding import FundingFeeCollector
from .ingestion import IngestionStatus, TradeIngestionPipeline
from .matcher import PositionMatcher
from .reconciliation import ReconciliationReporter
from .types import (
    AccountBalance,
    BalanceSummary,
    CanonicalTrade,
    ClosedPosition,
    PnLEngineError,
    PositionInfo,
    ReconciliationDelta,
    RealizedPnLDelta,
    SessionError,
    ZERO,
)


logger = logging.getLogger(__name__)


AdapterBuilder = Callable[[AccountConfig], ExchangeAdapter]


# ============================================================
# ACCOUNT SESSION
# ============================================================

class AccountSession:
    """
    Connected adapter for one account.

    Usage:
        async with AccountSession(account) as session:
            positions = await session.adapter.fetch_open_positions()
    """

    def __init__(
        self,
        account: AccountConfig,
        adapter: Optional[ExchangeAdapter] = None,
        adapter_builder: Optional[AdapterBuilder] = None,
    ):
        self._account = account
        self._fingerprint = account.credential_fingerprint
        self._adapter = adapter
        self._builder = adapter_builder or AdapterFactory.create_for_account
        self._closed = False

        # Held for the duration of a pipeline run
        self.lock = asyncio.Lock()

    @property
    def account(self) -> AccountConfig:
        return self._account

    @property
    def is_open(self) -> bool:
        return self._adapter is not None and self._adapter.is_connected and not self._closed

    @property
    def adapter(self) -> ExchangeAdapter:
        if not self.is_open:
            raise SessionError(f"Session for {self._account.account_id} is not open")
        return self._adapter

    def matches(self, account: AccountConfig) -> bool:
        """True if this session can serve the account as configured now."""
        return (
            account.account_id == self._account.account_id
            and account.credential_fingerprint == self._fingerprint
        )

    async def open(self) -> "AccountSession":
        if self._closed:
            raise SessionError(f"Session for {self._account.account_id} is closed")
        if self._adapter is None:
            self._adapter = self._builder(self._account)
        if not self._adapter.is_connected:
            await self._adapter.connect()
        return self

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._adapter is not None and self._adapter.is_connected:
            await self._adapter.disconnect()

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


class SessionPool:
    """
    Caller-owned registry of account sessions.

    Manages lifecycle of one session per account id.
    """

    def __init__(self, adapter_builder: Optional[AdapterBuilder] = None):
        self._builder = adapter_builder
        self._sessions: Dict[str, AccountSession] = {}

        # Serializes acquire so one account never gets two sessions
        self._lock = asyncio.Lock()

    async def acquire(self, account: AccountConfig) -> AccountSession:
        """
        Get the open session for an account.

        A session whose credentials no longer match is closed and
        replaced.
        """
        async with self._lock:
            session = self._sessions.get(account.account_id)
            if session is not None and session.matches(account) and session.is_open:
                return session

            if session is not None:
                logger.info(f"Rebuilding session for {account.display_name}")
                await self.release(account.account_id)

            session = AccountSession(account, adapter_builder=self._builder)
            await session.open()
            self._sessions[account.account_id] = session
            return session

    async def release(self, account_id: str) -> None:
        """Close and remove an account's session."""
        session = self._sessions.pop(account_id, None)
        if session is not None:
            await session.close()

    def get(self, account_id: str) -> Optional[AccountSession]:
        return self._sessions.get(account_id)

    def __contains__(self, account_id: str) -> bool:
        return account_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def close(self) -> None:
        """Close every session."""
        for account_id in list(self._sessions):
            await self.release(account_id)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# ============================================================
# ACCOUNT BUNDLE
# ============================================================

@dataclass
class AccountDataBundle:
    """Everything the dashboard shows for one account."""

    account_id: str
    name: str = ""
    exchange_id: str = ""

    balance: BalanceSummary = field(default_factory=BalanceSummary)
    open_positions: List[PositionInfo] = field(default_factory=list)
    closed_positions: List[ClosedPosition] = field(default_factory=list)
    trades: List[CanonicalTrade] = field(default_factory=list)
    """Most recent trades first."""

    reconciliation: List[ReconciliationDelta] = field(default_factory=list)
    pnl_comparison: List[RealizedPnLDelta] = field(default_factory=list)
    """Computed vs exchange closed P&L, empty when the exchange does not report it."""

    unattributed_funding: Dict[str, Decimal] = field(default_factory=dict)
    funding_failures: List[str] = field(default_factory=list)

    ingestion: Optional[Dict[str, Any]] = None
    """Ingestion summary, None when history was not fetched."""

    partial: bool = False
    last_updated: datetime = field(default_factory=datetime.utcnow)
    error: Optional[str] = None

    @classmethod
    def failed(cls, account: AccountConfig, error: str) -> "AccountDataBundle":
        """Default bundle for an account whose pipeline failed."""
        return cls(
            account_id=account.account_id,
            name=account.display_name,
            exchange_id=account.exchange_id,
            balance=BalanceSummary(exchange_id=account.exchange_id),
            error=error,
        )

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "exchange": self.exchange_id,
            "balance": self.balance.to_dict(),
            "positions": [p.to_dict() for p in self.open_positions],
            "trades": [t.to_dict() for t in self.trades],
            "closed_pnl": [c.to_dict() for c in self.closed_positions],
            "reconciliation": [d.to_dict() for d in self.reconciliation],
            "pnl_comparison": [d.to_dict() for d in self.pnl_comparison],
            "unattributed_funding": {s: str(a) for s, a in self.unattributed_funding.items()},
            "funding_failures": list(self.funding_failures),
            "ingestion": self.ingestion,
            "partial": self.partial,
            "last_updated": self.last_updated.isoformat(),
            "error": self.error,
        }


# ============================================================
# BALANCE VALUATION
# ============================================================

async def summarize_balances(
    adapter: ExchangeAdapter,
    positions: List[PositionInfo],
    config: Optional[AggregationConfig] = None,
) -> BalanceSummary:
    """
    Value an account's balances in USD.

    Stablecoins count 1:1. Other coins keep the exchange's own USD
    value when it reports one, else are priced from the ticker;
    unpriced coins count as zero.
    """
    config = config or AggregationConfig()
    stablecoins = {s.upper() for s in config.stablecoins}

    coins: List[AccountBalance] = []
    wallet = ZERO
    available = ZERO

    for balance in await adapter.fetch_balances():
        total = balance.total
        if balance.asset.upper() in stablecoins:
            unit_price = Decimal("1")
        elif balance.usd_value and total:
            unit_price = balance.usd_value / total
        else:
            unit_price = await _ticker_price(adapter, balance.asset, config.quote_asset)

        usd_value = total * unit_price
        coins.append(replace(balance, usd_value=usd_value))
        wallet += usd_value
        available += balance.free * unit_price

    unrealized = sum((p.unrealized_pnl for p in positions), ZERO)

    return BalanceSummary(
        total_equity=wallet + unrealized,
        total_wallet_balance=wallet,
        total_available_balance=available,
        total_unrealized_pnl=unrealized,
        coins=coins,
        exchange_id=adapter.exchange_id,
    )


async def _ticker_price(adapter: ExchangeAdapter, asset: str, quote: str) -> Decimal:
    symbol = adapter.valuation_symbol(asset, quote)
    try:
        price = await adapter.get_current_price(symbol)
    except ExchangeException as e:
        logger.debug(f"No price for {asset} via {symbol}: {e}")
        return ZERO
    if price is None:
        logger.debug(f"No price for {asset} via {symbol}, valued at 0")
        return ZERO
    return price


# ============================================================
# ACCOUNT PIPELINE
# ============================================================

class AccountPipeline:
    """
    Full data refresh for one account.
    """

    def __init__(
        self,
        session: AccountSession,
        config: Optional[PnLEngineConfig] = None,
    ):
        self._session = session
        self._config = config or PnLEngineConfig()

    async def run(self, include_history: bool = None) -> AccountDataBundle:
        """
        Fetch positions and balances, then optionally the trade
        history, funding, closed positions and reconciliation.

        Only a balance failure fails the account. Other exchange
        failures keep the stages that succeeded and are reported in
        the bundle's error with partial set.

        Raises:
            ExchangeException: If balances cannot be fetched
            PnLEngineError: On session misuse or an inventory violation
        """
        if include_history is None:
            include_history = self._config.aggregation.include_history

        account = self._session.account
        stage_errors: List[str] = []

        async with self._session.lock:
            adapter = self._session.adapter

            positions: Optional[List[PositionInfo]] = None
            try:
                positions = await adapter.fetch_open_positions()
            except ExchangeException as e:
                self._stage_failed(account, stage_errors, "positions", e)

            balance = await summarize_balances(adapter, positions or [], self._config.aggregation)

            bundle = AccountDataBundle(
                account_id=account.account_id,
                name=account.display_name,
                exchange_id=adapter.exchange_id,
                balance=balance,
                open_positions=positions or [],
            )

            if include_history:
                await self._run_history(adapter, bundle, positions, stage_errors)

        if stage_errors:
            bundle.error = "; ".join(stage_errors)
            bundle.partial = True
        bundle.last_updated = datetime.utcnow()

        logger.info(
            f"Account {account.display_name}: {len(bundle.open_positions)} positions, "
            f"{len(bundle.closed_positions)} closures, "
            f"{len(bundle.trades)} trades"
            f"{' (partial)' if bundle.partial else ''}"
        )
        return bundle

    async def _run_history(
        self,
        adapter: ExchangeAdapter,
        bundle: AccountDataBundle,
        positions: Optional[List[PositionInfo]],
        stage_errors: List[str],
    ) -> None:
        account = self._session.account

        pipeline = TradeIngestionPipeline(adapter, self._config.ingestion)
        ingestion = await pipeline.fetch_all_trades()
        if ingestion.status == IngestionStatus.FAILED:
            stage_errors.append(f"trades: {ingestion.errors[-1]}")

        funding: Dict[str, Decimal] = {}
        if self._config.funding.enabled:
            collector = FundingFeeCollector(adapter, self._config.funding)
            funding = await collector.collect_funding(t.symbol for t in ingestion.trades)
            bundle.funding_failures = sorted(collector.failed_symbols)

        match = PositionMatcher().match(ingestion.trades, funding)

        reconciliation = self._config.reconciliation
        if reconciliation.enabled:
            reporter = ReconciliationReporter(reconciliation)
            if positions is not None:
                bundle.reconciliation = reporter.reconcile(match.open_lots, positions)
            else:
                logger.warning(
                    f"Account {account.display_name}: positions unavailable, "
                    f"skipping reconciliation"
                )

            if reconciliation.compare_realized_pnl:
                try:
                    reported = await adapter.fetch_closed_pnl()
                except ExchangeException as e:
                    self._stage_failed(account, stage_errors, "closed_pnl", e)
                    reported = None
                if reported is not None:
                    bundle.pnl_comparison = reporter.compare_realized_pnl(
                        match.closed_positions, reported
                    )

        recent = self._config.aggregation.recent_trades
        bundle.trades = list(reversed(ingestion.trades))[:recent]
        bundle.closed_positions = match.closed_positions
        bundle.unattributed_funding = match.unattributed_funding
        bundle.ingestion = ingestion.to_dict()
        bundle.partial = ingestion.partial

        logger.info(
            f"Account {account.display_name}: realized={match.total_realized_pnl} "
            f"from {len(ingestion.trades)} trades"
        )

    def _stage_failed(
        self,
        account: AccountConfig,
        stage_errors: List[str],
        stage: str,
        error: ExchangeException,
    ) -> None:
        logger.warning(f"Account {account.display_name}: {stage} unavailable: {error}")
        stage_errors.append(f"{stage}: {error}")


# ============================================================
# AGGREGATION FACADE
# ============================================================

class AggregationFacade:
    """
    Concurrent refresh of many accounts.

    Usage:
        async with SessionPool() as pool:
            facade = AggregationFacade(pool)
            bundles = await facade.fetch_all(accounts)
    """

    def __init__(
        self,
        pool: SessionPool,
        config: Optional[PnLEngineConfig] = None,
    ):
        self._pool = pool
        self._config = config or PnLEngineConfig()

    async def fetch_account(
        self,
        account: AccountConfig,
        include_history: bool = None,
    ) -> AccountDataBundle:
        """Refresh one account; failures become a bundle with error set."""
        try:
            session = await self._pool.acquire(account)
            return await AccountPipeline(session, self._config).run(include_history)
        except (ExchangeException, PnLEngineError) as e:
            logger.error(f"Account {account.display_name} failed: {e}")
            return AccountDataBundle.failed(account, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error for account {account.display_name}")
            return AccountDataBundle.failed(account, f"Unexpected error: {e}")

    async def fetch_all(
        self,
        accounts: Iterable[AccountConfig],
        include_history: bool = None,
    ) -> List[AccountDataBundle]:
        """
        Refresh every account concurrently.

        Returns:
            One bundle per account, in input order
        """
        accounts = list(accounts)
        bundles = await asyncio.gather(
            *(self.fetch_account(account, include_history) for account in accounts)
        )

        failed = sum(1 for b in bundles if not b.ok)
        logger.info(f"Fetched {len(bundles)} accounts ({failed} failed)")
        return list(bundles)
