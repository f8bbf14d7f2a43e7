"""
P&L Engine - Funding Fee Collector.

============================================================
PURPOSE
============================================================
Collects net funding per symbol for perpetual positions.

- Bounded lookback (most recent N records per symbol)
- Signed amounts: negative = paid, positive = received
- One symbol failing never affects the others

============================================================
"""

import logging
from decimal import Decimal
from typing import Optional, Dict, List, Iterable

from .adapters.base import ExchangeAdapter
from .adapters.errors import ExchangeException
from .config import FundingConfig
from .normalizer import RawFillMapper
from .types import FundingRecord, FundingFetchFailure, MalformedTradeError, ZERO


logger = logging.getLogger(__name__)


class FundingFeeCollector:
    """
    Per-symbol funding collection for one adapter.
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        config: Optional[FundingConfig] = None,
        mapper: Optional[RawFillMapper] = None,
    ):
        self._adapter = adapter
        self._config = config or FundingConfig()
        self._mapper = mapper or adapter.fill_mapper

        self.failed_symbols: Dict[str, FundingFetchFailure] = {}
        self.records: Dict[str, List[FundingRecord]] = {}

    async def collect_funding(self, symbols: Iterable[str]) -> Dict[str, Decimal]:
        """
        Collect net funding for each symbol.

        Args:
            symbols: Symbols to query (duplicates ignored)

        Returns:
            Mapping symbol -> net funding. Symbols whose fetch failed
            are omitted and listed in failed_symbols.
        """
        self.failed_symbols = {}
        self.records = {}
        totals: Dict[str, Decimal] = {}

        for symbol in sorted(set(symbols)):
            try:
                raw_records = await self._adapter.fetch_funding_history(
                    symbol, self._config.lookback
                )
            except ExchangeException as e:
                failure = FundingFetchFailure(symbol, str(e))
                self.failed_symbols[symbol] = failure
                logger.warning(f"[{self._adapter.exchange_id}] {failure}")
                continue

            records = self._map_records(symbol, raw_records[:self._config.lookback])
            self.records[symbol] = records
            totals[symbol] = sum((r.amount for r in records), ZERO)

        if totals or self.failed_symbols:
            logger.info(
                f"Collected funding for {len(totals)} symbols from {self._adapter.exchange_id}"
                f" ({len(self.failed_symbols)} failed)"
            )
        return totals

    def _map_records(self, symbol: str, raw_records: list) -> List[FundingRecord]:
        records = []
        for raw in raw_records:
            try:
                records.append(self._mapper.map_funding(raw, symbol))
            except MalformedTradeError as e:
                logger.warning(f"Skipping malformed funding record for {symbol}: {e}")
        return records


async def collect_funding(
    adapter: ExchangeAdapter,
    symbols: Iterable[str],
    lookback: int = 100,
) -> Dict[str, Decimal]:
    """
    Net funding per symbol.

    Convenience wrapper for FundingFeeCollector.collect_funding().
    """
    collector = FundingFeeCollector(adapter, FundingConfig(lookback=lookback))
    return await collector.collect_funding(symbols)
