"""
P&L Engine - Trade Ingestion Pipeline.

============================================================
PURPOSE
============================================================
Pulls the complete fill history of one account from its
exchange adapter and normalizes it into CanonicalTrade.

PAGINATION:
- Cursor = timestamp of last record + 1 ms (first call: none)
- Stops on a short page (fewer raw records than page_size, capped
  at the adapter's max_page_size)
- Stops at hard_cap raw records (result flagged partial)
- Stops if the cursor cannot advance (result flagged partial)

FAILURES:
- A failed page is retried once, unless the error is not retryable
- Persistent failure keeps what was collected, flagged partial
- Malformed records are skipped and counted

============================================================
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, List, Set, AsyncIterator

from .adapters.base import ExchangeAdapter
from .adapters.errors import ExchangeException
from .config import IngestionConfig
from .normalizer import RawFillMapper, normalize_fills, now_ms
from .types import CanonicalTrade, IngestionPartialFailure


logger = logging.getLogger(__name__)


# ============================================================
# RESULT TYPES
# ============================================================

class IngestionStatus(str, Enum):
    """Status of an ingestion run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class IngestionResult:
    """Result of one ingestion run."""
    exchange_id: str = ""
    status: IngestionStatus = IngestionStatus.SUCCESS

    # Ordered by (execution_time_ms, execution_id)
    trades: List[CanonicalTrade] = field(default_factory=list)

    # Counts
    pages_fetched: int = 0
    records_fetched: int = 0
    duplicate_count: int = 0
    malformed_count: int = 0
    degraded_count: int = 0

    # Timing
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    # Errors
    errors: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        """True when the history may be incomplete."""
        return self.status != IngestionStatus.SUCCESS

    def mark_complete(self, completed_at: datetime) -> None:
        """Mark the ingestion as complete and calculate duration."""
        self.completed_at = completed_at
        if self.started_at:
            delta = completed_at - self.started_at
            self.duration_seconds = delta.total_seconds()

    def add_error(self, error: str) -> None:
        """Add an error message."""
        self.errors.append(error)
        if self.status == IngestionStatus.SUCCESS:
            self.status = IngestionStatus.PARTIAL

    def mark_failed(self, error: str) -> None:
        """Mark the ingestion as failed."""
        self.status = IngestionStatus.FAILED
        self.add_error(error)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/monitoring."""
        return {
            "exchange_id": self.exchange_id,
            "status": self.status.value,
            "partial": self.partial,
            "trades": len(self.trades),
            "pages_fetched": self.pages_fetched,
            "records_fetched": self.records_fetched,
            "duplicates": self.duplicate_count,
            "malformed": self.malformed_count,
            "time_degraded": self.degraded_count,
            "duration_seconds": self.duration_seconds,
            "error_count": len(self.errors),
            "errors": self.errors[:5],
        }


# ============================================================
# PIPELINE
# ============================================================

class TradeIngestionPipeline:
    """
    Cursor-paginated fill ingestion for one adapter.

    Usage:
        pipeline = TradeIngestionPipeline(adapter, config)
        result = await pipeline.fetch_all_trades()

        # or lazily
        async for page in pipeline.iter_pages():
            ...
    """

    def __init__(
        self,
        adapter: ExchangeAdapter,
        config: Optional[IngestionConfig] = None,
        mapper: Optional[RawFillMapper] = None,
    ):
        self._adapter = adapter
        self._config = config or IngestionConfig()
        self._mapper = mapper or adapter.fill_mapper

    async def fetch_all_trades(
        self,
        page_size: int = None,
        hard_cap: int = None,
    ) -> IngestionResult:
        """
        Drain the fill history.

        Args:
            page_size: Records per page (default from config)
            hard_cap: Maximum raw records (default from config)

        Returns:
            IngestionResult with trades sorted by (time, execution id)
        """
        result = IngestionResult(
            exchange_id=self._adapter.exchange_id,
            started_at=datetime.utcnow(),
        )

        trades: List[CanonicalTrade] = []
        async for page in self.iter_pages(page_size, hard_cap, result=result):
            trades.extend(page)

        result.trades = sorted(trades, key=lambda t: t.sort_key)
        result.mark_complete(datetime.utcnow())
        self._log_result(result)
        return result

    async def iter_pages(
        self,
        page_size: int = None,
        hard_cap: int = None,
        result: Optional[IngestionResult] = None,
    ) -> AsyncIterator[List[CanonicalTrade]]:
        """
        Yield normalized, de-duplicated pages of trades.

        The generator is single-use. Counters, errors and the partial
        flag are written to `result` when one is given.
        """
        page_size = self._config.page_size if page_size is None else page_size
        hard_cap = self._config.hard_cap if hard_cap is None else hard_cap
        if page_size <= 0 or hard_cap <= 0:
            raise ValueError("page_size and hard_cap must be positive")

        # A short page only means "last page" relative to what the exchange can return
        max_page_size = self._adapter.max_page_size
        if max_page_size is not None and page_size > max_page_size:
            logger.info(
                f"[{self._adapter.exchange_id}] page_size {page_size} exceeds "
                f"exchange limit, using {max_page_size}"
            )
            page_size = max_page_size

        if result is None:
            result = IngestionResult(exchange_id=self._adapter.exchange_id)

        cursor: Optional[int] = None
        seen: Set[str] = set()
        collected = 0

        while True:
            raw_page = await self._fetch_page(cursor, page_size, result, collected)
            if raw_page is None:
                return

            result.pages_fetched += 1
            fetched = len(raw_page)

            remaining = hard_cap - result.records_fetched
            truncated = fetched > remaining
            if truncated:
                raw_page = raw_page[:remaining]
            result.records_fetched += len(raw_page)

            trades, errors = normalize_fills(self._mapper, raw_page, now_ms())
            result.malformed_count += len(errors)

            page: List[CanonicalTrade] = []
            for trade in trades:
                if trade.execution_id in seen:
                    result.duplicate_count += 1
                    continue
                seen.add(trade.execution_id)
                if trade.time_degraded:
                    result.degraded_count += 1
                page.append(trade)

            collected += len(page)
            if page:
                yield page

            # Last page
            if fetched < page_size and not truncated:
                return

            if result.records_fetched >= hard_cap:
                message = f"Hard cap of {hard_cap} records reached, history truncated"
                logger.warning(f"[{result.exchange_id}] {message}")
                result.add_error(message)
                return

            timestamps = [t.execution_time_ms for t in trades if not t.time_degraded]
            if not timestamps:
                message = f"Page {result.pages_fetched} has no usable timestamps, stopping"
                logger.warning(f"[{result.exchange_id}] {message}")
                result.add_error(message)
                return

            next_cursor = max(timestamps) + 1
            if cursor is not None and next_cursor <= cursor:
                message = f"Cursor did not advance past {cursor}, stopping"
                logger.warning(f"[{result.exchange_id}] {message}")
                result.add_error(message)
                return
            cursor = next_cursor

    async def _fetch_page(
        self,
        cursor: Optional[int],
        page_size: int,
        result: IngestionResult,
        collected: int,
    ) -> Optional[List[Dict[str, Any]]]:
        """
        Fetch one page, retrying per config.

        Returns:
            Raw page, or None after persistent failure (recorded in result)
        """
        attempts = 1 + self._config.page_retries
        last_error: Optional[ExchangeException] = None
        tried = 0

        for attempt in range(attempts):
            try:
                tried += 1
                return await self._adapter.fetch_fills(cursor, page_size)
            except ExchangeException as e:
                last_error = e
                if not e.error.is_retryable():
                    logger.warning(
                        f"Page fetch for {result.exchange_id} failed with a "
                        f"non-retryable error (cursor={cursor}): {e}"
                    )
                    break
                if attempt + 1 < attempts:
                    wait_time = self._config.retry_delay_seconds
                    logger.warning(
                        f"Page fetch attempt {attempt + 1} failed for {result.exchange_id} "
                        f"(cursor={cursor}), retrying in {wait_time}s: {e}"
                    )
                    if wait_time > 0:
                        await asyncio.sleep(wait_time)

        failure = IngestionPartialFailure(
            f"Page fetch failed after {tried} attempt(s) (cursor={cursor}): {last_error}",
            collected=collected,
            cause=last_error,
        )
        logger.warning(f"[{result.exchange_id}] {failure} - keeping {collected} trades")
        if collected == 0:
            result.mark_failed(str(failure))
        else:
            result.add_error(str(failure))
        return None

    def _log_result(self, result: IngestionResult) -> None:
        summary = (
            f"Ingested {len(result.trades)} trades from {result.exchange_id} "
            f"({result.pages_fetched} pages, {result.records_fetched} records, "
            f"{result.duplicate_count} duplicates, {result.malformed_count} malformed) "
            f"in {result.duration_seconds:.2f}s"
        )
        if result.partial:
            logger.warning(f"{summary} - PARTIAL: {result.errors[-1]}")
        else:
            logger.info(summary)


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================

async def fetch_all_trades(
    adapter: ExchangeAdapter,
    page_size: int = 100,
    hard_cap: int = 5000,
) -> IngestionResult:
    """
    Fetch and normalize the full fill history of an adapter.

    Convenience wrapper for TradeIngestionPipeline.fetch_all_trades().
    """
    pipeline = TradeIngestionPipeline(adapter)
    return await pipeline.fetch_all_trades(page_size=page_size, hard_cap=hard_cap)
