"""
P&L Engine - Trade Normalizer.

============================================================
PURPOSE
============================================================
Converts exchange-native fill records into CanonicalTrade.

Each vendor has an explicit RawFillMapper that reads its own
documented fields. Mappers never guess at "whatever field
exists"; a record missing a required field is rejected.

RULES:
- Side lower-cased, must be buy or sell
- Time in ms; values below 10^12 are seconds
- Missing time -> ingestion time, flagged degraded
- Missing fee -> 0

============================================================
"""

import json
import time
import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any, Tuple, Type

from .types import (
    CanonicalTrade,
    FundingRecord,
    TradeSide,
    MalformedTradeError,
    ZERO,
    to_decimal,
)


logger = logging.getLogger(__name__)


SECONDS_THRESHOLD = 10 ** 12
"""Epoch values below this are seconds, not milliseconds."""


# ============================================================
# HELPERS
# ============================================================

def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_timestamp_ms(value: Any) -> Optional[int]:
    """
    Normalize an epoch value to milliseconds.

    Args:
        value: Seconds or milliseconds (int, float or numeric str)

    Returns:
        Milliseconds, or None when value is missing

    Raises:
        ValueError: If value is not numeric
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return None
    try:
        number = to_decimal(value)
    except InvalidOperation:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if number < SECONDS_THRESHOLD:
        number = number * 1000
    return int(number)


def _funding_time(value: Any) -> int:
    try:
        return normalize_timestamp_ms(value) or 0
    except ValueError:
        return 0


def payload_hash(payload: Dict[str, Any]) -> str:
    """Stable hash of a payload, used as a fallback execution id."""
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(payload_str.encode()).hexdigest()[:32]


# ============================================================
# RESULT
# ============================================================

@dataclass
class NormalizationResult:
    """Outcome of mapping one raw fill: a trade or an error."""

    trade: Optional[CanonicalTrade] = None
    error: Optional[MalformedTradeError] = None

    @property
    def ok(self) -> bool:
        return self.trade is not None

    def unwrap(self) -> CanonicalTrade:
        """Return the trade or raise the error."""
        if self.error is not None:
            raise self.error
        return self.trade


@dataclass
class RawFill:
    """Vendor fields read by a mapper, before validation."""

    symbol: Any = None
    side: Any = None
    quantity: Any = None
    price: Any = None
    fee: Any = None
    timestamp: Any = None
    execution_id: Any = None
    order_id: Any = None


# ============================================================
# MAPPER CAPABILITY
# ============================================================

class RawFillMapper(ABC):
    """
    Maps one vendor's fill payload to CanonicalTrade.

    Subclasses implement extract() for their schema; validation and
    unit normalization are shared.
    """

    exchange_id: str = ""

    @abstractmethod
    def extract(self, raw: Dict[str, Any]) -> RawFill:
        """Read the vendor's fill fields."""
        pass

    @abstractmethod
    def map_funding(self, raw: Dict[str, Any], symbol: str) -> FundingRecord:
        """
        Map one vendor funding record.

        Raises:
            MalformedTradeError: If the amount cannot be parsed
        """
        pass

    def map_fill(self, raw: Any, ingested_at_ms: Optional[int] = None) -> NormalizationResult:
        """
        Map a raw fill without raising.

        Args:
            raw: Exchange-native fill
            ingested_at_ms: Substitute time when the fill has none

        Returns:
            NormalizationResult
        """
        try:
            return NormalizationResult(trade=self.normalize(raw, ingested_at_ms))
        except MalformedTradeError as e:
            return NormalizationResult(error=e)

    def normalize(self, raw: Any, ingested_at_ms: Optional[int] = None) -> CanonicalTrade:
        """
        Map a raw fill.

        Raises:
            MalformedTradeError: If quantity, price, side or symbol
                cannot be determined
        """
        if not isinstance(raw, dict):
            raise MalformedTradeError(
                f"Fill payload is not an object: {type(raw).__name__}",
                exchange_id=self.exchange_id,
            )

        fields = self.extract(raw)
        execution_id = str(fields.execution_id) if fields.execution_id not in (None, "") else payload_hash(raw)

        symbol = str(fields.symbol or "").strip()
        if not symbol:
            raise self._malformed("missing symbol", execution_id)

        side = self._parse_side(fields.side, execution_id)
        quantity = self._parse_positive(fields.quantity, "quantity", execution_id)
        price = self._parse_positive(fields.price, "price", execution_id)

        try:
            fee = to_decimal(fields.fee, ZERO)
        except InvalidOperation:
            raise self._malformed(f"invalid fee {fields.fee!r}", execution_id)

        try:
            timestamp = normalize_timestamp_ms(fields.timestamp)
        except ValueError as e:
            raise self._malformed(str(e), execution_id)

        degraded = timestamp is None
        if degraded:
            timestamp = ingested_at_ms if ingested_at_ms is not None else now_ms()
            logger.warning(
                f"Fill {execution_id} on {self.exchange_id} has no execution time, "
                f"using ingestion time {timestamp}"
            )

        return CanonicalTrade(
            symbol=symbol,
            side=side,
            quantity=quantity,
            price=price,
            fee=fee,
            execution_time_ms=timestamp,
            execution_id=execution_id,
            order_id=str(fields.order_id or ""),
            raw_payload=raw,
            time_degraded=degraded,
            exchange_id=self.exchange_id,
        )

    # --------------------------------------------------------
    # VALIDATION
    # --------------------------------------------------------

    def _parse_side(self, value: Any, execution_id: str) -> TradeSide:
        if value is None:
            raise self._malformed("missing side", execution_id)
        text = str(value).strip().lower()
        if text == TradeSide.BUY.value:
            return TradeSide.BUY
        if text == TradeSide.SELL.value:
            return TradeSide.SELL
        raise self._malformed(f"unrecognized side {value!r}", execution_id)

    def _parse_positive(self, value: Any, name: str, execution_id: str) -> Decimal:
        try:
            number = to_decimal(value)
        except InvalidOperation:
            raise self._malformed(f"invalid {name} {value!r}", execution_id)
        if number is None:
            raise self._malformed(f"missing {name}", execution_id)
        if number <= ZERO:
            raise self._malformed(f"non-positive {name} {number}", execution_id)
        return number

    def _parse_amount(self, value: Any, symbol: str) -> Decimal:
        try:
            amount = to_decimal(value)
        except InvalidOperation:
            amount = None
        if amount is None:
            raise MalformedTradeError(
                f"Invalid funding amount {value!r} for {symbol}",
                exchange_id=self.exchange_id,
            )
        return amount

    def _malformed(self, reason: str, execution_id: str) -> MalformedTradeError:
        return MalformedTradeError(
            f"Malformed {self.exchange_id} fill {execution_id}: {reason}",
            execution_id=execution_id,
            exchange_id=self.exchange_id,
        )


# ============================================================
# VENDOR MAPPERS
# ============================================================

class BybitFillMapper(RawFillMapper):
    """Bybit V5 /v5/execution/list records."""

    exchange_id = "bybit"

    def extract(self, raw: Dict[str, Any]) -> RawFill:
        return RawFill(
            symbol=raw.get("symbol"),
            side=raw.get("side"),
            quantity=raw.get("execQty"),
            price=raw.get("execPrice"),
            fee=raw.get("execFee"),
            timestamp=raw.get("execTime"),
            execution_id=raw.get("execId"),
            order_id=raw.get("orderId"),
        )

    def map_funding(self, raw: Dict[str, Any], symbol: str) -> FundingRecord:
        # Transaction log "change" is the signed wallet change of the settlement
        return FundingRecord(
            symbol=symbol,
            amount=self._parse_amount(raw.get("change"), symbol),
            timestamp=_funding_time(raw.get("transactionTime")),
        )


class BloFinFillMapper(RawFillMapper):
    """BloFin /api/v1/trade/fills-history records."""

    exchange_id = "blofin"

    def extract(self, raw: Dict[str, Any]) -> RawFill:
        return RawFill(
            symbol=raw.get("instId"),
            side=raw.get("side"),
            quantity=raw.get("fillSize"),
            price=raw.get("fillPrice"),
            fee=raw.get("fee"),
            timestamp=raw.get("ts"),
            execution_id=raw.get("tradeId"),
            order_id=raw.get("orderId"),
        )

    def map_funding(self, raw: Dict[str, Any], symbol: str) -> FundingRecord:
        # billPnl: negative = paid, positive = received
        return FundingRecord(
            symbol=symbol,
            amount=self._parse_amount(raw.get("billPnl"), symbol),
            timestamp=_funding_time(raw.get("ts")),
        )


class ToobitFillMapper(RawFillMapper):
    """Toobit /api/v1/account/trades records."""

    exchange_id = "toobit"

    def extract(self, raw: Dict[str, Any]) -> RawFill:
        side = raw.get("side")
        is_buyer = raw.get("isBuyer")
        if side is None and isinstance(is_buyer, bool):
            side = "buy" if is_buyer else "sell"
        return RawFill(
            symbol=raw.get("symbol"),
            side=side,
            quantity=raw.get("qty", raw.get("quantity")),
            price=raw.get("price"),
            fee=raw.get("commission"),
            timestamp=raw.get("time"),
            execution_id=raw.get("id"),
            order_id=raw.get("orderId"),
        )

    def map_funding(self, raw: Dict[str, Any], symbol: str) -> FundingRecord:
        return FundingRecord(
            symbol=symbol,
            amount=self._parse_amount(raw.get("income"), symbol),
            timestamp=_funding_time(raw.get("time")),
        )


class GenericFillMapper(RawFillMapper):
    """Unified trade shape (symbol, side, amount, price, fee.cost, timestamp, id, order)."""

    exchange_id = "generic"

    def extract(self, raw: Dict[str, Any]) -> RawFill:
        fee = raw.get("fee")
        return RawFill(
            symbol=raw.get("symbol"),
            side=raw.get("side"),
            quantity=raw.get("amount"),
            price=raw.get("price"),
            fee=fee.get("cost") if isinstance(fee, dict) else fee,
            timestamp=raw.get("timestamp"),
            execution_id=raw.get("id"),
            order_id=raw.get("order"),
        )

    def map_funding(self, raw: Dict[str, Any], symbol: str) -> FundingRecord:
        return FundingRecord(
            symbol=symbol,
            amount=self._parse_amount(raw.get("amount"), symbol),
            timestamp=_funding_time(raw.get("timestamp")),
        )


# ============================================================
# REGISTRY
# ============================================================

_MAPPERS: Dict[str, Type[RawFillMapper]] = {
    "bybit": BybitFillMapper,
    "blofin": BloFinFillMapper,
    "toobit": ToobitFillMapper,
    "generic": GenericFillMapper,
    "mock": GenericFillMapper,
}


def register_fill_mapper(exchange_id: str, mapper_class: Type[RawFillMapper]) -> None:
    """Register a mapper for an exchange."""
    _MAPPERS[exchange_id.lower()] = mapper_class


def get_fill_mapper(exchange_id: str) -> RawFillMapper:
    """
    Get the fill mapper for an exchange.

    Raises:
        ValueError: If no mapper is registered
    """
    mapper_class = _MAPPERS.get(exchange_id.lower())
    if mapper_class is None:
        raise ValueError(
            f"No fill mapper for exchange: {exchange_id}. "
            f"Supported: {sorted(_MAPPERS)}"
        )
    return mapper_class()


def normalize_fills(
    mapper: RawFillMapper,
    raw_fills: Any,
    ingested_at_ms: Optional[int] = None,
) -> Tuple[list, list]:
    """
    Normalize a batch, skipping malformed records.

    Returns:
        (trades, errors)
    """
    trades = []
    errors = []
    for raw in raw_fills:
        result = mapper.map_fill(raw, ingested_at_ms)
        if result.ok:
            trades.append(result.trade)
        else:
            errors.append(result.error)
            logger.warning(f"Skipping malformed fill: {result.error}")
    return trades, errors
