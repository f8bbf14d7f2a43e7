"""
Exchange Adapter Tests.

============================================================
PURPOSE
============================================================
Unit tests for read-only exchange adapters.

TEST CATEGORIES:
- Factory tests: Adapter creation
- Error mapping tests: Error code translation
- Metrics tests: Metrics collection
- Logging tests: Credential masking
- Mock adapter tests: State and error injection
- Exchange parsing tests: Bybit, BloFin, Toobit payloads

============================================================
"""

import hmac
import logging
import base64
import hashlib
import pytest
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from pnl_engine.adapters import (
    # Factory
    AdapterFactory,
    AdapterConfig,
    ExchangeId,
    create_adapter,
    # Adapters
    BybitAdapter,
    BloFinAdapter,
    ToobitAdapter,
    MockExchangeAdapter,
    MockConfig,
    # Errors
    ExchangeException,
    ErrorCategory,
    RetryEligibility,
    map_bybit_error,
    map_blofin_error,
    map_toobit_error,
    map_exchange_error,
    create_network_error,
    create_timeout_error,
    # Metrics
    AdapterMetrics,
    MetricType,
    # Logging
    AdapterLogger,
    mask_headers,
    mask_params,
)
from pnl_engine.adapters.base import DAY_MS
from pnl_engine.adapters.logging_utils import mask_value, mask_url
from pnl_engine.config import AccountConfig
from pnl_engine.ingestion import IngestionStatus, TradeIngestionPipeline
from pnl_engine.types import BookSide, PositionSide, ReportedClosedPnL


NOW_MS = 1700000000000


def toobit_trades_api(trades):
    """Account trades endpoint: startTime and endTime inclusive, oldest first."""
    def respond(method, endpoint, params):
        start = params.get("startTime")
        end = params.get("endTime")
        window = [
            t for t in trades
            if (start is None or t["time"] >= start) and (end is None or t["time"] <= end)
        ]
        return [dict(t) for t in window[:params["limit"]]]
    return respond


# ============================================================
# FACTORY TESTS
# ============================================================

class TestAdapterFactory:
    """Tests for AdapterFactory."""

    def test_list_supported_exchanges(self):
        """Test listing supported exchanges."""
        supported = AdapterFactory.list_supported()

        assert "bybit" in supported
        assert "blofin" in supported
        assert "toobit" in supported
        assert "mock" in supported

    def test_create_mock_adapter(self):
        """Test creating mock adapter."""
        adapter = AdapterFactory.create("mock")

        assert isinstance(adapter, MockExchangeAdapter)
        assert adapter.exchange_id == "mock"

    def test_create_mock_with_options(self):
        """Test mock configuration passes through options."""
        adapter = AdapterFactory.create("mock", config=AdapterConfig(
            options={"config": MockConfig(exchange_id="paper")},
        ))

        assert adapter.exchange_id == "paper"

    def test_create_convenience_function(self):
        """Test create_adapter convenience function."""
        adapter = create_adapter("mock", testnet=True)

        assert adapter.exchange_id == "mock"

    def test_create_unsupported_raises(self):
        """Test that unsupported exchange raises ValueError."""
        with pytest.raises(ValueError, match="Unsupported exchange"):
            AdapterFactory.create("unsupported_exchange")

    def test_create_for_account(self):
        """Test account credentials reach the adapter."""
        account = AccountConfig(
            account_id="main",
            exchange_id="blofin",
            api_key="key",
            api_secret="secret",
            passphrase="pass",
            testnet=True,
        )

        adapter = AdapterFactory.create_for_account(account)

        assert isinstance(adapter, BloFinAdapter)
        assert adapter._api_key == "key"
        assert adapter._passphrase == "pass"
        assert adapter._base_url == "https://demo-trading-openapi.blofin.com"

    def test_exchange_id_case_insensitive(self):
        """Test exchange ids are lower-cased."""
        adapter = AdapterFactory.create("BYBIT", config=AdapterConfig(api_key="k", api_secret="s"))

        assert isinstance(adapter, BybitAdapter)

    def test_register_creator(self):
        """Test registering a custom creation function."""
        AdapterFactory.register(
            "paper",
            creator=lambda config: MockExchangeAdapter(MockConfig(exchange_id="paper")),
        )
        try:
            adapter = AdapterFactory.create("paper")

            assert adapter.exchange_id == "paper"
            assert "paper" in AdapterFactory.list_supported()
        finally:
            AdapterFactory.unregister("paper")

        assert "paper" not in AdapterFactory.list_supported()

    def test_register_requires_target(self):
        """Test register without class or creator raises."""
        with pytest.raises(ValueError):
            AdapterFactory.register("nothing")

    def test_exchange_id_enum(self):
        """Test enum values."""
        assert ExchangeId.BLOFIN.value == "blofin"


class TestAdapterConfig:
    """Tests for AdapterConfig."""

    def test_from_env(self, monkeypatch):
        """Test credentials are read from exchange-prefixed variables."""
        monkeypatch.setenv("BYBIT_API_KEY", "env_key")
        monkeypatch.setenv("BYBIT_API_SECRET", "env_secret")

        config = AdapterConfig.from_env("bybit", testnet=True)

        assert config.api_key == "env_key"
        assert config.api_secret == "env_secret"
        assert config.testnet is True

    def test_from_account(self):
        """Test conversion from an account."""
        account = AccountConfig(account_id="a", exchange_id="bybit", api_key="k", timeout_seconds=5.0)

        config = AdapterConfig.from_account(account)

        assert config.api_key == "k"
        assert config.timeout_seconds == 5.0


# ============================================================
# ERROR MAPPING TESTS
# ============================================================

class TestBybitErrorMapping:
    """Tests for Bybit error mapping."""

    def test_rate_limit_error(self):
        """Test rate limit error mapping."""
        error = map_bybit_error(10006, "Too many visits")

        assert error.category == ErrorCategory.RATE_LIMIT
        assert error.retry_eligible == RetryEligibility.BACKOFF
        assert error.code == "BYBIT_10006"
        assert error.is_retryable() is True

    def test_auth_error(self):
        """Test authentication error mapping."""
        error = map_bybit_error(10003, "Invalid api key")

        assert error.category == ErrorCategory.AUTHENTICATION
        assert error.is_retryable() is False

    def test_unknown_code_uses_http_status(self):
        """Test unknown codes fall back to the HTTP status."""
        error = map_bybit_error(99999, "Server error", 503)

        assert error.category == ErrorCategory.EXCHANGE_ERROR
        assert error.retry_eligible == RetryEligibility.RETRY


class TestBloFinErrorMapping:
    """Tests for BloFin error mapping."""

    def test_message_classification(self):
        """Test BloFin errors are classified by message."""
        error = map_blofin_error("152409", "Invalid signature")

        assert error.category == ErrorCategory.AUTHENTICATION
        assert error.exchange_id == "blofin"

    def test_rate_limit_message(self):
        """Test rate limit messages back off."""
        error = map_blofin_error("429", "Too Many Requests", 429)

        assert error.category == ErrorCategory.RATE_LIMIT
        assert error.retry_eligible == RetryEligibility.BACKOFF


class TestToobitErrorMapping:
    """Tests for Toobit error mapping."""

    def test_rate_limit_error(self):
        """Test rate limit error mapping."""
        error = map_toobit_error(-1003, "Too many requests")

        assert error.category == ErrorCategory.RATE_LIMIT

    def test_timestamp_error(self):
        """Test recvWindow errors are retryable."""
        error = map_toobit_error(-1021, "Timestamp outside recvWindow")

        assert error.category == ErrorCategory.TIMEOUT
        assert error.is_retryable() is True


class TestErrorMapperRouting:
    """Tests for map_exchange_error."""

    def test_routes_by_exchange(self):
        """Test routing to the exchange-specific mapper."""
        assert map_exchange_error("bybit", 10006, "x").code == "BYBIT_10006"
        assert map_exchange_error("toobit", -1002, "x").category == ErrorCategory.AUTHENTICATION
        assert map_exchange_error("blofin", "1", "rate limit").category == ErrorCategory.RATE_LIMIT

    def test_unknown_exchange(self):
        """Test unknown exchanges get a generic error."""
        error = map_exchange_error("other", 500, "boom", 500)

        assert error.code == "OTHER_500"
        assert error.category == ErrorCategory.EXCHANGE_ERROR

    def test_network_and_timeout_errors(self):
        """Test network and timeout helpers."""
        network = create_network_error("bybit", "Connection reset", "fetch_fills")
        timeout = create_timeout_error("bybit", 30000)

        assert network.category == ErrorCategory.NETWORK
        assert network.code == "BYBIT_NETWORK_ERROR"
        assert network.is_retryable() is True
        assert timeout.category == ErrorCategory.TIMEOUT
        assert "30000ms" in timeout.message

    def test_exception_wraps_error(self):
        """Test ExchangeException keeps the error."""
        error = map_bybit_error(10003, "Invalid api key")

        exc = ExchangeException(error)

        assert exc.error is error
        assert "BYBIT_10003" in str(exc)


# ============================================================
# METRICS TESTS
# ============================================================

class TestAdapterMetrics:
    """Tests for AdapterMetrics."""

    def test_record_success(self):
        """Test recording successful requests."""
        metrics = AdapterMetrics("bybit")

        metrics.record_request("/v5/execution/list", 50.0, True, status_code=200)
        metrics.record_request("/v5/execution/list", 150.0, True, status_code=200)

        summary = metrics.get_summary()
        assert summary["requests"]["total"] == 2
        assert summary["requests"]["success_rate"] == 1.0
        assert summary["latency"]["avg_ms"] == 100.0

    def test_record_failures_by_kind(self):
        """Test failure codes are classified."""
        metrics = AdapterMetrics("bybit")

        metrics.record_request("/a", 10.0, False, error_code="RATE_LIMIT")
        metrics.record_request("/a", 10.0, False, error_code="TIMEOUT")
        metrics.record_request("/a", 10.0, False, error_code="BYBIT_NETWORK_ERROR")

        errors = metrics.get_summary()["errors"]
        assert errors["rate_limit_hits"] == 1
        assert errors["timeouts"] == 1
        assert errors["connection_errors"] == 1
        assert errors["by_code"]["TIMEOUT"] == 1

    def test_record_records(self):
        """Test record counts."""
        metrics = AdapterMetrics("bybit")

        metrics.record_records(MetricType.FILLS_FETCHED, 40)
        metrics.record_records(MetricType.FUNDING_RECORDS_FETCHED, 3)

        records = metrics.get_summary()["records"]
        assert records["fills"] == 40
        assert records["funding"] == 3

    def test_latency_by_endpoint_and_reset(self):
        """Test per-endpoint latency and reset."""
        metrics = AdapterMetrics("bybit")
        metrics.record_request("/a", 10.0, True)

        assert "/a" in metrics.get_latency_by_endpoint()

        metrics.reset()
        assert metrics.get_summary()["requests"]["total"] == 0


# ============================================================
# LOGGING TESTS
# ============================================================

class TestCredentialMasking:
    """Tests for credential masking."""

    def test_mask_value(self):
        """Test values keep only their first characters."""
        assert mask_value("abcdef123456") == "abcd...***"
        assert mask_value("abc") == "***"

    def test_mask_headers(self):
        """Test signing headers are masked."""
        masked = mask_headers({
            "X-BAPI-API-KEY": "my_api_key_value",
            "ACCESS-PASSPHRASE": "secret_phrase",
            "Content-Type": "application/json",
        })

        assert masked["X-BAPI-API-KEY"] == "my_a...***"
        assert masked["ACCESS-PASSPHRASE"] == "secr...***"
        assert masked["Content-Type"] == "application/json"

    def test_mask_params(self):
        """Test signature parameters are masked."""
        masked = mask_params({"signature": "deadbeefcafe", "symbol": "BTCUSDT", "limit": 100})

        assert masked["signature"] == "dead...***"
        assert masked["symbol"] == "BTCUSDT"
        assert masked["limit"] == 100

    def test_mask_url(self):
        """Test query-string secrets are masked."""
        url = mask_url("/api/v1/account?timestamp=1&signature=abc123&symbol=BTCUSDT")

        assert "signature=***" in url
        assert "abc123" not in url
        assert "symbol=BTCUSDT" in url

    def test_adapter_logger_masks_request(self, caplog):
        """Test request logs never contain raw credentials."""
        caplog.set_level(logging.DEBUG, logger="pnl_engine.adapters.bybit")
        adapter_logger = AdapterLogger("bybit")

        request_id = adapter_logger.log_request(
            operation="list",
            method="GET",
            endpoint="/v5/position/list",
            headers={"X-BAPI-API-KEY": "supersecretkey"},
        )

        assert request_id == "bybit-1"
        assert "supersecretkey" not in caplog.text
        assert "supe...***" in caplog.text


# ============================================================
# MOCK ADAPTER TESTS
# ============================================================

class TestMockExchangeAdapter:
    """Tests for MockExchangeAdapter."""

    @pytest.mark.asyncio
    async def test_connect_disconnect(self):
        """Test connection lifecycle."""
        async with MockExchangeAdapter() as adapter:
            assert adapter.is_connected is True

        assert adapter.is_connected is False

    @pytest.mark.asyncio
    async def test_initial_balance(self):
        """Test the default USDT balance."""
        balances = await MockExchangeAdapter().fetch_balances()

        assert len(balances) == 1
        assert balances[0].asset == "USDT"
        assert balances[0].total == Decimal("1500.0")

    @pytest.mark.asyncio
    async def test_fills_paged_by_cursor(self):
        """Test fills are filtered by cursor and limited by page size."""
        adapter = MockExchangeAdapter()
        adapter.add_fills([
            {"id": "b", "timestamp": NOW_MS + 2},
            {"id": "a", "timestamp": NOW_MS + 1},
            {"id": "c", "timestamp": NOW_MS + 3},
        ])

        first = await adapter.fetch_fills(None, 2)
        second = await adapter.fetch_fills(NOW_MS + 3, 2)

        assert [f["id"] for f in first] == ["a", "b"]
        assert [f["id"] for f in second] == ["c"]

    @pytest.mark.asyncio
    async def test_history_start(self):
        """Test history_start_ms bounds the first page."""
        adapter = MockExchangeAdapter(MockConfig(history_start_ms=NOW_MS + 2))
        adapter.add_fills([{"id": "a", "timestamp": NOW_MS + 1}, {"id": "b", "timestamp": NOW_MS + 2}])

        fills = await adapter.fetch_fills(None, 10)

        assert [f["id"] for f in fills] == ["b"]

    @pytest.mark.asyncio
    async def test_funding_newest_first(self):
        """Test funding history is newest first and capped."""
        adapter = MockExchangeAdapter()
        adapter.set_funding("BTCUSDT", [
            {"amount": "1", "timestamp": NOW_MS},
            {"amount": "2", "timestamp": NOW_MS + 1},
            {"amount": "3", "timestamp": NOW_MS + 2},
        ])

        records = await adapter.fetch_funding_history("BTCUSDT", 2)

        assert [r["amount"] for r in records] == ["3", "2"]

    @pytest.mark.asyncio
    async def test_set_position_by_sign(self):
        """Test signed quantities map to hedge sides."""
        adapter = MockExchangeAdapter()
        adapter.set_position("BTCUSDT", Decimal("-2"))
        adapter.set_position("ETHUSDT", Decimal("-1"), side=PositionSide.BOTH)

        positions = {p.symbol: p for p in await adapter.fetch_open_positions()}

        assert positions["BTCUSDT"].side == PositionSide.SHORT
        assert positions["BTCUSDT"].quantity == Decimal("2")
        assert positions["ETHUSDT"].quantity == Decimal("-1")
        assert positions["ETHUSDT"].book_side == BookSide.SHORT

    @pytest.mark.asyncio
    async def test_inject_error_count(self):
        """Test injected errors fail the given number of calls."""
        adapter = MockExchangeAdapter()
        adapter.inject_error("fetch_balances", count=2)

        for _ in range(2):
            with pytest.raises(ExchangeException):
                await adapter.fetch_balances()

        assert len(await adapter.fetch_balances()) == 1
        assert len(adapter.calls("fetch_balances")) == 3

    @pytest.mark.asyncio
    async def test_inject_error_always(self):
        """Test count=-1 fails every call with the given error."""
        adapter = MockExchangeAdapter()
        adapter.inject_error("get_current_price", map_bybit_error(10006, "slow down"), count=-1)

        for _ in range(3):
            with pytest.raises(ExchangeException) as exc_info:
                await adapter.get_current_price("BTCUSDT")
            assert exc_info.value.error.category == ErrorCategory.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_reset(self):
        """Test reset restores the initial state."""
        adapter = MockExchangeAdapter()
        adapter.set_price("BTCUSDT", Decimal("100"))
        adapter.inject_error("fetch_fills", count=-1)

        adapter.reset()

        assert await adapter.get_current_price("BTCUSDT") is None
        assert await adapter.fetch_fills(None, 10) == []
        assert len(adapter.call_log) == 2

    @pytest.mark.asyncio
    async def test_page_not_cut_inside_millisecond(self):
        """Test a page keeps every fill sharing its last timestamp."""
        adapter = MockExchangeAdapter()
        adapter.add_fills([
            {"id": "a", "timestamp": NOW_MS + 1},
            {"id": "b", "timestamp": NOW_MS + 2},
            {"id": "c", "timestamp": NOW_MS + 2},
            {"id": "d", "timestamp": NOW_MS + 3},
        ])

        page = await adapter.fetch_fills(None, 2)

        assert [f["id"] for f in page] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_max_page_size(self):
        """Test the configured page limit caps every page."""
        adapter = MockExchangeAdapter(MockConfig(max_page_size=2))
        adapter.add_fills([{"id": str(n), "timestamp": NOW_MS + n} for n in range(5)])

        page = await adapter.fetch_fills(None, 10)

        assert adapter.max_page_size == 2
        assert [f["id"] for f in page] == ["0", "1"]

    @pytest.mark.asyncio
    async def test_closed_pnl(self):
        """Test closed P&L is unreported until set, then filtered by start."""
        adapter = MockExchangeAdapter()
        assert await adapter.fetch_closed_pnl() is None

        adapter.set_closed_pnl([
            ReportedClosedPnL(symbol="BTCUSDT", closed_pnl=Decimal("1"), closed_time_ms=NOW_MS),
            ReportedClosedPnL(symbol="BTCUSDT", closed_pnl=Decimal("2"), closed_time_ms=NOW_MS + 10),
        ])

        rows = await adapter.fetch_closed_pnl(NOW_MS + 5)

        assert [r.closed_pnl for r in rows] == [Decimal("2")]


# ============================================================
# BYBIT TESTS
# ============================================================

class TestBybitAdapter:
    """Tests for Bybit payload handling."""

    def test_credentials_from_env(self, monkeypatch):
        """Test credentials fall back to environment variables."""
        monkeypatch.setenv("BYBIT_API_KEY", "env_key")

        adapter = BybitAdapter()

        assert adapter._api_key == "env_key"

    def test_signed_headers(self):
        """Test V5 signing headers."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            path, headers = adapter._prepare_request("GET", "/v5/position/list", {"category": "linear"}, True)

        expected = hmac.new(
            b"secret",
            f"{NOW_MS}key5000category=linear".encode(),
            hashlib.sha256,
        ).hexdigest()
        assert path == "/v5/position/list?category=linear"
        assert headers["X-BAPI-SIGN"] == expected
        assert headers["X-BAPI-TIMESTAMP"] == str(NOW_MS)

    def test_unsigned_request(self):
        """Test public requests carry no credentials."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")

        _, headers = adapter._prepare_request("GET", "/v5/market/tickers", {}, False)

        assert "X-BAPI-API-KEY" not in headers

    def test_error_envelope(self):
        """Test a non-zero retCode raises."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")

        with pytest.raises(ExchangeException) as exc_info:
            adapter._unwrap_response({"retCode": 10006, "retMsg": "Too many visits"}, 200)

        assert exc_info.value.error.category == ErrorCategory.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_request_requires_connection(self):
        """Test requests before connect fail as network errors."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")

        with pytest.raises(ExchangeException) as exc_info:
            await adapter._request("GET", "/v5/position/list", {})

        assert exc_info.value.error.category == ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_parse_positions(self):
        """Test hedge and one-way positions."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={
            "list": [
                {
                    "symbol": "BTCUSDT", "positionIdx": 1, "side": "Buy", "size": "0.5",
                    "avgPrice": "30000", "markPrice": "31000", "unrealisedPnl": "500",
                    "leverage": "10", "createdTime": "1699990000000",
                },
                {"symbol": "ETHUSDT", "positionIdx": 0, "side": "Sell", "size": "2", "avgPrice": "2000"},
                {"symbol": "XRPUSDT", "positionIdx": 0, "side": "", "size": "0"},
            ],
            "nextPageCursor": "",
        })

        positions = await adapter.fetch_open_positions()

        assert len(positions) == 2
        assert positions[0].side == PositionSide.LONG
        assert positions[0].quantity == Decimal("0.5")
        assert positions[0].unrealized_pnl == Decimal("500")
        assert positions[0].created_time == 1699990000000
        assert positions[1].side == PositionSide.BOTH
        assert positions[1].quantity == Decimal("-2")
        assert positions[1].book_side == BookSide.SHORT

    @pytest.mark.asyncio
    async def test_parse_balances(self):
        """Test unified wallet coins."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={"list": [{"coin": [
            {"coin": "USDT", "walletBalance": "1000", "locked": "100", "usdValue": "1000"},
            {"coin": "BTC", "walletBalance": "0", "locked": "0"},
        ]}]})

        balances = await adapter.fetch_balances()

        assert len(balances) == 1
        assert balances[0].free == Decimal("900")
        assert balances[0].locked == Decimal("100")
        assert balances[0].usd_value == Decimal("1000")

    @pytest.mark.asyncio
    async def test_funding_filtered_by_symbol(self):
        """Test settlements for other symbols are dropped."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={
            "list": [
                {"symbol": "BTCUSDT", "change": "-0.1", "transactionTime": "1700000000000"},
                {"symbol": "BTCPERP", "change": "-0.2", "transactionTime": "1700000000000"},
                {"symbol": "BTCUSDT", "change": "0.3", "transactionTime": "1699970000000"},
            ],
            "nextPageCursor": "",
        })

        records = await adapter.fetch_funding_history("BTCUSDT", 100)

        assert [r["change"] for r in records] == ["-0.1", "0.3"]
        params = adapter._request.call_args.args[2]
        assert params["type"] == "SETTLEMENT"
        assert params["baseCoin"] == "BTC"

    @pytest.mark.asyncio
    async def test_fills_walk_windows(self):
        """Test fills are collected across 7-day windows, funding rows excluded."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        cursor = NOW_MS - 10 * DAY_MS
        fills = [
            {"execId": "e1", "execTime": str(cursor + 1000), "execType": "Trade"},
            {"execId": "f1", "execTime": str(cursor + 2000), "execType": "Funding"},
            {"execId": "e2", "execTime": str(cursor + 8 * DAY_MS), "execType": "Trade"},
        ]

        def respond(method, endpoint, params):
            window = [
                f for f in fills
                if params["startTime"] <= int(f["execTime"]) <= params["endTime"]
            ]
            return {"list": window, "nextPageCursor": ""}

        adapter._request = AsyncMock(side_effect=respond)

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            page = await adapter.fetch_fills(cursor, 100)

        assert [f["execId"] for f in page] == ["e1", "e2"]
        assert adapter._request.await_count == 2

    @pytest.mark.asyncio
    async def test_fills_page_not_cut_at_shared_timestamp(self):
        """Test fills sharing the boundary time stay on one page."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        ts = str(NOW_MS - 1000)
        adapter._request = AsyncMock(return_value={
            "list": [
                {"execId": "e1", "execTime": ts, "execType": "Trade"},
                {"execId": "e2", "execTime": ts, "execType": "Trade"},
                {"execId": "e3", "execTime": str(NOW_MS - 10), "execType": "Trade"},
            ],
            "nextPageCursor": "",
        })

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            page = await adapter.fetch_fills(NOW_MS - DAY_MS, 1)

        assert [f["execId"] for f in page] == ["e1", "e2"]

    @pytest.mark.asyncio
    async def test_current_price(self):
        """Test ticker price parsing."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={"list": [{"lastPrice": "42000.5"}]})

        assert await adapter.get_current_price("BTCUSDT") == Decimal("42000.5")

        adapter._request = AsyncMock(return_value={"list": []})
        assert await adapter.get_current_price("NOPEUSDT") is None

    @pytest.mark.asyncio
    async def test_closed_pnl(self):
        """Test exchange closed P&L rows are parsed oldest first."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={
            "list": [
                {
                    "symbol": "ETHUSDT", "orderId": "o2", "closedSize": "2",
                    "closedPnl": "-3.5", "updatedTime": str(NOW_MS - 100),
                },
                {
                    "symbol": "BTCUSDT", "orderId": "o1", "closedSize": "0.1",
                    "closedPnl": "12.25", "updatedTime": str(NOW_MS - 5000),
                },
            ],
            "nextPageCursor": "",
        })

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            rows = await adapter.fetch_closed_pnl(NOW_MS - DAY_MS)

        assert [r.order_id for r in rows] == ["o1", "o2"]
        assert rows[0].symbol == "BTCUSDT"
        assert rows[0].closed_pnl == Decimal("12.25")
        assert rows[0].closed_quantity == Decimal("0.1")
        assert rows[1].closed_time_ms == NOW_MS - 100

        endpoint = adapter._request.call_args.args[1]
        params = adapter._request.call_args.args[2]
        assert endpoint == "/v5/position/closed-pnl"
        assert params["startTime"] == NOW_MS - DAY_MS
        assert params["endTime"] == NOW_MS

    @pytest.mark.asyncio
    async def test_closed_pnl_walks_windows(self):
        """Test closed P&L older than one window is requested window by window."""
        adapter = BybitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={"list": [], "nextPageCursor": ""})

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            rows = await adapter.fetch_closed_pnl(NOW_MS - 10 * DAY_MS)

        assert rows == []
        assert adapter._request.await_count == 2


# ============================================================
# BLOFIN TESTS
# ============================================================

class TestBloFinAdapter:
    """Tests for BloFin payload handling."""

    def test_signed_headers(self):
        """Test nonce and passphrase signing headers."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            path, headers = adapter._prepare_request("GET", "/api/v1/account/positions", {"instType": "SWAP"}, True)

        nonce = headers["ACCESS-NONCE"]
        digest = hmac.new(
            b"secret",
            f"{path}GET{NOW_MS}{nonce}".encode(),
            hashlib.sha256,
        ).hexdigest()
        assert path == "/api/v1/account/positions?instType=SWAP"
        assert headers["ACCESS-SIGN"] == base64.b64encode(digest.encode()).decode()
        assert headers["ACCESS-PASSPHRASE"] == "phrase"

    def test_error_envelope(self):
        """Test a non-zero code raises."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")

        with pytest.raises(ExchangeException) as exc_info:
            adapter._unwrap_response({"code": "152401", "msg": "Invalid API key"}, 200)

        assert exc_info.value.error.category == ErrorCategory.AUTHENTICATION
        assert adapter._unwrap_response({"code": "0", "data": None}, 200) == []

    @pytest.mark.asyncio
    async def test_parse_positions(self):
        """Test hedge and net positions."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")
        adapter._request = AsyncMock(return_value=[
            {"instId": "BTC-USDT", "positionSide": "short", "positions": "-3", "averagePrice": "40000"},
            {"instId": "ETH-USDT", "positionSide": "net", "positions": "-1", "averagePrice": "2000"},
            {"instId": "SOL-USDT", "positionSide": "long", "positions": "0"},
        ])

        positions = await adapter.fetch_open_positions()

        assert len(positions) == 2
        assert positions[0].side == PositionSide.SHORT
        assert positions[0].quantity == Decimal("3")
        assert positions[1].side == PositionSide.BOTH
        assert positions[1].quantity == Decimal("-1")

    @pytest.mark.asyncio
    async def test_parse_balances(self):
        """Test funding and futures wallets are both read."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")
        adapter._request = AsyncMock(side_effect=[
            [{"currency": "USDT", "balance": "100", "available": "80"}],
            [{"currency": "USDT", "balance": "50"}, {"currency": "BTC", "balance": "0"}],
        ])

        balances = await adapter.fetch_balances()

        assert [b.account_type for b in balances] == ["funding", "futures"]
        assert balances[0].locked == Decimal("20")
        assert balances[1].free == Decimal("50")

    @pytest.mark.asyncio
    async def test_funding_bills(self):
        """Test funding bills are requested per instrument."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")
        adapter._request = AsyncMock(return_value=[{"billPnl": "-0.05", "ts": "1700000000000"}] * 3)

        records = await adapter.fetch_funding_history("BTC-USDT", 2)

        assert len(records) == 2
        params = adapter._request.call_args.args[2]
        assert params["billType"] == "1"
        assert params["instId"] == "BTC-USDT"
        assert params["limit"] == 2

    @pytest.mark.asyncio
    async def test_fill_window_pages_by_trade_id(self):
        """Test full pages continue with the last trade id."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")
        full_page = [{"tradeId": str(1000 - i), "ts": str(NOW_MS - i)} for i in range(100)]
        adapter._request = AsyncMock(side_effect=[full_page, [{"tradeId": "1", "ts": str(NOW_MS - 500)}]])

        records = await adapter._fetch_fill_window(NOW_MS - DAY_MS, NOW_MS)

        assert len(records) == 101
        second_params = adapter._request.call_args_list[1].args[2]
        assert second_params["after"] == "901"

    def test_valuation_symbol(self):
        """Test BloFin instrument naming."""
        adapter = BloFinAdapter(api_key="key", api_secret="secret", passphrase="phrase")

        assert adapter.valuation_symbol("BTC") == "BTC-USDT"


# ============================================================
# TOOBIT TESTS
# ============================================================

class TestToobitAdapter:
    """Tests for Toobit payload handling."""

    def test_signed_query(self):
        """Test signature is appended to the query string."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")

        with patch.object(adapter, "_now_ms", return_value=NOW_MS):
            path, headers = adapter._prepare_request("GET", "/api/v1/account", {}, True)

        query = f"timestamp={NOW_MS}&recvWindow=5000"
        expected = hmac.new(b"secret", query.encode(), hashlib.sha256).hexdigest()
        assert path == f"/api/v1/account?{query}&signature={expected}"
        assert headers["X-BB-APIKEY"] == "key"

    def test_error_envelope(self):
        """Test negative codes raise."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")

        with pytest.raises(ExchangeException) as exc_info:
            adapter._unwrap_response({"code": -1003, "msg": "Too many requests"}, 429)

        assert exc_info.value.error.category == ErrorCategory.RATE_LIMIT
        assert adapter._unwrap_response([{"id": 1}], 200) == [{"id": 1}]

    @pytest.mark.asyncio
    async def test_fetch_fills_sorted_and_limited(self):
        """Test trades are sorted oldest first and the limit is capped."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value=[
            {"id": 2, "time": NOW_MS + 5},
            {"id": 1, "time": NOW_MS},
        ])

        fills = await adapter.fetch_fills(None, 5000)

        assert [f["id"] for f in fills] == [1, 2]
        params = adapter._request.call_args.args[2]
        assert params == {"startTime": None, "limit": 1000}

    @pytest.mark.asyncio
    async def test_spot_has_no_positions_or_funding(self):
        """Test spot accounts report no positions or funding."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock()

        assert await adapter.fetch_open_positions() == []
        assert await adapter.fetch_funding_history("BTCUSDT", 10) == []
        adapter._request.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_parse_balances(self):
        """Test spot balances."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={"balances": [
            {"asset": "USDT", "free": "10", "locked": "5"},
            {"asset": "BTC", "free": "0", "locked": "0"},
        ]})

        balances = await adapter.fetch_balances()

        assert len(balances) == 1
        assert balances[0].total == Decimal("15")
        assert balances[0].account_type == "SPOT"

    @pytest.mark.asyncio
    async def test_current_price(self):
        """Test ticker price parsing."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        adapter._request = AsyncMock(return_value={"symbol": "BTCUSDT", "price": "41000"})

        assert await adapter.get_current_price("BTCUSDT") == Decimal("41000")

    @pytest.mark.asyncio
    async def test_full_page_keeps_shared_millisecond(self):
        """Test trades sharing the last millisecond of a full page are all ingested."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        trades = [
            {"id": "1", "time": NOW_MS + 1000},
            {"id": "2", "time": NOW_MS + 2000},
            {"id": "3", "time": NOW_MS + 2000},
            {"id": "4", "time": NOW_MS + 3000},
        ]
        for trade in trades:
            trade.update({"symbol": "BTCUSDT", "isBuyer": True, "qty": "1", "price": "100"})
        adapter._request = AsyncMock(side_effect=toobit_trades_api(trades))

        result = await TradeIngestionPipeline(adapter).fetch_all_trades(page_size=2)

        assert [t.execution_id for t in result.trades] == ["1", "2", "3", "4"]
        assert result.status == IngestionStatus.SUCCESS
        same_ms_query = adapter._request.call_args_list[1].args[2]
        assert same_ms_query["startTime"] == same_ms_query["endTime"] == NOW_MS + 2000

    @pytest.mark.asyncio
    async def test_page_size_above_limit_is_clamped(self):
        """Test a page size above 1000 still walks the whole history."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")
        trades = [
            {"id": str(n), "time": NOW_MS + n, "symbol": "BTCUSDT",
             "isBuyer": True, "qty": "1", "price": "100"}
            for n in range(1500)
        ]
        adapter._request = AsyncMock(side_effect=toobit_trades_api(trades))

        result = await TradeIngestionPipeline(adapter).fetch_all_trades(page_size=5000, hard_cap=5000)

        assert adapter.max_page_size == 1000
        assert len(result.trades) == 1500
        assert result.status == IngestionStatus.SUCCESS
        assert all(
            call.args[2]["limit"] == 1000 for call in adapter._request.call_args_list
        )

    @pytest.mark.asyncio
    async def test_no_exchange_closed_pnl(self):
        """Test spot accounts report no closed P&L."""
        adapter = ToobitAdapter(api_key="key", api_secret="secret")

        assert await adapter.fetch_closed_pnl() is None


# ============================================================
# RUN TESTS
# ============================================================

if __name__ == "__main__":
    pytest.main([__file__, "-v"])
