"""
Test Suite for Polygon.io REST Fetcher

Aggregates requests, cursor pagination, payload parsing and the health probe.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pandas as pd
import pytest

from data.fetchers.base_fetcher import RateLimitConfig, CircuitBreakerOpenError
from data.fetchers.polygon_io import PolygonFetcher, PolygonAPIError, _to_millis


# Mock data for testing
MOCK_AGGREGATES_RESPONSE = {
    "results": [
        {
            "o": 180.0,
            "h": 182.5,
            "l": 179.0,
            "c": 181.25,
            "v": 50000,
            "t": 1701432000000,  # 2023-12-01 12:00:00 UTC
            "n": 1000,
            "vw": 181.0
        },
        {
            "o": 181.25,
            "h": 183.0,
            "l": 180.5,
            "c": 182.50,
            "v": 48000,
            "t": 1701432060000,  # 2023-12-01 12:01:00 UTC
            "n": 950,
            "vw": 182.0
        }
    ],
    "status": "OK",
    "resultsCount": 2
}

MOCK_MARKET_STATUS_RESPONSE = {
    "market": "open",
    "serverTime": "2023-12-01T15:30:00.000Z",
    "exchanges": {
        "nasdaq": "open",
        "nyse": "open"
    }
}

START = datetime(2023, 12, 1, 12, 0, tzinfo=timezone.utc)
END = datetime(2023, 12, 1, 13, 0, tzinfo=timezone.utc)


class MockResponse:
    """Mock HTTP response for testing."""

    def __init__(self, status=200, json_data=None):
        self.status = status
        self._json_data = json_data

    async def json(self):
        if self._json_data is not None:
            return self._json_data
        raise ValueError("No JSON data")

    def raise_for_status(self):
        if self.status >= 400:
            raise aiohttp.ClientResponseError(MagicMock(), (), status=self.status, message="error")

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


@pytest.fixture
def polygon_fetcher():
    """Create PolygonFetcher instance for testing."""
    return PolygonFetcher(
        api_key="test_api_key",
        rate_limit_config=RateLimitConfig(requests_per_second=1000.0, burst_size=1000)
    )


class TestPolygonFetcher:
    """Test cases for PolygonFetcher class."""

    def test_initialization(self, polygon_fetcher):
        """Test fetcher initialization."""
        assert polygon_fetcher.api_key == "test_api_key"
        assert polygon_fetcher.base_url == "https://api.polygon.io"
        assert polygon_fetcher.session is None

    def test_base_url_override(self):
        fetcher = PolygonFetcher(api_key="k", base_url="http://proxy.local/")

        assert fetcher.base_url == "http://proxy.local"

    def test_to_millis(self):
        assert _to_millis(START) == 1701432000000
        assert _to_millis(datetime(2023, 12, 1, 12, 0)) == 1701432000000
        assert _to_millis("2023-12-01") == "2023-12-01"

    @pytest.mark.parametrize("interval,expected", [
        ("1min", (1, "minute")),
        ("5min", (5, "minute")),
        ("min", (1, "minute")),
        ("1hour", (1, "hour")),
        ("1day", (1, "day")),
        ("2week", (2, "week")),
    ])
    def test_parse_interval(self, polygon_fetcher, interval, expected):
        assert polygon_fetcher._parse_interval(interval) == expected

    def test_parse_invalid_interval(self, polygon_fetcher):
        with pytest.raises(ValueError):
            polygon_fetcher._parse_interval("1fortnight")

    @pytest.mark.asyncio
    async def test_fetch_aggregates(self, polygon_fetcher):
        """Test aggregates request and parsing."""
        with patch.object(polygon_fetcher, "_get_json", AsyncMock(return_value=MOCK_AGGREGATES_RESPONSE)) as mock_get:
            df = await polygon_fetcher.fetch_aggregates("AAPL", START, END)

        url = mock_get.await_args.args[0]
        params = mock_get.await_args.kwargs["params"]
        assert url == "https://api.polygon.io/v2/aggs/ticker/AAPL/range/1/minute/1701432000000/1701435600000"
        assert params["apiKey"] == "test_api_key"
        assert params["sort"] == "asc"
        assert params["limit"] == 50000

        assert isinstance(df, pd.DataFrame)
        assert len(df) == 2
        assert df.index[0] == pd.Timestamp(START)
        assert df.iloc[0]["close"] == 181.25
        assert df.iloc[1]["transactions"] == 950
        assert (df["symbol"] == "AAPL").all()

    @pytest.mark.asyncio
    async def test_pagination(self, polygon_fetcher):
        """Follows next_url until exhausted."""
        first = {"status": "OK", "results": MOCK_AGGREGATES_RESPONSE["results"][:1],
                 "next_url": "https://api.polygon.io/v2/aggs/ticker/AAPL/range/1/minute/x/y?cursor=abc"}
        second = {"status": "OK", "results": MOCK_AGGREGATES_RESPONSE["results"][1:]}

        with patch.object(polygon_fetcher, "_get_json", AsyncMock(side_effect=[first, second])) as mock_get:
            df = await polygon_fetcher.fetch_aggregates("AAPL", START, END)

        assert len(df) == 2
        second_call = mock_get.await_args_list[1]
        assert second_call.args[0].endswith("cursor=abc")
        assert second_call.kwargs["params"] == {"apiKey": "test_api_key"}

    @pytest.mark.asyncio
    async def test_delayed_status_accepted(self, polygon_fetcher):
        response = dict(MOCK_AGGREGATES_RESPONSE, status="DELAYED")

        with patch.object(polygon_fetcher, "_get_json", AsyncMock(return_value=response)):
            df = await polygon_fetcher.fetch_aggregates("AAPL", START, END)

        assert len(df) == 2

    @pytest.mark.asyncio
    async def test_error_status(self, polygon_fetcher):
        response = {"status": "ERROR", "error": "Unknown API Key"}

        with patch.object(polygon_fetcher, "_get_json", AsyncMock(return_value=response)):
            with pytest.raises(PolygonAPIError, match="Unknown API Key"):
                await polygon_fetcher.fetch_aggregates("AAPL", START, END)

    @pytest.mark.asyncio
    async def test_empty_results(self, polygon_fetcher):
        response = {"status": "OK", "resultsCount": 0}

        with patch.object(polygon_fetcher, "_get_json", AsyncMock(return_value=response)):
            df = await polygon_fetcher.fetch_aggregates("AAPL", START, END)

        assert df.empty

    @pytest.mark.asyncio
    async def test_fetch_historical(self, polygon_fetcher):
        with patch.object(polygon_fetcher, "fetch_aggregates", AsyncMock(return_value=pd.DataFrame())) as mock_agg:
            await polygon_fetcher.fetch_historical("AAPL", START, END, interval="5min")

        mock_agg.assert_awaited_once_with("AAPL", START, END, 5, "minute", adjusted=True)

    def test_parse_aggregates_dedups_and_sorts(self, polygon_fetcher):
        results = list(reversed(MOCK_AGGREGATES_RESPONSE["results"])) + [MOCK_AGGREGATES_RESPONSE["results"][0], {"o": 1}]

        df = polygon_fetcher._parse_aggregates(results, "AAPL")

        assert len(df) == 2
        assert df.index.is_monotonic_increasing

    @pytest.mark.asyncio
    async def test_health_check(self, polygon_fetcher):
        with patch.object(polygon_fetcher, "_get_json", AsyncMock(return_value=MOCK_MARKET_STATUS_RESPONSE)):
            result = await polygon_fetcher.health_check()

        assert result["status"] == "ok"
        assert result["market"] == "open"

    @pytest.mark.asyncio
    async def test_health_check_failure(self, polygon_fetcher):
        with patch.object(polygon_fetcher, "_get_json", AsyncMock(side_effect=CircuitBreakerOpenError("open"))):
            result = await polygon_fetcher.health_check()

        assert result["status"] == "error"


class TestGetJson:
    """Requests through the shared session"""

    @pytest.mark.asyncio
    async def test_successful_request(self, polygon_fetcher):
        session = MagicMock()
        session.get.return_value = MockResponse(json_data=MOCK_MARKET_STATUS_RESPONSE)
        polygon_fetcher.session = session

        data = await polygon_fetcher._get_json("https://api.polygon.io/v1/marketstatus/now", params={"apiKey": "k"})

        assert data == MOCK_MARKET_STATUS_RESPONSE
        assert polygon_fetcher.request_count == 1
        session.get.assert_called_once_with("https://api.polygon.io/v1/marketstatus/now", params={"apiKey": "k"})

    @pytest.mark.asyncio
    async def test_http_error_recorded(self, polygon_fetcher):
        session = MagicMock()
        session.get.return_value = MockResponse(status=500)
        polygon_fetcher.session = session

        with pytest.raises(aiohttp.ClientResponseError):
            await polygon_fetcher._get_json("https://api.polygon.io/v1/marketstatus/now")

        assert polygon_fetcher.error_count == 1
        assert polygon_fetcher.rate_limiter.consecutive_failures == 1
        assert polygon_fetcher.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_rejects(self, polygon_fetcher):
        polygon_fetcher.session = MagicMock()
        polygon_fetcher.circuit_breaker.allow_request = MagicMock(return_value=False)

        with pytest.raises(CircuitBreakerOpenError):
            await polygon_fetcher._get_json("https://api.polygon.io/v1/marketstatus/now")

        polygon_fetcher.session.get.assert_not_called()

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, polygon_fetcher):
        async with polygon_fetcher as fetcher:
            assert fetcher.session is not None

        assert polygon_fetcher.session is None
