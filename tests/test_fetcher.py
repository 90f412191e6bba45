"""
Data fetcher tests.
Tests for the Yahoo Finance screener integration.
"""

from datetime import datetime
from unittest.mock import patch

import pytest

from src.data.fetcher import StockScreenerFetcher, format_market_cap
from src.errors import SourceUnavailable

NOW = datetime(2024, 1, 2, 8, 0)


class TestFormatMarketCap:
    """Test market cap formatting."""

    def test_suffixes(self):
        """Should pick the largest fitting suffix."""
        assert format_market_cap(2_800_000_000_000) == "2.80T"
        assert format_market_cap(1_230_000_000) == "1.23B"
        assert format_market_cap(45_600_000) == "45.60M"
        assert format_market_cap(7_500) == "7.50K"
        assert format_market_cap(12) == "12"

    def test_missing_value(self):
        """Should render missing or bad values as a dash."""
        assert format_market_cap(None) == "-"
        assert format_market_cap(float("nan")) == "-"
        assert format_market_cap(0) == "-"


class TestParseQuotes:
    """Test conversion of screener quotes into snapshots."""

    @pytest.fixture
    def fetcher(self):
        return StockScreenerFetcher(max_stocks=50, retry_delay=0)

    def test_prefers_premarket_fields(self, fetcher, sample_quotes):
        """Should use pre-market values when present."""
        stocks = fetcher.parse_quotes(sample_quotes, NOW)

        aapl = stocks[0]
        assert aapl.symbol == "AAPL"
        assert aapl.company_name == "Apple Inc."
        assert aapl.price == 182.5
        assert aapl.percent_change == 4.2
        assert aapl.volume == 1_500_000
        assert aapl.market_cap == "2.80T"
        assert aapl.timestamp == NOW

    def test_falls_back_to_regular_market(self, fetcher, sample_quotes):
        """Should fall back to regular-market values and long names."""
        tsla = fetcher.parse_quotes(sample_quotes, NOW)[1]

        assert tsla.symbol == "TSLA"
        assert tsla.company_name == "Tesla, Inc."
        assert tsla.price == 250.0
        assert tsla.volume == 900_000

    def test_ranks_are_contiguous(self, fetcher, sample_quotes):
        """Should keep ranks 1..n after skipping invalid rows."""
        quotes = [
            {"symbol": "BAD", "regularMarketPrice": float("nan")},
            sample_quotes[0],
            {"regularMarketPrice": 10.0},
            {**sample_quotes[0]},
            sample_quotes[1],
        ]

        stocks = fetcher.parse_quotes(quotes, NOW)

        assert [s.symbol for s in stocks] == ["AAPL", "TSLA"]
        assert [s.rank for s in stocks] == [1, 2]

    def test_skips_non_positive_price(self, fetcher):
        """Should drop rows with a zero price."""
        quotes = [
            {
                "symbol": "ZERO",
                "regularMarketPrice": 0,
                "regularMarketChangePercent": 1.0,
                "regularMarketVolume": 10,
            }
        ]
        assert fetcher.parse_quotes(quotes, NOW) == []

    def test_respects_max_stocks(self, sample_quotes):
        """Should stop after max_stocks rows."""
        fetcher = StockScreenerFetcher(max_stocks=1)
        assert len(fetcher.parse_quotes(sample_quotes, NOW)) == 1

    def test_company_name_defaults_to_symbol(self, fetcher):
        """Should use the symbol when no name is given."""
        quotes = [
            {
                "symbol": "XYZ",
                "regularMarketPrice": 3.0,
                "regularMarketChangePercent": 1.0,
                "regularMarketVolume": 10,
            }
        ]
        assert fetcher.parse_quotes(quotes, NOW)[0].company_name == "XYZ"


class TestFetch:
    """Test screener requests with retries."""

    @pytest.fixture
    def fetcher(self):
        return StockScreenerFetcher(max_retries=3, retry_delay=0)

    def test_fetch_success(self, fetcher, sample_quotes):
        """Should return a successful result."""
        with patch("yfinance.screen", return_value={"quotes": sample_quotes}) as screen:
            result = fetcher.fetch()

        screen.assert_called_once_with("day_gainers", count=50)
        assert result.success is True
        assert result.total_stocks == 2
        assert result.error is None

    def test_retries_then_succeeds(self, fetcher, sample_quotes):
        """Should retry transient failures."""
        responses = [ConnectionError("reset"), {"quotes": sample_quotes}]
        with patch("yfinance.screen", side_effect=responses) as screen:
            result = fetcher.fetch()

        assert screen.call_count == 2
        assert result.total_stocks == 2

    def test_gives_up_after_max_retries(self, fetcher):
        """Should raise SourceUnavailable once retries are exhausted."""
        with patch("yfinance.screen", side_effect=ConnectionError("down")) as screen:
            with pytest.raises(SourceUnavailable):
                fetcher.fetch()

        assert screen.call_count == 3

    def test_empty_response(self, fetcher):
        """Should treat an empty screener response as unavailable."""
        with patch("yfinance.screen", return_value={"quotes": []}):
            with pytest.raises(SourceUnavailable):
                fetcher.fetch()

    def test_no_valid_rows(self, fetcher):
        """Should raise when every row is invalid."""
        with patch("yfinance.screen", return_value={"quotes": [{"symbol": "X"}]}):
            with pytest.raises(SourceUnavailable, match="No valid stock data"):
                fetcher.fetch()
