"""
Top gainers snapshot source backed by the Yahoo Finance screener.
"""

import logging
import math
import time
from datetime import datetime
from typing import Any, Optional

import yfinance as yf

from src.database.models import ScrapingResult, StockSnapshot
from src.errors import SourceUnavailable

logger = logging.getLogger(__name__)


def format_market_cap(value: Optional[float]) -> str:
    """Format a market cap as compact text, e.g. 1.2B."""
    if value is None or not math.isfinite(value) or value <= 0:
        return "-"
    for divisor, suffix in ((1e12, "T"), (1e9, "B"), (1e6, "M"), (1e3, "K")):
        if value >= divisor:
            return f"{value / divisor:.2f}{suffix}"
    return f"{value:.0f}"


def _number(quote: dict[str, Any], *keys: str) -> Optional[float]:
    """First finite numeric value among keys."""
    for key in keys:
        value = quote.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        if math.isfinite(value):
            return float(value)
    return None


class StockScreenerFetcher:
    """Fetches one ranked batch of top gainers."""

    def __init__(
        self,
        screener: str = "day_gainers",
        max_stocks: int = 50,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        self.screener = screener
        self.max_stocks = max_stocks
        self.max_retries = max_retries
        self.retry_delay = retry_delay

    def fetch(self) -> ScrapingResult:
        """
        Fetch the current gainers batch.

        Returns:
            Successful ScrapingResult with contiguous 1-based ranks

        Raises:
            SourceUnavailable: If the screener fails or yields no valid rows
        """
        started = time.monotonic()
        quotes = self._fetch_quotes()
        timestamp = datetime.now()

        stocks = self.parse_quotes(quotes, timestamp)
        if not stocks:
            raise SourceUnavailable("No valid stock data could be parsed")

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Fetched {len(stocks)} stocks in {elapsed_ms}ms")
        return ScrapingResult(
            success=True,
            stocks=stocks,
            timestamp=timestamp,
            execution_time_ms=elapsed_ms,
        )

    def _fetch_quotes(self) -> list[dict[str, Any]]:
        """Query the screener, retrying transient failures."""
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = yf.screen(self.screener, count=self.max_stocks)
                quotes = (response or {}).get("quotes")
                if not quotes:
                    raise SourceUnavailable(
                        f"Screener '{self.screener}' returned no quotes"
                    )
                return quotes
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Screener request failed (attempt {attempt}/{self.max_retries}): {e}"
                )
                if attempt < self.max_retries:
                    time.sleep(self.retry_delay)

        if isinstance(last_error, SourceUnavailable):
            raise last_error
        raise SourceUnavailable(f"Screener request failed: {last_error}") from last_error

    def parse_quotes(
        self, quotes: list[dict[str, Any]], timestamp: datetime
    ) -> list[StockSnapshot]:
        """
        Convert screener quotes into ranked snapshots.

        Quotes without a symbol, with non-finite numbers or a non-positive
        price are skipped. Ranks follow screener order and stay contiguous.
        """
        stocks: list[StockSnapshot] = []
        seen: set[str] = set()

        for quote in quotes:
            if len(stocks) >= self.max_stocks:
                break

            symbol = str(quote.get("symbol") or "").strip().upper()
            if not symbol or symbol in seen:
                continue

            percent_change = _number(
                quote, "preMarketChangePercent", "regularMarketChangePercent"
            )
            price = _number(quote, "preMarketPrice", "regularMarketPrice")
            volume = _number(quote, "preMarketVolume", "regularMarketVolume")

            if percent_change is None or price is None or volume is None:
                logger.debug(f"Skipping {symbol}: invalid numeric data")
                continue
            if price <= 0 or volume < 0:
                logger.debug(f"Skipping {symbol}: price or volume out of range")
                continue

            seen.add(symbol)
            stocks.append(
                StockSnapshot(
                    symbol=symbol,
                    company_name=quote.get("shortName") or quote.get("longName") or symbol,
                    percent_change=percent_change,
                    price=price,
                    volume=int(volume),
                    market_cap=format_market_cap(_number(quote, "marketCap")),
                    rank=len(stocks) + 1,
                    timestamp=timestamp,
                )
            )

        return stocks
