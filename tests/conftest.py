"""
Pytest configuration and shared fixtures.
"""

import pytest

from src.database.connection import Database


@pytest.fixture
def db():
    """Create in-memory database with schema."""
    db = Database(":memory:")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def sample_quotes():
    """Sample Yahoo Finance screener quotes."""
    return [
        {
            "symbol": "AAPL",
            "shortName": "Apple Inc.",
            "preMarketPrice": 182.5,
            "preMarketChangePercent": 4.2,
            "preMarketVolume": 1_500_000,
            "regularMarketPrice": 175.0,
            "marketCap": 2_800_000_000_000,
        },
        {
            "symbol": "tsla",
            "longName": "Tesla, Inc.",
            "regularMarketPrice": 250.0,
            "regularMarketChangePercent": 3.1,
            "regularMarketVolume": 900_000,
            "marketCap": 790_000_000_000,
        },
    ]
