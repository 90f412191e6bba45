"""
Data models for the pulse service.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class ChangeType(str, Enum):
    """Kinds of change between two snapshots of one symbol."""

    NEW = "NEW"
    PRICE_INCREASE = "PRICE_INCREASE"
    PRICE_DECREASE = "PRICE_DECREASE"
    RANK_CHANGE = "RANK_CHANGE"
    REMOVED = "REMOVED"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class StockSnapshot:
    """One symbol's market data at one fetch cycle."""

    symbol: str
    company_name: str
    percent_change: float
    price: float
    volume: int
    market_cap: str
    rank: int
    timestamp: datetime
    id: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "companyName": self.company_name,
            "percentChange": self.percent_change,
            "price": self.price,
            "volume": self.volume,
            "marketCap": self.market_cap,
            "rank": self.rank,
            "timestamp": _iso(self.timestamp),
        }


@dataclass(frozen=True)
class StockUpdate:
    """Classified change for one symbol, derived from two snapshots."""

    current: StockSnapshot
    change_type: ChangeType
    timestamp: datetime
    previous: Optional[StockSnapshot] = None
    change_amount: Optional[float] = None
    change_percent: Optional[float] = None
    id: Optional[int] = None

    @property
    def symbol(self) -> str:
        return self.current.symbol

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "previousData": self.previous.to_dict() if self.previous else None,
            "currentData": self.current.to_dict(),
            "changeType": self.change_type.value,
            "changeAmount": self.change_amount,
            "changePercent": self.change_percent,
            "timestamp": _iso(self.timestamp),
        }


@dataclass
class AlertRule:
    """User-defined alert rule. Unset thresholds are ignored."""

    symbol: Optional[str] = None
    min_percent_change: Optional[float] = None
    max_percent_change: Optional[float] = None
    min_volume: Optional[int] = None
    enabled: bool = True
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "minPercentChange": self.min_percent_change,
            "maxPercentChange": self.max_percent_change,
            "minVolume": self.min_volume,
            "enabled": self.enabled,
            "createdAt": _iso(self.created_at),
        }


@dataclass
class ScrapingResult:
    """Outcome of one snapshot fetch."""

    success: bool
    timestamp: datetime
    stocks: list[StockSnapshot] = field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: int = 0

    @property
    def total_stocks(self) -> int:
        return len(self.stocks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "timestamp": _iso(self.timestamp),
            "totalStocks": self.total_stocks,
            "error": self.error,
            "executionTimeMs": self.execution_time_ms,
        }


@dataclass
class ScrapingLog:
    """Persisted record of a fetch attempt."""

    success: bool
    total_stocks: int
    timestamp: datetime
    error_message: Optional[str] = None
    execution_time_ms: int = 0
    id: Optional[int] = None
