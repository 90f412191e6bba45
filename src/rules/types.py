"""
Alert rule types.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from src.database.models import AlertRule, ChangeType, StockSnapshot, StockUpdate

# Built-in thresholds
DEFAULT_HIGH_GAIN_THRESHOLD = 20.0
PRICE_SPIKE_PERCENT = 15.0
NEW_TOP_GAINER_RANK = 10
SIGNIFICANT_RANK_CHANGE = 10
HIGH_VOLUME = 1_000_000
TOP_PERFORMER_RANK = 3


class AlertType(str, Enum):
    """Alert categories sent to clients."""

    HIGH_GAIN = "HIGH_GAIN"
    PRICE_SPIKE = "PRICE_SPIKE"
    NEW_TOP_GAINER = "NEW_TOP_GAINER"
    RANK_IMPROVEMENT = "RANK_IMPROVEMENT"
    HIGH_VOLUME = "HIGH_VOLUME"
    TOP_PERFORMER = "TOP_PERFORMER"
    CUSTOM_RULE = "CUSTOM_RULE"


@dataclass(frozen=True)
class AlertEvent:
    """A triggered alert, only ever broadcast, never stored."""

    stock: StockSnapshot
    alert_type: AlertType
    message: str
    update: Optional[StockUpdate] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "stock": self.stock.to_dict(),
            "update": self.update.to_dict() if self.update else None,
            "alertType": self.alert_type.value,
            "message": self.message,
        }


def format_volume(volume: float) -> str:
    """Format volume as 1.2B / 3.4M / 5.6K."""
    if volume >= 1_000_000_000:
        return f"{volume / 1_000_000_000:.1f}B"
    if volume >= 1_000_000:
        return f"{volume / 1_000_000:.1f}M"
    if volume >= 1_000:
        return f"{volume / 1_000:.1f}K"
    return str(int(volume))


class Rule(ABC):
    """Base class for rules evaluated against one update record."""

    alert_type: AlertType

    @abstractmethod
    def evaluate(
        self, stock: StockSnapshot, update: StockUpdate
    ) -> Optional[AlertEvent]:
        """
        Evaluate the rule.

        Args:
            stock: Current snapshot for the symbol
            update: This cycle's update record for the symbol

        Returns:
            AlertEvent if triggered, otherwise None
        """
        pass

    def _alert(
        self, stock: StockSnapshot, update: Optional[StockUpdate], message: str
    ) -> AlertEvent:
        return AlertEvent(
            stock=stock, update=update, alert_type=self.alert_type, message=message
        )


class HighGainRule(Rule):
    """Percent change at or above the global threshold."""

    alert_type = AlertType.HIGH_GAIN

    def __init__(self, threshold: float = DEFAULT_HIGH_GAIN_THRESHOLD):
        self.threshold = threshold

    def evaluate(self, stock, update):
        if stock.percent_change < self.threshold:
            return None
        return self._alert(
            stock,
            update,
            f"{stock.symbol} has gained {stock.percent_change:.2f}% in premarket trading",
        )


class PriceSpikeRule(Rule):
    """Cycle-over-cycle price increase above 15%."""

    alert_type = AlertType.PRICE_SPIKE

    def evaluate(self, stock, update):
        if update.change_type != ChangeType.PRICE_INCREASE:
            return None
        if update.change_percent is None or update.change_percent <= PRICE_SPIKE_PERCENT:
            return None
        return self._alert(
            stock,
            update,
            f"{stock.symbol} price spiked {update.change_percent:.2f}% to ${stock.price:.2f}",
        )


class NewTopGainerRule(Rule):
    """Symbol seen for the first time inside the top 10."""

    alert_type = AlertType.NEW_TOP_GAINER

    def evaluate(self, stock, update):
        if update.change_type != ChangeType.NEW or stock.rank > NEW_TOP_GAINER_RANK:
            return None
        return self._alert(
            stock,
            update,
            f"{stock.symbol} entered top {NEW_TOP_GAINER_RANK} gainers at rank "
            f"{stock.rank} with {stock.percent_change:.2f}% gain",
        )


class RankImprovementRule(Rule):
    """Rank moved up by 10 or more positions."""

    alert_type = AlertType.RANK_IMPROVEMENT

    def evaluate(self, stock, update):
        if update.change_type != ChangeType.RANK_CHANGE or update.previous is None:
            return None
        if update.previous.rank - update.current.rank < SIGNIFICANT_RANK_CHANGE:
            return None
        return self._alert(
            stock,
            update,
            f"{stock.symbol} jumped from rank {update.previous.rank} to {update.current.rank}",
        )


class HighVolumeRule(Rule):
    """Volume above one million shares."""

    alert_type = AlertType.HIGH_VOLUME

    def evaluate(self, stock, update):
        if stock.volume <= HIGH_VOLUME:
            return None
        return self._alert(
            stock,
            update,
            f"{stock.symbol} trading with high volume: {format_volume(stock.volume)}",
        )


class TopPerformerRule:
    """Top 3 of the current batch, re-emitted every cycle."""

    alert_type = AlertType.TOP_PERFORMER

    def evaluate(
        self, stocks: list[StockSnapshot], updates: dict[str, StockUpdate]
    ) -> list[AlertEvent]:
        top = sorted(
            (s for s in stocks if s.rank <= TOP_PERFORMER_RANK), key=lambda s: s.rank
        )
        return [
            AlertEvent(
                stock=stock,
                update=updates.get(stock.symbol),
                alert_type=self.alert_type,
                message=(
                    f"{stock.symbol} is #{stock.rank} premarket gainer with "
                    f"{stock.percent_change:.2f}% gain"
                ),
            )
            for stock in top
        ]


class CustomRule:
    """
    User-defined thresholds.

    Conditions are OR-ed and checked in order (min percent, max percent,
    min volume); the first one that holds decides the message.
    """

    alert_type = AlertType.CUSTOM_RULE

    def __init__(self, rule: AlertRule):
        self.rule = rule

    def evaluate(
        self, stock: StockSnapshot, update: Optional[StockUpdate]
    ) -> Optional[AlertEvent]:
        rule = self.rule
        if rule.symbol and rule.symbol != stock.symbol:
            return None

        message = None
        if (
            rule.min_percent_change is not None
            and stock.percent_change >= rule.min_percent_change
        ):
            message = (
                f"{stock.symbol} exceeded minimum gain threshold of "
                f"{rule.min_percent_change}%"
            )
        elif (
            rule.max_percent_change is not None
            and stock.percent_change <= rule.max_percent_change
        ):
            message = (
                f"{stock.symbol} below maximum gain threshold of "
                f"{rule.max_percent_change}%"
            )
        elif rule.min_volume is not None and stock.volume >= rule.min_volume:
            message = (
                f"{stock.symbol} exceeded minimum volume threshold of "
                f"{format_volume(rule.min_volume)}"
            )

        if message is None:
            return None
        return AlertEvent(
            stock=stock, update=update, alert_type=self.alert_type, message=message
        )
