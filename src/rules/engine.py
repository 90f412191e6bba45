"""
Rule evaluation engine.
"""

import logging

from src.database.models import AlertRule, StockSnapshot, StockUpdate
from .types import (
    DEFAULT_HIGH_GAIN_THRESHOLD,
    AlertEvent,
    AlertType,
    CustomRule,
    HighGainRule,
    HighVolumeRule,
    NewTopGainerRule,
    PriceSpikeRule,
    RankImprovementRule,
    Rule,
    TopPerformerRule,
)

# Re-export for convenience
__all__ = ["RuleEngine", "AlertEvent", "AlertType"]

logger = logging.getLogger(__name__)


class RuleEngine:
    """Evaluates built-in and user rules against one cycle's data."""

    def __init__(self, high_gain_threshold: float = DEFAULT_HIGH_GAIN_THRESHOLD):
        """
        Args:
            high_gain_threshold: Percent change that triggers HIGH_GAIN
        """
        self.builtin_rules: list[Rule] = [
            HighGainRule(threshold=high_gain_threshold),
            PriceSpikeRule(),
            NewTopGainerRule(),
            RankImprovementRule(),
            HighVolumeRule(),
        ]
        self.top_performers = TopPerformerRule()

    def evaluate(
        self,
        stocks: list[StockSnapshot],
        updates: list[StockUpdate],
        rules: list[AlertRule],
    ) -> list[AlertEvent]:
        """
        Evaluate all rules for one cycle.

        Built-in rules run per update record, custom rules per snapshot,
        top performers per snapshot. Nothing is deduplicated: one symbol may
        raise several alert types in the same cycle.

        Args:
            stocks: Current batch
            updates: Update records for this batch
            rules: Active user rules

        Returns:
            Ordered list of triggered alerts
        """
        by_symbol = {stock.symbol: stock for stock in stocks}
        updates_by_symbol = {update.symbol: update for update in updates}
        alerts: list[AlertEvent] = []

        for update in updates:
            stock = by_symbol.get(update.symbol)
            if stock is None:
                continue
            for rule in self.builtin_rules:
                alert = rule.evaluate(stock, update)
                if alert is not None:
                    alerts.append(alert)

        custom_rules = [CustomRule(rule) for rule in rules if rule.enabled]
        for stock in stocks:
            for custom in custom_rules:
                alert = custom.evaluate(stock, updates_by_symbol.get(stock.symbol))
                if alert is not None:
                    alerts.append(alert)

        alerts.extend(self.top_performers.evaluate(stocks, updates_by_symbol))

        logger.debug(
            f"Evaluated {len(self.builtin_rules)} built-in and {len(custom_rules)} "
            f"custom rules: {len(alerts)} alerts"
        )
        return alerts
