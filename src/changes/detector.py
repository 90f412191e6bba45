"""
Change detection between consecutive snapshot batches.

Each symbol in a fresh batch is compared against its nearest persisted
predecessor and classified into a typed update record. The detector also
remembers the last batch that was broadcast so callers can ask whether a new
batch differs from it in a way worth sending.
"""

import logging
from typing import Optional, Protocol

from src.database.models import ChangeType, StockSnapshot, StockUpdate

logger = logging.getLogger(__name__)

# Significance thresholds for the broadcast predicate
PRICE_EPSILON = 0.01
PERCENT_EPSILON = 0.01
VOLUME_EPSILON = 1000


class SnapshotHistory(Protocol):
    """Lookup of persisted snapshots used for diffing."""

    def most_recent_before(self, symbol, timestamp) -> Optional[StockSnapshot]:
        ...


def classify(
    previous: Optional[StockSnapshot], current: StockSnapshot
) -> Optional[StockUpdate]:
    """
    Classify the change for one symbol.

    Args:
        previous: Nearest preceding snapshot, or None if never seen
        current: Snapshot from the current batch

    Returns:
        StockUpdate, or None when price and rank are both unchanged
    """
    if previous is None:
        return StockUpdate(
            current=current,
            change_type=ChangeType.NEW,
            timestamp=current.timestamp,
        )

    if current.price > previous.price:
        change_type = ChangeType.PRICE_INCREASE
    elif current.price < previous.price:
        change_type = ChangeType.PRICE_DECREASE
    elif current.rank != previous.rank:
        change_type = ChangeType.RANK_CHANGE
    else:
        return None

    change_amount = current.price - previous.price
    change_percent = None
    if previous.price:
        change_percent = change_amount / previous.price * 100

    return StockUpdate(
        current=current,
        previous=previous,
        change_type=change_type,
        change_amount=change_amount,
        change_percent=change_percent,
        timestamp=current.timestamp,
    )


class ChangeDetector:
    """Classifies batches against persisted history."""

    def __init__(self, history: SnapshotHistory):
        """
        Args:
            history: Persistence lookup, usually a StockRepository
        """
        self.history = history
        self._last_broadcast: Optional[dict[str, StockSnapshot]] = None

    def detect(self, stocks: list[StockSnapshot]) -> list[StockUpdate]:
        """Classify every snapshot in the batch, in batch order."""
        updates = []
        for stock in stocks:
            previous = self.history.most_recent_before(stock.symbol, stock.timestamp)
            update = classify(previous, stock)
            if update is not None:
                updates.append(update)

        logger.debug(f"Detected {len(updates)} changes across {len(stocks)} stocks")
        return updates

    def has_significant_changes(self, stocks: list[StockSnapshot]) -> bool:
        """
        Whether the batch differs meaningfully from the last broadcast one.

        True on first load, when the symbol set changed, or when any symbol
        moved beyond the price, percent or volume epsilons, changed rank or
        changed company name.
        """
        if self._last_broadcast is None:
            return True

        current = {stock.symbol: stock for stock in stocks}
        if current.keys() != self._last_broadcast.keys():
            return True

        for symbol, stock in current.items():
            last = self._last_broadcast[symbol]
            if abs(stock.price - last.price) > PRICE_EPSILON:
                return True
            if abs(stock.percent_change - last.percent_change) > PERCENT_EPSILON:
                return True
            if abs(stock.volume - last.volume) > VOLUME_EPSILON:
                return True
            if stock.rank != last.rank:
                return True
            if stock.company_name != last.company_name:
                return True

        return False

    def remember_broadcast(self, stocks: list[StockSnapshot]) -> None:
        """Record the batch that was just sent to clients."""
        self._last_broadcast = {stock.symbol: stock for stock in stocks}

    def reset(self) -> None:
        """Forget the last broadcast batch; the next check counts as first load."""
        self._last_broadcast = None
