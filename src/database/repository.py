"""
Repository classes for snapshot history, rules and fetch logs.
"""

import sqlite3
from datetime import datetime, timedelta
from typing import Optional

from src.errors import PersistenceFailure
from .connection import Database
from .models import (
    AlertRule,
    ChangeType,
    ScrapingLog,
    ScrapingResult,
    StockSnapshot,
    StockUpdate,
)


def _ts(value: datetime) -> str:
    """Serialize a timestamp so string order matches time order."""
    return value.isoformat(timespec="microseconds")


def _parse_ts(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


_UPDATE_COLUMNS = """
    su.id AS update_id, su.change_type, su.change_amount, su.change_percent,
    su.timestamp AS update_timestamp,
    c.id AS c_id, c.symbol AS c_symbol, c.company_name AS c_company_name,
    c.percent_change AS c_percent_change, c.price AS c_price,
    c.volume AS c_volume, c.market_cap AS c_market_cap, c.rank AS c_rank,
    c.timestamp AS c_timestamp,
    p.id AS p_id, p.symbol AS p_symbol, p.company_name AS p_company_name,
    p.percent_change AS p_percent_change, p.price AS p_price,
    p.volume AS p_volume, p.market_cap AS p_market_cap, p.rank AS p_rank,
    p.timestamp AS p_timestamp
"""


class StockRepository:
    """Snapshot history: transactional appends and history queries."""

    def __init__(self, db: Database):
        self.db = db

    def append_transactional(
        self, result: ScrapingResult, updates: list[StockUpdate]
    ) -> int:
        """
        Persist a fetched batch, its updates and the fetch log atomically.

        Args:
            result: Successful fetch result holding the batch
            updates: Update records classified against prior history

        Returns:
            Number of snapshot rows written

        Raises:
            PersistenceFailure: If any write fails; nothing is kept
        """
        try:
            with self.db.transaction() as cursor:
                self._insert_log(cursor, result)

                stock_ids: dict[str, int] = {}
                for stock in result.stocks:
                    cursor.execute(
                        """
                        INSERT INTO stocks
                        (symbol, company_name, percent_change, price, volume,
                         market_cap, rank, timestamp)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            stock.symbol,
                            stock.company_name,
                            stock.percent_change,
                            stock.price,
                            stock.volume,
                            stock.market_cap,
                            stock.rank,
                            _ts(stock.timestamp),
                        ),
                    )
                    stock_ids[stock.symbol] = cursor.lastrowid

                for update in updates:
                    cursor.execute(
                        """
                        INSERT INTO stock_updates
                        (stock_id, previous_stock_id, change_type,
                         change_amount, change_percent, timestamp)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            stock_ids[update.symbol],
                            update.previous.id if update.previous else None,
                            update.change_type.value,
                            update.change_amount,
                            update.change_percent,
                            _ts(update.timestamp),
                        ),
                    )
        except (sqlite3.Error, KeyError) as e:
            raise PersistenceFailure(f"Failed to save snapshot batch: {e}") from e

        return len(result.stocks)

    def log_failure(self, result: ScrapingResult) -> None:
        """Record a failed fetch attempt."""
        try:
            with self.db.transaction() as cursor:
                self._insert_log(cursor, result)
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to save scraping log: {e}") from e

    def _insert_log(self, cursor: sqlite3.Cursor, result: ScrapingResult) -> None:
        cursor.execute(
            """
            INSERT INTO scraping_logs
            (success, total_stocks, error_message, execution_time_ms, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                1 if result.success else 0,
                result.total_stocks,
                result.error,
                result.execution_time_ms,
                _ts(result.timestamp),
            ),
        )

    def latest_timestamp(self) -> Optional[datetime]:
        """Timestamp of the most recent persisted batch."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT MAX(timestamp) AS ts FROM stocks")
        row = cursor.fetchone()
        return _parse_ts(row["ts"]) if row else None

    def latest(self, limit: int = 50) -> list[StockSnapshot]:
        """Rows of the most recent batch, ordered by rank."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM stocks
            WHERE timestamp = (SELECT MAX(timestamp) FROM stocks)
            ORDER BY rank ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_stock(row) for row in cursor.fetchall()]

    def history(self, symbol: str, limit: int = 100) -> list[StockSnapshot]:
        """Rows for one symbol, most recent first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM stocks
            WHERE symbol = ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            (symbol, limit),
        )
        return [self._row_to_stock(row) for row in cursor.fetchall()]

    def most_recent_before(
        self, symbol: str, timestamp: datetime
    ) -> Optional[StockSnapshot]:
        """Nearest persisted row for symbol strictly before timestamp."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            SELECT * FROM stocks
            WHERE symbol = ? AND timestamp < ?
            ORDER BY timestamp DESC
            LIMIT 1
            """,
            (symbol, _ts(timestamp)),
        )
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_stock(row)

    def latest_updates(self, limit: int = 100) -> list[StockUpdate]:
        """Update records produced by the most recent batch."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            f"""
            SELECT {_UPDATE_COLUMNS}
            FROM stock_updates su
            JOIN stocks c ON su.stock_id = c.id
            LEFT JOIN stocks p ON su.previous_stock_id = p.id
            WHERE c.timestamp = (SELECT MAX(timestamp) FROM stocks)
            ORDER BY c.rank ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_update(row) for row in cursor.fetchall()]

    def recent_updates(self, limit: int = 100) -> list[StockUpdate]:
        """Update records across batches, most recent first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            f"""
            SELECT {_UPDATE_COLUMNS}
            FROM stock_updates su
            JOIN stocks c ON su.stock_id = c.id
            LEFT JOIN stocks p ON su.previous_stock_id = p.id
            ORDER BY su.timestamp DESC, c.rank ASC
            LIMIT ?
            """,
            (limit,),
        )
        return [self._row_to_update(row) for row in cursor.fetchall()]

    def recent_logs(self, limit: int = 20) -> list[ScrapingLog]:
        """Fetch attempts, most recent first."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            "SELECT * FROM scraping_logs ORDER BY timestamp DESC, id DESC LIMIT ?",
            (limit,),
        )
        return [
            ScrapingLog(
                id=row["id"],
                success=bool(row["success"]),
                total_stocks=row["total_stocks"],
                error_message=row["error_message"],
                execution_time_ms=row["execution_time_ms"],
                timestamp=_parse_ts(row["timestamp"]),
            )
            for row in cursor.fetchall()
        ]

    def prune(self, older_than_days: int, now: Optional[datetime] = None) -> dict:
        """
        Delete history older than the retention window.

        Args:
            older_than_days: Retention window in days
            now: Reference time, defaults to the current time

        Returns:
            Row counts deleted per table
        """
        cutoff = _ts((now or datetime.now()) - timedelta(days=older_than_days))
        try:
            with self.db.transaction() as cursor:
                cursor.execute(
                    "DELETE FROM stock_updates WHERE timestamp < ?", (cutoff,)
                )
                updates = cursor.rowcount
                cursor.execute("DELETE FROM stocks WHERE timestamp < ?", (cutoff,))
                stocks = cursor.rowcount
                cursor.execute(
                    "DELETE FROM scraping_logs WHERE timestamp < ?", (cutoff,)
                )
                logs = cursor.rowcount
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to prune history: {e}") from e

        return {"stocks": stocks, "stock_updates": updates, "scraping_logs": logs}

    def _row_to_stock(self, row, prefix: str = "") -> StockSnapshot:
        """Convert database row to StockSnapshot."""
        return StockSnapshot(
            id=row[f"{prefix}id"],
            symbol=row[f"{prefix}symbol"],
            company_name=row[f"{prefix}company_name"],
            percent_change=row[f"{prefix}percent_change"],
            price=row[f"{prefix}price"],
            volume=row[f"{prefix}volume"],
            market_cap=row[f"{prefix}market_cap"],
            rank=row[f"{prefix}rank"],
            timestamp=_parse_ts(row[f"{prefix}timestamp"]),
        )

    def _row_to_update(self, row) -> StockUpdate:
        """Convert joined update row to StockUpdate."""
        previous = None
        if row["p_id"] is not None:
            previous = self._row_to_stock(row, prefix="p_")
        return StockUpdate(
            id=row["update_id"],
            current=self._row_to_stock(row, prefix="c_"),
            previous=previous,
            change_type=ChangeType(row["change_type"]),
            change_amount=row["change_amount"],
            change_percent=row["change_percent"],
            timestamp=_parse_ts(row["update_timestamp"]),
        )


class AlertRuleRepository:
    """CRUD operations for alert rules."""

    def __init__(self, db: Database):
        self.db = db

    def create(self, rule: AlertRule) -> AlertRule:
        """Create a new rule."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            INSERT INTO alert_rules
            (symbol, min_percent_change, max_percent_change, min_volume, enabled)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                rule.symbol,
                rule.min_percent_change,
                rule.max_percent_change,
                rule.min_volume,
                1 if rule.enabled else 0,
            ),
        )
        self.db.connection.commit()
        rule.id = cursor.lastrowid
        return rule

    def get_by_id(self, rule_id: int) -> Optional[AlertRule]:
        """Get rule by ID."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_rules WHERE id = ?", (rule_id,))
        row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_rule(row)

    def list_all(self) -> list[AlertRule]:
        """List all rules, newest first."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_rules ORDER BY created_at DESC, id DESC")
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def get_active_rules(self) -> list[AlertRule]:
        """Get only enabled rules."""
        cursor = self.db.connection.cursor()
        cursor.execute("SELECT * FROM alert_rules WHERE enabled = 1 ORDER BY id")
        return [self._row_to_rule(row) for row in cursor.fetchall()]

    def update(self, rule: AlertRule) -> None:
        """Update rule thresholds and state."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE alert_rules
            SET symbol = ?, min_percent_change = ?, max_percent_change = ?,
                min_volume = ?, enabled = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (
                rule.symbol,
                rule.min_percent_change,
                rule.max_percent_change,
                rule.min_volume,
                1 if rule.enabled else 0,
                rule.id,
            ),
        )
        self.db.connection.commit()

    def set_enabled(self, rule_id: int, enabled: bool) -> bool:
        """Enable or disable a rule. Returns False if it doesn't exist."""
        cursor = self.db.connection.cursor()
        cursor.execute(
            """
            UPDATE alert_rules
            SET enabled = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
            """,
            (1 if enabled else 0, rule_id),
        )
        self.db.connection.commit()
        return cursor.rowcount > 0

    def delete(self, rule_id: int) -> bool:
        """Delete a rule. Returns False if it doesn't exist."""
        cursor = self.db.connection.cursor()
        cursor.execute("DELETE FROM alert_rules WHERE id = ?", (rule_id,))
        self.db.connection.commit()
        return cursor.rowcount > 0

    def _row_to_rule(self, row) -> AlertRule:
        """Convert database row to AlertRule."""
        return AlertRule(
            id=row["id"],
            symbol=row["symbol"],
            min_percent_change=row["min_percent_change"],
            max_percent_change=row["max_percent_change"],
            min_volume=row["min_volume"],
            enabled=bool(row["enabled"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )
