"""
SQLite database connection and schema management.
"""

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Optional


class Database:
    """SQLite database connection manager."""

    def __init__(self, db_path: str):
        """
        Initialize database connection.

        Args:
            db_path: Path to SQLite database file, or ":memory:" for in-memory DB.
        """
        self.db_path = db_path
        self._connection: Optional[sqlite3.Connection] = None
        self._connect()

    def _connect(self) -> None:
        """Establish database connection."""
        if self.db_path != ":memory:":
            # Ensure parent directory exists
            path = Path(self.db_path)
            path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = sqlite3.connect(self.db_path)
        self._connection.row_factory = sqlite3.Row
        self._connection.execute("PRAGMA foreign_keys = ON")

    @property
    def connection(self) -> sqlite3.Connection:
        """Get the database connection."""
        if self._connection is None:
            raise sqlite3.ProgrammingError("Database connection is closed")
        return self._connection

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Cursor]:
        """
        Run a block of statements as one transaction.

        Commits when the block exits normally, rolls back and re-raises
        otherwise.
        """
        connection = self.connection
        cursor = connection.cursor()
        try:
            yield cursor
        except BaseException:
            connection.rollback()
            raise
        else:
            connection.commit()
        finally:
            cursor.close()

    def initialize(self) -> None:
        """Create database schema if it doesn't exist."""
        cursor = self.connection.cursor()

        # Snapshot history, one row per symbol per fetch
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS stocks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT NOT NULL,
                company_name TEXT NOT NULL,
                percent_change REAL NOT NULL,
                price REAL NOT NULL,
                volume INTEGER NOT NULL,
                market_cap TEXT NOT NULL,
                rank INTEGER NOT NULL,
                timestamp TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE (symbol, timestamp)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS stock_updates (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                stock_id INTEGER NOT NULL,
                previous_stock_id INTEGER,
                change_type TEXT NOT NULL CHECK (change_type IN (
                    'NEW', 'PRICE_INCREASE', 'PRICE_DECREASE',
                    'RANK_CHANGE', 'REMOVED'
                )),
                change_amount REAL,
                change_percent REAL,
                timestamp TEXT NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (stock_id) REFERENCES stocks(id) ON DELETE CASCADE,
                FOREIGN KEY (previous_stock_id) REFERENCES stocks(id) ON DELETE SET NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS alert_rules (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                symbol TEXT,
                min_percent_change REAL,
                max_percent_change REAL,
                min_volume INTEGER,
                enabled INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS scraping_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                success INTEGER NOT NULL,
                total_stocks INTEGER NOT NULL DEFAULT 0,
                error_message TEXT,
                execution_time_ms INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
            )
        """)

        # Create indexes for common queries
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_stocks_timestamp ON stocks(timestamp)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_stocks_symbol_timestamp
            ON stocks(symbol, timestamp)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_stock_updates_timestamp
            ON stock_updates(timestamp)
        """)
        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_scraping_logs_timestamp
            ON scraping_logs(timestamp)
        """)

        self.connection.commit()

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
