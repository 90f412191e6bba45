"""
Database layer tests.
Tests for SQLite connection, schema creation, history queries and rule CRUD.
"""

import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from src.database.connection import Database
from src.database.models import AlertRule, ChangeType, ScrapingResult, StockUpdate
from src.database.repository import AlertRuleRepository, StockRepository
from src.errors import PersistenceFailure
from tests.helpers import make_stock

T0 = datetime(2024, 1, 2, 8, 0)
T1 = T0 + timedelta(minutes=1)


def batch(timestamp, *stocks):
    return ScrapingResult(success=True, timestamp=timestamp, stocks=list(stocks))


class TestDatabaseConnection:
    """Test database connection and initialization."""

    def test_create_file_database(self, tmp_path: Path):
        """Should create a file-based SQLite database and its directory."""
        db_path = tmp_path / "nested" / "test.db"
        db = Database(str(db_path))
        assert db_path.exists()
        db.close()

    def test_initialize_schema(self, db: Database):
        """Should create all required tables on initialization."""
        cursor = db.connection.cursor()
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}

        assert {"stocks", "stock_updates", "alert_rules", "scraping_logs"}.issubset(
            tables
        )

    def test_initialize_is_idempotent(self, db: Database):
        """Should tolerate running initialize twice."""
        db.initialize()

    def test_close_connection(self):
        """Should properly close database connection."""
        db = Database(":memory:")
        db.close()
        with pytest.raises(sqlite3.ProgrammingError):
            db.connection.execute("SELECT 1")

    def test_transaction_rolls_back_on_error(self, db: Database):
        """Should discard every statement of a failed transaction."""
        with pytest.raises(RuntimeError):
            with db.transaction() as cursor:
                cursor.execute(
                    "INSERT INTO scraping_logs (success, timestamp) VALUES (1, 'x')"
                )
                raise RuntimeError("boom")

        count = db.connection.execute("SELECT COUNT(*) FROM scraping_logs").fetchone()[0]
        assert count == 0


class TestStockRepository:
    """Test snapshot history persistence."""

    @pytest.fixture
    def repo(self, db):
        return StockRepository(db)

    def test_append_and_latest(self, repo: StockRepository):
        """Should persist a batch and return it ordered by rank."""
        written = repo.append_transactional(
            batch(T0, make_stock("TSLA", rank=2), make_stock("AAPL", rank=1)), []
        )

        assert written == 2
        latest = repo.latest()
        assert [s.symbol for s in latest] == ["AAPL", "TSLA"]
        assert latest[0].id is not None
        assert latest[0].timestamp == T0
        assert repo.latest_timestamp() == T0

    def test_append_records_success_log(self, repo: StockRepository):
        """Should write a success log row with the batch."""
        repo.append_transactional(batch(T0, make_stock("AAPL")), [])

        logs = repo.recent_logs()
        assert len(logs) == 1
        assert logs[0].success is True
        assert logs[0].total_stocks == 1

    def test_latest_only_returns_newest_batch(self, repo: StockRepository):
        """Should ignore rows from older batches."""
        repo.append_transactional(batch(T0, make_stock("AAPL", timestamp=T0)), [])
        repo.append_transactional(
            batch(T1, make_stock("TSLA", timestamp=T1)), []
        )

        assert [s.symbol for s in repo.latest()] == ["TSLA"]

    def test_empty_history(self, repo: StockRepository):
        """Should return nothing before the first batch."""
        assert repo.latest() == []
        assert repo.latest_timestamp() is None
        assert repo.latest_updates() == []

    def test_most_recent_before(self, repo: StockRepository):
        """Should find the nearest row strictly before the timestamp."""
        repo.append_transactional(batch(T0, make_stock("AAPL", price=100, timestamp=T0)), [])
        repo.append_transactional(batch(T1, make_stock("AAPL", price=110, timestamp=T1)), [])

        found = repo.most_recent_before("AAPL", T1 + timedelta(seconds=30))
        assert found.price == 110

        found = repo.most_recent_before("AAPL", T1)
        assert found.price == 100

        assert repo.most_recent_before("AAPL", T0) is None
        assert repo.most_recent_before("TSLA", T1) is None

    def test_history_most_recent_first(self, repo: StockRepository):
        """Should list a symbol's rows newest first."""
        repo.append_transactional(batch(T0, make_stock("AAPL", price=100, timestamp=T0)), [])
        repo.append_transactional(batch(T1, make_stock("AAPL", price=110, timestamp=T1)), [])

        assert [s.price for s in repo.history("AAPL")] == [110, 100]

    def test_updates_are_linked_to_rows(self, repo: StockRepository):
        """Should store updates pointing at current and previous rows."""
        repo.append_transactional(batch(T0, make_stock("AAPL", price=100, timestamp=T0)), [])
        previous = repo.latest()[0]
        current = make_stock("AAPL", price=110, timestamp=T1)
        update = StockUpdate(
            current=current,
            previous=previous,
            change_type=ChangeType.PRICE_INCREASE,
            change_amount=10.0,
            change_percent=10.0,
            timestamp=T1,
        )

        repo.append_transactional(batch(T1, current), [update])

        updates = repo.latest_updates()
        assert len(updates) == 1
        assert updates[0].change_type == ChangeType.PRICE_INCREASE
        assert updates[0].previous.id == previous.id
        assert updates[0].current.price == 110
        assert updates[0].change_percent == 10.0
        assert len(repo.recent_updates(10)) == 1

    def test_failed_append_keeps_nothing(self, repo: StockRepository):
        """Should roll back the whole batch if any write fails."""
        orphan = StockUpdate(
            current=make_stock("MSFT", timestamp=T0),
            change_type=ChangeType.NEW,
            timestamp=T0,
        )

        with pytest.raises(PersistenceFailure):
            repo.append_transactional(batch(T0, make_stock("AAPL")), [orphan])

        assert repo.latest() == []
        assert repo.recent_logs() == []

    def test_duplicate_batch_is_rejected(self, repo: StockRepository):
        """Should refuse a second row for the same symbol and timestamp."""
        repo.append_transactional(batch(T0, make_stock("AAPL")), [])

        with pytest.raises(PersistenceFailure):
            repo.append_transactional(batch(T0, make_stock("AAPL")), [])

        assert len(repo.history("AAPL")) == 1

    def test_log_failure(self, repo: StockRepository):
        """Should record a failed attempt without touching history."""
        repo.log_failure(
            ScrapingResult(success=False, timestamp=T0, error="Scraping failed: down")
        )

        logs = repo.recent_logs()
        assert logs[0].success is False
        assert logs[0].total_stocks == 0
        assert logs[0].error_message == "Scraping failed: down"
        assert repo.latest() == []

    def test_log_failure_wraps_sqlite_errors(self, repo: StockRepository, db):
        """Should raise PersistenceFailure when the write fails."""
        db.close()
        with pytest.raises(PersistenceFailure):
            repo.log_failure(ScrapingResult(success=False, timestamp=T0, error="x"))

    def test_prune_deletes_old_rows(self, repo: StockRepository):
        """Should delete history older than the retention window."""
        old = T0 - timedelta(days=40)
        repo.append_transactional(batch(old, make_stock("OLD", timestamp=old)), [])
        repo.append_transactional(
            batch(T0, make_stock("NEW", timestamp=T0)),
            [StockUpdate(current=make_stock("NEW", timestamp=T0),
                         change_type=ChangeType.NEW, timestamp=T0)],
        )

        deleted = repo.prune(30, now=T0)

        assert deleted == {"stocks": 1, "stock_updates": 0, "scraping_logs": 1}
        assert repo.history("OLD") == []
        assert len(repo.history("NEW")) == 1
        assert len(repo.latest_updates()) == 1

    def test_prune_wraps_errors(self, repo: StockRepository):
        """Should raise PersistenceFailure if the delete fails."""
        with patch.object(repo.db, "transaction", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(PersistenceFailure):
                repo.prune(30, now=T0)


class TestAlertRuleRepository:
    """Test AlertRule CRUD operations."""

    @pytest.fixture
    def repo(self, db):
        return AlertRuleRepository(db)

    def test_create_rule(self, repo: AlertRuleRepository):
        """Should create a new rule with an id."""
        rule = repo.create(AlertRule(symbol="AAPL", min_percent_change=10.0))

        assert rule.id is not None
        fetched = repo.get_by_id(rule.id)
        assert fetched.symbol == "AAPL"
        assert fetched.min_percent_change == 10.0
        assert fetched.max_percent_change is None
        assert fetched.enabled is True
        assert fetched.created_at is not None

    def test_zero_threshold_round_trips(self, repo: AlertRuleRepository):
        """Should keep a zero threshold distinct from unset."""
        rule = repo.create(AlertRule(max_percent_change=0.0))
        fetched = repo.get_by_id(rule.id)
        assert fetched.max_percent_change == 0.0

    def test_get_active_rules(self, repo: AlertRuleRepository):
        """Should return only enabled rules."""
        active = repo.create(AlertRule(min_volume=1000))
        repo.create(AlertRule(min_volume=2000, enabled=False))

        rules = repo.get_active_rules()
        assert [r.id for r in rules] == [active.id]

    def test_set_enabled(self, repo: AlertRuleRepository):
        """Should toggle a rule and report missing ids."""
        rule = repo.create(AlertRule(min_volume=1000))

        assert repo.set_enabled(rule.id, False) is True
        assert repo.get_by_id(rule.id).enabled is False
        assert repo.set_enabled(9999, True) is False

    def test_update_rule(self, repo: AlertRuleRepository):
        """Should persist changed thresholds."""
        rule = repo.create(AlertRule(min_percent_change=5.0))
        rule.min_percent_change = 7.5
        rule.symbol = "TSLA"
        repo.update(rule)

        fetched = repo.get_by_id(rule.id)
        assert fetched.min_percent_change == 7.5
        assert fetched.symbol == "TSLA"

    def test_delete_rule(self, repo: AlertRuleRepository):
        """Should delete a rule and report missing ids."""
        rule = repo.create(AlertRule(min_volume=1000))

        assert repo.delete(rule.id) is True
        assert repo.get_by_id(rule.id) is None
        assert repo.delete(rule.id) is False

    def test_list_all(self, repo: AlertRuleRepository):
        """Should list enabled and disabled rules."""
        repo.create(AlertRule(min_volume=1000))
        repo.create(AlertRule(min_volume=2000, enabled=False))
        assert len(repo.list_all()) == 2
