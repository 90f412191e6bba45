"""
CLI commands for the pulse service.
"""

import argparse
import asyncio
import json
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

from src.config import load_config
from src.database.connection import Database
from src.database.models import AlertRule, ScrapingLog, StockSnapshot, StockUpdate
from src.database.repository import AlertRuleRepository, StockRepository


def add_rule(
    db: Database,
    symbol: Optional[str] = None,
    min_percent_change: Optional[float] = None,
    max_percent_change: Optional[float] = None,
    min_volume: Optional[int] = None,
) -> AlertRule:
    """
    Add a new alert rule.

    Raises:
        ValueError: If no threshold is given
    """
    if min_percent_change is None and max_percent_change is None and min_volume is None:
        raise ValueError("At least one threshold is required")

    repo = AlertRuleRepository(db)
    rule = AlertRule(
        symbol=symbol.upper() if symbol else None,
        min_percent_change=min_percent_change,
        max_percent_change=max_percent_change,
        min_volume=min_volume,
        enabled=True,
    )
    return repo.create(rule)


def update_rule(
    db: Database,
    rule_id: int,
    min_percent_change: Optional[float] = None,
    max_percent_change: Optional[float] = None,
    min_volume: Optional[int] = None,
) -> Optional[AlertRule]:
    """
    Change thresholds of an existing rule. Thresholds left as None are kept.

    Returns:
        The updated rule, or None if it doesn't exist

    Raises:
        ValueError: If no threshold is given
    """
    if min_percent_change is None and max_percent_change is None and min_volume is None:
        raise ValueError("At least one threshold is required")

    repo = AlertRuleRepository(db)
    rule = repo.get_by_id(rule_id)
    if rule is None:
        return None

    if min_percent_change is not None:
        rule.min_percent_change = min_percent_change
    if max_percent_change is not None:
        rule.max_percent_change = max_percent_change
    if min_volume is not None:
        rule.min_volume = min_volume
    repo.update(rule)
    return rule


def format_rule(rule: AlertRule) -> str:
    """One-line description of a rule."""
    parts = []
    if rule.min_percent_change is not None:
        parts.append(f"pct >= {rule.min_percent_change}%")
    if rule.max_percent_change is not None:
        parts.append(f"pct <= {rule.max_percent_change}%")
    if rule.min_volume is not None:
        parts.append(f"volume >= {rule.min_volume:,}")
    state = "enabled" if rule.enabled else "disabled"
    target = rule.symbol or "*"
    return f"ID: {rule.id}, Symbol: {target}, {' OR '.join(parts)} ({state})"


def format_stock(stock: StockSnapshot) -> str:
    return (
        f"#{stock.rank:<3} {stock.symbol:<6} {stock.percent_change:+7.2f}% "
        f"${stock.price:<10.2f} vol {stock.volume:>12,}  {stock.company_name}"
    )


def format_update(update: StockUpdate) -> str:
    line = f"{update.timestamp.isoformat()} {update.symbol:<6} {update.change_type.value}"
    if update.change_percent is not None:
        line += f" {update.change_percent:+.2f}%"
    if update.previous is not None and update.previous.rank != update.current.rank:
        line += f" rank {update.previous.rank} -> {update.current.rank}"
    return line


def format_log(log: ScrapingLog) -> str:
    status = "OK " if log.success else "ERR"
    line = f"{log.timestamp.isoformat()} {status} {log.total_stocks} stocks"
    if log.error_message:
        line += f" - {log.error_message}"
    return line


def run_once(db: Database, config_path: Optional[str]) -> dict:
    """
    Run a single cycle without a WebSocket listener.

    The cycle guard is per process, so this must not run against the
    database of a live service.
    """
    from src.main import PulseApp

    config = load_config(config_path)
    app = PulseApp(db=db, config=config)
    executed = asyncio.run(app.scheduler.trigger_manual_run())
    return {"executed": executed, "status": app.scheduler.get_status().to_dict()}


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Premarket Pulse CLI")
    parser.add_argument("--db", default="data/stocks.db", help="Database path")

    subparsers = parser.add_subparsers(dest="command", help="Command")

    # Rules commands
    rules_parser = subparsers.add_parser("rules", help="Alert rule management")
    rules_subparsers = rules_parser.add_subparsers(dest="action")

    add_rule_parser = rules_subparsers.add_parser("add", help="Add rule")
    add_rule_parser.add_argument("--symbol", help="Only match this symbol")
    add_rule_parser.add_argument("--min-pct", type=float, help="Minimum percent change")
    add_rule_parser.add_argument("--max-pct", type=float, help="Maximum percent change")
    add_rule_parser.add_argument("--min-volume", type=int, help="Minimum volume")

    rules_subparsers.add_parser("list", help="List rules")

    update_rule_parser = rules_subparsers.add_parser("update", help="Change rule thresholds")
    update_rule_parser.add_argument("rule_id", type=int, help="Rule ID")
    update_rule_parser.add_argument("--min-pct", type=float, help="Minimum percent change")
    update_rule_parser.add_argument("--max-pct", type=float, help="Maximum percent change")
    update_rule_parser.add_argument("--min-volume", type=int, help="Minimum volume")

    for action in ("enable", "disable", "delete"):
        action_parser = rules_subparsers.add_parser(action, help=f"{action.title()} rule")
        action_parser.add_argument("rule_id", type=int, help="Rule ID")

    # Stock commands
    stocks_parser = subparsers.add_parser("stocks", help="Snapshot history")
    stocks_subparsers = stocks_parser.add_subparsers(dest="action")

    latest_parser = stocks_subparsers.add_parser("latest", help="Latest batch")
    latest_parser.add_argument("--limit", type=int, default=50)

    history_parser = stocks_subparsers.add_parser("history", help="Symbol history")
    history_parser.add_argument("symbol", help="Stock symbol")
    history_parser.add_argument("--limit", type=int, default=20)

    updates_parser = stocks_subparsers.add_parser("updates", help="Recent changes")
    updates_parser.add_argument("--limit", type=int, default=20)

    logs_parser = subparsers.add_parser("logs", help="Recent fetch attempts")
    logs_parser.add_argument("--limit", type=int, default=20)

    run_parser = subparsers.add_parser(
        "run-once",
        help="Run a single cycle (do not use while the service is running)",
        description=(
            "Run one fetch cycle against the database without a WebSocket "
            "listener. Do not use while the service is running on the same "
            "database: the two processes do not coordinate and their cycles "
            "may overlap."
        ),
    )
    run_parser.add_argument("--config", default=None, help="Path to config file")

    args = parser.parse_args()

    # Initialize database
    db = Database(args.db)
    db.initialize()

    # Handle commands
    if args.command == "rules":
        repo = AlertRuleRepository(db)
        if args.action == "add":
            try:
                rule = add_rule(
                    db,
                    symbol=args.symbol,
                    min_percent_change=args.min_pct,
                    max_percent_change=args.max_pct,
                    min_volume=args.min_volume,
                )
                print(f"Created rule with ID: {rule.id}")
            except ValueError as e:
                print(f"Error: {e}")
        elif args.action == "list":
            for rule in repo.list_all():
                print(format_rule(rule))
        elif args.action in ("enable", "disable"):
            if repo.set_enabled(args.rule_id, args.action == "enable"):
                print(f"Rule {args.rule_id} {args.action}d")
            else:
                print(f"Rule not found: {args.rule_id}")
        elif args.action == "update":
            try:
                rule = update_rule(
                    db,
                    args.rule_id,
                    min_percent_change=args.min_pct,
                    max_percent_change=args.max_pct,
                    min_volume=args.min_volume,
                )
                if rule is None:
                    print(f"Rule not found: {args.rule_id}")
                else:
                    print(f"Updated {format_rule(rule)}")
            except ValueError as e:
                print(f"Error: {e}")
        elif args.action == "delete":
            if repo.delete(args.rule_id):
                print(f"Rule {args.rule_id} deleted")
            else:
                print(f"Rule not found: {args.rule_id}")

    elif args.command == "stocks":
        repo = StockRepository(db)
        if args.action == "latest":
            batch_time = repo.latest_timestamp()
            if batch_time is None:
                print("No data yet")
            else:
                print(f"Batch: {batch_time.isoformat()}")
                for stock in repo.latest(args.limit):
                    print(format_stock(stock))
        elif args.action == "updates":
            for update in repo.recent_updates(args.limit):
                print(format_update(update))
        elif args.action == "history":
            for stock in repo.history(args.symbol.upper(), args.limit):
                print(f"{stock.timestamp.isoformat()} {format_stock(stock)}")

    elif args.command == "logs":
        for log in StockRepository(db).recent_logs(args.limit):
            print(format_log(log))

    elif args.command == "run-once":
        result = run_once(db, args.config)
        print(json.dumps(result, indent=2))

    db.close()


if __name__ == "__main__":
    main()
