"""
Shared test builders.
"""

import asyncio
from datetime import datetime

from src.database.models import StockSnapshot


def make_stock(
    symbol: str = "AAPL",
    price: float = 150.0,
    rank: int = 1,
    percent_change: float = 5.0,
    volume: int = 500_000,
    timestamp: datetime = datetime(2024, 1, 2, 8, 0),
    company_name: str = None,
    market_cap: str = "2.50T",
) -> StockSnapshot:
    """Build a snapshot with sensible defaults."""
    return StockSnapshot(
        symbol=symbol,
        company_name=company_name or f"{symbol} Inc.",
        percent_change=percent_change,
        price=price,
        volume=volume,
        market_cap=market_cap,
        rank=rank,
        timestamp=timestamp,
    )


class FakeTransport:
    """Records aborts of the underlying socket."""

    def __init__(self):
        self.aborted = False

    def abort(self) -> None:
        self.aborted = True


class FakeConnection:
    """In-process stand-in for a server-side WebSocket connection."""

    def __init__(self, fail_send: bool = False, answer_pings: bool = True):
        self.sent: list[str] = []
        self.closed_with = None
        self.pings = 0
        self.fail_send = fail_send
        self.answer_pings = answer_pings
        self.transport = FakeTransport()

    async def send(self, text: str) -> None:
        if self.fail_send:
            raise OSError("broken pipe")
        self.sent.append(text)

    async def ping(self):
        self.pings += 1
        waiter = asyncio.get_running_loop().create_future()
        if self.answer_pings:
            waiter.set_result(0.0)
        return waiter

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed_with = (code, reason)


class StalledConnection(FakeConnection):
    """Connection whose peer stopped reading, so pings never get written."""

    async def ping(self):
        self.pings += 1
        await asyncio.Event().wait()
