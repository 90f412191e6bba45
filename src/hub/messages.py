"""
Wire messages exchanged with WebSocket clients.

Every server message is one JSON object ``{type, payload, timestamp}``. The
five server message kinds form a closed set; each has a fixed payload shape.
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional, Union

from src.database.models import ScrapingResult, StockSnapshot, StockUpdate
from src.errors import ProtocolViolation
from src.rules.types import AlertEvent


class MessageType(str, Enum):
    """Server to client message kinds."""

    CONNECTION = "CONNECTION"
    STOCKS_UPDATE = "STOCKS_UPDATE"
    ALERT = "ALERT"
    SCRAPING_STATUS = "SCRAPING_STATUS"
    ERROR = "ERROR"


class ClientRequest(str, Enum):
    """Client to server message kinds."""

    PING = "PING"
    REQUEST_LATEST_DATA = "REQUEST_LATEST_DATA"


class ScrapingStatus(str, Enum):
    STARTED = "STARTED"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass(frozen=True)
class ConnectionMessage:
    message: str
    client_id: Optional[str] = None
    server_time: Optional[datetime] = None

    type: ClassVar[MessageType] = MessageType.CONNECTION

    def payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.client_id is not None:
            payload["clientId"] = self.client_id
        if self.server_time is not None:
            payload["serverTime"] = _iso(self.server_time)
        return payload


@dataclass(frozen=True)
class StocksUpdateMessage:
    stocks: list[StockSnapshot]
    updates: list[StockUpdate]
    scraping_result: ScrapingResult

    type: ClassVar[MessageType] = MessageType.STOCKS_UPDATE

    def payload(self) -> dict[str, Any]:
        return {
            "stocks": [stock.to_dict() for stock in self.stocks],
            "updates": [update.to_dict() for update in self.updates],
            "scrapingResult": self.scraping_result.to_dict(),
        }


@dataclass(frozen=True)
class AlertMessage:
    alert: AlertEvent

    type: ClassVar[MessageType] = MessageType.ALERT

    def payload(self) -> dict[str, Any]:
        return self.alert.to_dict()


@dataclass(frozen=True)
class ScrapingStatusMessage:
    status: ScrapingStatus
    message: str
    next_run: Optional[datetime] = None

    type: ClassVar[MessageType] = MessageType.SCRAPING_STATUS

    def payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "message": self.message,
        }
        if self.next_run is not None:
            payload["nextRun"] = _iso(self.next_run)
        return payload


@dataclass(frozen=True)
class ErrorMessage:
    error: str

    type: ClassVar[MessageType] = MessageType.ERROR

    def payload(self) -> dict[str, Any]:
        return {"error": self.error}


Message = Union[
    ConnectionMessage,
    StocksUpdateMessage,
    AlertMessage,
    ScrapingStatusMessage,
    ErrorMessage,
]


def encode(message: Message, timestamp: Optional[datetime] = None) -> str:
    """Serialize a server message to its JSON envelope."""
    return json.dumps(
        {
            "type": message.type.value,
            "payload": message.payload(),
            "timestamp": _iso(timestamp or datetime.now()),
        }
    )


def parse_client_message(raw: Union[str, bytes]) -> ClientRequest:
    """
    Parse one client message.

    Args:
        raw: Text or binary frame received from the client

    Returns:
        The requested action

    Raises:
        ProtocolViolation: If the frame is not a JSON object with a known type
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolViolation("Invalid message format") from e

    if not isinstance(data, dict):
        raise ProtocolViolation("Invalid message format")

    message_type = data.get("type")
    try:
        return ClientRequest(message_type)
    except ValueError:
        raise ProtocolViolation(f"Unknown message type: {message_type}") from None
