"""
Wire message tests.
Tests for server message envelopes and client message parsing.
"""

import json
from datetime import datetime

import pytest

from src.database.models import ScrapingResult
from src.errors import ProtocolViolation
from src.hub.messages import (
    AlertMessage,
    ClientRequest,
    ConnectionMessage,
    ErrorMessage,
    ScrapingStatus,
    ScrapingStatusMessage,
    StocksUpdateMessage,
    encode,
    parse_client_message,
)
from src.rules.types import AlertEvent, AlertType
from tests.helpers import make_stock

NOW = datetime(2024, 1, 2, 8, 0)


class TestEncode:
    """Test server message envelopes."""

    def test_envelope(self):
        """Should wrap the payload with type and timestamp."""
        data = json.loads(encode(ErrorMessage(error="oops"), timestamp=NOW))

        assert data == {
            "type": "ERROR",
            "payload": {"error": "oops"},
            "timestamp": "2024-01-02T08:00:00",
        }

    def test_connection_ack(self):
        """Should include client id and server time when given."""
        message = ConnectionMessage(
            message="Connected successfully", client_id="abc", server_time=NOW
        )
        payload = json.loads(encode(message))["payload"]

        assert payload == {
            "message": "Connected successfully",
            "clientId": "abc",
            "serverTime": "2024-01-02T08:00:00",
        }

    def test_stocks_update(self):
        """Should carry stocks, updates and the fetch summary."""
        stock = make_stock("AAPL")
        result = ScrapingResult(success=True, timestamp=NOW, stocks=[stock])
        data = json.loads(encode(StocksUpdateMessage([stock], [], result)))

        assert data["type"] == "STOCKS_UPDATE"
        assert data["payload"]["stocks"][0]["symbol"] == "AAPL"
        assert data["payload"]["updates"] == []
        assert data["payload"]["scrapingResult"]["totalStocks"] == 1

    def test_alert(self):
        """Should serialize the alert event."""
        alert = AlertEvent(
            stock=make_stock("AAPL"), alert_type=AlertType.HIGH_GAIN, message="up"
        )
        data = json.loads(encode(AlertMessage(alert)))

        assert data["type"] == "ALERT"
        assert data["payload"]["alertType"] == "HIGH_GAIN"
        assert data["payload"]["update"] is None

    def test_scraping_status(self):
        """Should include next run only when known."""
        with_next = json.loads(
            encode(ScrapingStatusMessage(ScrapingStatus.SUCCESS, "done", NOW))
        )
        without = json.loads(encode(ScrapingStatusMessage(ScrapingStatus.ERROR, "bad")))

        assert with_next["payload"]["nextRun"] == "2024-01-02T08:00:00"
        assert "nextRun" not in without["payload"]
        assert without["payload"]["status"] == "ERROR"


class TestParseClientMessage:
    """Test client message parsing."""

    def test_known_types(self):
        """Should parse PING and REQUEST_LATEST_DATA."""
        assert parse_client_message('{"type": "PING"}') == ClientRequest.PING
        assert (
            parse_client_message(b'{"type": "REQUEST_LATEST_DATA"}')
            == ClientRequest.REQUEST_LATEST_DATA
        )

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", b"\xff\xfe"])
    def test_invalid_format(self, raw):
        """Should reject frames that are not JSON objects."""
        with pytest.raises(ProtocolViolation, match="Invalid message format"):
            parse_client_message(raw)

    def test_unknown_type(self):
        """Should reject unknown message types."""
        with pytest.raises(ProtocolViolation, match="Unknown message type: SUBSCRIBE"):
            parse_client_message('{"type": "SUBSCRIBE"}')
