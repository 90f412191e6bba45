"""
WebSocket distribution hub.

Keeps a registry of live client connections, answers their requests, fans
server messages out to all of them and evicts connections that stop
answering heartbeat pings.
"""

import asyncio
import logging
import uuid
from collections.abc import Coroutine
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from websockets.asyncio.server import Server, serve
from websockets.exceptions import ConnectionClosed

from src.database.models import ScrapingResult, StockSnapshot, StockUpdate
from src.database.repository import StockRepository
from src.errors import ConnectionFailure, ProtocolViolation
from src.rules.types import AlertEvent
from .messages import (
    AlertMessage,
    ClientRequest,
    ConnectionMessage,
    ErrorMessage,
    Message,
    ScrapingStatus,
    ScrapingStatusMessage,
    StocksUpdateMessage,
    encode,
    parse_client_message,
)

logger = logging.getLogger(__name__)


@dataclass
class ConnectedClient:
    """A live connection and its heartbeat state."""

    id: str
    connection: Any
    connected_at: datetime = field(default_factory=datetime.now)
    is_alive: bool = True


class DistributionHub:
    """Registers clients, syncs them on connect and broadcasts cycle results."""

    def __init__(
        self,
        stock_repo: StockRepository,
        host: str = "0.0.0.0",
        port: int = 3002,
        heartbeat_interval: float = 30.0,
        catch_up_delay: float = 1.0,
        send_timeout: float = 10.0,
        latest_limit: int = 50,
    ):
        """
        Initialize the hub.

        Args:
            stock_repo: Source of the latest batch for catch-up sync
            host: Interface to listen on
            port: Port to listen on, 0 picks a free one
            heartbeat_interval: Seconds between liveness checks
            catch_up_delay: Seconds to wait before syncing a new client
            send_timeout: Seconds before a single send counts as failed
            latest_limit: Maximum snapshots included in a catch-up message
        """
        self.stock_repo = stock_repo
        self.host = host
        self.port = port
        self.heartbeat_interval = heartbeat_interval
        self.catch_up_delay = catch_up_delay
        self.send_timeout = send_timeout
        self.latest_limit = latest_limit

        self._clients: dict[str, ConnectedClient] = {}
        self._server: Optional[Server] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start listening and start the heartbeat timer."""
        self._server = await serve(
            self._handle_connection,
            self.host,
            self.port,
            ping_interval=None,
            ping_timeout=None,
        )
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"WebSocket server started on {self.host}:{self.bound_port}")

    @property
    def bound_port(self) -> Optional[int]:
        """Port actually bound by the listener."""
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return sock.getsockname()[1]
        return None

    async def close(self) -> None:
        """Stop the heartbeat, close every client and the listener."""
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        clients = list(self._clients.values())
        self._clients.clear()
        await asyncio.gather(
            *(self._close_connection(c, 1001, "Server shutting down") for c in clients)
        )

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("WebSocket server closed")

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(self, connection: Any) -> ConnectedClient:
        """Add a connection to the registry under a fresh id."""
        client = ConnectedClient(id=str(uuid.uuid4()), connection=connection)
        self._clients[client.id] = client
        logger.info(f"Client {client.id} connected. Total clients: {len(self._clients)}")
        return client

    def unregister(self, client_id: str) -> None:
        """Drop a client from the registry."""
        if self._clients.pop(client_id, None) is not None:
            logger.info(
                f"Client {client_id} disconnected. Total clients: {len(self._clients)}"
            )

    def client_count(self) -> int:
        return len(self._clients)

    def client_info(self) -> list[dict[str, Any]]:
        return [
            {
                "id": client.id,
                "connectedAt": client.connected_at.isoformat(),
                "isAlive": client.is_alive,
            }
            for client in list(self._clients.values())
        ]

    def _evict(self, client: ConnectedClient, code: int, reason: str) -> None:
        self._clients.pop(client.id, None)
        self._spawn(self._close_connection(client, code, reason))

    async def _close_connection(
        self, client: ConnectedClient, code: int, reason: str
    ) -> None:
        try:
            await asyncio.wait_for(
                client.connection.close(code, reason), self.send_timeout
            )
        except asyncio.TimeoutError:
            logger.info(f"Close handshake with client {client.id} timed out, aborting")
            self._abort(client)
        except Exception as e:
            logger.debug(f"Error closing client {client.id}: {e}")

    def _abort(self, client: ConnectedClient) -> None:
        try:
            client.connection.transport.abort()
        except Exception as e:
            logger.debug(f"Error aborting client {client.id}: {e}")

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def _handle_connection(self, connection: Any) -> None:
        client = self.register(connection)
        try:
            await self.send_to(
                client,
                ConnectionMessage(
                    message="Connected successfully",
                    client_id=client.id,
                    server_time=datetime.now(),
                ),
            )
            self._spawn(self._catch_up_later(client))

            async for raw in connection:
                await self.handle_message(client, raw)
        except ConnectionClosed:
            pass
        finally:
            self.unregister(client.id)

    async def _catch_up_later(self, client: ConnectedClient) -> None:
        await asyncio.sleep(self.catch_up_delay)
        if client.id in self._clients:
            await self.send_latest_data(client)

    async def handle_message(self, client: ConnectedClient, raw: Any) -> None:
        """Answer one client message. Protocol errors never close the connection."""
        try:
            request = parse_client_message(raw)
        except ProtocolViolation as e:
            logger.warning(f"Bad message from client {client.id}: {e}")
            await self.send_to(client, ErrorMessage(error=str(e)))
            return

        logger.debug(f"Received {request.value} from client {client.id}")
        if request == ClientRequest.PING:
            await self.send_to(client, ConnectionMessage(message="pong"))
        elif request == ClientRequest.REQUEST_LATEST_DATA:
            await self.send_latest_data(client)

    async def send_latest_data(self, client: ConnectedClient) -> None:
        """Unicast the latest persisted batch and its updates, if any."""
        try:
            stocks = self.stock_repo.latest(self.latest_limit)
            updates = self.stock_repo.latest_updates() if stocks else []
        except Exception as e:
            logger.error(f"Error loading current data for client {client.id}: {e}")
            await self.send_to(client, ErrorMessage(error="Failed to fetch current data"))
            return

        if not stocks:
            await self.send_to(
                client, ConnectionMessage(message="No current data available")
            )
            return

        result = ScrapingResult(
            success=True, stocks=stocks, timestamp=stocks[0].timestamp
        )
        await self.send_to(client, StocksUpdateMessage(stocks, updates, result))
        logger.debug(f"Sent current data ({len(stocks)} stocks) to client {client.id}")

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, client: ConnectedClient, text: str) -> None:
        try:
            await asyncio.wait_for(client.connection.send(text), self.send_timeout)
        except asyncio.TimeoutError as e:
            raise ConnectionFailure(client.id, "send timed out") from e
        except ConnectionClosed as e:
            raise ConnectionFailure(client.id, "connection closed") from e
        except Exception as e:
            raise ConnectionFailure(client.id, str(e)) from e

    async def send_to(self, client: ConnectedClient, message: Message) -> bool:
        """Send one message to one client, evicting it on failure."""
        if client.id not in self._clients:
            logger.warning(f"Cannot send message to client {client.id}: not connected")
            return False
        try:
            await self._deliver(client, encode(message))
        except ConnectionFailure as e:
            logger.warning(f"Error sending message: {e}")
            self._evict(client, 1011, "send failed")
            return False
        return True

    async def broadcast(self, message: Message) -> int:
        """
        Send one message to every connected client.

        Sends run concurrently against a copy of the registry. A failed send
        evicts that client only; there is no retry.

        Returns:
            Number of clients the message was delivered to
        """
        text = encode(message)
        clients = list(self._clients.values())
        if not clients:
            return 0

        results = await asyncio.gather(
            *(self._deliver(client, text) for client in clients),
            return_exceptions=True,
        )

        delivered = 0
        for client, result in zip(clients, results):
            if isinstance(result, ConnectionFailure):
                logger.warning(f"Dropping client during broadcast: {result}")
                self._evict(client, 1011, "send failed")
            elif isinstance(result, BaseException):
                raise result
            else:
                delivered += 1
        return delivered

    async def broadcast_stock_update(
        self,
        stocks: list[StockSnapshot],
        updates: list[StockUpdate],
        result: ScrapingResult,
    ) -> int:
        delivered = await self.broadcast(StocksUpdateMessage(stocks, updates, result))
        logger.info(f"Broadcasted stock update to {delivered} clients")
        return delivered

    async def broadcast_alert(self, alert: AlertEvent) -> int:
        delivered = await self.broadcast(AlertMessage(alert))
        logger.debug(
            f"Broadcasted {alert.alert_type.value} alert for {alert.stock.symbol} "
            f"to {delivered} clients"
        )
        return delivered

    async def send_scraping_status(
        self,
        status: ScrapingStatus,
        message: str,
        next_run: Optional[datetime] = None,
    ) -> int:
        return await self.broadcast(ScrapingStatusMessage(status, message, next_run))

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.check_liveness()
            except Exception as e:
                logger.error(f"Heartbeat check failed: {e}", exc_info=True)

    async def check_liveness(self) -> None:
        """
        Evict clients that missed the previous ping, then ping the rest.

        Each ping clears the client's liveness flag; its pong sets it again.
        """
        pending = []
        for client in list(self._clients.values()):
            if not client.is_alive:
                logger.info(f"Removing inactive client {client.id}")
                self._evict(client, 1001, "heartbeat timeout")
                continue
            client.is_alive = False
            pending.append(client)

        await asyncio.gather(*(self._ping(client) for client in pending))

    async def _ping(self, client: ConnectedClient) -> None:
        try:
            pong_waiter = await asyncio.wait_for(
                client.connection.ping(), self.send_timeout
            )
        except asyncio.TimeoutError:
            logger.info(f"Ping to client {client.id} timed out")
            self._evict(client, 1011, "ping timed out")
            return
        except Exception as e:
            logger.info(f"Ping to client {client.id} failed: {e}")
            self._evict(client, 1011, "ping failed")
            return
        pong_waiter.add_done_callback(lambda fut: self._on_pong(client, fut))

    def _on_pong(self, client: ConnectedClient, fut: asyncio.Future) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        client.is_alive = True
