"""Registry of connected clients with health checks and graceful disconnection."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import logging
import time
from collections import deque
from typing import Optional

from .connections import (
    ClientConnection,
    ClientManagerConfig,
    ClientState,
    DisconnectionEvent,
    DisconnectionKind,
    DisconnectionReason,
)

logger = logging.getLogger(__name__)

_EVENT_HISTORY = 1000


class ClientManagerError(Exception):
    """Base class for client manager failures."""


class ClientNotFoundError(ClientManagerError, KeyError):
    """No client is registered under the given identifier."""

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Client not found: {client_id}")
        self.client_id = client_id

    def __str__(self) -> str:
        return f"Client not found: {self.client_id}"


class MaxConnectionsExceededError(ClientManagerError):
    """Registering another client would exceed the configured maximum."""

    def __init__(self, current: int, maximum: int) -> None:
        super().__init__(f"Maximum connections exceeded: {current}/{maximum}")
        self.current = current
        self.maximum = maximum


class ClientManager:
    """Tracks clients, monitors their health and disconnects them gracefully.

    Methods that schedule background work (``disconnect_client`` and the
    ``start_*`` coroutines) must be called while an event loop is running.
    """

    def __init__(self, config: Optional[ClientManagerConfig] = None) -> None:
        self._config = config if config is not None else ClientManagerConfig()
        logger.info(
            "Initializing client manager with max clients: %d", self._config.max_clients
        )
        self._clients: dict[str, ClientConnection] = {}
        self._events: deque[DisconnectionEvent] = deque(maxlen=_EVENT_HISTORY)
        self._pending_events: asyncio.Queue[DisconnectionEvent] = asyncio.Queue()
        self._health_running = False
        self._health_task: Optional[asyncio.Task[None]] = None
        self._processing_task: Optional[asyncio.Task[None]] = None
        self._finalizers: set[asyncio.Task[None]] = set()

    @property
    def config(self) -> ClientManagerConfig:
        return self._config

    def _client(self, client_id: str) -> ClientConnection:
        try:
            return self._clients[client_id]
        except KeyError:
            raise ClientNotFoundError(client_id) from None

    def register_client(self, client_id: str) -> None:
        """Add a client, replacing any existing one with the same identifier."""
        if len(self._clients) >= self._config.max_clients:
            raise MaxConnectionsExceededError(len(self._clients), self._config.max_clients)
        if client_id in self._clients:
            logger.warning("Client %s already registered, updating connection", client_id)
        self._clients[client_id] = ClientConnection(client_id)
        logger.info("Registered client: %s (total: %d)", client_id, len(self._clients))

    def update_heartbeat(self, client_id: str) -> None:
        self._client(client_id).update_heartbeat()
        logger.debug("Updated heartbeat for client: %s", client_id)

    def update_activity(self, client_id: str) -> None:
        self._client(client_id).update_activity()

    def increment_messages_sent(self, client_id: str) -> None:
        self._client(client_id).increment_messages_sent()

    def increment_messages_received(self, client_id: str) -> None:
        self._client(client_id).increment_messages_received()

    def update_subscription_count(self, client_id: str, count: int) -> None:
        self._client(client_id).subscription_count = count

    def add_client_metadata(self, client_id: str, key: str, value: str) -> None:
        self._client(client_id).add_metadata(key, value)

    def disconnect_client(self, client_id: str, reason: DisconnectionReason) -> None:
        """Mark a connected client as disconnecting and remove it after the grace period."""
        client = self._client(client_id)
        if client.state is not ClientState.CONNECTED:
            return
        client.state = ClientState.DISCONNECTING
        logger.info(
            "Initiating graceful disconnection for client: %s (reason: %s)",
            client_id,
            reason,
        )
        self._pending_events.put_nowait(
            DisconnectionEvent(
                client_id=client_id,
                reason=reason,
                timestamp=time.monotonic(),
                connection_duration=client.connection_duration(),
                messages_sent=client.messages_sent,
                messages_received=client.messages_received,
                subscription_count=client.subscription_count,
            )
        )
        task = asyncio.get_running_loop().create_task(self._finalize_later(client_id))
        self._finalizers.add(task)
        task.add_done_callback(self._finalizers.discard)

    async def _finalize_later(self, client_id: str) -> None:
        await asyncio.sleep(self._config.disconnection_grace_period)
        client = self._clients.pop(client_id, None)
        if client is not None:
            client.state = ClientState.DISCONNECTED
            logger.info(
                "Finalized disconnection for client: %s (total: %d)",
                client_id,
                len(self._clients),
            )

    def get_client(self, client_id: str) -> Optional[ClientConnection]:
        """A copy of the client's record, or None if it is not registered."""
        client = self._clients.get(client_id)
        return copy.deepcopy(client) if client is not None else None

    def all_clients(self) -> list[ClientConnection]:
        return [copy.deepcopy(client) for client in self._clients.values()]

    def client_count(self) -> int:
        return len(self._clients)

    def healthy_client_count(self) -> int:
        timeout = self._config.heartbeat_timeout
        return sum(1 for client in self._clients.values() if client.is_healthy(timeout))

    async def start_health_monitoring(self) -> None:
        """Start the periodic health check if it is not already running."""
        if self._health_running:
            return
        self._health_running = True
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())
        logger.info("Started client health monitoring")

    def stop_health_monitoring(self) -> None:
        self._health_running = False
        if self._health_task is not None:
            self._health_task.cancel()
            self._health_task = None
        logger.info("Stopped client health monitoring")

    async def _health_loop(self) -> None:
        while self._health_running:
            try:
                self.check_client_health()
            except Exception as exc:
                logger.error("Health check failed: %s", exc)
            await asyncio.sleep(self._config.health_check_interval)

    def check_client_health(self) -> None:
        """Flag clients with stale heartbeats and disconnect idle ones."""
        config = self._config
        unhealthy: list[str] = []
        idle: list[str] = []
        for client_id, client in self._clients.items():
            if (
                not client.is_healthy(config.heartbeat_timeout)
                and client.state is ClientState.CONNECTED
            ):
                client.state = ClientState.UNHEALTHY
                client.connection_quality.record_missed_heartbeat()
                unhealthy.append(client_id)
            if (
                client.idle_duration() > config.max_idle_time
                and client.state is ClientState.CONNECTED
            ):
                idle.append(client_id)

        timeout = DisconnectionReason(DisconnectionKind.TIMEOUT)
        for client_id in unhealthy:
            logger.warning("Disconnecting unhealthy client: %s", client_id)
            try:
                self.disconnect_client(client_id, timeout)
            except ClientManagerError as exc:
                logger.error("Failed to disconnect unhealthy client %s: %s", client_id, exc)
        for client_id in idle:
            logger.info("Disconnecting idle client: %s", client_id)
            try:
                self.disconnect_client(client_id, timeout)
            except ClientManagerError as exc:
                logger.error("Failed to disconnect idle client %s: %s", client_id, exc)

    async def start_disconnection_processing(self) -> None:
        """Start recording disconnection events as they arrive."""
        if self._processing_task is not None and not self._processing_task.done():
            return
        self._processing_task = asyncio.get_running_loop().create_task(
            self._processing_loop()
        )
        logger.info("Started disconnection event processing")

    async def _processing_loop(self) -> None:
        while True:
            event = await self._pending_events.get()
            self._events.append(event)
            logger.info(
                "Client disconnection: %s (reason: %s, duration: %.3fs, "
                "messages: sent=%d, received=%d)",
                event.client_id,
                event.reason,
                event.connection_duration,
                event.messages_sent,
                event.messages_received,
            )

    def disconnection_events(self) -> list[DisconnectionEvent]:
        """Recorded events, oldest first; at most the last 1000."""
        return list(self._events)

    def client_stats(self) -> dict[str, int]:
        clients = self._clients.values()
        total = len(self._clients)
        healthy = self.healthy_client_count()
        return {
            "total_clients": total,
            "healthy_clients": healthy,
            "unhealthy_clients": total - healthy,
            "total_messages_sent": sum(c.messages_sent for c in clients),
            "total_messages_received": sum(c.messages_received for c in clients),
            "total_subscriptions": sum(c.subscription_count for c in clients),
            "total_disconnections": len(self._events),
            "max_clients": self._config.max_clients,
        }

    async def shutdown_all_clients(self) -> None:
        """Disconnect everyone, wait the grace period, then drop whoever remains."""
        logger.info("Initiating graceful shutdown of all clients")
        reason = DisconnectionReason(DisconnectionKind.SERVER_INITIATED)
        for client_id in list(self._clients):
            try:
                self.disconnect_client(client_id, reason)
            except ClientManagerError as exc:
                logger.error(
                    "Failed to disconnect client %s during shutdown: %s", client_id, exc
                )

        await asyncio.sleep(self._config.disconnection_grace_period)

        remaining = len(self._clients)
        self._clients.clear()
        if remaining:
            logger.warning("Force disconnected %d remaining clients", remaining)

        for task in list(self._finalizers):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        self.stop_health_monitoring()
        logger.info("All clients disconnected")