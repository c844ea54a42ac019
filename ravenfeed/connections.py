"""Client connection records, quality tracking and disconnection reasons."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

_INTERVAL_WINDOW = 10


class ClientState(str, Enum):
    """Lifecycle state of a client connection."""

    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    DISCONNECTED = "disconnected"
    UNHEALTHY = "unhealthy"

    def __str__(self) -> str:
        return self.value


@dataclass
class ConnectionQuality:
    """Heartbeat reliability of a connection; intervals are in seconds."""

    heartbeats_received: int = 0
    missed_heartbeats: int = 0
    avg_heartbeat_interval: float = 30.0
    stability_score: float = 1.0
    _intervals: deque = field(
        default_factory=lambda: deque(maxlen=_INTERVAL_WINDOW), repr=False, compare=False
    )
    _last_heartbeat_time: Optional[float] = field(default=None, repr=False, compare=False)

    def record_heartbeat(self) -> None:
        """Count a heartbeat and update the average of the last ten intervals."""
        now = time.monotonic()
        if self._last_heartbeat_time is not None:
            self._intervals.append(now - self._last_heartbeat_time)
            self.avg_heartbeat_interval = sum(self._intervals) / len(self._intervals)
        self.heartbeats_received += 1
        self._last_heartbeat_time = now
        self._update_stability_score()

    def record_missed_heartbeat(self) -> None:
        self.missed_heartbeats += 1
        self._update_stability_score()

    def _update_stability_score(self) -> None:
        total = self.heartbeats_received + self.missed_heartbeats
        if total > 0:
            self.stability_score = self.heartbeats_received / total


@dataclass
class ClientConnection:
    """A connected client; times are ``time.monotonic()`` readings."""

    client_id: str
    state: ClientState = ClientState.CONNECTED
    metadata: dict[str, str] = field(default_factory=dict)
    subscription_count: int = 0
    messages_sent: int = 0
    messages_received: int = 0
    connection_quality: ConnectionQuality = field(default_factory=ConnectionQuality)
    connected_at: float = field(init=False)
    last_heartbeat: float = field(init=False)
    last_activity: float = field(init=False)

    def __post_init__(self) -> None:
        now = time.monotonic()
        self.connected_at = now
        self.last_heartbeat = now
        self.last_activity = now

    def update_heartbeat(self) -> None:
        self.last_heartbeat = time.monotonic()
        self.last_activity = self.last_heartbeat
        self.connection_quality.record_heartbeat()

    def update_activity(self) -> None:
        self.last_activity = time.monotonic()

    def increment_messages_sent(self) -> None:
        self.messages_sent += 1
        self.update_activity()

    def increment_messages_received(self) -> None:
        self.messages_received += 1
        self.update_activity()

    def is_healthy(self, heartbeat_timeout: float) -> bool:
        """Connected and heard from within ``heartbeat_timeout`` seconds."""
        if self.state is not ClientState.CONNECTED:
            return False
        return time.monotonic() - self.last_heartbeat <= heartbeat_timeout

    def connection_duration(self) -> float:
        return time.monotonic() - self.connected_at

    def idle_duration(self) -> float:
        return time.monotonic() - self.last_activity

    def add_metadata(self, key: str, value: str) -> None:
        self.metadata[key] = value


class DisconnectionKind(Enum):
    """Why a client was disconnected."""

    CLIENT_INITIATED = "client initiated"
    SERVER_INITIATED = "server initiated"
    TIMEOUT = "timeout"
    CONNECTION_ERROR = "connection error"
    MAX_CONNECTIONS_EXCEEDED = "max connections exceeded"
    AUTHENTICATION_FAILURE = "authentication failure"
    PROTOCOL_VIOLATION = "protocol violation"


@dataclass(frozen=True)
class DisconnectionReason:
    """A disconnection kind with an optional detail message."""

    kind: DisconnectionKind
    detail: Optional[str] = None

    def __str__(self) -> str:
        if self.kind in (
            DisconnectionKind.CONNECTION_ERROR,
            DisconnectionKind.PROTOCOL_VIOLATION,
        ):
            return f"{self.kind.value}: {self.detail or ''}"
        return self.kind.value


@dataclass(frozen=True)
class DisconnectionEvent:
    """A record of a client leaving; durations in seconds."""

    client_id: str
    reason: DisconnectionReason
    timestamp: float
    connection_duration: float
    messages_sent: int
    messages_received: int
    subscription_count: int


@dataclass
class ClientManagerConfig:
    """Client manager limits; all durations are in seconds."""

    max_clients: int = 1000
    heartbeat_timeout: float = 60.0
    health_check_interval: float = 30.0
    disconnection_grace_period: float = 10.0
    max_idle_time: float = 300.0
    track_connection_quality: bool = True