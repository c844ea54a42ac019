import time
from unittest import mock

from ravenfeed.connections import (
    ClientConnection,
    ClientManagerConfig,
    ClientState,
    ConnectionQuality,
    DisconnectionKind,
    DisconnectionReason,
)


def test_connection_quality():
    quality = ConnectionQuality()

    quality.record_heartbeat()
    assert quality.heartbeats_received == 1
    assert quality.stability_score == 1.0

    quality.record_missed_heartbeat()
    assert quality.missed_heartbeats == 1
    assert quality.stability_score == 0.5


def test_average_interval_uses_recent_heartbeats():
    quality = ConnectionQuality()
    with mock.patch("time.monotonic", side_effect=[0.0, 2.0, 6.0]):
        quality.record_heartbeat()
        assert quality.avg_heartbeat_interval == 30.0
        quality.record_heartbeat()
        quality.record_heartbeat()
    assert quality.avg_heartbeat_interval == 3.0
    assert quality.heartbeats_received == 3


def test_average_interval_window_is_bounded():
    quality = ConnectionQuality()
    readings = [0.0, 100.0] + [100.0 + 5.0 * n for n in range(1, 11)]
    with mock.patch("time.monotonic", side_effect=readings):
        for _ in readings:
            quality.record_heartbeat()
    assert quality.avg_heartbeat_interval == 5.0


def test_new_connection_defaults():
    client = ClientConnection("test-client")
    assert client.client_id == "test-client"
    assert client.state is ClientState.CONNECTED
    assert client.messages_sent == 0
    assert client.connected_at == client.last_heartbeat == client.last_activity


def test_heartbeat_update():
    client = ClientConnection("test-client")
    client.update_heartbeat()
    assert time.monotonic() - client.last_heartbeat < 1.0
    assert client.last_activity == client.last_heartbeat
    assert client.connection_quality.heartbeats_received == 1


def test_message_counters():
    client = ClientConnection("test-client")
    client.increment_messages_sent()
    client.increment_messages_received()
    assert client.messages_sent == 1
    assert client.messages_received == 1
    assert client.idle_duration() < 1.0


def test_metadata():
    client = ClientConnection("test-client")
    client.add_metadata("ip", "127.0.0.1")
    assert client.metadata["ip"] == "127.0.0.1"


def test_health_times_out():
    client = ClientConnection("test-client")
    assert client.is_healthy(0.1)
    time.sleep(0.15)
    assert not client.is_healthy(0.1)
    assert client.connection_duration() >= 0.15


def test_only_connected_clients_are_healthy():
    client = ClientConnection("test-client")
    for state in (ClientState.DISCONNECTING, ClientState.DISCONNECTED, ClientState.UNHEALTHY):
        client.state = state
        assert not client.is_healthy(60.0)


def test_state_strings():
    client = ClientConnection("test-client")
    assert str(client.state) == "connected"
    client.state = ClientState.UNHEALTHY
    assert not client.is_healthy(60.0)
    assert str(client.state) == "unhealthy"


def test_reason_strings():
    assert str(DisconnectionReason(DisconnectionKind.TIMEOUT)) == "timeout"
    assert (
        str(DisconnectionReason(DisconnectionKind.CONNECTION_ERROR, "boom"))
        == "connection error: boom"
    )
    assert (
        str(DisconnectionReason(DisconnectionKind.PROTOCOL_VIOLATION, "bad frame"))
        == "protocol violation: bad frame"
    )


def test_manager_config_defaults():
    config = ClientManagerConfig()
    assert config.max_clients == 1000
    assert config.heartbeat_timeout == 60.0
    assert config.max_idle_time == 300.0