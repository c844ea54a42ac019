from ravenfeed.snapshot_metrics import SnapshotConfig, SnapshotMetrics


def test_snapshot_metrics_map():
    metrics = SnapshotMetrics()
    metrics.total_snapshots = 100
    metrics.orderbook_snapshots = 60
    metrics.trade_snapshots = 40
    result = metrics.to_map()
    assert result["total_snapshots"] == 100
    assert result["orderbook_snapshots"] == 60
    assert result["trade_snapshots"] == 40
    assert result["database_writes"] == 0


def test_metrics_map_keys():
    assert set(SnapshotMetrics().to_map()) == {
        "total_snapshots",
        "orderbook_snapshots",
        "trade_snapshots",
        "database_writes",
        "client_broadcasts",
        "failed_operations",
        "last_snapshot_time",
        "avg_capture_time_ns",
        "avg_write_time_ns",
    }


def test_capture_time_moving_average():
    metrics = SnapshotMetrics()
    metrics.update_capture_time(0.000001)
    assert metrics.avg_capture_time_ns == 1000
    metrics.update_capture_time(0.000002)
    assert metrics.avg_capture_time_ns == 1100


def test_write_time_moving_average():
    metrics = SnapshotMetrics()
    metrics.update_write_time(0.00001)
    assert metrics.avg_write_time_ns == 10000
    metrics.update_write_time(0.0)
    assert metrics.avg_write_time_ns == 9000
    assert metrics.avg_capture_time_ns == 0


def test_snapshot_config_defaults():
    config = SnapshotConfig()
    assert config.snapshot_interval == 0.005
    assert config.max_batch_size == 1000
    assert config.write_timeout == 0.1
    assert config.broadcast_enabled
    assert config.persistence_enabled


def test_snapshot_config_custom():
    config = SnapshotConfig(
        snapshot_interval=0.010,
        max_batch_size=500,
        write_timeout=0.050,
        broadcast_enabled=False,
        persistence_enabled=True,
    )
    assert config.snapshot_interval == 0.010
    assert config.max_batch_size == 500
    assert config.write_timeout == 0.050
    assert not config.broadcast_enabled
    assert config.persistence_enabled