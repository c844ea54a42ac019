"""Configuration and performance counters for the snapshot service."""

from __future__ import annotations

from dataclasses import asdict, dataclass


@dataclass
class SnapshotConfig:
    """Snapshot service settings; intervals are in seconds."""

    snapshot_interval: float = 0.005
    max_batch_size: int = 1000
    write_timeout: float = 0.1
    broadcast_enabled: bool = True
    persistence_enabled: bool = True


def _moving_average(current: int, sample: int) -> int:
    return sample if current == 0 else (current * 9 + sample) // 10


@dataclass
class SnapshotMetrics:
    """Counters and moving averages describing snapshot activity."""

    total_snapshots: int = 0
    orderbook_snapshots: int = 0
    trade_snapshots: int = 0
    database_writes: int = 0
    client_broadcasts: int = 0
    failed_operations: int = 0
    last_snapshot_time: int = 0
    avg_capture_time_ns: int = 0
    avg_write_time_ns: int = 0

    def to_map(self) -> dict[str, int]:
        return asdict(self)

    def update_capture_time(self, seconds: float) -> None:
        """Fold a capture duration into the moving average."""
        self.avg_capture_time_ns = _moving_average(
            self.avg_capture_time_ns, round(seconds * 1e9)
        )

    def update_write_time(self, seconds: float) -> None:
        """Fold a database write duration into the moving average."""
        self.avg_write_time_ns = _moving_average(
            self.avg_write_time_ns, round(seconds * 1e9)
        )