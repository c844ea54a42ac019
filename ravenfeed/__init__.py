"""Market data storage, validation, snapshot streaming, ingestion and client management."""

__version__ = "0.1.0"

__all__ = [
    "storage",
    "snapshot_metrics",
    "streaming",
    "citadel",
    "ingest",
    "connections",
    "client_manager",
]