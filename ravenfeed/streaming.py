"""Periodic capture of stored market data for persistence and live fan-out."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Union

from .snapshot_metrics import SnapshotConfig, SnapshotMetrics
from .storage import Exchange, HighFrequencyStorage, OrderBookSnapshot, TradeSnapshot

logger = logging.getLogger(__name__)


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


class SubscriptionDataType(str, Enum):
    """Kinds of data a client can subscribe to."""

    ORDERBOOK = "orderbook"
    TRADES = "trades"


@dataclass(frozen=True)
class PriceLevel:
    price: float
    quantity: float


@dataclass(frozen=True)
class OrderBookMessage:
    """Top-of-book update sent to subscribers."""

    symbol: str
    timestamp: int
    bids: list[PriceLevel]
    asks: list[PriceLevel]
    sequence: int


@dataclass(frozen=True)
class TradeMessage:
    """Latest trade sent to subscribers."""

    symbol: str
    timestamp: int
    price: float
    quantity: float
    side: str
    trade_id: str


MarketDataPayload = Union[OrderBookMessage, TradeMessage]


class SnapshotWriter(Protocol):
    """Destination that persists snapshots."""

    async def write_orderbook_snapshot(self, snapshot: OrderBookSnapshot) -> None: ...

    async def write_trade_snapshot(self, snapshot: TradeSnapshot) -> None: ...


class MessageDistributor(Protocol):
    """Fans a message out to subscribed clients, returning how many received it."""

    def distribute_message(
        self, symbol: str, data_type: SubscriptionDataType, message: MarketDataPayload
    ) -> int: ...


def parse_storage_key(key: str) -> tuple[Exchange, str] | None:
    """Split an ``"exchange:symbol"`` storage key; None if it is malformed."""
    parts = key.split(":")
    if len(parts) != 2:
        return None
    exchange_name, symbol = parts
    try:
        exchange = Exchange(exchange_name)
    except ValueError:
        return None
    return exchange, symbol


def _orderbook_message(snapshot: OrderBookSnapshot) -> OrderBookMessage:
    return OrderBookMessage(
        symbol=snapshot.symbol,
        timestamp=snapshot.timestamp,
        bids=[PriceLevel(snapshot.best_bid_price, snapshot.best_bid_quantity)],
        asks=[PriceLevel(snapshot.best_ask_price, snapshot.best_ask_quantity)],
        sequence=snapshot.sequence,
    )


def _trade_message(snapshot: TradeSnapshot) -> TradeMessage:
    return TradeMessage(
        symbol=snapshot.symbol,
        timestamp=snapshot.timestamp,
        price=snapshot.price,
        quantity=snapshot.quantity,
        side=str(snapshot.side),
        trade_id=str(snapshot.trade_id),
    )


@dataclass
class SnapshotBatch:
    """Snapshots waiting to be written together."""

    orderbook_snapshots: list[OrderBookSnapshot] = field(default_factory=list)
    trade_snapshots: list[TradeSnapshot] = field(default_factory=list)
    timestamp: int = field(default_factory=_now_ms)

    def __len__(self) -> int:
        return len(self.orderbook_snapshots) + len(self.trade_snapshots)

    def add_orderbook_snapshot(self, snapshot: OrderBookSnapshot) -> None:
        self.orderbook_snapshots.append(snapshot)

    def add_trade_snapshot(self, snapshot: TradeSnapshot) -> None:
        self.trade_snapshots.append(snapshot)


class SnapshotService:
    """Captures storage on a fixed interval, broadcasts it and batches it to a writer."""

    def __init__(
        self,
        config: SnapshotConfig,
        storage: HighFrequencyStorage,
        writer: SnapshotWriter,
        distributor: MessageDistributor,
    ) -> None:
        logger.info(
            "Initializing snapshot service with %ss interval", config.snapshot_interval
        )
        self._config = config
        self._storage = storage
        self._writer = writer
        self._distributor = distributor
        self._running = False
        self._metrics = SnapshotMetrics()
        self._batch = SnapshotBatch()
        self._batch_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return self._running

    @property
    def config(self) -> SnapshotConfig:
        return self._config

    @property
    def metrics(self) -> SnapshotMetrics:
        return self._metrics

    def update_config(self, config: SnapshotConfig) -> None:
        """Replace the configuration; takes effect on the next start."""
        self._config = config
        logger.info("Snapshot service configuration updated")

    async def start(self) -> None:
        """Start the capture loop and, if persistence is on, the batch writer."""
        if self._running:
            logger.warning("Snapshot service is already running")
            return
        self._running = True
        logger.info(
            "Starting snapshot service, capturing every %ss",
            self._config.snapshot_interval,
        )
        self._tasks = [asyncio.create_task(self._snapshot_loop())]
        if self._config.persistence_enabled:
            self._tasks.append(asyncio.create_task(self._batch_writer_loop()))

    async def stop(self) -> None:
        """Stop the loops and flush whatever is still batched."""
        if not self._running:
            return
        logger.info("Stopping snapshot service")
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        if self._config.persistence_enabled:
            try:
                await self._flush_current_batch()
            except Exception as exc:
                logger.error("Failed to flush final batch: %s", exc)
        logger.info("Snapshot service stopped")

    async def _snapshot_loop(self) -> None:
        interval = self._config.snapshot_interval
        while self._running:
            started = time.perf_counter()
            try:
                count = await self.capture_snapshots()
            except Exception as exc:
                logger.error("Snapshot capture failed: %s", exc)
                self._metrics.failed_operations += 1
            else:
                elapsed = time.perf_counter() - started
                self._metrics.update_capture_time(elapsed)
                self._metrics.total_snapshots += count
                self._metrics.last_snapshot_time = int(time.time())
                if elapsed > interval / 2:
                    logger.warning(
                        "Snapshot capture took %.6fs, more than half the interval (%ss)",
                        elapsed,
                        interval,
                    )
            await asyncio.sleep(interval)

    async def _batch_writer_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._config.write_timeout)
            try:
                await self._flush_current_batch()
            except Exception as exc:
                logger.error("Batch write failed: %s", exc)
                self._metrics.failed_operations += 1

    def _broadcast(
        self, symbol: str, data_type: SubscriptionDataType, message: MarketDataPayload
    ) -> bool:
        try:
            sent = self._distributor.distribute_message(symbol, data_type, message)
        except Exception as exc:
            logger.error("Failed to broadcast %s snapshot for %s: %s", data_type.value, symbol, exc)
            return False
        logger.debug("Broadcast %s snapshot for %s to %d clients", data_type.value, symbol, sent)
        self._metrics.client_broadcasts += 1
        return True

    async def capture_snapshots(self) -> int:
        """Read every stored book and trade once; return how many were captured."""
        config = self._config
        count = 0
        orderbook_keys = self._storage.orderbook_keys()
        trade_keys = self._storage.trade_keys()
        logger.debug("Capturing orderbooks %s and trades %s", orderbook_keys, trade_keys)

        async with self._batch_lock:
            for key in orderbook_keys:
                parsed = parse_storage_key(key)
                if parsed is None:
                    continue
                exchange, symbol = parsed
                snapshot = self._storage.orderbook_snapshot(symbol, exchange)
                if snapshot is None:
                    continue
                if config.persistence_enabled:
                    self._batch.add_orderbook_snapshot(snapshot)
                if config.broadcast_enabled:
                    self._broadcast(
                        snapshot.symbol,
                        SubscriptionDataType.ORDERBOOK,
                        _orderbook_message(snapshot),
                    )
                count += 1
                self._metrics.orderbook_snapshots += 1

            for key in trade_keys:
                parsed = parse_storage_key(key)
                if parsed is None:
                    continue
                exchange, symbol = parsed
                snapshot = self._storage.trade_snapshot(symbol, exchange)
                if snapshot is None:
                    continue
                if config.persistence_enabled:
                    self._batch.add_trade_snapshot(snapshot)
                if config.broadcast_enabled:
                    self._broadcast(
                        snapshot.symbol,
                        SubscriptionDataType.TRADES,
                        _trade_message(snapshot),
                    )
                count += 1
                self._metrics.trade_snapshots += 1

            batch_full = len(self._batch) >= config.max_batch_size

        if batch_full:
            try:
                await self._flush_current_batch()
            except Exception as exc:
                logger.error("Failed to flush batch: %s", exc)
                self._metrics.failed_operations += 1
        return count

    async def _flush_current_batch(self) -> None:
        async with self._batch_lock:
            batch = self._batch
            if not batch:
                return
            started = time.perf_counter()
            size = len(batch)
            for snapshot in batch.orderbook_snapshots:
                try:
                    await self._writer.write_orderbook_snapshot(snapshot)
                except Exception as exc:
                    raise RuntimeError(
                        f"Failed to write orderbook snapshot for {snapshot.symbol}"
                    ) from exc
            for trade in batch.trade_snapshots:
                try:
                    await self._writer.write_trade_snapshot(trade)
                except Exception as exc:
                    raise RuntimeError(
                        f"Failed to write trade snapshot for {trade.symbol}"
                    ) from exc
            self._metrics.update_write_time(time.perf_counter() - started)
            self._metrics.database_writes += size
            logger.debug("Flushed batch of %d snapshots", size)
            self._batch = SnapshotBatch()

    async def force_flush(self) -> None:
        """Write the current batch now."""
        await self._flush_current_batch()

    async def current_batch_size(self) -> int:
        async with self._batch_lock:
            return len(self._batch)

    def metrics_map(self) -> dict[str, int]:
        return self._metrics.to_map()