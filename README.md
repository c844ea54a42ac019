# ravenfeed

A library for taking in live market data. It checks the data, keeps the
latest state for each symbol and exchange, takes periodic snapshots of that
state for persistence and for subscribers, and keeps track of connected
clients.

## Modules

- `ravenfeed.storage` holds the data records `OrderBookData`, `TradeData`,
  `CandleData`, `TickerData` and `FundingRateData`, and the enums `Exchange`
  (`BINANCE_SPOT`, `BINANCE_FUTURES`) and `TradeSide` (`BUY`, `SELL`).
  `TradeSide.parse` reads a side case-insensitively and treats anything it
  does not recognise as a buy. `OrderBookSnapshot.from_data` and
  `TradeSnapshot.from_data` build snapshots from records. `HighFrequencyStorage`
  keeps an `AtomicOrderBook` (best bid and best ask) and an `AtomicTrade`
  (latest trade) for each `"exchange:symbol"` key, and its state is guarded
  by locks. Prices and quantities are stored as integers at 8 decimal places.
  See `price_to_atomic`, `atomic_to_price`, `quantity_to_atomic` and
  `atomic_to_quantity`. `hash_trade_id` turns a trade identifier into a
  deterministic 64-bit integer.
- `ravenfeed.snapshot_metrics` provides `SnapshotConfig`, whose intervals
  are in seconds, and `SnapshotMetrics`, which holds counters and moving
  averages of capture and write times.
- `ravenfeed.streaming` provides `SnapshotService`. On every interval it
  reads all stored books and trades. If broadcasting is enabled, it sends
  each one as an `OrderBookMessage` or `TradeMessage` to a distributor. If
  persistence is enabled, it batches each one (`SnapshotBatch`) and flushes
  the batch to a writer. The batch is flushed when it reaches
  `max_batch_size`, every `write_timeout` seconds, on `force_flush()` and on
  `stop()`. `parse_storage_key` splits a storage key into exchange and symbol.
- `ravenfeed.citadel` provides `Citadel`, which checks order books and
  trades against `ValidationRules`. The rules cover allowed symbols and
  exchanges, data age, price and quantity ranges, and order book spread.
  Order books can then be sanitised: the symbol is trimmed and upper-cased,
  and levels are rounded to 8 decimals. The result is written as a snapshot.
  Rejected data raises `DataValidationError` and is recorded in an in-memory
  dead letter list. A failed write raises `DatabaseWriteError`. Counters are
  available from `metrics_map()`.
- `ravenfeed.ingest` provides `run_orderbook_ingestor` and
  `run_trade_ingestor`. Each reads `MarketDataMessage` items, carrying an
  `OrderBookUpdate` or a `TradeUpdate`, from an `asyncio.Queue` until it
  receives `None`. Each message is stored and then passed to a `Citadel`.
  Order books get a sequence number per symbol that starts at 1.
- `ravenfeed.connections` holds `ClientConnection`, `ConnectionQuality`,
  `ClientState`, `DisconnectionReason` (a `DisconnectionKind` with an
  optional detail), `DisconnectionEvent` and `ClientManagerConfig`. All
  durations are in seconds.
- `ravenfeed.client_manager` provides `ClientManager`. It registers clients
  up to `max_clients`, tracks heartbeats, activity and message counts, and
  flags stale or idle clients. A disconnected client is removed after a
  grace period. The manager records disconnection events, keeping the last
  1000, and reports statistics. Registering past the limit raises
  `MaxConnectionsExceededError`. Using an unknown client raises
  `ClientNotFoundError`.

## Installing

```
pip install ravenfeed
```

## Examples

Storing and reading the top of the book:

```python
from ravenfeed.storage import Exchange, HighFrequencyStorage, OrderBookData

storage = HighFrequencyStorage()
storage.update_orderbook(
    OrderBookData(
        symbol="BTCUSDT",
        timestamp=1640995200000,
        bids=[(45000.0, 1.5)],
        asks=[(45001.0, 1.2)],
        sequence=12345,
        exchange=Exchange.BINANCE_SPOT,
    )
)
snapshot = storage.orderbook_snapshot("BTCUSDT", Exchange.BINANCE_SPOT)
print(snapshot.best_bid_price, snapshot.best_ask_price)  # 45000.0 45001.0
print(storage.orderbook_keys())                           # ['binance_spot:BTCUSDT']
```

Feeding trades through a `Citadel`. The writer can be any object with async
`write_orderbook_snapshot` and `write_trade_snapshot` methods:

```python
import asyncio
import time

from ravenfeed.citadel import Citadel
from ravenfeed.ingest import MarketDataMessage, TradeUpdate, run_trade_ingestor
from ravenfeed.storage import Exchange, HighFrequencyStorage, TradeSide


class PrintWriter:
    async def write_orderbook_snapshot(self, snapshot):
        print("book", snapshot)

    async def write_trade_snapshot(self, snapshot):
        print("trade", snapshot)


async def main():
    storage = HighFrequencyStorage()
    citadel = Citadel(None, PrintWriter())
    queue = asyncio.Queue()
    await queue.put(
        MarketDataMessage(
            exchange=Exchange.BINANCE_FUTURES,
            symbol="BTCUSDT",
            timestamp=time.time_ns() // 1_000_000,
            data=TradeUpdate(price=45000.5, size=0.1, side=TradeSide.BUY, trade_id="t1"),
        )
    )
    await queue.put(None)
    await run_trade_ingestor(queue, storage, citadel)
    print(citadel.metrics_map()["total_written"])  # 1


asyncio.run(main())
```

Managing clients. Disconnection schedules background work, so it must run
inside an event loop:

```python
import asyncio

from ravenfeed.client_manager import ClientManager
from ravenfeed.connections import (
    ClientManagerConfig,
    DisconnectionKind,
    DisconnectionReason,
)


async def main():
    manager = ClientManager(ClientManagerConfig(max_clients=2, disconnection_grace_period=0.1))
    await manager.start_disconnection_processing()
    manager.register_client("client-1")
    manager.update_heartbeat("client-1")
    manager.add_client_metadata("client-1", "ip", "127.0.0.1")
    print(manager.client_stats())
    manager.disconnect_client(
        "client-1", DisconnectionReason(DisconnectionKind.CLIENT_INITIATED)
    )
    await manager.shutdown_all_clients()
    print(manager.client_count())  # 0


asyncio.run(main())
```

## What it does not do

- It has no database client. Snapshots go to whatever writer you pass in.
- It has no network server and no subscription registry. Broadcast
  messages go to whatever distributor you pass to `SnapshotService`, which
  needs a `distribute_message(symbol, data_type, message)` method.
- It has no exchange connections. You fill the ingest queues yourself.
- The dead letter list in `Citadel` lives only in memory and is never
  retried or saved.
- It has no command-line program.

## Running the tests

```
pip install "ravenfeed[test]"
pytest
```