import asyncio
import time

import pytest

from ravenfeed.citadel import Citadel, CitadelConfig
from ravenfeed.ingest import (
    MarketDataMessage,
    OrderBookUpdate,
    TradeUpdate,
    run_orderbook_ingestor,
    run_trade_ingestor,
)
from ravenfeed.storage import Exchange, HighFrequencyStorage, TradeSide, hash_trade_id


class RecordingWriter:
    def __init__(self, fail=False):
        self.orderbooks = []
        self.trades = []
        self.fail = fail

    async def write_orderbook_snapshot(self, snapshot):
        if self.fail:
            raise OSError("database down")
        self.orderbooks.append(snapshot)

    async def write_trade_snapshot(self, snapshot):
        if self.fail:
            raise OSError("database down")
        self.trades.append(snapshot)


def now_ms():
    return time.time_ns() // 1_000_000


def book(symbol, bid=45000.0, ask=45001.0, exchange=Exchange.BINANCE_FUTURES):
    return MarketDataMessage(
        exchange=exchange,
        symbol=symbol,
        timestamp=now_ms(),
        data=OrderBookUpdate(bids=[(bid, 1.5)], asks=[(ask, 1.2)]),
    )


def trade(symbol, trade_id="t-1", side=TradeSide.SELL, price=45000.5):
    return MarketDataMessage(
        exchange=Exchange.BINANCE_FUTURES,
        symbol=symbol,
        timestamp=now_ms(),
        data=TradeUpdate(price=price, size=0.1, side=side, trade_id=trade_id),
    )


def queue_of(*messages):
    queue = asyncio.Queue()
    for message in messages:
        queue.put_nowait(message)
    queue.put_nowait(None)
    return queue


@pytest.mark.asyncio
async def test_orderbook_updates_are_sequenced_and_written():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(book("BTCUSDT"), book("BTCUSDT", bid=45002.0, ask=45003.0))

    await run_orderbook_ingestor(queue, storage, citadel)

    snapshot = storage.orderbook_snapshot("BTCUSDT", Exchange.BINANCE_FUTURES)
    assert snapshot.sequence == 2
    assert snapshot.best_bid_price == 45002.0
    assert snapshot.best_ask_price == 45003.0
    assert [s.sequence for s in writer.orderbooks] == [1, 2]
    assert citadel.metrics.total_written == 2


@pytest.mark.asyncio
async def test_sequences_are_per_symbol():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(book("BTCUSDT"), book("ETHUSDT", bid=3000.0, ask=3000.5), book("BTCUSDT"))

    await run_orderbook_ingestor(queue, storage, citadel)

    assert storage.orderbook_snapshot("BTCUSDT", Exchange.BINANCE_FUTURES).sequence == 2
    assert storage.orderbook_snapshot("ETHUSDT", Exchange.BINANCE_FUTURES).sequence == 1
    assert sorted(storage.orderbook_keys()) == [
        "binance_futures:BTCUSDT",
        "binance_futures:ETHUSDT",
    ]


@pytest.mark.asyncio
async def test_orderbook_channel_ignores_trades():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(trade("BTCUSDT"))

    await run_orderbook_ingestor(queue, storage, citadel)

    assert storage.orderbook_keys() == []
    assert storage.trade_keys() == []
    assert citadel.metrics.total_ingested == 0
    assert queue.empty()


@pytest.mark.asyncio
async def test_validation_failure_does_not_stop_orderbook_loop():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(book("DOGEUSDT", bid=0.1, ask=0.1001), book("BTCUSDT"))

    await run_orderbook_ingestor(queue, storage, citadel)

    assert storage.orderbook_snapshot("DOGEUSDT", Exchange.BINANCE_FUTURES) is not None
    assert citadel.metrics.validation_errors == 1
    assert [s.symbol for s in writer.orderbooks] == ["BTCUSDT"]


@pytest.mark.asyncio
async def test_trade_updates_are_stored_and_written():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(trade("BTCUSDT", trade_id="t-1"))

    await run_trade_ingestor(queue, storage, citadel)

    snapshot = storage.trade_snapshot("BTCUSDT", Exchange.BINANCE_FUTURES)
    assert snapshot.side is TradeSide.SELL
    assert snapshot.price == 45000.5
    assert snapshot.quantity == 0.1
    assert len(writer.trades) == 1
    assert writer.trades[0].trade_id == hash_trade_id("t-1")
    assert citadel.metrics.total_written == 1


@pytest.mark.asyncio
async def test_trade_channel_ignores_orderbooks():
    storage = HighFrequencyStorage()
    writer = RecordingWriter()
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(book("BTCUSDT"), trade("BTCUSDT", side=TradeSide.BUY))

    await run_trade_ingestor(queue, storage, citadel)

    assert storage.orderbook_keys() == []
    assert storage.trade_keys() == ["binance_futures:BTCUSDT"]
    assert storage.trade_snapshot("BTCUSDT", Exchange.BINANCE_FUTURES).side is TradeSide.BUY


@pytest.mark.asyncio
async def test_write_failure_is_counted_and_loop_continues():
    storage = HighFrequencyStorage()
    writer = RecordingWriter(fail=True)
    citadel = Citadel(CitadelConfig(), writer)
    queue = queue_of(trade("BTCUSDT", trade_id="a"), trade("BTCUSDT", trade_id="b"))

    await run_trade_ingestor(queue, storage, citadel)

    assert citadel.metrics.total_failed == 2
    assert citadel.metrics.total_written == 0
    assert storage.trade_snapshot("BTCUSDT", Exchange.BINANCE_FUTURES).trade_id == hash_trade_id("b")