"""Pipelines that feed exchange market data into storage and the Citadel."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from .citadel import Citadel
from .storage import (
    Exchange,
    HighFrequencyStorage,
    OrderBookData,
    TradeData,
    TradeSide,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderBookUpdate:
    """Order book levels as (price, quantity) pairs, best first."""

    bids: list[tuple[float, float]]
    asks: list[tuple[float, float]]


@dataclass(frozen=True)
class TradeUpdate:
    """A single executed trade."""

    price: float
    size: float
    side: TradeSide
    trade_id: str


MarketData = Union[OrderBookUpdate, TradeUpdate]


@dataclass(frozen=True)
class MarketDataMessage:
    """A market data event as delivered by an exchange collector."""

    exchange: Exchange
    symbol: str
    timestamp: int
    data: MarketData


MessageQueue = "asyncio.Queue[Optional[MarketDataMessage]]"


async def _messages(queue: asyncio.Queue):
    """Yield messages until a ``None`` sentinel closes the queue."""
    while True:
        message = await queue.get()
        try:
            if message is None:
                return
            yield message
        finally:
            queue.task_done()


async def run_orderbook_ingestor(
    queue: asyncio.Queue,
    storage: HighFrequencyStorage,
    citadel: Citadel,
) -> None:
    """Consume order book messages until ``None`` is received.

    Each update gets a per-symbol sequence number starting at 1, is stored,
    then handed to the Citadel. Failures are logged and do not stop the loop.
    """
    sequences: dict[str, int] = {}
    async for message in _messages(queue):
        data = message.data
        if not isinstance(data, OrderBookUpdate):
            logger.warning(
                "Unexpected market data variant on order book channel: %r", data
            )
            continue

        symbol = message.symbol
        sequence = sequences.get(symbol, 0) + 1
        sequences[symbol] = sequence

        orderbook = OrderBookData(
            symbol=symbol,
            timestamp=message.timestamp,
            bids=list(data.bids),
            asks=list(data.asks),
            sequence=sequence,
            exchange=message.exchange,
        )

        try:
            storage.update_orderbook(orderbook)
        except Exception:
            logger.exception("Failed to ingest order book update for %s", symbol)

        try:
            await citadel.process_orderbook_data(symbol, orderbook)
        except Exception as exc:
            logger.error("Failed to process order book data for %s: %s", symbol, exc)


async def run_trade_ingestor(
    queue: asyncio.Queue,
    storage: HighFrequencyStorage,
    citadel: Citadel,
) -> None:
    """Consume trade messages until ``None`` is received.

    Each trade is stored, then handed to the Citadel. Failures are logged and
    do not stop the loop.
    """
    async for message in _messages(queue):
        data = message.data
        if not isinstance(data, TradeUpdate):
            logger.warning("Unexpected market data variant on trade channel: %r", data)
            continue

        symbol = message.symbol
        trade = TradeData(
            symbol=symbol,
            timestamp=message.timestamp,
            price=data.price,
            quantity=data.size,
            side=data.side,
            trade_id=data.trade_id,
            exchange=message.exchange,
        )

        try:
            storage.update_trade(trade)
        except Exception:
            logger.exception("Failed to ingest trade update for %s", symbol)

        try:
            await citadel.process_trade_data(symbol, trade)
        except Exception as exc:
            logger.error("Failed to process trade data for %s: %s", symbol, exc)