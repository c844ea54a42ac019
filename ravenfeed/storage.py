"""Market data records, snapshots and lock-protected latest-value storage."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from enum import Enum

PRICE_SCALE = 100_000_000.0
QUANTITY_SCALE = 100_000_000.0

_U64_MAX = 2**64 - 1
_MASK64 = _U64_MAX


class Exchange(str, Enum):
    """Exchanges that market data can come from."""

    BINANCE_SPOT = "binance_spot"
    BINANCE_FUTURES = "binance_futures"

    def __str__(self) -> str:
        return self.value


class TradeSide(str, Enum):
    """Aggressor side of a trade."""

    BUY = "buy"
    SELL = "sell"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> "TradeSide":
        """Parse a side case-insensitively; anything unrecognised is a buy."""
        return cls.SELL if text.lower() == "sell" else cls.BUY


@dataclass
class OrderBookData:
    symbol: str
    timestamp: int
    bids: list[tuple[float, float]]
    asks: list[tuple[float, float]]
    sequence: int
    exchange: Exchange


@dataclass
class TradeData:
    symbol: str
    timestamp: int
    price: float
    quantity: float
    side: TradeSide
    trade_id: str
    exchange: Exchange


@dataclass
class CandleData:
    symbol: str
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    interval: str
    exchange: Exchange


@dataclass
class TickerData:
    symbol: str
    timestamp: int
    price: float
    weighted_average_price: float
    exchange: Exchange


@dataclass
class FundingRateData:
    symbol: str
    timestamp: int
    rate: float
    next_funding_time: int
    exchange: Exchange


def _to_scaled(value: float, scale: float) -> int:
    """Scale a float to an unsigned integer, truncating and saturating."""
    scaled = value * scale
    if math.isnan(scaled) or scaled <= 0:
        return 0
    if scaled >= 2.0**64:
        return _U64_MAX
    return int(scaled)


def price_to_atomic(price: float) -> int:
    return _to_scaled(price, PRICE_SCALE)


def atomic_to_price(atomic_price: int) -> float:
    return atomic_price / PRICE_SCALE


def quantity_to_atomic(quantity: float) -> int:
    return _to_scaled(quantity, QUANTITY_SCALE)


def atomic_to_quantity(atomic_quantity: int) -> float:
    return atomic_quantity / QUANTITY_SCALE


def _rotl(value: int, bits: int) -> int:
    return ((value << bits) | (value >> (64 - bits))) & _MASK64


def _siphash13(data: bytes, k0: int = 0, k1: int = 0) -> int:
    v0 = k0 ^ 0x736F6D6570736575
    v1 = k1 ^ 0x646F72616E646F6D
    v2 = k0 ^ 0x6C7967656E657261
    v3 = k1 ^ 0x7465646279746573

    def sipround() -> None:
        nonlocal v0, v1, v2, v3
        v0 = (v0 + v1) & _MASK64
        v1 = _rotl(v1, 13) ^ v0
        v0 = _rotl(v0, 32)
        v2 = (v2 + v3) & _MASK64
        v3 = _rotl(v3, 16) ^ v2
        v0 = (v0 + v3) & _MASK64
        v3 = _rotl(v3, 21) ^ v0
        v2 = (v2 + v1) & _MASK64
        v1 = _rotl(v1, 17) ^ v2
        v2 = _rotl(v2, 32)

    full = len(data) - len(data) % 8
    for offset in range(0, full, 8):
        word = int.from_bytes(data[offset:offset + 8], "little")
        v3 ^= word
        sipround()
        v0 ^= word

    tail = int.from_bytes(data[full:], "little")
    last = ((len(data) & 0xFF) << 56) | tail
    v3 ^= last
    sipround()
    v0 ^= last
    v2 ^= 0xFF
    for _ in range(3):
        sipround()
    return v0 ^ v1 ^ v2 ^ v3


def hash_trade_id(trade_id: str) -> int:
    """Deterministic 64-bit hash of a trade identifier (SipHash-1-3, zero keys)."""
    return _siphash13(trade_id.encode("utf-8") + b"\xff")


@dataclass
class OrderBookSnapshot:
    symbol: str
    exchange: Exchange
    timestamp: int
    best_bid_price: float
    best_bid_quantity: float
    best_ask_price: float
    best_ask_quantity: float
    sequence: int

    @classmethod
    def from_data(cls, data: OrderBookData) -> "OrderBookSnapshot":
        """Build a top-of-book snapshot; missing sides become zeros."""
        bid_price, bid_qty = data.bids[0] if data.bids else (0.0, 0.0)
        ask_price, ask_qty = data.asks[0] if data.asks else (0.0, 0.0)
        return cls(
            symbol=data.symbol,
            exchange=data.exchange,
            timestamp=data.timestamp,
            best_bid_price=bid_price,
            best_bid_quantity=bid_qty,
            best_ask_price=ask_price,
            best_ask_quantity=ask_qty,
            sequence=data.sequence,
        )


@dataclass
class TradeSnapshot:
    symbol: str
    exchange: Exchange
    timestamp: int
    price: float
    quantity: float
    side: TradeSide
    trade_id: int

    @classmethod
    def from_data(cls, data: TradeData) -> "TradeSnapshot":
        """Build a snapshot, hashing the trade identifier."""
        return cls(
            symbol=data.symbol,
            exchange=data.exchange,
            timestamp=data.timestamp,
            price=data.price,
            quantity=data.quantity,
            side=data.side,
            trade_id=hash_trade_id(data.trade_id),
        )


@dataclass
class AtomicOrderBook:
    """Latest top of book for one symbol, with prices held as scaled integers."""

    symbol: str
    exchange: Exchange
    timestamp: int = 0
    sequence: int = 0
    best_bid_price: int = 0
    best_bid_quantity: int = 0
    best_ask_price: int = 0
    best_ask_quantity: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def update_from_data(self, data: OrderBookData) -> None:
        with self._lock:
            self.timestamp = data.timestamp
            self.sequence = data.sequence
            if data.bids:
                price, qty = data.bids[0]
                self.best_bid_price = price_to_atomic(price)
                self.best_bid_quantity = quantity_to_atomic(qty)
            if data.asks:
                price, qty = data.asks[0]
                self.best_ask_price = price_to_atomic(price)
                self.best_ask_quantity = quantity_to_atomic(qty)

    def to_snapshot(self) -> OrderBookSnapshot:
        with self._lock:
            return OrderBookSnapshot(
                symbol=self.symbol,
                exchange=self.exchange,
                timestamp=self.timestamp,
                best_bid_price=atomic_to_price(self.best_bid_price),
                best_bid_quantity=atomic_to_quantity(self.best_bid_quantity),
                best_ask_price=atomic_to_price(self.best_ask_price),
                best_ask_quantity=atomic_to_quantity(self.best_ask_quantity),
                sequence=self.sequence,
            )

    def spread(self) -> float:
        """Best ask minus best bid."""
        with self._lock:
            return atomic_to_price(self.best_ask_price) - atomic_to_price(
                self.best_bid_price
            )


@dataclass
class AtomicTrade:
    """Latest trade for one symbol; side is 0 for buy and 1 for sell."""

    symbol: str
    exchange: Exchange
    timestamp: int = 0
    price: int = 0
    quantity: int = 0
    side: int = 0
    trade_id: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def update_from_data(self, data: TradeData) -> None:
        with self._lock:
            self.timestamp = data.timestamp
            self.price = price_to_atomic(data.price)
            self.quantity = quantity_to_atomic(data.quantity)
            self.side = 1 if data.side is TradeSide.SELL else 0
            self.trade_id = hash_trade_id(data.trade_id)

    def to_snapshot(self) -> TradeSnapshot:
        with self._lock:
            return TradeSnapshot(
                symbol=self.symbol,
                exchange=self.exchange,
                timestamp=self.timestamp,
                price=atomic_to_price(self.price),
                quantity=atomic_to_quantity(self.quantity),
                side=TradeSide.SELL if self.side == 1 else TradeSide.BUY,
                trade_id=self.trade_id,
            )

    def trade_value(self) -> float:
        """Price times quantity of the latest trade."""
        with self._lock:
            return atomic_to_price(self.price) * atomic_to_quantity(self.quantity)


class HighFrequencyStorage:
    """Latest order books and trades, keyed by ``"exchange:symbol"``."""

    def __init__(self) -> None:
        self.orderbooks: dict[str, AtomicOrderBook] = {}
        self.latest_trades: dict[str, AtomicTrade] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _key(symbol: str, exchange: Exchange) -> str:
        return f"{exchange}:{symbol}"

    def get_or_create_orderbook(self, symbol: str, exchange: Exchange) -> AtomicOrderBook:
        key = self._key(symbol, exchange)
        with self._lock:
            book = self.orderbooks.get(key)
            if book is None:
                book = AtomicOrderBook(symbol, exchange)
                self.orderbooks[key] = book
            return book

    def get_or_create_trade(self, symbol: str, exchange: Exchange) -> AtomicTrade:
        key = self._key(symbol, exchange)
        with self._lock:
            trade = self.latest_trades.get(key)
            if trade is None:
                trade = AtomicTrade(symbol, exchange)
                self.latest_trades[key] = trade
            return trade

    def update_orderbook(self, data: OrderBookData) -> None:
        self.get_or_create_orderbook(data.symbol, data.exchange).update_from_data(data)

    def update_trade(self, data: TradeData) -> None:
        self.get_or_create_trade(data.symbol, data.exchange).update_from_data(data)

    def orderbook_snapshot(self, symbol: str, exchange: Exchange) -> OrderBookSnapshot | None:
        with self._lock:
            book = self.orderbooks.get(self._key(symbol, exchange))
        return book.to_snapshot() if book is not None else None

    def trade_snapshot(self, symbol: str, exchange: Exchange) -> TradeSnapshot | None:
        with self._lock:
            trade = self.latest_trades.get(self._key(symbol, exchange))
        return trade.to_snapshot() if trade is not None else None

    def orderbook_keys(self) -> list[str]:
        with self._lock:
            return list(self.orderbooks)

    def trade_keys(self) -> list[str]:
        with self._lock:
            return list(self.latest_trades)