"""Validation, sanitisation and persistence of incoming market data."""

from __future__ import annotations

import json
import logging
import math
import time
from collections import Counter
from dataclasses import asdict, dataclass, field, replace
from typing import Any

from .storage import (
    Exchange,
    OrderBookData,
    OrderBookSnapshot,
    TradeData,
    TradeSnapshot,
)
from .streaming import SnapshotWriter

logger = logging.getLogger(__name__)

_ROUNDING_SCALE = 100_000_000.0


class DataValidationError(ValueError):
    """Market data failed a validation rule."""


class DatabaseWriteError(RuntimeError):
    """Validated market data could not be written."""


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _round_half_away(value: float) -> float:
    return math.copysign(math.floor(abs(value) + 0.5), value)


@dataclass
class CitadelConfig:
    """Settings for the validation engine."""

    strict_validation: bool = True
    max_price_deviation: float = 10.0
    max_quantity: float = 1_000_000.0
    min_price: float = 0.00000001
    max_price: float = 1_000_000.0
    enable_sanitization: bool = True
    max_data_age_seconds: int = 300
    enable_dead_letter_queue: bool = True


@dataclass
class ValidationRules:
    """Limits that incoming order books and trades must respect."""

    min_price: float = 0.00000001
    max_price: float = 1_000_000.0
    min_quantity: float = 0.00000001
    max_quantity: float = 1_000_000.0
    max_spread_percentage: float = 5.0
    max_price_deviation: float = 10.0
    required_fields: list[str] = field(
        default_factory=lambda: ["symbol", "timestamp", "exchange"]
    )
    allowed_exchanges: list[Exchange] = field(
        default_factory=lambda: [Exchange.BINANCE_SPOT, Exchange.BINANCE_FUTURES]
    )
    allowed_symbols: list[str] = field(
        default_factory=lambda: ["BTCUSDT", "ETHUSDT", "ADAUSDT"]
    )


@dataclass
class CitadelMetrics:
    """Counters describing what the engine has processed."""

    total_ingested: int = 0
    total_validated: int = 0
    total_written: int = 0
    total_failed: int = 0
    validation_errors: int = 0
    sanitization_fixes: int = 0
    dead_letter_entries: int = 0


@dataclass(frozen=True)
class _DeadLetter:
    symbol: str
    data: str
    error: str
    timestamp: int


class Citadel:
    """Validates, optionally sanitises and writes order books and trades."""

    def __init__(
        self,
        config: CitadelConfig | None,
        writer: SnapshotWriter,
        subscription_manager: Any = None,
    ) -> None:
        self._config = config if config is not None else CitadelConfig()
        logger.info("Initializing Citadel with config: %s", self._config)
        self._writer = writer
        self._subscription_manager = subscription_manager
        self._rules = ValidationRules()
        self._dead_letters: list[_DeadLetter] = []
        self.metrics = CitadelMetrics()

    @property
    def config(self) -> CitadelConfig:
        return self._config

    @property
    def validation_rules(self) -> ValidationRules:
        """A copy of the rules currently in force."""
        return replace(self._rules)

    def update_validation_rules(self, rules: ValidationRules) -> None:
        self._rules = rules
        logger.info("Updated validation rules")

    def _check_origin(
        self, rules: ValidationRules, symbol: str, exchange: Exchange, timestamp: int
    ) -> None:
        if rules.allowed_symbols and symbol not in rules.allowed_symbols:
            raise DataValidationError(f"Symbol {symbol} not in allowed list")
        if rules.allowed_exchanges and exchange not in rules.allowed_exchanges:
            raise DataValidationError(f"Exchange {exchange} not in allowed list")
        if _now_ms() - timestamp > self._config.max_data_age_seconds * 1000:
            raise DataValidationError("Data too old")

    @staticmethod
    def _check_levels(
        rules: ValidationRules, levels: list[tuple[float, float]], side: str
    ) -> None:
        for price, quantity in levels:
            if price < rules.min_price or price > rules.max_price:
                raise DataValidationError(f"{side} price {price} out of range")
            if quantity < rules.min_quantity or quantity > rules.max_quantity:
                raise DataValidationError(f"{side} quantity {quantity} out of range")

    def validate_orderbook_data(self, symbol: str, data: OrderBookData) -> OrderBookData:
        """Return a copy of the order book, or raise DataValidationError."""
        rules = self._rules
        self._check_origin(rules, data.symbol, data.exchange, data.timestamp)
        self._check_levels(rules, data.bids, "Bid")
        self._check_levels(rules, data.asks, "Ask")
        if data.bids and data.asks:
            best_bid = data.bids[0][0]
            best_ask = data.asks[0][0]
            spread_percentage = (best_ask - best_bid) / best_bid * 100.0
            if spread_percentage > rules.max_spread_percentage:
                raise DataValidationError(f"Spread too wide: {spread_percentage:.2f}%")
        logger.debug("Orderbook data validation passed for %s", symbol)
        return replace(data, bids=list(data.bids), asks=list(data.asks))

    def validate_trade_data(self, symbol: str, data: TradeData) -> TradeData:
        """Return a copy of the trade, or raise DataValidationError."""
        rules = self._rules
        self._check_origin(rules, data.symbol, data.exchange, data.timestamp)
        if data.price < rules.min_price or data.price > rules.max_price:
            raise DataValidationError(f"Price {data.price} out of range")
        if data.quantity < rules.min_quantity or data.quantity > rules.max_quantity:
            raise DataValidationError(f"Quantity {data.quantity} out of range")
        logger.debug("Trade data validation passed for %s", symbol)
        return replace(data)

    def round_price(self, price: float) -> float:
        """Round to 8 decimal places, halves away from zero."""
        return _round_half_away(price * _ROUNDING_SCALE) / _ROUNDING_SCALE

    def round_quantity(self, quantity: float) -> float:
        """Round to 8 decimal places, halves away from zero."""
        return _round_half_away(quantity * _ROUNDING_SCALE) / _ROUNDING_SCALE

    def sanitize_orderbook_data(self, data: OrderBookData) -> OrderBookData:
        """Normalise the symbol and round every level to 8 decimals."""
        sanitized = replace(
            data,
            symbol=data.symbol.strip().upper(),
            bids=[(self.round_price(p), self.round_quantity(q)) for p, q in data.bids],
            asks=[(self.round_price(p), self.round_quantity(q)) for p, q in data.asks],
        )
        logger.debug("Sanitized orderbook data for %s", sanitized.symbol)
        return sanitized

    def add_to_dead_letter_queue(self, symbol: str, data: str, error: str) -> None:
        """Record data that could not be processed."""
        logger.debug("Adding to dead letter queue: %s - %s", symbol, error)
        self._dead_letters.append(_DeadLetter(symbol, data, error, _now_ms()))
        self.metrics.dead_letter_entries += 1

    def dead_letter_queue_status(self) -> dict[str, int]:
        """Total entries plus a ``<symbol>_entries`` count per symbol."""
        status = {"total_entries": len(self._dead_letters)}
        counts = Counter(entry.symbol for entry in self._dead_letters)
        status.update({f"{symbol}_entries": n for symbol, n in counts.items()})
        return status

    def _reject(self, symbol: str, data: Any, error: DataValidationError) -> None:
        self.metrics.validation_errors += 1
        self.metrics.total_failed += 1
        if self._config.enable_dead_letter_queue:
            self.add_to_dead_letter_queue(symbol, json.dumps(asdict(data)), str(error))

    async def process_orderbook_data(self, symbol: str, data: OrderBookData) -> None:
        """Validate, sanitise and write an order book update."""
        self.metrics.total_ingested += 1
        try:
            validated = self.validate_orderbook_data(symbol, data)
        except DataValidationError as exc:
            self._reject(symbol, data, exc)
            raise
        self.metrics.total_validated += 1

        final = validated
        if self._config.enable_sanitization:
            try:
                final = self.sanitize_orderbook_data(validated)
            except Exception as exc:
                logger.warning("Sanitization failed for %s: %s", symbol, exc)
            else:
                self.metrics.sanitization_fixes += 1

        try:
            await self._writer.write_orderbook_snapshot(OrderBookSnapshot.from_data(final))
        except Exception as exc:
            self.metrics.total_failed += 1
            logger.error("Failed to write orderbook data for %s: %s", symbol, exc)
            raise DatabaseWriteError(str(exc)) from exc
        self.metrics.total_written += 1

    async def process_trade_data(self, symbol: str, data: TradeData) -> None:
        """Validate and write a trade."""
        self.metrics.total_ingested += 1
        try:
            validated = self.validate_trade_data(symbol, data)
        except DataValidationError as exc:
            self._reject(symbol, data, exc)
            raise
        self.metrics.total_validated += 1

        try:
            await self._writer.write_trade_snapshot(TradeSnapshot.from_data(validated))
        except Exception as exc:
            self.metrics.total_failed += 1
            logger.error("Failed to write trade data for %s: %s", symbol, exc)
            raise DatabaseWriteError(str(exc)) from exc
        self.metrics.total_written += 1

    def metrics_map(self) -> dict[str, int]:
        return asdict(self.metrics)