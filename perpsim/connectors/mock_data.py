"""Synthetic market data used when the exchange cannot be reached."""

from __future__ import annotations

import time

import numpy as np

from perpsim.models import Candle, OrderBookLevel, OrderBookSnapshot

HOUR_MS = 60 * 60 * 1000
CANDLE_VOLATILITY = 0.015
MOCK_BOOK_LEVELS = 15

_BASE_PRICES = (
    ("BTC", 60_000.0),
    ("ETH", 3_000.0),
    ("SOL", 150.0),
    ("PEPE", 0.00001),
    ("DOGE", 0.15),
)


def base_price(symbol: str) -> float:
    """Seed price for a symbol; 100 for anything unrecognised."""
    upper = symbol.upper()
    for asset, price in _BASE_PRICES:
        if asset in upper:
            return price
    return 100.0


def generate_mock_candles(
    symbol: str,
    limit: int,
    rng: np.random.Generator | None = None,
    end_ms: int | None = None,
    interval_ms: int = HOUR_MS,
) -> list[Candle]:
    """Random walk of ``limit`` candles ending just before ``end_ms``."""
    rng = rng or np.random.default_rng()
    end_ms = end_ms if end_ms is not None else int(time.time() * 1000)
    price = base_price(symbol)
    candles: list[Candle] = []
    for i in range(limit, 0, -1):
        volatility = price * CANDLE_VOLATILITY
        change = (rng.random() - 0.5) * volatility
        open_ = price
        close = price + change
        high = max(open_, close) + rng.random() * volatility * 0.5
        low = min(open_, close) - rng.random() * volatility * 0.5
        candles.append(
            Candle(
                time=end_ms - i * interval_ms,
                open=open_,
                high=high,
                low=low,
                close=close,
                volume=float(rng.random() * 5000 + 500),
            )
        )
        price = close
    return candles


def generate_mock_order_book(
    symbol: str,
    rng: np.random.Generator | None = None,
    levels: int = MOCK_BOOK_LEVELS,
    mid_price: float | None = None,
) -> OrderBookSnapshot:
    """Symmetric ladder around the mid price with random level sizes."""
    rng = rng or np.random.default_rng()
    price = mid_price or base_price(symbol)
    bid_amounts = rng.random(levels) * 5 + 0.1
    ask_amounts = rng.random(levels) * 5 + 0.1
    bid_totals = np.cumsum(bid_amounts)
    ask_totals = np.cumsum(ask_amounts)
    step = price * 0.0001
    best_bid = price * 0.9995
    best_ask = price * 1.0005

    bids = [
        OrderBookLevel(
            price=best_bid - i * step,
            amount=float(bid_amounts[i]),
            total=float(bid_totals[i]),
            depth_percent=float(bid_totals[i] / bid_totals[-1] * 100),
        )
        for i in range(levels)
    ]
    asks = [
        OrderBookLevel(
            price=best_ask + i * step,
            amount=float(ask_amounts[i]),
            total=float(ask_totals[i]),
            depth_percent=float(ask_totals[i] / ask_totals[-1] * 100),
        )
        for i in range(levels)
    ]
    spread = best_ask - best_bid
    return OrderBookSnapshot(bids=bids, asks=asks, spread=spread, spread_percent=spread / best_ask * 100)


class SyntheticTicker:
    """Deterministic (when seeded) random-walk price source."""

    def __init__(
        self,
        start_price: float,
        volatility_pct: float = 0.05,
        seed: int | None = None,
    ) -> None:
        self.price = start_price
        self.volatility = volatility_pct / 100
        self._rng = np.random.default_rng(seed)

    def next_price(self) -> float:
        step = self._rng.normal(0.0, self.volatility)
        self.price = max(self.price * (1 + step), 1e-12)
        return self.price
