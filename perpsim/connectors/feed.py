"""Market feed adapter: routes live or synthetic prices into the position engine."""

from __future__ import annotations

import asyncio
import time
import zlib
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Callable

import structlog

from perpsim.config.settings import FeedConfig
from perpsim.connectors.mock_data import SyntheticTicker, base_price
from perpsim.connectors.rest_client import MarketDataClient
from perpsim.connectors.ws_client import BinanceWebSocketClient, market_streams
from perpsim.ledger.events import EventType
from perpsim.models import Candle, OrderBookSnapshot, SentimentData
from perpsim.monitoring.metrics import Metrics
from perpsim.risk.engine import PositionEngine

_PRICE_EVENTS = {"aggTrade": "trade", "markPriceUpdate": "mark"}


@dataclass(frozen=True)
class MarketContext:
    """Everything the advisory engine sees for one symbol."""

    symbol: str
    price: float
    candles: list[Candle]
    order_book: OrderBookSnapshot
    sentiment: SentimentData


def parse_price_message(payload: dict[str, Any]) -> tuple[str, str, float] | None:
    """Extract ``(kind, symbol, price)`` from a raw or combined-stream message."""
    data = payload.get("data", payload)
    kind = _PRICE_EVENTS.get(data.get("e", ""))
    if kind is None or "p" not in data or "s" not in data:
        return None
    try:
        price = float(data["p"])
    except (TypeError, ValueError):
        return None
    return kind, str(data["s"]).upper(), price


def parse_kline_message(payload: dict[str, Any]) -> tuple[str, str, Candle] | None:
    """Extract ``(symbol, interval, candle)`` from a kline stream message."""
    data = payload.get("data", payload)
    kline = data.get("k")
    if data.get("e") != "kline" or not isinstance(kline, dict):
        return None
    try:
        candle = Candle(
            time=int(kline["t"]),
            open=float(kline["o"]),
            high=float(kline["h"]),
            low=float(kline["l"]),
            close=float(kline["c"]),
            volume=float(kline["v"]),
        )
    except (KeyError, TypeError, ValueError):
        return None
    symbol = str(data.get("s") or kline.get("s", "")).upper()
    return symbol, str(kline.get("i", "")), candle


def symbol_seed(seed: int | None, symbol: str) -> int | None:
    """Per-symbol seed so seeded synthetic walks differ between symbols."""
    if seed is None:
        return None
    return seed + zlib.crc32(symbol.upper().encode())


class MarketFeed:
    """Feeds ticks to ``PositionEngine.mark_to_market``.

    Live trade and mark-price messages are applied in arrival order. When no
    live message has arrived for a symbol within ``liveness_sec`` a seeded
    random walk takes over until the live stream recovers.

    Kline messages maintain a rolling candle buffer per symbol and interval:
    an update for the newest candle replaces it, a later open time appends.
    Once the buffer holds as many candles as a scan asks for, scans read it
    instead of pulling klines over REST.
    """

    def __init__(
        self,
        config: FeedConfig,
        engine: PositionEngine,
        rest: MarketDataClient,
        ws: BinanceWebSocketClient | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: Metrics | None = None,
    ) -> None:
        self.config = config
        self.engine = engine
        self.rest = rest
        self.ws = ws
        self.metrics = metrics
        self._clock = clock
        self._last_live: dict[str, float] = {}
        self._synthetic: dict[str, SyntheticTicker] = {}
        self._candles: dict[tuple[str, str], deque[Candle]] = {}
        self._stop = asyncio.Event()
        self.log = structlog.get_logger(__name__)

    async def handle_message(self, payload: dict[str, Any]) -> None:
        kline = parse_kline_message(payload)
        if kline is not None:
            self.on_candle(*kline)
            return
        parsed = parse_price_message(payload)
        if parsed is None:
            return
        kind, symbol, price = parsed
        self._last_live[symbol] = self._clock()
        self._synthetic.pop(symbol, None)
        await self.on_price(symbol, price, source=kind)

    async def on_price(self, symbol: str, price: float, source: str = "trade") -> None:
        if price <= 0:
            return
        await self.engine.bus.publish(
            EventType.PRICE_TICK, {"symbol": symbol, "price": price, "source": source}
        )
        await self.engine.mark_to_market(symbol, price)

    def on_candle(self, symbol: str, interval: str, candle: Candle) -> None:
        buffer = self._candles.setdefault(
            (symbol, interval), deque(maxlen=self.config.candle_buffer_size)
        )
        if buffer and candle.time < buffer[-1].time:
            return
        if buffer and candle.time == buffer[-1].time:
            buffer[-1] = candle
        else:
            buffer.append(candle)

    def candles(self, symbol: str, interval: str, limit: int | None = None) -> list[Candle]:
        items = list(self._candles.get((symbol, interval), ()))
        return items[-limit:] if limit else items

    def _seed_candles(self, symbol: str, interval: str, candles: list[Candle]) -> None:
        live = self._candles.get((symbol, interval), ())
        self._candles[(symbol, interval)] = deque(candles, maxlen=self.config.candle_buffer_size)
        for candle in live:
            self.on_candle(symbol, interval, candle)

    def is_live(self, symbol: str) -> bool:
        last = self._last_live.get(symbol)
        return last is not None and self._clock() - last <= self.config.liveness_sec

    def report_feed_age(self) -> None:
        if self.ws is None or self.metrics is None:
            return
        age = self.ws.last_message_age_sec()
        if age is not None:
            self.metrics.feed_last_message_age_sec.set(age)

    async def synthetic_tick(self, symbol: str) -> float:
        ticker = self._synthetic.get(symbol)
        if ticker is None:
            start = self.engine.last_price(symbol) or base_price(symbol)
            ticker = SyntheticTicker(
                start,
                volatility_pct=self.config.synthetic_volatility_pct,
                seed=symbol_seed(self.config.random_seed, symbol),
            )
            self._synthetic[symbol] = ticker
            self.log.info("synthetic_feed_started", symbol=symbol, start_price=start)
        price = ticker.next_price()
        await self.on_price(symbol, price, source="synthetic")
        return price

    async def watch(self, symbols: list[str]) -> None:
        """Substitute synthetic ticks for any symbol whose live stream has gone quiet."""
        while not self._stop.is_set():
            self.report_feed_age()
            for symbol in symbols:
                if not self.is_live(symbol):
                    await self.synthetic_tick(symbol)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.synthetic_tick_interval_sec)
            except asyncio.TimeoutError:
                continue

    async def run(self, symbols: list[str], interval: str | None = None) -> None:
        symbols = [s.upper() for s in symbols]
        tasks = [asyncio.create_task(self.watch(symbols))]
        if self.ws is not None:
            streams = market_streams(symbols, interval)
            tasks.append(asyncio.create_task(self.ws.run(streams, self.handle_message)))
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()

    def stop(self) -> None:
        self._stop.set()
        if self.ws is not None:
            self.ws.stop()

    async def _load_candles(self, symbol: str, interval: str, limit: int) -> list[Candle]:
        buffered = self.candles(symbol, interval, limit)
        if len(buffered) >= limit:
            return buffered
        candles = await self.rest.get_klines(symbol, interval, limit)
        self._seed_candles(symbol, interval, candles)
        return self.candles(symbol, interval, limit)

    async def load_context(self, symbol: str, interval: str, limit: int) -> MarketContext:
        candles, book, sentiment = await asyncio.gather(
            self._load_candles(symbol, interval, limit),
            self.rest.get_order_book(symbol),
            self.rest.get_sentiment(),
        )
        price = self.engine.last_price(symbol) or (candles[-1].close if candles else base_price(symbol))
        return MarketContext(
            symbol=symbol,
            price=price,
            candles=candles,
            order_book=book,
            sentiment=replace(sentiment, imbalance=book.imbalance()),
        )
