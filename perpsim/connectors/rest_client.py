"""Async Binance market data REST client with synthetic fallbacks."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import numpy as np
import structlog

from perpsim.config.settings import FeedConfig
from perpsim.connectors.mock_data import generate_mock_candles, generate_mock_order_book
from perpsim.ledger.bus import EventBus
from perpsim.ledger.events import EventType
from perpsim.models import Candle, OrderBookLevel, OrderBookSnapshot, SentimentData

NEUTRAL_SENTIMENT = SentimentData(value=50.0, classification="Neutral")


def parse_klines(rows: list[list[Any]]) -> list[Candle]:
    return [
        Candle(
            time=int(row[0]),
            open=float(row[1]),
            high=float(row[2]),
            low=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
        for row in rows
    ]


def _cumulative(levels: list[tuple[float, float]]) -> list[OrderBookLevel]:
    totals: list[float] = []
    running = 0.0
    for _, amount in levels:
        running += amount
        totals.append(running)
    max_total = totals[-1] if totals and totals[-1] > 0 else 1.0
    return [
        OrderBookLevel(price=price, amount=amount, total=total, depth_percent=total / max_total * 100)
        for (price, amount), total in zip(levels, totals)
    ]


def process_order_book(data: dict[str, Any]) -> OrderBookSnapshot:
    """Sort, accumulate and measure the spread of a raw depth response.

    Bids are ordered best (highest) first and asks best (lowest) first. Each
    level carries the running total from the top of its side and that total as
    a percentage of the side's full depth.
    """
    bids = sorted(((float(p), float(a)) for p, a in data.get("bids", [])), key=lambda lvl: -lvl[0])
    asks = sorted(((float(p), float(a)) for p, a in data.get("asks", [])), key=lambda lvl: lvl[0])
    if not bids or not asks:
        raise ValueError("empty order book")
    spread = asks[0][0] - bids[0][0]
    return OrderBookSnapshot(
        bids=_cumulative(bids),
        asks=_cumulative(asks),
        spread=spread,
        spread_percent=spread / asks[0][0] * 100,
    )


class MarketDataClient:
    """Public market data from Binance futures, falling back to spot, then to synthetic data.

    No method raises on network or decoding failure; each substitutes a
    degraded answer and publishes ``FeedFallback``.
    """

    def __init__(
        self,
        config: FeedConfig,
        bus: EventBus | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.bus = bus
        timeout = config.request_timeout_sec
        self.futures_http = httpx.AsyncClient(
            base_url=config.futures_base_url, timeout=timeout, transport=transport
        )
        self.spot_http = httpx.AsyncClient(
            base_url=config.spot_base_url, timeout=timeout, transport=transport
        )
        self.sentiment_http = httpx.AsyncClient(timeout=timeout, transport=transport)
        self._rng = np.random.default_rng(config.random_seed)
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.futures_http.aclose()
        await self.spot_http.aclose()
        await self.sentiment_http.aclose()

    async def _request(
        self,
        http: httpx.AsyncClient,
        path: str,
        params: dict[str, Any] | None = None,
        attempts: int = 2,
    ) -> Any:
        for attempt in range(attempts):
            start = time.perf_counter()
            response = await http.get(path, params=params)
            latency_ms = (time.perf_counter() - start) * 1000
            if response.status_code == 429 and attempt + 1 < attempts:
                self.log.warning("rest_rate_limited", path=path, attempt=attempt + 1)
                await asyncio.sleep(2**attempt)
                continue
            response.raise_for_status()
            self.log.debug(
                "rest_response",
                path=path,
                status_code=response.status_code,
                latency_ms=round(latency_ms, 2),
            )
            return response.json()
        raise ValueError(f"no request attempts for {path}")

    async def _fallback(self, source: str, symbol: str | None, error: Exception) -> None:
        self.log.warning(f"{source}_fallback", symbol=symbol, error=str(error))
        if self.bus is not None:
            await self.bus.publish(
                EventType.FEED_FALLBACK,
                {"source": source, "symbol": symbol, "error": str(error)},
            )

    async def get_klines(self, symbol: str, interval: str, limit: int = 100) -> list[Candle]:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        try:
            return parse_klines(await self._request(self.futures_http, "/fapi/v1/klines", params))
        except (httpx.HTTPError, ValueError, TypeError, IndexError) as exc:
            self.log.info("futures_klines_failed", symbol=symbol, error=str(exc))
        try:
            return parse_klines(await self._request(self.spot_http, "/api/v3/klines", params))
        except (httpx.HTTPError, ValueError, TypeError, IndexError) as exc:
            await self._fallback("klines", symbol, exc)
        return generate_mock_candles(symbol, limit, rng=self._rng)

    async def get_order_book(self, symbol: str, limit: int | None = None) -> OrderBookSnapshot:
        params = {"symbol": symbol.upper(), "limit": limit or self.config.depth_limit}
        try:
            return process_order_book(await self._request(self.futures_http, "/fapi/v1/depth", params))
        except (httpx.HTTPError, ValueError, TypeError, KeyError) as exc:
            await self._fallback("depth", symbol, exc)
        return generate_mock_order_book(symbol, rng=self._rng)

    async def get_sentiment(self) -> SentimentData:
        """Latest Fear & Greed reading; neutral when unavailable."""
        try:
            data = await self._request(self.sentiment_http, self.config.sentiment_url, {"limit": 1})
            latest = data["data"][0]
            return SentimentData(
                value=float(latest["value"]),
                classification=str(latest.get("value_classification", "Neutral")),
            )
        except (httpx.HTTPError, ValueError, TypeError, KeyError, IndexError) as exc:
            await self._fallback("sentiment", None, exc)
        return NEUTRAL_SENTIMENT

    async def get_price(self, symbol: str) -> float | None:
        try:
            data = await self._request(
                self.futures_http, "/fapi/v1/ticker/price", {"symbol": symbol.upper()}
            )
            return float(data["price"])
        except (httpx.HTTPError, ValueError, TypeError, KeyError) as exc:
            self.log.info("ticker_price_failed", symbol=symbol, error=str(exc))
            return None
