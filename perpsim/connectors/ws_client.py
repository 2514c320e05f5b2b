"""Binance futures WebSocket client with auto-reconnect."""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, TYPE_CHECKING

import orjson
import structlog
import websockets

from perpsim.config.settings import FeedConfig

if TYPE_CHECKING:
    from perpsim.monitoring.metrics import Metrics


MessageHandler = Callable[[dict], Awaitable[None] | None]


def market_streams(symbols: list[str], interval: str | None = None) -> list[str]:
    """aggTrade and markPrice streams for each symbol, plus klines when ``interval`` is set."""
    streams: list[str] = []
    for symbol in symbols:
        lower = symbol.lower()
        streams.append(f"{lower}@aggTrade")
        streams.append(f"{lower}@markPrice")
        if interval:
            streams.append(f"{lower}@kline_{interval}")
    return streams


class BinanceWebSocketClient:
    """WebSocket client for public market streams."""

    def __init__(self, config: FeedConfig, metrics: "Metrics" | None = None) -> None:
        self.config = config
        self.base_url = config.ws_url
        self._stop = asyncio.Event()
        self.log = structlog.get_logger(__name__)
        self._metrics = metrics
        self._last_message_time: float | None = None
        self.connected = False

    async def run(self, streams: list[str], handler: MessageHandler) -> None:
        backoff = 1
        while not self._stop.is_set():
            url = self._build_url(streams)
            try:
                self.log.info("ws_connecting", stream_count=len(streams))
                async with websockets.connect(url, ping_interval=20, ping_timeout=20) as ws:
                    self.log.info("ws_connected", stream_count=len(streams))
                    self._set_connected(True)
                    backoff = 1
                    while not self._stop.is_set():
                        recv_task = asyncio.create_task(ws.recv())
                        stop_task = asyncio.create_task(self._stop.wait())
                        done, _ = await asyncio.wait(
                            {recv_task, stop_task},
                            return_when=asyncio.FIRST_COMPLETED,
                        )
                        if stop_task in done:
                            recv_task.cancel()
                            break
                        stop_task.cancel()
                        try:
                            message = recv_task.result()
                        except asyncio.CancelledError:
                            break
                        try:
                            payload = orjson.loads(message)
                        except orjson.JSONDecodeError:
                            self.log.warning("ws_parse_error", preview=str(message)[:120])
                            continue
                        self._last_message_time = time.time()
                        if self._metrics is not None:
                            self._metrics.feed_last_message_age_sec.set(0)
                        result = handler(payload)
                        if asyncio.iscoroutine(result):
                            await result
            except Exception as exc:
                self.log.warning("ws_disconnected", error=str(exc), backoff_sec=backoff)
                self._set_connected(False)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30)
            finally:
                if self._stop.is_set():
                    self._set_connected(False)

    def _set_connected(self, value: bool) -> None:
        self.connected = value
        if self._metrics is not None:
            self._metrics.feed_connected.set(1 if value else 0)

    def stop(self) -> None:
        self._stop.set()

    def last_message_age_sec(self) -> float | None:
        if self._last_message_time is None:
            return None
        return max(0.0, time.time() - self._last_message_time)

    def _build_url(self, streams: list[str]) -> str:
        if len(streams) == 1:
            return f"{self.base_url}/ws/{streams[0]}"
        joined = "/".join(streams)
        return f"{self.base_url}/stream?streams={joined}"
