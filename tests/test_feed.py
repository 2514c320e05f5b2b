import asyncio

import httpx
import pytest

from perpsim.config.settings import FeedConfig
from perpsim.connectors.feed import MarketFeed, parse_kline_message, parse_price_message, symbol_seed
from perpsim.connectors.mock_data import SyntheticTicker
from perpsim.connectors.rest_client import MarketDataClient
from perpsim.connectors.ws_client import market_streams
from perpsim.ledger.events import EventType
from perpsim.models import Candle, Side
from perpsim.monitoring.metrics import Metrics


class MonotonicStub:
    def __init__(self) -> None:
        self.value = 1_000.0

    def __call__(self) -> float:
        return self.value


def _offline_rest() -> MarketDataClient:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    return MarketDataClient(FeedConfig(random_seed=11), transport=httpx.MockTransport(handler))


def test_parse_price_message_variants() -> None:
    assert parse_price_message({"e": "aggTrade", "s": "btcusdt", "p": "60000.5"}) == ("trade", "BTCUSDT", 60_000.5)
    combined = {"stream": "btcusdt@markPrice@1s", "data": {"e": "markPriceUpdate", "s": "BTCUSDT", "p": "60010"}}
    assert parse_price_message(combined) == ("mark", "BTCUSDT", 60_010.0)
    assert parse_price_message({"e": "depthUpdate", "s": "BTCUSDT"}) is None
    assert parse_price_message({"e": "aggTrade", "s": "BTCUSDT", "p": "n/a"}) is None


def test_market_streams_cover_trades_and_mark_price() -> None:
    assert market_streams(["BTCUSDT"]) == ["btcusdt@aggTrade", "btcusdt@markPrice"]


def test_live_message_marks_engine_and_refreshes_liveness(engine, clock) -> None:
    ticks = []
    engine.bus.register(EventType.PRICE_TICK, ticks.append)
    monotonic = MonotonicStub()
    feed = MarketFeed(FeedConfig(liveness_sec=3.0), engine, _offline_rest(), clock=monotonic)

    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        clock.advance(10)
        await feed.handle_message({"e": "aggTrade", "s": "BTCUSDT", "p": "60600"})
        await feed.rest.close()

    asyncio.run(scenario())
    assert engine.position_for_symbol("BTCUSDT").unrealized_pnl == pytest.approx(100.0)
    assert [t.payload["source"] for t in ticks] == ["trade"]
    assert feed.is_live("BTCUSDT") is True
    monotonic.value += 3.5
    assert feed.is_live("BTCUSDT") is False


def test_synthetic_tick_continues_from_last_price(engine) -> None:
    feed = MarketFeed(FeedConfig(random_seed=5, synthetic_volatility_pct=0.05), engine, _offline_rest())

    async def scenario():
        await engine.mark_to_market("ETHUSDT", 3_210.0)
        price = await feed.synthetic_tick("ETHUSDT")
        await feed.rest.close()
        return price

    price = asyncio.run(scenario())
    assert price == pytest.approx(3_210.0, rel=0.01)
    assert engine.last_price("ETHUSDT") == pytest.approx(price)


def test_load_context_uses_engine_price_and_book_imbalance(engine) -> None:
    feed = MarketFeed(FeedConfig(), engine, _offline_rest())

    async def scenario():
        await engine.mark_to_market("BTCUSDT", 61_000.0)
        context = await feed.load_context("BTCUSDT", "1h", 20)
        await feed.rest.close()
        return context

    context = asyncio.run(scenario())
    assert context.price == 61_000.0
    assert len(context.candles) == 20
    assert context.sentiment.classification == "Neutral"
    assert context.sentiment.imbalance == pytest.approx(context.order_book.imbalance())


def _kline(open_time: int, close: float, interval: str = "1h") -> dict:
    return {
        "stream": f"btcusdt@kline_{interval}",
        "data": {
            "e": "kline",
            "s": "BTCUSDT",
            "k": {
                "t": open_time,
                "i": interval,
                "o": "60000",
                "h": str(max(close, 60_000.0) + 50),
                "l": str(min(close, 60_000.0) - 50),
                "c": str(close),
                "v": "12.5",
                "x": False,
            },
        },
    }


def test_parse_kline_message() -> None:
    symbol, interval, candle = parse_kline_message(_kline(1_700_000_000_000, 60_120.0))
    assert (symbol, interval) == ("BTCUSDT", "1h")
    assert candle == Candle(1_700_000_000_000, 60_000.0, 60_170.0, 59_950.0, 60_120.0, 12.5)
    assert parse_kline_message({"e": "aggTrade", "s": "BTCUSDT", "p": "1"}) is None
    assert parse_kline_message({"e": "kline", "s": "BTCUSDT", "k": {"t": 1, "i": "1h"}}) is None


def test_market_streams_include_klines_when_interval_given() -> None:
    assert market_streams(["ETHUSDT"], "15m") == ["ethusdt@aggTrade", "ethusdt@markPrice", "ethusdt@kline_15m"]


def test_kline_updates_replace_open_candle_and_append_closed(engine) -> None:
    feed = MarketFeed(FeedConfig(candle_buffer_size=3), engine, _offline_rest())
    hour = 3_600_000

    async def scenario():
        for open_time, close in [(0, 60_010.0), (0, 60_020.0), (hour, 60_030.0), (2 * hour, 60_040.0)]:
            await feed.handle_message(_kline(open_time, close))
        # Late update for a candle already rolled past.
        await feed.handle_message(_kline(hour, 1.0))
        await feed.handle_message(_kline(3 * hour, 60_050.0))
        await feed.rest.close()

    asyncio.run(scenario())
    candles = feed.candles("BTCUSDT", "1h")
    assert [c.time for c in candles] == [hour, 2 * hour, 3 * hour]
    assert [c.close for c in candles] == [60_030.0, 60_040.0, 60_050.0]
    # Kline messages are not price ticks.
    assert engine.last_price("BTCUSDT") is None


def test_load_context_reads_warm_candle_buffer(engine) -> None:
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(503)

    rest = MarketDataClient(FeedConfig(random_seed=11), transport=httpx.MockTransport(handler))
    feed = MarketFeed(FeedConfig(), engine, rest)
    hour = 3_600_000

    async def scenario():
        for i in range(5):
            await feed.handle_message(_kline(i * hour, 60_000.0 + i))
        context = await feed.load_context("BTCUSDT", "1h", 4)
        await feed.rest.close()
        return context

    context = asyncio.run(scenario())
    assert [c.close for c in context.candles] == [60_001.0, 60_002.0, 60_003.0, 60_004.0]
    assert context.price == 60_004.0
    assert not any(path.endswith("/klines") for path in paths)


def test_cold_buffer_is_seeded_from_rest(engine) -> None:
    feed = MarketFeed(FeedConfig(), engine, _offline_rest())

    async def scenario():
        first = await feed.load_context("SOLUSDT", "1h", 10)
        await feed.rest.close()
        return first

    context = asyncio.run(scenario())
    assert feed.candles("SOLUSDT", "1h") == context.candles
    assert len(context.candles) == 10


def test_watch_loop_reports_live_feed_age(engine) -> None:
    class QuietSocket:
        def last_message_age_sec(self) -> float:
            return 2.5

        def stop(self) -> None:
            pass

    metrics = Metrics()
    feed = MarketFeed(FeedConfig(), engine, _offline_rest(), ws=QuietSocket(), metrics=metrics)
    feed.report_feed_age()
    assert metrics.registry.get_sample_value("feed_last_message_age_sec") == 2.5


def test_seeded_synthetic_walks_differ_per_symbol(engine) -> None:
    config = FeedConfig(random_seed=7, synthetic_volatility_pct=0.5)
    feed = MarketFeed(config, engine, _offline_rest())

    async def scenario():
        await engine.mark_to_market("AAAUSDT", 100.0)
        await engine.mark_to_market("BBBUSDT", 100.0)
        first = await feed.synthetic_tick("AAAUSDT")
        second = await feed.synthetic_tick("BBBUSDT")
        await feed.rest.close()
        return first, second

    first, second = asyncio.run(scenario())
    assert first != pytest.approx(second)
    replay = SyntheticTicker(100.0, volatility_pct=0.5, seed=symbol_seed(7, "AAAUSDT"))
    assert replay.next_price() == pytest.approx(first)
    assert symbol_seed(None, "AAAUSDT") is None
    assert symbol_seed(7, "aaausdt") == symbol_seed(7, "AAAUSDT")
