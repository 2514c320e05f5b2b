import asyncio
from datetime import datetime, timezone

import pytest

from perpsim.config.settings import AdvisoryConfig, CoPilotConfig
from perpsim.connectors.advisory import AdvisoryClient
from perpsim.connectors.feed import MarketContext
from perpsim.ledger.events import EventType
from perpsim.models import AdvisoryResult, Candle, OrderBookSnapshot, SentimentData, Side
from perpsim.strategy.copilot import CoPilot, build_signal
from perpsim.strategy.governor import GovernorAction

NOW = datetime(2026, 1, 6, 12, 0, tzinfo=timezone.utc)


class StubFeed:
    def __init__(self, price: float = 60_000.0, fail: bool = False) -> None:
        self.price = price
        self.fail = fail
        self.calls = 0

    async def load_context(self, symbol: str, interval: str, limit: int) -> MarketContext:
        self.calls += 1
        if self.fail:
            raise ConnectionError("exchange unreachable")
        candles = [
            Candle(time=0, open=self.price, high=self.price, low=self.price, close=self.price, volume=1.0),
            Candle(time=1, open=self.price, high=self.price, low=self.price, close=self.price, volume=1.0),
        ]
        return MarketContext(symbol, self.price, candles, OrderBookSnapshot(), SentimentData(value=30.0))


class StubAdvisory:
    def __init__(self, result: AdvisoryResult) -> None:
        self.result = result

    async def analyze(self, symbol, price, candles, sentiment=None) -> AdvisoryResult:
        return self.result


def _result(side: Side, confidence: float, **levels) -> AdvisoryResult:
    return AdvisoryResult(
        side=side,
        confidence=confidence,
        stop_loss=levels.get("stop_loss"),
        take_profit=levels.get("take_profit"),
        reasoning="Momentum fading",
        model_label="openai:gpt-4o-mini",
    )


def test_build_signal_fills_levels_by_direction() -> None:
    config = CoPilotConfig()
    short = build_signal("BTCUSDT", 100.0, _result(Side.SHORT, 0.8), config, NOW)
    assert short.stop_loss == pytest.approx(102.0)
    assert short.take_profit == pytest.approx(95.0)
    long = build_signal("BTCUSDT", 100.0, _result(Side.LONG, 0.8, stop_loss=97.0), config, NOW)
    assert long.stop_loss == pytest.approx(97.0)
    assert long.take_profit == pytest.approx(105.0)
    assert long.created_at == NOW


def test_scan_hands_signal_to_governor(governor, clock) -> None:
    feed = StubFeed()
    copilot = CoPilot(CoPilotConfig(), governor.user, feed, StubAdvisory(_result(Side.SHORT, 0.77)), governor, clock=clock)

    decision = asyncio.run(copilot.scan("BTCUSDT"))
    assert decision.action is GovernorAction.SURFACE
    signal = governor.get_signal("BTCUSDT")
    assert signal.side is Side.SHORT
    assert signal.entry_price == 60_000.0
    assert signal.sentiment_context == "Fear & Greed 30 (Neutral), book imbalance +0.00"
    assert copilot.analyzing is False


def test_scan_failure_is_reported_not_raised(governor, activity, engine, clock) -> None:
    copilot = CoPilot(
        CoPilotConfig(), governor.user, StubFeed(fail=True), StubAdvisory(_result(Side.LONG, 0.9)), governor, clock=clock
    )
    assert asyncio.run(copilot.scan("BTCUSDT")) is None
    assert activity.entries()[0].message == "Analysis failed due to API connection."
    journal = list(engine.bus.ledger.iter_events())
    assert journal[-1].event_type == EventType.ANALYSIS_FAILED
    assert journal[-1].payload["symbol"] == "BTCUSDT"
    assert copilot.analyzing is False


def test_scan_is_skipped_during_execution_cooldown(governor, engine, clock) -> None:
    feed = StubFeed()
    copilot = CoPilot(CoPilotConfig(), governor.user, feed, StubAdvisory(_result(Side.LONG, 0.9)), governor, clock=clock)

    async def scenario():
        await engine.open("ETHUSDT", Side.LONG, 1000.0, 10, 3_000.0)
        skipped = await copilot.scan("BTCUSDT")
        clock.advance(6)
        scanned = await copilot.scan("BTCUSDT")
        return skipped, scanned

    skipped, scanned = asyncio.run(scenario())
    assert skipped is None
    assert feed.calls == 1
    assert scanned.action is GovernorAction.SURFACE


def test_run_scans_until_stopped(governor, activity, clock) -> None:
    feed = StubFeed()
    copilot = CoPilot(
        CoPilotConfig(scan_interval_sec=1.0),
        governor.user,
        feed,
        StubAdvisory(_result(Side.LONG, 0.5)),
        governor,
        clock=clock,
    )

    async def scenario():
        task = asyncio.create_task(copilot.run(["BTCUSDT"]))
        await asyncio.sleep(0.05)
        copilot.stop()
        await asyncio.wait_for(task, timeout=2)

    asyncio.run(scenario())
    assert feed.calls == 1
    messages = [entry.message for entry in activity.entries()]
    assert "Auto-Pilot Scanning BTCUSDT..." in messages


def test_answer_without_confidence_gets_default() -> None:
    client = AdvisoryClient(AdvisoryConfig(provider="openai"), api_key="k")
    result = client._parse_response('{"side": "LONG", "reasoning": "Breakout"}')
    signal = build_signal("BTCUSDT", 100.0, result, CoPilotConfig(), NOW)
    assert signal.confidence == pytest.approx(0.75)
    assert signal.stop_loss == pytest.approx(98.0)
    assert signal.take_profit == pytest.approx(105.0)
