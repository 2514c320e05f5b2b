import asyncio

import pytest

from perpsim.config.settings import EngineConfig
from perpsim.ledger.bus import EventBus
from perpsim.ledger.events import EventType
from perpsim.models import CloseReason, Side
from perpsim.risk.engine import PositionEngine


def _assert_ledger_identities(engine: PositionEngine) -> None:
    account = engine.account()
    positions = engine.positions()
    assert account.equity == pytest.approx(account.balance + sum(p.unrealized_pnl for p in positions))
    assert account.margin_used == pytest.approx(sum(p.margin for p in positions))
    assert account.free_margin == pytest.approx(account.balance - account.margin_used)


def test_open_long_sets_margin_liquidation_and_defaults(engine: PositionEngine) -> None:
    position = asyncio.run(engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0))
    assert position is not None
    assert position.margin == pytest.approx(100.0)
    assert position.liquidation_price == pytest.approx(54_300.0)
    assert position.take_profit == pytest.approx(62_400.0)
    assert position.stop_loss == pytest.approx(58_800.0)
    account = engine.account()
    assert account.balance == pytest.approx(10_000.0)
    assert account.margin_used == pytest.approx(100.0)
    assert account.free_margin == pytest.approx(9_900.0)
    assert engine.last_price("BTCUSDT") == pytest.approx(60_000.0)


def test_open_without_side_is_dropped(engine: PositionEngine) -> None:
    assert asyncio.run(engine.open("BTCUSDT", None, 1000.0, 10, 60_000.0)) is None
    assert engine.positions() == []
    assert engine.account().margin_used == 0.0


def test_mark_to_market_updates_unrealized_and_equity(engine: PositionEngine, clock) -> None:
    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0, take_profit=64_000.0)
        clock.advance(10)
        return await engine.mark_to_market("BTCUSDT", 63_000.0)

    closed = asyncio.run(scenario())
    assert closed == []
    position = engine.position_for_symbol("BTCUSDT")
    assert position.unrealized_pnl == pytest.approx(500.0)
    assert position.mark_price == pytest.approx(63_000.0)
    account = engine.account()
    assert account.equity == pytest.approx(10_500.0)
    assert account.day_pnl == pytest.approx(500.0)
    _assert_ledger_identities(engine)


def test_take_profit_closes_exactly_once(engine: PositionEngine, clock) -> None:
    async def scenario():
        position = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0, take_profit=63_000.0)
        clock.advance(10)
        first = await engine.mark_to_market("BTCUSDT", 63_000.0)
        second = await engine.mark_to_market("BTCUSDT", 63_500.0)
        manual = await engine.close(position.id)
        return first, second, manual

    first, second, manual = asyncio.run(scenario())
    assert len(first) == 1
    assert first[0].close_reason is CloseReason.TAKE_PROFIT
    assert first[0].pnl == pytest.approx(500.0)
    assert first[0].pnl_percent == pytest.approx(500.0)
    assert first[0].exit_price == pytest.approx(63_000.0)
    assert second == []
    assert manual is None
    assert len(engine.history()) == 1
    assert engine.account().balance == pytest.approx(10_500.0)
    assert engine.positions() == []
    _assert_ledger_identities(engine)


def test_manual_close_twice_realizes_once(engine: PositionEngine, clock) -> None:
    async def scenario():
        position = await engine.open("BTCUSDT", Side.SHORT, 1000.0, 10, 60_000.0)
        clock.advance(10)
        await engine.mark_to_market("BTCUSDT", 59_400.0)
        return await engine.close(position.id), await engine.close(position.id)

    first, second = asyncio.run(scenario())
    assert first is not None and second is None
    assert first.close_reason is CloseReason.MANUAL
    assert first.pnl == pytest.approx(100.0)
    assert engine.account().balance == pytest.approx(10_100.0)


def test_liquidation_realizes_full_margin(engine: PositionEngine, clock) -> None:
    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        clock.advance(10)
        return await engine.mark_to_market("BTCUSDT", 54_000.0)

    closed = asyncio.run(scenario())
    assert len(closed) == 1
    trade = closed[0]
    assert trade.close_reason is CloseReason.LIQUIDATION
    assert trade.exit_price == pytest.approx(54_300.0)
    assert trade.pnl == pytest.approx(-100.0)
    assert trade.pnl_percent == pytest.approx(-100.0)
    account = engine.account()
    assert account.balance == pytest.approx(9_900.0)
    assert account.margin_used == pytest.approx(0.0)
    _assert_ledger_identities(engine)


def test_settlement_buffer_suppresses_triggers(engine: PositionEngine, clock) -> None:
    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        clock.advance(2)
        inside = await engine.mark_to_market("BTCUSDT", 53_000.0)
        clock.advance(4)
        after = await engine.mark_to_market("BTCUSDT", 53_000.0)
        return inside, after

    inside, after = asyncio.run(scenario())
    assert inside == []
    assert [t.close_reason for t in after] == [CloseReason.LIQUIDATION]


def test_liquidation_can_bypass_settlement_buffer(clock) -> None:
    config = EngineConfig(lock_release_delay_sec=0.0, liquidation_bypasses_buffer=True)
    engine = PositionEngine(config, EventBus(), clock=clock)

    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0, take_profit=60_100.0)
        clock.advance(1)
        take_profit_inside = await engine.mark_to_market("BTCUSDT", 60_200.0)
        liquidation_inside = await engine.mark_to_market("BTCUSDT", 54_000.0)
        return take_profit_inside, liquidation_inside

    take_profit_inside, liquidation_inside = asyncio.run(scenario())
    assert take_profit_inside == []
    assert [t.close_reason for t in liquidation_inside] == [CloseReason.LIQUIDATION]


def test_take_profit_at_a_loss_uses_break_even_reason(engine: PositionEngine, clock) -> None:
    async def scenario():
        await engine.open("SOLUSDT", Side.LONG, 1000.0, 10, 100.0, take_profit=99.0)
        clock.advance(10)
        return await engine.mark_to_market("SOLUSDT", 99.5)

    closed = asyncio.run(scenario())
    assert len(closed) == 1
    assert closed[0].close_reason is CloseReason.BREAK_EVEN_OR_LOSS
    assert closed[0].pnl == pytest.approx(-50.0)


def test_marks_are_isolated_per_symbol(engine: PositionEngine, clock) -> None:
    async def scenario():
        btc = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        await engine.open("ETHUSDT", Side.LONG, 1000.0, 10, 3_000.0)
        clock.advance(10)
        closed = await engine.mark_to_market("ETHUSDT", 2_000.0)
        return btc, closed

    btc, closed = asyncio.run(scenario())
    assert [t.symbol for t in closed] == ["ETHUSDT"]
    remaining = engine.get_position(btc.id)
    assert remaining is not None
    assert remaining.mark_price == pytest.approx(60_000.0)
    assert remaining.unrealized_pnl == 0.0
    assert engine.last_price("BTCUSDT") == pytest.approx(60_000.0)


def test_non_positive_price_is_ignored(engine: PositionEngine, clock) -> None:
    async def scenario():
        await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        clock.advance(10)
        return await engine.mark_to_market("BTCUSDT", 0.0)

    assert asyncio.run(scenario()) == []
    assert engine.last_price("BTCUSDT") == pytest.approx(60_000.0)
    assert len(engine.positions()) == 1


def test_take_profit_and_manual_close_race_realizes_once(engine: PositionEngine, clock) -> None:
    async def scenario():
        position = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0, take_profit=61_000.0)
        clock.advance(10)
        return await asyncio.gather(
            engine.mark_to_market("BTCUSDT", 61_500.0),
            engine.close(position.id),
            engine.close(position.id),
        )

    marked, manual_a, manual_b = asyncio.run(scenario())
    realized = list(marked) + [t for t in (manual_a, manual_b) if t is not None]
    assert len(realized) == 1
    assert len(engine.history()) == 1
    assert engine.account().balance == pytest.approx(10_000.0 + realized[0].pnl)
    _assert_ledger_identities(engine)


def test_closing_guard_holds_id_until_release_delay(clock) -> None:
    engine = PositionEngine(EngineConfig(lock_release_delay_sec=0.05), EventBus(), clock=clock)

    async def scenario():
        position = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        await engine.close(position.id)
        guarded = engine.is_closing(position.id)
        await asyncio.sleep(0.1)
        return position.id, guarded

    position_id, guarded = asyncio.run(scenario())
    assert guarded is True
    assert engine.is_closing(position_id) is False


def test_history_is_newest_first_and_margin_is_conserved(engine: PositionEngine, clock) -> None:
    async def scenario():
        first = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        second = await engine.open("ETHUSDT", Side.SHORT, 2000.0, 5, 3_000.0)
        clock.advance(10)
        await engine.mark_to_market("ETHUSDT", 2_970.0)
        await engine.close(first.id)
        await engine.close(second.id)
        return first, second

    first, second = asyncio.run(scenario())
    history = engine.history()
    assert [t.id for t in history] == [second.id, first.id]
    assert history[0].pnl == pytest.approx(100.0)
    account = engine.account()
    assert account.margin_used == pytest.approx(0.0)
    assert account.balance == pytest.approx(10_100.0)
    assert account.free_margin == pytest.approx(account.balance)


def test_events_are_journaled_except_marks(engine: PositionEngine, clock) -> None:
    async def scenario():
        position = await engine.open("BTCUSDT", Side.LONG, 1000.0, 10, 60_000.0)
        clock.advance(10)
        await engine.mark_to_market("BTCUSDT", 60_500.0)
        await engine.close(position.id)

    asyncio.run(scenario())
    types = [event.event_type for event in engine.bus.ledger.iter_events()]
    assert types == [EventType.POSITION_OPENED, EventType.POSITION_CLOSED]
    closed_payload = engine.bus.ledger.tail(1)[0].payload
    assert closed_payload["close_reason"] == "Manual Close"
    assert closed_payload["account"]["balance"] == pytest.approx(10_000.0 + closed_payload["pnl"])
