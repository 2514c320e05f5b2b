from datetime import datetime, timezone

import pytest

from perpsim.models import CloseReason, Position, Side
from perpsim.risk.pricing import (
    default_levels,
    detect_trigger,
    liquidation_price,
    margin_for,
    max_position_size,
    unrealized_pnl,
)


def _position(side: Side = Side.LONG, **overrides) -> Position:
    entry = overrides.pop("entry_price", 60_000.0)
    leverage = overrides.pop("leverage", 10)
    data = dict(
        id="p-1",
        symbol="BTCUSDT",
        side=side,
        size=1000.0,
        margin=1000.0 / leverage,
        entry_price=entry,
        mark_price=entry,
        leverage=leverage,
        liquidation_price=liquidation_price(side, entry, leverage, 0.005),
        opened_at=datetime(2026, 1, 6, tzinfo=timezone.utc),
        take_profit=None,
        stop_loss=None,
    )
    data.update(overrides)
    return Position(**data)


def test_liquidation_price_long_and_short() -> None:
    assert liquidation_price(Side.LONG, 60_000.0, 10, 0.005) == pytest.approx(54_300.0)
    assert liquidation_price(Side.SHORT, 60_000.0, 10, 0.005) == pytest.approx(65_700.0)


def test_liquidation_price_stays_on_losing_side_at_extreme_leverage() -> None:
    # 1/leverage <= mmr would put the naive price at or beyond entry.
    long_liq = liquidation_price(Side.LONG, 100.0, 250, 0.005)
    short_liq = liquidation_price(Side.SHORT, 100.0, 250, 0.005)
    assert long_liq < 100.0
    assert short_liq > 100.0


def test_margin_and_unrealized_pnl() -> None:
    position = _position()
    assert margin_for(1000.0, 10) == pytest.approx(100.0)
    assert unrealized_pnl(position, 63_000.0) == pytest.approx(500.0)
    assert unrealized_pnl(_position(Side.SHORT), 63_000.0) == pytest.approx(-500.0)


def test_default_levels_fill_missing_targets() -> None:
    long_levels = default_levels(Side.LONG, 100.0, 4.0, 2.0)
    assert long_levels.take_profit == pytest.approx(104.0)
    assert long_levels.stop_loss == pytest.approx(98.0)
    short_levels = default_levels(Side.SHORT, 100.0, 4.0, 2.0)
    assert short_levels.take_profit == pytest.approx(96.0)
    assert short_levels.stop_loss == pytest.approx(102.0)


def test_default_levels_clamp_breached_stop() -> None:
    assert default_levels(Side.LONG, 100.0, 4.0, 2.0, stop_loss=101.0).stop_loss == pytest.approx(98.0)
    assert default_levels(Side.SHORT, 100.0, 4.0, 2.0, stop_loss=99.0).stop_loss == pytest.approx(102.0)
    # A valid caller stop is kept.
    assert default_levels(Side.LONG, 100.0, 4.0, 2.0, stop_loss=95.0).stop_loss == pytest.approx(95.0)


def test_detect_trigger_precedence() -> None:
    position = _position(take_profit=62_000.0, stop_loss=58_000.0)
    assert detect_trigger(position, 60_500.0) is None
    assert detect_trigger(position, 62_000.0) is CloseReason.TAKE_PROFIT
    assert detect_trigger(position, 57_000.0) is CloseReason.STOP_LOSS
    # Below liquidation both the stop and liquidation match; liquidation wins.
    assert detect_trigger(position, 54_000.0) is CloseReason.LIQUIDATION


def test_detect_trigger_short() -> None:
    position = _position(Side.SHORT, take_profit=58_000.0, stop_loss=61_000.0)
    assert detect_trigger(position, 57_900.0) is CloseReason.TAKE_PROFIT
    assert detect_trigger(position, 61_500.0) is CloseReason.STOP_LOSS
    assert detect_trigger(position, 66_000.0) is CloseReason.LIQUIDATION


def test_max_position_size_applies_buffer() -> None:
    assert max_position_size(1000.0, 10) == pytest.approx(9500.0)
    assert max_position_size(0.0, 10) == 0.0
