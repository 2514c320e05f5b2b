"""Margin, liquidation and trigger arithmetic for isolated perpetual positions."""

from __future__ import annotations

from dataclasses import dataclass

from perpsim.models import CloseReason, Position, Side

MAX_SIZE_BUFFER = 0.95


@dataclass(frozen=True)
class ProtectiveLevels:
    take_profit: float
    stop_loss: float


def margin_for(size: float, leverage: float) -> float:
    return size / leverage


def liquidation_price(side: Side, entry_price: float, leverage: float, mmr: float) -> float:
    """Price at which the isolated margin is consumed, net of maintenance margin.

    LONG:  entry * (1 - 1/leverage + mmr)
    SHORT: entry * (1 + 1/leverage - mmr)

    The result is always strictly on the losing side of entry; when the
    maintenance rate swallows the whole margin band the price is pulled halfway
    back towards entry.
    """
    band = 1 / leverage - mmr
    if band <= 0:
        band = mmr / 2
    if side is Side.LONG:
        return entry_price * (1 - band)
    return entry_price * (1 + band)


def unrealized_pnl(position: Position, price: float) -> float:
    """size * leverage * relative move, signed by side."""
    move = (price - position.entry_price) / position.entry_price
    return position.size * position.leverage * move * position.side.direction


def default_levels(
    side: Side,
    entry_price: float,
    take_profit_pct: float,
    stop_loss_pct: float,
    take_profit: float | None = None,
    stop_loss: float | None = None,
) -> ProtectiveLevels:
    """Fill in missing TP/SL and pull back a stop that is already breached at entry."""
    tp_frac = take_profit_pct / 100
    sl_frac = stop_loss_pct / 100
    default_sl = entry_price * (1 - sl_frac) if side is Side.LONG else entry_price * (1 + sl_frac)
    if not take_profit:
        take_profit = entry_price * (1 + tp_frac) if side is Side.LONG else entry_price * (1 - tp_frac)
    if not stop_loss:
        stop_loss = default_sl
    if side is Side.LONG and stop_loss >= entry_price:
        stop_loss = default_sl
    if side is Side.SHORT and stop_loss <= entry_price:
        stop_loss = default_sl
    return ProtectiveLevels(take_profit=take_profit, stop_loss=stop_loss)


def detect_trigger(position: Position, price: float) -> CloseReason | None:
    """Return the first close condition met at ``price``.

    Precedence is liquidation, take-profit, stop-loss.
    """
    is_long = position.side is Side.LONG
    if (is_long and price <= position.liquidation_price) or (
        not is_long and price >= position.liquidation_price
    ):
        return CloseReason.LIQUIDATION
    tp = position.take_profit
    if tp and ((is_long and price >= tp) or (not is_long and price <= tp)):
        return CloseReason.TAKE_PROFIT
    sl = position.stop_loss
    if sl and ((is_long and price <= sl) or (not is_long and price >= sl)):
        return CloseReason.STOP_LOSS
    return None


def max_position_size(free_margin: float, leverage: float) -> float:
    """Largest notional the free margin can carry, with a safety buffer."""
    if free_margin <= 0 or leverage <= 0:
        return 0.0
    return free_margin * leverage * MAX_SIZE_BUFFER
