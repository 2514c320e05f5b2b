"""Session performance summary over closed trades."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from perpsim.models import ClosedTrade


@dataclass(frozen=True)
class TradeStats:
    total_trades: int = 0
    wins: int = 0
    losses: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_pnl: float = 0.0
    best_trade: float = 0.0
    worst_trade: float = 0.0
    profit_factor: float | None = None
    pnl_by_reason: dict[str, float] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "wins": self.wins,
            "losses": self.losses,
            "win_rate": self.win_rate,
            "total_pnl": self.total_pnl,
            "average_pnl": self.average_pnl,
            "best_trade": self.best_trade,
            "worst_trade": self.worst_trade,
            "profit_factor": self.profit_factor,
            "pnl_by_reason": dict(self.pnl_by_reason),
        }


def compute_trade_stats(history: Iterable[ClosedTrade]) -> TradeStats:
    """Summarize a closed-trade history.

    A win is a trade with strictly positive PnL. Win rate is a percentage.
    Profit factor is gross profit over gross loss and is None when there are no
    losing trades.
    """
    trades = list(history)
    if not trades:
        return TradeStats()

    pnls = [trade.pnl for trade in trades]
    wins = [pnl for pnl in pnls if pnl > 0]
    losses = [pnl for pnl in pnls if pnl < 0]
    gross_loss = -sum(losses)

    by_reason: dict[str, float] = {}
    for trade in trades:
        key = trade.close_reason.value
        by_reason[key] = by_reason.get(key, 0.0) + trade.pnl

    total = sum(pnls)
    return TradeStats(
        total_trades=len(trades),
        wins=len(wins),
        losses=len(losses),
        win_rate=len(wins) / len(trades) * 100,
        total_pnl=total,
        average_pnl=total / len(trades),
        best_trade=max(pnls),
        worst_trade=min(pnls),
        profit_factor=sum(wins) / gross_loss if gross_loss > 0 else None,
        pnl_by_reason=by_reason,
    )
