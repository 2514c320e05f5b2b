"""Account bookkeeping for the simulated margin account."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from perpsim.models import Position


@dataclass(frozen=True)
class AccountSnapshot:
    balance: float
    equity: float
    margin_used: float
    free_margin: float
    day_pnl: float
    start_balance: float
    unrealized_pnl: float

    def to_payload(self) -> dict[str, Any]:
        return {
            "balance": self.balance,
            "equity": self.equity,
            "margin_used": self.margin_used,
            "free_margin": self.free_margin,
            "day_pnl": self.day_pnl,
            "start_balance": self.start_balance,
            "unrealized_pnl": self.unrealized_pnl,
        }


class AccountLedger:
    """Realized funds and margin reservations.

    Balance moves only when a trade is realized; margin moves on open and close.
    Equity and day PnL are never stored: they are derived from the balance and
    whatever positions are open at the moment they are asked for.
    """

    def __init__(self, start_balance: float) -> None:
        self.start_balance = start_balance
        self.balance = start_balance
        self.margin_used = 0.0
        self.free_margin = start_balance

    def reserve(self, margin: float) -> None:
        self.margin_used += margin
        self.free_margin -= margin

    def realize(self, margin: float, pnl: float) -> None:
        self.balance += pnl
        self.margin_used -= margin
        self.free_margin += margin + pnl

    @staticmethod
    def unrealized(positions: Iterable[Position]) -> float:
        return sum(pos.unrealized_pnl for pos in positions)

    def equity(self, positions: Iterable[Position]) -> float:
        return self.balance + self.unrealized(positions)

    def day_pnl(self, positions: Iterable[Position]) -> float:
        return self.equity(positions) - self.start_balance

    def snapshot(self, positions: Iterable[Position]) -> AccountSnapshot:
        open_positions = list(positions)
        unrealized = self.unrealized(open_positions)
        equity = self.balance + unrealized
        return AccountSnapshot(
            balance=self.balance,
            equity=equity,
            margin_used=self.margin_used,
            free_margin=self.free_margin,
            day_pnl=equity - self.start_balance,
            start_balance=self.start_balance,
            unrealized_pnl=unrealized,
        )
