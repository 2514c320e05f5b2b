"""Shared data models."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class Side(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"

    @property
    def direction(self) -> int:
        """+1 for LONG, -1 for SHORT."""
        return 1 if self is Side.LONG else -1


class CloseReason(str, Enum):
    """Why a position left the open set."""

    MANUAL = "Manual Close"
    TAKE_PROFIT = "Take Profit"
    STOP_LOSS = "Stop Loss"
    LIQUIDATION = "Liquidation"
    AI_FLIP = "AI Flip/Reversal"
    # Take-profit level crossed while the position was not in profit.
    BREAK_EVEN_OR_LOSS = "Close (Break Even/Loss)"


@dataclass(frozen=True)
class Candle:
    time: int  # open time, epoch milliseconds
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class OrderBookLevel:
    price: float
    amount: float
    total: float = 0.0
    depth_percent: float = 0.0


@dataclass(frozen=True)
class OrderBookSnapshot:
    bids: list[OrderBookLevel] = field(default_factory=list)
    asks: list[OrderBookLevel] = field(default_factory=list)
    spread: float = 0.0
    spread_percent: float = 0.0

    def imbalance(self) -> float:
        """Normalized bid/ask depth difference in [-1, 1]."""
        bid_depth = sum(level.amount for level in self.bids)
        ask_depth = sum(level.amount for level in self.asks)
        total = bid_depth + ask_depth
        if total <= 0:
            return 0.0
        return (bid_depth - ask_depth) / total


@dataclass(frozen=True)
class SentimentData:
    value: float = 50.0  # 0-100 fear & greed reading
    classification: str = "Neutral"
    imbalance: float = 0.0  # order book pressure, -1 to 1


@dataclass(frozen=True)
class TradeSignal:
    id: str
    symbol: str
    side: Side
    confidence: float
    entry_price: float
    stop_loss: float
    take_profit: float
    created_at: datetime
    reasoning: str
    model_label: str
    sentiment_context: str | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "symbol": self.symbol,
            "side": self.side.value,
            "confidence": self.confidence,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "created_at": self.created_at.isoformat(),
            "reasoning": self.reasoning,
            "model_label": self.model_label,
            "sentiment_context": self.sentiment_context,
        }


@dataclass
class Position:
    """An open leveraged exposure. Only mark_price and unrealized_pnl change after open."""

    id: str
    symbol: str
    side: Side
    size: float
    margin: float
    entry_price: float
    mark_price: float
    leverage: int
    liquidation_price: float
    opened_at: datetime
    take_profit: float | None = None
    stop_loss: float | None = None
    unrealized_pnl: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["opened_at"] = self.opened_at.isoformat()
        return data


@dataclass(frozen=True)
class ClosedTrade:
    id: str
    symbol: str
    side: Side
    entry_price: float
    exit_price: float
    size: float
    leverage: int
    pnl: float
    pnl_percent: float
    close_reason: CloseReason
    closed_at: datetime

    def to_payload(self) -> dict[str, Any]:
        data = asdict(self)
        data["side"] = self.side.value
        data["close_reason"] = self.close_reason.value
        data["closed_at"] = self.closed_at.isoformat()
        return data


@dataclass(frozen=True)
class AdvisoryResult:
    """Directional call from the advisory engine or the local heuristic.

    ``confidence`` is None when the model answered without one.
    """

    side: Side
    confidence: float | None
    stop_loss: float | None
    take_profit: float | None
    reasoning: str
    model_label: str

    def to_payload(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "confidence": self.confidence,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "reasoning": self.reasoning,
            "model_label": self.model_label,
        }
