"""Local technical analysis used when no advisory model is available."""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from perpsim.models import AdvisoryResult, Candle, SentimentData, Side

FALLBACK_LABEL = "Technical Analysis (Fallback)"
WAIT_LABEL = "System Wait"

BASE_CONFIDENCE = 0.60
CONFIDENCE_SPAN = 0.15
MIN_STOP_FRACTION = 0.01
FAST_EMA = 8
SLOW_EMA = 21


def calculate_ema(series: pd.Series, period: int) -> pd.Series:
    """Exponential moving average."""
    return series.ewm(span=period, adjust=False).mean()


def candles_to_frame(candles: Sequence[Candle]) -> pd.DataFrame:
    frame = pd.DataFrame(
        [
            {
                "time": c.time,
                "open": c.open,
                "high": c.high,
                "low": c.low,
                "close": c.close,
                "volume": c.volume,
            }
            for c in candles
        ]
    )
    return frame.set_index("time")


def agreement_score(side: Side, frame: pd.DataFrame, sentiment: SentimentData | None) -> float:
    """How strongly trend, sentiment and book pressure agree with ``side``, in [0, 1]."""
    closes = frame["close"]
    fast = float(calculate_ema(closes, FAST_EMA).iloc[-1])
    slow = float(calculate_ema(closes, SLOW_EMA).iloc[-1])
    if fast == slow:
        trend = 0.5
    else:
        trend = 1.0 if (fast > slow) == (side is Side.LONG) else 0.0

    sentiment = sentiment or SentimentData()
    if sentiment.value > 55:
        mood = 1.0 if side is Side.LONG else 0.0
    elif sentiment.value < 45:
        mood = 1.0 if side is Side.SHORT else 0.0
    else:
        mood = 0.5

    imbalance = max(-1.0, min(1.0, sentiment.imbalance))
    book = (1 + imbalance * side.direction) / 2

    return (trend + mood + book) / 3


def analyze(
    price: float,
    candles: Sequence[Candle],
    sentiment: SentimentData | None = None,
    prefix: str = "",
) -> AdvisoryResult:
    """Deterministic trend call from the last two candles.

    Side follows the last close against the previous one. The stop sits at
    1.5x the last candle's range (never under 1%) and the target at twice the
    stop distance. Confidence is 0.60 plus up to 0.15 for agreement between
    the EMA trend, sentiment and order book imbalance.
    """
    if len(candles) < 2:
        return AdvisoryResult(
            side=Side.LONG,
            confidence=0.0,
            stop_loss=None,
            take_profit=None,
            reasoning="Insufficient data for analysis.",
            model_label=WAIT_LABEL,
        )

    frame = candles_to_frame(candles)
    last = frame.iloc[-1]
    prev = frame.iloc[-2]
    bullish = float(last["close"]) > float(prev["close"])
    side = Side.LONG if bullish else Side.SHORT

    volatility = (float(last["high"]) - float(last["low"])) / float(last["close"])
    sl_fraction = max(MIN_STOP_FRACTION, volatility * 1.5)
    tp_fraction = sl_fraction * 2

    if side is Side.LONG:
        stop_loss = price * (1 - sl_fraction)
        take_profit = price * (1 + tp_fraction)
    else:
        stop_loss = price * (1 + sl_fraction)
        take_profit = price * (1 - tp_fraction)

    score = agreement_score(side, frame, sentiment)
    return AdvisoryResult(
        side=side,
        confidence=BASE_CONFIDENCE + CONFIDENCE_SPAN * score,
        stop_loss=stop_loss,
        take_profit=take_profit,
        reasoning=f"{prefix}Trend is {'Bullish' if bullish else 'Bearish'} (Local Calculation).",
        model_label=FALLBACK_LABEL,
    )
