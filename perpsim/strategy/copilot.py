"""Co-pilot scan loop: market context -> advisory call -> governor."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import TYPE_CHECKING, Callable
from uuid import uuid4

import structlog

from perpsim.config.settings import CoPilotConfig, UserSettings
from perpsim.ledger.events import EventType, utc_now
from perpsim.models import AdvisoryResult, Side, TradeSignal
from perpsim.monitoring.activity_log import ActivityLog, ActivityType
from perpsim.strategy.governor import GovernorDecision, SignalGovernor

if TYPE_CHECKING:
    from perpsim.connectors.advisory import AdvisoryClient
    from perpsim.connectors.feed import MarketContext, MarketFeed


def build_signal(
    symbol: str,
    price: float,
    result: AdvisoryResult,
    config: CoPilotConfig,
    now: datetime,
    sentiment_context: str | None = None,
) -> TradeSignal:
    """Turn an advisory answer into a signal, filling any missing levels."""
    side = result.side or Side.LONG
    confidence = result.confidence if result.confidence is not None else config.default_confidence
    direction = side.direction
    stop_loss = result.stop_loss or price * (1 - direction * config.default_stop_loss_pct / 100)
    take_profit = result.take_profit or price * (1 + direction * config.default_take_profit_pct / 100)
    return TradeSignal(
        id=uuid4().hex[:12],
        symbol=symbol,
        side=side,
        confidence=confidence,
        entry_price=price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        created_at=now,
        reasoning=result.reasoning,
        model_label=result.model_label,
        sentiment_context=sentiment_context,
    )


class CoPilot:
    """Periodically analyze symbols and hand the resulting signals to the governor."""

    def __init__(
        self,
        config: CoPilotConfig,
        user: UserSettings,
        feed: "MarketFeed",
        advisory: "AdvisoryClient",
        governor: SignalGovernor,
        activity: ActivityLog | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.user = user
        self.feed = feed
        self.advisory = advisory
        self.governor = governor
        self.activity = activity or governor.activity
        self._clock = clock
        self._analyzing = False
        self._stop = asyncio.Event()
        self.log = structlog.get_logger(__name__)

    @property
    def analyzing(self) -> bool:
        return self._analyzing

    async def scan(self, symbol: str) -> GovernorDecision | None:
        """Run one analysis for ``symbol``. Failures are reported, never raised."""
        if self._analyzing:
            self.log.debug("scan_skipped", symbol=symbol, reason="IN_FLIGHT")
            return None
        if not self.governor.should_scan(self._clock()):
            self.log.debug("scan_skipped", symbol=symbol, reason="COOLDOWN")
            return None
        self._analyzing = True
        try:
            context = await self.feed.load_context(symbol, self.config.candle_interval, self.config.candle_limit)
            result = await self.advisory.analyze(symbol, context.price, context.candles, context.sentiment)
            signal = build_signal(
                symbol,
                context.price,
                result,
                self.config,
                self._clock(),
                sentiment_context=_describe_sentiment(context),
            )
            return await self.governor.ingest(signal)
        except Exception as exc:
            self.log.exception("scan_failed", symbol=symbol, error=str(exc))
            self.activity.add("Analysis failed due to API connection.", ActivityType.ALERT)
            await self.governor.engine.bus.publish(
                EventType.ANALYSIS_FAILED, {"symbol": symbol, "error": str(exc)}
            )
            return None
        finally:
            self._analyzing = False

    async def run(self, symbols: list[str] | None = None) -> None:
        symbols = symbols or self.config.symbols
        while not self._stop.is_set():
            if self.user.auto_trade:
                for symbol in symbols:
                    self.activity.add(f"Auto-Pilot Scanning {symbol}...", ActivityType.SCAN)
                    await self.scan(symbol)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.config.scan_interval_sec)
            except asyncio.TimeoutError:
                continue

    def stop(self) -> None:
        self._stop.set()


def _describe_sentiment(context: "MarketContext") -> str:
    sentiment = context.sentiment
    return (
        f"Fear & Greed {sentiment.value:.0f} ({sentiment.classification}), "
        f"book imbalance {sentiment.imbalance:+.2f}"
    )
