"""Signal governor: turns advisory signals into hold / flip / surface decisions."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable

import structlog

from perpsim.config.settings import GovernorConfig, UserSettings
from perpsim.ledger.events import Event, EventType, utc_now
from perpsim.models import ClosedTrade, CloseReason, Position, TradeSignal
from perpsim.monitoring.activity_log import ActivityLog, ActivityType
from perpsim.monitoring.metrics import Metrics
from perpsim.monitoring.notifications import NotificationCenter, NotificationType
from perpsim.risk.engine import PositionEngine


class GovernorAction(str, Enum):
    HOLD = "HOLD"
    GRACE = "GRACE"
    FLIP = "FLIP"
    SURFACE = "SURFACE"
    NONE = "NONE"


@dataclass(frozen=True)
class GovernorDecision:
    action: GovernorAction
    signal: TradeSignal
    reason: str | None = None
    closed: ClosedTrade | None = None


def _pct(value: float) -> str:
    return f"{value * 100:.0f}%"


class SignalGovernor:
    """Decide what an incoming signal does to the account.

    One signal is retained per symbol; a newer signal replaces the old one.
    With auto-trade on, an open position is flipped by a sufficiently confident
    opposite signal once it is past its grace period, and otherwise held.
    Without a position the governor never opens on its own: confident signals
    are surfaced for the user to execute.
    """

    def __init__(
        self,
        config: GovernorConfig,
        user: UserSettings,
        engine: PositionEngine,
        activity: ActivityLog | None = None,
        notifications: NotificationCenter | None = None,
        metrics: Metrics | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.user = user
        self.engine = engine
        self.activity = activity or ActivityLog()
        self.notifications = notifications or NotificationCenter(user)
        self.metrics = metrics
        self._clock = clock
        self._signals: dict[str, TradeSignal] = {}
        self._last_execution: datetime | None = None
        self._pending: set[asyncio.Task[None]] = set()
        self.log = structlog.get_logger(__name__)
        engine.bus.register(EventType.POSITION_OPENED, self._on_position_opened)

    def _on_position_opened(self, event: Event) -> None:
        opened_at = event.payload.get("opened_at")
        self._last_execution = datetime.fromisoformat(opened_at) if opened_at else event.timestamp

    @property
    def last_execution(self) -> datetime | None:
        return self._last_execution

    def should_scan(self, now: datetime | None = None) -> bool:
        """False while the post-execution cooldown is running."""
        if self._last_execution is None:
            return True
        now = now or self._clock()
        elapsed = (now - self._last_execution).total_seconds()
        return elapsed >= self.config.execution_cooldown_sec

    def signals(self) -> list[TradeSignal]:
        return sorted(self._signals.values(), key=lambda s: s.created_at, reverse=True)

    def get_signal(self, symbol: str) -> TradeSignal | None:
        return self._signals.get(symbol)

    def find_signal(self, signal_id: str) -> TradeSignal | None:
        return next((s for s in self._signals.values() if s.id == signal_id), None)

    async def ingest(self, signal: TradeSignal, now: datetime | None = None) -> GovernorDecision:
        now = now or self._clock()
        self._signals[signal.symbol] = signal
        await self.engine.bus.publish(EventType.SIGNAL_RECEIVED, signal.to_payload())
        self.activity.add(
            f"Market Analysis: {signal.side.value} (Conf: {_pct(signal.confidence)})",
            ActivityType.DECISION,
        )
        if signal.confidence > self.config.high_confidence_threshold:
            self.notifications.notify(
                "Strong AI Signal",
                f"{signal.side.value} {signal.symbol}",
                NotificationType.INFO,
            )

        decision = await self._decide(signal, now)
        if self.metrics:
            self.metrics.record_signal(decision.action.value)
        self.log.info(
            "signal_decision",
            symbol=signal.symbol,
            side=signal.side.value,
            confidence=signal.confidence,
            action=decision.action.value,
            reason=decision.reason,
        )
        return decision

    async def _decide(self, signal: TradeSignal, now: datetime) -> GovernorDecision:
        if not self.user.auto_trade:
            return GovernorDecision(GovernorAction.NONE, signal, reason="AUTO_TRADE_DISABLED")

        position = self.engine.position_for_symbol(signal.symbol)
        if position is not None:
            if signal.side is not position.side:
                if signal.confidence >= self.config.flip_threshold:
                    age = (now - position.opened_at).total_seconds()
                    if age < self.config.grace_period_sec:
                        return GovernorDecision(GovernorAction.GRACE, signal, reason="GRACE_PERIOD")
                    return await self._flip(position, signal, now)
                self.activity.add(
                    f"Weak reversal signal ({_pct(signal.confidence)} < "
                    f"{_pct(self.config.flip_threshold)}). Holding {position.side.value}.",
                    ActivityType.DECISION,
                )
                return GovernorDecision(GovernorAction.HOLD, signal, reason="WEAK_REVERSAL")
            self.activity.add(
                f"Holding {position.side.value}. Trend confirms.",
                ActivityType.DECISION,
            )
            return GovernorDecision(GovernorAction.HOLD, signal, reason="TREND_CONFIRMS")

        if signal.confidence >= self.user.min_confidence:
            self.activity.add(
                f"Opportunity found ({signal.side.value}). Waiting for user execution.",
                ActivityType.DECISION,
            )
            await self.engine.bus.publish(EventType.SIGNAL_SURFACED, signal.to_payload())
            return GovernorDecision(GovernorAction.SURFACE, signal)
        return GovernorDecision(GovernorAction.NONE, signal, reason="LOW_CONFIDENCE")

    async def _flip(self, position: Position, signal: TradeSignal, now: datetime) -> GovernorDecision:
        self.activity.add(
            f"Trend Reversal detected ({signal.side.value} - Conf {_pct(signal.confidence)}). Flipping.",
            ActivityType.ALERT,
        )
        closed = await self.engine.close(position.id, CloseReason.AI_FLIP, now=now)
        if closed is None:
            return GovernorDecision(GovernorAction.HOLD, signal, reason="CLOSE_IN_FLIGHT")

        self.notifications.notify(
            "Auto-Pilot Flip",
            f"Reversing {position.side.value} position.",
            NotificationType.WARNING,
        )
        await self.engine.bus.publish(
            EventType.AUTO_FLIP,
            {
                "symbol": signal.symbol,
                "closed_id": closed.id,
                "from_side": position.side.value,
                "to_side": signal.side.value,
                "confidence": signal.confidence,
            },
        )
        task = asyncio.get_running_loop().create_task(self._reopen(position, signal))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return GovernorDecision(GovernorAction.FLIP, signal, closed=closed)

    async def _reopen(self, previous: Position, signal: TradeSignal) -> None:
        await asyncio.sleep(self.config.flip_delay_sec)
        price = self.engine.last_price(signal.symbol) or signal.entry_price
        try:
            await self.engine.open(
                signal.symbol,
                signal.side,
                previous.size,
                previous.leverage,
                price,
                take_profit=signal.take_profit,
                stop_loss=signal.stop_loss,
                source="auto_flip",
            )
        except Exception:
            self.log.exception("flip_reopen_failed", symbol=signal.symbol, side=signal.side.value)

    async def wait_pending(self) -> None:
        """Wait for scheduled flip re-entries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def execute_signal(
        self,
        signal_id: str,
        size: float | None = None,
        leverage: int | None = None,
        take_profit: float | None = None,
        stop_loss: float | None = None,
    ) -> Position | None:
        """Open a position from a retained signal on user request."""
        signal = self.find_signal(signal_id)
        if signal is None:
            return None
        price = self.engine.last_price(signal.symbol) or signal.entry_price
        position = await self.engine.open(
            signal.symbol,
            signal.side,
            size or self.engine.config.default_size,
            leverage or self.engine.config.default_leverage,
            price,
            take_profit=take_profit or signal.take_profit,
            stop_loss=stop_loss or signal.stop_loss,
            source="signal",
        )
        if position is not None:
            self._signals.pop(signal.symbol, None)
        return position
