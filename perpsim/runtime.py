"""Object graph for one simulator session."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from perpsim.config.settings import Settings
from perpsim.connectors.advisory import AdvisoryClient
from perpsim.connectors.feed import MarketFeed
from perpsim.connectors.rest_client import MarketDataClient
from perpsim.connectors.ws_client import BinanceWebSocketClient
from perpsim.ledger.bus import EventBus
from perpsim.ledger.events import EventType
from perpsim.ledger.store import EventLedger
from perpsim.monitoring.activity_log import ActivityLog
from perpsim.monitoring.metrics import Metrics
from perpsim.monitoring.notifications import NotificationCenter
from perpsim.monitoring.trade_log import TradeLogger
from perpsim.risk.engine import PositionEngine
from perpsim.strategy.copilot import CoPilot
from perpsim.strategy.governor import SignalGovernor

log = structlog.get_logger(__name__)


@dataclass
class Runtime:
    settings: Settings
    bus: EventBus
    engine: PositionEngine
    governor: SignalGovernor
    copilot: CoPilot
    feed: MarketFeed
    market: MarketDataClient
    advisory: AdvisoryClient
    activity: ActivityLog
    notifications: NotificationCenter
    metrics: Metrics
    trade_logger: TradeLogger | None = None
    started_at: float = field(default_factory=time.time)

    async def aclose(self) -> None:
        self.copilot.stop()
        self.feed.stop()
        await self.governor.wait_pending()
        await self.notifications.drain()
        self.engine.shutdown()
        await self.market.close()


def build_runtime(
    settings: Settings,
    live_feed: bool = True,
    market: MarketDataClient | None = None,
) -> Runtime:
    """Wire the engine, governor, feed, advisory and monitoring onto one bus."""
    ledger = EventLedger(settings.storage.journal_path)
    bus = EventBus(ledger)
    metrics = Metrics()
    activity = ActivityLog(max_entries=settings.monitoring.activity_log_size)
    notifications = NotificationCenter(
        settings.user,
        webhooks=settings.monitoring.notification_webhooks,
        max_items=settings.monitoring.notification_queue_size,
    )

    engine = PositionEngine(settings.engine, bus)
    governor = SignalGovernor(
        settings.governor,
        settings.user,
        engine,
        activity=activity,
        notifications=notifications,
        metrics=metrics,
    )

    market = market or MarketDataClient(settings.feed, bus)
    ws = BinanceWebSocketClient(settings.feed, metrics) if live_feed else None
    feed = MarketFeed(settings.feed, engine, market, ws, metrics=metrics)
    advisory = AdvisoryClient(settings.advisory, settings.advisory_api_key, metrics)
    copilot = CoPilot(settings.copilot, settings.user, feed, advisory, governor, activity)

    for event_type in (EventType.POSITION_OPENED, EventType.POSITION_CLOSED):
        bus.register(event_type, activity.handle_event)
        bus.register(event_type, notifications.handle_event)
    for event_type in (
        EventType.POSITION_OPENED,
        EventType.POSITION_CLOSED,
        EventType.MARK_APPLIED,
        EventType.FEED_FALLBACK,
    ):
        bus.register(event_type, metrics.handle_event)

    trade_logger = None
    if settings.storage.trade_log_enabled:
        trade_logger = TradeLogger(Path(settings.storage.logs_path) / "trades.csv")
        bus.register(EventType.POSITION_OPENED, trade_logger.handle_event)
        bus.register(EventType.POSITION_CLOSED, trade_logger.handle_event)

    log.info(
        "runtime_built",
        start_balance=settings.engine.start_balance,
        advisory_provider=settings.advisory.provider,
        symbols=settings.copilot.symbols,
        live_feed=live_feed,
        journal_path=settings.storage.journal_path,
    )
    return Runtime(
        settings=settings,
        bus=bus,
        engine=engine,
        governor=governor,
        copilot=copilot,
        feed=feed,
        market=market,
        advisory=advisory,
        activity=activity,
        notifications=notifications,
        metrics=metrics,
        trade_logger=trade_logger,
    )
