"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server

from perpsim.ledger.events import Event, EventType


class Metrics:
    """Expose core metrics for monitoring."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()
        reg = self.registry

        self.feed_connected = Gauge("feed_connected", "Live market feed connection status", registry=reg)
        self.feed_last_message_age_sec = Gauge(
            "feed_last_message_age_sec", "Age of last live feed message", registry=reg
        )
        self.feed_fallbacks_total = Counter(
            "feed_fallbacks_total", "Synthetic data substitutions by source", ["source"], registry=reg
        )

        self.open_positions = Gauge("open_positions", "Number of open positions", registry=reg)
        self.balance = Gauge("account_balance", "Realized account balance", registry=reg)
        self.equity = Gauge("account_equity", "Balance plus unrealized PnL", registry=reg)
        self.margin_used = Gauge("margin_used", "Margin locked in open positions", registry=reg)
        self.day_pnl = Gauge("day_pnl", "Equity minus starting balance", registry=reg)

        self.positions_opened_total = Counter(
            "positions_opened_total", "Positions opened by source", ["source"], registry=reg
        )
        self.trades_closed_total = Counter(
            "trades_closed_total", "Trades closed by reason", ["reason"], registry=reg
        )
        self.liquidations_total = Counter("liquidations_total", "Liquidated positions", registry=reg)

        self.signals_total = Counter(
            "signals_total", "Governor decisions by action", ["action"], registry=reg
        )
        self.advisory_fallbacks_total = Counter(
            "advisory_fallbacks_total", "Advisory calls answered by the local heuristic", registry=reg
        )
        self.event_ledger_size = Gauge("event_ledger_size", "Event ledger size", registry=reg)

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)

    def update_account(self, account: dict[str, float]) -> None:
        self.balance.set(account.get("balance", 0.0))
        self.equity.set(account.get("equity", 0.0))
        self.margin_used.set(account.get("margin_used", 0.0))
        self.day_pnl.set(account.get("day_pnl", 0.0))

    def record_signal(self, action: str) -> None:
        self.signals_total.labels(action=action).inc()

    def handle_event(self, event: Event) -> None:
        payload = event.payload
        account = payload.get("account")
        if account:
            self.update_account(account)
        if event.event_type == EventType.POSITION_OPENED:
            self.open_positions.inc()
            self.positions_opened_total.labels(source=payload.get("source", "manual")).inc()
        elif event.event_type == EventType.POSITION_CLOSED:
            self.open_positions.dec()
            reason = payload.get("close_reason", "")
            self.trades_closed_total.labels(reason=reason).inc()
            if reason == "Liquidation":
                self.liquidations_total.inc()
        elif event.event_type == EventType.FEED_FALLBACK:
            self.feed_fallbacks_total.labels(source=payload.get("source", "unknown")).inc()
        if event.sequence_num:
            self.event_ledger_size.set(event.sequence_num)
