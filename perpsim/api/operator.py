"""Operator API: the presentation surface of the simulator."""

from __future__ import annotations

import time
from typing import Any

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from perpsim.config.settings import NotificationChannels
from perpsim.ledger.events import EventType
from perpsim.models import Side
from perpsim.monitoring.stats import compute_trade_stats
from perpsim.risk.pricing import liquidation_price, margin_for, max_position_size
from perpsim.runtime import Runtime

API_VERSION = "0.1.0"


class OpenPositionRequest(BaseModel):
    side: Side
    symbol: str | None = None
    size: float | None = Field(default=None, gt=0)
    leverage: int | None = Field(default=None, ge=1, le=125)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)


class ExecuteSignalRequest(BaseModel):
    size: float | None = Field(default=None, gt=0)
    leverage: int | None = Field(default=None, ge=1, le=125)
    take_profit: float | None = Field(default=None, gt=0)
    stop_loss: float | None = Field(default=None, gt=0)


class UserSettingsUpdate(BaseModel):
    auto_trade: bool | None = None
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)
    notifications: NotificationChannels | None = None
    telegram_handle: str | None = None
    email_address: str | None = None


def create_app(runtime: Runtime) -> FastAPI:
    """Create the FastAPI application bound to one simulator runtime."""
    app = FastAPI(
        title="Perpsim Operator API",
        description="Trade, inspect and configure the perpetual futures paper simulator",
        version=API_VERSION,
    )
    engine = runtime.engine
    governor = runtime.governor

    def _size_for(free_margin: float, leverage: int, requested: float | None) -> float:
        size = requested or engine.config.default_size
        cap = max_position_size(free_margin, leverage)
        if cap <= 0:
            raise HTTPException(status_code=400, detail="Insufficient free margin")
        return min(size, cap)

    @app.get("/")
    async def root() -> dict[str, Any]:
        return {
            "name": "Perpsim Operator API",
            "version": API_VERSION,
            "endpoints": {
                "positions": "GET|POST /positions, DELETE /positions/{id}",
                "history": "GET /history",
                "account": "GET /account",
                "stats": "GET /stats",
                "signals": "GET /signals, POST /signals/{id}/execute",
                "scan": "POST /scan?symbol=<symbol>",
                "logs": "GET /logs",
                "notifications": "GET /notifications, DELETE /notifications/{id}",
                "settings": "GET|PUT /settings",
                "events": "GET /events?tail=N",
                "liquidation_price": "GET /tools/liquidation-price",
            },
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        symbols = runtime.settings.copilot.symbols
        return {
            "status": "healthy",
            "uptime_sec": time.time() - runtime.started_at,
            "feed_live": {symbol: runtime.feed.is_live(symbol) for symbol in symbols},
            "open_positions": len(engine.positions()),
            "auto_trade": runtime.settings.user.auto_trade,
            "advisory_provider": runtime.settings.advisory.provider,
            "journal_size": len(runtime.bus.ledger),
        }

    @app.get("/positions")
    async def list_positions() -> list[dict[str, Any]]:
        return [pos.to_payload() for pos in engine.positions()]

    @app.post("/positions", status_code=201)
    async def open_position(request: OpenPositionRequest) -> dict[str, Any]:
        symbol = (request.symbol or runtime.settings.copilot.symbols[0]).upper()
        leverage = request.leverage or engine.config.default_leverage
        if leverage > engine.config.max_leverage:
            raise HTTPException(status_code=422, detail=f"Leverage above {engine.config.max_leverage}x")
        price = engine.last_price(symbol) or await runtime.market.get_price(symbol)
        if not price:
            raise HTTPException(status_code=409, detail=f"No price available for {symbol}")
        size = _size_for(engine.account().free_margin, leverage, request.size)
        position = await engine.open(
            symbol,
            request.side,
            size,
            leverage,
            price,
            take_profit=request.take_profit,
            stop_loss=request.stop_loss,
        )
        if position is None:
            raise HTTPException(status_code=400, detail="Order rejected")
        return position.to_payload()

    @app.delete("/positions/{position_id}")
    async def close_position(position_id: str) -> dict[str, Any]:
        if engine.get_position(position_id) is None:
            raise HTTPException(status_code=404, detail="Position not found")
        trade = await engine.close(position_id)
        if trade is None:
            raise HTTPException(status_code=409, detail="Position is already closing")
        return trade.to_payload()

    @app.get("/history")
    async def history(limit: int = Query(default=100, ge=1, le=1000)) -> list[dict[str, Any]]:
        return [trade.to_payload() for trade in engine.history()[:limit]]

    @app.get("/account")
    async def account() -> dict[str, Any]:
        payload = engine.account().to_payload()
        payload["max_position_size"] = max_position_size(
            payload["free_margin"], engine.config.default_leverage
        )
        return payload

    @app.get("/stats")
    async def stats() -> dict[str, Any]:
        return compute_trade_stats(engine.history()).to_payload()

    @app.get("/signals")
    async def signals() -> list[dict[str, Any]]:
        return [signal.to_payload() for signal in governor.signals()]

    @app.post("/signals/{signal_id}/execute", status_code=201)
    async def execute_signal(signal_id: str, request: ExecuteSignalRequest | None = None) -> dict[str, Any]:
        request = request or ExecuteSignalRequest()
        if governor.find_signal(signal_id) is None:
            raise HTTPException(status_code=404, detail="Signal not found")
        leverage = request.leverage or engine.config.default_leverage
        size = _size_for(engine.account().free_margin, leverage, request.size)
        position = await governor.execute_signal(
            signal_id,
            size=size,
            leverage=leverage,
            take_profit=request.take_profit,
            stop_loss=request.stop_loss,
        )
        if position is None:
            raise HTTPException(status_code=404, detail="Signal not found")
        return position.to_payload()

    @app.post("/scan")
    async def scan(symbol: str | None = Query(default=None)) -> dict[str, Any]:
        target = (symbol or runtime.settings.copilot.symbols[0]).upper()
        decision = await runtime.copilot.scan(target)
        if decision is None:
            return {"symbol": target, "scanned": False}
        return {
            "symbol": target,
            "scanned": True,
            "action": decision.action.value,
            "reason": decision.reason,
            "signal": decision.signal.to_payload(),
        }

    @app.get("/logs")
    async def logs(limit: int = Query(default=50, ge=1, le=1000)) -> list[dict[str, Any]]:
        return [entry.to_payload() for entry in runtime.activity.entries(limit)]

    @app.get("/notifications")
    async def notifications() -> list[dict[str, Any]]:
        return [item.to_payload() for item in runtime.notifications.items()]

    @app.delete("/notifications/{notification_id}")
    async def dismiss_notification(notification_id: str) -> dict[str, Any]:
        if not runtime.notifications.dismiss(notification_id):
            raise HTTPException(status_code=404, detail="Notification not found")
        return {"dismissed": notification_id}

    @app.get("/settings")
    async def get_settings() -> dict[str, Any]:
        return runtime.settings.user.model_dump()

    @app.put("/settings")
    async def update_settings(update: UserSettingsUpdate) -> dict[str, Any]:
        user = runtime.settings.user
        changed = {}
        for name in update.model_fields_set:
            value = getattr(update, name)
            if value is None:
                continue
            setattr(user, name, value)
            changed[name] = value.model_dump() if isinstance(value, BaseModel) else value
        if changed:
            await runtime.bus.publish(EventType.SETTINGS_UPDATED, changed, {"source": "operator_api"})
        return user.model_dump()

    @app.get("/events")
    async def events(
        tail: int = Query(default=100, ge=1, le=1000, description="Number of recent events"),
    ) -> dict[str, Any]:
        recent = runtime.bus.ledger.tail(tail)
        return {
            "count": len(recent),
            "total": len(runtime.bus.ledger),
            "events": [event.to_dict() for event in recent],
        }

    @app.get("/tools/liquidation-price")
    async def liquidation_calculator(
        side: Side,
        entry_price: float = Query(gt=0),
        leverage: int = Query(default=10, ge=1, le=125),
        size: float | None = Query(default=None, gt=0),
    ) -> dict[str, Any]:
        mmr = engine.config.maintenance_margin_rate
        result: dict[str, Any] = {
            "side": side.value,
            "entry_price": entry_price,
            "leverage": leverage,
            "maintenance_margin_rate": mmr,
            "liquidation_price": liquidation_price(side, entry_price, leverage, mmr),
            "max_position_size": max_position_size(engine.account().free_margin, leverage),
        }
        if size is not None:
            result["margin"] = margin_for(size, leverage)
        return result

    return app
