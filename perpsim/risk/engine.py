"""Position lifecycle and risk engine for the simulated margin account."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable
from uuid import uuid4

import structlog

from perpsim.config.settings import EngineConfig
from perpsim.ledger.account import AccountLedger, AccountSnapshot
from perpsim.ledger.bus import EventBus
from perpsim.ledger.events import EventType, utc_now
from perpsim.models import ClosedTrade, CloseReason, Position, Side
from perpsim.risk.pricing import (
    default_levels,
    detect_trigger,
    liquidation_price,
    margin_for,
    unrealized_pnl,
)


@dataclass(frozen=True)
class EngineSnapshot:
    positions: list[Position]
    history: list[ClosedTrade]
    account: AccountSnapshot
    last_prices: dict[str, float]

    def to_payload(self) -> dict[str, Any]:
        return {
            "positions": [pos.to_payload() for pos in self.positions],
            "history": [trade.to_payload() for trade in self.history],
            "account": self.account.to_payload(),
            "last_prices": dict(self.last_prices),
        }


class PositionEngine:
    """Owns the open positions, the closed-trade history and the account ledger.

    Every mutation goes through ``open``, ``close`` or ``mark_to_market`` and runs
    under one engine-wide lock. Closes triggered by a mark are executed inside the
    same critical section that detected them, so a position id can only ever be
    realized once. Ids of closed positions stay in the closing guard for
    ``lock_release_delay_sec`` so late duplicate requests are no-ops.

    Journal events are published after the lock is released.
    """

    def __init__(
        self,
        config: EngineConfig,
        bus: EventBus | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config = config
        self.bus = bus or EventBus()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._positions: list[Position] = []
        self._history: list[ClosedTrade] = []
        self._account = AccountLedger(config.start_balance)
        self._last_prices: dict[str, float] = {}
        self._closing: set[str] = set()
        self._release_handles: dict[str, asyncio.TimerHandle] = {}
        self.log = structlog.get_logger(__name__)

    # ------------------------------------------------------------------ open

    async def open(
        self,
        symbol: str,
        side: Side | str | None,
        size: float,
        leverage: int,
        entry_price: float,
        take_profit: float | None = None,
        stop_loss: float | None = None,
        now: datetime | None = None,
        source: str = "manual",
    ) -> Position | None:
        if side is None:
            self.log.info("open_ignored", symbol=symbol, reason="NO_SIDE")
            return None
        side = Side(side)
        async with self._lock:
            now = now or self._clock()
            levels = default_levels(
                side,
                entry_price,
                self.config.default_take_profit_pct,
                self.config.default_stop_loss_pct,
                take_profit=take_profit,
                stop_loss=stop_loss,
            )
            margin = margin_for(size, leverage)
            position = Position(
                id=uuid4().hex[:12],
                symbol=symbol,
                side=side,
                size=size,
                margin=margin,
                entry_price=entry_price,
                mark_price=entry_price,
                leverage=leverage,
                liquidation_price=liquidation_price(
                    side, entry_price, leverage, self.config.maintenance_margin_rate
                ),
                opened_at=now,
                take_profit=levels.take_profit,
                stop_loss=levels.stop_loss,
            )
            self._positions.insert(0, position)
            self._account.reserve(margin)
            self._last_prices[symbol] = entry_price
            account = self._account.snapshot(self._positions)

        self.log.info(
            "position_opened",
            position_id=position.id,
            symbol=symbol,
            side=side.value,
            size=size,
            leverage=leverage,
            entry_price=entry_price,
            liquidation_price=position.liquidation_price,
            source=source,
        )
        payload = position.to_payload()
        payload["source"] = source
        payload["account"] = account.to_payload()
        await self.bus.publish(EventType.POSITION_OPENED, payload)
        return position

    # ------------------------------------------------------------------ mark

    async def mark_to_market(
        self,
        symbol: str,
        price: float,
        now: datetime | None = None,
    ) -> list[ClosedTrade]:
        """Apply a price for ``symbol`` and close whatever it triggers."""
        if price <= 0:
            return []
        closed: list[ClosedTrade] = []
        marked: list[str] = []
        async with self._lock:
            now = now or self._clock()
            self._last_prices[symbol] = price
            for position in list(self._positions):
                if position.symbol != symbol:
                    continue
                position.unrealized_pnl = unrealized_pnl(position, price)
                position.mark_price = price
                marked.append(position.id)
                if position.id in self._closing:
                    continue
                reason = self._trigger_for(position, price, now)
                if reason is None:
                    continue
                trade = self._close_locked(position.id, reason, now)
                if trade is not None:
                    closed.append(trade)
            account = self._account.snapshot(self._positions)

        for trade in closed:
            await self._publish_close(trade, account)
        if marked or closed:
            await self.bus.publish(
                EventType.MARK_APPLIED,
                {
                    "symbol": symbol,
                    "price": price,
                    "positions": marked,
                    "account": account.to_payload(),
                },
            )
        return closed

    def _trigger_for(self, position: Position, price: float, now: datetime) -> CloseReason | None:
        in_buffer = (now - position.opened_at).total_seconds() < self.config.settlement_buffer_sec
        if in_buffer and not self.config.liquidation_bypasses_buffer:
            return None
        reason = detect_trigger(position, price)
        if in_buffer and reason is not CloseReason.LIQUIDATION:
            return None
        if reason is CloseReason.TAKE_PROFIT and position.unrealized_pnl <= 0:
            return CloseReason.BREAK_EVEN_OR_LOSS
        return reason

    # ----------------------------------------------------------------- close

    async def close(
        self,
        position_id: str,
        reason: CloseReason = CloseReason.MANUAL,
        now: datetime | None = None,
    ) -> ClosedTrade | None:
        """Realize a position. Repeated or late calls for the same id are no-ops."""
        async with self._lock:
            trade = self._close_locked(position_id, reason, now or self._clock())
            account = self._account.snapshot(self._positions)
        if trade is None:
            self.log.debug("close_skipped", position_id=position_id, reason=reason.value)
            return None
        await self._publish_close(trade, account)
        return trade

    def _close_locked(self, position_id: str, reason: CloseReason, now: datetime) -> ClosedTrade | None:
        if position_id in self._closing:
            return None
        position = next((p for p in self._positions if p.id == position_id), None)
        if position is None:
            return None
        self._closing.add(position_id)

        if reason is CloseReason.LIQUIDATION:
            pnl = -position.margin
            pnl_percent = -100.0
            exit_price = position.liquidation_price
        else:
            pnl = position.unrealized_pnl
            pnl_percent = pnl / position.margin * 100
            exit_price = position.mark_price

        trade = ClosedTrade(
            id=position.id,
            symbol=position.symbol,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            size=position.size,
            leverage=position.leverage,
            pnl=pnl,
            pnl_percent=pnl_percent,
            close_reason=reason,
            closed_at=now,
        )
        self._history.insert(0, trade)
        self._account.realize(position.margin, pnl)
        self._positions.remove(position)
        self._schedule_release(position_id)
        return trade

    def _schedule_release(self, position_id: str) -> None:
        delay = self.config.lock_release_delay_sec
        if delay <= 0:
            self._release(position_id)
            return
        loop = asyncio.get_running_loop()
        self._release_handles[position_id] = loop.call_later(delay, self._release, position_id)

    def _release(self, position_id: str) -> None:
        self._closing.discard(position_id)
        self._release_handles.pop(position_id, None)

    async def _publish_close(self, trade: ClosedTrade, account: AccountSnapshot) -> None:
        self.log.info(
            "position_closed",
            position_id=trade.id,
            symbol=trade.symbol,
            side=trade.side.value,
            exit_price=trade.exit_price,
            pnl=trade.pnl,
            reason=trade.close_reason.value,
        )
        payload = trade.to_payload()
        payload["account"] = account.to_payload()
        await self.bus.publish(EventType.POSITION_CLOSED, payload)

    # ------------------------------------------------------------- snapshots

    def positions(self) -> list[Position]:
        return [replace(pos) for pos in self._positions]

    def history(self) -> list[ClosedTrade]:
        return list(self._history)

    def get_position(self, position_id: str) -> Position | None:
        position = next((p for p in self._positions if p.id == position_id), None)
        return replace(position) if position else None

    def position_for_symbol(self, symbol: str) -> Position | None:
        position = next((p for p in self._positions if p.symbol == symbol), None)
        return replace(position) if position else None

    def last_price(self, symbol: str) -> float | None:
        return self._last_prices.get(symbol)

    def is_closing(self, position_id: str) -> bool:
        return position_id in self._closing

    def account(self) -> AccountSnapshot:
        return self._account.snapshot(self._positions)

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            positions=self.positions(),
            history=self.history(),
            account=self.account(),
            last_prices=dict(self._last_prices),
        )

    def shutdown(self) -> None:
        """Cancel pending guard releases."""
        for handle in self._release_handles.values():
            handle.cancel()
        self._release_handles.clear()
