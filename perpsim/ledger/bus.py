"""Event bus that journals events before dispatching."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Awaitable, Callable

import structlog

from perpsim.ledger.events import TRANSIENT_EVENTS, Event, EventType
from perpsim.ledger.store import EventLedger

EventHandler = Callable[[Event], Awaitable[None] | None]


class EventBus:
    """Publish events to the journal and notify subscribers."""

    def __init__(self, ledger: EventLedger | None = None) -> None:
        self._ledger = ledger or EventLedger()
        self._handlers: dict[EventType, list[EventHandler]] = defaultdict(list)
        self._log = structlog.get_logger(__name__)

    @property
    def ledger(self) -> EventLedger:
        return self._ledger

    def register(self, event_type: EventType, handler: EventHandler) -> None:
        """Register a handler for a specific event type."""
        self._handlers[event_type].append(handler)

    async def publish(
        self,
        event_type: EventType,
        payload: dict[str, Any],
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Journal the event (unless transient) and dispatch to handlers."""
        if event_type in TRANSIENT_EVENTS:
            event = self._ledger.create(event_type, payload, metadata)
        else:
            event = self._ledger.append(event_type, payload, metadata)
        await self._dispatch(event)
        return event

    async def _dispatch(self, event: Event) -> None:
        handlers = self._handlers.get(event.event_type, [])
        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                handler_name = getattr(handler, "__name__", repr(handler))
                self._log.exception(
                    "event_handler_failed",
                    event_id=event.event_id,
                    event_type=event.event_type.value,
                    handler=handler_name,
                )
