"""Bounded, human-readable activity feed."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

import structlog

from perpsim.ledger.events import Event, EventType, format_timestamp, utc_now

DEDUPE_WINDOW_SEC = 0.5


class ActivityType(str, Enum):
    SCAN = "scan"
    DECISION = "decision"
    EXECUTION = "execution"
    ALERT = "alert"
    INFO = "info"


@dataclass(frozen=True)
class ActivityEntry:
    id: str
    timestamp: datetime
    message: str
    type: ActivityType

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "message": self.message,
            "type": self.type.value,
        }


def format_usd(value: float) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.2f}"


class ActivityLog:
    """Newest-first feed of co-pilot and engine activity.

    A message identical to the most recent entry and logged within
    ``DEDUPE_WINDOW_SEC`` of it is dropped.
    """

    def __init__(self, max_entries: int = 200, clock: Callable[[], datetime] = utc_now) -> None:
        self._entries: deque[ActivityEntry] = deque(maxlen=max_entries)
        self._clock = clock
        self.log = structlog.get_logger(__name__)

    def add(
        self,
        message: str,
        type: ActivityType = ActivityType.INFO,
        now: datetime | None = None,
    ) -> ActivityEntry | None:
        now = now or self._clock()
        if self._entries:
            last = self._entries[0]
            if last.message == message and (now - last.timestamp).total_seconds() < DEDUPE_WINDOW_SEC:
                return None
        entry = ActivityEntry(id=uuid4().hex[:12], timestamp=now, message=message, type=type)
        self._entries.appendleft(entry)
        self.log.info("activity", message=message, activity_type=type.value)
        return entry

    def entries(self, limit: int | None = None) -> list[ActivityEntry]:
        items = list(self._entries)
        return items[:limit] if limit is not None else items

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def handle_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == EventType.POSITION_OPENED:
            self.add(
                f"Executed {payload['side']} order on {payload['symbol']}. "
                f"Size: {format_usd(float(payload['size']))}, Lev: {payload['leverage']}x. Monitoring...",
                ActivityType.EXECUTION,
            )
        elif event.event_type == EventType.POSITION_CLOSED:
            pnl = float(payload["pnl"])
            self.add(
                f"Position {payload['symbol']} closed. PnL: {format_usd(pnl)} ({payload['close_reason']})",
                ActivityType.DECISION if pnl > 0 else ActivityType.ALERT,
            )
