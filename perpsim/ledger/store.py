"""Append-only event journal for the current session."""

from __future__ import annotations

from collections import deque
from pathlib import Path
from typing import Iterable

import orjson

from perpsim.ledger.events import Event, EventType, new_event


class EventLedger:
    """Append-only event store with sequence tracking.

    Recent events are kept in memory for the operator API. When a journal path is
    given every event is also appended to ``events.jsonl`` as an audit trail; the
    file is never read back into engine state.
    """

    def __init__(self, journal_path: str | None = None, max_in_memory: int = 5000) -> None:
        self._events: deque[Event] = deque(maxlen=max_in_memory)
        self._sequence = 0
        self.events_file: Path | None = None
        if journal_path:
            journal_dir = Path(journal_path)
            journal_dir.mkdir(parents=True, exist_ok=True)
            self.events_file = journal_dir / "events.jsonl"

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def last_sequence(self) -> int:
        """Return the last assigned sequence number."""
        return self._sequence

    def create(
        self,
        event_type: EventType,
        payload: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Create an unsequenced event that is dispatched but never stored."""
        return new_event(event_type, payload, 0, metadata)

    def append(
        self,
        event_type: EventType,
        payload: dict,
        metadata: dict | None = None,
    ) -> Event:
        """Create and append a new event, then return it."""
        event = new_event(event_type, payload, self._next_sequence(), metadata)
        self.append_event(event)
        return event

    def append_event(self, event: Event) -> None:
        """Append an existing event to the journal."""
        self._events.append(event)
        if self.events_file is None:
            return
        payload = orjson.dumps(event.to_dict())
        with open(self.events_file, "ab") as handle:
            handle.write(payload + b"\n")

    def iter_events(self) -> Iterable[Event]:
        """Iterate the in-memory events, oldest first."""
        return iter(list(self._events))

    def tail(self, limit: int) -> list[Event]:
        """Return the last N events."""
        if limit <= 0:
            return []
        return list(self._events)[-limit:]

    def __len__(self) -> int:
        return len(self._events)

    def read_journal(self) -> list[Event]:
        """Load every event from the journal file (audit tooling only)."""
        if self.events_file is None or not self.events_file.exists():
            return []
        events: list[Event] = []
        with open(self.events_file, "rb") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    events.append(Event.from_dict(orjson.loads(line)))
                except orjson.JSONDecodeError:
                    continue
        return events
