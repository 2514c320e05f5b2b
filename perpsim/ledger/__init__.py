"""Event journal and account bookkeeping module."""

from perpsim.ledger.account import AccountLedger, AccountSnapshot
from perpsim.ledger.bus import EventBus
from perpsim.ledger.events import Event, EventType
from perpsim.ledger.store import EventLedger

__all__ = ["AccountLedger", "AccountSnapshot", "Event", "EventType", "EventLedger", "EventBus"]
