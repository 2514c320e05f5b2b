"""Trade CSV logger."""

from __future__ import annotations

import csv
from datetime import datetime
from pathlib import Path
from typing import Any

from perpsim.ledger.events import Event, EventType


class TradeLogger:
    """
    Log trades to a CSV file.

    - Writes a row on `PositionOpened` (open trade with blank exit fields)
    - Fills in that row on `PositionClosed`
    """

    def __init__(self, log_path: str | Path) -> None:
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_header()

    def handle_event(self, event: Event) -> None:
        if event.event_type == EventType.POSITION_OPENED:
            self._handle_open(event)
        elif event.event_type == EventType.POSITION_CLOSED:
            self._handle_close(event)

    def _handle_open(self, event: Event) -> None:
        payload = event.payload
        trade_id = payload["id"]
        if self._find_open_row(self._read_rows(), trade_id) is not None:
            return
        self._append_row(
            {
                "trade_id": trade_id,
                "symbol": payload.get("symbol", ""),
                "side": payload.get("side", ""),
                "size": float(payload.get("size", 0)),
                "leverage": payload.get("leverage", ""),
                "entry_price": float(payload.get("entry_price", 0)),
                "exit_price": "",
                "entry_time": payload.get("opened_at") or event.timestamp.isoformat(),
                "exit_time": "",
                "holding_hours": "",
                "pnl": "",
                "pnl_percent": "",
                "reason": "",
            }
        )

    def _handle_close(self, event: Event) -> None:
        payload = event.payload
        exit_time = payload.get("closed_at") or event.timestamp.isoformat()
        rows = self._read_rows()
        row = self._find_open_row(rows, payload["id"])
        if row is None:
            self._append_row(
                {
                    "trade_id": payload["id"],
                    "symbol": payload.get("symbol", ""),
                    "side": payload.get("side", ""),
                    "size": float(payload.get("size", 0)),
                    "leverage": payload.get("leverage", ""),
                    "entry_price": float(payload.get("entry_price", 0)),
                    "exit_price": float(payload.get("exit_price", 0)),
                    "entry_time": "",
                    "exit_time": exit_time,
                    "holding_hours": "",
                    "pnl": float(payload.get("pnl", 0)),
                    "pnl_percent": float(payload.get("pnl_percent", 0)),
                    "reason": payload.get("close_reason", ""),
                }
            )
            return
        row["exit_price"] = str(float(payload.get("exit_price", 0)))
        row["exit_time"] = exit_time
        row["holding_hours"] = _holding_hours(row.get("entry_time", ""), exit_time)
        row["pnl"] = str(float(payload.get("pnl", 0)))
        row["pnl_percent"] = str(float(payload.get("pnl_percent", 0)))
        row["reason"] = payload.get("close_reason", "")
        with open(self.log_path, "w", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self._fieldnames())
            writer.writeheader()
            writer.writerows(rows)

    def _read_rows(self) -> list[dict[str, str]]:
        if not self.log_path.exists():
            return []
        with open(self.log_path, newline="") as handle:
            return list(csv.DictReader(handle))

    @staticmethod
    def _find_open_row(rows: list[dict[str, str]], trade_id: str) -> dict[str, str] | None:
        for row in rows:
            if row.get("trade_id") == trade_id and not (row.get("exit_time") or "").strip():
                return row
        return None

    def _ensure_header(self) -> None:
        if self.log_path.exists():
            return
        with open(self.log_path, "w", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self._fieldnames())
            writer.writeheader()

    def _append_row(self, row: dict[str, Any]) -> None:
        with open(self.log_path, "a", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=self._fieldnames())
            writer.writerow(row)

    @staticmethod
    def _fieldnames() -> list[str]:
        return [
            "trade_id",
            "symbol",
            "side",
            "size",
            "leverage",
            "entry_price",
            "exit_price",
            "entry_time",
            "exit_time",
            "holding_hours",
            "pnl",
            "pnl_percent",
            "reason",
        ]


def _holding_hours(entry_time: str, exit_time: str) -> str:
    entry_time = (entry_time or "").strip()
    if not entry_time:
        return ""
    try:
        opened = datetime.fromisoformat(entry_time.replace("Z", "+00:00"))
        closed = datetime.fromisoformat(exit_time.replace("Z", "+00:00"))
    except ValueError:
        return ""
    return str(round((closed - opened).total_seconds() / 3600, 4))
