"""User notifications: in-memory toasts plus optional webhook delivery."""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

import aiohttp
import structlog

from perpsim.config.settings import UserSettings
from perpsim.ledger.events import Event, EventType, format_timestamp, utc_now

_TRIGGER_TITLES = {
    "Take Profit": ("Take Profit Hit", "success"),
    "Stop Loss": ("Stop Loss Hit", "warning"),
    "Liquidation": ("Position Liquidated", "error"),
}


class NotificationType(str, Enum):
    SUCCESS = "success"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    id: str
    type: NotificationType
    title: str
    message: str
    created_at: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "created_at": format_timestamp(self.created_at),
        }


class NotificationCenter:
    """Hold toasts until dismissed and push them to the user's enabled channels.

    Webhook URLs are keyed by channel name (``push``, ``telegram``, ``email``);
    a channel is used only when both a URL is configured and the user has the
    channel switched on. Delivery failures are logged and never raised.
    """

    def __init__(
        self,
        user: UserSettings,
        webhooks: dict[str, str] | None = None,
        max_items: int = 50,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.user = user
        self.webhooks = dict(webhooks or {})
        self._items: deque[Notification] = deque(maxlen=max_items)
        self._clock = clock
        self._pending: set[asyncio.Task[None]] = set()
        self._log = structlog.get_logger(__name__)

    def notify(
        self,
        title: str,
        message: str,
        type: NotificationType | str = NotificationType.INFO,
    ) -> Notification:
        notification = Notification(
            id=uuid4().hex[:12],
            type=NotificationType(type),
            title=title,
            message=message,
            created_at=self._clock(),
        )
        self._items.appendleft(notification)
        self._log.info("notification", title=title, message=message)
        urls = self._enabled_urls()
        if urls:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                self._log.debug("notification_delivery_skipped", reason="NO_EVENT_LOOP")
            else:
                task = loop.create_task(self.deliver(notification, urls))
                self._pending.add(task)
                task.add_done_callback(self._pending.discard)
        return notification

    def items(self) -> list[Notification]:
        return list(self._items)

    def dismiss(self, notification_id: str) -> bool:
        for item in self._items:
            if item.id == notification_id:
                self._items.remove(item)
                return True
        return False

    def _enabled_urls(self) -> dict[str, str]:
        prefs = self.user.notifications
        enabled = {"push": prefs.push, "telegram": prefs.telegram, "email": prefs.email}
        return {channel: url for channel, url in self.webhooks.items() if enabled.get(channel)}

    def _create_payload(self, notification: Notification, channel: str) -> dict[str, Any]:
        payload = notification.to_payload()
        payload["channel"] = channel
        if channel == "telegram" and self.user.telegram_handle:
            payload["recipient"] = self.user.telegram_handle
        elif channel == "email" and self.user.email_address:
            payload["recipient"] = self.user.email_address
        return payload

    async def deliver(self, notification: Notification, urls: dict[str, str] | None = None) -> None:
        urls = self._enabled_urls() if urls is None else urls
        tasks = [
            self._send_webhook(url, self._create_payload(notification, channel))
            for channel, url in urls.items()
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                    timeout=aiohttp.ClientTimeout(total=10),
                ) as response:
                    if response.status >= 400:
                        text = await response.text()
                        self._log.error(
                            "webhook_failed",
                            url=url,
                            status=response.status,
                            response_body=text,
                        )
                    else:
                        self._log.debug("webhook_sent", url=url, channel=payload.get("channel"))
        except asyncio.TimeoutError:
            self._log.error("webhook_timeout", url=url)
        except Exception as exc:
            self._log.exception("webhook_error", url=url, error=str(exc))

    async def drain(self) -> None:
        """Wait for in-flight webhook deliveries."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def handle_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == EventType.POSITION_OPENED:
            self.notify(
                "Order Filled",
                f"Opened {payload['side']} {payload['symbol']} @ {float(payload['entry_price']):,.2f}",
                NotificationType.SUCCESS,
            )
        elif event.event_type == EventType.POSITION_CLOSED:
            trigger = _TRIGGER_TITLES.get(payload.get("close_reason", ""))
            if trigger is None:
                return
            title, kind = trigger
            self.notify(
                title,
                f"Closed {payload['side']} {payload['symbol']} at {float(payload['exit_price']):,.2f}",
                kind,
            )
