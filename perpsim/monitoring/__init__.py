"""Monitoring utilities."""

from perpsim.monitoring.activity_log import ActivityEntry, ActivityLog, ActivityType
from perpsim.monitoring.logging import bind_session, configure_logging
from perpsim.monitoring.metrics import Metrics
from perpsim.monitoring.notifications import Notification, NotificationCenter, NotificationType
from perpsim.monitoring.stats import TradeStats, compute_trade_stats
from perpsim.monitoring.trade_log import TradeLogger

__all__ = [
    "configure_logging",
    "bind_session",
    "Metrics",
    "TradeLogger",
    "ActivityLog",
    "ActivityEntry",
    "ActivityType",
    "NotificationCenter",
    "Notification",
    "NotificationType",
    "TradeStats",
    "compute_trade_stats",
]
