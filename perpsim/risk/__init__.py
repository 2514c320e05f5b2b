"""Risk and position management module."""

from perpsim.risk.engine import EngineSnapshot, PositionEngine
from perpsim.risk.pricing import (
    ProtectiveLevels,
    default_levels,
    detect_trigger,
    liquidation_price,
    margin_for,
    max_position_size,
    unrealized_pnl,
)

__all__ = [
    "EngineSnapshot",
    "PositionEngine",
    "ProtectiveLevels",
    "default_levels",
    "detect_trigger",
    "liquidation_price",
    "margin_for",
    "max_position_size",
    "unrealized_pnl",
]
