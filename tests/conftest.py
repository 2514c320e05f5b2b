from __future__ import annotations

import re
import shutil
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from perpsim.config.settings import EngineConfig, GovernorConfig, UserSettings
from perpsim.ledger.bus import EventBus
from perpsim.monitoring.activity_log import ActivityLog
from perpsim.monitoring.notifications import NotificationCenter
from perpsim.risk.engine import PositionEngine
from perpsim.strategy.governor import SignalGovernor


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp)."""
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


class FakeClock:
    """Manually advanced UTC clock shared by engine, governor and logs."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 6, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine_config() -> EngineConfig:
    # Guard release is immediate so ids can be inspected without waiting on timers.
    return EngineConfig(lock_release_delay_sec=0.0)


@pytest.fixture
def engine(engine_config: EngineConfig, clock: FakeClock) -> PositionEngine:
    return PositionEngine(engine_config, EventBus(), clock=clock)


@pytest.fixture
def user() -> UserSettings:
    return UserSettings()


@pytest.fixture
def activity(clock: FakeClock) -> ActivityLog:
    return ActivityLog(clock=clock)


@pytest.fixture
def governor(
    engine: PositionEngine,
    user: UserSettings,
    activity: ActivityLog,
    clock: FakeClock,
) -> SignalGovernor:
    return SignalGovernor(
        GovernorConfig(flip_delay_sec=0.0),
        user,
        engine,
        activity=activity,
        notifications=NotificationCenter(user, clock=clock),
        clock=clock,
    )
