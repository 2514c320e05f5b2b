"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings


class EngineConfig(BaseModel):
    """Position engine parameters - account seed, margin model, close guards."""

    start_balance: float = Field(default=10_000.0, gt=0)
    maintenance_margin_rate: float = Field(default=0.005, ge=0.0, le=0.1)
    default_take_profit_pct: float = Field(default=4.0, ge=0.1, le=50.0)
    default_stop_loss_pct: float = Field(default=2.0, ge=0.1, le=50.0)
    settlement_buffer_sec: float = Field(default=5.0, ge=0.0, le=60.0)
    lock_release_delay_sec: float = Field(default=1.0, ge=0.0, le=30.0)
    liquidation_bypasses_buffer: bool = Field(
        default=False,
        description="Evaluate liquidation inside the settlement buffer window",
    )
    default_size: float = Field(default=1000.0, gt=0)
    max_leverage: int = Field(default=125, ge=1, le=125)
    default_leverage: int = Field(default=10, ge=1, le=125)

    @field_validator("default_leverage")
    @classmethod
    def validate_default_leverage(cls, v: int, info) -> int:
        max_lev = info.data.get("max_leverage", 125)
        if v > max_lev:
            raise ValueError(f"default_leverage ({v}) cannot exceed max_leverage ({max_lev})")
        return v


class GovernorConfig(BaseModel):
    """Signal governor thresholds and co-pilot timing windows."""

    high_confidence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    flip_threshold: float = Field(default=0.80, ge=0.0, le=1.0)
    grace_period_sec: float = Field(default=60.0, ge=0.0, le=3600.0)
    flip_delay_sec: float = Field(default=0.8, ge=0.0, le=30.0)
    execution_cooldown_sec: float = Field(default=5.0, ge=0.0, le=300.0)


class CoPilotConfig(BaseModel):
    """Periodic advisory scan loop."""

    scan_interval_sec: float = Field(default=30.0, ge=1.0, le=3600.0)
    symbols: list[str] = Field(default_factory=lambda: ["BTCUSDT"])
    candle_interval: Literal["1m", "5m", "15m", "1h", "4h", "1d"] = "1h"
    candle_limit: int = Field(default=100, ge=2, le=1500)
    default_confidence: float = Field(default=0.75, ge=0.0, le=1.0)
    default_stop_loss_pct: float = Field(default=2.0, ge=0.1, le=50.0)
    default_take_profit_pct: float = Field(default=5.0, ge=0.1, le=100.0)


class FeedConfig(BaseModel):
    """Market feed endpoints and fallback behaviour."""

    futures_base_url: str = "https://fapi.binance.com"
    spot_base_url: str = "https://api.binance.com"
    ws_url: str = "wss://fstream.binance.com"
    sentiment_url: str = "https://api.alternative.me/fng/"
    request_timeout_sec: float = Field(default=10.0, ge=1.0, le=60.0)
    depth_limit: int = Field(default=20, ge=5, le=1000)
    liveness_sec: float = Field(default=3.0, ge=0.5, le=60.0)
    synthetic_tick_interval_sec: float = Field(default=1.0, ge=0.1, le=10.0)
    synthetic_volatility_pct: float = Field(default=0.05, ge=0.0, le=5.0)
    candle_buffer_size: int = Field(default=500, ge=2, le=1500)
    random_seed: int | None = Field(default=None, ge=0)


class AdvisoryConfig(BaseModel):
    """LLM advisory integration configuration."""

    provider: Literal["openai", "anthropic", "local"] = "local"
    model: str = "gpt-4o-mini"
    max_tokens: int = Field(default=300, ge=50, le=2000)
    temperature: float = Field(default=0.2, ge=0.0, le=1.0)
    request_timeout_sec: int = Field(default=20, ge=5, le=120)
    retry_attempts: int = Field(default=1, ge=0, le=5)
    retry_backoff_sec: float = Field(default=1.0, ge=0.1, le=10.0)
    prompt_candles: int = Field(default=5, ge=1, le=50)


class NotificationChannels(BaseModel):
    """Which delivery channels the user has switched on."""

    push: bool = True
    telegram: bool = False
    email: bool = False


class UserSettings(BaseModel):
    """User-facing preferences consumed by the signal governor."""

    auto_trade: bool = True
    min_confidence: float = Field(default=0.70, ge=0.0, le=1.0)
    notifications: NotificationChannels = Field(default_factory=NotificationChannels)
    telegram_handle: str = ""
    email_address: str = ""


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    journal_path: str | None = None
    logs_path: str = "./logs"
    trade_log_enabled: bool = True


class MonitoringConfig(BaseModel):
    """Monitoring and alerting configuration."""

    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    metrics_enabled: bool = True
    api_host: str = "127.0.0.1"
    api_port: int = Field(default=8000, ge=1024, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"
    notification_webhooks: dict[str, str] = Field(
        default_factory=dict,
        description="Channel name (push/telegram/email) to webhook URL",
    )
    activity_log_size: int = Field(default=200, ge=10, le=5000)
    notification_queue_size: int = Field(default=50, ge=5, le=1000)
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    # API credentials from environment
    openai_api_key: str = Field(default="", alias="OPENAI_API_KEY")
    anthropic_api_key: str = Field(default="", alias="ANTHROPIC_API_KEY")

    # Sub-configurations
    engine: EngineConfig = Field(default_factory=EngineConfig)
    governor: GovernorConfig = Field(default_factory=GovernorConfig)
    copilot: CoPilotConfig = Field(default_factory=CoPilotConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    advisory: AdvisoryConfig = Field(default_factory=AdvisoryConfig)
    user: UserSettings = Field(default_factory=UserSettings)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @property
    def advisory_api_key(self) -> str:
        """Return the API key for the configured advisory provider."""
        if self.advisory.provider == "openai":
            return self.openai_api_key
        if self.advisory.provider == "anthropic":
            return self.anthropic_api_key
        return ""


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file values
    3. Default values
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    env_path = config_file.parent / ".env"
    return Settings(**config_data, _env_file=env_path)


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "engine": {
            "start_balance": 10000.0,
            "maintenance_margin_rate": 0.005,
            "default_take_profit_pct": 4.0,
            "default_stop_loss_pct": 2.0,
            "settlement_buffer_sec": 5.0,
            "lock_release_delay_sec": 1.0,
            "liquidation_bypasses_buffer": False,
            "default_size": 1000.0,
            "default_leverage": 10,
        },
        "governor": {
            "high_confidence_threshold": 0.8,
            "flip_threshold": 0.8,
            "grace_period_sec": 60.0,
            "flip_delay_sec": 0.8,
            "execution_cooldown_sec": 5.0,
        },
        "copilot": {
            "scan_interval_sec": 30.0,
            "symbols": ["BTCUSDT"],
            "candle_interval": "1h",
            "candle_limit": 100,
        },
        "feed": {
            "futures_base_url": "https://fapi.binance.com",
            "spot_base_url": "https://api.binance.com",
            "ws_url": "wss://fstream.binance.com",
            "liveness_sec": 3.0,
        },
        "advisory": {
            "provider": "local",
            "model": "gpt-4o-mini",
            "request_timeout_sec": 20,
            "retry_attempts": 1,
        },
        "user": {
            "auto_trade": True,
            "min_confidence": 0.7,
            "notifications": {"push": True, "telegram": False, "email": False},
        },
        "storage": {
            "journal_path": None,
            "logs_path": "./logs",
            "trade_log_enabled": True,
        },
        "monitoring": {
            "metrics_port": 9090,
            "api_port": 8000,
            "log_level": "INFO",
            "log_format": "json",
            "notification_webhooks": {},
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
