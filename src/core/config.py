"""Pydantic settings loaded from YAML configuration."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, SecretStr

from src.core.types import NotificationRecipient, SecuritySeverity

_settings: Settings | None = None

_DEFAULT_CONFIG_PATH = Path("config/settings.yaml")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "json"
    # Per-notification routing records from the dispatcher.
    decision_log: bool = True


class DispatcherConfig(BaseModel):
    """Dedup, retry and fan-out settings for the notification dispatcher."""

    dedup_window_secs: float = 300.0
    dedup_gc_interval_secs: float = 60.0
    max_retries: int = 3
    retry_delay_secs: float = 60.0
    retry_sweep_interval_secs: float = 30.0
    delivery_timeout_secs: float = 15.0
    max_recent_errors: int = 100
    recipients: list[NotificationRecipient] = Field(default_factory=list)


class TelegramConfig(BaseModel):
    """Telegram Bot API delivery configuration."""

    enabled: bool = False
    bot_token: SecretStr = SecretStr("")
    api_url: str = "https://api.telegram.org"
    channel_id: str = ""
    group_id: str = ""
    topic_support: bool = False
    timeout_secs: float = 10.0


class WebhookConfig(BaseModel):
    """Generic JSON webhook delivery configuration."""

    enabled: bool = False
    urls: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_secs: float = 10.0


class ChannelsConfig(BaseModel):
    """Container for all delivery channel configurations."""

    telegram: TelegramConfig = TelegramConfig()
    webhook: WebhookConfig = WebhookConfig()


class RegistryConfig(BaseModel):
    """Channel/topic/category routing data, in registry export format."""

    load_defaults: bool = True
    channels: list[dict[str, Any]] = Field(default_factory=list)
    topics: list[dict[str, Any]] = Field(default_factory=list)
    categories: list[dict[str, Any]] = Field(default_factory=list)


class SecurityMonitorConfig(BaseModel):
    """Which audit severities produce notifications."""

    severity_thresholds: dict[SecuritySeverity, bool] = {
        SecuritySeverity.INFO: False,
        SecuritySeverity.LOW: False,
        SecuritySeverity.MODERATE: True,
        SecuritySeverity.HIGH: True,
        SecuritySeverity.CRITICAL: True,
    }
    batch_list_limit: int = 5


class MetricThresholds(BaseModel):
    warning: float
    critical: float
    direction: Literal["above", "below"] = "above"


class MetricConfig(BaseModel):
    """Per-metric alerting configuration."""

    enabled: bool = True
    baseline: float | None = None
    thresholds: MetricThresholds
    unit: str | None = None
    description: str = ""


class TrendAnalysisConfig(BaseModel):
    enabled: bool = True
    window_size: int = 10
    degradation_threshold_pct: float = 10.0


class PerformanceMonitorConfig(BaseModel):
    """Rolling-statistics performance monitor configuration."""

    metrics: dict[str, MetricConfig] = Field(default_factory=dict)
    alert_cooldown_secs: float = 300.0
    max_history: int = 100
    baseline_window: int = 20
    baseline_min_samples: int = 10
    trend_analysis: TrendAnalysisConfig = TrendAnalysisConfig()


class TransactionMonitorConfig(BaseModel):
    """Wager / transaction anomaly heuristics.

    Every value here is an example default, not a regulatory rule.
    """

    enabled: bool = True
    large_bet_amount: float = 10_000.0
    # Stake tiers (amount, score) checked highest first.
    stake_risk_tiers: list[tuple[float, int]] = [
        (100_000.0, 3),
        (50_000.0, 2),
        (10_000.0, 1),
    ]
    # Payout-ratio tiers (ratio, score) checked highest first.
    payout_risk_tiers: list[tuple[float, int]] = [(10.0, 2), (5.0, 1)]
    vip_risk_discount: int = 1
    established_agent_discount: int = 1
    established_agent_wagers: int = 100
    volume_spike_multiplier: float = 2.0
    agent_pattern_min_wagers: int = 10
    customer_pattern_min_wagers: int = 5
    large_wager_multiple: float = 3.0
    min_large_wagers: int = 3
    rapid_bet_gap_secs: float = 30.0
    min_rapid_bets: int = 3
    structuring_min_amount: float = 9_000.0
    structuring_min_count: int = 5
    pattern_window_secs: float = 3600.0
    structuring_window_secs: float = 86_400.0
    analysis_interval_secs: float = 300.0
    max_history_size: int = 10_000
    agent_risk_tracking: bool = True
    customer_risk_tracking: bool = True


class PollSourceConfig(BaseModel):
    """One polled external source."""

    enabled: bool = True
    interval_secs: float = 300.0
    endpoint: str = ""


class PollerConfig(BaseModel):
    """Integration poller — one independent timer per source."""

    request_timeout_secs: float = 10.0
    security: PollSourceConfig = PollSourceConfig(
        interval_secs=3600.0,
        endpoint="http://localhost:3655/api/security/audit",
    )
    performance: PollSourceConfig = PollSourceConfig(
        interval_secs=300.0,
        endpoint="http://localhost:3655/api/metrics",
    )
    health: PollSourceConfig = PollSourceConfig(
        interval_secs=600.0,
        endpoint="http://localhost:3655/api/health",
    )
    telemetry_endpoint: str = "http://localhost:3655/api/telemetry"
    diagnostics_endpoint: str = "http://localhost:3655/api/diagnostics"
    build: PollSourceConfig = PollSourceConfig(
        interval_secs=60.0,
        endpoint="http://localhost:3655/api/build/status",
    )
    transactions: PollSourceConfig = PollSourceConfig(
        interval_secs=300.0,
        endpoint="http://localhost:3655/api/betting/data",
    )


class Settings(BaseModel):
    """Root settings container."""

    logging: LoggingConfig = LoggingConfig()
    dispatcher: DispatcherConfig = DispatcherConfig()
    channels: ChannelsConfig = ChannelsConfig()
    registry: RegistryConfig = RegistryConfig()
    security: SecurityMonitorConfig = SecurityMonitorConfig()
    performance: PerformanceMonitorConfig = PerformanceMonitorConfig()
    transactions: TransactionMonitorConfig = TransactionMonitorConfig()
    poller: PollerConfig = PollerConfig()


def load_settings(path: str | Path | None = None) -> Settings:
    """Load settings from a YAML file and cache globally.

    Args:
        path: Path to YAML config. Defaults to config/settings.yaml.

    Returns:
        Parsed Settings instance.
    """
    global _settings  # noqa: PLW0603

    config_path = Path(path) if path else _DEFAULT_CONFIG_PATH

    data: dict[str, Any] = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                data = raw

    _settings = Settings(**data)
    return _settings


def get_settings() -> Settings:
    """Return the cached settings, loading defaults if not yet loaded."""
    global _settings  # noqa: PLW0603
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Reset the cached settings (useful for testing)."""
    global _settings  # noqa: PLW0603
    _settings = None
