"""Tests for src/core/config.py — YAML loading, defaults, SecretStr."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from src.core.config import (
    DispatcherConfig,
    LoggingConfig,
    PollerConfig,
    SecurityMonitorConfig,
    Settings,
    TelegramConfig,
    TransactionMonitorConfig,
    get_settings,
    load_settings,
    reset_settings,
)
from src.core.types import ChannelType, Priority, SecuritySeverity, Topic


@pytest.fixture(autouse=True)
def _clean_settings() -> None:
    """Reset the global settings cache before each test."""
    reset_settings()


class TestDefaults:
    """Settings should have sensible defaults when no YAML is provided."""

    def test_default_dispatcher_config(self) -> None:
        cfg = DispatcherConfig()
        assert cfg.dedup_window_secs == 300.0
        assert cfg.max_retries == 3
        assert cfg.retry_delay_secs == 60.0
        assert cfg.recipients == []

    def test_default_telegram_config(self) -> None:
        cfg = TelegramConfig()
        assert cfg.enabled is False
        assert cfg.api_url == "https://api.telegram.org"
        assert cfg.bot_token.get_secret_value() == ""

    def test_default_security_thresholds(self) -> None:
        cfg = SecurityMonitorConfig()
        assert cfg.severity_thresholds[SecuritySeverity.CRITICAL] is True
        assert cfg.severity_thresholds[SecuritySeverity.MODERATE] is True
        assert cfg.severity_thresholds[SecuritySeverity.LOW] is False

    def test_default_transaction_heuristics(self) -> None:
        cfg = TransactionMonitorConfig()
        assert cfg.large_bet_amount == 10_000.0
        assert cfg.structuring_min_count == 5

    def test_default_poller_intervals(self) -> None:
        cfg = PollerConfig()
        assert cfg.security.interval_secs == 3600.0
        assert cfg.build.interval_secs == 60.0
        assert cfg.health.endpoint.endswith("/api/health")

    def test_default_logging_config(self) -> None:
        cfg = LoggingConfig()
        assert cfg.level == "INFO"
        assert cfg.format == "json"

    def test_default_settings(self) -> None:
        s = Settings()
        assert s.registry.load_defaults is True
        assert s.channels.webhook.enabled is False
        assert s.performance.metrics == {}
        assert s.logging.level == "INFO"


class TestYamlLoading:
    """Settings should load correctly from YAML files."""

    def test_load_from_yaml(self, tmp_path: Path) -> None:
        config_data = {
            "channels": {
                "telegram": {
                    "enabled": True,
                    "bot_token": "123:abc",
                    "channel_id": "-1001",
                },
            },
            "dispatcher": {
                "max_retries": 5,
                "recipients": [
                    {
                        "id": "ops",
                        "channel": "telegram",
                        "topics": ["security", "system"],
                        "priority_threshold": "high",
                    }
                ],
            },
            "performance": {
                "metrics": {
                    "latency_ms": {"thresholds": {"warning": 150, "critical": 300}},
                },
            },
            "logging": {
                "level": "DEBUG",
                "format": "console",
            },
        }
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)

        assert settings.channels.telegram.enabled is True
        assert settings.channels.telegram.bot_token.get_secret_value() == "123:abc"
        assert settings.dispatcher.max_retries == 5
        recipient = settings.dispatcher.recipients[0]
        assert recipient.channel == ChannelType.TELEGRAM
        assert recipient.topics == [Topic.SECURITY, Topic.SYSTEM]
        assert recipient.priority_threshold == Priority.HIGH
        assert settings.performance.metrics["latency_ms"].thresholds.direction == "above"
        assert settings.logging.level == "DEBUG"
        assert settings.logging.format == "console"

    def test_load_missing_file_uses_defaults(self, tmp_path: Path) -> None:
        settings = load_settings(tmp_path / "nonexistent.yaml")
        assert settings.dispatcher.max_retries == 3

    def test_load_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        config_file = tmp_path / "empty.yaml"
        config_file.write_text("")
        settings = load_settings(config_file)
        assert settings.dispatcher.dedup_window_secs == 300.0

    def test_partial_yaml_merges_with_defaults(self, tmp_path: Path) -> None:
        config_data = {"poller": {"build": {"enabled": False}}}
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump(config_data))

        settings = load_settings(config_file)
        assert settings.poller.build.enabled is False
        # Other defaults still intact
        assert settings.poller.security.enabled is True
        assert settings.transactions.large_bet_amount == 10_000.0

    def test_get_settings_caches(self, tmp_path: Path) -> None:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"dispatcher": {"max_retries": 7}}))
        loaded = load_settings(config_file)
        assert get_settings() is loaded


class TestSecretStr:
    """Sensitive fields should use SecretStr to prevent leaking."""

    def test_secret_str_repr_does_not_leak(self) -> None:
        cfg = TelegramConfig(bot_token="123:super-secret")  # type: ignore[arg-type]
        repr_str = repr(cfg)
        assert "super-secret" not in repr_str
        assert "**********" in repr_str

    def test_secret_str_get_value(self) -> None:
        cfg = TelegramConfig(bot_token="my-token")  # type: ignore[arg-type]
        assert cfg.bot_token.get_secret_value() == "my-token"
