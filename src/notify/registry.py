"""Channel / topic / category routing registry.

Pure configuration store: which channels serve which topics, per-topic
dedup rules, per-channel rate limits and quiet hours, and category-level
reporting policy. Topics and categories are many-to-many through the
category's topic list, but a topic belongs to at most one category.
"""

from __future__ import annotations

import datetime
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field

from src.core.types import ChannelType, Priority, Topic
from src.notify.exceptions import ConfigurationError

logger = structlog.stdlib.get_logger()


# ── Config models ───────────────────────────────────────────────


class RateLimit(BaseModel):
    max_per_hour: int
    max_per_day: int


class QuietHours(BaseModel):
    """Daily quiet window in the channel's local time (HH:MM, wraps midnight)."""

    start: str
    end: str
    utc_offset_minutes: int = 0


class ChannelSettings(BaseModel):
    rate_limit: RateLimit | None = None
    quiet_hours: QuietHours | None = None


class ChannelConfig(BaseModel):
    id: str
    name: str
    type: ChannelType
    target: str | None = None  # chat id or webhook URL
    enabled: bool = True
    description: str = ""
    settings: ChannelSettings = ChannelSettings()


class TopicRules(BaseModel):
    dedup_window_secs: float = 300.0
    escalation_threshold: int | None = None
    auto_resolve_after_secs: float | None = None


class TopicMetadata(BaseModel):
    category: str = ""
    tags: list[str] = Field(default_factory=list)
    requires_ack: bool = False


class TopicConfig(BaseModel):
    name: Topic
    display_name: str
    description: str = ""
    emoji: str = ""
    default_priority: Priority = Priority.MEDIUM
    enabled: bool = True
    channels: list[str] = Field(default_factory=list)
    rules: TopicRules = TopicRules()
    metadata: TopicMetadata = TopicMetadata()


class EscalationPolicy(BaseModel):
    levels: list[Priority] = Field(default_factory=list)
    delays_secs: list[float] = Field(default_factory=list)


class CategorySettings(BaseModel):
    consolidated_reporting: bool = False
    summary_frequency: Literal["hourly", "daily", "weekly"] = "daily"
    escalation_policy: EscalationPolicy = EscalationPolicy()


class CategoryConfig(BaseModel):
    name: str
    display_name: str
    description: str = ""
    emoji: str = ""
    topics: list[Topic] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    channels: list[str] = Field(default_factory=list)
    settings: CategorySettings = CategorySettings()


# ── Quiet hours ─────────────────────────────────────────────────


def _parse_hhmm(value: str) -> int:
    """Minutes past midnight for an ``HH:MM`` string."""
    hours, _, minutes = value.partition(":")
    try:
        total = int(hours) * 60 + int(minutes or 0)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid HH:MM time: {value!r}") from exc
    if not 0 <= total < 24 * 60:
        raise ConfigurationError(f"Invalid HH:MM time: {value!r}")
    return total


def in_quiet_window(quiet: QuietHours, now: datetime.datetime) -> bool:
    """Whether *now* (aware or naive-UTC) falls inside the quiet window."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.UTC)
    local = now.astimezone(
        datetime.timezone(datetime.timedelta(minutes=quiet.utc_offset_minutes))
    )
    minute = local.hour * 60 + local.minute
    start = _parse_hhmm(quiet.start)
    end = _parse_hhmm(quiet.end)
    if start == end:
        return False
    if start < end:
        return start <= minute < end
    # Window wraps past midnight, e.g. 22:00–06:00.
    return minute >= start or minute < end


# ── Registry ────────────────────────────────────────────────────


class ChannelTopicRegistry:
    """In-memory store of channels, topics and categories.

    Usage::

        registry = ChannelTopicRegistry()          # loads the defaults
        registry.channels_for_topic(Topic.SECURITY)
        registry.route_for(Topic.BUILD, ChannelType.TELEGRAM)

        snapshot = registry.export_config()
        other = ChannelTopicRegistry(load_defaults=False)
        other.import_config(snapshot)
    """

    def __init__(self, load_defaults: bool = True) -> None:
        self._channels: dict[str, ChannelConfig] = {}
        self._topics: dict[Topic, TopicConfig] = {}
        self._categories: dict[str, CategoryConfig] = {}
        if load_defaults:
            self.import_config(default_registry_config())

    # ── Mutation ─────────────────────────────────────────────────

    def add_channel(self, config: ChannelConfig) -> None:
        self._channels[config.id] = config.model_copy(deep=True)

    def remove_channel(self, channel_id: str) -> None:
        """Remove a channel and every topic/category reference to it."""
        self._channels.pop(channel_id, None)
        for name, topic in self._topics.items():
            if channel_id in topic.channels:
                self._topics[name] = topic.model_copy(
                    update={"channels": [c for c in topic.channels if c != channel_id]}
                )
        for name, category in self._categories.items():
            if channel_id in category.channels:
                self._categories[name] = category.model_copy(
                    update={"channels": [c for c in category.channels if c != channel_id]}
                )

    def add_topic(self, config: TopicConfig) -> None:
        self._topics[config.name] = config.model_copy(deep=True)

    def remove_topic(self, topic: Topic) -> None:
        """Remove a topic and drop it from every category."""
        self._topics.pop(topic, None)
        for name, category in self._categories.items():
            if topic in category.topics:
                self._categories[name] = category.model_copy(
                    update={"topics": [t for t in category.topics if t != topic]}
                )

    def add_category(self, config: CategoryConfig) -> None:
        for topic in config.topics:
            owner = self.category_for_topic(topic)
            if owner is not None and owner.name != config.name:
                raise ConfigurationError(
                    f"Topic {topic} already belongs to category {owner.name}"
                )
        self._categories[config.name] = config.model_copy(deep=True)

    def remove_category(self, name: str) -> None:
        self._categories.pop(name, None)

    # ── Lookups ──────────────────────────────────────────────────

    def get_channel(self, channel_id: str) -> ChannelConfig | None:
        return self._channels.get(channel_id)

    def get_topic(self, topic: Topic | str) -> TopicConfig | None:
        try:
            return self._topics.get(Topic(topic))
        except ValueError:
            return None

    def get_category(self, name: str) -> CategoryConfig | None:
        return self._categories.get(name)

    def channels_for_topic(self, topic: Topic | str) -> list[ChannelConfig]:
        """Enabled channels serving *topic*, in the topic's configured order."""
        config = self.get_topic(topic)
        if config is None:
            return []
        channels = (self._channels.get(cid) for cid in config.channels)
        return [c for c in channels if c is not None and c.enabled]

    def route_for(self, topic: Topic | str, channel_type: ChannelType) -> list[ChannelConfig]:
        """Enabled channels of *channel_type* serving *topic*."""
        return [c for c in self.channels_for_topic(topic) if c.type == channel_type]

    def topics_for_category(self, name: str) -> list[TopicConfig]:
        category = self._categories.get(name)
        if category is None:
            return []
        topics = (self._topics.get(t) for t in category.topics)
        return [t for t in topics if t is not None and t.enabled]

    def category_for_topic(self, topic: Topic | str) -> CategoryConfig | None:
        for category in self._categories.values():
            if topic in category.topics:
                return category
        return None

    def enabled_channels(self) -> list[ChannelConfig]:
        return [c for c in self._channels.values() if c.enabled]

    def enabled_topics(self) -> list[TopicConfig]:
        return [t for t in self._topics.values() if t.enabled]

    def channel_topic_mapping(self) -> dict[str, list[Topic]]:
        """Enabled channel id → enabled topics it serves."""
        mapping: dict[str, list[Topic]] = {}
        for channel in self.enabled_channels():
            mapping[channel.id] = [
                t.name for t in self.enabled_topics() if channel.id in t.channels
            ]
        return mapping

    def is_channel_in_quiet_hours(
        self,
        channel_id: str,
        now: datetime.datetime | None = None,
    ) -> bool:
        channel = self._channels.get(channel_id)
        if channel is None or channel.settings.quiet_hours is None:
            return False
        return in_quiet_window(
            channel.settings.quiet_hours,
            now or datetime.datetime.now(datetime.UTC),
        )

    def stats(self) -> dict[str, int]:
        return {
            "channels": len(self._channels),
            "enabled_channels": len(self.enabled_channels()),
            "topics": len(self._topics),
            "enabled_topics": len(self.enabled_topics()),
            "categories": len(self._categories),
            "channel_topic_mappings": sum(len(t.channels) for t in self._topics.values()),
        }

    # ── Export / import ──────────────────────────────────────────

    def export_config(self) -> dict[str, list[dict[str, Any]]]:
        """Full configuration as plain JSON-compatible data."""
        return {
            "channels": [c.model_dump(mode="json") for c in self._channels.values()],
            "topics": [t.model_dump(mode="json") for t in self._topics.values()],
            "categories": [c.model_dump(mode="json") for c in self._categories.values()],
        }

    def import_config(self, data: dict[str, Any]) -> None:
        """Merge plain-data channels, topics and categories (upsert by key)."""
        for raw in data.get("channels") or []:
            self.add_channel(ChannelConfig.model_validate(raw))
        for raw in data.get("topics") or []:
            self.add_topic(TopicConfig.model_validate(raw))
        for raw in data.get("categories") or []:
            self.add_category(CategoryConfig.model_validate(raw))
        logger.debug("registry_imported", **self.stats())


# ── Defaults ────────────────────────────────────────────────────

_MINUTE = 60.0


def _topic(
    name: Topic,
    display_name: str,
    description: str,
    emoji: str,
    priority: Priority,
    channels: list[str],
    dedup_window_secs: float,
    category: str,
    tags: list[str],
    requires_ack: bool,
    escalation_threshold: int | None = None,
) -> dict[str, Any]:
    return {
        "name": name,
        "display_name": display_name,
        "description": description,
        "emoji": emoji,
        "default_priority": priority,
        "channels": channels,
        "rules": {
            "dedup_window_secs": dedup_window_secs,
            "escalation_threshold": escalation_threshold,
        },
        "metadata": {"category": category, "tags": tags, "requires_ack": requires_ack},
    }


def default_registry_config() -> dict[str, list[dict[str, Any]]]:
    """Default channels, topics and categories in export format."""
    main = "telegram-main"
    sec = "telegram-security"
    hook = "webhook-monitoring"
    return {
        "channels": [
            {"id": main, "name": "Main Telegram Channel", "type": "telegram",
             "description": "Primary notification channel"},
            {"id": sec, "name": "Security Alerts", "type": "telegram",
             "description": "Critical security notifications"},
            {"id": hook, "name": "Monitoring Webhook", "type": "webhook",
             "description": "External monitoring integration"},
        ],
        "topics": [
            _topic(Topic.SECURITY, "Security", "Security vulnerabilities and patches",
                   "🔒", Priority.HIGH, [sec, hook], 5 * _MINUTE, "security",
                   ["security", "vulnerability"], True, escalation_threshold=3),
            _topic(Topic.PERFORMANCE, "Performance",
                   "Performance metrics and degradation alerts", "⚡", Priority.MEDIUM,
                   [main, hook], 10 * _MINUTE, "infrastructure",
                   ["performance", "metrics"], False),
            _topic(Topic.SYSTEM, "System", "System status and health alerts", "🖥️",
                   Priority.HIGH, [main, hook], 5 * _MINUTE, "infrastructure",
                   ["system", "health"], True),
            _topic(Topic.BUILD, "Build", "Build status and CI/CD alerts", "🔨",
                   Priority.MEDIUM, [main], 1 * _MINUTE, "development",
                   ["build", "ci", "cd"], False),
            _topic(Topic.DEPLOYMENT, "Deployment", "Deployment status and release alerts",
                   "🚀", Priority.HIGH, [main, hook], 5 * _MINUTE, "development",
                   ["deployment", "release"], True),
            _topic(Topic.MONITORING, "Monitoring", "General monitoring and alerting", "📊",
                   Priority.MEDIUM, [main], 5 * _MINUTE, "infrastructure",
                   ["monitoring", "alerts"], False),
            _topic(Topic.MAINTENANCE, "Maintenance", "Maintenance windows and updates",
                   "🔧", Priority.LOW, [main], 60 * _MINUTE, "",
                   ["maintenance", "updates"], False),
            _topic(Topic.EMERGENCY, "Emergency", "Critical system emergencies", "🚨",
                   Priority.CRITICAL, [main, sec, hook], 1 * _MINUTE, "",
                   ["emergency", "critical"], True),
            _topic(Topic.BETTING, "Betting", "Betting activity monitoring and alerts", "🎯",
                   Priority.MEDIUM, [main, hook], 5 * _MINUTE, "betting",
                   ["betting", "wagers"], False),
            _topic(Topic.FINANCIAL, "Financial",
                   "Financial transactions and loss/profit alerts", "💰", Priority.HIGH,
                   [main, sec, hook], 1 * _MINUTE, "betting",
                   ["financial", "transactions"], True),
        ],
        "categories": [
            {
                "name": "security", "display_name": "Security", "emoji": "🛡️",
                "description": "Security-related notifications",
                "topics": [Topic.SECURITY], "priority": Priority.HIGH,
                "channels": [sec, hook],
                "settings": {
                    "consolidated_reporting": True, "summary_frequency": "daily",
                    "escalation_policy": {
                        "levels": [Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL],
                        "delays_secs": [5 * _MINUTE, 10 * _MINUTE],
                    },
                },
            },
            {
                "name": "infrastructure", "display_name": "Infrastructure", "emoji": "🏗️",
                "description": "System and infrastructure notifications",
                "topics": [Topic.SYSTEM, Topic.PERFORMANCE, Topic.MONITORING],
                "priority": Priority.MEDIUM, "channels": [main, hook],
                "settings": {
                    "consolidated_reporting": True, "summary_frequency": "hourly",
                    "escalation_policy": {
                        "levels": [Priority.LOW, Priority.MEDIUM, Priority.HIGH],
                        "delays_secs": [10 * _MINUTE, 30 * _MINUTE],
                    },
                },
            },
            {
                "name": "development", "display_name": "Development", "emoji": "💻",
                "description": "Development and deployment notifications",
                "topics": [Topic.BUILD, Topic.DEPLOYMENT], "priority": Priority.MEDIUM,
                "channels": [main],
                "settings": {
                    "consolidated_reporting": False, "summary_frequency": "daily",
                    "escalation_policy": {
                        "levels": [Priority.LOW, Priority.MEDIUM, Priority.HIGH],
                        "delays_secs": [5 * _MINUTE],
                    },
                },
            },
            {
                "name": "betting", "display_name": "Betting & Financial", "emoji": "🎰",
                "description": "Betting activity and financial transaction monitoring",
                "topics": [Topic.BETTING, Topic.FINANCIAL], "priority": Priority.HIGH,
                "channels": [main, sec, hook],
                "settings": {
                    "consolidated_reporting": True, "summary_frequency": "hourly",
                    "escalation_policy": {
                        "levels": [Priority.MEDIUM, Priority.HIGH, Priority.CRITICAL],
                        "delays_secs": [10 * _MINUTE, 30 * _MINUTE],
                    },
                },
            },
        ],
    }
