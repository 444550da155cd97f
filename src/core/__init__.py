"""Core module — config, types, logging."""

from src.core.config import Settings, get_settings, load_settings, reset_settings
from src.core.logging import setup_logging
from src.core.types import (
    BaseNotification,
    ChannelType,
    Notification,
    NotificationFilter,
    NotificationMetadata,
    NotificationRecipient,
    Priority,
    Topic,
    parse_notification,
)

__all__ = [
    "BaseNotification",
    "ChannelType",
    "Notification",
    "NotificationFilter",
    "NotificationMetadata",
    "NotificationRecipient",
    "Priority",
    "Settings",
    "Topic",
    "get_settings",
    "load_settings",
    "parse_notification",
    "reset_settings",
    "setup_logging",
]
