"""Notification delivery — registry, channels, dispatcher."""

from src.notify.channels import (
    CHANNEL_BUILDERS,
    NotificationChannel,
    TelegramChannel,
    WebhookChannel,
    build_channels,
)
from src.notify.dispatcher import NotificationDispatcher, dedup_key
from src.notify.exceptions import (
    ConfigurationError,
    DeliveryError,
    FilterValidationError,
    NotifyError,
)
from src.notify.factory import create_notification_stack, create_registry
from src.notify.registry import ChannelTopicRegistry
from src.notify.types import ChannelSendResult, NotificationResult, NotificationStats

__all__ = [
    "CHANNEL_BUILDERS",
    "ChannelSendResult",
    "ChannelTopicRegistry",
    "ConfigurationError",
    "DeliveryError",
    "FilterValidationError",
    "NotificationChannel",
    "NotificationDispatcher",
    "NotificationResult",
    "NotificationStats",
    "NotifyError",
    "TelegramChannel",
    "WebhookChannel",
    "build_channels",
    "create_notification_stack",
    "create_registry",
    "dedup_key",
]
