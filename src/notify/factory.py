"""Convenience factory for wiring the notification stack."""

from __future__ import annotations

from collections.abc import Callable

from src.core.config import ChannelsConfig, DispatcherConfig, RegistryConfig
from src.notify.channels import build_channels
from src.notify.dispatcher import NotificationDispatcher
from src.notify.registry import ChannelTopicRegistry


def create_registry(config: RegistryConfig) -> ChannelTopicRegistry:
    """Defaults (unless disabled) overlaid with the configured entries."""
    registry = ChannelTopicRegistry(load_defaults=config.load_defaults)
    registry.import_config(
        {
            "channels": config.channels,
            "topics": config.topics,
            "categories": config.categories,
        }
    )
    return registry


def create_notification_stack(
    dispatcher_config: DispatcherConfig,
    channels_config: ChannelsConfig,
    registry_config: RegistryConfig,
    clock: Callable[[], float] | None = None,
) -> tuple[ChannelTopicRegistry, NotificationDispatcher]:
    """Build a registry + dispatcher with every enabled channel attached.

    Returns:
        (registry, dispatcher)
    """
    registry = create_registry(registry_config)
    channels = build_channels(channels_config, registry)
    kwargs = {"clock": clock} if clock is not None else {}
    dispatcher = NotificationDispatcher(
        channels=channels,
        registry=registry,
        config=dispatcher_config,
        **kwargs,
    )
    return registry, dispatcher
