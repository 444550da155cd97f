"""Tests for engine wiring — settings in, running components out."""

from __future__ import annotations

import httpx

from src.core.config import (
    ChannelsConfig,
    DispatcherConfig,
    PollerConfig,
    PollSourceConfig,
    Settings,
    WebhookConfig,
)
from src.core.types import ChannelType, NotificationRecipient, Topic
from src.integration.context import create_engine_context
from src.notify.channels import NotificationChannel, WebhookChannel
from src.notify.types import ChannelSendResult


class RecordingChannel(NotificationChannel):
    def __init__(self) -> None:
        self.channel_type = ChannelType.WEBHOOK
        self.sent: list[str] = []
        self.closed = False

    async def send(self, notification, recipient) -> ChannelSendResult:  # type: ignore[no-untyped-def]
        self.sent.append(notification.title)
        return ChannelSendResult(success=True)

    async def close(self) -> None:
        self.closed = True


def _quiet_poller() -> PollerConfig:
    disabled = PollSourceConfig(enabled=False)
    return PollerConfig(
        security=disabled,
        performance=disabled,
        health=PollSourceConfig(enabled=False, endpoint="http://svc/health"),
        build=disabled,
        transactions=disabled,
        telemetry_endpoint="http://svc/telemetry",
        diagnostics_endpoint="http://svc/diagnostics",
    )


class TestCreateEngineContext:
    def test_components_share_dispatcher(self) -> None:
        ctx = create_engine_context(Settings())
        assert ctx.security._dispatcher is ctx.dispatcher
        assert ctx.performance._dispatcher is ctx.dispatcher
        assert ctx.transactions._dispatcher is ctx.dispatcher
        assert ctx.dispatcher.registry is ctx.registry
        assert ctx.registry.stats()["topics"] == 10

    def test_enabled_channels_attached(self) -> None:
        settings = Settings(
            channels=ChannelsConfig(
                webhook=WebhookConfig(enabled=True, urls=["http://hooks.local/a"])
            )
        )
        ctx = create_engine_context(settings)
        assert isinstance(ctx.dispatcher._channels[ChannelType.WEBHOOK], WebhookChannel)
        assert ChannelType.TELEGRAM not in ctx.dispatcher._channels

    def test_configured_recipients_loaded(self) -> None:
        recipient = NotificationRecipient(
            id="ops", channel=ChannelType.WEBHOOK, topics=[Topic.SYSTEM]
        )
        settings = Settings(dispatcher=DispatcherConfig(recipients=[recipient]))
        ctx = create_engine_context(settings)
        assert [r.id for r in ctx.dispatcher.recipients()] == ["ops"]


class TestEngineLifecycle:
    async def test_start_stop(self) -> None:
        ctx = create_engine_context(Settings(poller=_quiet_poller()))
        channel = RecordingChannel()
        ctx.dispatcher.register_channel(channel)

        await ctx.start()
        assert ctx.dispatcher.running
        assert ctx.poller.running

        await ctx.stop()
        assert not ctx.dispatcher.running
        assert not ctx.poller.running
        assert channel.closed

    async def test_health_alert_reaches_channel(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/health":
                return httpx.Response(200, json={"status": "down"})
            return httpx.Response(404)

        recipient = NotificationRecipient(
            id="ops", channel=ChannelType.WEBHOOK, topics=[Topic.SYSTEM]
        )
        settings = Settings(
            poller=_quiet_poller(),
            dispatcher=DispatcherConfig(recipients=[recipient]),
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            ctx = create_engine_context(settings, client=client)
            channel = RecordingChannel()
            ctx.dispatcher.register_channel(channel)

            assert await ctx.poller.trigger_health_check() is True

        assert channel.sent == ["🔴 System Unhealthy"]
        assert ctx.dispatcher.stats().total_sent == 1
