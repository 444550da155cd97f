"""Tests for notification channels — HTTP mocking, error handling, target resolution."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest
from pydantic import SecretStr

from src.core.config import ChannelsConfig, TelegramConfig, WebhookConfig
from src.core.types import (
    BuildNotification,
    ChannelType,
    GeneralNotification,
    NotificationRecipient,
    Priority,
    SecurityNotification,
    SecuritySeverity,
    Topic,
)
from src.notify.channels import (
    USER_AGENT,
    TelegramChannel,
    WebhookChannel,
    build_channels,
)
from src.notify.exceptions import ConfigurationError
from src.notify.registry import ChannelConfig, ChannelTopicRegistry


# ── Helpers ─────────────────────────────────────────────────────


def _notification(**kw: object) -> SecurityNotification:
    defaults: dict[str, object] = {
        "priority": Priority.HIGH,
        "title": "TEST_TITLE",
        "message": "test body",
        "severity": SecuritySeverity.HIGH,
        "package": "lodash",
        "timestamp": 1000.0,
    }
    defaults.update(kw)
    return SecurityNotification(**defaults)  # type: ignore[arg-type]


def _recipient(channel: ChannelType = ChannelType.TELEGRAM, **kw: object) -> NotificationRecipient:
    defaults: dict[str, object] = {"id": "r1", "channel": channel, "topics": list(Topic)}
    defaults.update(kw)
    return NotificationRecipient(**defaults)  # type: ignore[arg-type]


def _tg_config(**kw: object) -> TelegramConfig:
    defaults: dict[str, object] = {
        "enabled": True,
        "bot_token": SecretStr("fake-token"),
        "channel_id": "@alerts",
        "group_id": "-100200",
    }
    defaults.update(kw)
    return TelegramConfig(**defaults)  # type: ignore[arg-type]


def _wh_config(**kw: object) -> WebhookConfig:
    defaults: dict[str, object] = {
        "enabled": True,
        "urls": ["https://hooks.example.com/a"],
    }
    defaults.update(kw)
    return WebhookConfig(**defaults)  # type: ignore[arg-type]


def _mock_response(
    status: int = 200,
    body: object = None,
    text: str = "ok",
    reason: str = "OK",
) -> AsyncMock:
    resp = AsyncMock()
    resp.status = status
    resp.reason = reason
    resp.json = AsyncMock(return_value={"ok": True} if body is None else body)
    resp.text = AsyncMock(return_value=text)
    resp.__aenter__ = AsyncMock(return_value=resp)
    resp.__aexit__ = AsyncMock(return_value=False)
    return resp


def _session(*responses: AsyncMock, side_effect: object = None) -> MagicMock:
    mock_session = MagicMock()
    if side_effect is not None:
        mock_session.post = MagicMock(side_effect=side_effect)
    elif len(responses) == 1:
        mock_session.post = MagicMock(return_value=responses[0])
    else:
        mock_session.post = MagicMock(side_effect=list(responses))
    mock_session.closed = False
    return mock_session


# ── TelegramChannel ────────────────────────────────────────────


class TestTelegramChannel:
    async def test_send_success(self) -> None:
        ch = TelegramChannel(_tg_config())
        mock_session = _session(_mock_response(200))
        ch._session = mock_session

        result = await ch.send(_notification(), _recipient())
        assert result.success
        mock_session.post.assert_called_once()
        call_args = mock_session.post.call_args
        assert call_args[0][0] == "https://api.telegram.org/botfake-token/sendMessage"
        payload = call_args[1]["json"]
        assert payload["chat_id"] == "@alerts"
        assert payload["parse_mode"] == "HTML"
        assert payload["disable_web_page_preview"] is True
        assert payload["disable_notification"] is False

    async def test_api_error_description(self) -> None:
        ch = TelegramChannel(_tg_config())
        ch._session = _session(
            _mock_response(400, {"ok": False, "description": "chat not found"})
        )
        result = await ch.send(_notification(), _recipient())
        assert not result.success
        assert result.error == "Telegram API error: chat not found"

    async def test_ok_false_with_200_is_failure(self) -> None:
        ch = TelegramChannel(_tg_config())
        ch._session = _session(_mock_response(200, {"ok": False}))
        result = await ch.send(_notification(), _recipient())
        assert not result.success
        assert result.error == "Telegram API error: HTTP 200"

    async def test_client_error(self) -> None:
        ch = TelegramChannel(_tg_config())
        ch._session = _session(side_effect=aiohttp.ClientConnectionError("refused"))
        result = await ch.send(_notification(), _recipient())
        assert not result.success
        assert "refused" in (result.error or "")

    async def test_timeout(self) -> None:
        ch = TelegramChannel(_tg_config())
        ch._session = _session(side_effect=asyncio.TimeoutError())
        result = await ch.send(_notification(), _recipient())
        assert result.error == "Request timeout"

    async def test_missing_token_raises(self) -> None:
        ch = TelegramChannel(_tg_config(bot_token=SecretStr("")))
        with pytest.raises(ConfigurationError, match="token"):
            await ch.send(_notification(), _recipient())

    async def test_missing_chat_raises(self) -> None:
        ch = TelegramChannel(_tg_config(channel_id="", group_id=""))
        with pytest.raises(ConfigurationError, match="chat"):
            await ch.send(_notification(), _recipient())

    async def test_low_priority_is_silent(self) -> None:
        ch = TelegramChannel(_tg_config())
        payload = ch.build_payload("@alerts", _notification(priority=Priority.LOW))
        assert payload["disable_notification"] is True

    async def test_html_escaping(self) -> None:
        ch = TelegramChannel(_tg_config())
        payload = ch.build_payload(
            "@alerts", _notification(title="<script>x</script>", message="a & b")
        )
        assert "<script>" not in payload["text"]
        assert "&lt;script&gt;" in payload["text"]
        assert "&amp;" in payload["text"]

    async def test_close_session(self) -> None:
        ch = TelegramChannel(_tg_config())
        mock_session = AsyncMock()
        mock_session.closed = False
        ch._session = mock_session

        await ch.close()
        mock_session.close.assert_awaited_once()

    async def test_close_when_no_session(self) -> None:
        ch = TelegramChannel(_tg_config())
        await ch.close()  # should not raise


class TestTelegramTargets:
    def test_recipient_channel_id_wins(self) -> None:
        ch = TelegramChannel(_tg_config())
        chat = ch.resolve_chat_id(_notification(), _recipient(channel_id="999"))
        assert chat == "999"

    def test_registry_target_used(self) -> None:
        registry = ChannelTopicRegistry()
        registry.add_channel(
            ChannelConfig(
                id="telegram-security",
                name="Security",
                type=ChannelType.TELEGRAM,
                target="-100555",
            )
        )
        ch = TelegramChannel(_tg_config(), registry)
        assert ch.resolve_chat_id(_notification(), _recipient()) == "-100555"

    def test_topic_defaults(self) -> None:
        ch = TelegramChannel(_tg_config())
        emergency = GeneralNotification(topic="emergency", title="fire")
        build = BuildNotification(title="b", project="p", status="failed", build_id="1")
        assert ch.resolve_chat_id(_notification(), _recipient()) == "@alerts"
        assert ch.resolve_chat_id(emergency, _recipient()) == "-100200"
        assert ch.resolve_chat_id(build, _recipient()) == "-100200"

    def test_forum_thread_marker(self) -> None:
        ch = TelegramChannel(_tg_config(topic_support=True))
        payload = ch.build_payload("-100200:topic:17", _notification())
        assert payload["chat_id"] == "-100200"
        assert payload["message_thread_id"] == 17

    def test_thread_marker_ignored_without_support(self) -> None:
        ch = TelegramChannel(_tg_config())
        payload = ch.build_payload("-100200:topic:17", _notification())
        assert payload["chat_id"] == "-100200"
        assert "message_thread_id" not in payload


# ── WebhookChannel ──────────────────────────────────────────────


class TestWebhookChannel:
    async def test_send_success(self) -> None:
        ch = WebhookChannel(_wh_config(headers={"X-Token": "abc"}))
        mock_session = _session(_mock_response(204))
        ch._session = mock_session

        result = await ch.send(_notification(), _recipient(ChannelType.WEBHOOK))
        assert result.success
        call_args = mock_session.post.call_args
        assert call_args[0][0] == "https://hooks.example.com/a"
        headers = call_args[1]["headers"]
        assert headers["User-Agent"] == USER_AGENT
        assert headers["Content-Type"] == "application/json"
        assert headers["X-Token"] == "abc"
        payload = call_args[1]["json"]
        assert payload["title"] == "TEST_TITLE"
        assert payload["formatted"]["priority_level"] == 3
        assert payload["security"]["package"] == "lodash"

    async def test_partial_failure(self) -> None:
        ch = WebhookChannel(
            _wh_config(urls=["https://hooks.example.com/a", "https://hooks.example.com/b"])
        )
        ch._session = _session(
            _mock_response(200),
            _mock_response(500, reason="Internal Server Error"),
        )
        result = await ch.send(_notification(), _recipient(ChannelType.WEBHOOK))
        assert not result.success
        assert result.error == (
            "Failed to send to 1/2 webhooks: "
            "https://hooks.example.com/b: HTTP 500: Internal Server Error"
        )

    async def test_client_error(self) -> None:
        ch = WebhookChannel(_wh_config())
        ch._session = _session(side_effect=aiohttp.ClientConnectionError("refused"))
        result = await ch.send(_notification(), _recipient(ChannelType.WEBHOOK))
        assert not result.success
        assert "refused" in (result.error or "")

    async def test_timeout(self) -> None:
        ch = WebhookChannel(_wh_config())
        ch._session = _session(side_effect=asyncio.TimeoutError())
        result = await ch.send(_notification(), _recipient(ChannelType.WEBHOOK))
        assert "Request timeout" in (result.error or "")

    async def test_no_urls_raises(self) -> None:
        ch = WebhookChannel(_wh_config(urls=[]))
        with pytest.raises(ConfigurationError):
            await ch.send(_notification(), _recipient(ChannelType.WEBHOOK))

    def test_url_resolution_order(self) -> None:
        registry = ChannelTopicRegistry()
        ch = WebhookChannel(_wh_config(), registry)
        recipient = _recipient(ChannelType.WEBHOOK)
        assert ch.resolve_urls(_notification(), recipient) == ["https://hooks.example.com/a"]

        registry.add_channel(
            ChannelConfig(
                id="webhook-monitoring",
                name="Monitoring",
                type=ChannelType.WEBHOOK,
                target="https://monitor.example.com",
            )
        )
        assert ch.resolve_urls(_notification(), recipient) == ["https://monitor.example.com"]

        direct = _recipient(ChannelType.WEBHOOK, channel_id="https://direct.example.com")
        assert ch.resolve_urls(_notification(), direct) == ["https://direct.example.com"]


class TestBuildChannels:
    def test_only_enabled_channels_built(self) -> None:
        config = ChannelsConfig(telegram=_tg_config(), webhook=WebhookConfig(enabled=False))
        channels = build_channels(config)
        assert set(channels) == {ChannelType.TELEGRAM}
        assert isinstance(channels[ChannelType.TELEGRAM], TelegramChannel)

    def test_nothing_enabled(self) -> None:
        assert build_channels(ChannelsConfig()) == {}
