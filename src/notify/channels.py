"""Notification channels — Telegram and generic webhook delivery."""

from __future__ import annotations

import abc
import asyncio
from collections.abc import Callable
from typing import Any

import aiohttp
import structlog

from src.core.config import ChannelsConfig, TelegramConfig, WebhookConfig
from src.core.types import (
    BaseNotification,
    ChannelType,
    NotificationRecipient,
    Priority,
    Topic,
)
from src.notify.exceptions import ConfigurationError
from src.notify.formatters import build_webhook_payload, format_telegram_message
from src.notify.registry import ChannelTopicRegistry
from src.notify.types import ChannelSendResult

logger = structlog.get_logger(__name__)

USER_AGENT = "alert-engine-webhook/1.0"

_THREAD_MARKER = ":topic:"


class NotificationChannel(abc.ABC):
    """Base class for notification delivery channels."""

    channel_type: ChannelType

    @abc.abstractmethod
    async def send(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> ChannelSendResult:
        """Deliver *notification* to *recipient*.

        Transport failures come back as an unsuccessful result; a missing
        or unknown delivery target raises ConfigurationError.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""


class TelegramChannel(NotificationChannel):
    """Delivers notifications via the Telegram Bot API (HTML parse mode)."""

    channel_type = ChannelType.TELEGRAM

    def __init__(
        self,
        config: TelegramConfig,
        registry: ChannelTopicRegistry | None = None,
    ) -> None:
        self._token = config.bot_token.get_secret_value()
        self._api_url = config.api_url.rstrip("/")
        self._channel_id = config.channel_id
        self._group_id = config.group_id
        self._topic_support = config.topic_support
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_secs)
        self._registry = registry
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    def resolve_chat_id(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> str | None:
        """Recipient target, then the registry route, then the topic default."""
        if recipient.channel_id:
            return recipient.channel_id

        topic = getattr(notification, "topic")
        if self._registry is not None:
            for channel in self._registry.route_for(topic, ChannelType.TELEGRAM):
                if channel.target:
                    return channel.target

        if topic == Topic.EMERGENCY:
            return self._group_id or self._channel_id or None
        if topic == Topic.SECURITY:
            return self._channel_id or self._group_id or None
        return self._group_id or self._channel_id or None

    def build_payload(self, chat_id: str, notification: BaseNotification) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chat_id": chat_id,
            "text": format_telegram_message(notification),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
            "disable_notification": notification.priority == Priority.LOW,
        }
        chat, marker, thread = chat_id.partition(_THREAD_MARKER)
        if marker:
            payload["chat_id"] = chat
            if self._topic_support and chat.startswith("-") and thread.isdigit():
                payload["message_thread_id"] = int(thread)
        return payload

    async def send(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> ChannelSendResult:
        if not self._token:
            raise ConfigurationError("Telegram bot token not configured")
        chat_id = self.resolve_chat_id(notification, recipient)
        if not chat_id:
            raise ConfigurationError(
                f"No Telegram chat configured for topic {getattr(notification, 'topic')}"
            )

        payload = self.build_payload(chat_id, notification)
        url = f"{self._api_url}/bot{self._token}/sendMessage"

        try:
            session = self._get_session()
            async with session.post(url, json=payload) as resp:
                body = await resp.json(content_type=None)
                if resp.status == 200 and isinstance(body, dict) and body.get("ok"):
                    return ChannelSendResult(success=True)
                description = (
                    body.get("description") if isinstance(body, dict) else None
                ) or f"HTTP {resp.status}"
                logger.warning(
                    "telegram_send_failed",
                    status=resp.status,
                    description=description,
                    notification_id=notification.id,
                )
                return ChannelSendResult(
                    success=False, error=f"Telegram API error: {description}"
                )
        except asyncio.TimeoutError:
            logger.warning("telegram_send_timeout", notification_id=notification.id)
            return ChannelSendResult(success=False, error="Request timeout")
        except (aiohttp.ClientError, ValueError) as exc:
            logger.exception("telegram_send_error", notification_id=notification.id)
            return ChannelSendResult(success=False, error=f"Telegram request failed: {exc}")

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


class WebhookChannel(NotificationChannel):
    """POSTs a JSON payload to one or more webhook URLs concurrently."""

    channel_type = ChannelType.WEBHOOK

    def __init__(
        self,
        config: WebhookConfig,
        registry: ChannelTopicRegistry | None = None,
    ) -> None:
        self._urls = list(config.urls)
        self._headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            **config.headers,
        }
        self._timeout = aiohttp.ClientTimeout(total=config.timeout_secs)
        self._registry = registry
        self._session: aiohttp.ClientSession | None = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def resolve_urls(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> list[str]:
        """Recipient target, then registry route targets, then configured URLs."""
        if recipient.channel_id:
            return [recipient.channel_id]
        if self._registry is not None:
            routed = [
                c.target
                for c in self._registry.route_for(
                    getattr(notification, "topic"), ChannelType.WEBHOOK
                )
                if c.target
            ]
            if routed:
                return routed
        return list(self._urls)

    async def _post(self, url: str, payload: dict[str, Any]) -> str | None:
        """POST once; returns an error string or None on success."""
        try:
            session = self._get_session()
            async with session.post(
                url, json=payload, headers=self._headers, timeout=self._timeout
            ) as resp:
                if 200 <= resp.status < 300:
                    return None
                body = await resp.text()
                logger.warning(
                    "webhook_send_failed", url=url, status=resp.status, body=body[:200]
                )
                return f"HTTP {resp.status}: {resp.reason}"
        except asyncio.TimeoutError:
            logger.warning("webhook_send_timeout", url=url)
            return "Request timeout"
        except aiohttp.ClientError as exc:
            logger.warning("webhook_send_error", url=url, error=str(exc))
            return str(exc) or type(exc).__name__

    async def send(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> ChannelSendResult:
        urls = self.resolve_urls(notification, recipient)
        if not urls:
            raise ConfigurationError("No webhook URLs configured")

        payload = build_webhook_payload(notification)
        errors = await asyncio.gather(*(self._post(url, payload) for url in urls))
        failures = [f"{url}: {err}" for url, err in zip(urls, errors) if err is not None]
        if not failures:
            return ChannelSendResult(success=True)
        return ChannelSendResult(
            success=False,
            error=f"Failed to send to {len(failures)}/{len(urls)} webhooks: "
            + "; ".join(failures),
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


# ── Builders ────────────────────────────────────────────────────

ChannelBuilder = Callable[[ChannelsConfig, ChannelTopicRegistry | None], NotificationChannel]


def _build_telegram(
    config: ChannelsConfig, registry: ChannelTopicRegistry | None
) -> NotificationChannel:
    return TelegramChannel(config.telegram, registry)


def _build_webhook(
    config: ChannelsConfig, registry: ChannelTopicRegistry | None
) -> NotificationChannel:
    return WebhookChannel(config.webhook, registry)


CHANNEL_BUILDERS: dict[ChannelType, ChannelBuilder] = {
    ChannelType.TELEGRAM: _build_telegram,
    ChannelType.WEBHOOK: _build_webhook,
}


def build_channels(
    config: ChannelsConfig,
    registry: ChannelTopicRegistry | None = None,
) -> dict[ChannelType, NotificationChannel]:
    """Instantiate every enabled channel in *config*."""
    enabled = {
        ChannelType.TELEGRAM: config.telegram.enabled,
        ChannelType.WEBHOOK: config.webhook.enabled,
    }
    return {
        channel_type: builder(config, registry)
        for channel_type, builder in CHANNEL_BUILDERS.items()
        if enabled[channel_type]
    }
