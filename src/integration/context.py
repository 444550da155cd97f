"""Wires settings into a running engine: registry, dispatcher, monitors, poller."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
import structlog

from src.core.config import Settings
from src.integration.poller import IntegrationPoller
from src.monitors.performance import PerformanceMonitor
from src.monitors.security import SecurityMonitor
from src.monitors.transactions import TransactionMonitor
from src.notify.dispatcher import NotificationDispatcher
from src.notify.factory import create_notification_stack
from src.notify.registry import ChannelTopicRegistry

logger = structlog.stdlib.get_logger()


@dataclass
class EngineContext:
    """Every long-lived component of a running engine."""

    registry: ChannelTopicRegistry
    dispatcher: NotificationDispatcher
    security: SecurityMonitor
    performance: PerformanceMonitor
    transactions: TransactionMonitor
    poller: IntegrationPoller

    async def start(self) -> None:
        await self.dispatcher.start()
        await self.poller.start()
        logger.info("engine_started", **self.registry.stats())

    async def stop(self) -> None:
        """Stop polling first so nothing new reaches a closed dispatcher."""
        await self.poller.stop()
        await self.dispatcher.stop()
        logger.info("engine_stopped", stats=self.dispatcher.stats().model_dump())


def create_engine_context(
    settings: Settings,
    client: httpx.AsyncClient | None = None,
) -> EngineContext:
    registry, dispatcher = create_notification_stack(
        dispatcher_config=settings.dispatcher,
        channels_config=settings.channels,
        registry_config=settings.registry,
    )
    security = SecurityMonitor(dispatcher, settings.security)
    performance = PerformanceMonitor(dispatcher, settings.performance)
    transactions = TransactionMonitor(dispatcher, settings.transactions)
    poller = IntegrationPoller(
        settings.poller,
        dispatcher,
        security,
        performance,
        transactions,
        client=client,
    )
    return EngineContext(
        registry=registry,
        dispatcher=dispatcher,
        security=security,
        performance=performance,
        transactions=transactions,
        poller=poller,
    )
