"""Central notification dispatcher — dedup, recipient fan-out, retries."""

from __future__ import annotations

import asyncio
import collections
import datetime
import time
from collections.abc import Callable, Iterable

import structlog

from src.core.config import DispatcherConfig
from src.core.logging import DECISION_LOGGER_NAME
from src.core.types import (
    BaseNotification,
    ChannelType,
    NotificationRecipient,
    Priority,
    Topic,
)
from src.notify.channels import NotificationChannel
from src.notify.exceptions import ConfigurationError, DeliveryError, NotifyError
from src.notify.rate_limiter import ChannelRateLimiter
from src.notify.recipients import eligible_recipients
from src.notify.registry import ChannelConfig, ChannelTopicRegistry
from src.notify.types import ErrorRecord, NotificationResult, NotificationStats, RetryEntry

# Dedicated structured logger for decision records.
decision_logger = structlog.get_logger(DECISION_LOGGER_NAME)

logger = structlog.get_logger(__name__)

# Topic-specific identity fields folded into the dedup key.
DEDUP_IDENTITY_FIELDS: dict[Topic, tuple[str, ...]] = {
    Topic.SECURITY: ("cve", "package"),
    Topic.PERFORMANCE: ("metric",),
    Topic.BUILD: ("project", "build_id"),
}


def dedup_key(notification: BaseNotification) -> str:
    """topic | title | correlation id | topic identity fields."""
    topic = Topic(getattr(notification, "topic"))
    parts = [str(topic), notification.title, notification.metadata.correlation_id]
    for name in DEDUP_IDENTITY_FIELDS.get(topic, ()):
        value = getattr(notification, name, None)
        parts.append("" if value is None else str(value))
    return "|".join(parts)


# (result, retry-eligible); None when the delivery was skipped for quiet hours.
_Outcome = tuple[NotificationResult, bool] | None


class NotificationDispatcher:
    """Routes notifications to subscribed recipients over their channels.

    - Duplicates (same dedup key inside the topic's window) are dropped
      before any recipient is resolved; the key is recorded whatever the
      delivery outcome.
    - Each eligible recipient is delivered to concurrently, each call
      bounded by ``delivery_timeout_secs``.
    - Failed non-low deliveries enter the retry queue; ``sweep_retries``
      resends with exponential backoff and drops after ``max_retries``.
    - Every accepted notification is logged via *decision_logger*.

    Usage::

        dispatcher = NotificationDispatcher(channels, registry, config)
        await dispatcher.start()        # dedup GC + retry sweep tasks
        results = await dispatcher.send(notification)
        await dispatcher.stop()
    """

    def __init__(
        self,
        channels: dict[ChannelType, NotificationChannel] | None = None,
        registry: ChannelTopicRegistry | None = None,
        config: DispatcherConfig | None = None,
        recipients: Iterable[NotificationRecipient] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or DispatcherConfig()
        self._channels: dict[ChannelType, NotificationChannel] = dict(channels or {})
        self._registry = registry
        self._clock = clock
        self._rate_limiter = ChannelRateLimiter(clock=clock)

        self._recipients: dict[str, NotificationRecipient] = {}
        for recipient in [*self._config.recipients, *(recipients or [])]:
            self._recipients[recipient.id] = recipient

        # dedup key → (last sent at, window secs)
        self._dedup: dict[str, tuple[float, float]] = {}
        self._retry_queue: list[RetryEntry] = []
        self._retry_lock = asyncio.Lock()

        self._stats = NotificationStats()
        self._recent_errors: collections.deque[ErrorRecord] = collections.deque(
            maxlen=self._config.max_recent_errors
        )

        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def registry(self) -> ChannelTopicRegistry | None:
        return self._registry

    # ── Recipients ──────────────────────────────────────────────

    def add_recipient(self, recipient: NotificationRecipient) -> None:
        """Add or replace a recipient by id."""
        self._recipients[recipient.id] = recipient

    def remove_recipient(self, recipient_id: str) -> bool:
        return self._recipients.pop(recipient_id, None) is not None

    def recipients(self) -> list[NotificationRecipient]:
        return list(self._recipients.values())

    def register_channel(self, channel: NotificationChannel) -> None:
        self._channels[channel.channel_type] = channel

    # ── Send ────────────────────────────────────────────────────

    async def send(self, notification: BaseNotification) -> list[NotificationResult]:
        """Deliver *notification* to every eligible recipient.

        Returns one result per attempted recipient, or an empty list when
        the notification is a duplicate or its topic is disabled.
        """
        topic = Topic(getattr(notification, "topic"))
        topic_config = self._registry.get_topic(topic) if self._registry else None
        if topic_config is not None and not topic_config.enabled:
            logger.info("notification_topic_disabled", topic=topic, id=notification.id)
            return []

        # Check-and-mark happens before the first await so two concurrent
        # sends of the same key cannot both pass.
        now = self._clock()
        key = dedup_key(notification)
        window = (
            topic_config.rules.dedup_window_secs
            if topic_config is not None
            else self._config.dedup_window_secs
        )
        previous = self._dedup.get(key)
        if previous is not None and now - previous[0] < window:
            self._stats.suppressed_duplicates += 1
            logger.debug("notification_duplicate", key=key, id=notification.id)
            return []
        self._dedup[key] = (now, window)

        self._stats.by_topic[topic] = self._stats.by_topic.get(topic, 0) + 1
        priority = Priority(notification.priority)
        self._stats.by_priority[priority] = self._stats.by_priority.get(priority, 0) + 1

        recipients = eligible_recipients(notification, self._recipients.values())
        self._log_decision(notification, recipients)
        if not recipients:
            return []

        outcomes = await asyncio.gather(
            *(self._deliver(notification, r) for r in recipients)
        )

        results: list[NotificationResult] = []
        for recipient, outcome in zip(recipients, outcomes):
            if outcome is None:
                continue
            result, retryable = outcome
            results.append(result)
            if (
                not result.success
                and retryable
                and priority != Priority.LOW
                and self._config.max_retries > 1
            ):
                self._retry_queue.append(
                    RetryEntry(
                        notification=notification,
                        recipient=recipient,
                        attempt=1,
                        last_attempt_at=self._clock(),
                    )
                )
                self._stats.retries_scheduled += 1
                logger.info(
                    "retry_scheduled",
                    notification_id=notification.id,
                    recipient_id=recipient.id,
                )
        return results

    # ── Delivery ────────────────────────────────────────────────

    def _route(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
    ) -> tuple[NotificationChannel, list[ChannelConfig]]:
        adapter = self._channels.get(recipient.channel)
        if adapter is None:
            raise ConfigurationError(f"No adapter for channel type {recipient.channel}")
        if self._registry is None:
            return adapter, []
        topic = getattr(notification, "topic")
        if self._registry.get_topic(topic) is None:
            raise ConfigurationError(f"Topic {topic} is not registered")
        serving = self._registry.route_for(topic, recipient.channel)
        if not serving:
            raise ConfigurationError(
                f"No enabled {recipient.channel} channel serves topic {topic}"
            )
        return adapter, serving

    def _in_quiet_hours(self, serving: list[ChannelConfig]) -> bool:
        if self._registry is None or not serving:
            return False
        now = datetime.datetime.fromtimestamp(self._clock(), datetime.UTC)
        return all(self._registry.is_channel_in_quiet_hours(c.id, now) for c in serving)

    async def _deliver(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
        retry_count: int = 0,
    ) -> _Outcome:
        try:
            adapter, serving = self._route(notification, recipient)
            if (
                Priority(notification.priority).level < Priority.HIGH.level
                and self._in_quiet_hours(serving)
            ):
                self._stats.quiet_hours_skipped += 1
                logger.info(
                    "delivery_quiet_hours",
                    notification_id=notification.id,
                    recipient_id=recipient.id,
                )
                return None
            if serving:
                primary = serving[0]
                if not self._rate_limiter.try_acquire(
                    primary.id, primary.settings.rate_limit
                ):
                    raise DeliveryError(f"Rate limit exceeded for channel {primary.id}")

            timeout = self._config.delivery_timeout_secs
            try:
                sent = await asyncio.wait_for(adapter.send(notification, recipient), timeout)
            except asyncio.TimeoutError as exc:
                raise DeliveryError(f"Delivery timed out after {timeout:g}s") from exc
            if not sent.success:
                raise DeliveryError(sent.error or "Delivery failed")
        except ConfigurationError as exc:
            return self._record_failure(notification, recipient, exc, retry_count), False
        except DeliveryError as exc:
            return self._record_failure(notification, recipient, exc, retry_count), True
        except Exception as exc:
            logger.exception(
                "channel_dispatch_error",
                channel=recipient.channel,
                notification_id=notification.id,
            )
            return self._record_failure(notification, recipient, exc, retry_count), True

        sent_at = self._clock()
        self._stats.total_sent += 1
        self._stats.by_channel[recipient.channel] = (
            self._stats.by_channel.get(recipient.channel, 0) + 1
        )
        return (
            NotificationResult(
                success=True,
                notification_id=notification.id,
                channel=recipient.channel,
                recipient_id=recipient.id,
                retry_count=retry_count,
                sent_at=sent_at,
            ),
            False,
        )

    def _record_failure(
        self,
        notification: BaseNotification,
        recipient: NotificationRecipient,
        exc: Exception,
        retry_count: int,
    ) -> NotificationResult:
        error = str(exc) or type(exc).__name__
        self._stats.total_failed += 1
        self._recent_errors.append(
            ErrorRecord(
                timestamp=self._clock(),
                error=error,
                notification_id=notification.id,
                recipient_id=recipient.id,
            )
        )
        logger.warning(
            "delivery_failed",
            notification_id=notification.id,
            recipient_id=recipient.id,
            channel=recipient.channel,
            error_type=type(exc).__name__,
            error=error,
        )
        return NotificationResult(
            success=False,
            notification_id=notification.id,
            channel=recipient.channel,
            recipient_id=recipient.id,
            error=error,
            retry_count=retry_count,
        )

    # ── Retries ─────────────────────────────────────────────────

    async def sweep_retries(self) -> int:
        """Resend every due retry entry. Returns the number of attempts made."""
        async with self._retry_lock:
            now = self._clock()
            delay = self._config.retry_delay_secs
            due = [e for e in self._retry_queue if now >= e.due_at(delay)]
            if not due:
                return 0

            outcomes = await asyncio.gather(
                *(self._deliver(e.notification, e.recipient, retry_count=e.attempt) for e in due)
            )

            finished: set[int] = set()
            for entry, outcome in zip(due, outcomes):
                if outcome is None:
                    # Quiet hours: wait for the next sweep without using an attempt.
                    continue
                result, retryable = outcome
                if result.success:
                    finished.add(id(entry))
                    logger.info(
                        "retry_succeeded",
                        notification_id=entry.notification.id,
                        recipient_id=entry.recipient.id,
                        attempt=entry.attempt + 1,
                    )
                    continue
                entry.attempt += 1
                entry.last_attempt_at = self._clock()
                if not retryable or entry.attempt >= self._config.max_retries:
                    finished.add(id(entry))
                    self._stats.retries_dropped += 1
                    logger.error(
                        "retry_dropped",
                        notification_id=entry.notification.id,
                        recipient_id=entry.recipient.id,
                        attempts=entry.attempt,
                        error=result.error,
                    )

            self._retry_queue = [e for e in self._retry_queue if id(e) not in finished]
            return len(due)

    def retry_queue(self) -> list[RetryEntry]:
        return list(self._retry_queue)

    # ── Dedup cache ─────────────────────────────────────────────

    def purge_dedup_cache(self) -> int:
        """Drop dedup entries older than their window. Returns the count removed."""
        now = self._clock()
        expired = [k for k, (sent_at, window) in self._dedup.items() if now - sent_at >= window]
        for key in expired:
            del self._dedup[key]
        if expired:
            logger.debug("dedup_cache_purged", removed=len(expired), remaining=len(self._dedup))
        return len(expired)

    # ── Stats ───────────────────────────────────────────────────

    def stats(self) -> NotificationStats:
        return self._stats.model_copy(
            update={
                "by_topic": dict(self._stats.by_topic),
                "by_priority": dict(self._stats.by_priority),
                "by_channel": dict(self._stats.by_channel),
                "retry_queue_size": len(self._retry_queue),
                "dedup_cache_size": len(self._dedup),
                "recent_errors": list(self._recent_errors),
            }
        )

    def reset_stats(self) -> None:
        self._stats = NotificationStats()
        self._recent_errors.clear()

    def _log_decision(
        self,
        notification: BaseNotification,
        recipients: list[NotificationRecipient],
    ) -> None:
        decision_logger.info(
            "decision",
            id=notification.id,
            topic=getattr(notification, "topic"),
            priority=notification.priority,
            title=notification.title,
            source=notification.metadata.source,
            correlation_id=notification.metadata.correlation_id,
            recipients=[r.id for r in recipients],
        )

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """Launch the dedup GC and retry sweep tasks."""
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(
                self._periodic(
                    "dedup_gc", self._config.dedup_gc_interval_secs, self.purge_dedup_cache
                )
            ),
            asyncio.create_task(
                self._periodic(
                    "retry_sweep", self._config.retry_sweep_interval_secs, self.sweep_retries
                )
            ),
        ]
        logger.info(
            "dispatcher_started",
            channels=sorted(self._channels),
            recipients=len(self._recipients),
        )

    async def stop(self) -> None:
        """Cancel background tasks and close every channel.

        Queued retries are left undelivered.
        """
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        await self.close()
        logger.info("dispatcher_stopped", pending_retries=len(self._retry_queue))

    async def close(self) -> None:
        for ch in self._channels.values():
            try:
                await ch.close()
            except Exception:
                logger.exception("channel_close_error", channel=type(ch).__name__)

    async def _periodic(
        self,
        name: str,
        interval_secs: float,
        action: Callable[[], object],
    ) -> None:
        while self._running:
            try:
                await asyncio.sleep(interval_secs)
            except asyncio.CancelledError:
                break
            try:
                result = action()
                if asyncio.iscoroutine(result):
                    await result
            except asyncio.CancelledError:
                break
            except NotifyError:
                logger.exception("dispatcher_task_error", task=name)
            except Exception:
                logger.exception("dispatcher_task_unexpected_error", task=name)
