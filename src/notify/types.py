"""Delivery-side types for the notification subsystem."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from src.core.types import (
    BaseNotification,
    ChannelType,
    NotificationRecipient,
    Priority,
    Topic,
)


class ChannelSendResult(BaseModel):
    """Outcome of one adapter ``send`` call."""

    success: bool
    error: str | None = None


class NotificationResult(BaseModel):
    """Per-recipient outcome of a dispatch."""

    success: bool
    notification_id: str
    channel: ChannelType
    recipient_id: str
    error: str | None = None
    retry_count: int = 0
    sent_at: float | None = None


class ErrorRecord(BaseModel):
    timestamp: float
    error: str
    notification_id: str
    recipient_id: str = ""


class NotificationStats(BaseModel):
    """Snapshot of dispatcher counters."""

    total_sent: int = 0
    total_failed: int = 0
    by_topic: dict[Topic, int] = Field(default_factory=dict)
    by_priority: dict[Priority, int] = Field(default_factory=dict)
    by_channel: dict[ChannelType, int] = Field(default_factory=dict)
    suppressed_duplicates: int = 0
    quiet_hours_skipped: int = 0
    retries_scheduled: int = 0
    retries_dropped: int = 0
    retry_queue_size: int = 0
    dedup_cache_size: int = 0
    recent_errors: list[ErrorRecord] = Field(default_factory=list)


@dataclass
class RetryEntry:
    """A failed delivery waiting for its next attempt.

    ``attempt`` counts deliveries already made; the next one is due
    ``retry_delay * 2 ** (attempt - 1)`` seconds after ``last_attempt_at``.
    """

    notification: BaseNotification
    recipient: NotificationRecipient
    attempt: int = 1
    last_attempt_at: float = field(default_factory=time.time)

    def due_at(self, retry_delay_secs: float) -> float:
        return self.last_attempt_at + retry_delay_secs * 2 ** (self.attempt - 1)
