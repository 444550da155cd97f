"""Recipient eligibility — topic subscription, priority threshold and filters."""

from __future__ import annotations

import re
from collections.abc import Iterable
from typing import Any

import structlog

from src.core.types import (
    BaseNotification,
    FilterOperator,
    NotificationFilter,
    NotificationRecipient,
    Priority,
    notification_field,
)
from src.notify.exceptions import FilterValidationError

logger = structlog.get_logger(__name__)


def _as_number(value: Any, what: str) -> float:
    if isinstance(value, bool):
        raise FilterValidationError(f"{what} is boolean, not numeric: {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise FilterValidationError(f"{what} is not numeric: {value!r}") from exc


def _equals(actual: Any, expected: str | float) -> bool:
    if isinstance(actual, (int, float)) and not isinstance(actual, bool):
        if isinstance(expected, (int, float)):
            return float(actual) == float(expected)
    return str(actual) == str(expected)


def _contains(actual: Any, expected: str | float) -> bool:
    if isinstance(actual, (list, tuple, set, frozenset)):
        return str(expected) in {str(item) for item in actual}
    return str(expected) in str(actual)


def evaluate_filter(notification: BaseNotification, flt: NotificationFilter) -> bool:
    """Whether *notification* satisfies *flt*.

    A missing field matches only ``ne``. Raises FilterValidationError for
    an invalid regex or a non-numeric bound on a numeric comparison.
    """
    actual = notification_field(notification, flt.field)
    op = flt.operator

    if op == FilterOperator.REGEX:
        try:
            pattern = re.compile(str(flt.value))
        except re.error as exc:
            raise FilterValidationError(f"Invalid regex {flt.value!r}: {exc}") from exc
        return actual is not None and pattern.search(str(actual)) is not None

    if op in (FilterOperator.GT, FilterOperator.LT, FilterOperator.GTE, FilterOperator.LTE):
        bound = _as_number(flt.value, f"Filter value for {flt.field}")
        if actual is None:
            return False
        try:
            value = _as_number(actual, f"Field {flt.field}")
        except FilterValidationError:
            return False
        if op == FilterOperator.GT:
            return value > bound
        if op == FilterOperator.LT:
            return value < bound
        if op == FilterOperator.GTE:
            return value >= bound
        return value <= bound

    if actual is None:
        return op == FilterOperator.NE
    if op == FilterOperator.EQ:
        return _equals(actual, flt.value)
    if op == FilterOperator.NE:
        return not _equals(actual, flt.value)
    return _contains(actual, flt.value)


def matches_filters(notification: BaseNotification, recipient: NotificationRecipient) -> bool:
    return all(evaluate_filter(notification, f) for f in recipient.filters)


def is_eligible(notification: BaseNotification, recipient: NotificationRecipient) -> bool:
    """Enabled, subscribed to the topic, at or above the threshold, filters match.

    A malformed filter makes the recipient non-matching; it is logged
    rather than propagated so one bad subscription cannot break dispatch.
    """
    if not recipient.enabled:
        return False
    if getattr(notification, "topic") not in recipient.topics:
        return False
    if Priority(notification.priority).level < recipient.priority_threshold.level:
        return False
    try:
        return matches_filters(notification, recipient)
    except FilterValidationError as exc:
        logger.warning(
            "recipient_filter_invalid",
            recipient_id=recipient.id,
            notification_id=notification.id,
            error=str(exc),
        )
        return False


def eligible_recipients(
    notification: BaseNotification,
    recipients: Iterable[NotificationRecipient],
) -> list[NotificationRecipient]:
    return [r for r in recipients if is_eligible(notification, r)]
