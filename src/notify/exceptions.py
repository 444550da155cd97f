"""Notification delivery exceptions."""

from __future__ import annotations


class NotifyError(Exception):
    """Base exception for notification errors."""


class ConfigurationError(NotifyError):
    """Unknown channel, topic or route referenced at send time."""


class DeliveryError(NotifyError):
    """Transport failure, non-success response or timeout."""


class FilterValidationError(NotifyError):
    """A recipient filter cannot be evaluated (bad regex, non-numeric bound)."""
