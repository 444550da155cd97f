"""Tests for recipient eligibility and filter evaluation."""

from __future__ import annotations

import pytest

from src.core.types import (
    ChannelType,
    FilterOperator,
    NotificationFilter,
    NotificationRecipient,
    PerformanceNotification,
    Priority,
    SecurityNotification,
    SecuritySeverity,
    Topic,
)
from src.notify.exceptions import FilterValidationError
from src.notify.recipients import eligible_recipients, evaluate_filter, is_eligible


def _perf(**kw: object) -> PerformanceNotification:
    defaults: dict[str, object] = {
        "priority": Priority.HIGH,
        "title": "slow",
        "metric": "response_time",
        "value": 250.0,
        "threshold": 200.0,
        "data": {"region": "eu-west-1", "hosts": ["a", "b"]},
    }
    defaults.update(kw)
    return PerformanceNotification(**defaults)  # type: ignore[arg-type]


def _flt(field: str, op: FilterOperator, value: str | float) -> NotificationFilter:
    return NotificationFilter(field=field, operator=op, value=value)


class TestEvaluateFilter:
    def test_numeric_comparisons(self) -> None:
        n = _perf()
        assert evaluate_filter(n, _flt("value", FilterOperator.GT, 200))
        assert not evaluate_filter(n, _flt("value", FilterOperator.LT, 200))
        assert evaluate_filter(n, _flt("value", FilterOperator.GTE, 250))
        assert evaluate_filter(n, _flt("value", FilterOperator.LTE, "250"))

    def test_non_numeric_bound_raises(self) -> None:
        with pytest.raises(FilterValidationError):
            evaluate_filter(_perf(), _flt("value", FilterOperator.GT, "fast"))

    def test_non_numeric_actual_does_not_match(self) -> None:
        assert not evaluate_filter(_perf(), _flt("metric", FilterOperator.GT, 1))

    def test_eq_and_ne(self) -> None:
        n = _perf()
        assert evaluate_filter(n, _flt("metric", FilterOperator.EQ, "response_time"))
        assert evaluate_filter(n, _flt("value", FilterOperator.EQ, 250))
        assert evaluate_filter(n, _flt("metric", FilterOperator.NE, "cpu"))

    def test_data_fields_resolved(self) -> None:
        n = _perf()
        assert evaluate_filter(n, _flt("region", FilterOperator.CONTAINS, "eu-"))
        assert evaluate_filter(n, _flt("hosts", FilterOperator.CONTAINS, "b"))
        assert not evaluate_filter(n, _flt("hosts", FilterOperator.CONTAINS, "c"))

    def test_missing_field_only_matches_ne(self) -> None:
        n = _perf()
        assert evaluate_filter(n, _flt("missing", FilterOperator.NE, "x"))
        assert not evaluate_filter(n, _flt("missing", FilterOperator.EQ, "x"))
        assert not evaluate_filter(n, _flt("missing", FilterOperator.GT, 1))
        assert not evaluate_filter(n, _flt("missing", FilterOperator.REGEX, ".*"))

    def test_regex(self) -> None:
        n = _perf()
        assert evaluate_filter(n, _flt("metric", FilterOperator.REGEX, r"^response_"))
        assert not evaluate_filter(n, _flt("metric", FilterOperator.REGEX, r"^cpu"))

    def test_invalid_regex_raises(self) -> None:
        with pytest.raises(FilterValidationError, match="Invalid regex"):
            evaluate_filter(_perf(), _flt("metric", FilterOperator.REGEX, "("))

    def test_enum_field_compares_by_value(self) -> None:
        n = SecurityNotification(title="x", severity=SecuritySeverity.CRITICAL)
        assert evaluate_filter(n, _flt("severity", FilterOperator.EQ, "critical"))


class TestEligibility:
    def _recipient(self, **kw: object) -> NotificationRecipient:
        defaults: dict[str, object] = {
            "id": "r1",
            "channel": ChannelType.WEBHOOK,
            "topics": [Topic.PERFORMANCE],
        }
        defaults.update(kw)
        return NotificationRecipient(**defaults)  # type: ignore[arg-type]

    def test_threshold(self) -> None:
        r = self._recipient(priority_threshold=Priority.HIGH)
        assert is_eligible(_perf(priority=Priority.HIGH), r)
        assert is_eligible(_perf(priority=Priority.CRITICAL), r)
        assert not is_eligible(_perf(priority=Priority.MEDIUM), r)

    def test_invalid_filter_makes_recipient_ineligible(self) -> None:
        r = self._recipient(filters=[_flt("metric", FilterOperator.REGEX, "[")])
        assert not is_eligible(_perf(), r)

    def test_all_filters_must_match(self) -> None:
        r = self._recipient(
            filters=[
                _flt("metric", FilterOperator.EQ, "response_time"),
                _flt("value", FilterOperator.GT, 300),
            ]
        )
        assert not is_eligible(_perf(), r)

    def test_eligible_recipients_preserves_order(self) -> None:
        recipients = [
            self._recipient(id="a"),
            self._recipient(id="b", topics=[Topic.SECURITY]),
            self._recipient(id="c"),
        ]
        assert [r.id for r in eligible_recipients(_perf(), recipients)] == ["a", "c"]
