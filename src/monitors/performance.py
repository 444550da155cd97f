"""PerformanceMonitor — rolling metric history, thresholds, trend and baseline."""

from __future__ import annotations

import collections
import statistics
import time
from collections.abc import Callable, Mapping

import structlog

from src.core.config import MetricConfig, PerformanceMonitorConfig
from src.core.types import (
    MetricSample,
    PerformanceNotification,
    Priority,
    Trend,
    new_notification_id,
)
from src.notify.dispatcher import NotificationDispatcher

logger = structlog.stdlib.get_logger()

_SOURCE = "performance-monitor"

# Relative change under which the short-term trend is reported as stable.
_TREND_NOISE_FLOOR = 0.01


def _breaches(value: float, bound: float, direction: str) -> bool:
    return value > bound if direction == "above" else value < bound


def iqr_mean(values: list[float]) -> float:
    """Mean of *values* after dropping points outside Q1-1.5·IQR .. Q3+1.5·IQR."""
    ordered = sorted(values)
    n = len(ordered)
    q1 = ordered[int(n * 0.25)]
    q3 = ordered[int(n * 0.75)]
    iqr = q3 - q1
    lower, upper = q1 - 1.5 * iqr, q3 + 1.5 * iqr
    kept = [v for v in ordered if lower <= v <= upper]
    return statistics.fmean(kept or ordered)


class PerformanceMonitor:
    """Per-metric rolling history with cooldown-gated alerting.

    Static thresholds are checked first (critical bound → ``critical``,
    warning bound → ``high``). Without a static breach, the mean of the
    last ``window_size`` samples is compared to the window before it and
    a ``medium`` trend alert is raised when it degraded by more than the
    configured percentage. Metrics without configuration are recorded
    but never alerted on.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        config: PerformanceMonitorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or PerformanceMonitorConfig()
        self._clock = clock
        self._history: dict[str, collections.deque[tuple[float, float]]] = {}
        self._baselines: dict[str, float] = {}
        self._last_alert: dict[str, float] = {}

    @property
    def _history_cap(self) -> int:
        return max(self._config.trend_analysis.window_size, self._config.max_history)

    def configure_metric(self, name: str, config: MetricConfig) -> None:
        self._config.metrics[name] = config

    # ── Recording ───────────────────────────────────────────────

    def observe(
        self,
        name: str,
        value: float,
        unit: str | None = None,
    ) -> PerformanceNotification | None:
        """Append a sample and return the alert it triggers, if any.

        Starts the metric's cooldown when an alert is returned.
        """
        now = self._clock()
        history = self._history.get(name)
        if history is None:
            history = collections.deque(maxlen=self._history_cap)
            self._history[name] = history
        history.append((value, now))

        notification = self._check_alert(name, value, unit, now)
        if notification is not None:
            self._last_alert[name] = now
        self._update_baseline(name)
        return notification

    async def record_metric(
        self,
        name: str,
        value: float,
        unit: str | None = None,
    ) -> PerformanceNotification | None:
        notification = self.observe(name, value, unit)
        if notification is not None:
            await self._dispatcher.send(notification)
        return notification

    async def record_metrics(
        self,
        metrics: Mapping[str, float | MetricSample],
    ) -> list[PerformanceNotification]:
        """Record several samples; plain floats or MetricSample values."""
        sent: list[PerformanceNotification] = []
        for name, sample in metrics.items():
            if isinstance(sample, MetricSample):
                result = await self.record_metric(name, sample.value, sample.unit)
            else:
                result = await self.record_metric(name, float(sample))
            if result is not None:
                sent.append(result)
        return sent

    # ── Alerting ────────────────────────────────────────────────

    def _check_alert(
        self,
        name: str,
        value: float,
        unit: str | None,
        now: float,
    ) -> PerformanceNotification | None:
        config = self._config.metrics.get(name)
        if config is None or not config.enabled:
            return None

        last = self._last_alert.get(name)
        if last is not None and now - last < self._config.alert_cooldown_secs:
            return None

        thresholds = config.thresholds
        direction = thresholds.direction
        unit = unit or config.unit
        baseline = self.get_baseline(name)
        if baseline is None:
            baseline = config.baseline

        if _breaches(value, thresholds.critical, direction):
            priority = Priority.CRITICAL
            bound = thresholds.critical
            title = f"🚨 CRITICAL: {name} Performance Issue"
            message = self._threshold_message(
                name, value, unit, bound, direction, "critical", baseline
            )
        elif _breaches(value, thresholds.warning, direction):
            priority = Priority.HIGH
            bound = thresholds.warning
            title = f"⚠️ WARNING: {name} Performance Degradation"
            message = self._threshold_message(
                name, value, unit, bound, direction, "warning", baseline
            )
        elif self._config.trend_analysis.enabled:
            trend_message = self._trend_degradation(name, unit, direction)
            if trend_message is None:
                return None
            priority = Priority.MEDIUM
            bound = thresholds.warning
            title = f"📉 TREND: {name} Performance Degrading"
            message = trend_message
        else:
            return None

        logger.info("performance_alert", metric=name, value=value, priority=priority)
        return PerformanceNotification(
            id=new_notification_id("perf"),
            timestamp=now,
            priority=priority,
            title=title,
            message=message,
            metric=name,
            value=value,
            threshold=bound,
            unit=unit,
            baseline=baseline,
            trend=self.calculate_trend(name),
            data={
                "history": [v for v, _ in self.recent_history(name, 5)],
                "direction": direction,
                "description": config.description,
            },
            metadata={
                "source": _SOURCE,
                "correlation_id": f"perf-{name}-{now:.0f}",
                "tags": ("performance", str(priority), name.lower()),
            },
        )

    def _trend_degradation(self, name: str, unit: str | None, direction: str) -> str | None:
        window = self._config.trend_analysis.window_size
        values = [v for v, _ in self._history.get(name, ())]
        if window <= 0 or len(values) < window * 2:
            return None
        recent = statistics.fmean(values[-window:])
        older = statistics.fmean(values[-window * 2 : -window])
        if older == 0:
            return None

        # For "above" metrics a rising mean is the bad direction.
        change = (recent - older) if direction == "above" else (older - recent)
        degradation = change / abs(older) * 100
        if degradation <= self._config.trend_analysis.degradation_threshold_pct:
            return None

        suffix = unit or ""
        return (
            f"{name} has degraded by {degradation:.1f}% over the last {window} "
            f"measurements.\n\nRecent avg: {recent:.2f}{suffix}\n"
            f"Previous avg: {older:.2f}{suffix}"
        )

    @staticmethod
    def _threshold_message(
        name: str,
        value: float,
        unit: str | None,
        bound: float,
        direction: str,
        level: str,
        baseline: float | None,
    ) -> str:
        suffix = unit or ""
        verb = "exceeded" if direction == "above" else "fell below"
        deviation = 0.0
        if bound:
            deviation = abs(value - bound) / abs(bound) * 100
        message = (
            f"{name} has {verb} the {level} threshold.\n\n"
            f"Current: {value:.2f}{suffix}\n"
            f"Threshold: {bound:.2f}{suffix}\n"
            f"Deviation: {deviation:.1f}%\n"
        )
        if baseline:
            diff = (value - baseline) / baseline * 100
            message += f"vs Baseline: {diff:+.1f}%\n"
        return message

    # ── Trend / baseline ────────────────────────────────────────

    def calculate_trend(self, name: str) -> Trend:
        """Short-term direction from the first and last of the last 3 samples."""
        values = [v for v, _ in self._history.get(name, ())][-3:]
        if len(values) < 3:
            return Trend.STABLE
        change = values[-1] - values[0]
        reference = abs(values[0]) or abs(values[-1])
        if reference == 0 or abs(change) / reference < _TREND_NOISE_FLOOR:
            return Trend.STABLE

        config = self._config.metrics.get(name)
        rising_is_bad = config is not None and config.thresholds.direction == "above"
        if (change > 0) == rising_is_bad:
            return Trend.DEGRADING
        return Trend.IMPROVING

    def _update_baseline(self, name: str) -> None:
        values = [v for v, _ in self._history.get(name, ())]
        if len(values) < self._config.baseline_min_samples:
            return
        self._baselines[name] = iqr_mean(values[-self._config.baseline_window :])

    def set_baseline(self, name: str, baseline: float) -> None:
        self._baselines[name] = baseline

    def get_baseline(self, name: str) -> float | None:
        return self._baselines.get(name)

    def recent_history(self, name: str, count: int) -> list[tuple[float, float]]:
        """Last *count* (value, timestamp) samples for *name*."""
        history = self._history.get(name)
        if not history:
            return []
        return list(history)[-count:]

    # ── Maintenance / introspection ─────────────────────────────

    def reset_alert_cooldown(self, name: str) -> None:
        self._last_alert.pop(name, None)

    def clear_history(self, name: str | None = None) -> None:
        if name is None:
            self._history.clear()
            self._baselines.clear()
            self._last_alert.clear()
            return
        self._history.pop(name, None)
        self._baselines.pop(name, None)
        self._last_alert.pop(name, None)

    def stats(self) -> dict[str, object]:
        now = self._clock()
        cooldown = self._config.alert_cooldown_secs
        return {
            "metrics": list(self._history),
            "active_alerts": [m for m, t in self._last_alert.items() if now - t < cooldown],
            "baselines": dict(self._baselines),
            "history_counts": {name: len(h) for name, h in self._history.items()},
        }
