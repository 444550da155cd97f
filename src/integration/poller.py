"""IntegrationPoller — one independent poll loop per external source."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from types import TracebackType
from typing import Any

import httpx
import structlog

from src.core.config import PollerConfig, PollSourceConfig
from src.core.types import (
    AuditResult,
    BuildNotification,
    BuildStatus,
    HealthReport,
    Priority,
    SystemNotification,
)
from src.integration.exceptions import SourceError, SourceUnavailableError
from src.integration.sources import (
    fetch_json,
    fetch_text,
    parse_audit,
    parse_builds,
    parse_diagnostics,
    parse_health,
    parse_metrics,
    parse_telemetry,
    parse_wagers,
)
from src.monitors.performance import PerformanceMonitor
from src.monitors.security import SecurityMonitor
from src.monitors.transactions import TransactionMonitor
from src.notify.dispatcher import NotificationDispatcher

logger = structlog.stdlib.get_logger()

SOURCES = ("security", "performance", "health", "build", "transactions")

_HEALTHY = "healthy"
_BUILD_EMOJI = {"failed": "❌", "success": "✅"}


class IntegrationPoller:
    """Polls each configured endpoint on its own interval and feeds the monitors.

    Each enabled source runs as an owned task; a failing cycle is logged
    and the next tick tries again. ``trigger(source)`` runs a single cycle
    on demand and reports whether it succeeded.

    Usage::

        poller = IntegrationPoller(config, dispatcher, security, performance, transactions)
        async with poller:
            await asyncio.sleep(3600)
    """

    def __init__(
        self,
        config: PollerConfig,
        dispatcher: NotificationDispatcher,
        security: SecurityMonitor,
        performance: PerformanceMonitor,
        transactions: TransactionMonitor,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._dispatcher = dispatcher
        self._security = security
        self._performance = performance
        self._transactions = transactions
        self._clock = clock
        self._http = client
        self._owns_client = client is None
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._running = False
        self._previous_audit: AuditResult | None = None
        self._build_states: dict[str, str] = {}
        self._last_success: dict[str, float] = {}
        self._error_counts: dict[str, int] = {s: 0 for s in SOURCES}

        self._cycles: dict[str, Callable[[], Awaitable[None]]] = {
            "security": self._poll_security,
            "performance": self._poll_performance,
            "health": self._poll_health,
            "build": self._poll_build,
            "transactions": self._poll_transactions,
        }

    @property
    def running(self) -> bool:
        return self._running

    def source_config(self, source: str) -> PollSourceConfig:
        if source not in SOURCES:
            raise ValueError(f"Unknown source: {source}")
        return getattr(self._config, source)

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.request_timeout_secs)
            )
            self._owns_client = True
        return self._http

    # ── Lifecycle ───────────────────────────────────────────────

    async def start(self) -> None:
        """Start one poll loop per enabled source."""
        if self._running:
            return
        self._running = True
        for source in SOURCES:
            cfg = self.source_config(source)
            if cfg.enabled:
                self._tasks[source] = asyncio.create_task(
                    self._poll_loop(source, cfg.interval_secs)
                )
        logger.info("poller_started", sources=sorted(self._tasks))

    async def stop(self) -> None:
        """Cancel every poll loop and close the HTTP client if we created it."""
        self._running = False
        for task in self._tasks.values():
            task.cancel()
        for task in self._tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        if self._owns_client and self._http is not None:
            await self._http.aclose()
            self._http = None
        logger.info("poller_stopped")

    async def __aenter__(self) -> IntegrationPoller:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _poll_loop(self, source: str, interval_secs: float) -> None:
        while self._running:
            await self.trigger(source)
            try:
                await asyncio.sleep(interval_secs)
            except asyncio.CancelledError:
                break

    # ── One-shot triggers ───────────────────────────────────────

    async def trigger(self, source: str) -> bool:
        """Run one cycle for *source*. Returns True if it completed."""
        cycle = self._cycles.get(source)
        if cycle is None:
            raise ValueError(f"Unknown source: {source}")
        try:
            await cycle()
        except SourceError as exc:
            self._error_counts[source] += 1
            logger.warning(
                "poll_cycle_skipped",
                source=source,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        except Exception:
            self._error_counts[source] += 1
            logger.exception("poll_cycle_error", source=source)
            return False
        self._last_success[source] = self._clock()
        return True

    async def trigger_security_audit(self) -> bool:
        return await self.trigger("security")

    async def trigger_performance_check(self) -> bool:
        return await self.trigger("performance")

    async def trigger_health_check(self) -> bool:
        return await self.trigger("health")

    async def trigger_build_check(self) -> bool:
        return await self.trigger("build")

    async def trigger_transaction_check(self) -> bool:
        return await self.trigger("transactions")

    # ── Source cycles ───────────────────────────────────────────

    async def _poll_security(self) -> None:
        data = await fetch_json(self._client(), self._config.security.endpoint)
        audit = parse_audit(data)
        if self._previous_audit is not None:
            await self._security.check_for_patches(audit, self._previous_audit)
        await self._security.process_audit(audit)
        self._previous_audit = audit

    async def _poll_performance(self) -> None:
        body = await fetch_text(self._client(), self._config.performance.endpoint)
        samples = parse_metrics(body)
        for sample in samples:
            await self._performance.record_metric(sample.name, sample.value, sample.unit)
        logger.debug("metrics_polled", count=len(samples))

    async def _poll_health(self) -> None:
        client = self._client()
        try:
            health = parse_health(await fetch_json(client, self._config.health.endpoint))
        except SourceUnavailableError as exc:
            await self._dispatcher.send(self._unreachable_notification(str(exc)))
            raise

        if health.status != _HEALTHY:
            await self._dispatcher.send(self._unhealthy_notification(health.status, health))

        try:
            telemetry = parse_telemetry(await fetch_json(client, self._config.telemetry_endpoint))
        except SourceError as exc:
            logger.warning("telemetry_unavailable", error=str(exc))
        else:
            for key, value in telemetry.items():
                await self._performance.record_metric(f"telemetry_{key}", value)

        try:
            issues = parse_diagnostics(await fetch_json(client, self._config.diagnostics_endpoint))
        except SourceError as exc:
            logger.warning("diagnostics_unavailable", error=str(exc))
        else:
            if issues:
                await self._dispatcher.send(self._diagnostics_notification(issues))

    async def _poll_build(self) -> None:
        data = await fetch_json(self._client(), self._config.build.endpoint)
        for build in parse_builds(data):
            previous = self._build_states.get(build.id, build.previous_status)
            self._build_states[build.id] = build.status
            if build.status != previous:
                await self._dispatcher.send(self._build_notification(build))

    async def _poll_transactions(self) -> None:
        data = await fetch_json(self._client(), self._config.transactions.endpoint)
        records = parse_wagers(data)
        if records:
            await self._transactions.process(records)
        else:
            # Still let the periodic analysis run on existing history.
            for notification in self._transactions.analyze():
                await self._dispatcher.send(notification)

    # ── Notification builders ───────────────────────────────────

    def _unreachable_notification(self, error: str) -> SystemNotification:
        now = self._clock()
        return SystemNotification(
            timestamp=now,
            priority=Priority.CRITICAL,
            title="🚨 Service Unreachable",
            message=f"Health endpoint could not be reached: {error}",
            component="health-endpoint",
            status="down",
            description=error,
            data={"endpoint": self._config.health.endpoint},
            metadata={
                "source": "system-health-monitor",
                "correlation_id": "health-unreachable",
                "tags": ("health", "unreachable", "critical"),
            },
        )

    def _unhealthy_notification(self, status: str, health: HealthReport) -> SystemNotification:
        degraded = status == "degraded"
        unhealthy = [c.name for c in health.components if c.status != _HEALTHY]
        message = f"System status: {status}."
        if health.message:
            message += f" {health.message}"
        if unhealthy:
            message += f"\nUnhealthy components: {', '.join(unhealthy)}"
        return SystemNotification(
            timestamp=self._clock(),
            priority=Priority.HIGH if degraded else Priority.CRITICAL,
            title="🟡 System Health Warning" if degraded else "🔴 System Unhealthy",
            message=message,
            component="system",
            status="degraded" if degraded else "down",
            description=health.message,
            affected_services=tuple(unhealthy),
            data={"health": health.model_dump()},
            metadata={
                "source": "system-health-monitor",
                "correlation_id": f"health-{status}",
                "tags": ("health", "system"),
            },
        )

    def _diagnostics_notification(self, issues: list[str]) -> SystemNotification:
        return SystemNotification(
            timestamp=self._clock(),
            priority=Priority.CRITICAL,
            title="🚨 Critical System Diagnostics",
            message=f"Critical issues detected: {', '.join(issues)}",
            component="diagnostics",
            status="degraded",
            data={"critical": issues},
            metadata={
                "source": "diagnostics-monitor",
                "correlation_id": "diagnostics-critical",
                "tags": ("diagnostics", "critical"),
            },
        )

    def _build_notification(self, build: BuildStatus) -> BuildNotification:
        emoji = _BUILD_EMOJI.get(build.status, "🔄")
        message = f"Build {build.id} {build.status}"
        if build.duration_ms:
            message += f" in {round(build.duration_ms / 1000)}s"
        return BuildNotification(
            timestamp=self._clock(),
            priority=Priority.HIGH if build.status == "failed" else Priority.MEDIUM,
            title=f"{emoji} Build {build.status.upper()}",
            message=message,
            project=build.project or "unknown",
            status=build.status,
            build_id=build.id,
            duration_ms=build.duration_ms,
            commit_hash=build.commit_hash,
            branch=build.branch,
            data={"previous_status": build.previous_status},
            metadata={
                "source": "build-monitor",
                "correlation_id": f"build-{build.id}-{build.status}",
                "tags": ("build", build.status),
            },
        )

    # ── Introspection ───────────────────────────────────────────

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "enabled_sources": [s for s in SOURCES if self.source_config(s).enabled],
            "active_sources": sorted(s for s, t in self._tasks.items() if not t.done()),
            "last_success": dict(self._last_success),
            "error_counts": dict(self._error_counts),
        }
