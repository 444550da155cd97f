"""SecurityMonitor — turns dependency audits into batched security notifications."""

from __future__ import annotations

import time
from collections.abc import Callable, Mapping

import structlog

from src.core.config import SecurityMonitorConfig
from src.core.types import (
    AuditResult,
    Priority,
    SecurityNotification,
    SecuritySeverity,
    Vulnerability,
    new_notification_id,
)
from src.notify.dispatcher import NotificationDispatcher

logger = structlog.stdlib.get_logger()

_SOURCE = "security-monitor"

SEVERITY_PRIORITY: dict[SecuritySeverity, Priority] = {
    SecuritySeverity.INFO: Priority.LOW,
    SecuritySeverity.LOW: Priority.LOW,
    SecuritySeverity.MODERATE: Priority.MEDIUM,
    SecuritySeverity.HIGH: Priority.HIGH,
    SecuritySeverity.CRITICAL: Priority.CRITICAL,
}

SEVERITY_EMOJI: dict[SecuritySeverity, str] = {
    SecuritySeverity.INFO: "ℹ️",
    SecuritySeverity.LOW: "🟢",
    SecuritySeverity.MODERATE: "🟡",
    SecuritySeverity.HIGH: "🟠",
    SecuritySeverity.CRITICAL: "🔴",
}

# Tiers that also get one notification per vulnerability.
_INDIVIDUAL_TIERS = (SecuritySeverity.HIGH, SecuritySeverity.CRITICAL)


def _truncated(items: list[str], limit: int) -> str:
    if len(items) <= limit:
        return ", ".join(items)
    return f"{', '.join(items[:3])} +{len(items) - 3} more"


def _unique_packages(vulns: list[Vulnerability]) -> list[str]:
    return list(dict.fromkeys(v.package for v in vulns))


class SecurityMonitor:
    """Tracks already-notified vulnerabilities and reports new ones.

    Each audit is filtered to unseen vulnerabilities (keyed by CVE, else
    package-version). One batch notification is built per enabled severity
    tier present; ``high`` and ``critical`` tiers additionally get one
    notification per vulnerability.

    Usage::

        monitor = SecurityMonitor(dispatcher)
        await monitor.process_audit(audit)
        await monitor.check_for_patches(current, previous)
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        config: SecurityMonitorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or SecurityMonitorConfig()
        self._thresholds: dict[SecuritySeverity, bool] = {
            s: self._config.severity_thresholds.get(s, False) for s in SecuritySeverity
        }
        self._clock = clock
        self._known: set[str] = set()
        self._last_audit_timestamp: float = 0.0

    # ── Audit processing ────────────────────────────────────────

    def analyze_audit(self, audit: AuditResult) -> list[SecurityNotification]:
        """Build notifications for unseen vulnerabilities and mark them known."""
        fresh: list[Vulnerability] = []
        seen_in_audit: set[str] = set()
        for vuln in audit.vulnerabilities:
            if vuln.key in self._known or vuln.key in seen_in_audit:
                continue
            seen_in_audit.add(vuln.key)
            fresh.append(vuln)

        self._last_audit_timestamp = audit.timestamp
        if not fresh:
            return []

        notifications: list[SecurityNotification] = []
        for severity in SecuritySeverity:
            tier = [v for v in fresh if v.severity == severity]
            if not tier or not self._thresholds.get(severity, False):
                continue
            notifications.append(self._batch_notification(severity, tier, audit))
            if severity in _INDIVIDUAL_TIERS:
                notifications.extend(self._vulnerability_notification(v) for v in tier)

        self._known.update(seen_in_audit)
        logger.info(
            "security_audit_processed",
            new_vulnerabilities=len(fresh),
            notifications=len(notifications),
            known=len(self._known),
        )
        return notifications

    async def process_audit(self, audit: AuditResult) -> list[SecurityNotification]:
        notifications = self.analyze_audit(audit)
        for notification in notifications:
            await self._dispatcher.send(notification)
        return notifications

    async def send_critical_alert(self, vuln: Vulnerability) -> SecurityNotification:
        """Send a single vulnerability immediately at ``critical`` priority."""
        notification = self._vulnerability_notification(vuln, priority=Priority.CRITICAL)
        await self._dispatcher.send(notification)
        return notification

    async def send_exploit_alert(self, vuln: Vulnerability) -> SecurityNotification:
        """An exploit became available — bypasses batching, always critical."""
        target = vuln.cve or vuln.package
        notification = SecurityNotification(
            id=new_notification_id("exploit"),
            timestamp=self._clock(),
            priority=Priority.CRITICAL,
            title=f"🚨 EXPLOIT AVAILABLE: {vuln.title or target}",
            message=(
                f"An exploit is now available for {target}. Immediate action required."
            ),
            severity=vuln.severity,
            cve=vuln.cve,
            package=vuln.package,
            affected_versions=vuln.version or None,
            patched_version=vuln.patched,
            advisory_url=vuln.url,
            exploit_available=True,
            metadata={
                "source": _SOURCE,
                "correlation_id": f"exploit-{vuln.key}",
                "tags": ("exploit", "urgent", "security"),
            },
        )
        await self._dispatcher.send(notification)
        return notification

    def find_patched(
        self,
        current: AuditResult,
        previous: AuditResult,
    ) -> list[Vulnerability]:
        """Vulnerabilities present in *previous* and absent from *current*."""
        still_open = {v.key for v in current.vulnerabilities}
        patched: dict[str, Vulnerability] = {}
        for vuln in previous.vulnerabilities:
            if vuln.key not in still_open:
                patched.setdefault(vuln.key, vuln)
        return list(patched.values())

    async def check_for_patches(
        self,
        current: AuditResult,
        previous: AuditResult,
    ) -> list[SecurityNotification]:
        notifications = [self._patch_notification(v) for v in self.find_patched(current, previous)]
        for notification in notifications:
            await self._dispatcher.send(notification)
        return notifications

    # ── Notification builders ───────────────────────────────────

    def _batch_notification(
        self,
        severity: SecuritySeverity,
        vulns: list[Vulnerability],
        audit: AuditResult,
    ) -> SecurityNotification:
        count = len(vulns)
        emoji = SEVERITY_EMOJI[severity]
        label = severity.upper()
        packages = _unique_packages(vulns)
        cves = [v.cve for v in vulns if v.cve]

        if count == 1:
            vuln = vulns[0]
            title = f"{emoji} New {label} Vulnerability: {vuln.package}"
            message = f"A new {severity} severity vulnerability has been detected in {vuln.package}."
            if vuln.cve:
                message += f" CVE: {vuln.cve}"
        else:
            title = f"{emoji} {count} New {label} Vulnerabilities Detected"
            message = (
                f"{count} new {severity} severity vulnerabilities have been detected "
                f"across {len(packages)} packages."
            )

        limit = self._config.batch_list_limit
        message += "\n\n📊 Summary:"
        message += f"\n• Packages: {_truncated(packages, limit)}"
        if cves:
            message += f"\n• CVEs: {_truncated(cves, limit)}"

        return SecurityNotification(
            id=new_notification_id(f"security-batch-{severity}"),
            timestamp=audit.timestamp,
            priority=SEVERITY_PRIORITY[severity],
            title=title,
            message=message,
            severity=severity,
            data={
                "vulnerability_count": count,
                "packages": packages,
                "cves": cves,
                "audit_timestamp": audit.timestamp,
            },
            metadata={
                "source": _SOURCE,
                "correlation_id": f"audit-{audit.timestamp:.0f}",
                "tags": ("batch", "audit", str(severity)),
            },
        )

    def _vulnerability_notification(
        self,
        vuln: Vulnerability,
        priority: Priority | None = None,
    ) -> SecurityNotification:
        return SecurityNotification(
            id=new_notification_id("vuln"),
            timestamp=self._clock(),
            priority=priority or SEVERITY_PRIORITY[vuln.severity],
            title=f"{SEVERITY_EMOJI[vuln.severity]} {vuln.severity.upper()}: {vuln.package}",
            message=vuln.title,
            severity=vuln.severity,
            cve=vuln.cve,
            package=vuln.package,
            affected_versions=vuln.version or None,
            patched_version=vuln.patched,
            advisory_url=vuln.url,
            metadata={
                "source": _SOURCE,
                "correlation_id": vuln.cve or f"pkg-{vuln.package}-{vuln.version}",
                "tags": ("vulnerability", str(vuln.severity)),
            },
        )

    def _patch_notification(self, vuln: Vulnerability) -> SecurityNotification:
        target = vuln.cve or vuln.package
        message = f"A security patch is now available for {target}."
        if vuln.patched:
            message += f" Update to {vuln.patched} to resolve this vulnerability."
        return SecurityNotification(
            id=new_notification_id("patch"),
            timestamp=self._clock(),
            priority=Priority.MEDIUM,
            title=f"✅ Security Patch Available: {vuln.package}",
            message=message,
            severity=vuln.severity,
            cve=vuln.cve,
            package=vuln.package,
            affected_versions=vuln.version or None,
            patched_version=vuln.patched,
            advisory_url=vuln.url,
            metadata={
                "source": _SOURCE,
                "correlation_id": f"patch-{vuln.key}",
                "tags": ("patch", "update", "security"),
            },
        )

    # ── Configuration / introspection ───────────────────────────

    def set_severity_thresholds(self, thresholds: Mapping[SecuritySeverity, bool]) -> None:
        """Replace the enabled flags; severities not given are disabled."""
        self._thresholds = {s: bool(thresholds.get(s, False)) for s in SecuritySeverity}

    def get_severity_thresholds(self) -> dict[SecuritySeverity, bool]:
        return dict(self._thresholds)

    def clear_known_vulnerabilities(self) -> None:
        self._known.clear()

    def is_known(self, vuln: Vulnerability) -> bool:
        return vuln.key in self._known

    def stats(self) -> dict[str, object]:
        return {
            "known_vulnerabilities": len(self._known),
            "last_audit_timestamp": self._last_audit_timestamp,
            "severity_thresholds": {str(k): v for k, v in self._thresholds.items()},
        }
