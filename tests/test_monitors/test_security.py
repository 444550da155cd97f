"""Tests for SecurityMonitor — batching, known-vulnerability memory, patches, exploits."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

from src.core.config import SecurityMonitorConfig
from src.core.types import AuditResult, Priority, SecuritySeverity, Vulnerability
from src.monitors.security import SecurityMonitor


# ── Helpers ─────────────────────────────────────────────────────


def _dispatcher() -> MagicMock:
    dispatcher = MagicMock()
    dispatcher.send = AsyncMock(return_value=[])
    return dispatcher


def _vuln(
    package: str,
    severity: SecuritySeverity,
    cve: str | None = None,
    **kw: object,
) -> Vulnerability:
    defaults: dict[str, object] = {
        "package": package,
        "severity": severity,
        "cve": cve,
        "title": f"{package} issue",
        "version": "1.0.0",
    }
    defaults.update(kw)
    return Vulnerability(**defaults)  # type: ignore[arg-type]


def _audit(*vulns: Vulnerability, timestamp: float = 1_700_000_000.0) -> AuditResult:
    return AuditResult(timestamp=timestamp, vulnerabilities=list(vulns))


# ── Batching ────────────────────────────────────────────────────


class TestBatching:
    def test_batches_per_tier_plus_individual_high_and_critical(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        audit = _audit(
            _vuln("a", SecuritySeverity.HIGH, "CVE-1"),
            _vuln("b", SecuritySeverity.HIGH, "CVE-2"),
            _vuln("c", SecuritySeverity.CRITICAL, "CVE-3"),
            _vuln("d", SecuritySeverity.MODERATE, "CVE-4"),
            _vuln("e", SecuritySeverity.LOW, "CVE-5"),
        )
        notifications = monitor.analyze_audit(audit)

        # moderate batch, high batch + 2, critical batch + 1; low is disabled
        assert len(notifications) == 6
        titles = [n.title for n in notifications]
        assert titles[0] == "🟡 New MODERATE Vulnerability: d"
        assert titles[1] == "🟠 2 New HIGH Vulnerabilities Detected"
        assert titles[4] == "🔴 New CRITICAL Vulnerability: c"
        priorities = [n.priority for n in notifications]
        assert priorities == [
            Priority.MEDIUM,
            Priority.HIGH,
            Priority.HIGH,
            Priority.HIGH,
            Priority.CRITICAL,
            Priority.CRITICAL,
        ]

    def test_batch_lists_truncated(self) -> None:
        monitor = SecurityMonitor(_dispatcher(), SecurityMonitorConfig(batch_list_limit=5))
        vulns = [_vuln(f"pkg{i}", SecuritySeverity.MODERATE, f"CVE-{i}") for i in range(7)]
        batch = monitor.analyze_audit(_audit(*vulns))[0]
        assert "Packages: pkg0, pkg1, pkg2 +4 more" in batch.message
        assert "CVEs: CVE-0, CVE-1, CVE-2 +4 more" in batch.message
        assert batch.data["vulnerability_count"] == 7

    def test_short_lists_not_truncated(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        vulns = [_vuln(f"pkg{i}", SecuritySeverity.MODERATE) for i in range(3)]
        batch = monitor.analyze_audit(_audit(*vulns))[0]
        assert "Packages: pkg0, pkg1, pkg2" in batch.message
        assert "CVEs" not in batch.message

    def test_batch_correlation_uses_audit_timestamp(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        batch = monitor.analyze_audit(_audit(_vuln("a", SecuritySeverity.MODERATE)))[0]
        assert batch.metadata.correlation_id == "audit-1700000000"
        assert batch.timestamp == 1_700_000_000.0


# ── Known vulnerabilities ───────────────────────────────────────


class TestKnownVulnerabilities:
    def test_same_audit_twice_notifies_once(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        audit = _audit(_vuln("a", SecuritySeverity.HIGH, "CVE-1"))
        assert len(monitor.analyze_audit(audit)) == 2
        assert monitor.analyze_audit(audit) == []

    def test_only_new_vulnerabilities_reported(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        monitor.analyze_audit(_audit(_vuln("a", SecuritySeverity.MODERATE, "CVE-1")))
        notifications = monitor.analyze_audit(
            _audit(
                _vuln("a", SecuritySeverity.MODERATE, "CVE-1"),
                _vuln("b", SecuritySeverity.MODERATE, "CVE-2"),
            )
        )
        assert len(notifications) == 1
        assert notifications[0].data["packages"] == ["b"]

    def test_key_falls_back_to_package_version(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        vuln = _vuln("a", SecuritySeverity.MODERATE)
        monitor.analyze_audit(_audit(vuln))
        assert monitor.is_known(vuln)
        assert not monitor.is_known(_vuln("a", SecuritySeverity.MODERATE, version="2.0.0"))

    def test_disabled_tier_still_marked_known(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        vuln = _vuln("a", SecuritySeverity.LOW, "CVE-9")
        assert monitor.analyze_audit(_audit(vuln)) == []
        assert monitor.is_known(vuln)

    def test_clear_known(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        audit = _audit(_vuln("a", SecuritySeverity.MODERATE, "CVE-1"))
        monitor.analyze_audit(audit)
        monitor.clear_known_vulnerabilities()
        assert len(monitor.analyze_audit(audit)) == 1


# ── Thresholds ──────────────────────────────────────────────────


class TestThresholds:
    def test_set_thresholds_disables_unlisted(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        monitor.set_severity_thresholds({SecuritySeverity.LOW: True})
        thresholds = monitor.get_severity_thresholds()
        assert thresholds[SecuritySeverity.LOW] is True
        assert thresholds[SecuritySeverity.CRITICAL] is False

        notifications = monitor.analyze_audit(
            _audit(
                _vuln("a", SecuritySeverity.LOW, "CVE-1"),
                _vuln("b", SecuritySeverity.CRITICAL, "CVE-2"),
            )
        )
        assert [n.severity for n in notifications] == [SecuritySeverity.LOW]


# ── Sending ─────────────────────────────────────────────────────


class TestSending:
    async def test_process_audit_sends_everything(self) -> None:
        dispatcher = _dispatcher()
        monitor = SecurityMonitor(dispatcher)
        notifications = await monitor.process_audit(
            _audit(_vuln("a", SecuritySeverity.CRITICAL, "CVE-1"))
        )
        assert len(notifications) == 2
        assert dispatcher.send.await_count == 2

    async def test_exploit_alert(self) -> None:
        dispatcher = _dispatcher()
        monitor = SecurityMonitor(dispatcher)
        vuln = _vuln("a", SecuritySeverity.MODERATE, "CVE-1")
        notification = await monitor.send_exploit_alert(vuln)
        assert notification.priority == Priority.CRITICAL
        assert notification.exploit_available is True
        assert notification.title == "🚨 EXPLOIT AVAILABLE: a issue"
        dispatcher.send.assert_awaited_once_with(notification)

    async def test_critical_alert_forces_priority(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        notification = await monitor.send_critical_alert(_vuln("a", SecuritySeverity.LOW))
        assert notification.priority == Priority.CRITICAL
        assert notification.severity == SecuritySeverity.LOW

    async def test_patch_notifications(self) -> None:
        dispatcher = _dispatcher()
        monitor = SecurityMonitor(dispatcher)
        previous = _audit(
            _vuln("a", SecuritySeverity.HIGH, "CVE-1", patched="1.0.1"),
            _vuln("b", SecuritySeverity.HIGH, "CVE-2"),
        )
        current = _audit(_vuln("b", SecuritySeverity.HIGH, "CVE-2"))
        notifications = await monitor.check_for_patches(current, previous)

        assert len(notifications) == 1
        patch = notifications[0]
        assert patch.title == "✅ Security Patch Available: a"
        assert patch.priority == Priority.MEDIUM
        assert "Update to 1.0.1" in patch.message
        assert dispatcher.send.await_count == 1

    def test_stats(self) -> None:
        monitor = SecurityMonitor(_dispatcher())
        monitor.analyze_audit(_audit(_vuln("a", SecuritySeverity.MODERATE, "CVE-1")))
        stats = monitor.stats()
        assert stats["known_vulnerabilities"] == 1
        assert stats["last_audit_timestamp"] == 1_700_000_000.0
