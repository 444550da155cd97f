"""Render notifications for delivery — Telegram HTML text and webhook JSON."""

from __future__ import annotations

import datetime
from collections.abc import Callable
from html import escape as html_escape
from typing import Any

from src.core.types import BaseNotification, Priority, Topic

TOPIC_EMOJI: dict[Topic, str] = {
    Topic.SECURITY: "🔒",
    Topic.PERFORMANCE: "⚡",
    Topic.SYSTEM: "🖥️",
    Topic.BUILD: "🔨",
    Topic.DEPLOYMENT: "🚀",
    Topic.MONITORING: "📊",
    Topic.MAINTENANCE: "🔧",
    Topic.EMERGENCY: "🚨",
    Topic.BETTING: "🎯",
    Topic.FINANCIAL: "💰",
}

PRIORITY_EMOJI: dict[Priority, str] = {
    Priority.LOW: "ℹ️",
    Priority.MEDIUM: "⚠️",
    Priority.HIGH: "🔔",
    Priority.CRITICAL: "🚨",
}

_DEFAULT_EMOJI = "📢"

_TREND_EMOJI = {"improving": "📈", "degrading": "📉", "stable": "➡️"}
_STATUS_EMOJI = {"up": "🟢", "down": "🔴", "degraded": "🟡", "maintenance": "🟠"}
_RISK_EMOJI = {"low": "🟢", "medium": "🟡", "high": "🟠", "critical": "🔴"}
_ANOMALY_EMOJI = {
    "large_bet": "💰",
    "unusual_pattern": "📊",
    "volume_spike": "📈",
    "risk_alert": "⚠️",
}
_FINANCIAL_ALERT_EMOJI = {
    "profit_threshold": "💰",
    "loss_threshold": "📉",
    "volume_spike": "📊",
    "cash_flow_alert": "💸",
}


def topic_emoji(topic: str) -> str:
    try:
        return TOPIC_EMOJI[Topic(topic)]
    except ValueError:
        return _DEFAULT_EMOJI


def priority_emoji(priority: str) -> str:
    try:
        return PRIORITY_EMOJI[Priority(priority)]
    except ValueError:
        return _DEFAULT_EMOJI


def _code(value: object) -> str:
    return f"<code>{html_escape(str(value))}</code>"


def _money(value: float) -> str:
    return f"${value:,.2f}".replace(".00", "")


def _label(value: str) -> str:
    return value.replace("_", " ").upper()


# ── Per-topic detail renderers ──────────────────────────────────


def _security_lines(n: Any) -> list[str]:
    lines = [f"Severity: <b>{html_escape(n.severity.upper())}</b>"]
    if n.cve:
        lines.append(f"CVE: {_code(n.cve)}")
    if n.package:
        lines.append(f"Package: {_code(n.package)}")
    if n.patched_version:
        lines.append(f"Patched in: {_code(n.patched_version)}")
    if n.advisory_url:
        lines.append(f"Advisory: {html_escape(n.advisory_url)}")
    if n.exploit_available:
        lines.append("⚠️ <b>EXPLOIT AVAILABLE</b>")
    return lines


def _performance_lines(n: Any) -> list[str]:
    unit = html_escape(n.unit or "")
    lines = [
        f"Metric: {_code(n.metric)}",
        f"Value: <b>{n.value:g}{unit}</b>",
        f"Threshold: {n.threshold:g}{unit}",
    ]
    if n.baseline is not None:
        lines.append(f"Baseline: {n.baseline:g}{unit}")
    if n.trend:
        lines.append(f"Trend: {_TREND_EMOJI.get(n.trend, '')} {n.trend}")
    return lines


def _system_lines(n: Any) -> list[str]:
    lines = [
        f"Component: {_code(n.component)}",
        f"Status: {_STATUS_EMOJI.get(n.status, '⚪')} {n.status.upper()}",
    ]
    if n.affected_services:
        lines.append(f"Affected: {html_escape(', '.join(n.affected_services))}")
    return lines


def _build_lines(n: Any) -> list[str]:
    lines = [f"Project: {_code(n.project)}", f"Build: {_code(n.build_id)}"]
    if n.branch:
        lines.append(f"Branch: {_code(n.branch)}")
    if n.commit_hash:
        lines.append(f"Commit: {_code(n.commit_hash[:8])}")
    if n.duration_ms:
        lines.append(f"Duration: {round(n.duration_ms / 1000)}s")
    return lines


def _deployment_lines(n: Any) -> list[str]:
    lines = [f"Environment: {_code(n.environment)}", f"Version: {_code(n.version)}"]
    if n.rollback_version:
        lines.append(f"Rollback to: {_code(n.rollback_version)}")
    if n.affected_services:
        lines.append(f"Services: {html_escape(', '.join(n.affected_services))}")
    return lines


def _betting_lines(n: Any) -> list[str]:
    lines = [
        f"Wager ID: {_code(n.wager_id)}",
        f"Customer: {_code(n.customer_id)}",
        f"Agent: {_code(n.agent_id)}",
        f"Amount: <b>{_money(n.amount)}</b>",
    ]
    if n.potential_payout:
        lines.append(f"Potential Payout: <b>{_money(n.potential_payout)}</b>")
    if n.anomaly_type:
        emoji = _ANOMALY_EMOJI.get(n.anomaly_type, "🎯")
        lines.append(f"Alert: {emoji} {_label(n.anomaly_type)}")
    if n.risk_level:
        emoji = _RISK_EMOJI.get(n.risk_level, "⚪")
        lines.append(f"Risk Level: {emoji} {n.risk_level.upper()}")
    return lines


def _financial_lines(n: Any) -> list[str]:
    lines = [
        f"Type: {_code(n.transaction_type.upper())}",
        f"Amount: <b>{_money(n.amount)}</b>",
        f"Account: {_code(n.account_id)}",
    ]
    if n.net_position is not None:
        emoji = "📈" if n.net_position >= 0 else "📉"
        lines.append(f"Net Position: {emoji} {_money(n.net_position)}")
    if n.alert_type:
        emoji = _FINANCIAL_ALERT_EMOJI.get(n.alert_type, "💰")
        lines.append(f"Alert: {emoji} {_label(n.alert_type)}")
    return lines


DETAIL_RENDERERS: dict[Topic, Callable[[Any], list[str]]] = {
    Topic.SECURITY: _security_lines,
    Topic.PERFORMANCE: _performance_lines,
    Topic.SYSTEM: _system_lines,
    Topic.BUILD: _build_lines,
    Topic.DEPLOYMENT: _deployment_lines,
    Topic.BETTING: _betting_lines,
    Topic.FINANCIAL: _financial_lines,
}


def format_telegram_message(notification: BaseNotification) -> str:
    """Render a notification as Telegram HTML."""
    topic = Topic(getattr(notification, "topic"))
    parts = [
        f"{topic_emoji(topic)} {priority_emoji(notification.priority)} "
        f"<b>{html_escape(notification.title)}</b>",
    ]
    if notification.message:
        parts.append(html_escape(notification.message))

    renderer = DETAIL_RENDERERS.get(topic)
    if renderer is not None:
        details = renderer(notification)
        if details:
            parts.append("\n".join(details))

    meta = notification.metadata
    footer = f"Topic: {topic}"
    if meta.source:
        footer += f" | Source: {html_escape(meta.source)}"
    if meta.correlation_id:
        footer += f" | ID: {html_escape(meta.correlation_id[-8:])}"
    stamp = datetime.datetime.fromtimestamp(notification.timestamp, datetime.UTC)
    parts.append(f"<i>{footer}</i>\n<code>{stamp:%Y-%m-%d %H:%M:%S} UTC</code>")
    return "\n\n".join(parts)


# ── Webhook payload ─────────────────────────────────────────────


def _topic_payload(n: Any) -> dict[str, Any]:
    topic = Topic(n.topic)
    if topic == Topic.PERFORMANCE:
        deviation = None
        if n.baseline:
            deviation = (n.value - n.baseline) / n.baseline * 100
        return {
            "performance": {
                "metric": n.metric,
                "value": n.value,
                "threshold": n.threshold,
                "unit": n.unit,
                "trend": n.trend,
                "baseline": n.baseline,
                "deviation": deviation,
            }
        }
    if topic == Topic.BUILD:
        return {
            "build": {
                "project": n.project,
                "status": n.status,
                "build_id": n.build_id,
                "duration_ms": n.duration_ms,
                "commit_hash": n.commit_hash,
                "branch": n.branch,
            }
        }
    fields = {
        Topic.SECURITY: (
            "severity", "cve", "package", "affected_versions",
            "patched_version", "advisory_url", "exploit_available",
        ),
        Topic.SYSTEM: ("component", "status", "description", "affected_services"),
        Topic.DEPLOYMENT: (
            "environment", "status", "version", "rollback_version", "affected_services",
        ),
        Topic.BETTING: (
            "wager_id", "agent_id", "customer_id", "wager_type", "amount",
            "potential_payout", "anomaly_type", "risk_level",
        ),
        Topic.FINANCIAL: (
            "transaction_type", "amount", "account_id", "agent_id",
            "net_position", "daily_volume", "threshold", "alert_type",
        ),
    }.get(topic)
    if fields is None:
        return {}
    return {str(topic): {f: getattr(n, f) for f in fields}}


def build_webhook_payload(notification: BaseNotification) -> dict[str, Any]:
    """Full notification plus derived fields and a topic sub-object, JSON-safe."""
    topic = getattr(notification, "topic")
    payload = notification.model_dump(mode="json")
    payload["formatted"] = {
        "timestamp": datetime.datetime.fromtimestamp(
            notification.timestamp, datetime.UTC
        ).isoformat(),
        "priority_level": Priority(notification.priority).level,
        "topic_emoji": topic_emoji(topic),
    }
    for key, value in _topic_payload(notification).items():
        payload[key] = {
            k: list(v) if isinstance(v, tuple) else v for k, v in value.items()
        }
    return payload
