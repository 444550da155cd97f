"""Fetch helpers and response parsers for the polled sources.

Parsers are defensive: malformed entries are skipped rather than failing
the whole document. A document whose top-level shape is wrong raises
SourceParseError.
"""

from __future__ import annotations

import datetime
import json
import math
import re
import time
from typing import Any

import httpx
import structlog
from pydantic import ValidationError

from src.core.types import (
    AuditResult,
    BuildStatus,
    ComponentHealth,
    HealthReport,
    MetricSample,
    SecuritySeverity,
    Vulnerability,
    WagerRecord,
)
from src.integration.exceptions import SourceParseError, SourceUnavailableError

logger = structlog.stdlib.get_logger()

# name{labels} value [timestamp]
_PROM_LINE = re.compile(
    r"^(?P<name>[a-zA-Z_:][a-zA-Z0-9_:]*)(?:\{[^}]*\})?\s+(?P<value>\S+)(?:\s+\S+)?$"
)


# ── Fetching ────────────────────────────────────────────────────


async def fetch_text(client: httpx.AsyncClient, url: str) -> str:
    """GET *url* and return the body text."""
    try:
        response = await client.get(url)
        response.raise_for_status()
    except httpx.HTTPStatusError as exc:
        raise SourceUnavailableError(
            f"{url} returned {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise SourceUnavailableError(f"Request to {url} failed: {exc}") from exc
    return response.text


async def fetch_json(client: httpx.AsyncClient, url: str) -> Any:
    """GET *url* and decode the JSON body."""
    text = await fetch_text(client, url)
    try:
        return json.loads(text)
    except ValueError as exc:
        raise SourceParseError(f"{url} returned invalid JSON") from exc


# ── Security audits ─────────────────────────────────────────────


def _parse_vulnerability(raw: Any, fallback_package: str = "") -> Vulnerability | None:
    if not isinstance(raw, dict):
        return None
    try:
        severity = SecuritySeverity(str(raw.get("severity", "")).lower())
    except ValueError:
        return None
    package = str(raw.get("package") or raw.get("name") or fallback_package)
    if not package:
        return None
    return Vulnerability(
        package=package,
        severity=severity,
        title=str(raw.get("title", "")),
        cve=_optional_str(raw.get("cve") or None),
        version=str(raw.get("version") or raw.get("range") or ""),
        patched=_optional_str(raw.get("patched") or None),
        url=_optional_str(raw.get("url") or None),
        fix_available=bool(raw.get("fix_available") or raw.get("fixAvailable")),
    )


def parse_audit(data: Any) -> AuditResult:
    """Audit document → AuditResult.

    Accepts ``{"timestamp", "vulnerabilities": [...]}``, a mapping of
    package → advisory under ``vulnerabilities``, or a bare list.
    """
    timestamp = time.time()
    if isinstance(data, list):
        entries: list[tuple[Any, str]] = [(v, "") for v in data]
    elif isinstance(data, dict):
        raw_ts = data.get("timestamp")
        if isinstance(raw_ts, (int, float)):
            # Millisecond timestamps are common in audit tooling output.
            timestamp = raw_ts / 1000 if raw_ts > 1e12 else float(raw_ts)
        vulns = data.get("vulnerabilities", [])
        if isinstance(vulns, dict):
            entries = [(v, str(k)) for k, v in vulns.items()]
        elif isinstance(vulns, list):
            entries = [(v, "") for v in vulns]
        else:
            raise SourceParseError("Audit 'vulnerabilities' is neither a list nor a mapping")
    else:
        raise SourceParseError("Audit document is not an object or list")

    parsed = [_parse_vulnerability(raw, name) for raw, name in entries]
    return AuditResult(
        timestamp=timestamp,
        vulnerabilities=[v for v in parsed if v is not None],
    )


# ── Metrics ─────────────────────────────────────────────────────


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def parse_prometheus_text(text: str) -> list[MetricSample]:
    samples: list[MetricSample] = []
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        match = _PROM_LINE.match(line)
        if match is None:
            continue
        value = _number(match.group("value"))
        if value is not None:
            samples.append(MetricSample(name=match.group("name"), value=value))
    return samples


def parse_metrics(body: str) -> list[MetricSample]:
    """Metrics document → samples.

    JSON list of ``{name, value, unit}``, JSON mapping of name → number or
    ``{value, unit}``, or Prometheus exposition text.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return parse_prometheus_text(body)

    samples: list[MetricSample] = []
    if isinstance(data, list):
        for item in data:
            if not isinstance(item, dict) or not item.get("name"):
                continue
            value = _number(item.get("value"))
            if value is not None:
                samples.append(
                    MetricSample(name=str(item["name"]), value=value, unit=item.get("unit"))
                )
    elif isinstance(data, dict):
        for name, item in data.items():
            if isinstance(item, dict):
                value = _number(item.get("value"))
                unit = item.get("unit")
            else:
                value = _number(item)
                unit = None
            if value is not None:
                samples.append(MetricSample(name=str(name), value=value, unit=unit))
    else:
        raise SourceParseError("Metrics document is not a list or object")
    return samples


# ── Health / telemetry / diagnostics ────────────────────────────


def parse_health(data: Any) -> HealthReport:
    if not isinstance(data, dict):
        raise SourceParseError("Health document is not an object")
    components: list[ComponentHealth] = []
    raw = data.get("components") or data.get("checks") or {}
    if isinstance(raw, dict):
        for name, status in raw.items():
            if isinstance(status, dict):
                status = status.get("status", "unknown")
            components.append(ComponentHealth(name=str(name), status=str(status)))
    elif isinstance(raw, list):
        for item in raw:
            if isinstance(item, dict) and item.get("name"):
                components.append(
                    ComponentHealth(
                        name=str(item["name"]), status=str(item.get("status", "unknown"))
                    )
                )
    return HealthReport(
        status=str(data.get("status", "unknown")),
        message=str(data.get("message", "")),
        components=components,
    )


def parse_telemetry(data: Any) -> dict[str, float]:
    """Top-level numeric telemetry values; nested objects are flattened one level."""
    if not isinstance(data, dict):
        return {}
    values: dict[str, float] = {}
    for key, value in data.items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                number = _number(sub_value) if not isinstance(sub_value, str) else None
                if number is not None:
                    values[f"{key}_{sub_key}"] = number
            continue
        if isinstance(value, str):
            continue
        number = _number(value)
        if number is not None:
            values[str(key)] = number
    return values


def parse_diagnostics(data: Any) -> list[str]:
    """Critical diagnostic issues as display strings."""
    if not isinstance(data, dict):
        return []
    critical = data.get("critical")
    if not isinstance(critical, list):
        return []
    issues: list[str] = []
    for item in critical:
        if isinstance(item, dict):
            issues.append(str(item.get("message") or item.get("name") or item))
        elif item:
            issues.append(str(item))
    return issues


# ── Builds ──────────────────────────────────────────────────────


def parse_builds(data: Any) -> list[BuildStatus]:
    """One build object, a list of them, or ``{"builds": [...]}``."""
    if isinstance(data, dict) and isinstance(data.get("builds"), list):
        items = data["builds"]
    elif isinstance(data, dict):
        items = [data]
    elif isinstance(data, list):
        items = data
    else:
        raise SourceParseError("Build document is not an object or list")

    builds: list[BuildStatus] = []
    for item in items:
        if not isinstance(item, dict) or "id" not in item:
            continue
        try:
            builds.append(
                BuildStatus(
                    id=str(item["id"]),
                    project=str(item.get("project", "")),
                    status=item.get("status"),
                    previous_status=_optional_str(
                        item.get("previous_status") or item.get("previousStatus")
                    ),
                    duration_ms=_number(item.get("duration_ms", item.get("duration"))),
                    branch=_optional_str(item.get("branch")),
                    commit_hash=_optional_str(
                        item.get("commit_hash") or item.get("commitHash")
                    ),
                )
            )
        except ValidationError:
            logger.warning("build_status_skipped", build_id=item.get("id"))
    return builds


# ── Wagers ──────────────────────────────────────────────────────


def _timestamp(value: Any) -> float | None:
    number = _number(value)
    if number is not None:
        return number / 1000 if number > 1e12 else number
    if isinstance(value, str) and value:
        try:
            parsed = datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=datetime.UTC)
        return parsed.timestamp()
    return None


def _pick(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


def parse_wager(raw: Any) -> WagerRecord | None:
    """One wager in snake_case or the platform's PascalCase export format."""
    if not isinstance(raw, dict):
        return None
    wager_id = _pick(raw, "wager_id", "WagerNumber", "id")
    amount = _number(_pick(raw, "amount", "AmountWagered"))
    if wager_id is None or amount is None:
        return None
    vip = _pick(raw, "vip", "VIP")
    if isinstance(vip, str):
        vip = vip.strip() in ("1", "true", "True", "yes")
    placed_at = _timestamp(_pick(raw, "placed_at", "InsertDateTime"))
    return WagerRecord(
        wager_id=str(wager_id),
        agent_id=str(_pick(raw, "agent_id", "AgentID") or ""),
        customer_id=str(_pick(raw, "customer_id", "CustomerID") or ""),
        amount=amount,
        to_win=_number(_pick(raw, "to_win", "ToWinAmount")) or 0.0,
        placed_at=placed_at if placed_at is not None else time.time(),
        wager_type=str(_pick(raw, "wager_type", "WagerType") or ""),
        login=str(_pick(raw, "login", "Login") or ""),
        ticket_writer=str(_pick(raw, "ticket_writer", "TicketWriter") or ""),
        vip=bool(vip),
        sport=_optional_str(_pick(raw, "sport")),
        event=_optional_str(_pick(raw, "event", "ShortDesc")),
    )


def parse_wagers(data: Any) -> list[WagerRecord]:
    if isinstance(data, dict):
        data = data.get("wagers", data.get("data"))
    if not isinstance(data, list):
        raise SourceParseError("Wager document has no wager list")
    parsed = [parse_wager(item) for item in data]
    return [w for w in parsed if w is not None]
