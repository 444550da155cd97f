"""Domain types for the alert engine — notifications, recipients, polled inputs."""

from __future__ import annotations

import time
import uuid
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class Priority(StrEnum):
    """Notification priority — compare via ``level``."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def level(self) -> int:
        return PRIORITY_LEVELS[self]


PRIORITY_LEVELS: dict[Priority, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class Topic(StrEnum):
    """Notification topic — the discriminant of the Notification union."""

    SECURITY = "security"
    PERFORMANCE = "performance"
    SYSTEM = "system"
    BUILD = "build"
    DEPLOYMENT = "deployment"
    MONITORING = "monitoring"
    MAINTENANCE = "maintenance"
    EMERGENCY = "emergency"
    BETTING = "betting"
    FINANCIAL = "financial"


class ChannelType(StrEnum):
    """Delivery transport."""

    TELEGRAM = "telegram"
    WEBHOOK = "webhook"


class SecuritySeverity(StrEnum):
    INFO = "info"
    LOW = "low"
    MODERATE = "moderate"
    HIGH = "high"
    CRITICAL = "critical"


class FilterOperator(StrEnum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    REGEX = "regex"


class Trend(StrEnum):
    IMPROVING = "improving"
    DEGRADING = "degrading"
    STABLE = "stable"


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AnomalyType(StrEnum):
    LARGE_BET = "large_bet"
    UNUSUAL_PATTERN = "unusual_pattern"
    VOLUME_SPIKE = "volume_spike"
    RISK_ALERT = "risk_alert"


def new_notification_id(prefix: str = "ntf") -> str:
    """Return a globally unique notification id."""
    return f"{prefix}-{uuid.uuid4().hex}"


# ── Notifications ───────────────────────────────────────────────


class NotificationMetadata(BaseModel):
    """Provenance attached to every notification."""

    model_config = ConfigDict(frozen=True)

    source: str = ""
    correlation_id: str = ""
    tags: tuple[str, ...] = ()
    expires_at: float | None = None


class BaseNotification(BaseModel):
    """Fields shared by every notification variant."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_notification_id)
    timestamp: float = Field(default_factory=time.time)
    priority: Priority = Priority.MEDIUM
    title: str
    message: str = ""
    data: dict[str, Any] = Field(default_factory=dict)
    metadata: NotificationMetadata = Field(default_factory=NotificationMetadata)


class SecurityNotification(BaseNotification):
    topic: Literal["security"] = "security"
    severity: SecuritySeverity
    cve: str | None = None
    package: str | None = None
    affected_versions: str | None = None
    patched_version: str | None = None
    advisory_url: str | None = None
    exploit_available: bool = False


class PerformanceNotification(BaseNotification):
    topic: Literal["performance"] = "performance"
    metric: str
    value: float
    threshold: float
    unit: str | None = None
    trend: Trend | None = None
    baseline: float | None = None


class SystemNotification(BaseNotification):
    topic: Literal["system"] = "system"
    component: str
    status: Literal["up", "down", "degraded", "maintenance"]
    description: str = ""
    affected_services: tuple[str, ...] = ()


class BuildNotification(BaseNotification):
    topic: Literal["build"] = "build"
    project: str
    status: Literal["started", "success", "failed", "cancelled"]
    build_id: str
    duration_ms: float | None = None
    commit_hash: str | None = None
    branch: str | None = None


class DeploymentNotification(BaseNotification):
    topic: Literal["deployment"] = "deployment"
    environment: str
    status: Literal["started", "success", "failed", "rollback"]
    version: str
    rollback_version: str | None = None
    affected_services: tuple[str, ...] = ()


class BettingNotification(BaseNotification):
    topic: Literal["betting"] = "betting"
    wager_id: str
    agent_id: str
    customer_id: str
    wager_type: str = ""
    amount: float
    potential_payout: float = 0.0
    ticket_writer: str = ""
    sport: str | None = None
    event: str | None = None
    anomaly_type: AnomalyType | None = None
    risk_level: RiskLevel | None = None


class FinancialNotification(BaseNotification):
    topic: Literal["financial"] = "financial"
    transaction_type: Literal["wager", "payout", "deposit", "withdrawal", "adjustment"]
    amount: float
    account_id: str
    agent_id: str | None = None
    net_position: float | None = None
    daily_volume: float | None = None
    threshold: float | None = None
    alert_type: (
        Literal["profit_threshold", "loss_threshold", "volume_spike", "cash_flow_alert"]
        | None
    ) = None


class GeneralNotification(BaseNotification):
    """Monitoring, maintenance and emergency notifications carry no extra fields."""

    topic: Literal["monitoring", "maintenance", "emergency"]


Notification = Annotated[
    Union[
        SecurityNotification,
        PerformanceNotification,
        SystemNotification,
        BuildNotification,
        DeploymentNotification,
        BettingNotification,
        FinancialNotification,
        GeneralNotification,
    ],
    Field(discriminator="topic"),
]


_NOTIFICATION_ADAPTER: TypeAdapter[Notification] = TypeAdapter(Notification)


def parse_notification(data: dict[str, Any]) -> BaseNotification:
    """Validate a plain mapping into the matching Notification variant."""
    return _NOTIFICATION_ADAPTER.validate_python(data)


# Typed fields per topic, used by recipient filters and the formatters.
TOPIC_FIELDS: dict[Topic, tuple[str, ...]] = {
    Topic.SECURITY: (
        "severity", "cve", "package", "affected_versions",
        "patched_version", "advisory_url", "exploit_available",
    ),
    Topic.PERFORMANCE: ("metric", "value", "threshold", "unit", "trend", "baseline"),
    Topic.SYSTEM: ("component", "status", "description", "affected_services"),
    Topic.BUILD: ("project", "status", "build_id", "duration_ms", "commit_hash", "branch"),
    Topic.DEPLOYMENT: (
        "environment", "status", "version", "rollback_version", "affected_services",
    ),
    Topic.BETTING: (
        "wager_id", "agent_id", "customer_id", "wager_type", "amount",
        "potential_payout", "ticket_writer", "sport", "event",
        "anomaly_type", "risk_level",
    ),
    Topic.FINANCIAL: (
        "transaction_type", "amount", "account_id", "agent_id",
        "net_position", "daily_volume", "threshold", "alert_type",
    ),
    Topic.MONITORING: (),
    Topic.MAINTENANCE: (),
    Topic.EMERGENCY: (),
}


def notification_field(notification: BaseNotification, name: str) -> Any:
    """Resolve *name* on a notification.

    Typed fields of the notification's topic win; anything else is looked
    up in ``data``. Returns None when the field is absent.
    """
    topic = Topic(getattr(notification, "topic"))
    if name in TOPIC_FIELDS[topic]:
        return getattr(notification, name)
    return notification.data.get(name)


# ── Recipients ──────────────────────────────────────────────────


class NotificationFilter(BaseModel):
    """A single predicate a notification must satisfy for a recipient."""

    field: str
    operator: FilterOperator
    value: str | float


class NotificationRecipient(BaseModel):
    """A subscriber — which topics/priorities it accepts and over which channel."""

    id: str
    channel: ChannelType
    channel_id: str | None = None
    topics: list[Topic] = Field(default_factory=list)
    priority_threshold: Priority = Priority.LOW
    enabled: bool = True
    filters: list[NotificationFilter] = Field(default_factory=list)


# ── Polled inputs ───────────────────────────────────────────────


class Vulnerability(BaseModel):
    """One advisory from a dependency audit."""

    package: str
    severity: SecuritySeverity
    title: str = ""
    cve: str | None = None
    version: str = ""
    patched: str | None = None
    url: str | None = None
    fix_available: bool = False

    @property
    def key(self) -> str:
        """Identity used to remember already-notified vulnerabilities."""
        return self.cve or f"{self.package}-{self.version}"


class AuditResult(BaseModel):
    timestamp: float = Field(default_factory=time.time)
    vulnerabilities: list[Vulnerability] = Field(default_factory=list)


class MetricSample(BaseModel):
    name: str
    value: float
    unit: str | None = None


class WagerRecord(BaseModel):
    """A single wager / transaction observed on the betting platform."""

    wager_id: str
    agent_id: str
    customer_id: str
    amount: float
    to_win: float = 0.0
    placed_at: float = Field(default_factory=time.time)
    wager_type: str = ""
    login: str = ""
    ticket_writer: str = ""
    vip: bool = False
    sport: str | None = None
    event: str | None = None

    @property
    def payout_ratio(self) -> float:
        if self.amount <= 0:
            return 0.0
        return self.to_win / self.amount


class ComponentHealth(BaseModel):
    name: str
    status: str


class HealthReport(BaseModel):
    status: str = "unknown"
    message: str = ""
    components: list[ComponentHealth] = Field(default_factory=list)


class BuildStatus(BaseModel):
    id: str
    project: str = ""
    status: Literal["started", "success", "failed", "cancelled"]
    previous_status: str | None = None
    duration_ms: float | None = None
    branch: str | None = None
    commit_hash: str | None = None
