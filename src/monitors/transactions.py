"""TransactionMonitor — wager stream aggregates, risk scoring and pattern detection.

Every threshold lives in ``TransactionMonitorConfig``; the defaults are
example heuristics, not compliance rules.
"""

from __future__ import annotations

import collections
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace

import structlog

from src.core.config import TransactionMonitorConfig
from src.core.types import (
    AnomalyType,
    BaseNotification,
    BettingNotification,
    FinancialNotification,
    Priority,
    RiskLevel,
    WagerRecord,
    new_notification_id,
)
from src.notify.dispatcher import NotificationDispatcher

logger = structlog.stdlib.get_logger()

_SOURCE = "transaction-monitor"
_HOUR = 3600.0
# Completed hours needed before volume spikes are judged.
_MIN_BASELINE_HOURS = 2

# Risk bucket → priority of the large-bet alert.
LARGE_BET_PRIORITY: dict[RiskLevel, Priority] = {
    RiskLevel.CRITICAL: Priority.HIGH,
    RiskLevel.HIGH: Priority.MEDIUM,
    RiskLevel.MEDIUM: Priority.LOW,
    RiskLevel.LOW: Priority.LOW,
}


@dataclass
class AccountStats:
    """Running aggregate for one agent or customer."""

    total_volume: float = 0.0
    wager_count: int = 0
    last_activity: float = 0.0


def risk_bucket(score: int) -> RiskLevel:
    if score >= 4:
        return RiskLevel.CRITICAL
    if score >= 3:
        return RiskLevel.HIGH
    if score >= 2:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _money(amount: float) -> str:
    return f"${amount:,.0f}"


class TransactionMonitor:
    """Keeps a bounded wager history with per-agent / per-customer aggregates.

    ``ingest`` checks every record for a large stake immediately;
    ``analyze`` runs the batch heuristics (volume spike, agent pattern,
    customer pattern, structuring) at most once per analysis interval
    unless forced.

    Usage::

        monitor = TransactionMonitor(dispatcher, config)
        await monitor.process(records)       # ingest + throttled analysis
        monitor.cleanup(older_than_secs=86_400)
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        config: TransactionMonitorConfig | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._dispatcher = dispatcher
        self._config = config or TransactionMonitorConfig()
        self._clock = clock
        self._history: collections.deque[WagerRecord] = collections.deque(
            maxlen=self._config.max_history_size
        )
        # Wager ids currently in history.
        self._seen_ids: set[str] = set()
        self._agents: dict[str, AccountStats] = {}
        self._customers: dict[str, AccountStats] = {}
        # Epoch hour bucket → staked volume.
        self._hourly_volume: dict[int, float] = {}
        self._last_analysis: float = 0.0

    # ── Ingestion ───────────────────────────────────────────────

    def ingest(self, records: Iterable[WagerRecord]) -> list[BettingNotification]:
        """Record unseen wagers and return any immediate large-bet alerts.

        A wager id already in history is skipped, so overlapping poll
        results are counted once.
        """
        now = self._clock()
        fresh: list[WagerRecord] = []
        duplicates = 0
        for record in records:
            if record.wager_id in self._seen_ids:
                duplicates += 1
                continue
            if len(self._history) == self._history.maxlen:
                self._seen_ids.discard(self._history[0].wager_id)
            self._history.append(record)
            self._seen_ids.add(record.wager_id)
            self._update_stats(record, now)
            fresh.append(record)

        alerts = [
            self._large_bet_notification(r)
            for r in fresh
            if r.amount >= self._config.large_bet_amount
        ]
        if fresh or duplicates:
            logger.debug(
                "wagers_ingested",
                count=len(fresh),
                duplicates=duplicates,
                large_bets=len(alerts),
            )
        return alerts

    def _update_stats(self, record: WagerRecord, now: float) -> None:
        for table, key in ((self._agents, record.agent_id), (self._customers, record.customer_id)):
            stats = table.setdefault(key, AccountStats())
            stats.total_volume += record.amount
            stats.wager_count += 1
            stats.last_activity = now
        bucket = int(record.placed_at // _HOUR)
        self._hourly_volume[bucket] = self._hourly_volume.get(bucket, 0.0) + record.amount

    async def process(self, records: Iterable[WagerRecord]) -> list[BaseNotification]:
        """Ingest, run the throttled analysis, then send everything raised."""
        notifications: list[BaseNotification] = [*self.ingest(records)]
        notifications.extend(self.analyze())
        for notification in notifications:
            await self._dispatcher.send(notification)
        return notifications

    # ── Risk scoring ────────────────────────────────────────────

    def risk_score(self, record: WagerRecord) -> int:
        cfg = self._config
        score = 0
        for amount, points in sorted(cfg.stake_risk_tiers, reverse=True):
            if record.amount >= amount:
                score += points
                break
        ratio = record.payout_ratio
        for threshold, points in sorted(cfg.payout_risk_tiers, reverse=True):
            if ratio >= threshold:
                score += points
                break
        if record.vip:
            score -= cfg.vip_risk_discount
        agent = self._agents.get(record.agent_id)
        if agent is not None and agent.wager_count > cfg.established_agent_wagers:
            score -= cfg.established_agent_discount
        return score

    def calculate_risk_level(self, record: WagerRecord) -> RiskLevel:
        return risk_bucket(self.risk_score(record))

    def _large_bet_notification(self, record: WagerRecord) -> BettingNotification:
        risk = self.calculate_risk_level(record)
        who = record.customer_id
        if record.login:
            who += f" ({record.login})"
        return BettingNotification(
            id=new_notification_id("large-bet"),
            timestamp=self._clock(),
            priority=LARGE_BET_PRIORITY[risk],
            title=f"💰 Large Bet Alert: {_money(record.amount)}",
            message=f"Large wager detected from customer {who} for {_money(record.amount)}.",
            wager_id=record.wager_id,
            agent_id=record.agent_id,
            customer_id=record.customer_id,
            wager_type=record.wager_type,
            amount=record.amount,
            potential_payout=record.to_win,
            ticket_writer=record.ticket_writer,
            sport=record.sport,
            event=record.event,
            anomaly_type=AnomalyType.LARGE_BET,
            risk_level=risk,
            data={"vip": record.vip, "payout_ratio": record.payout_ratio},
            metadata={
                "source": _SOURCE,
                "correlation_id": f"wager-{record.wager_id}",
                "tags": ("betting", "large-bet", str(risk)),
            },
        )

    # ── Batch analysis ──────────────────────────────────────────

    def analyze(self, force: bool = False) -> list[BaseNotification]:
        """Run the pattern heuristics if the analysis interval has elapsed."""
        if not self._config.enabled:
            return []
        now = self._clock()
        if not force and now - self._last_analysis < self._config.analysis_interval_secs:
            return []
        self._last_analysis = now

        found: list[BaseNotification] = []
        found.extend(self._volume_spike(now))
        if self._config.agent_risk_tracking:
            found.extend(self._agent_patterns(now))
        if self._config.customer_risk_tracking:
            found.extend(self._customer_patterns(now))
        found.extend(self._structuring(now))
        if found:
            logger.info("transaction_anomalies_found", count=len(found))
        return found

    def _recent(self, now: float, window_secs: float) -> list[WagerRecord]:
        cutoff = now - window_secs
        return [r for r in self._history if r.placed_at > cutoff]

    def average_hourly_volume(self, now: float | None = None) -> float:
        """Mean staked volume per hour bucket before the trailing hour.

        Returns 0.0 until at least two such buckets exist.
        """
        now = self._clock() if now is None else now
        trailing_bucket = int((now - _HOUR) // _HOUR)
        earlier = [v for b, v in self._hourly_volume.items() if b < trailing_bucket]
        if len(earlier) < _MIN_BASELINE_HOURS:
            return 0.0
        return sum(earlier) / len(earlier)

    def _volume_spike(self, now: float) -> list[FinancialNotification]:
        recent = self._recent(now, _HOUR)
        current = sum(r.amount for r in recent)
        average = self.average_hourly_volume(now)
        if average <= 0 or current <= average * self._config.volume_spike_multiplier:
            return []
        ratio = current / average
        return [
            FinancialNotification(
                id=new_notification_id("volume-spike"),
                timestamp=now,
                priority=Priority.HIGH,
                title="📈 Volume Spike Detected",
                message=(
                    f"Hourly betting volume surged to {_money(current)} "
                    f"({(ratio - 1) * 100:.0f}% above average)."
                ),
                transaction_type="wager",
                amount=current,
                account_id="system",
                daily_volume=current,
                alert_type="volume_spike",
                data={
                    "recent_wagers": len(recent),
                    "avg_volume": average,
                    "spike_ratio": ratio,
                },
                metadata={
                    "source": _SOURCE,
                    "correlation_id": f"volume-spike-{int(now // _HOUR)}",
                    "tags": ("betting", "volume-spike", "financial"),
                },
            )
        ]

    def _agent_patterns(self, now: float) -> list[BettingNotification]:
        cfg = self._config
        recent = self._recent(now, cfg.pattern_window_secs)
        by_agent: dict[str, list[WagerRecord]] = collections.defaultdict(list)
        for record in recent:
            by_agent[record.agent_id].append(record)

        alerts: list[BettingNotification] = []
        for agent_id, wagers in by_agent.items():
            if len(wagers) <= cfg.agent_pattern_min_wagers:
                continue
            avg = sum(w.amount for w in wagers) / len(wagers)
            large = [w for w in wagers if w.amount > avg * cfg.large_wager_multiple]
            if len(large) < cfg.min_large_wagers:
                continue
            alerts.append(
                BettingNotification(
                    id=new_notification_id("agent-pattern"),
                    timestamp=now,
                    priority=Priority.MEDIUM,
                    title=f"📊 Unusual Agent Pattern: {agent_id}",
                    message=(
                        f"Agent {agent_id} showing unusual betting pattern with "
                        f"{len(large)} large wagers in the last hour."
                    ),
                    wager_id=large[0].wager_id,
                    agent_id=agent_id,
                    customer_id="multiple",
                    wager_type="multiple",
                    amount=sum(w.amount for w in large),
                    potential_payout=sum(w.to_win for w in large),
                    ticket_writer="multiple",
                    anomaly_type=AnomalyType.UNUSUAL_PATTERN,
                    risk_level=RiskLevel.MEDIUM,
                    data={
                        "recent_wagers": len(wagers),
                        "large_wagers": len(large),
                        "avg_wager_size": avg,
                    },
                    metadata={
                        "source": _SOURCE,
                        "correlation_id": f"agent-pattern-{agent_id}",
                        "tags": ("betting", "agent-pattern", "risk"),
                    },
                )
            )
        return alerts

    def _customer_patterns(self, now: float) -> list[BettingNotification]:
        cfg = self._config
        recent = self._recent(now, cfg.pattern_window_secs)
        by_customer: dict[str, list[WagerRecord]] = collections.defaultdict(list)
        for record in recent:
            by_customer[record.customer_id].append(record)

        alerts: list[BettingNotification] = []
        for customer_id, wagers in by_customer.items():
            if len(wagers) <= cfg.customer_pattern_min_wagers:
                continue
            wagers.sort(key=lambda w: w.placed_at)
            gaps = [b.placed_at - a.placed_at for a, b in zip(wagers, wagers[1:])]
            rapid = sum(1 for g in gaps if g < cfg.rapid_bet_gap_secs)
            if rapid < cfg.min_rapid_bets:
                continue
            first = wagers[0]
            alerts.append(
                BettingNotification(
                    id=new_notification_id("customer-pattern"),
                    timestamp=now,
                    priority=Priority.HIGH,
                    title=f"🚨 Suspicious Customer Activity: {customer_id}",
                    message=(
                        f"Customer {customer_id} showing automated betting patterns "
                        f"with {rapid} rapid successive bets."
                    ),
                    wager_id=first.wager_id,
                    agent_id=first.agent_id,
                    customer_id=customer_id,
                    wager_type="multiple",
                    amount=sum(w.amount for w in wagers),
                    potential_payout=sum(w.to_win for w in wagers),
                    ticket_writer=first.ticket_writer,
                    anomaly_type=AnomalyType.UNUSUAL_PATTERN,
                    risk_level=RiskLevel.HIGH,
                    data={
                        "rapid_bets": rapid,
                        "avg_time_gap_secs": sum(gaps) / len(gaps),
                    },
                    metadata={
                        "source": _SOURCE,
                        "correlation_id": f"customer-pattern-{customer_id}",
                        "tags": ("betting", "customer-pattern", "suspicious", "automation"),
                    },
                )
            )
        return alerts

    def _structuring(self, now: float) -> list[FinancialNotification]:
        cfg = self._config
        groups: dict[float, list[WagerRecord]] = collections.defaultdict(list)
        for record in self._recent(now, cfg.structuring_window_secs):
            if record.amount >= cfg.structuring_min_amount:
                groups[record.amount].append(record)

        alerts: list[FinancialNotification] = []
        for amount, wagers in groups.items():
            if len(wagers) < cfg.structuring_min_count:
                continue
            alerts.append(
                FinancialNotification(
                    id=new_notification_id("structuring"),
                    timestamp=now,
                    priority=Priority.CRITICAL,
                    title="🚨 Potential Structuring: Repeated Identical Transactions",
                    message=(
                        f"Detected {len(wagers)} transactions of exactly {_money(amount)} "
                        "in the last 24 hours."
                    ),
                    transaction_type="wager",
                    amount=amount * len(wagers),
                    account_id="multiple",
                    threshold=cfg.structuring_min_amount,
                    alert_type="cash_flow_alert",
                    data={
                        "transaction_count": len(wagers),
                        "unique_customers": len({w.customer_id for w in wagers}),
                        "unique_agents": len({w.agent_id for w in wagers}),
                        "wager_ids": [w.wager_id for w in wagers],
                    },
                    metadata={
                        "source": _SOURCE,
                        "correlation_id": f"structuring-{amount:g}",
                        "tags": ("betting", "structuring", "critical"),
                    },
                )
            )
        return alerts

    # ── Maintenance / introspection ─────────────────────────────

    def cleanup(self, older_than_secs: float) -> int:
        """Drop wagers and inactive accounts older than the cutoff.

        Returns the number of wagers removed.
        """
        cutoff = self._clock() - older_than_secs
        before = len(self._history)
        kept = [r for r in self._history if r.placed_at > cutoff]
        self._history.clear()
        self._history.extend(kept)
        self._seen_ids = {r.wager_id for r in kept}
        for table in (self._agents, self._customers):
            for key in [k for k, s in table.items() if s.last_activity < cutoff]:
                del table[key]
        oldest_bucket = int(cutoff // _HOUR)
        for bucket in [b for b in self._hourly_volume if b < oldest_bucket]:
            del self._hourly_volume[bucket]
        removed = before - len(kept)
        logger.debug("transaction_history_cleaned", removed=removed, remaining=len(kept))
        return removed

    def history(self) -> list[WagerRecord]:
        return list(self._history)

    def agent_stats(self) -> dict[str, AccountStats]:
        return {k: replace(v) for k, v in self._agents.items()}

    def customer_stats(self) -> dict[str, AccountStats]:
        return {k: replace(v) for k, v in self._customers.items()}

    def stats(self) -> dict[str, float | int]:
        total = sum(r.amount for r in self._history)
        count = len(self._history)
        return {
            "total_wagers": count,
            "unique_agents": len({r.agent_id for r in self._history}),
            "unique_customers": len({r.customer_id for r in self._history}),
            "total_volume": total,
            "avg_wager_size": total / count if count else 0.0,
            "agent_count": len(self._agents),
            "customer_count": len(self._customers),
            "last_analysis": self._last_analysis,
        }
