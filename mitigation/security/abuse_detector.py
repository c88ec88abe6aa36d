import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import numpy as np

from mitigation.config import Settings
from mitigation.core.clock import StoreClock, to_utc
from mitigation.core.database import Database
from mitigation.core.errors import StorageUnavailable
from mitigation.core.logger import logger
from mitigation.models.ip_list import IPListType
from mitigation.models.security_event import EventType
from mitigation.security.ddos_detector import DDoSDetector
from mitigation.security.ip_manager import IPListManager, IPState
from mitigation.security.ip_utils import normalize_ip
from mitigation.services.alerting import AlertDispatcher, AlertLevel
from mitigation.services.event_recorder import EventRecorder
from mitigation.services.metrics import MetricRecorder, record_metric

FINDING_WEIGHTS = {
    "rapid_requests": 0.3,
    "high_error_rate": 0.3,
    "excessive_requests": 0.5,
    "endpoint_enumeration": 0.3,
    "traffic_anomaly": 0.4,
    "unexpected_transitions": 0.3,
    "user_agent_rotation": 0.2,
}


class Severity(enum.Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResponseAction(enum.Enum):
    LOG_ONLY = "log_only"
    ALERT = "alert"
    TEMPORARY_BLOCK = "temporary_block"
    ESCALATE_TO_DDOS = "escalate_to_ddos"


@dataclass(frozen=True)
class AbuseThresholds:
    rapid_requests: int = 10
    rapid_window_seconds: int = 10
    error_rate_percent: float = 50.0
    error_rate_min_requests: int = 10
    excessive_requests: int = 1000
    pattern_window_seconds: int = 3600
    endpoint_diversity: int = 20
    endpoint_diversity_window_seconds: int = 300
    user_agent_diversity: int = 10
    baseline_days: int = 7
    baseline_min_active_hours: int = 3
    zscore: float = 3.0
    baseline_multiplier: float = 3.0
    transition_min_count: int = 5
    unexpected_transition_ratio: float = 0.5
    medium_score: float = 0.4
    high_score: float = 0.6
    critical_score: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> "AbuseThresholds":
        return cls(
            rapid_requests=settings.abuse_rapid_request_threshold,
            rapid_window_seconds=settings.abuse_rapid_request_window_seconds,
            error_rate_percent=settings.abuse_error_rate_threshold,
            error_rate_min_requests=settings.abuse_error_rate_min_requests,
            excessive_requests=settings.abuse_excessive_requests_threshold,
            pattern_window_seconds=settings.abuse_pattern_window_seconds,
            endpoint_diversity=settings.abuse_endpoint_diversity_threshold,
            endpoint_diversity_window_seconds=settings.abuse_endpoint_diversity_window_seconds,
            user_agent_diversity=settings.abuse_user_agent_diversity_threshold,
            baseline_days=settings.abuse_baseline_days,
            baseline_min_active_hours=settings.abuse_baseline_min_active_hours,
            zscore=settings.abuse_zscore_threshold,
            baseline_multiplier=settings.abuse_baseline_multiplier,
            transition_min_count=settings.abuse_transition_min_count,
            unexpected_transition_ratio=settings.abuse_unexpected_transition_ratio,
            medium_score=settings.abuse_medium_threshold,
            high_score=settings.abuse_high_threshold,
            critical_score=settings.abuse_critical_threshold
        )


@dataclass
class ActivityProfile:
    ip_address: str
    recent_requests: int = 0
    window_requests: int = 0
    window_errors: int = 0
    recent_endpoints: int = 0
    user_agents: int = 0
    endpoint_sequence: list[str] = field(default_factory=list)
    hourly_baseline: list[int] = field(default_factory=list)
    current_hour_requests: int = 0


@dataclass
class AnomalyResult:
    flagged: bool
    current: int
    mean: float = 0.0
    std: float = 0.0
    zscore: Optional[float] = None


@dataclass
class AbuseReport:
    ip_address: str
    patterns: list[str] = field(default_factory=list)
    anomaly: Optional[AnomalyResult] = None
    behaviors: list[str] = field(default_factory=list)
    score: float = 0.0
    severity: Severity = Severity.NONE
    action: Optional[ResponseAction] = None
    skipped: Optional[str] = None

    @property
    def findings(self) -> list[str]:
        extra = ["traffic_anomaly"] if self.anomaly is not None and self.anomaly.flagged else []
        return self.patterns + extra + self.behaviors


def pattern_analysis(profile: ActivityProfile, thresholds: AbuseThresholds) -> list[str]:
    patterns = []
    if profile.recent_requests >= thresholds.rapid_requests:
        patterns.append("rapid_requests")

    if profile.window_requests >= thresholds.error_rate_min_requests:
        error_rate = profile.window_errors * 100.0 / profile.window_requests
        if error_rate >= thresholds.error_rate_percent:
            patterns.append("high_error_rate")

    if profile.window_requests >= thresholds.excessive_requests:
        patterns.append("excessive_requests")

    if profile.recent_endpoints > thresholds.endpoint_diversity:
        patterns.append("endpoint_enumeration")
    return patterns


def anomaly_detection(profile: ActivityProfile, thresholds: AbuseThresholds) -> AnomalyResult:
    """Compares the current hour against the source's own active hours."""
    current = profile.current_hour_requests
    baseline = np.asarray(profile.hourly_baseline, dtype=float)
    active = baseline[baseline > 0]

    if active.size < thresholds.baseline_min_active_hours:
        return AnomalyResult(flagged=False, current=current)

    mean = float(np.mean(active))
    std = float(np.std(active))

    if std == 0.0:
        return AnomalyResult(
            flagged=current >= mean * thresholds.baseline_multiplier,
            current=current,
            mean=mean,
            std=std
        )

    zscore = (current - mean) / std
    return AnomalyResult(flagged=zscore >= thresholds.zscore, current=current, mean=mean, std=std, zscore=zscore)


def behavioral_analysis(
    profile: ActivityProfile,
    access_graph: dict[str, list[str]],
    thresholds: AbuseThresholds
) -> list[str]:
    behaviors = []

    if access_graph:
        transitions = [
            (src, dst) for src, dst in zip(profile.endpoint_sequence, profile.endpoint_sequence[1:])
            if src != dst
        ]
        if len(transitions) >= thresholds.transition_min_count:
            unexpected = sum(1 for src, dst in transitions if dst not in access_graph.get(src, ()))
            if unexpected / len(transitions) >= thresholds.unexpected_transition_ratio:
                behaviors.append("unexpected_transitions")

    if profile.user_agents > thresholds.user_agent_diversity:
        behaviors.append("user_agent_rotation")
    return behaviors


def score_findings(findings: list[str]) -> float:
    return round(min(1.0, sum(FINDING_WEIGHTS.get(finding, 0.0) for finding in findings)), 4)


def severity_for(score: float, thresholds: AbuseThresholds) -> Severity:
    if score >= thresholds.critical_score:
        return Severity.CRITICAL
    elif score >= thresholds.high_score:
        return Severity.HIGH
    elif score >= thresholds.medium_score:
        return Severity.MEDIUM
    elif score > 0:
        return Severity.LOW
    return Severity.NONE


def hourly_buckets(timestamps: list[datetime], now: datetime, hours: int) -> list[int]:
    """Counts per full hour before the current one; index 0 is the most recent hour."""
    if not timestamps:
        return [0] * hours
    ages = np.array([(now - ts).total_seconds() for ts in timestamps], dtype=float)
    buckets = (ages // 3600).astype(int) - 1
    buckets = buckets[(buckets >= 0) & (buckets < hours)]
    return np.bincount(buckets, minlength=hours).tolist()


class AbuseDetector:
    component = "abuse_detector"

    def __init__(
        self,
        settings: Settings,
        database: Database,
        ip_manager: IPListManager,
        ddos_detector: DDoSDetector,
        recorder: Optional[EventRecorder] = None,
        clock=None,
        alerts: Optional[AlertDispatcher] = None,
        metrics: Optional[MetricRecorder] = None
    ):
        self.database = database
        self.ip_manager = ip_manager
        self.ddos_detector = ddos_detector
        self.clock = clock or StoreClock()
        self.recorder = recorder or EventRecorder(database, self.clock)
        self.alerts = alerts or AlertDispatcher()
        self.metrics = metrics
        self.thresholds = AbuseThresholds.from_settings(settings)
        self.access_graph = settings.access_graph
        self.block_durations = list(settings.abuse_block_durations_minutes)
        self.response_actions = {
            Severity(severity): ResponseAction(action)
            for severity, action in settings.abuse_response_actions.items()
        }

    def profile(self, ip_address: str, timeout: Optional[float] = None) -> ActivityProfile:
        t = self.thresholds
        with self.database.session(timeout) as db:
            now = self.clock.now(db)
            window_start = now - timedelta(seconds=t.pattern_window_seconds)
            events = self.recorder.events_for_ip(db, ip_address, EventType.REQUEST, window_start, now)

            baseline_hours = t.baseline_days * 24
            baseline_start = now - timedelta(hours=baseline_hours + 1)
            timestamps = self.recorder.timestamps_for_ip(db, ip_address, EventType.REQUEST, baseline_start, now)
            current_hour = self.recorder.count(db, ip_address, EventType.REQUEST, now - timedelta(hours=1), now)

        rapid_since = now - timedelta(seconds=t.rapid_window_seconds)
        diversity_since = now - timedelta(seconds=t.endpoint_diversity_window_seconds)
        occurred = [to_utc(e.occurred_at) for e in events]

        return ActivityProfile(
            ip_address=ip_address,
            recent_requests=sum(1 for ts in occurred if ts >= rapid_since),
            window_requests=len(events),
            window_errors=sum(1 for e in events if e.status_code is not None and e.status_code >= 400),
            recent_endpoints=len({e.endpoint for e, ts in zip(events, occurred) if ts >= diversity_since and e.endpoint}),
            user_agents=len({e.user_agent for e in events if e.user_agent}),
            endpoint_sequence=[e.endpoint for e in events if e.endpoint],
            hourly_baseline=hourly_buckets(timestamps, now, baseline_hours),
            current_hour_requests=current_hour
        )

    def check_ip(self, ip_address: str, timeout: Optional[float] = None) -> Optional[AbuseReport]:
        ip_address = normalize_ip(ip_address)
        try:
            status = self.ip_manager.lookup(ip_address, timeout=timeout)
            if status.status != IPState.NONE:
                return AbuseReport(ip_address, skipped=status.status.value)
            profile = self.profile(ip_address, timeout)
        except StorageUnavailable as e:
            logger.warning("abuse_scan_store_unavailable", ip_address=ip_address, error=str(e))
            record_metric(self.metrics, self.component, "degraded_mode", 1)
            return None

        report = AbuseReport(
            ip_address,
            patterns=pattern_analysis(profile, self.thresholds),
            anomaly=anomaly_detection(profile, self.thresholds),
            behaviors=behavioral_analysis(profile, self.access_graph, self.thresholds)
        )
        report.score = score_findings(report.findings)
        report.severity = severity_for(report.score, self.thresholds)

        if report.severity != Severity.NONE:
            report.action = self.automatic_response(ip_address, report.severity, report.findings)
        return report

    def analyze_all(self, timeout: Optional[float] = None) -> list[AbuseReport]:
        try:
            with self.database.session(timeout) as db:
                now = self.clock.now(db)
                since = now - timedelta(seconds=self.thresholds.pattern_window_seconds)
                ips = self.recorder.distinct_ips(db, EventType.REQUEST, since, now)
        except StorageUnavailable as e:
            logger.warning("abuse_scan_store_unavailable", error=str(e))
            record_metric(self.metrics, self.component, "degraded_mode", 1)
            return []

        reports = []
        for ip_address in ips:
            report = self.check_ip(ip_address, timeout)
            if report is not None and report.severity != Severity.NONE:
                reports.append(report)

        logger.info("abuse_scan_completed", sources=len(ips), flagged=len(reports))
        record_metric(self.metrics, self.component, "flagged_sources", len(reports))
        return reports

    def automatic_response(
        self,
        ip_address: str,
        severity: Severity,
        findings: Optional[list[str]] = None
    ) -> ResponseAction:
        ip_address = normalize_ip(ip_address)
        findings = findings or []
        action = self.response_actions.get(severity, ResponseAction.LOG_ONLY)
        summary = ", ".join(findings) or "none"

        if action == ResponseAction.LOG_ONLY:
            logger.info("abuse_observed", ip_address=ip_address, severity=severity.value, findings=findings)
            return action

        if action == ResponseAction.ALERT:
            self.alerts.emit(
                self.component,
                AlertLevel.WARNING,
                f"abuse:{ip_address}:{severity.value}",
                f"Abusive behaviour from {ip_address} ({severity.value}): {summary}"
            )
            return action

        try:
            if action == ResponseAction.TEMPORARY_BLOCK:
                minutes = self._block_duration(ip_address)
                with self.database.session() as db:
                    self.ip_manager.add(
                        ip_address,
                        IPListType.TEMPORARY,
                        f"abuse:{summary}",
                        ttl_seconds=minutes * 60,
                        created_by=self.component,
                        db=db
                    )
                    self.recorder.record(ip_address, event_type=EventType.ABUSE, db=db)
                logger.warning("abuse_ip_blocked", ip_address=ip_address, duration_minutes=minutes, findings=findings)
                self.alerts.emit(
                    self.component,
                    AlertLevel.WARNING,
                    f"abuse:{ip_address}:blocked",
                    f"Blocked {ip_address} for {minutes} minutes: {summary}"
                )
                record_metric(self.metrics, self.component, "abuse_auto_blocks", 1, {"severity": severity.value})
            else:
                self.recorder.record(ip_address, event_type=EventType.ABUSE)
                self.ddos_detector.escalate(ip_address, summary)
        except StorageUnavailable as e:
            logger.warning("abuse_response_failed", ip_address=ip_address, action=action.value, error=str(e))
            record_metric(self.metrics, self.component, "degraded_mode", 1)
        return action

    def _block_duration(self, ip_address: str) -> int:
        """Repeat offenders within 24 hours step through the configured durations."""
        with self.database.session() as db:
            now = self.clock.now(db)
            violations = self.recorder.count(db, ip_address, EventType.ABUSE, now - timedelta(hours=24), now)
        return self.block_durations[min(violations, len(self.block_durations) - 1)]
