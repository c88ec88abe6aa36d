import enum
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Optional, Protocol

import redis
from sqlalchemy import select

from mitigation.config import Settings
from mitigation.core.clock import StoreClock
from mitigation.core.database import Database
from mitigation.core.errors import StorageUnavailable
from mitigation.core.logger import logger
from mitigation.models.detector_state import DetectorStateRecord
from mitigation.models.ip_list import IPListType
from mitigation.models.security_event import EventType
from mitigation.security.ip_manager import IPListManager, IPState
from mitigation.security.ip_utils import normalize_ip
from mitigation.services.alerting import AlertDispatcher, AlertLevel
from mitigation.services.event_recorder import EventRecorder
from mitigation.services.metrics import MetricRecorder, record_metric

GLOBAL_SCOPE = "global"
CONCURRENT_SOURCES_WINDOW_SECONDS = 10


class DDoSPhase(enum.Enum):
    NORMAL = "normal"
    SUSPECT = "suspect"
    ATTACK = "attack"
    MITIGATING = "mitigating"


@dataclass(frozen=True)
class DDoSThresholds:
    soft: int
    hard: int
    consecutive: int
    cooldown_seconds: int
    offender_min_requests: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "DDoSThresholds":
        return cls(
            soft=settings.ddos_soft_threshold,
            hard=settings.ddos_hard_threshold,
            consecutive=settings.ddos_consecutive_windows,
            cooldown_seconds=settings.ddos_cooldown_seconds,
            offender_min_requests=settings.ddos_offender_min_requests
        )


@dataclass(frozen=True)
class TrafficSnapshot:
    scope: str
    total: int
    per_ip: dict[str, int] = field(default_factory=dict)
    exempt: frozenset = frozenset()


@dataclass
class DetectorState:
    phase: DDoSPhase = DDoSPhase.NORMAL
    streak: int = 0
    episode: Optional[str] = None
    calm_since: Optional[datetime] = None
    blocked_ips: list[str] = field(default_factory=list)

    def to_json(self) -> str:
        return json.dumps({
            "phase": self.phase.value,
            "streak": self.streak,
            "episode": self.episode,
            "calm_since": self.calm_since.isoformat() if self.calm_since else None,
            "blocked_ips": self.blocked_ips
        })

    @classmethod
    def from_json(cls, raw: str) -> "DetectorState":
        data = json.loads(raw)
        return cls(
            phase=DDoSPhase(data["phase"]),
            streak=data.get("streak", 0),
            episode=data.get("episode"),
            calm_since=datetime.fromisoformat(data["calm_since"]) if data.get("calm_since") else None,
            blocked_ips=list(data.get("blocked_ips", []))
        )


@dataclass
class Transition:
    state: DetectorState
    entered_attack: bool = False
    resolved: bool = False
    offenders: list[str] = field(default_factory=list)


def find_offenders(snapshot: TrafficSnapshot, thresholds: DDoSThresholds, already_blocked: list[str]) -> list[str]:
    return sorted(
        ip for ip, count in snapshot.per_ip.items()
        if count >= thresholds.offender_min_requests
        and ip not in snapshot.exempt
        and ip not in already_blocked
    )


def advance(state: DetectorState, snapshot: TrafficSnapshot, thresholds: DDoSThresholds, now: datetime) -> Transition:
    """Pure transition of the detector state machine for one evaluation."""
    state = replace(state, blocked_ips=list(state.blocked_ips))
    count = snapshot.total
    transition = Transition(state=state)

    if state.phase == DDoSPhase.NORMAL:
        if count < thresholds.soft:
            return transition
        state.phase = DDoSPhase.SUSPECT
        state.streak = 0

    if state.phase == DDoSPhase.SUSPECT:
        if count < thresholds.soft:
            state.phase = DDoSPhase.NORMAL
            state.streak = 0
            return transition
        if count < thresholds.hard:
            state.streak = 0
            return transition
        state.streak += 1
        if state.streak < thresholds.consecutive:
            return transition
        state.phase = DDoSPhase.ATTACK
        state.streak = 0
        state.episode = now.isoformat()
        state.blocked_ips = []
        transition.entered_attack = True
        transition.offenders = find_offenders(snapshot, thresholds, state.blocked_ips)
        return transition

    if state.phase == DDoSPhase.ATTACK:
        if count < thresholds.soft:
            state.phase = DDoSPhase.MITIGATING
            state.calm_since = now
            return transition
        transition.offenders = find_offenders(snapshot, thresholds, state.blocked_ips)
        return transition

    if state.phase == DDoSPhase.MITIGATING:
        if count >= thresholds.soft:
            # retrigger stays within the same episode
            state.phase = DDoSPhase.ATTACK
            state.calm_since = None
            transition.offenders = find_offenders(snapshot, thresholds, state.blocked_ips)
            return transition
        if now - state.calm_since >= timedelta(seconds=thresholds.cooldown_seconds):
            transition.resolved = True
            transition.state = DetectorState()
            return transition

    return transition


class DetectorStateStore(Protocol):
    def load(self, scope: str) -> DetectorState:
        ...

    def save(self, scope: str, state: DetectorState) -> None:
        ...


class DatabaseStateStore:
    """Keeps detector state in the shared SQL store so separate scan processes continue one episode."""

    def __init__(self, database: Database, timeout: Optional[float] = None):
        self.database = database
        self.timeout = timeout

    def load(self, scope: str) -> DetectorState:
        with self.database.session(self.timeout) as db:
            raw = db.execute(
                select(DetectorStateRecord.state).where(DetectorStateRecord.scope == scope)
            ).scalar()
        return DetectorState.from_json(raw) if raw else DetectorState()

    def save(self, scope: str, state: DetectorState) -> None:
        with self.database.session(self.timeout) as db:
            db.merge(DetectorStateRecord(scope=scope, state=state.to_json()))


class RedisStateStore:
    def __init__(self, redis_client: redis.Redis, prefix: str = "ddos:state"):
        self.redis = redis_client
        self.prefix = prefix

    def load(self, scope: str) -> DetectorState:
        try:
            raw = self.redis.get(f"{self.prefix}:{scope}")
        except redis.RedisError as e:
            raise StorageUnavailable(str(e)) from e
        return DetectorState.from_json(raw) if raw else DetectorState()

    def save(self, scope: str, state: DetectorState) -> None:
        try:
            self.redis.set(f"{self.prefix}:{scope}", state.to_json())
        except redis.RedisError as e:
            raise StorageUnavailable(str(e)) from e


class DDoSDetector:
    component = "ddos_detector"

    def __init__(
        self,
        settings: Settings,
        database: Database,
        ip_manager: IPListManager,
        recorder: Optional[EventRecorder] = None,
        clock=None,
        alerts: Optional[AlertDispatcher] = None,
        metrics: Optional[MetricRecorder] = None,
        state_store: Optional[DetectorStateStore] = None
    ):
        self.database = database
        self.ip_manager = ip_manager
        self.clock = clock or StoreClock()
        self.recorder = recorder or EventRecorder(database, self.clock)
        self.alerts = alerts or AlertDispatcher()
        self.metrics = metrics
        self.state_store = state_store or DatabaseStateStore(database)
        self.thresholds = DDoSThresholds.from_settings(settings)
        self.window_seconds = settings.ddos_window_seconds
        self.block_seconds = settings.ddos_block_duration_minutes * 60
        self.concurrent_sources_threshold = settings.ddos_concurrent_sources_threshold
        self.scopes = [GLOBAL_SCOPE] + list(settings.ddos_monitored_endpoints)

    def snapshot(self, scope: str = GLOBAL_SCOPE, timeout: Optional[float] = None) -> tuple[TrafficSnapshot, datetime]:
        endpoint = None if scope == GLOBAL_SCOPE else scope
        with self.database.session(timeout) as db:
            now = self.clock.now(db)
            per_ip = self.recorder.counts_by_ip(
                db,
                EventType.REQUEST,
                now - timedelta(seconds=self.window_seconds),
                now,
                endpoint=endpoint
            )
            exempt = set()
            for ip, count in per_ip.items():
                if count < self.thresholds.offender_min_requests:
                    continue
                status = self.ip_manager.lookup(ip, db=db, now=now)
                if status.status != IPState.NONE:
                    exempt.add(ip)

        return TrafficSnapshot(scope, sum(per_ip.values()), per_ip, frozenset(exempt)), now

    def evaluate(self, scope: str = GLOBAL_SCOPE, timeout: Optional[float] = None) -> Optional[Transition]:
        try:
            snapshot, now = self.snapshot(scope, timeout)
            state = self.state_store.load(scope)
        except StorageUnavailable as e:
            logger.warning("ddos_scan_store_unavailable", scope=scope, error=str(e))
            record_metric(self.metrics, self.component, "degraded_mode", 1, {"scope": scope})
            return None

        previous = state.phase
        transition = advance(state, snapshot, self.thresholds, now)
        new_state = transition.state

        blocked_now = 0
        for ip in transition.offenders:
            if self._block(ip, f"ddos:{scope}", snapshot.per_ip.get(ip, 0)):
                new_state.blocked_ips.append(ip)
                blocked_now += 1

        if transition.entered_attack:
            self.alerts.emit(
                self.component,
                AlertLevel.CRITICAL,
                f"ddos:{scope}:{new_state.episode}",
                f"DDoS attack detected on {scope}: {snapshot.total} requests in "
                f"{self.window_seconds}s, {len(new_state.blocked_ips)} sources blocked"
            )
        if transition.resolved:
            self.alerts.emit(
                self.component,
                AlertLevel.INFO,
                f"ddos:{scope}:{state.episode}:resolved",
                f"DDoS episode on {scope} resolved after {self.thresholds.cooldown_seconds}s below threshold"
            )

        try:
            self.state_store.save(scope, new_state)
        except StorageUnavailable as e:
            logger.warning("ddos_state_store_unavailable", scope=scope, error=str(e))

        if new_state.phase != previous:
            logger.warning(
                "ddos_phase_changed",
                scope=scope,
                previous=previous.value,
                phase=new_state.phase.value,
                count=snapshot.total
            )
        record_metric(self.metrics, self.component, "window_requests", snapshot.total, {"scope": scope})
        record_metric(self.metrics, self.component, "ddos_ips_blocked", blocked_now, {"scope": scope})
        return transition

    def _block(self, ip_address: str, reason: str, count: int) -> bool:
        try:
            with self.database.session() as db:
                self.ip_manager.add(
                    ip_address,
                    IPListType.TEMPORARY,
                    reason,
                    ttl_seconds=self.block_seconds,
                    created_by=self.component,
                    db=db
                )
                self.recorder.record(ip_address, event_type=EventType.DDOS, db=db)
        except StorageUnavailable as e:
            logger.warning("ddos_block_failed", ip_address=ip_address, error=str(e))
            return False

        logger.warning("ddos_ip_blocked", ip_address=ip_address, count=count, duration_seconds=self.block_seconds)
        return True

    def check_concurrent_sources(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            with self.database.session(timeout) as db:
                now = self.clock.now(db)
                sources = len(self.recorder.distinct_ips(
                    db,
                    EventType.REQUEST,
                    now - timedelta(seconds=CONCURRENT_SOURCES_WINDOW_SECONDS),
                    now
                ))
        except StorageUnavailable as e:
            logger.warning("ddos_scan_store_unavailable", check="concurrent_sources", error=str(e))
            record_metric(self.metrics, self.component, "degraded_mode", 1, {"scope": "concurrent_sources"})
            return None

        record_metric(self.metrics, self.component, "concurrent_sources", sources)
        if sources >= self.concurrent_sources_threshold:
            logger.warning(
                "ddos_concurrent_sources_exceeded",
                sources=sources,
                threshold=self.concurrent_sources_threshold
            )
        return sources

    def scan(self, timeout: Optional[float] = None) -> dict[str, Optional[Transition]]:
        results = {scope: self.evaluate(scope, timeout) for scope in self.scopes}
        self.check_concurrent_sources(timeout)
        return results

    def escalate(self, ip_address: str, reason: str) -> bool:
        ip_address = normalize_ip(ip_address)
        if not self._block(ip_address, f"ddos:escalated:{reason}", 0):
            return False
        self.alerts.emit(
            self.component,
            AlertLevel.CRITICAL,
            f"ddos:escalated:{ip_address}",
            f"Source {ip_address} escalated to DDoS mitigation: {reason}"
        )
        return True

    def stats(self, hours: int = 24, timeout: Optional[float] = None) -> dict:
        with self.database.session(timeout) as db:
            now = self.clock.now(db)
            since = now - timedelta(hours=hours)
            ddos_events = self.recorder.count(db, None, EventType.DDOS, since, now)
            sources = len(self.recorder.distinct_ips(db, EventType.DDOS, since, now))

        active_blocks = [
            entry for entry in self.ip_manager.list_entries(IPListType.TEMPORARY, timeout=timeout)
            if entry.created_by == self.component
        ]
        return {
            "hours": hours,
            "ddos_events": ddos_events,
            "blocked_sources": sources,
            "active_blocks": len(active_blocks),
            "phases": {scope: self.state_store.load(scope).phase.value for scope in self.scopes}
        }
