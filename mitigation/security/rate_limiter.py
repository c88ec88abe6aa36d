import enum
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from mitigation.config import FailurePolicy, Settings
from mitigation.core.clock import StoreClock
from mitigation.core.database import Database
from mitigation.core.errors import StorageUnavailable, ValidationError
from mitigation.core.logger import logger
from mitigation.models.rate_limit_reset import RateLimitReset
from mitigation.models.security_event import EventType
from mitigation.security.geo_filtering import GeoFilter
from mitigation.security.ip_manager import IPListManager, IPState
from mitigation.security.ip_utils import normalize_ip, validate_api_key, validate_endpoint
from mitigation.services.alerting import AlertDispatcher, AlertLevel
from mitigation.services.event_recorder import EventRecorder
from mitigation.services.metrics import MetricRecorder, record_metric


class PolicyScope(enum.Enum):
    IP = "ip"
    ENDPOINT = "endpoint"
    API_KEY = "api_key"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    scope: PolicyScope
    window_seconds: int
    max_requests: int
    burst_allowance: int = 0

    def __post_init__(self):
        if not self.name:
            raise ValidationError("policy name is required")
        if not isinstance(self.scope, PolicyScope):
            raise ValidationError(f"invalid policy scope: {self.scope!r}")
        if self.window_seconds <= 0:
            raise ValidationError("window_seconds must be positive")
        if self.max_requests <= 0:
            raise ValidationError("max_requests must be positive")
        if self.burst_allowance < 0:
            raise ValidationError("burst_allowance must not be negative")

    @property
    def effective_limit(self) -> int:
        return self.max_requests + self.burst_allowance


@dataclass
class MitigationDecision:
    allowed: bool
    matched_scope: Optional[str] = None
    triggering_count: int = 0
    retry_after: Optional[int] = None
    reason: str = "allowed"
    degraded: bool = False


def default_policies(settings: Settings) -> list[RateLimitPolicy]:
    burst = settings.rate_limit_burst_size
    window = settings.rate_limit_window_seconds
    return [
        RateLimitPolicy("ip_per_minute", PolicyScope.IP, window, settings.rate_limit_per_ip_per_minute, burst),
        RateLimitPolicy("ip_per_hour", PolicyScope.IP, 3600, settings.rate_limit_per_ip_per_hour, burst),
        RateLimitPolicy("ip_per_day", PolicyScope.IP, 86400, settings.rate_limit_per_ip_per_day, burst),
        RateLimitPolicy("endpoint_per_minute", PolicyScope.ENDPOINT, window, settings.rate_limit_per_endpoint_per_minute, burst),
        RateLimitPolicy("api_key_per_minute", PolicyScope.API_KEY, window, settings.rate_limit_per_api_key_per_minute, burst),
    ]


def retry_after_seconds(oldest_counted: Optional[datetime], window_seconds: int, now: datetime) -> int:
    """Seconds until ``oldest_counted`` has left the closed window [now - window, now]."""
    if oldest_counted is None:
        return window_seconds
    remaining = (oldest_counted + timedelta(seconds=window_seconds) - now).total_seconds()
    return max(1, math.floor(remaining) + 1)


class RateLimitEvaluator:
    component = "rate_limiter"
    event_type = EventType.REQUEST

    def __init__(
        self,
        settings: Settings,
        database: Database,
        ip_manager: IPListManager,
        recorder: Optional[EventRecorder] = None,
        clock=None,
        geo_filter: Optional[GeoFilter] = None,
        alerts: Optional[AlertDispatcher] = None,
        metrics: Optional[MetricRecorder] = None,
        policies: Optional[Sequence[RateLimitPolicy]] = None
    ):
        self.database = database
        self.ip_manager = ip_manager
        self.clock = clock or StoreClock()
        self.recorder = recorder or EventRecorder(database, self.clock)
        self.geo_filter = geo_filter
        self.alerts = alerts
        self.metrics = metrics
        self.failure_policy = settings.failure_policy
        self.policies = list(policies) if policies is not None else self._default_policies(settings)

    def _default_policies(self, settings: Settings) -> list[RateLimitPolicy]:
        return default_policies(settings)

    def check(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        policies: Optional[Iterable[RateLimitPolicy]] = None,
        timeout: Optional[float] = None
    ) -> MitigationDecision:
        ip_address = normalize_ip(ip_address)
        endpoint = validate_endpoint(endpoint)
        api_key = validate_api_key(api_key)
        policies = list(policies) if policies is not None else self.policies
        if not policies:
            raise ValidationError("at least one rate limit policy is required")

        try:
            with self.database.session(timeout) as db:
                now = self.clock.now(db)
                decision = self._evaluate(db, now, ip_address, endpoint, api_key, policies)
        except StorageUnavailable as e:
            return self._degraded(ip_address, e)

        if not decision.allowed and decision.reason == "rate_limited":
            self._notify_denied(ip_address, endpoint, decision)
        return decision

    def _evaluate(
        self,
        db: Session,
        now: datetime,
        ip_address: str,
        endpoint: Optional[str],
        api_key: Optional[str],
        policies: Sequence[RateLimitPolicy]
    ) -> MitigationDecision:
        status = self.ip_manager.lookup(ip_address, db=db, now=now)
        if status.status == IPState.BLACKLISTED:
            return MitigationDecision(allowed=False, matched_scope="ip_list", reason="blacklisted")
        if status.status == IPState.TEMPORARILY_BLOCKED:
            return MitigationDecision(
                allowed=False,
                matched_scope="ip_list",
                retry_after=status.remaining_ttl,
                reason="temporarily_blocked"
            )
        if status.status == IPState.WHITELISTED:
            self._record(db, now, ip_address, endpoint, api_key)
            return MitigationDecision(allowed=True, matched_scope="ip_list", reason="whitelisted")

        if self.geo_filter is not None:
            blocked, country = self.geo_filter.check(ip_address)
            if blocked:
                return MitigationDecision(allowed=False, matched_scope="geo", reason=f"geo_blocked:{country}")

        denial: Optional[MitigationDecision] = None
        highest = 0
        for policy in policies:
            if not self._applies(policy, endpoint, api_key):
                continue

            count, filters = self._count(db, now, policy, ip_address, endpoint, api_key)
            highest = max(highest, count)

            if count >= policy.effective_limit:
                oldest = self.recorder.nth_oldest_timestamp(db, count - policy.effective_limit, **filters)
                retry_after = retry_after_seconds(oldest, policy.window_seconds, now)
                logger.warning(
                    "rate_limit_exceeded",
                    ip_address=ip_address,
                    endpoint=endpoint,
                    policy=policy.name,
                    count=count,
                    limit=policy.effective_limit
                )
                if denial is None or retry_after > denial.retry_after:
                    denial = MitigationDecision(
                        allowed=False,
                        matched_scope=policy.name,
                        triggering_count=count,
                        retry_after=retry_after,
                        reason="rate_limited"
                    )
            elif count >= policy.max_requests:
                logger.info(
                    "rate_limit_burst_used",
                    ip_address=ip_address,
                    policy=policy.name,
                    count=count,
                    max_requests=policy.max_requests
                )

        if denial is not None:
            self.recorder.record(
                ip_address,
                endpoint=endpoint,
                api_key=api_key,
                event_type=EventType.RATE_LIMITED,
                occurred_at=now,
                db=db
            )
            return denial

        self._record(db, now, ip_address, endpoint, api_key)
        return MitigationDecision(allowed=True, triggering_count=highest)

    @staticmethod
    def _applies(policy: RateLimitPolicy, endpoint: Optional[str], api_key: Optional[str]) -> bool:
        if policy.scope == PolicyScope.ENDPOINT:
            return endpoint is not None
        if policy.scope == PolicyScope.API_KEY:
            return api_key is not None
        return True

    def _count(
        self,
        db: Session,
        now: datetime,
        policy: RateLimitPolicy,
        ip_address: str,
        endpoint: Optional[str],
        api_key: Optional[str]
    ) -> tuple[int, dict]:
        scoped_endpoint = endpoint if policy.scope == PolicyScope.ENDPOINT else None
        filters = {
            "ip_address": ip_address,
            "event_type": self.event_type,
            "since": now - timedelta(seconds=policy.window_seconds),
            "until": now,
            "endpoint": scoped_endpoint,
            "api_key": api_key if policy.scope == PolicyScope.API_KEY else None,
            "after_id": self._reset_marker(db, ip_address, scoped_endpoint),
        }
        return self.recorder.count(db, **filters), filters

    @staticmethod
    def _reset_marker(db: Session, ip_address: str, endpoint: Optional[str]) -> int:
        conds = [RateLimitReset.ip_address == ip_address]
        if endpoint is None:
            conds.append(RateLimitReset.endpoint.is_(None))
        else:
            conds.append(or_(RateLimitReset.endpoint.is_(None), RateLimitReset.endpoint == endpoint))
        return db.execute(select(func.max(RateLimitReset.last_event_id)).where(*conds)).scalar() or 0

    def _record(self, db: Session, now: datetime, ip_address: str, endpoint: Optional[str], api_key: Optional[str]) -> None:
        self.recorder.record(
            ip_address,
            endpoint=endpoint,
            api_key=api_key,
            event_type=self.event_type,
            occurred_at=now,
            db=db
        )

    def _degraded(self, ip_address: str, error: StorageUnavailable) -> MitigationDecision:
        allowed = self.failure_policy == FailurePolicy.FAIL_OPEN
        logger.warning(
            "rate_limit_store_unavailable",
            ip_address=ip_address,
            failure_policy=self.failure_policy.value,
            error=str(error)
        )
        record_metric(self.metrics, self.component, "degraded_mode", 1, {"failure_policy": self.failure_policy.value})
        return MitigationDecision(allowed=allowed, reason="store_unavailable", degraded=True)

    def _notify_denied(self, ip_address: str, endpoint: Optional[str], decision: MitigationDecision) -> None:
        record_metric(self.metrics, self.component, "requests_denied", 1, {"scope": decision.matched_scope})
        if self.alerts is None:
            return
        self.alerts.emit(
            self.component,
            AlertLevel.WARNING,
            f"rate_limit:{ip_address}:{decision.matched_scope}",
            f"Rate limit exceeded for {ip_address} on {endpoint or '*'} "
            f"({decision.triggering_count} requests, policy {decision.matched_scope})"
        )

    def reset(self, ip_address: str, endpoint: Optional[str] = None, timeout: Optional[float] = None) -> None:
        ip_address = normalize_ip(ip_address)
        endpoint = validate_endpoint(endpoint)

        with self.database.session(timeout) as db:
            now = self.clock.now(db)
            db.add(RateLimitReset(
                ip_address=ip_address,
                endpoint=endpoint,
                last_event_id=self.recorder.latest_event_id(db),
                reset_at=now
            ))

        logger.info("rate_limit_reset", ip_address=ip_address, endpoint=endpoint)

    def stats(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> dict[str, int]:
        ip_address = normalize_ip(ip_address)
        endpoint = validate_endpoint(endpoint)
        api_key = validate_api_key(api_key)

        with self.database.session(timeout) as db:
            now = self.clock.now(db)
            return {
                policy.name: self._count(db, now, policy, ip_address, endpoint, api_key)[0]
                for policy in self.policies
                if self._applies(policy, endpoint, api_key)
            }


class ConnectionRateLimiter(RateLimitEvaluator):
    """Same evaluation over connection events, with a tighter window."""

    component = "connection_limiter"
    event_type = EventType.CONNECTION

    def _default_policies(self, settings: Settings) -> list[RateLimitPolicy]:
        return [
            RateLimitPolicy(
                "connections_per_ip",
                PolicyScope.IP,
                settings.connection_rate_limit_window_seconds,
                settings.connection_rate_limit_max,
                settings.connection_rate_limit_burst
            )
        ]
