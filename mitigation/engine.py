from typing import Optional, Union

from mitigation.config import Settings, load_settings
from mitigation.core.clock import StoreClock
from mitigation.core.database import Database
from mitigation.core.errors import StorageUnavailable
from mitigation.core.logger import configure_logging, logger
from mitigation.core.redis_client import create_redis
from mitigation.models.ip_list import IPListEntry, IPListType
from mitigation.security.abuse_detector import AbuseDetector, AbuseReport
from mitigation.security.ddos_detector import DatabaseStateStore, DDoSDetector, RedisStateStore, Transition
from mitigation.security.geo_filtering import GeoFilter
from mitigation.security.ip_manager import IPListManager, IPStatus
from mitigation.security.rate_limiter import (
    ConnectionRateLimiter,
    MitigationDecision,
    PolicyScope,
    RateLimitEvaluator,
    RateLimitPolicy,
)
from mitigation.services.alerting import AlertDispatcher, AlertEmitter, LoggingAlertEmitter, WebhookAlertEmitter
from mitigation.services.event_recorder import EventRecorder
from mitigation.services.metrics import MetricRecorder, PrometheusMetricRecorder


class MitigationEngine:
    """Wires the components together and exposes the decision API used by gateways and operators."""

    def __init__(
        self,
        settings: Settings,
        database: Optional[Database] = None,
        clock=None,
        redis_client=None,
        emitter: Optional[AlertEmitter] = None,
        metrics: Optional[MetricRecorder] = None,
        geo_filter: Optional[GeoFilter] = None
    ):
        self.settings = settings
        self.database = database or Database(settings)
        self.clock = clock or StoreClock()
        self.redis = redis_client
        self.metrics = metrics or PrometheusMetricRecorder()

        if emitter is None:
            if settings.alert_webhook_url:
                emitter = WebhookAlertEmitter(settings.alert_webhook_url, settings.alert_webhook_timeout_seconds)
            else:
                emitter = LoggingAlertEmitter()
        self.alerts = AlertDispatcher(
            emitter,
            settings.alert_dedup_window_seconds,
            redis_client,
            database=self.database,
            clock=self.clock
        )

        if geo_filter is None and settings.geo_filtering_enabled:
            geo_filter = GeoFilter(settings)

        self.recorder = EventRecorder(self.database, self.clock)
        self.ip_manager = IPListManager(
            self.database,
            self.clock,
            redis_client,
            settings.ip_status_cache_ttl_seconds,
            self.recorder
        )
        component_args = dict(
            recorder=self.recorder,
            clock=self.clock,
            alerts=self.alerts,
            metrics=self.metrics
        )
        self.rate_limiter = RateLimitEvaluator(
            settings, self.database, self.ip_manager, geo_filter=geo_filter, **component_args
        )
        self.connection_limiter = ConnectionRateLimiter(
            settings, self.database, self.ip_manager, geo_filter=geo_filter, **component_args
        )
        self.ddos_detector = DDoSDetector(
            settings,
            self.database,
            self.ip_manager,
            state_store=RedisStateStore(redis_client) if redis_client is not None else DatabaseStateStore(self.database),
            **component_args
        )
        self.abuse_detector = AbuseDetector(
            settings, self.database, self.ip_manager, self.ddos_detector, **component_args
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "MitigationEngine":
        settings = settings or load_settings()
        configure_logging(settings.log_level, settings.log_json)
        engine = cls(settings, redis_client=create_redis(settings))
        logger.info("mitigation_engine_ready", environment=settings.environment)
        return engine

    def check_rate_limit(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        window_seconds: Optional[int] = None,
        max_requests: Optional[int] = None,
        burst_allowance: Optional[int] = None
    ) -> MitigationDecision:
        """Single-policy check when limits are given, otherwise every configured tier applies."""
        if window_seconds is None and max_requests is None and burst_allowance is None:
            return self.rate_limiter.check(ip_address, endpoint, api_key)

        if api_key:
            scope = PolicyScope.API_KEY
        elif endpoint:
            scope = PolicyScope.ENDPOINT
        else:
            scope = PolicyScope.IP

        policy = RateLimitPolicy(
            scope.value,
            scope,
            window_seconds if window_seconds is not None else self.settings.rate_limit_window_seconds,
            max_requests if max_requests is not None else self.settings.rate_limit_per_ip_per_minute,
            burst_allowance if burst_allowance is not None else self.settings.rate_limit_burst_size
        )
        return self.rate_limiter.check(ip_address, endpoint, api_key, [policy])

    def check_connection(self, ip_address: str) -> MitigationDecision:
        return self.connection_limiter.check(ip_address)

    def record_request(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        status_code: Optional[int] = None,
        user_agent: Optional[str] = None
    ) -> bool:
        try:
            self.recorder.record(ip_address, endpoint, api_key, status_code=status_code, user_agent=user_agent)
        except StorageUnavailable as e:
            logger.warning("record_request_failed", ip_address=ip_address, error=str(e))
            return False
        return True

    def add_ip_to_list(
        self,
        ip_address: str,
        list_type: Union[str, IPListType],
        reason: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        created_by: Optional[str] = None
    ) -> IPListEntry:
        return self.ip_manager.add(ip_address, list_type, reason, ttl_seconds, created_by)

    def remove_ip_from_list(self, ip_address: str, list_type: Union[str, IPListType]) -> int:
        return self.ip_manager.remove(ip_address, list_type)

    def list_ips_in_list(self, list_type: Optional[Union[str, IPListType]] = None) -> list[IPListEntry]:
        return self.ip_manager.list_entries(list_type)

    def ip_status(self, ip_address: str) -> IPStatus:
        return self.ip_manager.lookup(ip_address)

    def ip_entries(self, ip_address: str) -> list[IPListEntry]:
        return self.ip_manager.details(ip_address)

    def cleanup_expired_blocks(self) -> int:
        return self.ip_manager.sweep_expired()

    def get_rate_limit_stats(self, ip_address: str, endpoint: Optional[str] = None) -> dict[str, int]:
        return self.rate_limiter.stats(ip_address, endpoint)

    def reset_rate_limit(self, ip_address: str, endpoint: Optional[str] = None) -> None:
        self.rate_limiter.reset(ip_address, endpoint)

    def scan_ddos(self) -> dict[str, Optional[Transition]]:
        return self.ddos_detector.scan()

    def scan_abuse(self) -> list[AbuseReport]:
        return self.abuse_detector.analyze_all()
