import enum
import time
from datetime import timedelta
from typing import Callable, Optional, Protocol

import httpx
import redis
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from mitigation.core.clock import StoreClock
from mitigation.core.database import Database
from mitigation.core.errors import StorageUnavailable
from mitigation.core.logger import logger
from mitigation.models.alert_dedup import AlertDedupKey


class AlertLevel(enum.Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


class AlertEmitter(Protocol):
    def emit(self, component: str, level: AlertLevel, dedup_key: str, message: str) -> None:
        ...


class LoggingAlertEmitter:
    def emit(self, component: str, level: AlertLevel, dedup_key: str, message: str) -> None:
        log = logger.error if level == AlertLevel.CRITICAL else logger.warning if level == AlertLevel.WARNING else logger.info
        log("alert", component=component, level=level.value, dedup_key=dedup_key, message=message)


class WebhookAlertEmitter:
    def __init__(self, url: str, timeout: float = 5.0):
        self.url = url
        self.timeout = timeout

    def emit(self, component: str, level: AlertLevel, dedup_key: str, message: str) -> None:
        payload = {
            "component": component,
            "level": level.value,
            "dedup_key": dedup_key,
            "message": message
        }
        response = httpx.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()


class AlertDispatcher:
    """Suppresses repeats of the same dedup key inside the window, then hands off to the emitter.

    Dedup keys live in redis when configured, otherwise in the shared SQL store, so separate
    processes agree on what was already sent. Emission is best effort: emitter failures are
    logged and never reach the caller.
    """

    def __init__(
        self,
        emitter: Optional[AlertEmitter] = None,
        dedup_window_seconds: int = 3600,
        redis_client: Optional[redis.Redis] = None,
        database: Optional[Database] = None,
        clock=None,
        timer: Callable[[], float] = time.monotonic
    ):
        self.emitter = emitter or LoggingAlertEmitter()
        self.dedup_window_seconds = dedup_window_seconds
        self.redis = redis_client
        self.database = database
        self.clock = clock or StoreClock()
        self.timer = timer
        self._last_sent: dict[str, float] = {}

    def _first_in_window(self, dedup_key: str) -> bool:
        if self.redis is not None:
            try:
                return bool(self.redis.set(
                    f"alert:dedup:{dedup_key}", "1", nx=True, ex=self.dedup_window_seconds
                ))
            except redis.RedisError as e:
                logger.warning("alert_dedup_store_unavailable", error=str(e))

        if self.database is not None:
            try:
                return self._claim_in_store(dedup_key)
            except StorageUnavailable as e:
                if isinstance(e.__cause__, IntegrityError):
                    # another process claimed the key first
                    return False
                logger.warning("alert_dedup_store_unavailable", error=str(e))

        return self._claim_in_memory(dedup_key)

    def _claim_in_store(self, dedup_key: str) -> bool:
        with self.database.session() as db:
            now = self.clock.now(db)
            db.execute(delete(AlertDedupKey).where(AlertDedupKey.expires_at <= now))
            if db.get(AlertDedupKey, dedup_key) is not None:
                return False
            db.add(AlertDedupKey(
                dedup_key=dedup_key,
                expires_at=now + timedelta(seconds=self.dedup_window_seconds)
            ))
            db.flush()
        return True

    def _claim_in_memory(self, dedup_key: str) -> bool:
        now = self.timer()
        cutoff = now - self.dedup_window_seconds
        self._last_sent = {key: sent for key, sent in self._last_sent.items() if sent > cutoff}
        if dedup_key in self._last_sent:
            return False
        self._last_sent[dedup_key] = now
        return True

    def emit(self, component: str, level: AlertLevel, dedup_key: str, message: str) -> bool:
        if not self._first_in_window(dedup_key):
            logger.debug("alert_suppressed", dedup_key=dedup_key)
            return False

        try:
            self.emitter.emit(component, level, dedup_key, message)
        except Exception as e:
            logger.error("alert_emit_failed", component=component, dedup_key=dedup_key, error=str(e))
            return False
        return True
