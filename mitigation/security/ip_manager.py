import enum
import json
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence, Union

import redis
from sqlalchemy import delete, or_, select
from sqlalchemy.orm import Session

from mitigation.core.clock import StoreClock, to_utc
from mitigation.core.database import Database
from mitigation.core.errors import ValidationError
from mitigation.core.logger import logger
from mitigation.models.ip_list import IPListEntry, IPListType
from mitigation.models.security_event import EventType
from mitigation.security.ip_utils import normalize_ip
from mitigation.services.event_recorder import EventRecorder


class IPState(enum.Enum):
    BLACKLISTED = "blacklisted"
    TEMPORARILY_BLOCKED = "temporarily_blocked"
    WHITELISTED = "whitelisted"
    NONE = "none"


@dataclass
class IPStatus:
    status: IPState
    remaining_ttl: Optional[int] = None
    reason: Optional[str] = None
    expires_at: Optional[datetime] = None


def parse_list_type(value: Union[str, IPListType]) -> IPListType:
    if isinstance(value, IPListType):
        return value
    try:
        return IPListType(str(value).strip().lower())
    except ValueError as e:
        allowed = ", ".join(t.value for t in IPListType)
        raise ValidationError(f"invalid list type {value!r}, expected one of: {allowed}") from e


def seconds_until(moment: datetime, now: datetime) -> int:
    return max(0, math.ceil((moment - now).total_seconds()))


def resolve_status(entries: Sequence[IPListEntry], now: datetime) -> IPStatus:
    """Blacklist beats an unexpired temporary block, which beats the whitelist."""
    active = [e for e in entries if e.expires_at is None or to_utc(e.expires_at) > now]

    for entry in active:
        if entry.list_type == IPListType.BLACKLIST:
            return IPStatus(IPState.BLACKLISTED, reason=entry.reason, expires_at=to_utc(entry.expires_at))

    temporary = [e for e in active if e.list_type == IPListType.TEMPORARY]
    if temporary:
        # the block lasts as long as its longest-lived entry
        latest = max(temporary, key=lambda e: to_utc(e.expires_at))
        expires_at = to_utc(latest.expires_at)
        return IPStatus(
            IPState.TEMPORARILY_BLOCKED,
            remaining_ttl=seconds_until(expires_at, now),
            reason=latest.reason,
            expires_at=expires_at
        )

    for entry in active:
        if entry.list_type == IPListType.WHITELIST:
            return IPStatus(IPState.WHITELISTED, reason=entry.reason, expires_at=to_utc(entry.expires_at))

    return IPStatus(IPState.NONE)


class IPListManager:
    def __init__(
        self,
        database: Database,
        clock=None,
        redis_client: Optional[redis.Redis] = None,
        cache_ttl: int = 300,
        recorder: Optional[EventRecorder] = None
    ):
        self.database = database
        self.clock = clock or StoreClock()
        self.redis = redis_client
        self.cache_ttl = cache_ttl
        self.recorder = recorder or EventRecorder(database, self.clock)

    def add(
        self,
        ip_address: str,
        list_type: Union[str, IPListType],
        reason: Optional[str] = None,
        ttl_seconds: Optional[int] = None,
        created_by: Optional[str] = None,
        db: Optional[Session] = None,
        timeout: Optional[float] = None
    ) -> IPListEntry:
        ip_address = normalize_ip(ip_address)
        list_type = parse_list_type(list_type)
        if ttl_seconds is not None and ttl_seconds <= 0:
            raise ValidationError("ttl_seconds must be positive")
        if list_type == IPListType.TEMPORARY and ttl_seconds is None:
            raise ValidationError("temporary entries require ttl_seconds")

        with self.database.scope(db, timeout) as session:
            now = self.clock.now(session)
            entry = IPListEntry(
                ip_address=ip_address,
                list_type=list_type,
                reason=reason,
                created_by=created_by,
                added_at=now,
                expires_at=now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
            )
            session.add(entry)
            session.flush()

            if list_type != IPListType.WHITELIST:
                self.recorder.record(ip_address, event_type=EventType.BLOCK, occurred_at=now, db=session)

        self._invalidate(ip_address)

        logger.info(
            "ip_list_entry_added",
            ip_address=ip_address,
            list_type=list_type.value,
            reason=reason,
            ttl_seconds=ttl_seconds,
            created_by=created_by
        )
        return entry

    def remove(
        self,
        ip_address: str,
        list_type: Union[str, IPListType],
        db: Optional[Session] = None,
        timeout: Optional[float] = None
    ) -> int:
        ip_address = normalize_ip(ip_address)
        list_type = parse_list_type(list_type)

        with self.database.scope(db, timeout) as session:
            result = session.execute(
                delete(IPListEntry).where(
                    IPListEntry.ip_address == ip_address,
                    IPListEntry.list_type == list_type
                )
            )
            removed = result.rowcount or 0
            if removed and list_type != IPListType.WHITELIST:
                self.recorder.record(ip_address, event_type=EventType.UNBLOCK, db=session)

        self._invalidate(ip_address)

        if removed:
            logger.info("ip_list_entry_removed", ip_address=ip_address, list_type=list_type.value, count=removed)
        else:
            logger.warning("ip_list_entry_not_found", ip_address=ip_address, list_type=list_type.value)
        return removed

    def lookup(
        self,
        ip_address: str,
        db: Optional[Session] = None,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None
    ) -> IPStatus:
        ip_address = normalize_ip(ip_address)

        with self.database.scope(db, timeout) as session:
            now = now or self.clock.now(session)

            cached = self._cached_status(ip_address, now)
            if cached is not None:
                return cached

            entries = self._active_entries(session, ip_address, now)
            status = resolve_status(entries, now)

        self._cache_status(ip_address, status, entries, now)
        return status

    def details(self, ip_address: str, timeout: Optional[float] = None) -> list[IPListEntry]:
        ip_address = normalize_ip(ip_address)
        with self.database.session(timeout) as session:
            return self._active_entries(session, ip_address, self.clock.now(session))

    def list_entries(
        self,
        list_type: Optional[Union[str, IPListType]] = None,
        include_expired: bool = False,
        timeout: Optional[float] = None
    ) -> list[IPListEntry]:
        conds = []
        if list_type is not None:
            conds.append(IPListEntry.list_type == parse_list_type(list_type))

        with self.database.session(timeout) as session:
            if not include_expired:
                now = self.clock.now(session)
                conds.append(or_(IPListEntry.expires_at.is_(None), IPListEntry.expires_at > now))
            stmt = select(IPListEntry).where(*conds).order_by(IPListEntry.added_at.desc(), IPListEntry.id.desc())
            return list(session.execute(stmt).scalars().all())

    def sweep_expired(self, timeout: Optional[float] = None) -> int:
        with self.database.session(timeout) as session:
            now = self.clock.now(session)
            expired = IPListEntry.expires_at <= now
            ips = session.execute(select(IPListEntry.ip_address).where(expired).distinct()).scalars().all()
            result = session.execute(delete(IPListEntry).where(expired))
            removed = result.rowcount or 0

        for ip_address in ips:
            self._invalidate(ip_address)

        logger.info("expired_ip_entries_removed", count=removed)
        return removed

    def _active_entries(self, session: Session, ip_address: str, now: datetime) -> list[IPListEntry]:
        stmt = select(IPListEntry).where(
            IPListEntry.ip_address == ip_address,
            or_(IPListEntry.expires_at.is_(None), IPListEntry.expires_at > now)
        ).order_by(IPListEntry.id)
        return list(session.execute(stmt).scalars().all())

    @staticmethod
    def _cache_key(ip_address: str) -> str:
        return f"ip:status:{ip_address}"

    def _cached_status(self, ip_address: str, now: datetime) -> Optional[IPStatus]:
        if self.redis is None:
            return None
        try:
            raw = self.redis.get(self._cache_key(ip_address))
        except redis.RedisError as e:
            logger.warning("ip_status_cache_unavailable", error=str(e))
            return None
        if raw is None:
            return None

        data = json.loads(raw)
        valid_until = datetime.fromisoformat(data["valid_until"]) if data.get("valid_until") else None
        if valid_until is not None and now >= valid_until:
            return None

        expires_at = datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None
        status = IPState(data["status"])
        remaining = seconds_until(expires_at, now) if status == IPState.TEMPORARILY_BLOCKED else None
        return IPStatus(status, remaining_ttl=remaining, reason=data.get("reason"), expires_at=expires_at)

    def _cache_status(self, ip_address: str, status: IPStatus, entries: Sequence[IPListEntry], now: datetime) -> None:
        if self.redis is None:
            return

        expiries = [to_utc(e.expires_at) for e in entries if e.expires_at is not None]
        valid_until = min(expiries) if expiries else None
        ttl = self.cache_ttl
        if valid_until is not None:
            ttl = min(ttl, max(1, seconds_until(valid_until, now)))

        payload = json.dumps({
            "status": status.status.value,
            "reason": status.reason,
            "expires_at": status.expires_at.isoformat() if status.expires_at else None,
            "valid_until": valid_until.isoformat() if valid_until else None
        })
        try:
            self.redis.setex(self._cache_key(ip_address), ttl, payload)
        except redis.RedisError as e:
            logger.warning("ip_status_cache_unavailable", error=str(e))

    def _invalidate(self, ip_address: str) -> None:
        if self.redis is None:
            return
        try:
            self.redis.delete(self._cache_key(ip_address))
        except redis.RedisError as e:
            logger.warning("ip_status_cache_unavailable", error=str(e))
