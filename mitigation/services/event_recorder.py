from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from mitigation.core.clock import StoreClock, to_utc
from mitigation.core.database import Database
from mitigation.core.logger import logger
from mitigation.models.security_event import EventType, SecurityEvent
from mitigation.security.ip_utils import normalize_ip, validate_api_key, validate_endpoint


class EventRecorder:
    def __init__(self, database: Database, clock=None):
        self.database = database
        self.clock = clock or StoreClock()

    def record(
        self,
        ip_address: str,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        event_type: EventType = EventType.REQUEST,
        status_code: Optional[int] = None,
        user_agent: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        db: Optional[Session] = None,
        timeout: Optional[float] = None
    ) -> SecurityEvent:
        ip_address = normalize_ip(ip_address)
        endpoint = validate_endpoint(endpoint)
        api_key = validate_api_key(api_key)

        with self.database.scope(db, timeout) as session:
            event = SecurityEvent(
                ip_address=ip_address,
                endpoint=endpoint,
                api_key=api_key,
                event_type=event_type,
                status_code=status_code,
                user_agent=user_agent,
                occurred_at=occurred_at or self.clock.now(session)
            )
            session.add(event)
            session.flush()

        logger.debug(
            "security_event_recorded",
            event_id=event.id,
            ip_address=ip_address,
            event_type=event_type.value
        )
        return event

    @staticmethod
    def _filters(
        ip_address: Optional[str],
        event_type: Optional[EventType],
        since: Optional[datetime],
        until: Optional[datetime],
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        after_id: int = 0
    ) -> list:
        conds = []
        if ip_address is not None:
            conds.append(SecurityEvent.ip_address == ip_address)
        if event_type is not None:
            conds.append(SecurityEvent.event_type == event_type)
        if since is not None:
            conds.append(SecurityEvent.occurred_at >= since)
        if until is not None:
            conds.append(SecurityEvent.occurred_at <= until)
        if endpoint is not None:
            conds.append(SecurityEvent.endpoint == endpoint)
        if api_key is not None:
            conds.append(SecurityEvent.api_key == api_key)
        if after_id:
            conds.append(SecurityEvent.id > after_id)
        return conds

    def count(
        self,
        db: Session,
        ip_address: Optional[str],
        event_type: Optional[EventType],
        since: Optional[datetime],
        until: Optional[datetime],
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        after_id: int = 0
    ) -> int:
        conds = self._filters(ip_address, event_type, since, until, endpoint, api_key, after_id)
        return db.execute(select(func.count(SecurityEvent.id)).where(*conds)).scalar_one()

    def nth_oldest_timestamp(
        self,
        db: Session,
        offset: int,
        ip_address: str,
        event_type: EventType,
        since: datetime,
        until: datetime,
        endpoint: Optional[str] = None,
        api_key: Optional[str] = None,
        after_id: int = 0
    ) -> Optional[datetime]:
        conds = self._filters(ip_address, event_type, since, until, endpoint, api_key, after_id)
        stmt = (
            select(SecurityEvent.occurred_at)
            .where(*conds)
            .order_by(SecurityEvent.occurred_at.asc(), SecurityEvent.id.asc())
            .offset(offset)
            .limit(1)
        )
        return to_utc(db.execute(stmt).scalar())

    def latest_event_id(self, db: Session) -> int:
        return db.execute(select(func.max(SecurityEvent.id))).scalar() or 0

    def counts_by_ip(
        self,
        db: Session,
        event_type: EventType,
        since: datetime,
        until: datetime,
        endpoint: Optional[str] = None
    ) -> dict[str, int]:
        conds = self._filters(None, event_type, since, until, endpoint)
        stmt = (
            select(SecurityEvent.ip_address, func.count(SecurityEvent.id))
            .where(*conds)
            .group_by(SecurityEvent.ip_address)
        )
        return {ip: count for ip, count in db.execute(stmt).all()}

    def distinct_ips(self, db: Session, event_type: EventType, since: datetime, until: datetime) -> list[str]:
        conds = self._filters(None, event_type, since, until)
        stmt = select(SecurityEvent.ip_address).where(*conds).distinct().order_by(SecurityEvent.ip_address)
        return list(db.execute(stmt).scalars().all())

    def events_for_ip(
        self,
        db: Session,
        ip_address: str,
        event_type: EventType,
        since: datetime,
        until: datetime
    ) -> Sequence[SecurityEvent]:
        conds = self._filters(ip_address, event_type, since, until)
        stmt = select(SecurityEvent).where(*conds).order_by(SecurityEvent.occurred_at.asc(), SecurityEvent.id.asc())
        return db.execute(stmt).scalars().all()

    def timestamps_for_ip(
        self,
        db: Session,
        ip_address: str,
        event_type: EventType,
        since: datetime,
        until: datetime
    ) -> list[datetime]:
        conds = self._filters(ip_address, event_type, since, until)
        stmt = select(SecurityEvent.occurred_at).where(*conds)
        return [to_utc(ts) for ts in db.execute(stmt).scalars().all()]
