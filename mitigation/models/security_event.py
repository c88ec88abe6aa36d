from sqlalchemy import Column, Integer, String, DateTime, Enum, Index
from sqlalchemy.sql import func
from mitigation.core.database import Base
import enum


class EventType(enum.Enum):
    REQUEST = "request"
    CONNECTION = "connection"
    RATE_LIMITED = "rate_limited"
    DDOS = "ddos"
    ABUSE = "abuse"
    BLOCK = "block"
    UNBLOCK = "unblock"


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, index=True)
    endpoint = Column(String, nullable=True, index=True)
    api_key = Column(String, nullable=True, index=True)
    event_type = Column(Enum(EventType), nullable=False, index=True)
    status_code = Column(Integer, nullable=True)
    user_agent = Column(String, nullable=True)
    occurred_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    __table_args__ = (
        Index("ix_security_events_ip_type_time", "ip_address", "event_type", "occurred_at"),
    )
