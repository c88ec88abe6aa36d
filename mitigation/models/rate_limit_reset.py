from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func
from mitigation.core.database import Base


class RateLimitReset(Base):
    """Hides every event up to ``last_event_id`` from rate-limit counts for the ip (and endpoint)."""

    __tablename__ = "rate_limit_resets"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False)
    endpoint = Column(String, nullable=True)
    last_event_id = Column(Integer, nullable=False, default=0)
    reset_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_rate_limit_resets_ip_endpoint", "ip_address", "endpoint"),
    )
