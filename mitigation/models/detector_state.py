from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.sql import func
from mitigation.core.database import Base


class DetectorStateRecord(Base):
    """Serialized DDoS detector state, one row per monitored scope."""

    __tablename__ = "ddos_detector_states"

    scope = Column(String(2048), primary_key=True)
    state = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
