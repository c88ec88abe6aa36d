from sqlalchemy import Column, String, DateTime
from mitigation.core.database import Base


class AlertDedupKey(Base):
    __tablename__ = "alert_dedup"

    dedup_key = Column(String(512), primary_key=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
