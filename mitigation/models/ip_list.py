from sqlalchemy import Column, Integer, String, DateTime, Enum
from sqlalchemy.sql import func
from mitigation.core.database import Base
import enum


class IPListType(enum.Enum):
    WHITELIST = "whitelist"
    BLACKLIST = "blacklist"
    TEMPORARY = "temporary"


class IPListEntry(Base):
    __tablename__ = "ip_list_entries"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), nullable=False, index=True)
    list_type = Column(Enum(IPListType), nullable=False, index=True)
    reason = Column(String)
    created_by = Column(String, nullable=True)
    added_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
