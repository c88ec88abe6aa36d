from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional
from mitigation.models.ip_list import IPListType
from mitigation.security.ip_manager import IPState


class IPListCreate(BaseModel):
    ip_address: str
    list_type: IPListType
    reason: Optional[str] = None
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    created_by: Optional[str] = None


class IPListResponse(BaseModel):
    id: int
    ip_address: str
    list_type: IPListType
    reason: Optional[str]
    created_by: Optional[str]
    added_at: datetime
    expires_at: Optional[datetime]

    class Config:
        from_attributes = True


class IPStatusResponse(BaseModel):
    ip_address: str
    status: IPState
    remaining_ttl: Optional[int] = None
    reason: Optional[str] = None


class CleanupResponse(BaseModel):
    removed: int
