from pydantic import BaseModel, Field
from typing import Optional


class CheckRequest(BaseModel):
    ip_address: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    window_seconds: Optional[int] = Field(default=None, gt=0)
    max_requests: Optional[int] = Field(default=None, gt=0)
    burst_allowance: Optional[int] = Field(default=None, ge=0)


class DecisionResponse(BaseModel):
    allowed: bool
    matched_scope: Optional[str] = None
    triggering_count: int = 0
    retry_after: Optional[int] = None
    reason: str
    degraded: bool = False

    class Config:
        from_attributes = True


class RecordRequest(BaseModel):
    ip_address: str
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    status_code: Optional[int] = None
    user_agent: Optional[str] = None


class RecordResponse(BaseModel):
    recorded: bool


class ResetRequest(BaseModel):
    ip_address: str
    endpoint: Optional[str] = None


class StatsResponse(BaseModel):
    ip_address: str
    endpoint: Optional[str] = None
    counts: dict[str, int]
