from pydantic import BaseModel
from typing import Optional


class DDoSScopeResult(BaseModel):
    scope: str
    phase: Optional[str] = None
    entered_attack: bool = False
    resolved: bool = False
    blocked: list[str] = []
    degraded: bool = False


class AbuseReportResponse(BaseModel):
    ip_address: str
    findings: list[str]
    score: float
    severity: str
    action: Optional[str] = None
