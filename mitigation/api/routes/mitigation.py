from fastapi import APIRouter, Depends
from typing import Optional
from mitigation.api.dependencies import get_engine
from mitigation.engine import MitigationEngine
from mitigation.schemas.decision import (
    CheckRequest,
    DecisionResponse,
    RecordRequest,
    RecordResponse,
    ResetRequest,
    StatsResponse,
)
from mitigation.schemas.scan import AbuseReportResponse, DDoSScopeResult

router = APIRouter(prefix="/api/mitigation", tags=["mitigation"])


@router.post("/check", response_model=DecisionResponse)
def check_rate_limit(body: CheckRequest, engine: MitigationEngine = Depends(get_engine)):
    return engine.check_rate_limit(
        body.ip_address,
        body.endpoint,
        body.api_key,
        body.window_seconds,
        body.max_requests,
        body.burst_allowance
    )


@router.post("/record", response_model=RecordResponse)
def record_request(body: RecordRequest, engine: MitigationEngine = Depends(get_engine)):
    recorded = engine.record_request(
        body.ip_address,
        body.endpoint,
        body.api_key,
        body.status_code,
        body.user_agent
    )
    return RecordResponse(recorded=recorded)


@router.get("/stats/{ip_address}", response_model=StatsResponse)
def get_stats(ip_address: str, endpoint: Optional[str] = None, engine: MitigationEngine = Depends(get_engine)):
    counts = engine.get_rate_limit_stats(ip_address, endpoint)
    return StatsResponse(ip_address=ip_address, endpoint=endpoint, counts=counts)


@router.post("/reset", status_code=204)
def reset_rate_limit(body: ResetRequest, engine: MitigationEngine = Depends(get_engine)):
    engine.reset_rate_limit(body.ip_address, body.endpoint)
    return None


@router.post("/scan/ddos", response_model=list[DDoSScopeResult])
def scan_ddos(engine: MitigationEngine = Depends(get_engine)):
    results = []
    for scope, transition in engine.scan_ddos().items():
        if transition is None:
            results.append(DDoSScopeResult(scope=scope, degraded=True))
            continue
        results.append(DDoSScopeResult(
            scope=scope,
            phase=transition.state.phase.value,
            entered_attack=transition.entered_attack,
            resolved=transition.resolved,
            blocked=transition.offenders
        ))
    return results


@router.post("/scan/abuse", response_model=list[AbuseReportResponse])
def scan_abuse(engine: MitigationEngine = Depends(get_engine)):
    return [
        AbuseReportResponse(
            ip_address=report.ip_address,
            findings=report.findings,
            score=report.score,
            severity=report.severity.value,
            action=report.action.value if report.action else None
        )
        for report in engine.scan_abuse()
    ]
