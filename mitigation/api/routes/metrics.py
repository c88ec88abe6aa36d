from fastapi import APIRouter, Depends, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from mitigation.api.dependencies import get_engine
from mitigation.engine import MitigationEngine
from mitigation.services.metrics import PrometheusMetricRecorder

router = APIRouter(tags=["metrics"])


@router.get("/metrics")
def metrics(engine: MitigationEngine = Depends(get_engine)):
    if isinstance(engine.metrics, PrometheusMetricRecorder):
        payload = engine.metrics.render()
    else:
        payload = generate_latest()
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)
