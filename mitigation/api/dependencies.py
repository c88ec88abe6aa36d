from fastapi import Request
from mitigation.engine import MitigationEngine


def get_engine(request: Request) -> MitigationEngine:
    return request.app.state.engine
