from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from mitigation.api.routes import ip_list, metrics, mitigation
from mitigation.core.errors import StorageUnavailable, ValidationError
from mitigation.core.logger import logger
from mitigation.engine import MitigationEngine


def create_app(engine: Optional[MitigationEngine] = None) -> FastAPI:
    engine = engine or MitigationEngine.from_settings()

    app = FastAPI(
        title="API Mitigation Engine",
        description="Rate limiting, IP list management and attack detection for a public API",
        version="1.0.0"
    )
    app.state.engine = engine

    app.include_router(mitigation.router)
    app.include_router(ip_list.router)
    app.include_router(metrics.router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content={"detail": str(exc)})

    @app.exception_handler(StorageUnavailable)
    async def storage_error_handler(request: Request, exc: StorageUnavailable):
        logger.warning("api_store_unavailable", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": "store unavailable"})

    @app.get("/health")
    async def health():
        return {"status": "healthy", "environment": engine.settings.environment}

    return app
