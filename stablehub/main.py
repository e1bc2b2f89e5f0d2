import os

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.orm.exc import StaleDataError

from .config import settings
from .db import Base, engine
from .errors import APIException, DocumentDecodeError, ValidationFailed
from .logging import setup_logging, RequestIdMiddleware
from .routes.routine_templates import router as routine_templates_router
from .routes.routine_schedules import router as routine_schedules_router
from .routes.routines import router as routines_router
from .routes.horses import router as horses_router


log = structlog.get_logger(__name__)


def _error_body(exc: APIException) -> dict:
    body = {"detail": exc.detail, "error_code": exc.error_code}
    if isinstance(exc, ValidationFailed):
        body["details"] = exc.details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(APIException)
    async def _api_exception(request: Request, exc: APIException):
        if isinstance(exc, DocumentDecodeError):
            log.error("document_decode_failed", kind=exc.kind, identifier=exc.identifier, exc_info=exc.__cause__)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc), headers=exc.headers)

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        issues = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid input", "error_code": "VALIDATION_FAILED", "details": issues},
        )

    @app.exception_handler(StaleDataError)
    async def _stale_data(request: Request, exc: StaleDataError):
        log.warning("concurrent_modification", path=request.url.path)
        return JSONResponse(
            status_code=409,
            content={"detail": "Resource was modified concurrently, reload and retry", "error_code": "CONFLICT"},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        log.error("unhandled_exception", path=request.url.path, exc_info=exc)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter = Limiter(key_func=get_remote_address, default_limits=[settings.rate_limit])
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    register_exception_handlers(app)

    # Routers
    app.include_router(routine_templates_router)
    app.include_router(routine_schedules_router)
    app.include_router(routines_router)
    app.include_router(horses_router)

    # Metrics
    if settings.enable_metrics:
        Instrumentator().instrument(app).expose(app)

    @app.get("/health")
    def health():
        return {"status": "ok", "environment": settings.environment}

    @app.on_event("startup")
    def _startup():
        log.info("startup", app=settings.app_name, environment=settings.environment)
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            log.info("tables_verified", count=len(Base.metadata.tables))

    return app


app = create_app()
