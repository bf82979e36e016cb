import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Callable, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from arang_chat.api.problem_details import PROBLEM_TYPE_SERVER, PROBLEM_TYPE_VALIDATION, problem_details
from arang_chat.api.routes_chat import router as chat_router
from arang_chat.api.routes_health import router as health_router
from arang_chat.api.routes_metrics import router as metrics_router
from arang_chat.domain.errors import DomainError
from arang_chat.infra.db import dispose_engine
from arang_chat.infra.logging import clear_log_context, configure_logging, update_log_context
from arang_chat.infra.metrics import Metrics, configure_metrics
from arang_chat.infra.redis import close_redis_client
from arang_chat.services import AppServices, build_app_services
from arang_chat.settings import Settings, settings

logger = logging.getLogger(__name__)
request_logger = logging.getLogger("arang_chat.request")

_UNLOGGED_PATHS = frozenset({"/healthz", "/readyz", "/metrics"})


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Request id, per-request log context, access log and latency metric."""

    def __init__(self, app: FastAPI, metrics_client: Metrics) -> None:
        super().__init__(app)
        self.metrics = metrics_client

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        update_log_context(request_id=request_id, method=request.method, path=request.url.path)

        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            elapsed = time.perf_counter() - started
            route = getattr(request.scope.get("route"), "path", "unmatched")
            self.metrics.record_http_latency(request.method, route, status_code, elapsed)
            if request.url.path not in _UNLOGGED_PATHS or status_code >= 500:
                request_logger.info(
                    "request",
                    extra={
                        "extra": {
                            "status_code": status_code,
                            "latency_ms": int(elapsed * 1000),
                            "user_id": getattr(request.state, "current_user_id", None),
                            "role": getattr(request.state, "current_role", None),
                        }
                    },
                )
            clear_log_context()


def _resolve_cors_origins(app_settings: Settings) -> List[str]:
    if app_settings.cors_origins:
        return app_settings.cors_origins
    if app_settings.app_env == "dev":
        return ["http://localhost:5173"]
    return []


def _field_errors(exc: RequestValidationError) -> List[dict]:
    errors = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in {"body", "query", "path"}]
        errors.append({"field": ".".join(location) or "body", "message": error.get("msg", "Invalid value")})
    return errors


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return problem_details(
            request,
            status=422,
            title="Validation Error",
            detail="Request validation failed",
            errors=_field_errors(exc),
            type_=PROBLEM_TYPE_VALIDATION,
        )

    @app.exception_handler(DomainError)
    async def domain_exception_handler(request: Request, exc: DomainError):
        logger.info("domain_error", extra={"extra": {"error_type": type(exc).__name__, "status_code": exc.status_code}})
        return problem_details(
            request,
            status=exc.status_code,
            title=exc.title,
            detail=exc.detail,
            errors=exc.errors or [],
            type_=exc.type,
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        return problem_details(
            request,
            status=exc.status_code,
            title=None,
            detail=exc.detail if isinstance(exc.detail, str) else "Request failed",
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_exception", extra={"extra": {"error_type": type(exc).__name__}})
        return problem_details(
            request,
            status=500,
            title="Internal Server Error",
            detail="Unexpected error",
            type_=PROBLEM_TYPE_SERVER,
        )


def create_app(app_settings: Settings, *, services: AppServices | None = None) -> FastAPI:
    configure_logging(app_settings.log_level)
    metrics_client = configure_metrics(app_settings.metrics_enabled)
    services = services or build_app_services(app_settings, metrics=metrics_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "app_started",
            extra={"extra": {"env": app_settings.app_env, "gateway": type(services.gateway).__name__}},
        )
        yield
        await dispose_engine()
        await close_redis_client()
        logger.info("app_stopped")

    app = FastAPI(title="Arang Support Chat", version="1.0.0", lifespan=lifespan)
    # Must be populated before the first request or websocket arrives.
    app.state.services = services
    app.state.app_settings = app_settings

    app.add_middleware(RequestContextMiddleware, metrics_client=services.metrics)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_resolve_cors_origins(app_settings),
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(chat_router)
    if app_settings.metrics_enabled:
        app.include_router(metrics_router)
    return app


app = create_app(settings)
