"""
Base service class for Policy Decision Point services.
"""

import os
import time
from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST

from shared.config import PolicyServiceConfig, get_config
from shared.errors import (
    CatalogUnavailableError, ExternalServiceError, PolicyServiceException, ValidationError
)
from shared.logging import clear_context, configure_logging, get_logger, set_request_id
from shared.metrics import get_metrics_collector
from shared.tracing import configure_tracing


# First match wins; anything else is a 500
ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (CatalogUnavailableError, 503),
    (ExternalServiceError, 502),
)


def status_code_for(exc: PolicyServiceException) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def overall_status(dependencies: Dict[str, str]) -> str:
    """Worst state among dependencies: ok < degraded < error."""
    states = set(dependencies.values())
    if "error" in states:
        return "error"
    if "degraded" in states:
        return "degraded"
    return "ok"


class BaseService:
    """FastAPI application shell shared by the services.

    Subclasses add their routes and override ``start``, ``stop`` and
    ``_check_dependencies``. The shell owns logging setup, request
    correlation, Prometheus metrics, error mapping and optional tracing.
    """

    def __init__(self, service_name: str, config: Optional[PolicyServiceConfig] = None):
        self.service_name = service_name
        self.config = config or get_config()
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)
        self._start_time = time.time()

        configure_logging(service_name, self.config.log_level, json_logs=self.config.env != "local")

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

        if self.config.enable_tracing:
            configure_tracing(service_name, self.app, env=self.config.env)

    def _create_app(self) -> FastAPI:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            await self.start()
            try:
                yield
            finally:
                await self.stop()

        show_docs = self.config.env == "local"
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            description="Policy Decision Point",
            version="1.0.0",
            docs_url="/docs" if show_docs else None,
            redoc_url="/redoc" if show_docs else None,
            lifespan=lifespan,
        )

    def _setup_middleware(self):
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if self.config.env == "local" else [],
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

        @self.app.middleware("http")
        async def correlate_and_time(request: Request, call_next):
            started = time.perf_counter()
            request_id = set_request_id(
                request.headers.get("x-correlation-id") or request.headers.get("x-request-id")
            )

            try:
                response = await call_next(request)
            finally:
                clear_context()

            duration = time.perf_counter() - started
            # Label by route template so path parameters do not explode cardinality
            route = request.scope.get("route")
            endpoint = getattr(route, "path", request.url.path)
            self.metrics.record_http_request(request.method, endpoint, response.status_code, duration)
            self.logger.info(
                "HTTP request",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration * 1000, 2),
                request_id=request_id
            )
            response.headers["x-correlation-id"] = request_id
            return response

    def _setup_routes(self):

        @self.app.get("/health")
        async def health_check():
            """Service and dependency health."""
            try:
                dependencies = await self._check_dependencies()
            except Exception as e:
                self.logger.error("Health check failed", error=str(e))
                self.metrics.record_health_check("error")
                return JSONResponse(
                    status_code=503,
                    content={"service": self.service_name, "status": "error", "error": str(e)}
                )

            status = overall_status(dependencies)
            self.metrics.record_health_check(status)
            return JSONResponse(
                status_code=503 if status == "error" else 200,
                content={
                    "service": self.service_name,
                    "status": status,
                    "uptime_seconds": round(time.time() - self._start_time, 3),
                    "dependencies": dependencies,
                    "version": "1.0.0",
                    "commit": os.getenv("GIT_COMMIT", "unknown")
                }
            )

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            return Response(content=self.metrics.export(), media_type=CONTENT_TYPE_LATEST)

        @self.app.exception_handler(PolicyServiceException)
        async def policy_exception_handler(request: Request, exc: PolicyServiceException):
            status_code = status_code_for(exc)
            log = self.logger.warning if status_code < 500 else self.logger.error
            log("Request failed", code=exc.code, message=exc.message, details=exc.details)
            return JSONResponse(status_code=status_code, content=exc.to_response().model_dump())

        @self.app.exception_handler(Exception)
        async def unhandled_exception_handler(request: Request, exc: Exception):
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            self.metrics.record_error(type(exc).__name__)
            return JSONResponse(
                status_code=500,
                content={"code": "INTERNAL_ERROR", "message": "Internal server error", "details": {}}
            )

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map of dependency name to "ok", "degraded" or "error"."""
        return {}

    async def start(self):
        """Start service components."""

    async def stop(self):
        """Stop service components."""

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower()
        )
