"""
FastAPI service skeleton shared by Access Layer services.

Subclasses get configuration, structured logging, a private Prometheus
registry, request timing, ``/health`` and ``/metrics``, and a JSON handler
for ``AccessLayerException``. They report collaborator health by overriding
``_check_dependencies``.
"""

import os
import time
from typing import Dict, List, Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.middleware import Middleware

from shared.config import ServiceConfig, get_config
from shared.errors import AccessLayerException
from shared.logging import configure_logging, get_logger
from shared.metrics import get_metrics_collector

VERSION = "1.0.0"


class BaseService:
    """Common wiring for an Access Layer FastAPI service."""

    # Response headers browsers may read on cross-origin calls
    cors_expose_headers: List[str] = []

    def __init__(self, service_name: str, port: int, config: Optional[ServiceConfig] = None):
        self.service_name = service_name
        self.config = config or get_config(service_name, port)
        configure_logging(service_name, self.config.log_level, json_output=self.config.env != "local")

        self.logger = get_logger(f"{service_name}.service")
        self.metrics = get_metrics_collector(service_name)
        self.started_at = time.monotonic()

        is_local = self.config.env == "local"
        self.app = FastAPI(
            title=f"{service_name.title()} Service",
            version=VERSION,
            docs_url="/docs" if is_local else None,
            redoc_url="/redoc" if is_local else None,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"] if is_local else [],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=self.cors_expose_headers,
        )
        self.app.middleware("http")(self._time_request)
        self.app.add_exception_handler(AccessLayerException, self._handle_access_layer_error)
        self.app.add_exception_handler(Exception, self._handle_unexpected_error)
        self._setup_common_routes()

    async def _time_request(self, request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - started

        self.metrics.record_http_request(request.method, request.url.path, response.status_code, elapsed)
        self.logger.info(
            "HTTP request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(elapsed * 1000, 2),
        )
        return response

    async def _handle_access_layer_error(self, request: Request, exc: AccessLayerException):
        self.logger.error("Access layer error", code=exc.code, message=exc.message, details=exc.details)
        self.metrics.record_error(exc.code)
        return JSONResponse(status_code=500, content=exc.to_response().model_dump())

    async def _handle_unexpected_error(self, request: Request, exc: Exception):
        self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
        self.metrics.record_error("INTERNAL_ERROR")
        return JSONResponse(status_code=500, content={"error": "Server error.  Please try again later."})

    def add_service_middleware(self, middleware_class, **options):
        """Install middleware inside the shared CORS and timing layers.

        ``FastAPI.add_middleware`` makes the newest middleware the outermost;
        responses produced here must still get CORS headers and be timed.
        """
        self.app.user_middleware.append(Middleware(middleware_class, **options))

    def _setup_common_routes(self):

        @self.app.get("/health")
        async def health_check():
            dependencies = await self._check_dependencies()
            healthy = all(state == "ok" for state in dependencies.values())
            return {
                "service": self.service_name,
                "status": "ok" if healthy else "degraded",
                "uptime_seconds": round(time.monotonic() - self.started_at, 3),
                "dependencies": dependencies,
                "version": VERSION,
                "commit": os.getenv("GIT_COMMIT", "unknown"),
            }

        @self.app.get("/metrics")
        async def metrics_endpoint():
            return Response(content=generate_latest(self.metrics.registry), media_type=CONTENT_TYPE_LATEST)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Map dependency name to "ok" or "error". Override in subclasses."""
        return {}

    def run(self):
        """Run the service under uvicorn."""
        import uvicorn
        uvicorn.run(
            self.app,
            host=self.config.host,
            port=self.config.port,
            log_level=self.config.log_level.lower(),
        )
