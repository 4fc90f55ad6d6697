"""
Base service class for webplow services.
"""

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import time

from shared.config import GatewayConfig
from shared.logging import configure_logging, get_logger, set_request_id, clear_context
from shared.metrics import get_metrics_collector
from shared.errors import GatewayException, ErrorResponse

REQUEST_ID_HEADER = "X-Request-ID"


def error_response(status_code: int, message: str, headers=None) -> JSONResponse:
    """Render the ``{"error": ...}`` body every failure uses."""
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=message).model_dump(),
        headers=headers,
    )


class BaseService:
    """Base service class with common functionality."""

    def __init__(self, service_name: str, config: GatewayConfig):
        self.service_name = service_name
        self.config = config

        configure_logging(service_name, self.config.log_level)
        self.logger = get_logger(service_name)
        self.metrics = get_metrics_collector(service_name)

        self.app = self._create_app()
        self._setup_middleware()
        self._setup_routes()

    def _create_app(self) -> FastAPI:
        """Create FastAPI application."""
        return FastAPI(
            title=f"{self.service_name.title()} Service",
            version="1.0.0",
            docs_url=None,
            redoc_url=None,
            openapi_url=None,
        )

    def _setup_middleware(self):
        """Set up middleware."""

        @self.app.middleware("http")
        async def add_request_context(request: Request, call_next):
            request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
            start_time = time.perf_counter()

            try:
                response = await call_next(request)

                duration = time.perf_counter() - start_time
                route = request.scope.get("route")
                endpoint = getattr(route, "path", "unmatched")

                self.metrics.record_http_request(
                    method=request.method,
                    endpoint=endpoint,
                    status_code=response.status_code,
                    duration=duration
                )

                self.logger.info(
                    "HTTP request",
                    method=request.method,
                    path=request.url.path,
                    status_code=response.status_code,
                    duration_ms=round(duration * 1000, 2)
                )

                response.headers[REQUEST_ID_HEADER] = request_id
                return response
            finally:
                clear_context()

    def _setup_routes(self):
        """Set up common routes."""

        @self.app.get("/health")
        async def health_check():
            """Health check endpoint."""
            try:
                await self._check_dependencies()
            except GatewayException:
                self.metrics.record_health_check("error")
                raise
            self.metrics.record_health_check("ok")
            return {"status": "ok"}

        @self.app.get("/metrics")
        async def metrics_endpoint():
            """Prometheus metrics endpoint."""
            from prometheus_client import CONTENT_TYPE_LATEST
            return Response(
                content=self.metrics.render(),
                media_type=CONTENT_TYPE_LATEST
            )

        @self.app.exception_handler(GatewayException)
        async def gateway_exception_handler(request: Request, exc: GatewayException):
            """Map a GatewayException onto its fixed status and message."""
            log = self.logger.error if exc.status_code >= 500 else self.logger.warning
            log(
                "Request failed",
                code=exc.code,
                status_code=exc.status_code,
                message=exc.message,
                details=exc.details
            )
            return error_response(exc.status_code, exc.to_response().error)

        @self.app.exception_handler(StarletteHTTPException)
        async def http_exception_handler(request: Request, exc: StarletteHTTPException):
            """Render framework errors (404, 405, ...) in the same shape."""
            return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

        @self.app.exception_handler(Exception)
        async def general_exception_handler(request: Request, exc: Exception):
            """Handle general exceptions."""
            self.logger.error("Unhandled exception", error=str(exc), exc_info=True)
            return error_response(500, "Internal server error")

    async def _check_dependencies(self) -> None:
        """Raise a GatewayException if a dependency is down. Override in subclasses."""
        return None

    def run(self):
        """Run the service."""
        import uvicorn
        host, port = self.config.listen_host_port
        uvicorn.run(
            self.app,
            host=host,
            port=port,
            log_level=self.config.log_level.lower(),
            timeout_keep_alive=int(self.config.idle_timeout),
            timeout_graceful_shutdown=int(self.config.shutdown_timeout),
        )
