"""
Squad stats - game server telemetry ingestion service.

Features:
- Socket.IO ingestion from every configured game server
- Per-kind buffering, transactional persistence, dead-lettering
- Structured logging with correlation IDs
- Prometheus metrics
- Health checks (liveness and readiness)
- Read-only stats, leaderboard and operator endpoints
"""
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from .config import Settings, get_settings
from .logging import SERVICE_NAME, setup_logging, get_logger
from .api.router import router
from .api.metrics_router import router as metrics_router
from .middleware.correlation import CorrelationIdMiddleware
from .middleware.error_handler import ErrorHandlerMiddleware
from .middleware.http_metrics import MetricsMiddleware
from .metrics.registry import Metrics
from .health import HealthChecker
from .services.pipeline import Pipeline

VERSION = "0.1.0"

logger = get_logger()


def create_app(
    settings: Settings | None = None,
    pipeline: Pipeline | None = None,
    manage_pipeline: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        settings: Settings to use (defaults to environment)
        pipeline: Prebuilt pipeline; built at startup when omitted
        manage_pipeline: Start the pipeline on startup and drain it on shutdown
    """
    settings = settings or get_settings()
    setup_logging(json_output=settings.LOG_JSON, level=settings.LOG_LEVEL)

    metrics = Metrics(service_name=SERVICE_NAME, version=VERSION)

    app = FastAPI(
        title="Squad Stats",
        version=VERSION,
        description="Game server telemetry ingestion with unified observability",
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.pipeline = pipeline

    # Added last runs first: correlation ID, then errors, then metrics
    app.add_middleware(MetricsMiddleware, metrics=metrics)
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(router)
    app.include_router(metrics_router)

    # Mount Prometheus metrics endpoint
    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    def health_checker() -> HealthChecker:
        return HealthChecker(app.state.pipeline, service_name=SERVICE_NAME, version=VERSION)

    @app.get("/health")
    async def health():
        """
        Liveness probe - basic health check.

        Returns 200 if service is running.
        """
        logger.debug("health_check_liveness")
        return health_checker().liveness()

    @app.get("/health/ready")
    async def health_ready():
        """
        Readiness probe.

        Returns:
            200: Database and dead-letter sink usable
            503: Service is not ready
        """
        logger.debug("health_check_readiness")
        result = await health_checker().readiness()
        status_code = 200 if result["status"] == "ready" else 503
        return JSONResponse(result, status_code=status_code)

    @app.on_event("startup")
    async def startup_event():
        logger.info(
            "service_starting",
            version=VERSION,
            env=settings.ENV,
            dead_letter_adapter=settings.DEAD_LETTER_ADAPTER,
        )
        if app.state.pipeline is None:
            app.state.pipeline = Pipeline(settings, metrics=metrics)
        if manage_pipeline:
            await app.state.pipeline.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        """Drain buffers and close server connections."""
        logger.info("service_stopping")
        if manage_pipeline and app.state.pipeline is not None:
            await app.state.pipeline.stop()
        metrics.app_up.labels(service=SERVICE_NAME, version=VERSION).set(0)

    return app


app = create_app()


def run():
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "squadstats.main:app",
        host="0.0.0.0",
        port=settings.SERVICE_PORT,
    )


if __name__ == "__main__":
    run()
