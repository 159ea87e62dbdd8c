"""
Vigil - Security event scoring, audit-integrity and alerting service.

FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from starlette.middleware.base import BaseHTTPMiddleware

from vigil import __version__
from vigil.alerts.channels import AlertChannel, build_channels
from vigil.alerts.dispatcher import AlertDispatcher
from vigil.audit.trail import AuditTrail
from vigil.config import Settings, settings
from vigil.db.repositories import SqlDocumentStore
from vigil.detection.compliance import ComplianceScorer
from vigil.detection.geo import StaticGeoLookup
from vigil.detection.rules import load_principles, load_threat_rules
from vigil.detection.threat import ThreatScorer
from vigil.monitoring.health import HealthMonitor
from vigil.monitoring.metrics import SystemSampler
from vigil.pipeline.orchestrator import EventPipeline
from vigil.pipeline.scheduler import Scheduler, build_scheduler
from vigil.security.encryption import AuditEncryption
from vigil.store.cache import CacheStore, RedisCache
from vigil.store.documents import DocumentStore
from vigil.utils import utcnow

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject request bodies above 1MB before they reach the pipeline."""

    MAX_BODY_SIZE = 1024 * 1024

    async def dispatch(self, request: Request, call_next) -> Response:
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > self.MAX_BODY_SIZE:
                    return JSONResponse(
                        status_code=413,
                        content={
                            "error": "Request entity too large",
                            "message": (
                                f"Request body exceeds maximum size of "
                                f"{self.MAX_BODY_SIZE // 1024}KB"
                            ),
                            "max_size_bytes": self.MAX_BODY_SIZE,
                        },
                    )
            except ValueError:
                pass

        return await call_next(request)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests with an id and timing."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            f"{request.method} {request.url.path} [{request_id}] from "
            f"{request.client.host if request.client else 'unknown'} "
            f"status={response.status_code} time={process_time:.3f}s"
        )
        return response


@dataclass
class Services:
    """Long-lived components shared by the API and the scheduler."""

    cache: CacheStore
    store: DocumentStore
    pipeline: EventPipeline
    scheduler: Optional[Scheduler] = None


def build_pipeline(
    config: Settings,
    cache: CacheStore,
    store: DocumentStore,
    channels: Optional[dict[str, AlertChannel]] = None,
    sampler: Optional[SystemSampler] = None,
) -> EventPipeline:
    """Wire scorers, audit trail, dispatcher and monitor from settings."""
    encryption = None
    if config.audit_encryption_enabled:
        encryption = AuditEncryption.from_master_key(config.audit_encryption_key)

    threat_scorer = ThreatScorer(
        cache,
        rules=load_threat_rules(config.threat_rules_path),
        geo=StaticGeoLookup(config.geoip_networks),
        high_risk_countries=config.high_risk_countries,
        rate_limit_per_minute=config.rate_limit_per_minute,
        burst_window_seconds=config.burst_window_seconds,
        burst_threshold=config.burst_threshold,
        max_payload_bytes=config.max_payload_bytes,
    )
    compliance_scorer = ComplianceScorer(
        cache, principles=load_principles(config.compliance_rules_path)
    )
    audit_trail = AuditTrail(
        store,
        encryption=encryption,
        batch_size=config.audit_batch_size,
        max_buffer_size=config.audit_max_buffer_size,
        retention_days=config.audit_retention_days,
        violation_retention_days=config.violation_retention_days,
        integrity_retention_days=config.integrity_retention_days,
        search_limit=config.audit_search_limit,
        node_id=config.node_id,
    )
    if channels is None:
        channels = build_channels(config, cache)
    dispatcher = AlertDispatcher.from_settings(config, cache, channels)
    monitor = HealthMonitor(
        cache,
        sampler=sampler or SystemSampler(config.disk_path),
        dispatcher=dispatcher,
        store=store,
        cpu_threshold=config.cpu_threshold,
        memory_threshold=config.memory_threshold,
        disk_threshold=config.disk_threshold,
        response_time_threshold_ms=config.response_time_threshold_ms,
        error_rate_threshold=config.error_rate_threshold,
        history_size=config.metrics_history_size,
        retention_seconds=config.metrics_retention_seconds,
    )
    return EventPipeline(threat_scorer, compliance_scorer, audit_trail, dispatcher, monitor)


async def build_services(config: Settings) -> Services:
    """Connect Redis and the SQL store and build the pipeline."""
    cache = RedisCache.from_url(config.redis_url, timeout=config.external_timeout_seconds)

    engine = create_async_engine(config.database_url, echo=config.debug, pool_pre_ping=True)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    store = SqlDocumentStore(session_factory, engine=engine, timeout=config.external_timeout_seconds)
    await store.create_schema()

    pipeline = build_pipeline(config, cache, store)
    return Services(cache, store, pipeline, build_scheduler(pipeline, config))


def create_app(services: Optional[Services] = None, config: Optional[Settings] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Prebuilt components; Redis and SQL are connected at
            startup when None
        config: Settings; the global settings when None
    """
    config = config or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler for startup/shutdown events."""
        logger.info("Starting Vigil...")

        svc = services or await build_services(config)
        await svc.pipeline.threat_scorer.load_blacklist(config.ip_blacklist)
        app.state.cache = svc.cache
        app.state.store = svc.store
        app.state.pipeline = svc.pipeline
        app.state.scheduler = svc.scheduler
        if svc.scheduler is not None:
            svc.scheduler.start()

        logger.info("Vigil started successfully")

        yield

        logger.info("Shutting down Vigil...")
        if svc.scheduler is not None:
            await svc.scheduler.stop(timeout=config.shutdown_grace_seconds)
        # In-flight audit entries are flushed before the store closes
        await svc.pipeline.shutdown(config.shutdown_grace_seconds)
        await svc.cache.close()
        await svc.store.close()
        logger.info("Vigil shutdown complete")

    app = FastAPI(
        title="Vigil",
        description="Security event scoring, audit integrity and alerting",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if not config.is_production else None,
        redoc_url="/redoc" if not config.is_production else None,
        openapi_url="/openapi.json" if not config.is_production else None,
    )

    app.add_middleware(RequestSizeLimitMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    @app.get("/health")
    async def health_check(request: Request) -> dict[str, Any]:
        """Status of the cache, the document store and the scheduler."""
        health_status: dict[str, Any] = {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "version": __version__,
            "services": {},
        }

        for name, component in (("cache", request.app.state.cache), ("store", request.app.state.store)):
            if await component.ping():
                health_status["services"][name] = {"status": "healthy"}
            else:
                health_status["services"][name] = {"status": "unhealthy"}
                health_status["status"] = "degraded"

        scheduler = request.app.state.scheduler
        if scheduler is not None:
            health_status["scheduler"] = scheduler.status()
        health_status["audit_buffer"] = request.app.state.pipeline.audit_trail.buffer_size
        return health_status

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions securely."""
        logger.exception(f"Unhandled exception: {exc}")

        # Never expose internal error details in production
        if config.is_production:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "Internal server error",
                    "message": "An unexpected error occurred.",
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": str(exc),
                "type": type(exc).__name__,
            },
        )

    from vigil.api.routes import audit_router, events_router, metrics_router

    app.include_router(events_router, prefix="/api/v1/security", tags=["security"])
    app.include_router(metrics_router, prefix="/api/v1/metrics", tags=["metrics"])
    app.include_router(audit_router, prefix="/api/v1/audit", tags=["audit"])

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("vigil.main:app", host="0.0.0.0", port=8000, log_level=settings.log_level.lower())


if __name__ == "__main__":
    run()
