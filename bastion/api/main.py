"""
BASTION API - Main Application Entry Point

FastAPI backend for access control, audit trail and security operations.

Application-owned services live on ``app.state`` and are built eagerly
in ``create_app`` so tests can replace them before the first request:

- ``metrics``: request and audit counters
- ``broadcaster``: pushes SOC events to the monitoring room
- ``audit_recorder``: fire-and-forget audit writer
- ``login_rate_limiter``: per-address login attempt limiter
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bastion.api.audit.context import CORRELATION_ID_HEADER, REQUEST_ID_HEADER, configure_logging
from bastion.api.audit.middleware import RequestContextMiddleware
from bastion.api.audit.recorder import AuditRecorder
from bastion.api.config import settings
from bastion.api.db.session import init_db, close_db
from bastion.api.errors import register_exception_handlers
from bastion.api.services.metrics import RequestMetrics
from bastion.api.services.rate_limit import SlidingWindowRateLimiter
from bastion.api.soc.anomaly import AnomalyDetector
from bastion.api.websocket.broadcaster import SocBroadcaster
from bastion.api.websocket.manager import init_websocket_manager, close_websocket_manager


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    configure_logging(settings.LOG_LEVEL)
    await init_db()
    await init_websocket_manager()
    yield
    # Shutdown: flush queued audit rows and broadcasts before the pool goes away
    await app.state.audit_recorder.drain()
    await app.state.broadcaster.drain()
    await close_websocket_manager()
    await close_db()


def init_services(app: FastAPI) -> None:
    """Attach the application-owned services to ``app.state``."""
    app.state.metrics = RequestMetrics()
    app.state.broadcaster = SocBroadcaster()
    app.state.audit_recorder = AuditRecorder(
        broadcaster=app.state.broadcaster,
        detector=AnomalyDetector(),
        metrics=app.state.metrics,
        enabled=settings.AUDIT_ENABLED,
        max_error_len=settings.AUDIT_ERROR_MESSAGE_MAX_LENGTH,
    )
    app.state.login_rate_limiter = SlidingWindowRateLimiter(settings.LOGIN_RATE_LIMIT_PER_MINUTE)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="BASTION - Permissions, audit trail and SOC API",
        docs_url="/api/docs" if settings.DEBUG else None,
        redoc_url="/api/redoc" if settings.DEBUG else None,
        lifespan=lifespan,
    )
    init_services(app)

    # Middleware (last added is outermost, so preflight responses carry the correlation id)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[CORRELATION_ID_HEADER, REQUEST_ID_HEADER],
    )
    app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)

    from bastion.api.auth.routes import router as auth_router
    from bastion.api.permissions.routes import router as permissions_router
    from bastion.api.soc.routes import router as soc_router
    from bastion.api.websocket.routes import router as websocket_router

    app.include_router(auth_router, prefix="/api/v1/auth", tags=["Authentication"])
    app.include_router(permissions_router, prefix="/api/v1/permissions", tags=["Permissions"])
    app.include_router(soc_router, prefix="/api/v1/soc", tags=["SOC"])
    app.include_router(websocket_router, prefix="/api/v1", tags=["WebSocket"])

    @app.get("/api/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.APP_VERSION,
            "service": settings.APP_NAME,
            "audit": {
                "enabled": app.state.audit_recorder.enabled,
                "pending": app.state.audit_recorder.pending,
            },
        }

    return app


app = create_app()


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "bastion.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_config=None,
    )


if __name__ == "__main__":
    run()
