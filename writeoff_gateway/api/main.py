"""FastAPI application factory"""

from typing import Optional

from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from writeoff_gateway.api.middleware import RequestIDMiddleware, MetricsMiddleware
from writeoff_gateway.api.v1 import classification, sync, transactions
from writeoff_gateway.config import Settings, get_settings
from writeoff_gateway.infrastructure.database.session import create_db_engine, create_session_factory
from writeoff_gateway.infrastructure.observability.logging import setup_logging


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application"""
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.service_name)

    app = FastAPI(
        title="Write-off Gateway",
        description="Transaction sync and tax-deductibility classification service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.state.settings = settings
    app.state.engine = create_db_engine(settings.database_url)
    app.state.session_factory = create_session_factory(app.state.engine)

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)

    # Health check endpoint
    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name}

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # Register API routers
    app.include_router(sync.router, prefix="/v1", tags=["sync"])
    app.include_router(classification.router, prefix="/v1", tags=["classification"])
    app.include_router(transactions.router, prefix="/v1", tags=["transactions"])

    return app
