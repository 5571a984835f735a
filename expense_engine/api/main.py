"""FastAPI application factory"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from starlette.responses import Response

from expense_engine.api.middleware import RequestIDMiddleware, MetricsMiddleware
from expense_engine.api.v1 import bills, consolidation, jobs, proposed_bills, skip_rules, sync, transactions
from expense_engine.infrastructure.observability.logging import setup_logging
from expense_engine.services.scheduler import JobRunner, Scheduler
from expense_engine.config import settings

# Setup structured logging
setup_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the interval scheduler alongside the API when enabled"""
    scheduler = None
    if settings.scheduler_enabled:
        scheduler = Scheduler(JobRunner())
        scheduler.start()
    yield
    if scheduler is not None:
        await scheduler.stop()


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    app = FastAPI(
        title="Expense Engine",
        description="Recurring bill generation and transaction reconciliation service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

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
    app.include_router(bills.router, prefix="/v1", tags=["bills"])
    app.include_router(sync.router, prefix="/v1", tags=["sync"])
    app.include_router(transactions.router, prefix="/v1", tags=["transactions"])
    app.include_router(skip_rules.router, prefix="/v1", tags=["skip-rules"])
    app.include_router(consolidation.router, prefix="/v1", tags=["consolidation"])
    app.include_router(proposed_bills.router, prefix="/v1", tags=["proposed-bills"])
    app.include_router(jobs.router, prefix="/v1", tags=["jobs"])

    return app


app = create_app()
