"""Pulse — FastAPI Application Entry Point.

Metrics freshness, granularity and aggregation engine for the marketing
dashboard.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pulse.api.dashboard_routes import router as dashboard_router
from pulse.api.freshness_routes import router as freshness_router
from pulse.cache.query_cache import QueryCache
from pulse.connectors.fetch_provider import FetchProvider, HttpFetchProvider
from pulse.engine.dashboard import DashboardService
from pulse.engine.orchestrator import FreshnessService
from pulse.store.metric_store import MetricStore, SqlMetricStore
from pulse.core.logging import get_logger

logger = get_logger("main")

IS_SERVERLESS = bool(
    os.environ.get("VERCEL") or os.environ.get("AWS_LAMBDA_FUNCTION_NAME")
)


def _default_store() -> MetricStore:
    from pulse.database import engine, init_db, test_connection

    if test_connection(engine):
        try:
            init_db(engine)
        except Exception as e:
            logger.error(f"Table creation failed: {e}")
    else:
        logger.error("Database NOT connected — endpoints will fail")
    return SqlMetricStore(engine)


def create_app(
    store: Optional[MetricStore] = None,
    provider: Optional[FetchProvider] = None,
    cache: Optional[QueryCache] = None,
) -> FastAPI:
    """Build the app; collaborators left as None are created at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle."""
        logger.info("Pulse starting up...")
        logger.info(f"Environment: {'SERVERLESS' if IS_SERVERLESS else 'LOCAL'}")

        metric_store = store or _default_store()
        fetch_provider = provider or HttpFetchProvider()
        query_cache = cache or QueryCache()

        app.state.store = metric_store
        app.state.cache = query_cache
        app.state.freshness_service = FreshnessService(
            metric_store, fetch_provider, cache=query_cache
        )
        app.state.dashboard_service = DashboardService(metric_store, query_cache)
        yield
        await fetch_provider.close()
        logger.info("Pulse shut down")

    app = FastAPI(
        title="Pulse",
        description="Metrics freshness, granularity and aggregation engine: keeps a rolling window of analytics data at the right resolution and serves merged, chart-ready dashboards.",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(freshness_router)
    app.include_router(dashboard_router)

    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "pulse",
            "version": "1.0.0",
        }

    return app


app = create_app()
