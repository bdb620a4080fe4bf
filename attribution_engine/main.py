"""
Multi-Touch Attribution Engine
Main FastAPI application
"""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from attribution_engine import __version__
from attribution_engine.api import alerts, experiments, health, registry, reports, touchpoints
from attribution_engine.config import get_settings
from attribution_engine.services.engine import AttributionEngine
from attribution_engine.utils.logger import log

settings = get_settings()


def create_app(engine: Optional[AttributionEngine] = None) -> FastAPI:
    """
    Build the API application

    Without an engine, the lifespan creates one on the configured database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown events"""
        log.info(f"Starting {settings.app_name} v{__version__}")
        log.info(f"Environment: {settings.environment}")

        if engine is None:
            from attribution_engine.models.base import init_db
            init_db()
            log.info("Database initialized")
            app.state.engine = AttributionEngine()
        else:
            app.state.engine = engine

        try:
            app.state.engine.start()
        except Exception as e:
            log.error(f"Scheduler startup error: {str(e)}")

        yield

        app.state.engine.shutdown()
        log.info("Shutting down application")

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        description="""
        Multi-touch marketing attribution

        - Ingests touchpoints and builds customer journeys
        - Splits conversion credit with interchangeable attribution models
        - Reports channel ROAS, synergies and budget recommendations
        - Runs champion/challenger experiments between models
        - Raises alerts on model drift and attribution shifts
        """,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router)
    app.include_router(touchpoints.router)
    app.include_router(reports.router)
    app.include_router(registry.router)
    app.include_router(experiments.router)
    app.include_router(alerts.router)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "attribution_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug
    )
