from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.router import api_router
from app.config import get_settings
from app.core.database import async_session_maker, close_db, init_db
from app.core.logging import configure_logging
from app.middleware import TelemetryMiddleware
from app.services.experiments.service import ExperimentService
from app.services.experiments.sql_store import SQLAlchemyExperimentStore

settings = get_settings()
logger = structlog.get_logger("app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    configure_logging()
    logger.info("application_starting", app=settings.APP_NAME, environment=settings.ENVIRONMENT)
    await init_db()

    service = ExperimentService(SQLAlchemyExperimentStore(async_session_maker))
    await service.start(run_monitor=settings.EXPERIMENT_MONITOR_ENABLED)
    app.state.experiment_service = service
    logger.info("application_started", monitor_enabled=settings.EXPERIMENT_MONITOR_ENABLED)

    yield

    # Shutdown
    logger.info("application_stopping")
    await service.close()
    await close_db()
    logger.info("application_stopped")


app = FastAPI(
    title=settings.APP_NAME,
    description="A/B testing engine: variant assignment, event tracking and significance testing",
    version="0.1.0",
    docs_url=f"{settings.API_V1_PREFIX}/docs",
    redoc_url=f"{settings.API_V1_PREFIX}/redoc",
    lifespan=lifespan,
)

# CORS middleware
if settings.CORS_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(TelemetryMiddleware)

# Include routers
app.include_router(api_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": "0.1.0",
        "environment": settings.ENVIRONMENT,
    }
