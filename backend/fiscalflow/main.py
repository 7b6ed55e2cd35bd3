"""FastAPI application entry point."""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from fiscalflow.api.v1 import jobs
from fiscalflow.core.config import settings
from fiscalflow.core.logging import get_logger, setup_logging
from fiscalflow.core.tracing import setup_tracing
from fiscalflow.pipeline.runtime import build_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle hooks."""
    setup_logging("DEBUG" if settings.APP_ENV == "development" else settings.LOG_LEVEL)
    setup_tracing()
    logger = get_logger("startup")

    runtime = build_runtime()
    runtime.start()
    app.state.runtime = runtime
    logger.info(
        "Application starting",
        env=settings.APP_ENV,
        execution_mode=settings.PIPELINE_EXECUTION_MODE,
        job_store=settings.JOB_STORE_BACKEND,
    )
    yield
    logger.info("Application shutting down")
    await runtime.aclose()


app = FastAPI(
    title="FiscalFlow API",
    description="Event-driven fiscal document processing pipeline",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

API_PREFIX = "/api/v1"
app.include_router(jobs.router, prefix=API_PREFIX)


@app.get("/health", tags=["Health"])
async def health_check() -> dict[str, str]:
    """Public health-check endpoint."""
    return {"status": "ok", "env": settings.APP_ENV}
