# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import asyncio
import logging
import sentry_sdk
from contextlib import asynccontextmanager, suppress
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from app.database import engine, Base, check_database
from app.routers import readiness, cognitive, revision, aggregation
from app.utils.cache import cache

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Initialize Sentry for error monitoring
sentry_dsn = os.getenv("SENTRY_DSN")
if sentry_dsn:
    sentry_sdk.init(
        dsn=sentry_dsn,
        traces_sample_rate=0.1,  # 10% of transactions for performance monitoring
        environment=os.getenv("ENVIRONMENT", "development"),
    )

# Create database tables
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler - runs on startup and shutdown."""
    scheduler_task = None

    if os.getenv("ENABLE_READINESS_AGG", "false").lower() == "true":
        from app.services.background_tasks import run_aggregation_scheduler
        scheduler_task = asyncio.create_task(run_aggregation_scheduler())
        logger.info("Readiness aggregation scheduler started")
    else:
        logger.info("Readiness aggregation disabled (ENABLE_READINESS_AGG is not true)")

    yield  # Application runs here

    if scheduler_task:
        scheduler_task.cancel()
        with suppress(asyncio.CancelledError):
            await scheduler_task
    logger.info("Shutting down...")


tags_metadata = [
    {
        "name": "readiness",
        "description": "Composite exam-readiness score, report, category breakdown and history.",
    },
    {
        "name": "cognitive",
        "description": "Error classification, cognitive profile, clinical error patterns and hot topics.",
    },
    {
        "name": "revision",
        "description": "Revision buckets, revision schedule, reminders and mastery tracking.",
    },
    {
        "name": "aggregation",
        "description": "Background aggregation job trigger and status.",
    },
]

app = FastAPI(
    title="Readiness Analytics API",
    description="""
## Adaptive Readiness & Cognitive Analytics Engine

Turns a stream of question attempts into:
- **Readiness** - IRT-weighted composite score (accuracy, stability, coverage, speed, consistency)
- **Cognitive profile** - error kinds and recurring weak categories
- **Smart revision** - prioritized revision buckets and a day-by-day schedule
    """,
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=tags_metadata,
)

ALLOWED_ORIGINS = [
    "http://localhost:3000",  # Frontend dev server
]

# Allow additional origins from environment
extra_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
if extra_origins:
    ALLOWED_ORIGINS.extend([o.strip() for o in extra_origins.split(",") if o.strip()])

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Requested-With", "Accept"],
)


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    """Store unreachable or failing: report as service unavailable."""
    logger.error(f"Database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": "Analytics store unavailable"})


# Include routers
app.include_router(readiness.router)
app.include_router(cognitive.router)
app.include_router(revision.router)
app.include_router(aggregation.router)


@app.get("/")
def root():
    return {
        "message": "Readiness Analytics API",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.get("/health")
def health_check():
    """Liveness plus a store ping; the cache backend is reported, never required."""
    database_ok = check_database()
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        "cache": cache.backend,
    }
