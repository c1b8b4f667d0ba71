import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from journeyflow.db.init import init_db
from journeyflow.api.journeys import router as journeys_router
from journeyflow.api.tracking import router as tracking_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=== APPLICATION STARTUP ===")
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)
        raise
    logger.info("Celery worker and beat should be running in separate processes.")
    logger.info("=== APPLICATION STARTUP COMPLETE ===")

    yield

    logger.info("=== APPLICATION SHUTDOWN ===")


app = FastAPI(title="Journeyflow", lifespan=lifespan)

# For production, restrict origins to the builder's domain.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
async def health_check():
    """Health check with database and worker status"""
    try:
        from journeyflow.db.init import get_database
        await get_database().command("ping")
        db_status = "healthy"
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"

    try:
        from journeyflow.celery_config import celery_app
        active_workers = celery_app.control.inspect(timeout=1.0).active()
        celery_status = "healthy" if active_workers else "no_workers"
    except Exception as e:
        celery_status = f"unhealthy: {str(e)}"

    return {
        "status": "healthy" if db_status == "healthy" and celery_status == "healthy" else "degraded",
        "database": db_status,
        "celery": celery_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


# Include API routers
app.include_router(journeys_router, prefix="/api", tags=["journeys"])
app.include_router(tracking_router, prefix="/api", tags=["tracking"])
