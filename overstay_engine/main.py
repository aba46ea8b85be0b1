# ================================
# MAIN APPLICATION (main.py)
# ================================

from datetime import datetime, timezone
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from overstay_engine.config import settings
from overstay_engine.core.exceptions import AppException
from overstay_engine.core.middleware import RequestContextMiddleware, AuditMiddleware
from overstay_engine.api.v1 import v1_router

import logging
import uvicorn

# ================================
# LOGGING CONFIGURATION
# ================================

logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ================================
# APPLICATION LIFECYCLE
# ================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""

    # Startup
    logger.info(f"Starting {settings.APP_NAME}")
    await startup_tasks()

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.APP_NAME}")
    await shutdown_tasks()

async def startup_tasks():
    """Tasks to run on application startup"""

    await initialize_database()

    await initialize_payment_processor()

    await initialize_background_scheduler()

async def shutdown_tasks():
    """Tasks to run on application shutdown"""

    await stop_background_scheduler()

    from overstay_engine.core.database import engine
    engine.dispose()

    logger.info("Application shutdown complete")

async def initialize_database():
    """Check the database connection"""
    try:
        from overstay_engine.core.database import engine
        from sqlalchemy import text

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        logger.info("Database connection established")

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise

async def initialize_payment_processor():
    """Report whether penalty charging is available"""
    from overstay_engine.services.stripe_service import StripePaymentService

    if StripePaymentService().is_configured():
        logger.info(f"Stripe configured, penalties charged in {settings.PENALTY_CURRENCY.upper()}")
    else:
        logger.warning("STRIPE_SECRET_KEY not set, penalty charges will be rejected")

async def initialize_background_scheduler():
    """Initialize and start the background task scheduler"""
    try:
        from overstay_engine.core.scheduler import scheduler, initialize_scheduler

        initialize_scheduler()

        await scheduler.start()

        logger.info("Background scheduler started successfully")

    except Exception as e:
        logger.error(f"Failed to start background scheduler: {e}")
        # Don't raise - the API works without the scheduler

async def stop_background_scheduler():
    """Stop the background task scheduler"""
    try:
        from overstay_engine.core.scheduler import scheduler

        await scheduler.stop()

    except Exception as e:
        logger.error(f"Error stopping background scheduler: {e}")

# ================================
# FASTAPI APPLICATION
# ================================

app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description="Detection, review and collection of storage overstay penalties",
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url="/redoc" if settings.DEBUG else None,
    lifespan=lifespan
)

# ================================
# MIDDLEWARE CONFIGURATION
# ================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Process-Time"]
)

app.add_middleware(AuditMiddleware)

# Request context (last added runs first)
app.add_middleware(RequestContextMiddleware)

# ================================
# EXCEPTION HANDLERS
# ================================

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    """Handler for application exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_code": exc.error_code,
            "request_id": getattr(request.state, "request_id", None)
        }
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handler for standard HTTP exceptions"""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "request_id": getattr(request.state, "request_id", None)
        }
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handler for unhandled exceptions"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error" if not settings.DEBUG else str(exc),
            "error_code": "INTERNAL_ERROR",
            "request_id": getattr(request.state, "request_id", None)
        }
    )

# ================================
# ROUTES
# ================================

app.include_router(v1_router, prefix="/api")

@app.get("/health", tags=["Health"])
async def health_check():
    """Basic health check endpoint"""
    return {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": "1.0.0"
    }

@app.get("/health/detailed", tags=["Health"])
async def detailed_health_check():
    """Health check with database and scheduler state"""
    health_status = {
        "status": "healthy",
        "service": settings.APP_NAME,
        "version": "1.0.0",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {}
    }

    try:
        from overstay_engine.core.database import engine
        from sqlalchemy import text

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        health_status["checks"]["database"] = "healthy"
    except Exception:
        health_status["checks"]["database"] = "unhealthy"
        health_status["status"] = "degraded"

    from overstay_engine.core.scheduler import scheduler, OVERSTAY_DETECTION_TASK
    task = scheduler.get_task_status(OVERSTAY_DETECTION_TASK)
    health_status["checks"]["overstay_detection"] = (
        "not_scheduled" if "error" in task else
        {key: task[key] for key in ("enabled", "running", "last_run", "run_count", "error_count")}
    )

    return health_status

if __name__ == "__main__":
    uvicorn.run(
        "overstay_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
