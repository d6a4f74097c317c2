from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog
import time
import uvicorn

from donation_service.core.config import get_settings
from donation_service.core.errors import DonationError
from donation_service.core.logging import configure_logging
from donation_service.database.database import init_db, close_db
from donation_service.api.donation import router as donation_router
from donation_service.api.admin import router as admin_router
from donation_service.kafka.producer import kafka_producer
from donation_service.middleware.tracing import init_tracing
from donation_service.middleware.metrics import MetricsMiddleware, metrics_endpoint
from donation_service.middleware.logging import logging_middleware

settings = get_settings()

# Setup structured logging
configure_logging(settings.debug)

logger = structlog.get_logger(__name__)

# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Yayasan Insan Prihatin donation lifecycle API",
    version="1.0.0",
    debug=settings.debug
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.site_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize tracing (must be done before startup events)
init_tracing(app)

# Add metrics middleware
app.add_middleware(MetricsMiddleware)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Logging middleware with trace correlation"""
    return await logging_middleware(request, call_next)


@app.exception_handler(DonationError)
async def donation_error_handler(request: Request, exc: DonationError):
    """Render domain errors with their HTTP status"""
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "Request failed",
        error=exc.message,
        code=exc.code,
        status_code=exc.status_code,
        method=request.method,
        path=request.url.path
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(
        "Unhandled exception",
        error=str(exc),
        method=request.method,
        url=str(request.url)
    )

    return JSONResponse(
        status_code=500,
        content={
            "message": "Internal server error",
            "detail": "An unexpected error occurred"
        }
    )


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup"""
    logger.info("Starting Donation Service", service_name=settings.service_name)

    try:
        init_db()
        logger.info("Database initialized")

        if settings.kafka_enabled:
            await kafka_producer.start()
            logger.info("Kafka producer initialized")
        else:
            logger.info("Kafka disabled, donation events will not be published")

        logger.info("Application startup completed successfully")
    except Exception as e:
        logger.error("Failed to initialize application", error=str(e))
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup on application shutdown"""
    logger.info("Shutting down Donation Service")

    try:
        await kafka_producer.stop()
        close_db()
        logger.info("Application shutdown completed successfully")
    except Exception as e:
        logger.error("Error during application shutdown", error=str(e))


# Health check endpoints
@app.get("/health")
async def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "service": settings.service_name,
        "timestamp": time.time()
    }


@app.get("/metrics")
async def metrics(request: Request):
    """Prometheus metrics endpoint"""
    return await metrics_endpoint(request)


@app.get("/health/ready")
async def readiness_check():
    """Readiness check with database connectivity"""
    try:
        from donation_service.database.database import engine
        from sqlalchemy import text

        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return {
            "status": "ready",
            "service": settings.service_name,
            "database": "connected",
            "timestamp": time.time()
        }
    except Exception as e:
        logger.error("Readiness check failed", error=str(e))
        return JSONResponse(
            status_code=503,
            content={
                "status": "not ready",
                "service": settings.service_name,
                "database": "disconnected",
                "error": str(e),
                "timestamp": time.time()
            }
        )


# Include routers
app.include_router(donation_router)
app.include_router(admin_router)


if __name__ == "__main__":
    uvicorn.run(
        "donation_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug"
    )
