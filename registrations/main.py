"""
Main FastAPI application for Registrations Service.
Handles application startup, middleware, and routing.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import time

from registrations.core.config import config
from registrations.db.database import db_manager
from registrations.db.redis_client import redis_manager
from registrations.api.v1.router import router as api_router
from registrations.schemas.registration import ErrorResponse
from registrations.services.capacity_counter import CapacityCounter
from registrations.services.change_feed import RedisChangeFeed
from registrations.services.errors import ErrorCode, RegistrationError
from registrations.services.event_publisher import RegistrationEventPublisher
from registrations.services.registration_hub import RegistrationHub
from registrations.services.registration_store import SqlActivityStore, SqlRegistrationStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = {
    ErrorCode.EVENT_FULL: 409,
    ErrorCode.ALREADY_REGISTERED: 409,
    ErrorCode.NOT_AUTHENTICATED: 401,
    ErrorCode.EVENT_NOT_FOUND: 404,
    ErrorCode.GENERIC_ACTION: 503,
    ErrorCode.TRANSIENT_FETCH: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting Registrations Service...")

    try:
        # Initialize database
        await db_manager.initialize()
        logger.info("Database manager initialized")

        # Initialize Redis
        await redis_manager.initialize()
        logger.info("Redis manager initialized")

        registration_config = await config.get_registration_config()
        prefix = registration_config["change_channel_prefix"]

        publisher = None
        if registration_config["enable_change_publishing"]:
            publisher = RegistrationEventPublisher(redis_manager, channel_prefix=prefix)

        # Start change feed
        change_feed = RedisChangeFeed(redis_manager, channel_prefix=prefix)
        await change_feed.start()
        logger.info("Change feed started")

        app.state.change_feed = change_feed
        app.state.registration_hubs = {}
        for store in (
            SqlRegistrationStore(db_manager, publisher=publisher),
            SqlActivityStore(db_manager, publisher=publisher),
        ):
            app.state.registration_hubs[store.kind] = RegistrationHub(
                store,
                CapacityCounter(store, change_feed),
                submit_timeout=registration_config["submit_timeout_seconds"],
                max_machines=registration_config["max_tracked_registrations"]
            )

        logger.info("Registrations Service started successfully")

    except Exception as e:
        logger.error(f"Failed to start Registrations Service: {e}")
        raise

    yield

    # Shutdown
    logger.info("Shutting down Registrations Service...")

    try:
        for hub in app.state.registration_hubs.values():
            await hub.close()
        app.state.registration_hubs = None

        await app.state.change_feed.stop()
        logger.info("Change feed stopped")

        # Close database connections
        await db_manager.close()
        logger.info("Database connections closed")

        # Close Redis connections
        await redis_manager.close()
        logger.info("Redis connections closed")

        logger.info("Registrations Service shut down successfully")

    except Exception as e:
        logger.error(f"Error during shutdown: {e}")


# Create FastAPI application
app = FastAPI(
    title="Registrations Service",
    description="Event and activity registration with live capacity tracking for the venue",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Request timing middleware
@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    """Add request processing time to response headers."""
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response


@app.exception_handler(RegistrationError)
async def registration_exception_handler(request: Request, exc: RegistrationError):
    """Render registration flow errors with their user-facing message."""
    status_code = ERROR_STATUS_CODES.get(exc.code, 503)
    logger.info(f"Registration error on {request.url.path}: {exc}")

    body = ErrorResponse(
        error_code=exc.code.value,
        error_message=exc.message,
        retryable=exc.retryable
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error_code": "INTERNAL_SERVER_ERROR",
            "error_message": "An internal server error occurred",
            "retryable": False,
            "timestamp": datetime.now().isoformat()
        }
    )


# HTTP exception handler
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """HTTP exception handler for FastAPI HTTP exceptions."""
    logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error_code": "HTTP_ERROR",
            "error_message": exc.detail,
            "retryable": exc.status_code == 503,
            "timestamp": datetime.now().isoformat()
        },
        headers=exc.headers
    )


# Include API router
app.include_router(api_router)


# Root endpoint
@app.get("/")
async def root():
    """Root endpoint with service information."""
    return {
        "service": "Registrations Service",
        "version": "1.0.0",
        "status": "running",
        "description": "Event registration and live capacity tracking",
        "endpoints": {
            "api": "/api/v1",
            "health": "/api/v1/health",
            "docs": "/docs",
            "redoc": "/redoc"
        }
    }


# Health check endpoint (simple)
@app.get("/health")
async def simple_health_check():
    """Simple health check endpoint."""
    return {"status": "healthy", "service": "registrations"}
