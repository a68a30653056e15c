"""
Timeslot Booking API - Main Application Entry Point

Ticket sales for capacity-limited timeslots, paid through Vipps ePayment:
- Atomic capacity reservation with a single conditional UPDATE
- Asynchronous payment reconciliation via idempotent webhooks
- Cancellation with a durable, retryable refund queue
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from slotbooking.api.middleware import RequestLoggingMiddleware
from slotbooking.api.router import api_router
from slotbooking.core.config import get_settings
from slotbooking.core.exceptions import SlotBookingError
from slotbooking.core.logging import get_logger, setup_logging
from slotbooking.core.metrics import metrics_endpoint
from slotbooking.db.session import SessionLocal, engine
from slotbooking.infrastructure.email_client import ResendEmailClient
from slotbooking.infrastructure.redis_client import close_redis, get_redis, get_redis_status
from slotbooking.infrastructure.vipps_client import AccessTokenCache, VippsClient
from slotbooking.services.notification_service import NotificationDispatcher

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    # One token cache per process; every request shares the gateway client.
    app.state.vipps_client = VippsClient.from_settings(settings, AccessTokenCache())
    app.state.email_client = ResendEmailClient(settings)
    app.state.notifier = NotificationDispatcher(SessionLocal, app.state.email_client)

    if settings.REDIS_ENABLED:
        if await get_redis():
            logger.info("redis_ready")
        else:
            logger.warning("redis_unavailable", message="Admission gate disabled")

    if not settings.VIPPS_WEBHOOK_SECRET:
        logger.warning("webhook_secret_missing", message="All webhook deliveries will be rejected")

    yield

    await app.state.vipps_client.aclose()
    await app.state.email_client.aclose()
    await close_redis()
    await engine.dispose()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Timeslot booking with Vipps payment reconciliation",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

# Routes
app.include_router(api_router)


@app.exception_handler(SlotBookingError)
async def domain_error_handler(request: Request, exc: SlotBookingError):
    log = logger.error if exc.status_code >= 500 else logger.info
    log("request_rejected", error=exc.code, detail=exc.message, context=exc.context)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": exc.message},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error("unhandled_error", error=str(exc), error_type=type(exc).__name__, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "internal_error", "detail": "Internal server error"},
    )


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint for Docker and load balancers."""
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "redis": await get_redis_status(),
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
def metrics():
    return metrics_endpoint()
