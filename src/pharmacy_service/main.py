"""
Pharmacy Service - Main FastAPI Application
"""
from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from datetime import datetime
from sqlalchemy import text
import logging

from pharmacy_service.common_logging import setup_logging
from pharmacy_service.common_instrumentation import (
    setup_opentelemetry,
    instrument_fastapi,
    instrument_sqlalchemy,
)
from pharmacy_service.api import catalog, deps, doctors, orders, payments, users
from pharmacy_service.config import settings
from pharmacy_service.db import database
from pharmacy_service.models.schemas import HealthResponse
from pharmacy_service.services.events import broadcaster
from pharmacy_service.services.notifications import SesEmailSender, SnsSmsSender
from pharmacy_service.services.payment_gateway import StripeGatewayClient
from pharmacy_service.services.recaptcha import RecaptchaClient
from pharmacy_service.services.storage import S3ObjectStorage

SERVICE_VERSION = "1.0.0"

# Setup logging
setup_logging(
    service_name=settings.service_name,
    log_level=settings.log_level,
    log_format=settings.log_format
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events"""
    # Startup
    logger.info(f"Starting {settings.service_name}")
    logger.info(f"Environment: {settings.environment}")

    # Initialize OpenTelemetry
    if settings.otel_enabled:
        setup_opentelemetry(
            service_name=settings.otel_service_name,
            otlp_endpoint=settings.otel_endpoint,
            enabled=settings.otel_enabled
        )
        logger.info("OpenTelemetry initialized")

    # Initialize database
    try:
        engine = database.init_database(settings.database_url)
        database.create_tables()
        logger.info("Database initialized successfully")

        if settings.otel_enabled:
            instrument_sqlalchemy(engine)

    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise

    # Outbound clients
    aws = {
        "region": settings.aws_region,
        "aws_access_key_id": settings.aws_access_key_id,
        "aws_secret_access_key": settings.aws_secret_access_key,
    }
    if not settings.stripe_secret_key:
        logger.warning("No Stripe secret key configured; payment calls will fail")
    gateway = StripeGatewayClient(settings.stripe_secret_key, base_url=settings.stripe_api_base)
    deps.payment_gateway = gateway
    deps.email_sender = SesEmailSender(settings.email_from, **aws)
    deps.sms_sender = SnsSmsSender(enabled=settings.sms_enabled, **aws)
    deps.object_storage = S3ObjectStorage(settings.s3_bucket_name, **aws)
    if settings.recaptcha_secret_key:
        deps.recaptcha_client = RecaptchaClient(settings.recaptcha_secret_key)
    logger.info("Payment, notification and storage clients initialized")

    logger.info(f"{settings.service_name} started successfully")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.service_name}")
    await gateway.close()
    if deps.recaptcha_client:
        await deps.recaptcha_client.close()


# Create FastAPI app
app = FastAPI(
    title="Pharmacy Service",
    description="Pharmacy ordering: catalog, checkout, payments and order fulfillment",
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Instrument FastAPI with OpenTelemetry
if settings.otel_enabled:
    instrument_fastapi(app)

# Include API routes
app.include_router(users.router)
app.include_router(catalog.router)
app.include_router(doctors.router)
app.include_router(orders.router)
app.include_router(payments.router)


@app.websocket("/ws")
async def live_events(websocket: WebSocket):
    """Live order events: newOrder, payment, orderStatusUpdate"""
    await broadcaster.connect(websocket)
    try:
        while True:
            # Clients only listen; drain anything they send
            await websocket.receive_text()
    except WebSocketDisconnect:
        broadcaster.disconnect(websocket)


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Liveness check: the process is up"""
    return HealthResponse(
        status="healthy",
        service=settings.service_name,
        version=SERVICE_VERSION,
        timestamp=datetime.utcnow(),
    )


@app.get("/ready")
async def readiness_check():
    """Readiness check: the database answers"""
    try:
        db = database.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        return {
            "status": "ready",
            "service": settings.service_name,
            "database": "connected",
            "timestamp": datetime.utcnow().isoformat()
        }
    except Exception as e:
        logger.error(f"Readiness check failed: {e}")
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "service": settings.service_name,
                "database": "disconnected",
                "timestamp": datetime.utcnow().isoformat()
            }
        )


@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "service": settings.service_name,
        "version": SERVICE_VERSION,
        "docs": "/docs",
        "health": "/health",
        "ready": "/ready"
    }


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed requests are client errors: 400 with field detail"""
    logger.info(f"Rejected request to {request.url.path}: {len(exc.errors())} validation errors")
    return JSONResponse(
        status_code=400,
        content={"detail": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "pharmacy_service.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
