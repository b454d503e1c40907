"""
Orders Service
Order placement, payment settlement, fulfillment tracking and refunds
"""

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import os
import subprocess
import traceback

from shared.core import ServiceHealth, setup_logging, RequestLoggingMiddleware, get_logger
from marketplace_orders.core_settings import get_settings
from marketplace_orders.api.routes import router as orders_router, notifications_router
from marketplace_orders.application.errors import OrderServiceError, GatewayUnavailable
from marketplace_orders.infrastructure.db import engine, init_models, SessionLocal
from marketplace_orders.infrastructure.gateway import RazorpayGateway
from marketplace_orders.infrastructure.locks import build_order_locks
from marketplace_orders.infrastructure.notifications import (
    NotificationDispatcher,
    NotificationSettingsStore,
    WebSocketNotifier,
)

SERVICE_NAME = "orders-service"
SERVICE_DESCRIPTION = "Marketplace order placement and payment settlement service"

settings = get_settings()
SERVICE_VERSION = settings.SERVICE_VERSION

setup_logging(
    service_name=SERVICE_NAME,
    level=settings.LOG_LEVEL
)

logger = get_logger(__name__)

def run_migrations():
    result = subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=os.path.join(os.path.dirname(__file__), ".."),
        capture_output=True,
        text=True,
        check=False
    )
    if result.returncode != 0:
        logger.warning(f"Migration output: {result.stderr}")
    else:
        logger.info("Database migrations completed")

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    logger.info(f"Starting {SERVICE_NAME} version {SERVICE_VERSION}")

    if settings.RUN_MIGRATIONS:
        logger.info("Running database migrations")
        try:
            run_migrations()
        except OSError as e:
            logger.error(f"Migration error: {e}")

    init_models()
    logger.info("Database models initialized")

    notifier = WebSocketNotifier()
    settings_store = NotificationSettingsStore(SessionLocal, ttl=settings.NOTIFICATION_SETTINGS_TTL_SECONDS)
    dispatcher = NotificationDispatcher(notifier, settings_store, maxsize=settings.NOTIFICATION_QUEUE_SIZE)
    dispatcher.start()

    app.state.settings = settings
    app.state.gateway = RazorpayGateway.from_settings(settings)
    app.state.order_locks = build_order_locks(settings)
    app.state.notifier = notifier
    app.state.settings_store = settings_store
    app.state.dispatcher = dispatcher

    logger.info(f"{SERVICE_NAME} started successfully")

    yield

    logger.info(f"Shutting down {SERVICE_NAME}")
    dispatcher.stop()
    app.state.gateway.close()

app = FastAPI(
    title=SERVICE_NAME,
    description=SERVICE_DESCRIPTION,
    version=SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(RequestLoggingMiddleware)

def _error_body(exc: Exception, detail: str, code: str, retryable: bool) -> dict:
    body = {"detail": detail, "code": code, "retryable": retryable}
    if not settings.is_production:
        body["stack"] = traceback.format_exception(type(exc), exc, exc.__traceback__)
    return body

@app.exception_handler(OrderServiceError)
async def order_service_error_handler(request: Request, exc: OrderServiceError):
    log = logger.error if exc.status_code >= 500 else logger.warning
    log(
        f"{type(exc).__name__}: {exc.message}",
        extra={'extra_fields': {'path': request.url.path, 'status_code': exc.status_code, 'code': exc.code}}
    )
    headers = {"Retry-After": "1"} if isinstance(exc, GatewayUnavailable) else None
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc, exc.message, exc.code, exc.retryable),
        headers=headers,
    )

@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    return JSONResponse(status_code=500, content=_error_body(exc, "Internal server error", "internal_error", False))

health_service = ServiceHealth(
    SERVICE_NAME,
    SERVICE_VERSION,
    engine=engine,
    redis_url=settings.REDIS_URL,
    required_settings=lambda: {
        "GATEWAY_KEY_ID": settings.GATEWAY_KEY_ID,
        "GATEWAY_KEY_SECRET": settings.GATEWAY_KEY_SECRET,
    },
)
app.include_router(health_service.create_health_router())

app.include_router(orders_router)
app.include_router(notifications_router)

@app.get("/")
async def root():
    return {
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "status": "running",
        "docs": "/api/docs"
    }
