from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from contextlib import asynccontextmanager
from slowapi.errors import RateLimitExceeded
import asyncio
import time
import uuid

from .config import settings
from .database import create_tables
from .errors import ReconciliationError
from .services.booking_events import BookingEventBus
from .services.credential_manager import CredentialManager
from .services.outbox_worker import run_outbox_cycle
from .services.provider_clients import build_clients
from .services.scheduler import MaintenanceScheduler
from .services.signature_verifier import SignatureVerifier
from .utils.logging_config import setup_logging, get_logger, set_request_context, clear_request_context
from .utils.rate_limiter import limiter

from .routers import webhooks, bookings, admin, health

logger = get_logger("app.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    setup_logging(settings.log_level, settings.log_json)

    logger.info(f"Starting booking reconciler ({settings.environment})")

    create_tables()

    app.state.credentials = CredentialManager.from_settings(settings)
    app.state.event_bus = BookingEventBus()
    app.state.verifier = SignatureVerifier.from_settings(settings)
    app.state.provider_clients = build_clients(settings, app.state.credentials)

    # ==========================================
    # BACKGROUND SIDE-EFFECT WORKER
    # ==========================================
    worker_task = None
    worker_running = True
    scheduler = MaintenanceScheduler(app.state.credentials, app.state.event_bus, settings)

    async def run_outbox_worker():
        """Execute due outbox entries (refunds, cancellations) off the request path"""
        poll_interval = settings.worker_poll_interval
        logger.info(f"Outbox worker started (interval: {poll_interval}s, batch: {settings.worker_batch_size})")

        while worker_running:
            try:
                await asyncio.to_thread(run_outbox_cycle, app.state.provider_clients, settings)
            except Exception as e:
                logger.error(f"Outbox worker error: {e}")

            await asyncio.sleep(poll_interval)

    if settings.worker_enabled:
        worker_task = asyncio.create_task(run_outbox_worker())
        scheduler.start()
    else:
        logger.warning("Background worker disabled, run worker.py separately")

    yield

    # Shutdown
    logger.info("Shutting down booking reconciler")
    worker_running = False
    scheduler.stop()
    if worker_task:
        worker_task.cancel()
        try:
            await worker_task
        except asyncio.CancelledError:
            pass
        logger.info("Outbox worker stopped")


# Create FastAPI app
app = FastAPI(
    title="Booking Reconciler API",
    description="Webhook-driven reconciliation of scheduling and payment events into bookings",
    version="1.0.0",
    lifespan=lifespan
)

# Rate limiter state
app.state.limiter = limiter


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


# Request ID Middleware
class RequestIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request.state.request_id = request_id
        set_request_context(request_id, request.headers.get("X-User-Id"))
        start_time = time.time()
        try:
            response = await call_next(request)
            if not request.url.path.startswith("/health"):
                logger.api_request(
                    request.method,
                    request.url.path,
                    response.status_code,
                    round((time.time() - start_time) * 1000, 2)
                )
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(RequestIdMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


# Rate limit handler
@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"success": False, "code": "rate_limited", "message": "Too many requests, try again later"}
    )


@app.exception_handler(ReconciliationError)
async def reconciliation_error_handler(request: Request, exc: ReconciliationError):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"success": False, "code": "invalid_request", "message": str(exc.errors())[:500]}
    )


# Include routers
app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(bookings.router)
app.include_router(admin.router)


@app.get("")
@app.get("/")
async def root():
    return {
        "message": "Booking Reconciler API",
        "version": "1.0.0",
        "docs": "/docs",
        "status": "running"
    }
