import asyncio
import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .database import SessionLocal, create_tables
from .exceptions import BookingEngineError
from .models.booking_history import serialize_for_json
from .routers import bookings, health, notifications, outbox, payments
from .services.deadline_scheduler import start_deadline_scheduler, stop_deadline_scheduler
from .services.outbox_worker import OutboxProcessor
from .utils.logging_config import clear_request_context, set_request_context, setup_logging
from .utils.rate_limiter import limiter

logger = logging.getLogger(__name__)
worker_logger = logging.getLogger("outbox_worker")


def drain_outbox_once() -> None:
    db = SessionLocal()
    try:
        processor = OutboxProcessor(db)
        processor.requeue_stale_events()
        done, failed = processor.process_batch(limit=settings.worker_batch_size)
        if done or failed:
            worker_logger.info(f"Outbox: {done} ok / {failed} failed")
    except Exception as e:
        db.rollback()
        worker_logger.error(f"Outbox drain failed: {e}")
    finally:
        db.close()


async def outbox_loop(stop: asyncio.Event) -> None:
    """Pick up entries the inline drain left behind (retries, deferred promotions)."""
    worker_logger.info(
        f"Outbox worker started (interval: {settings.worker_poll_interval}s, "
        f"batch: {settings.worker_batch_size})"
    )
    while not stop.is_set():
        await asyncio.to_thread(drain_outbox_once)
        try:
            await asyncio.wait_for(stop.wait(), timeout=settings.worker_poll_interval)
        except asyncio.TimeoutError:
            pass
    worker_logger.info("Outbox worker stopped")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level, json_format=settings.log_json)
    logger.info(f"Starting fleetlink booking engine ({settings.environment})")
    logger.info(f"CORS origins: {settings.cors_origins}")

    create_tables()

    stop = asyncio.Event()
    worker_task = None
    if settings.worker_enabled:
        worker_task = asyncio.create_task(outbox_loop(stop))
    else:
        logger.warning("In-process outbox worker disabled, run worker.py")

    if settings.deadline_sweep_enabled:
        start_deadline_scheduler()

    yield

    logger.info("Shutting down fleetlink booking engine")
    if settings.deadline_sweep_enabled:
        stop_deadline_scheduler()
    if worker_task is not None:
        stop.set()
        await worker_task


app = FastAPI(
    title="Fleetlink Booking Engine",
    description="Vehicle rental booking lifecycle and payment instructions",
    version=health.VERSION,
    lifespan=lifespan
)
app.state.limiter = limiter


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags every log line of a request with its id and the calling actor."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request.state.request_id = request_id
        set_request_context(request_id, request.headers.get("X-Actor-Id"))
        try:
            response = await call_next(request)
        finally:
            clear_request_context()
        response.headers["X-Request-ID"] = request_id
        return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(SecurityHeadersMiddleware)


@app.exception_handler(BookingEngineError)
async def booking_engine_error_handler(request: Request, exc: BookingEngineError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=serialize_for_json(exc.to_dict()))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "detail": "Too many requests, try again later"}
    )


for module in (bookings, payments, notifications, outbox, health):
    app.include_router(module.router)


@app.get("")
@app.get("/")
async def root():
    return {
        "message": "Fleetlink booking engine",
        "version": health.VERSION,
        "docs": "/docs",
        "status": "running"
    }
