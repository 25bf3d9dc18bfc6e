"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and startup/shutdown events.
"""

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text

import config.redis_client as redis_state
from config.database import AsyncSessionLocal, close_db, init_db
from config.redis_client import close_redis, init_redis
from config.settings import settings
from services.ai.router import router as ai_router
from services.booking.router import router as booking_router
from services.chat.router import router as chat_router
from services.geocoding.router import router as geocoding_router
from services.job.router import router as job_router
from services.payment.router import router as payment_router
from services.provider.router import router as provider_router
from services.provider.simulator import LiveTrafficSimulator
from services.search.router import router as search_router
from services.user.router import router as user_router
from shared.exceptions import FachowcyError, ValidationError


# ── Logging ──────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": settings.INSTANCE_NAME or "unknown",
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else settings.LOG_LEVEL.upper())


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} ({settings.APP_ENV})")

    await init_db()
    logger.info("Database connected")

    await init_redis()
    logger.info("Redis connected")

    if settings.SIMULATION_ENABLED:
        simulator = LiveTrafficSimulator(AsyncSessionLocal)
        app.state.simulator = simulator
        try:
            await simulator.start()
        except ValidationError as e:
            logger.warning(f"Live traffic simulation not started: {e.message}")

    yield

    simulator = getattr(app.state, "simulator", None)
    if simulator is not None:
        await simulator.stop()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## FachowcyNow API

Local-services marketplace:
- **Search**: geohash proximity search for professionals
- **Bookings**: lifecycle state machine with conditional updates
- **Jobs**: marketplace listings and proposals
- **Chat**: per-booking conversations with push notifications
- **AI**: job categorisation and booking assistant (Gemini)
- **Payments**: Razorpay orders, linked accounts and split payouts

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>` issued
by the identity provider.

### Roles
- `CLIENT`: book professionals, publish jobs, write reviews
- `PROFESSIONAL`: accept bookings, send proposals, receive payouts
- `ADMIN`: platform operations, traffic simulation
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware (outermost first) ───────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for unauthenticated requests.
        Authenticated traffic is limited upstream. Fails open when Redis is down.
        """
        skip_paths = {"/health", "/payments/webhook", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths or request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        client = redis_state.redis_client
        if client is not None:
            client_ip = request.client.host if request.client else "unknown"
            key = f"rate:unauth:{client_ip}"
            try:
                count = await client.incr(key)
                if count == 1:
                    await client.expire(key, 60)
            except Exception as e:
                logger.error(f"Rate limit check failed: {e}")
                count = 0

            if count > settings.RATE_LIMIT_UNAUTH_PER_MINUTE:
                logger.warning(f"Rate limit exceeded for IP {client_ip}")
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down."},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(FachowcyError)
    async def fachowcy_error_handler(request: Request, exc: FachowcyError):
        request_id = getattr(request.state, "request_id", None)
        log = logger.error if exc.status_code >= 500 else logger.info
        log(f"[{request_id}] {type(exc).__name__}: {exc.message} {exc.context}")
        return JSONResponse(
            status_code=exc.status_code,
            content={**exc.to_dict(), "request_id": request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose stack traces in production."""
        request_id = getattr(request.state, "request_id", None)
        logger.error(f"[{request_id}] Unhandled exception: {exc}", exc_info=True)
        detail = str(exc) if settings.DEBUG else "An internal server error occurred"
        return JSONResponse(
            status_code=500,
            content={"detail": detail, "code": "internal_error", "request_id": request_id},
        )

    # ── Routes ────────────────────────────────────────────────────

    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        checks = {"status": "ok", "version": settings.APP_VERSION}

        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            checks["database"] = "error"
            checks["status"] = "degraded"

        try:
            if redis_state.redis_client is None:
                raise RuntimeError("Redis not initialized")
            await redis_state.redis_client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            checks["status"] = "degraded"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    app.include_router(user_router)
    app.include_router(provider_router)
    app.include_router(search_router)
    app.include_router(booking_router)
    app.include_router(job_router)
    app.include_router(chat_router)
    app.include_router(ai_router)
    app.include_router(geocoding_router)
    app.include_router(payment_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )
