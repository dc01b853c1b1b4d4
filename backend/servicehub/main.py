import logging
import os
import time

from fastapi import FastAPI, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.exc import TimeoutError as SA_TimeoutError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import models  # noqa: F401  (register tables on Base.metadata)
from .api import api_notifications, api_support, api_ws
from .core.config import settings
from .core.observability import setup_logging, setup_tracer
from .database import Base, engine, is_sqlite
from .realtime import bus
from .realtime.errors import ServiceError
from .realtime.rooms import registry
from .realtime.tasks import drain
from .services.redis_client import get_redis, set_redis

setup_logging()
logger = logging.getLogger(__name__)

_BOOT_TS = time.time()

app = FastAPI(title=settings.PROJECT_NAME, default_response_class=ORJSONResponse)
setup_tracer(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials="*" not in settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)
logger.info("CORS origins set to: %s", settings.CORS_ORIGINS)


@app.middleware("http")
async def catch_exceptions(request: Request, call_next):
    """Return JSON responses for HTTP errors and log them."""
    try:
        response = await call_next(request)
    except StarletteHTTPException as exc:  # return the original status and detail
        logger.error(
            "HTTP error %s at %s: %s", exc.status_code, request.url.path, exc.detail
        )
        response = ORJSONResponse(
            status_code=exc.status_code, content={"detail": exc.detail}
        )
    except SA_TimeoutError as exc:  # DB pool timeout -> 503 to reduce retry storms
        logger.error("DB timeout at %s: %s", request.url.path, str(exc))
        response = ORJSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"detail": "Database busy, please retry"},
        )
    except Exception as exc:  # pragma: no cover - generic handler
        logger.exception("Unhandled error: %s", exc)
        response = ORJSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Internal Server Error"},
        )

    # Ensure the CORS headers are present even when an exception occurs
    origin = request.headers.get("origin")
    if origin and origin in settings.CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        if "Vary" not in response.headers:
            response.headers["Vary"] = "Origin"

    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    """Map realtime/service errors raised from HTTP routes onto their status."""
    if exc.status_code >= 500:
        logger.error("Service error at %s: %s", request.url.path, exc.message)
    return ORJSONResponse(status_code=exc.status_code, content={"detail": exc.to_payload()})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return validation errors with details and log them for debugging."""
    errors = exc.errors()
    logger.warning("Validation error at %s: %s", request.url.path, errors)
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": errors},
    )


@app.get("/healthz/live", tags=["health"])
async def health_live():
    """Liveness probe: process can respond; does not touch the DB."""
    return {
        "status": "ok",
        "kind": "live",
        "uptime_s": round(time.time() - _BOOT_TS, 1),
        "pid": os.getpid(),
    }


def _db_ping_sync() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))


@app.get("/healthz/ready", tags=["health"])
async def health_ready():
    """Readiness probe: DB reachable and local socket counts."""
    try:
        await run_in_threadpool(_db_ping_sync)
        ready, reason = True, "ok"
    except SQLAlchemyError as exc:
        logger.warning("Readiness DB ping failed: %s", exc)
        ready, reason = False, "db_unavailable"
    return ORJSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ok" if ready else "error",
            "kind": "ready",
            "ready": ready,
            "reason": reason,
            "connections": len(registry.connections),
            "bus": bus.bus_enabled(),
            "instance_id": settings.INSTANCE_ID,
        },
        headers={"Cache-Control": "no-store"},
    )


api_prefix = settings.API_V1_STR  # usually something like "/api/v1"

# ─── REALTIME SOCKET (/api/v1/ws) ──────────────────────────────────────────────────
app.include_router(api_ws.router, prefix=api_prefix, tags=["realtime"])

# ─── NOTIFICATIONS ROUTES ──────────────────────────────────────────────────────────
app.include_router(api_notifications.router, prefix=api_prefix, tags=["notifications"])

# ─── SUPPORT ROUTES ────────────────────────────────────────────────────────────────
app.include_router(api_support.router, prefix=api_prefix, tags=["support"])


@app.on_event("startup")
def create_tables() -> None:
    """Create tables for local SQLite databases; managed databases use migrations."""
    if is_sqlite:
        Base.metadata.create_all(bind=engine)


@app.on_event("startup")
async def start_ws_bus() -> None:
    """Start the cross-instance room mirror when Redis is configured."""
    if not bus.bus_enabled():
        logger.info("ws.bus.disabled", extra={"instance_id": settings.INSTANCE_ID})
        return
    await bus.start_pattern_consumer(registry.deliver_from_bus)


@app.on_event("shutdown")
async def shutdown_realtime() -> None:
    """Stop the bus consumer, flush side effects and close Redis."""
    await bus.stop_pattern_consumer()
    await drain(timeout=5.0)
    client = get_redis() if settings.WS_BUS_ENABLED else None
    if client is not None:
        logger.info("Closing Redis client")
        try:
            await client.aclose()
        except (OSError, RuntimeError) as exc:
            logger.warning("Redis close failed: %s", exc)
        set_redis(None)
