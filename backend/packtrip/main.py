from contextlib import asynccontextmanager
from datetime import datetime, timezone
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
import structlog
from prometheus_fastapi_instrumentator import Instrumentator

from packtrip.core.errors import DomainError, ValidationError
from packtrip.core.logging import configure_logging
from packtrip.core.notifications import NotifierWorker, build_senders, get_outbox
from packtrip.core.settings import get_settings
from packtrip.db.session import db_manager
from packtrip.api import bookings, payments, rewards, catalog, reviews, database
from packtrip.middleware.logging import RequestLoggingMiddleware

settings = get_settings()
configure_logging(settings)

logger = structlog.get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting application...")
    try:
        await db_manager.initialize()
        if settings.DB_CREATE_TABLES:
            await db_manager.init_db()
    except Exception:
        logger.exception("Failed to initialize database manager")
        raise

    worker = NotifierWorker(get_outbox(), build_senders(settings))
    worker.start()
    app.state.notifier = worker

    yield

    # Shutdown
    logger.info("Shutting down application...")
    await worker.stop()
    await db_manager.close()
    logger.info("Database connections closed")


app = FastAPI(
    title="PackTrip Booking API",
    description="Bookings, rewards and payment reconciliation for tour, activity and rental packages",
    version=VERSION,
    lifespan=lifespan
)

# Rate limiting lives on the bookings router
app.state.limiter = bookings.limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize Prometheus metrics instrumentation
Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": [e.as_dict() for e in exc.errors]}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    # same {field, message} shape as the booking service's own validation
    detail = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        detail.append({"field": ".".join(loc) or "body", "message": err.get("msg", "Invalid value")})
    return JSONResponse(status_code=422, content={"detail": detail})


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(
            "domain_error",
            error=exc.message,
            error_type=type(exc).__name__,
            path=request.url.path,
        )
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message}
    )


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
        method=request.method,
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


@app.get("/health")
async def health_check_detailed():
    """Liveness plus database and notifier status"""
    db_health = await db_manager.health_check() if db_manager.async_session else {"status": "unknown"}
    db_status = db_health["status"]
    notifier = getattr(app.state, "notifier", None)

    return {
        "status": "healthy" if db_status == "healthy" else "degraded",
        "version": VERSION,
        "components": {
            "database": db_status,
            "notifier": "running" if notifier is not None else "stopped",
            "notification_backlog": get_outbox().queue.qsize(),
            "api": "healthy"
        },
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


prefix = "/api/v1"

# Include API routers
app.include_router(bookings.router, prefix=prefix)
app.include_router(payments.router, prefix=prefix)
app.include_router(rewards.router, prefix=prefix)
app.include_router(catalog.router, prefix=prefix)
app.include_router(reviews.router, prefix=prefix)
app.include_router(database.router, prefix=f"{prefix}/database", tags=["database"])
