"""FastAPI application entry point"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_fastapi_instrumentator import Instrumentator

from app.api import auth, health, users
from app.config import settings
from app.database import SessionLocal, engine
from app.exceptions import IdentityError
from app.messenger.bus import MessageBus
from app.messenger.handlers import default_registry
from app.messenger.notifier import create_channel
from app.messenger.store import QueueStore
from app.messenger.worker import Worker
from app.middleware.rate_limit import limiter
from app.utils.logger import logger, setup_logging
from app.utils.revocation import create_revocation_cache

VERSION = "0.1.0"

# Setup logging
setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler"""
    # Startup
    logger.info("Identity service starting up", extra={
        "version": VERSION,
        "log_level": settings.LOG_LEVEL,
        "rate_limiting": settings.RATE_LIMIT_ENABLED,
        "monitoring": settings.METRICS_ENABLED,
        "revocation_backend": settings.REVOCATION_BACKEND,
    })

    worker = None
    if settings.MESSENGER_CONSUME_IN_PROCESS:
        worker = Worker(
            session_factory=SessionLocal,
            registry=default_registry(),
            store=app.state.message_bus.store,
            channel=app.state.notification_channel,
        )
        worker.start()
    app.state.worker = worker

    yield

    # Shutdown
    if worker is not None:
        worker.stop()
    logger.info("Identity service shutting down")


# Create FastAPI app
app = FastAPI(
    title="Identity Service",
    description="User registration, JWT sessions with revocation, and a transactional outbox",
    version=VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# ===== Collaborators =====

app.state.revocation_cache = create_revocation_cache()
app.state.notification_channel = create_channel(engine)
app.state.message_bus = MessageBus(QueueStore(channel=app.state.notification_channel))
app.state.worker = None

# ===== Middleware Setup =====

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Monitoring middleware
if settings.METRICS_ENABLED:
    from app.middleware.monitoring import MonitoringMiddleware
    app.add_middleware(MonitoringMiddleware)

    # Prometheus metrics
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/metrics", "/health", "/health/ready", "/health/live"],
        inprogress_name="identity_requests_inprogress",
        inprogress_labels=True
    )
    instrumentator.instrument(app)
    instrumentator.expose(app, endpoint=settings.METRICS_PATH, include_in_schema=False)

# Rate limiting (the decorators on the auth routes read app.state.limiter)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors"""
    logger.warning(
        "Rate limit exceeded",
        extra={
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else "unknown"
        }
    )
    return JSONResponse(
        status_code=429,
        content={
            "error": "rate_limit_exceeded",
            "message": "Too many requests. Please try again later.",
            "detail": str(exc.detail)
        }
    )

# ===== Route Setup =====

# Include routers
app.include_router(health.router)
app.include_router(auth.router)
app.include_router(auth.jwks_router)
app.include_router(users.router)


@app.get("/")
def root():
    """Root endpoint"""
    return {
        "service": "Identity Service",
        "version": VERSION,
        "status": "operational",
        "docs": "/docs",
        "health": "/health",
        "jwks": "/.well-known/jwks.json",
        "metrics": settings.METRICS_PATH if settings.METRICS_ENABLED else None
    }


# ===== Error Handlers =====

@app.exception_handler(IdentityError)
async def identity_error_handler(request: Request, exc: IdentityError):
    """Render domain errors as {"error": code, "message": text}"""
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Malformed input is a client error with the same body shape as domain errors"""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": f"{location}: {message}" if location else message,
        }
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": "http_error", "message": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for uncaught errors"""
    logger.error(
        f"Unhandled exception: {str(exc)}",
        extra={
            "path": request.url.path,
            "method": request.method
        },
        exc_info=True
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_server_error",
            "message": "An unexpected error occurred. Please contact support."
        }
    )
