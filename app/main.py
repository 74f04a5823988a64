"""Interest Connect API - Main Application Module.

This module initializes the FastAPI application with proper configuration,
middleware, routing, and lifecycle management for the peer matching and live
session service.
"""

import asyncio
import logging
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

# Add the project root to Python path if running directly
if __name__ == "__main__":
    project_root = Path(__file__).parent.parent
    sys.path.insert(0, str(project_root))

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.core.config import LogFormatEnum, get_config_summary, settings
from app.database import AsyncSessionLocal, engine
from app.services.change_feed import get_change_feed
from app.services.realtime_bridge import RedisChangeBridge
from models import Base

logger = logging.getLogger(__name__)

JSON_LOG_FORMAT = (
    '{"time": "%(asctime)s", "level": "%(levelname)s", '
    '"logger": "%(name)s", "message": "%(message)s"}'
)
SIMPLE_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Upper bound for delivering queued change events on shutdown
SHUTDOWN_DRAIN_SECONDS = 5.0


def setup_logging() -> None:
    """Configure root logging from settings."""
    logging.basicConfig(
        level=settings.log_level.value,
        format=JSON_LOG_FORMAT if settings.log_format == LogFormatEnum.json else SIMPLE_LOG_FORMAT,
        force=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle events."""
    # Startup
    setup_logging()
    logger.info(f"Starting {settings.app_name}: {get_config_summary()}")

    # Development mode: Auto-create tables if they don't exist
    # Production: Use Alembic migrations (alembic upgrade head)
    if settings.is_development:
        logger.info("Development mode: creating/updating database tables")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    else:
        logger.info("Use 'alembic upgrade head' to manage database schema")

    bridge = None
    if settings.uses_redis_realtime:
        bridge = RedisChangeBridge(get_change_feed())
        await bridge.start()
    app.state.realtime_bridge = bridge

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")
    if bridge is not None:
        await bridge.stop()
    feed = get_change_feed()
    try:
        await asyncio.wait_for(feed.drain(), timeout=SHUTDOWN_DRAIN_SECONDS)
    except TimeoutError:
        logger.warning("Change feed still had queued events at shutdown")
    feed.close()
    await engine.dispose()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        description="Interest-based peer matching with live one-to-one chat sessions",
        version=settings.version,
        lifespan=lifespan,
        docs_url=settings.docs_url if settings.is_development else None,
        redoc_url=settings.redoc_url if settings.is_development else None,
    )

    # Add middleware
    setup_middleware(app)

    # Add exception handlers
    setup_exception_handlers(app)

    # Include routers
    setup_routers(app)

    return app


def setup_middleware(app: FastAPI):
    """Configure application middleware."""
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def setup_exception_handlers(app: FastAPI):
    """Configure global exception handlers."""

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        # Handle custom exceptions that have structured detail
        if isinstance(exc.detail, dict) and "message" in exc.detail:
            message = exc.detail["message"]
            error_code = exc.detail.get("error_code", "HTTP_ERROR")
            details = exc.detail.get("details")
        else:
            message = str(exc.detail) if exc.detail else "An error occurred"
            error_code = "HTTP_ERROR"
            details = None

        return JSONResponse(
            status_code=exc.status_code,
            content={
                "status": "error",
                "message": message,
                "error_code": error_code,
                "details": details,
                "retryable": getattr(exc, "retryable", False),
                "timestamp": datetime.now(UTC).isoformat(),
                "request_id": getattr(request.state, "request_id", None),
            },
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        # Convert errors to JSON-serializable format
        errors = []
        for error in exc.errors():
            error_dict = {
                "loc": error.get("loc", []),
                "msg": str(error.get("msg", "Validation error")),
                "type": error.get("type", "value_error"),
            }
            if "input" in error:
                error_dict["input"] = str(error["input"])
            errors.append(error_dict)

        return JSONResponse(
            status_code=422,
            content={
                "status": "error",
                "message": "Validation error",
                "error_code": "VALIDATION_ERROR",
                "details": errors,
                "timestamp": datetime.now(UTC).isoformat(),
                "request_id": getattr(request.state, "request_id", None),
            },
        )


def setup_routers(app: FastAPI):
    """Configure application routers."""
    from app.domains.connect.controller import router as connect_router
    from app.domains.profile.controller import router as profile_router

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        db_status = "healthy"
        try:
            async with AsyncSessionLocal() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.error(f"Health check database query failed: {str(e)}")
            db_status = "unhealthy"

        bridge = getattr(app.state, "realtime_bridge", None)
        realtime_status = settings.realtime_backend.value
        if settings.uses_redis_realtime and bridge is None:
            realtime_status = "unavailable"

        body = {
            "status": "healthy" if db_status == "healthy" else "degraded",
            "version": settings.version,
            "environment": settings.environment,
            "timestamp": datetime.now(UTC).isoformat(),
            "services": {
                "database": db_status,
                "realtime": realtime_status,
            },
        }
        if db_status != "healthy":
            return JSONResponse(status_code=503, content=body)
        return body

    @app.get("/")
    async def root():
        """Root endpoint with API information."""
        return {
            "name": settings.app_name,
            "version": settings.version,
            "description": "Interest-based peer matching with live chat sessions",
            "docs_url": settings.docs_url if settings.is_development else None,
        }

    # Include domain routers
    app.include_router(profile_router)
    app.include_router(connect_router)


# Create the application instance
app = create_app()


def main():
    """Entry point for running the application directly."""
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.value.lower(),
    )


if __name__ == "__main__":
    main()
