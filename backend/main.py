"""
Matching Service FastAPI Application
Exposes health probes for the matching worker deployment.
"""

from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from backend.api import health
from backend.core.config import settings
from backend.core.logging import configure_logging
from backend.core.sentry import capture_exception, init_sentry
from backend.database import close_db
from backend.events import close_event_bus

logger = structlog.get_logger().bind(module="api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup: configure logging and Sentry.
    Shutdown: close the event bus and database pool.
    """
    configure_logging(json_logs=settings.json_logs)
    init_sentry("api")
    logger.info(
        "api_starting",
        environment=settings.environment,
        version=settings.app_version,
    )

    yield

    await close_event_bus()
    await close_db()
    logger.info("api_stopped")


app = FastAPI(
    title=f"{settings.app_name} API",
    version=settings.app_version,
    docs_url="/docs" if settings.debug else None,
    redoc_url=None,
    openapi_url="/openapi.json" if settings.debug else None,
    lifespan=lifespan,
)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Report unexpected errors to Sentry and hide details outside debug."""
    logger.exception("unhandled_error", path=request.url.path)
    event_id = capture_exception(
        exc,
        extra={
            "request_method": request.method,
            "request_path": request.url.path,
        },
    )

    if settings.debug:
        detail = str(exc)
    else:
        detail = f"Internal server error (ref: {event_id})" if event_id else "Internal server error"

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": True, "message": detail, "status_code": 500, "error_id": event_id},
    )


app.include_router(health.router)


# For running with uvicorn directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "backend.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
        log_level="debug" if settings.debug else "info",
    )
