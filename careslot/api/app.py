"""FastAPI application for careslot."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careslot import __version__
from careslot.api.middleware import APIKeyMiddleware, RequestLoggingMiddleware
from careslot.api.routes import health, scheduling
from careslot.config import get_settings
from careslot.scheduling.errors import (
    AppointmentNotScheduled,
    EntryNotWaiting,
    InvalidRange,
    NotFound,
    SchedulingError,
    SlotConflict,
    StorageUnavailable,
)
from careslot.scheduling.service import SchedulingService

logger = logging.getLogger(__name__)

ERROR_STATUS: dict[type[SchedulingError], int] = {
    InvalidRange: 422,
    SlotConflict: 409,
    AppointmentNotScheduled: 409,
    EntryNotWaiting: 409,
    NotFound: 404,
    StorageUnavailable: 503,
}


def status_for(exc: SchedulingError) -> int:
    for error_type in type(exc).__mro__:
        if error_type in ERROR_STATUS:
            return ERROR_STATUS[error_type]
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting careslot API")

    if getattr(app.state, "scheduling_service", None) is None:
        from careslot.core.database import get_engine, get_session_factory, init_db
        from careslot.core.repository import SqlSchedulingRepository
        from careslot.observability import get_event_logger

        await init_db()
        app.state.scheduling_service = SchedulingService(
            SqlSchedulingRepository(get_session_factory()),
            event_logger=get_event_logger(),
        )
        app.state.owns_engine = True

    logger.info("careslot API started successfully")

    yield

    logger.info("Shutting down careslot API")
    if getattr(app.state, "owns_engine", False):
        await get_engine().dispose()


def create_app(service: Optional[SchedulingService] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    A prebuilt *service* skips database setup at startup.
    """
    settings = get_settings()

    app = FastAPI(
        title="careslot API",
        description="Appointment availability, booking and waitlist service",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.scheduling_service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    if settings.api_key:
        app.add_middleware(APIKeyMiddleware, api_key=settings.api_key)

    app.include_router(health.router, tags=["health"])
    app.include_router(scheduling.router, prefix="/api/v1", tags=["scheduling"])

    @app.exception_handler(SchedulingError)
    async def scheduling_error_handler(request: Request, exc: SchedulingError):
        request.state.error_code = exc.code
        status_code = status_for(exc)
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "detail": str(exc) if settings.debug_mode else None,
            },
        )

    return app
