"""
Time Slot Service Application

Builds the FastAPI app: logging, the database lifecycle, the scheduling
error handlers, the time slot routes and the health/info endpoints.
"""

import logging
import sys
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from timeslots.api import time_slots_router
from timeslots.config import settings
from timeslots.db.repository import DatabaseError
from timeslots.db.session import (
    check_database_connection,
    close_database_connection,
    get_store,
)
from timeslots.errors import SchedulingError

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)
logger = logging.getLogger(__name__)

VERSION = "0.1.0"

logger.info(f"Consultant Time Slot Service {VERSION}")
logger.info(f"Database: {settings.database_url_str.split('@')[-1]}")
logger.info(
    f"Default timezone: {settings.default_timezone}, "
    f"recurrence policy: {settings.recurrence_time_policy}"
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Verify the database on startup, optionally create the schema, and
    release the engine on shutdown.
    """
    if await check_database_connection():
        logger.info("Database reachable")
        if settings.auto_create_schema:
            await get_store().create_schema()
    else:
        logger.warning("Database unreachable; slot operations will fail until it is back")

    yield

    await close_database_connection()
    logger.info("Application stopped")


app = FastAPI(
    title="Consultant Time Slot Service",
    description=(
        "Schedules bookable time slots for consultants, with weekly and "
        "monthly recurrence, DST-aware time handling and race-free reservation."
    ),
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(request: Request, exc: SchedulingError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error(f"Unhandled database error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {
                "code": "InternalError",
                "message": "An internal error occurred",
                "details": {},
                "retryable": False,
            },
        },
    )


@app.get("/")
async def root():
    return {
        "service": "Consultant Time Slot Service",
        "version": VERSION,
        "time_slots": "/api/time-slots",
    }


@app.get("/health")
async def health_check():
    """
    Liveness plus database reachability.

    Returns:
        200 when the database answers, 503 otherwise
    """
    db_healthy = await check_database_connection()
    return JSONResponse(
        status_code=200 if db_healthy else 503,
        content={
            "status": "healthy" if db_healthy else "degraded",
            "database": "connected" if db_healthy else "disconnected",
            "version": VERSION,
        },
    )


@app.get("/info")
async def app_info():
    """Scheduling configuration in effect."""
    return {
        "name": "Consultant Time Slot Service",
        "version": VERSION,
        "environment": "development" if settings.debug else "production",
        "scheduling": {
            "default_timezone": settings.default_timezone,
            "recurrence_time_policy": settings.recurrence_time_policy,
            "min_slot_minutes": settings.min_slot_minutes,
            "max_slot_minutes": settings.max_slot_minutes,
            "max_occurrences": settings.max_occurrences,
            "overlap_includes_booked": settings.overlap_includes_booked,
            "max_page_size": settings.max_page_size,
        },
    }


app.include_router(time_slots_router)

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "timeslots.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
