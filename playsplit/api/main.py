"""
PlaySplit API Server

FastAPI server for organizing football matches, splitting their cost and
collecting payments.
"""

from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import os
import uvicorn
from slowapi.errors import RateLimitExceeded  # type: ignore

from playsplit.api.routes import router, limiter as routes_limiter
from playsplit.database import db
from playsplit.database.db import get_db_session
from playsplit.services import identity_service, redis_service
from playsplit.utils.datetime_utils import utcnow
from playsplit.utils.exceptions import InfrastructureError, PlaySplitError

# Set up logging
# Allow log level to be configured via environment variable (default: INFO)
log_level = os.getenv("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, log_level, logging.INFO)
logging.basicConfig(
    level=numeric_level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

ENV = os.getenv("ENV", "development").lower()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler for startup and shutdown events."""
    # Startup
    logger.info("Starting up PlaySplit API...")

    # Create tables that migrations have not created yet
    try:
        await db.init_database()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}", exc_info=True)

    if identity_service.init_firebase():
        logger.info("Firebase Admin initialized")
    else:
        logger.warning("Firebase Admin not configured; authenticated routes will fail")

    yield  # App is running

    # Shutdown
    logger.info("Shutting down PlaySplit API...")

    try:
        await redis_service.close_redis_connection()
        logger.info("Redis connection closed")
    except Exception as e:
        logger.error(f"Error closing Redis connection: {e}", exc_info=True)

    try:
        await db.dispose_engine()
        logger.info("Database connections closed")
    except Exception as e:
        logger.error(f"Error closing database connections: {e}", exc_info=True)


app = FastAPI(
    title="PlaySplit API",
    description="API for organizing football matches and splitting their cost between players",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup rate limiter
app.state.limiter = routes_limiter


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


def error_body(message: str, name: str, code=None, errors=None) -> dict:
    """{"success": false, "message": ..., "error": {"name": ..., "code"?: ...}, "errors"?: [...]}."""
    error = {"name": name}
    if code:
        error["code"] = code
    body = {"success": False, "message": message, "error": error}
    if errors:
        body["errors"] = errors
    return body


@app.exception_handler(PlaySplitError)
async def playsplit_error_handler(request: Request, exc: PlaySplitError):
    if isinstance(exc, InfrastructureError):
        logger.error(f"{exc.name} on {request.method} {request.url.path}: {exc.message}", exc_info=exc)
    else:
        logger.info(f"{exc.name} on {request.method} {request.url.path}: {exc.message}")
    body = error_body(exc.message, exc.name, exc.code)
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {
            "field": ".".join(str(part) for part in err.get("loc", ()) if part != "body"),
            "message": err.get("msg"),
        }
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content=error_body("Validation failed", "ValidationError", "invalid_input", errors),
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    name = "RateLimitError" if exc.status_code == 429 else "HTTPError"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), name),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content=error_body("Too many requests, please try again later", "RateLimitError"),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=exc)
    message = str(exc) if ENV == "development" else "Internal server error"
    return JSONResponse(status_code=500, content=error_body(message, "InternalError"))


# Add CORS middleware; origins configured via ALLOWED_ORIGINS env var
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)


@app.get("/api/health")
async def health_check(session: AsyncSession = Depends(get_db_session)):
    """
    Health check endpoint.

    Returns:
        dict: Service status with database and Redis reachability
    """
    try:
        await session.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check database ping failed: {e}")
        database = "unavailable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "message": "API is running",
        "timestamp": utcnow().isoformat(),
        "environment": ENV,
        "database": database,
        "redis": "connected" if await redis_service.is_redis_available() else "unavailable",
    }


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
