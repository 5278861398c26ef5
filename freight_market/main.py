"""
Main FastAPI Application
"""

import logging
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

# Load environment variables
from dotenv import load_dotenv

if os.getenv("ENVIRONMENT", "development").lower() in {"development", "dev", "local", "test"}:
    load_dotenv()

from logging.config import dictConfig

from prometheus_fastapi_instrumentator import Instrumentator

from freight_market.api.routes import health, websockets
from freight_market.config.settings import settings
from freight_market.core.errors import AppError
from freight_market.services.cache_service import get_redis_client
from freight_market.utils.logging_config import LOGGING_CONFIG
from freight_market.utils.trace_id import trace_id_var

# Configure logging
dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

# Rate limiting
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan management"""
    logger.info("Starting realtime gateway...")
    yield
    logger.info("Shutting down realtime gateway...")
    client = await get_redis_client()
    if client is not None:
        await client.close()


app = FastAPI(
    title="Freight Market Realtime API",
    description="Realtime notifications, chat and presence for the freight marketplace",
    version="1.0.0",
    lifespan=lifespan,
)

# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app)


@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    # Try to get trace_id from header, or generate a new one
    trace_id = request.headers.get("X-Trace-ID", str(uuid.uuid4()))
    trace_id_var.set(trace_id)
    response = await call_next(request)
    response.headers["X-Trace-ID"] = trace_id
    return response


# The origins should be a comma-separated string in the env, e.g., "http://localhost:3000,http://127.0.0.1:3000"
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ALLOWED_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Trace-ID"],
)
app.state.limiter = limiter


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    return JSONResponse({"detail": "Rate limit exceeded"}, status_code=429)


app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)  # type: ignore[arg-type]


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    logger.error(f"AppError caught: {exc.code} - {exc.message}", extra={"details": exc.details, "url": str(request.url)})
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(),
    )


app.add_exception_handler(AppError, app_error_handler)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled exception caught: {exc}", exc_info=True, extra={"url": str(request.url)})
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_SERVER_ERROR",
                "message": "An unexpected internal server error occurred.",
                "details": {"error_type": type(exc).__name__},
            }
        },
    )


app.add_exception_handler(Exception, generic_exception_handler)

app.include_router(health.router)  # No prefix for health endpoints
app.include_router(websockets.router)


def run() -> None:
    import uvicorn

    uvicorn.run("freight_market.main:app", host=settings.API_HOST, port=settings.API_PORT, reload=settings.DEBUG)


if __name__ == "__main__":
    run()
