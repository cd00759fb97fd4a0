"""
FastAPI application exposing health and manual job triggers.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api.auth import verify_api_token
from api.config import config as api_config
from api.models import BroadcastResponse, ErrorResponse, HealthResponse
from circulation.repository import BookRepository
from scheduler.jobs import build_repository, run_digest_job, run_sync_job
from scheduler.models import SyncResponse
from utilities.config import config

logger = structlog.get_logger(__name__)

# Shared repository, connected by the lifespan handler
repository: Optional[BookRepository] = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global repository
    logger.info("Starting BookFlow Sync API")

    repository = build_repository(config)
    try:
        await repository.connect()
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        raise

    yield

    logger.info("Shutting down BookFlow Sync API")
    await repository.disconnect()
    repository = None


app = FastAPI(
    title=api_config.api_title,
    description="Manual triggers for the library loan sync and the daily note digest.",
    version=api_config.api_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=api_config.cors_origins,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.exception_handler(HTTPException)
async def http_exception_handler(request, exc: HTTPException):
    """Handle HTTP exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=str(exc.detail)).model_dump(),
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request, exc: Exception):
    """Handle general exceptions."""
    logger.error("Unhandled exception", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            error="UNKNOWN",
            message=str(exc) if api_config.debug else "Internal server error",
        ).model_dump(),
    )


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check():
    """Health check endpoint."""
    db_status = "unavailable"
    if repository is not None:
        db_status = await repository.health_check()

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        timestamp=datetime.utcnow(),
        version=api_config.api_version,
        database_status=db_status,
    )


@app.post(
    "/api/books/sync",
    response_model=SyncResponse,
    responses={401: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    tags=["Sync"],
)
async def trigger_sync(token: Optional[str] = Depends(verify_api_token)):
    """
    Run one loan sync now.

    On failure the response carries only the error code; details are logged.
    """
    result = await run_sync_job(config, repository=repository)

    if not result.success:
        return JSONResponse(
            status_code=result.error.http_status,
            content=ErrorResponse(error=result.error.code.value, message="Sync failed").model_dump(),
        )

    return result.to_response()


@app.post("/api/notes/broadcast", response_model=BroadcastResponse, tags=["Digest"])
async def trigger_broadcast(token: Optional[str] = Depends(verify_api_token)):
    """Send the daily note now."""
    sent = await run_digest_job(config, repository=repository)
    return BroadcastResponse(sent=sent)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "api.main:app",
        host=api_config.host,
        port=api_config.port,
        reload=api_config.debug,
        log_level="info",
    )
