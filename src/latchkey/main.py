"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from latchkey.api.middleware import AuthHeadersMiddleware, RequestIDMiddleware
from latchkey.api.router import api_router
from latchkey.config import settings
from latchkey.database import close_db
from latchkey.errors import StorageUnavailableError, UserNotFoundError
from latchkey.logging import setup_sentry
from latchkey.schemas.common import ErrorResponse

logger = logging.getLogger(__name__)

# Seconds a client should wait before retrying after a storage failure
STORAGE_RETRY_AFTER_SECONDS = 5

setup_sentry()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup: Database initialization is handled by Alembic migrations
    yield
    # Shutdown
    await close_db()


app = FastAPI(
    title="Latchkey API",
    description="Passwordless authentication with magic links and QR keys",
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/api/docs" if settings.debug_enabled else None,
    redoc_url="/api/redoc" if settings.debug_enabled else None,
    openapi_url="/api/openapi.json" if settings.debug_enabled else None,
)

# Request ID middleware for distributed tracing
app.add_middleware(RequestIDMiddleware)  # type: ignore[arg-type]
app.add_middleware(AuthHeadersMiddleware)  # type: ignore[arg-type]

# CORS middleware
app.add_middleware(
    CORSMiddleware,  # type: ignore[arg-type]
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
)


@app.exception_handler(StorageUnavailableError)
async def storage_unavailable_handler(_request: Request, exc: StorageUnavailableError):
    """Transient store failure: tell the client to retry, never report success."""
    logger.warning(f"Storage unavailable: {exc}")
    return JSONResponse(
        status_code=503,
        content=ErrorResponse(
            detail="Service temporarily unavailable", code="storage_unavailable"
        ).model_dump(),
        headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
    )


@app.exception_handler(UserNotFoundError)
async def user_not_found_handler(_request: Request, exc: UserNotFoundError):
    logger.info(f"Request for unknown user {exc.user_id}")
    return JSONResponse(
        status_code=404,
        content=ErrorResponse(detail="User not found", code="user_not_found").model_dump(),
    )


# Include API router
app.include_router(api_router, prefix="/api")


if __name__ == "__main__":
    import uvicorn

    from latchkey.logging import get_uvicorn_log_config

    uvicorn.run(
        "latchkey.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_config=get_uvicorn_log_config(),
    )
