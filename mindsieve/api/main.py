"""FastAPI application for MindSieve."""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from mindsieve.api.routers import cards_router, chat_router, sessions_router, tasks_router
from mindsieve.api.schemas import BlockedResponse, HealthResponse
from mindsieve.config import get_settings
from mindsieve.exceptions import MindSieveError, UnsafeInputError
from mindsieve.observability import (
    REQUEST_ID_HEADER,
    RequestIdMiddleware,
    configure_logging,
    get_request_id,
)
from mindsieve.services.bootstrap import close_app_context, get_app_context

configure_logging()
logger = logging.getLogger(__name__)

VERSION = "1.0.0"
PIPELINE_FAILED = "The RAG pipeline failed."


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    # Startup
    logger.info("Starting MindSieve...")
    settings = get_settings()
    logger.info(f"Debug mode: {settings.debug}")
    get_app_context()
    yield
    # Shutdown
    logger.info("Shutting down MindSieve...")
    await close_app_context()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="MindSieve",
        description="Grounded answers and study cards over arXiv computer science papers",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=[REQUEST_ID_HEADER, "X-Session-Id", "X-Turn-Id", "X-Model"],
    )
    app.add_middleware(RequestIdMiddleware)

    # Exception handlers
    @app.exception_handler(UnsafeInputError)
    async def blocked_handler(request: Request, exc: UnsafeInputError):
        request_id = _request_id(request)
        logger.info(f"Blocked query: {exc.reason}")
        return JSONResponse(
            status_code=exc.status_code,
            content=BlockedResponse(reason=exc.reason, req_id=request_id).model_dump(by_alias=True),
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.exception_handler(MindSieveError)
    async def mindsieve_exception_handler(request: Request, exc: MindSieveError):
        request_id = _request_id(request)
        logger.error(f"{exc.code}: {exc}")
        content = {"error": exc.message, "code": exc.code, "reqId": request_id}
        if settings.debug and exc.details:
            content["details"] = exc.details
        return JSONResponse(
            status_code=exc.status_code,
            content=content,
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        request_id = _request_id(request)
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        content = {"error": PIPELINE_FAILED, "reqId": request_id}
        if settings.debug:
            content["details"] = str(exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=content,
            headers={REQUEST_ID_HEADER: request_id},
        )

    # Health check endpoint
    @app.get("/health", response_model=HealthResponse, tags=["Health"])
    async def health_check():
        """Check system health."""
        return HealthResponse(
            status="healthy",
            version=VERSION,
            services={"api": True},
        )

    # Root endpoint
    @app.get("/", tags=["Root"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "MindSieve",
            "version": VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Include routers
    api_prefix = settings.api_prefix
    app.include_router(chat_router, prefix=api_prefix)
    app.include_router(cards_router, prefix=api_prefix)
    app.include_router(tasks_router, prefix=api_prefix)
    app.include_router(sessions_router, prefix=api_prefix)

    return app


# Create app instance
app = create_app()


def run():
    """Serve the API; Cloud Run passes the port in PORT."""
    uvicorn.run(
        "mindsieve.api.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8080")),
    )


if __name__ == "__main__":
    run()
