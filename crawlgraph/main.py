"""
FastAPI entry point: crawl sessions and their analysis reports.

    uvicorn crawlgraph.main:app

Startup fails fast if PostgreSQL or Redis is unreachable.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from crawlgraph.api.v1.routes import crawls, health
from crawlgraph.core.config import get_settings
from crawlgraph.core.database import dispose_engine, get_engine
from crawlgraph.core.exceptions import (
    CrawlGraphError,
    CrawlNotFinishedError,
    SessionNotFoundError,
    SessionStatusConflictError,
)
from crawlgraph.core.logging import configure_logging
from crawlgraph.core.redis import close_redis_pool, get_redis_client

logger = structlog.get_logger(__name__)
settings = get_settings()

# Most specific first; Starlette picks the handler by walking the exception MRO
ERROR_STATUS: dict[type[CrawlGraphError], int] = {
    SessionNotFoundError: 404,
    CrawlNotFinishedError: 409,
    SessionStatusConflictError: 409,
    CrawlGraphError: 400,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    configure_logging(component="api")
    logger.info("API starting", version=settings.APP_VERSION, env=settings.ENV)

    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    redis = await get_redis_client()
    await redis.ping()
    logger.info("Database and broker reachable")

    yield

    await dispose_engine()
    await redis.aclose()
    await close_redis_pool()
    logger.info("API stopped")


async def crawlgraph_error_handler(request: Request, exc: CrawlGraphError) -> JSONResponse:
    status_code = next(code for cls, code in ERROR_STATUS.items() if isinstance(exc, cls))
    if status_code == 400:
        logger.warning("Request rejected", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=status_code, content={"detail": str(exc)})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
    )


def create_application() -> FastAPI:
    public_docs = settings.ENV != "production"
    app = FastAPI(
        title="Crawl Graph API",
        description="Site crawler with link graph, duplicate content and technical issue analysis.",
        version=settings.APP_VERSION,
        docs_url="/docs" if public_docs else None,
        redoc_url="/redoc" if public_docs else None,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    # Link graph and issue reports for large sites run to megabytes of JSON
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(crawls.router, prefix="/api/v1/crawls", tags=["Crawls"])

    for exc_class in ERROR_STATUS:
        app.add_exception_handler(exc_class, crawlgraph_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)

    return app


app = create_application()
