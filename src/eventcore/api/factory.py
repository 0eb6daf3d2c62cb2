"""FastAPI application factory.

The connection pool is an explicit resource: either injected by the caller
(tests, embedding) or created in the lifespan from DATABASE_URL and drained
at shutdown. Routes reach it through ``app.state.db_pool``.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response

from eventcore.infra.db import ConnectionPool
from eventcore.observability.correlation import (
    CORRELATION_ID_HEADER,
    reset_correlation_id,
    resolve_correlation_id,
    set_correlation_id,
)
from eventcore.observability.logging import get_logger

from .handlers import HandlerErrorMiddleware
from .routers import internal, public

logger = get_logger(__name__)


def create_app(pool: ConnectionPool | None = None) -> FastAPI:
    """Create the core API.

    Args:
        pool: Pre-built connection pool. If None, one is created from the
              environment at startup and closed at shutdown.

    Returns:
        Configured FastAPI application.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_pool = app.state.db_pool is None
        if owns_pool:
            app.state.db_pool = ConnectionPool.from_env()
            app.state.db_pool.start_reaper()
            logger.info("database pool initialised")
        try:
            yield
        finally:
            if owns_pool:
                app.state.db_pool.close()
                app.state.db_pool = None
                logger.info("database pool drained")

    app = FastAPI(
        title="Event Planner Core",
        docs_url=None,
        redoc_url=None,
        lifespan=lifespan,
    )
    app.state.db_pool = pool

    app.add_middleware(HandlerErrorMiddleware)

    # Correlation ID middleware (outermost)
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = resolve_correlation_id(request.headers)
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    app.include_router(public.router)
    app.include_router(internal.router)

    return app
