"""Public-facing routes: liveness and readiness."""

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from starlette.concurrency import run_in_threadpool

from eventcore.api.dependencies import get_pool
from eventcore.api.responses import json_response, service_unavailable_response, success_response
from eventcore.infra.db import ConnectionPool, fetchone
from eventcore.observability.logging import get_logger
from eventcore.observability.redaction import safe_log_context

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness: the process is up. Never touches the database."""
    return {"status": "ok"}


def _ping(pool: ConnectionPool) -> None:
    with pool.transaction() as cur:
        fetchone(cur, "SELECT 1")


@router.get("/health/ready")
async def ready(pool: ConnectionPool | None = Depends(get_pool)) -> Response:
    """Readiness: a pooled connection answers ``SELECT 1``."""
    if pool is None:
        return json_response(service_unavailable_response("Database not configured"), 503)

    try:
        await run_in_threadpool(_ping, pool)
    except Exception as e:
        logger.warning(
            "readiness check failed",
            extra={"extra_fields": safe_log_context(error_type=type(e).__name__)},
        )
        return json_response(service_unavailable_response("Database unavailable"), 503)

    return json_response(success_response("Ready", {"database": "up"}), 200)
