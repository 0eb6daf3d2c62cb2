"""FastAPI dependencies for shared resources."""

from fastapi import Request

from eventcore.infra.db import ConnectionPool


def get_pool(request: Request) -> ConnectionPool | None:
    """Process-wide connection pool owned by the app lifespan.

    Returns None when the app was built without a database; routes decide
    whether that is an error, so requests rejected up front never need one.
    """
    return getattr(request.app.state, "db_pool", None)
