"""Shared pytest fixtures for event planner core tests."""
import sys
sys.dont_write_bytecode = True

import os  # noqa: E402
from pathlib import Path  # noqa: E402

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parents[1]
CORE_SQL = ROOT / "migrations" / "sql" / "001_payment_webhooks.sql"
HARNESS_SQL = ROOT / "tests" / "sql" / "harness_tables.sql"


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch):
    """Start every test from the development defaults.

    The webhook secret and environment name change signature behavior, so a
    value leaking from the shell (or a previous test) would flip results.
    """
    for name in (
        "APP_ENV",
        "NODE_ENV",
        "PAYMENT_WEBHOOK_SECRET",
        "WEBHOOK_ROUTE_TIMEOUT_MS",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def webhook_secret(monkeypatch):
    """Configure the shared webhook secret for the duration of a test."""
    from helpers import TEST_WEBHOOK_SECRET

    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    return TEST_WEBHOOK_SECRET


@pytest.fixture(scope="session")
def db_pool():
    """Pool on DATABASE_URL with the core and harness tables in place."""
    if not os.environ.get("DATABASE_URL"):
        pytest.skip("DATABASE_URL not set - skipping DB integration tests")

    from eventcore.infra.db import ConnectionPool, PoolConfig

    pool = ConnectionPool(PoolConfig(dsn=os.environ["DATABASE_URL"]))
    with pool.transaction() as cur:
        cur.execute(CORE_SQL.read_text(encoding="utf-8"))
        cur.execute(HARNESS_SQL.read_text(encoding="utf-8"))
    yield pool
    pool.close()
