"""Tests for database layer."""

import os
import time
from unittest.mock import MagicMock, patch

import pytest

from eventcore.infra.db import (
    ConnectionPool,
    DeadlineConnection,
    DeadlineCursor,
    PoolConfig,
    PoolTimeoutError,
    get_conn,
    txn,
)


def _fake_connection():
    conn = MagicMock()
    conn.closed = 0
    return conn


def _pool(**overrides):
    created = []

    def connect():
        conn = _fake_connection()
        created.append(conn)
        return conn

    config = PoolConfig(dsn="postgresql://u:p@h/db", **overrides)
    return ConnectionPool(config, connect=connect), created


class TestPoolConfig:
    def test_defaults(self):
        config = PoolConfig(dsn="postgresql://h/db")
        assert config.max_size == 10
        assert config.acquire_timeout == 5.0
        assert config.statement_timeout == 10.0
        assert config.idle_timeout == 30.0
        assert config.require_ssl is False

    def test_from_env(self):
        env = {
            "DATABASE_URL": "postgresql://h/db",
            "DB_POOL_MAX": "4",
            "DB_POOL_ACQUIRE_TIMEOUT_MS": "1500",
            "DB_STATEMENT_TIMEOUT_MS": "2000",
            "DB_POOL_IDLE_TIMEOUT_MS": "60000",
        }
        with patch.dict(os.environ, env, clear=True):
            config = PoolConfig.from_env()
        assert config.dsn == "postgresql://h/db"
        assert config.max_size == 4
        assert config.acquire_timeout == 1.5
        assert config.statement_timeout == 2.0
        assert config.idle_timeout == 60.0
        assert config.require_ssl is False

    def test_production_requires_ssl(self):
        env = {"DATABASE_URL": "postgresql://h/db", "APP_ENV": "production"}
        with patch.dict(os.environ, env, clear=True):
            config = PoolConfig.from_env()
        assert config.require_ssl is True
        assert config.connect_kwargs()["sslmode"] == "require"

    def test_invalid_env_value(self):
        env = {"DATABASE_URL": "postgresql://h/db", "DB_POOL_MAX": "lots"}
        with patch.dict(os.environ, env, clear=True), pytest.raises(ValueError):
            PoolConfig.from_env()

    def test_missing_database_url(self):
        with patch.dict(os.environ, {}, clear=True), pytest.raises(RuntimeError):
            PoolConfig.from_env()

    def test_connect_kwargs(self):
        kwargs = PoolConfig(dsn="x", statement_timeout=2.5).connect_kwargs()
        assert kwargs["options"] == "-c statement_timeout=2500"
        assert kwargs["connection_factory"] is DeadlineConnection
        assert kwargs["cursor_factory"] is DeadlineCursor
        assert "sslmode" not in kwargs


class TestConnectionPool:
    def test_connection_returned_after_use(self):
        pool, created = _pool()
        with pool.connection() as conn:
            assert conn is created[0]
            assert pool.checked_out == 1
        assert pool.checked_out == 0

    def test_connection_reused(self):
        pool, created = _pool()
        with pool.connection():
            pass
        with pool.connection() as conn:
            assert conn is created[0]
        assert len(created) == 1

    def test_connection_returned_on_exception(self):
        pool, _ = _pool()
        with pytest.raises(ValueError):
            with pool.connection():
                raise ValueError("boom")
        assert pool.checked_out == 0

    def test_acquire_timeout(self):
        pool, _ = _pool(max_size=1, acquire_timeout=0.05)
        with pool.connection():
            start = time.monotonic()
            with pytest.raises(PoolTimeoutError):
                with pool.connection():
                    pass
            assert time.monotonic() - start < 1.0
        assert pool.checked_out == 0

    def test_idle_connection_retired(self):
        pool, created = _pool(idle_timeout=0.01)
        with pool.connection():
            pass
        time.sleep(0.05)
        with pool.connection() as conn:
            assert conn is created[1]
        created[0].close.assert_called()

    def test_most_recently_returned_connection_reused(self):
        pool, created = _pool()
        with pool.connection():
            with pool.connection():
                pass
        # created[1] went back first; created[0] is the most recent
        with pool.connection() as conn:
            assert conn is created[0]

    def test_retire_idle_closes_unused_connections(self):
        pool, created = _pool(idle_timeout=0.01)
        with pool.connection():
            with pool.connection():
                pass
        time.sleep(0.05)

        assert pool.retire_idle() == 2
        created[0].close.assert_called()
        created[1].close.assert_called()
        with pool.connection() as conn:
            assert conn is created[2]

    def test_retire_idle_keeps_fresh_and_borrowed(self):
        pool, created = _pool(idle_timeout=60)
        with pool.connection():
            pass
        with pool.connection():
            assert pool.retire_idle() == 0
        assert pool.retire_idle() == 0
        created[0].close.assert_not_called()

    def test_reaper_closes_idle_connection(self):
        pool, created = _pool(idle_timeout=0.01)
        pool.start_reaper(interval=0.01)
        assert pool.reaper_running
        with pool.connection():
            pass

        deadline = time.monotonic() + 2.0
        while not created[0].close.called and time.monotonic() < deadline:
            time.sleep(0.01)
        created[0].close.assert_called()

        pool.close()
        assert not pool.reaper_running

    def test_closed_connection_not_reused(self):
        pool, created = _pool()
        with pool.connection() as conn:
            conn.closed = 2
        with pool.connection() as conn:
            assert conn is created[1]

    def test_transaction_commits(self):
        pool, created = _pool()
        with pool.transaction() as cur:
            cur.execute("SELECT 1")
        created[0].commit.assert_called_once()
        assert pool.checked_out == 0

    def test_transaction_rolls_back(self):
        pool, created = _pool()
        with pytest.raises(RuntimeError):
            with pool.transaction():
                raise RuntimeError("boom")
        created[0].commit.assert_not_called()
        created[0].rollback.assert_called()
        assert pool.checked_out == 0

    def test_close_disposes_connections(self):
        pool, created = _pool()
        with pool.connection():
            pass
        pool.close()
        created[0].close.assert_called()


class TestTxn:
    def test_commit_and_close_owned_connection(self):
        conn = _fake_connection()
        with patch("eventcore.infra.db.get_conn", return_value=conn):
            with txn() as cur:
                cur.execute("SELECT 1")
        conn.commit.assert_called_once()
        conn.close.assert_called_once()

    def test_borrowed_connection_left_open(self):
        conn = _fake_connection()
        with txn(conn):
            pass
        conn.commit.assert_called_once()
        conn.close.assert_not_called()

    def test_rollback_skipped_on_closed_connection(self):
        conn = _fake_connection()
        conn.closed = 1
        with pytest.raises(RuntimeError):
            with txn(conn):
                raise RuntimeError("connection lost")
        conn.rollback.assert_not_called()


class TestGetConn:
    def test_uses_database_url(self):
        with patch.dict(os.environ, {"DATABASE_URL": "postgres://u:p@h/db"}, clear=True), \
             patch("eventcore.infra.db.psycopg2.connect", return_value=MagicMock()) as mock_connect:
            get_conn()
            mock_connect.assert_called_once_with("postgres://u:p@h/db")

    def test_requires_database_url(self):
        with patch.dict(os.environ, {}, clear=True), pytest.raises(RuntimeError):
            get_conn()


# Skip integration tests if DATABASE_URL is not set
_skip_no_db = pytest.mark.skipif(
    not os.environ.get("DATABASE_URL"),
    reason="DATABASE_URL not set - skipping DB integration tests",
)


@_skip_no_db
class TestPoolIntegration:
    def test_select_through_pool(self):
        pool = ConnectionPool(PoolConfig(dsn=os.environ["DATABASE_URL"]))
        try:
            with pool.transaction() as cur:
                cur.execute("SELECT 1")
                assert cur.fetchone() == (1,)
        finally:
            pool.close()

    def test_statement_timeout_applied(self):
        pool = ConnectionPool(PoolConfig(dsn=os.environ["DATABASE_URL"], statement_timeout=0.2))
        try:
            with pool.transaction() as cur:
                cur.execute("SHOW statement_timeout")
                assert cur.fetchone()[0] == "200ms"
        finally:
            pool.close()
