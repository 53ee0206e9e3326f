from __future__ import annotations

import os
from collections.abc import Generator

import psycopg
import pytest
import redis
from fastapi.testclient import TestClient
from psycopg import sql

from story_heat.api.app import app
from story_heat.cache import clear_redis_client_cache, get_redis_client
from story_heat.metrics import reset_metrics
from story_heat.migrations import migrate
from story_heat.settings import clear_settings_cache


def _truncate_public_tables(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT tablename
            FROM pg_tables
            WHERE schemaname = 'public'
              AND tablename <> 'schema_migrations';
            """
        )
        tables = [row[0] for row in cur.fetchall()]

    if not tables:
        return

    stmt = sql.SQL("TRUNCATE TABLE {} CASCADE;").format(
        sql.SQL(", ").join(sql.Identifier(t) for t in tables)
    )
    with conn.cursor() as cur:
        cur.execute(stmt)


@pytest.fixture(scope="session")
def database_url() -> str:
    dsn = os.environ.get("SH_TEST_DATABASE_URL")
    if not dsn:
        pytest.skip("SH_TEST_DATABASE_URL not set")

    # Tests truncate every table.
    if "_test" not in dsn:
        pytest.fail(
            f"Refusing to run tests on non-test database: {dsn}\n"
            "Set SH_TEST_DATABASE_URL to a database whose name contains '_test'."
        )

    with psycopg.connect(dsn, autocommit=True) as conn:
        migrate(conn)
    return dsn


@pytest.fixture()
def db_conn(database_url: str) -> Generator[psycopg.Connection, None, None]:
    conn = psycopg.connect(database_url)
    conn.autocommit = True
    try:
        _truncate_public_tables(conn)
        yield conn
    finally:
        conn.close()


@pytest.fixture(autouse=True)
def _fresh_metrics() -> Generator[None, None, None]:
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture()
def client(
    db_conn: psycopg.Connection, database_url: str, monkeypatch: pytest.MonkeyPatch
) -> Generator[TestClient, None, None]:
    monkeypatch.setenv("SH_DATABASE_URL", database_url)
    monkeypatch.setenv("SH_AUTO_MIGRATE", "false")
    monkeypatch.setenv("SH_LOG_FORMAT", "text")
    # Ensure Settings reads fresh env for tests.
    clear_settings_cache()
    clear_redis_client_cache()
    r = get_redis_client()
    if r:
        try:
            r.flushdb()
        except redis.RedisError:
            pass

    with TestClient(app) as c:
        yield c
    clear_settings_cache()
    clear_redis_client_cache()
