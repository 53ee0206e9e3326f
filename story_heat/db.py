from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import psycopg
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from story_heat.errors import StorageUnavailable
from story_heat.settings import Settings


@dataclass
class DB:
    dsn: str
    pool_enabled: bool = False
    pool_min_size: int = 1
    pool_max_size: int = 10
    pool_timeout_seconds: float = 10.0
    statement_timeout_ms: int = 0  # 0 = no timeout
    connect_timeout_seconds: int = 10
    _pool: ConnectionPool | None = field(default=None, init=False, repr=False)

    @classmethod
    def from_settings(cls, settings: Settings) -> DB:
        return cls(
            settings.database_url,
            pool_enabled=settings.db_pool_enabled,
            pool_min_size=settings.db_pool_min_size,
            pool_max_size=settings.db_pool_max_size,
            pool_timeout_seconds=settings.db_pool_timeout_seconds,
            statement_timeout_ms=settings.statement_timeout_ms,
        )

    def _connect_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "row_factory": dict_row,
            "connect_timeout": self.connect_timeout_seconds,
        }
        if self.statement_timeout_ms > 0:
            kwargs["options"] = f"-c statement_timeout={int(self.statement_timeout_ms)}"
        return kwargs

    def connect(self, *, autocommit: bool = True) -> psycopg.Connection[Any]:
        try:
            conn = psycopg.connect(self.dsn, **self._connect_kwargs())
        except psycopg.OperationalError as exc:
            raise StorageUnavailable(f"cannot connect to cluster store: {exc}") from exc
        conn.autocommit = autocommit
        return conn

    def open_pool(self) -> None:
        if not self.pool_enabled or self._pool is not None:
            return
        self._pool = ConnectionPool(
            conninfo=self.dsn,
            min_size=self.pool_min_size,
            max_size=self.pool_max_size,
            timeout=self.pool_timeout_seconds,
            kwargs=self._connect_kwargs(),
            open=True,
        )

    def close_pool(self) -> None:
        if self._pool is None:
            return
        self._pool.close()
        self._pool = None

    @contextmanager
    def connection(self, *, autocommit: bool = True) -> Iterator[psycopg.Connection[Any]]:
        if self._pool is None:
            conn = self.connect(autocommit=autocommit)
            try:
                yield conn
            finally:
                conn.close()
            return

        with self._pool.connection() as conn:
            conn.autocommit = autocommit
            yield conn

    def is_ready(self) -> bool:
        try:
            with self.connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1;")
                    cur.fetchone()
        except (psycopg.Error, StorageUnavailable):
            return False
        return True
