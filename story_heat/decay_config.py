"""Per-category heat decay parameters.

Parameters live in ``heat_decay_config`` and change rarely, so each process
keeps a short-TTL cache in front of the table. The cache is per process: after
an update, other processes converge within one TTL window.
"""
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any

import psycopg
from psycopg.rows import dict_row

from story_heat.db import DB
from story_heat.errors import DEGRADABLE_ERRORS, log_degraded
from story_heat.models import DEFAULT_CATEGORY

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class HeatDecayConfig:
    category: str
    decay_constant: float
    activity_boost_hours: float = 2.0
    spike_multiplier: float = 1.5
    base_half_life_hours: float = 3.5
    description: str | None = None
    updated_at: datetime | None = None


# category -> (decay_constant, base_half_life_hours, description)
_BUILTIN_DEFAULTS: dict[str, tuple[float, float, str]] = {
    "CRYPTO": (0.25, 3.0, "Fast-paced crypto markets"),
    "STOCKS": (0.2, 4.0, "Stock market standard decay"),
    "ECONOMICS": (0.15, 5.0, "Economic events linger longer"),
    "GEOPOLITICS": (0.1, 7.0, "Geopolitical events have long tails"),
    "SPORTS": (0.3, 2.0, "Sports news decays fast"),
}


def default_decay_config(category: str | None) -> HeatDecayConfig:
    cat = (category or DEFAULT_CATEGORY).upper()
    decay_constant, half_life, description = _BUILTIN_DEFAULTS.get(
        cat, (0.2, 3.5, "Default decay")
    )
    return HeatDecayConfig(
        category=cat,
        decay_constant=decay_constant,
        activity_boost_hours=2.0,
        spike_multiplier=1.5,
        base_half_life_hours=half_life,
        description=description,
    )


@dataclass
class _CacheEntry:
    value: HeatDecayConfig
    fetched_at: float


class DecayConfigCache:
    """Lock-guarded map of category -> (config, fetch time)."""

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, _CacheEntry] = {}

    def get(self, category: str) -> HeatDecayConfig | None:
        with self._lock:
            entry = self._entries.get(category)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at >= self.ttl_seconds:
                del self._entries[category]
                return None
            return entry.value

    def put(self, config: HeatDecayConfig) -> None:
        with self._lock:
            self._entries[config.category] = _CacheEntry(config, self._clock())

    def invalidate(self, category: str | None = None) -> None:
        with self._lock:
            if category is None:
                self._entries.clear()
            else:
                self._entries.pop(category, None)


def _row_to_config(row: dict[str, Any]) -> HeatDecayConfig:
    return HeatDecayConfig(
        category=row["category"],
        decay_constant=float(row["decay_constant"]),
        activity_boost_hours=float(row["activity_boost_hours"]),
        spike_multiplier=float(row["spike_multiplier"]),
        base_half_life_hours=float(row["base_half_life_hours"]),
        description=row.get("description"),
        updated_at=row.get("updated_at"),
    )


def load_decay_config(conn: psycopg.Connection[Any], *, category: str) -> HeatDecayConfig:
    """Read a category's row, persisting the built-in default when none exists."""
    with conn.transaction():
        with conn.cursor(row_factory=dict_row) as cur:
            cur.execute(
                """
                SELECT category, decay_constant, activity_boost_hours, spike_multiplier,
                       base_half_life_hours, description, updated_at
                FROM heat_decay_config
                WHERE category = %s;
                """,
                (category,),
            )
            row = cur.fetchone()
            if row:
                return _row_to_config(row)

            default = default_decay_config(category)
            # A concurrent first user may have inserted already; re-read keeps both agreeing.
            cur.execute(
                """
                INSERT INTO heat_decay_config(
                  category, decay_constant, activity_boost_hours, spike_multiplier,
                  base_half_life_hours, description
                )
                VALUES (%s,%s,%s,%s,%s,%s)
                ON CONFLICT (category) DO NOTHING;
                """,
                (
                    default.category,
                    default.decay_constant,
                    default.activity_boost_hours,
                    default.spike_multiplier,
                    default.base_half_life_hours,
                    default.description,
                ),
            )
            cur.execute(
                """
                SELECT category, decay_constant, activity_boost_hours, spike_multiplier,
                       base_half_life_hours, description, updated_at
                FROM heat_decay_config
                WHERE category = %s;
                """,
                (category,),
            )
            row = cur.fetchone()
    logger.info("Persisted default decay config for %s", category, extra={"category": category})
    return _row_to_config(row) if row else default


def upsert_decay_config(conn: psycopg.Connection[Any], config: HeatDecayConfig) -> HeatDecayConfig:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(
            """
            INSERT INTO heat_decay_config(
              category, decay_constant, activity_boost_hours, spike_multiplier,
              base_half_life_hours, description, updated_at
            )
            VALUES (%s,%s,%s,%s,%s,%s, now())
            ON CONFLICT (category) DO UPDATE SET
              decay_constant = EXCLUDED.decay_constant,
              activity_boost_hours = EXCLUDED.activity_boost_hours,
              spike_multiplier = EXCLUDED.spike_multiplier,
              base_half_life_hours = EXCLUDED.base_half_life_hours,
              description = EXCLUDED.description,
              updated_at = now()
            RETURNING category, decay_constant, activity_boost_hours, spike_multiplier,
                      base_half_life_hours, description, updated_at;
            """,
            (
                config.category.upper(),
                config.decay_constant,
                config.activity_boost_hours,
                config.spike_multiplier,
                config.base_half_life_hours,
                config.description,
            ),
        )
        row = cur.fetchone()
    return _row_to_config(row) if row else config


class DecayConfigProvider:
    """Cached access to decay parameters that never raises on the ingest path."""

    def __init__(
        self,
        db: DB,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        cache: DecayConfigCache | None = None,
    ) -> None:
        self.db = db
        self.cache = cache or DecayConfigCache(ttl_seconds=ttl_seconds, clock=clock)

    def get(self, category: str | None) -> HeatDecayConfig:
        cat = (category or DEFAULT_CATEGORY).upper()
        cached = self.cache.get(cat)
        if cached is not None:
            return cached
        try:
            with self.db.connection() as conn:
                config = load_decay_config(conn, category=cat)
        except DEGRADABLE_ERRORS as exc:
            log_degraded(logger, "get_decay_config", exc, category=cat)
            return default_decay_config(cat)
        self.cache.put(config)
        return config

    def save(self, config: HeatDecayConfig) -> HeatDecayConfig | None:
        config = replace(config, category=config.category.upper())
        try:
            with self.db.connection() as conn:
                saved = upsert_decay_config(conn, config)
        except DEGRADABLE_ERRORS as exc:
            log_degraded(logger, "save_decay_config", exc, category=config.category)
            return None
        self.cache.put(saved)
        return saved

    def invalidate(self, category: str | None = None) -> None:
        self.cache.invalidate(category.upper() if category else None)
