from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import psycopg

from story_heat.errors import SchemaEvolutionFailure

logger = logging.getLogger(__name__)

MIGRATION_FILENAME_RE = re.compile(r"^\d{4}_\d{2}_\d{2}_\d{4}_.+\.sql$")
OPS_RUNBOOK_MIGRATION_RE = re.compile(r"design_docs/migrations/([0-9_]+_.+?\.sql)")


@dataclass(frozen=True)
class Migration:
    name: str
    path: Path


def default_migrations_dir() -> Path:
    return Path(__file__).resolve().parents[1] / "design_docs" / "migrations"


def list_migrations(migrations_dir: Path) -> list[Migration]:
    if not migrations_dir.exists():
        return []
    preferred_order = _ordered_names_from_ops_runbook(migrations_dir.parent)
    preferred_index = {name: idx for idx, name in enumerate(preferred_order)}

    paths = [
        p
        for p in migrations_dir.iterdir()
        if p.is_file() and MIGRATION_FILENAME_RE.match(p.name)
    ]

    def sort_key(p: Path) -> tuple[int, int, str]:
        idx = preferred_index.get(p.name)
        if idx is None:
            return (1, 0, p.name)
        return (0, idx, p.name)

    paths.sort(key=sort_key)
    return [Migration(name=p.name, path=p) for p in paths]


def _ordered_names_from_ops_runbook(docs_dir: Path) -> list[str]:
    ops_path = docs_dir / "ops_runbook.md"
    if not ops_path.exists():
        return []
    text = ops_path.read_text(encoding="utf-8")
    # dict preserves first-seen order while dropping repeats
    return list(dict.fromkeys(m.group(1) for m in OPS_RUNBOOK_MIGRATION_RE.finditer(text)))


def ensure_migrations_table(conn: psycopg.Connection[Any]) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
              name TEXT PRIMARY KEY,
              applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            );
            """
        )


def applied_migrations(conn: psycopg.Connection[Any]) -> set[str]:
    ensure_migrations_table(conn)
    with conn.cursor() as cur:
        cur.execute("SELECT name FROM schema_migrations;")
        out: set[str] = set()
        for row in cur.fetchall():
            name = row.get("name") if isinstance(row, dict) else row[0]
            if name is not None:
                out.add(str(name))
        return out


def pending_migrations(conn: psycopg.Connection[Any], migrations_dir: Path) -> list[str]:
    already = applied_migrations(conn)
    return [m.name for m in list_migrations(migrations_dir) if m.name not in already]


def apply_migration(conn: psycopg.Connection[Any], migration: Migration) -> None:
    sql = migration.path.read_text(encoding="utf-8")
    try:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.execute(
                    "INSERT INTO schema_migrations(name) VALUES (%s) ON CONFLICT DO NOTHING;",
                    (migration.name,),
                )
    except psycopg.Error as exc:
        logger.error(
            "Migration %s failed and was rolled back",
            migration.name,
            extra={"operation": "apply_migration", "migration": migration.name},
        )
        raise SchemaEvolutionFailure(migration.name, str(exc)) from exc
    logger.info("Applied migration %s", migration.name, extra={"migration": migration.name})


def migrate(conn: psycopg.Connection[Any], migrations_dir: Path | None = None) -> list[str]:
    """Apply pending migrations in order; stops at the first failure."""
    directory = migrations_dir or default_migrations_dir()
    ensure_migrations_table(conn)
    already = applied_migrations(conn)
    applied: list[str] = []
    for m in list_migrations(directory):
        if m.name in already:
            continue
        apply_migration(conn, m)
        applied.append(m.name)
    return applied
